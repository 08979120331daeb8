"""
StravaConnector — OAuth2 + activity import for Strava.

Token endpoint returns ``expires_at`` as epoch seconds and rotates the
refresh token on every refresh.  Activity reads go through a process-wide
``RateLimiter`` that mirrors Strava's published read budgets.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from config.settings import Settings, config as default_config
from connectors.base import BaseConnector
from connectors.http import RateLimitedClient
from connectors.rate_limiter import RateLimiter, fifteen_minute_and_daily
from core.clock import Clock, system_clock
from utils.errors import ProviderAPIError
from utils.schemas import ImportedActivity, ProviderUserInfo, TokenData

logger = logging.getLogger(__name__)

# Strava OAuth2 endpoints
_STRAVA_AUTH_URL = "https://www.strava.com/oauth/authorize"
_STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
_STRAVA_DEAUTH_URL = "https://www.strava.com/oauth/deauthorize"
_STRAVA_API = "https://www.strava.com/api/v3"

# Strava activity type → our activity vocabulary
_ACTIVITY_TYPES: Dict[str, str] = {
    "Run": "running",
    "VirtualRun": "running",
    "Ride": "cycling",
    "VirtualRide": "cycling",
    "Swim": "swimming",
    "Walk": "walking",
    "Hike": "walking",
    "WeightTraining": "weightlifting",
    "Workout": "cardio",
    "Crossfit": "hiit",
    "Yoga": "yoga",
    "Pilates": "pilates",
    "Elliptical": "cardio",
    "StairStepper": "cardio",
    "Rowing": "cardio",
    "Golf": "sports",
    "Tennis": "sports",
    "Soccer": "sports",
    "Basketball": "sports",
    "Badminton": "sports",
    "Squash": "sports",
    "Pickleball": "sports",
    "TableTennis": "sports",
    "RacquetSports": "sports",
}

# "(GMT-08:00) America/Los_Angeles" → "America/Los_Angeles"
_TZ_PATTERN = re.compile(r"\) (.+)$")


def map_activity_type(strava_type: str) -> str:
    return _ACTIVITY_TYPES.get(strava_type, "other")


def parse_timezone(value: Optional[str]) -> str:
    match = _TZ_PATTERN.search(value or "")
    return match.group(1) if match else "UTC"


def to_imported_activity(activity: Dict[str, Any]) -> ImportedActivity:
    start_local = activity.get("start_date_local") or activity.get("start_date")
    started = datetime.fromisoformat(str(start_local).replace("Z", "+00:00"))
    return ImportedActivity(
        external_id=str(activity["id"]),
        activity_type=map_activity_type(activity.get("type", "")),
        activity_name=activity.get("name") or "Strava activity",
        activity_date=started.date(),
        timezone=parse_timezone(activity.get("timezone")),
        calories_burned=activity.get("calories") or None,
        activity_data={
            "source": "strava",
            "strava_id": activity["id"],
            "distance_meters": activity.get("distance"),
            "moving_time_seconds": activity.get("moving_time"),
            "elapsed_time_seconds": activity.get("elapsed_time"),
            "average_heartrate": activity.get("average_heartrate"),
            "max_heartrate": activity.get("max_heartrate"),
            "elevation_gain_meters": activity.get("total_elevation_gain"),
            "average_speed_mps": activity.get("average_speed"),
            "max_speed_mps": activity.get("max_speed"),
            "sport_type": activity.get("sport_type") or activity.get("type"),
        },
    )


class StravaConnector(BaseConnector):
    """OAuth2 connector for Strava."""

    def __init__(
        self,
        settings: Settings = default_config,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Clock = system_clock,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._transport = transport
        self._limiter = rate_limiter or fifteen_minute_and_daily(
            settings.strava_read_limit_15min,
            settings.strava_read_limit_daily,
            headroom=settings.rate_limit_headroom,
            clock=clock,
        )
        self._api = RateLimitedClient(
            self._limiter,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return "strava"

    @property
    def display_name(self) -> str:
        return "Strava"

    @property
    def description(self) -> str:
        return "Import your running, cycling, and other workouts from Strava"

    @property
    def scopes(self) -> List[str]:
        return ["read", "activity:read"]

    @property
    def supported_data_types(self) -> List[str]:
        return ["workouts", "calories_burned"]

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    def is_configured(self) -> bool:
        client_id, client_secret = self._settings.client_credentials(self.provider_name)
        return bool(client_id and client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.http_timeout_seconds, transport=self._transport)

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, state: str, redirect_uri: str, code_challenge: Optional[str] = None) -> str:
        client_id, _ = self._settings.client_credentials(self.provider_name)
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": ",".join(self.scopes),
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{_STRAVA_AUTH_URL}?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str]) -> TokenData:
        client_id, client_secret = self._settings.client_credentials(self.provider_name)
        async with self._client() as client:
            resp = await client.post(
                _STRAVA_TOKEN_URL,
                data={"client_id": client_id, "client_secret": client_secret, **data},
                headers={"Accept": "application/json"},
            )
        if resp.status_code >= 400:
            raise ProviderAPIError(resp.status_code, resp.text)
        payload = resp.json()
        if "access_token" not in payload:
            raise ProviderAPIError(resp.status_code, "token response without access_token")

        expires_at = None
        if payload.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
        elif payload.get("expires_in"):
            expires_at = self._clock.now() + timedelta(seconds=int(payload["expires_in"]))

        scope = payload.get("scope")
        return TokenData(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            scopes=scope.replace(",", " ").split() if scope else list(self.scopes),
        )

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenData:
        data = {
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await self._token_request(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenData:
        # Refresh bypasses the read limiter: it is rare and losing it means a reconnect.
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def get_user_info(self, access_token: str) -> ProviderUserInfo:
        resp = await self._api.get(
            f"{_STRAVA_API}/athlete",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if resp.status_code >= 400:
            raise ProviderAPIError(resp.status_code, resp.text)
        athlete = resp.json()
        name = f"{athlete.get('firstname') or ''} {athlete.get('lastname') or ''}".strip()
        return ProviderUserInfo(
            provider_id=str(athlete["id"]),
            email=athlete.get("email"),
            name=name or None,
        )

    async def revoke_token(self, access_token: str) -> bool:
        try:
            async with self._client() as client:
                resp = await client.post(_STRAVA_DEAUTH_URL, data={"access_token": access_token})
                return resp.status_code < 400
        except httpx.HTTPError:
            logger.warning("Strava token revocation failed", exc_info=True)
            return False

    # ── Data ────────────────────────────────────────────────────────────

    async def fetch_activities(self, access_token: str, since: datetime) -> List[ImportedActivity]:
        resp = await self._api.get(
            f"{_STRAVA_API}/athlete/activities",
            params={"per_page": self._settings.sync_page_size, "after": int(since.timestamp())},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if resp.status_code >= 400:
            logger.error("Strava API error (%s): %s", resp.status_code, resp.text[:500])
            raise ProviderAPIError(resp.status_code, resp.text)

        raw = resp.json()
        logger.info("Strava returned %d activities", len(raw))
        activities = []
        for item in raw:
            try:
                activities.append(to_imported_activity(item))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping unreadable Strava activity %s: %s", item.get("id"), exc)
        return activities
