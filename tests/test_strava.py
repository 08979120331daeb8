"""
Tests for StravaConnector — URL building, token exchange, activity mapping.
"""

import json
from datetime import date, datetime, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from connectors.strava import StravaConnector, map_activity_type, parse_timezone, to_imported_activity
from core.clock import FixedClock
from utils.errors import ProviderAPIError, RateLimitedError
from tests.fakes import make_settings

RUN = {
    "id": 111,
    "name": "Morning Run",
    "type": "Run",
    "sport_type": "Run",
    "start_date": "2024-01-01T07:00:00Z",
    "start_date_local": "2023-12-31T23:00:00Z",
    "timezone": "(GMT-08:00) America/Los_Angeles",
    "distance": 5000.0,
    "moving_time": 1500,
    "elapsed_time": 1600,
    "calories": 412.5,
    "average_heartrate": 150.2,
}


def _connector(handler, **settings_overrides):
    return StravaConnector(
        make_settings(**settings_overrides),
        clock=FixedClock(),
        transport=httpx.MockTransport(handler),
    )


class TestMapping:
    @pytest.mark.parametrize(
        "strava_type,expected",
        [("Run", "running"), ("VirtualRide", "cycling"), ("WeightTraining", "weightlifting"), ("Kitesurf", "other")],
    )
    def test_activity_types(self, strava_type, expected):
        assert map_activity_type(strava_type) == expected

    def test_timezone_parsed(self):
        assert parse_timezone("(GMT-08:00) America/Los_Angeles") == "America/Los_Angeles"
        assert parse_timezone(None) == "UTC"
        assert parse_timezone("garbage") == "UTC"

    def test_uses_local_date(self):
        activity = to_imported_activity(RUN)
        assert activity.external_id == "111"
        assert activity.activity_type == "running"
        assert activity.activity_date == date(2023, 12, 31)
        assert activity.timezone == "America/Los_Angeles"
        assert activity.calories_burned == 412.5
        assert activity.activity_data["distance_meters"] == 5000.0
        assert activity.activity_data["sport_type"] == "Run"


class TestOAuth:
    def test_auth_url(self):
        connector = _connector(lambda r: httpx.Response(200))
        url = connector.get_auth_url("st", "https://api.example.com/cb")
        params = {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}
        assert url.startswith("https://www.strava.com/oauth/authorize?")
        assert params == {
            "client_id": "client-id",
            "redirect_uri": "https://api.example.com/cb",
            "response_type": "code",
            "scope": "read,activity:read",
            "state": "st",
        }

    def test_is_configured(self):
        assert _connector(lambda r: httpx.Response(200)).is_configured()
        assert not _connector(lambda r: httpx.Response(200), strava_client_secret="").is_configured()

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(
                200,
                json={"access_token": "a", "refresh_token": "r", "expires_at": 1704096000},
            )

        tokens = await _connector(handler).exchange_code("the-code", "https://api.example.com/cb")

        assert seen["url"] == "https://www.strava.com/oauth/token"
        assert seen["form"]["grant_type"] == ["authorization_code"]
        assert seen["form"]["client_secret"] == ["client-secret"]
        assert tokens.access_token == "a"
        assert tokens.refresh_token == "r"
        assert tokens.expires_at == datetime(2024, 1, 1, 8, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_exchange_error(self):
        connector = _connector(lambda r: httpx.Response(400, json={"message": "Bad Request"}))
        with pytest.raises(ProviderAPIError) as exc:
            await connector.exchange_code("bad", "https://api.example.com/cb")
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_refresh(self):
        def handler(request):
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            assert form["refresh_token"] == ["old"]
            return httpx.Response(200, json={"access_token": "new", "expires_in": 21600})

        tokens = await _connector(handler).refresh_access_token("old")
        assert tokens.access_token == "new"
        assert tokens.expires_at == datetime(2024, 1, 1, 6, tzinfo=timezone.utc)


class TestApi:
    @pytest.mark.asyncio
    async def test_fetch_activities(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                200,
                content=json.dumps([RUN, {"id": 222}]),
                headers={"X-ReadRateLimit-Limit": "100,1000", "X-ReadRateLimit-Usage": "5,50"},
            )

        connector = _connector(handler)
        since = datetime(2023, 12, 2, tzinfo=timezone.utc)
        activities = await connector.fetch_activities("tok", since)

        # The unreadable record (no start date) is skipped.
        assert [a.external_id for a in activities] == ["111"]
        assert seen["params"] == {"per_page": "100", "after": str(int(since.timestamp()))}
        assert seen["auth"] == "Bearer tok"
        assert connector.rate_limiter.snapshot().windows[0].usage == 5

    @pytest.mark.asyncio
    async def test_fetch_error(self):
        connector = _connector(lambda r: httpx.Response(500, text="oops"))
        with pytest.raises(ProviderAPIError) as exc:
            await connector.fetch_activities("tok", datetime(2023, 12, 2, tzinfo=timezone.utc))
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_fetch_rate_limited_by_provider(self):
        connector = _connector(lambda r: httpx.Response(429))
        with pytest.raises(RateLimitedError):
            await connector.fetch_activities("tok", datetime(2023, 12, 2, tzinfo=timezone.utc))

    @pytest.mark.asyncio
    async def test_user_info(self):
        connector = _connector(
            lambda r: httpx.Response(200, json={"id": 42, "firstname": "Ada", "lastname": "L"})
        )
        info = await connector.get_user_info("tok")
        assert info.provider_id == "42"
        assert info.name == "Ada L"

    @pytest.mark.asyncio
    async def test_revoke(self):
        assert await _connector(lambda r: httpx.Response(200)).revoke_token("tok") is True
        assert await _connector(lambda r: httpx.Response(401)).revoke_token("tok") is False
