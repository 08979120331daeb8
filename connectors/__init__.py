"""
connectors — OAuth integration module for fitness data providers.

Provides a provider framework that handles:
  • OAuth2 auth-URL generation (CSRF state, optional PKCE)
  • Callback handling (code → token exchange → connection upsert)
  • AES-256-GCM encryption of tokens at rest
  • Token refresh and disconnect / revocation
  • A process-wide rate limiter in front of provider reads

Each provider (Strava, …) is a subclass of BaseConnector registered in
ConnectorRegistry.
"""
