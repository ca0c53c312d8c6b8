"""
connectors — OAuth credential lifecycle for marketing platforms.

Provides a generic connector framework that handles:
  • OAuth2 auth-URL generation
  • Callback handling (code → token exchange)
  • Per-project token storage & refresh before expiry
  • Fernet encryption of tokens at rest
  • Revocation / disconnect

Each provider kind (Google Analytics, Google Ads, …) is an OAuth2Connector
plus an optional BaseDataProvider for its reports.
"""
