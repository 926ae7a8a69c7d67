"""
Application settings loaded from environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Security Secrets ──────────────────────────────────────────────────
    jwt_secret: str = "change-me-jwt-secret-key"       # HMAC secret for auth tokens
    jwt_expiry_seconds: int = 604800                    # 7 days
    oauth_state_secret: str = "change-me-oauth-state"   # HMAC secret for OAuth CSRF state
    oauth_state_ttl_seconds: int = 600
    token_encryption_key: str = ""                       # Fernet key for encrypting OAuth tokens at rest

    # ── OAuth Connectors ─────────────────────────────────────────────────
    oauth_redirect_base: str = "http://localhost:8000"  # base URL for OAuth callbacks
    frontend_base_url: str = "http://localhost:5173"    # where the callback sends the browser

    google_enabled: bool = True
    google_client_id: str = ""          # Google OAuth Web App client ID
    google_client_secret: str = ""      # Google OAuth Web App client secret
    google_token_ttl_seconds: int = 3600

    microsoft_enabled: bool = True
    microsoft_client_id: str = ""       # Entra ID app registration
    microsoft_client_secret: str = ""
    microsoft_tenant: str = "common"
    microsoft_token_ttl_seconds: int = 3600

    # ── Token lifecycle ──────────────────────────────────────────────────
    refresh_skew_seconds: int = 300     # refresh when less than this remains
    refresh_timeout_seconds: float = 15.0

    # ── Aggregated file listing ──────────────────────────────────────────
    listing_timeout_seconds: float = 20.0
    listing_max_concurrency: int = 4
    listing_page_size: int = 50

    # ── Database ─────────────────────────────────────────────────────────
    # "memory://" keeps links in-process (local development only)
    database_url: str = "sqlite+aiosqlite:///./storage_links.db"

    # ── Server ───────────────────────────────────────────────────────────
    port: int = 8000
    host: str = "0.0.0.0"
    debug: bool = False
    cors_origins: list = ["*"]

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


config = Settings()
