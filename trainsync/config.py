"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings

from trainsync.wearables.adapters.garmin_mcp import DEFAULT_MCP_COMMAND


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "trainsync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str | None = None  # postgres connection string for asyncpg

    # --- Sync ---
    sync_user_id: str | None = None  # default user for cron-triggered syncs
    cron_secret: str | None = None  # Bearer token required by the sync endpoint when set
    sync_config_path: str | None = None  # override for the bundled sync_config.yaml

    # --- Garmin ---
    garmin_provider: str = "garmin_mcp"  # garmin_mcp | garmin_garth
    garmin_email: str | None = None
    garmin_password: str | None = None
    garmin_email_file: str | None = None
    garmin_password_file: str | None = None
    garmin_token_path: str = "~/.garth"

    # --- Tool server ---
    mcp_command: list[str] = list(DEFAULT_MCP_COMMAND)
    mcp_request_timeout_s: float = 30.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
