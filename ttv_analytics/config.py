"""
Configuration Management

All tunables for the crawl, the session reconciler and the poll loop live
here. Values load from environment variables (or a .env file) through
Pydantic Settings, so "300" in the environment becomes the int 300.

Components never reach for the module-level ``settings`` instance themselves;
they receive a ``Settings`` object in their constructor. Only the process
entry point (``ttv_analytics.main``) and the logging helper read the global.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application Settings

    Variable names match field names (case-insensitive), e.g.
    DISCONNECT_TOLERANCE_MINUTES=45 or TARGET_CHANNEL=oxcanteven.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"
    log_categories: Optional[str] = None  # Comma-separated (system,twitch_api,crawl,sessions,poller). If None, show all logs.
    port: int = 8000
    host: str = "0.0.0.0"

    # Storage (DATABASE_URL itself is read by ttv_analytics.database.connection)
    database_auto_create: bool = True  # create_all on startup

    # Twitch Configuration
    twitch_client_id: Optional[str] = None
    twitch_bot_token: Optional[str] = None
    twitch_moderator_id: Optional[str] = None  # user id of the token owner; looked up when unset
    twitch_api_base: str = "https://api.twitch.tv/helix"
    twitch_request_timeout_seconds: float = 10.0
    twitch_max_attempts: int = 3
    twitch_retry_backoff_seconds: float = 0.5
    target_channel: Optional[str] = None  # Channel whose followers are tracked

    # Presence polling
    presence_poll_enabled: bool = True
    presence_poll_interval_seconds: int = 300
    disconnect_tolerance_minutes: int = 30
    crawl_concurrency: int = 4  # 1 = sequential fan-out


# Loaded once when the module is imported
settings = Settings()
