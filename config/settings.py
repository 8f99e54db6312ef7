"""Runtime settings for Pathfinder.

All values come from environment variables so the API, the background job
runner and the CLI share one configuration source.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Application settings."""

    # Storage
    database_url: str = Field(default="sqlite:///data/pathfinder.db", description="SQLAlchemy database URL")
    snapshot_dir: str = Field(default="public/snapshots", description="Directory for page screenshots")
    snapshot_url_prefix: str = Field(default="/snapshots", description="Public URL prefix for screenshots")

    # Crawling
    max_pages: int = Field(default=200, ge=1, description="Per-run page budget")
    user_agent: str = Field(default="PathfinderBot/0.3 (+https://pathfinder.local/bot)")
    navigation_timeout: float = Field(default=30.0, description="Page navigation timeout in seconds")
    robots_timeout: float = Field(default=10.0, description="robots.txt fetch timeout in seconds")
    browser_enabled: bool = Field(default=True, description="Try Playwright before plain HTTP fetch")
    embedding_input_chars: int = Field(default=8000)

    # Providers
    openai_api_key: Optional[str] = Field(default=None)
    embedding_model: str = Field(default="text-embedding-3-small")
    chat_model: str = Field(default="gpt-4o-mini")
    llm_summaries: bool = Field(default=False, description="Refine cached summaries with the chat model")

    # Retrieval
    top_n: int = Field(default=10, ge=1, le=50)

    # Jobs
    job_freshness_minutes: int = Field(default=15)
    stale_job_minutes: int = Field(default=30)
    reaper_interval_seconds: int = Field(default=300)
    eta_seconds: int = Field(default=120)

    # API
    analyze_rate_limit: str = Field(default="10/minute")
    stream_keepalive_seconds: float = Field(default=15.0)

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)

    @classmethod
    def from_env(cls) -> 'Settings':
        """Create settings from environment variables."""
        return cls(
            database_url=os.getenv('DATABASE_URL', 'sqlite:///data/pathfinder.db'),
            snapshot_dir=os.getenv('PATHFINDER_SNAPSHOT_DIR', 'public/snapshots'),
            snapshot_url_prefix=os.getenv('PATHFINDER_SNAPSHOT_URL_PREFIX', '/snapshots'),
            max_pages=int(os.getenv('PATHFINDER_MAX_PAGES', '200')),
            user_agent=os.getenv('PATHFINDER_USER_AGENT', 'PathfinderBot/0.3 (+https://pathfinder.local/bot)'),
            navigation_timeout=float(os.getenv('PATHFINDER_NAVIGATION_TIMEOUT', '30')),
            robots_timeout=float(os.getenv('PATHFINDER_ROBOTS_TIMEOUT', '10')),
            browser_enabled=_env_bool('PATHFINDER_BROWSER', True),
            embedding_input_chars=int(os.getenv('PATHFINDER_EMBEDDING_INPUT_CHARS', '8000')),
            openai_api_key=os.getenv('OPENAI_API_KEY') or None,
            embedding_model=os.getenv('PATHFINDER_EMBEDDING_MODEL', 'text-embedding-3-small'),
            chat_model=os.getenv('PATHFINDER_CHAT_MODEL', 'gpt-4o-mini'),
            llm_summaries=_env_bool('PATHFINDER_LLM_SUMMARIES', False),
            top_n=int(os.getenv('PATHFINDER_TOP_N', '10')),
            job_freshness_minutes=int(os.getenv('PATHFINDER_JOB_FRESHNESS_MINUTES', '15')),
            stale_job_minutes=int(os.getenv('PATHFINDER_STALE_JOB_MINUTES', '30')),
            reaper_interval_seconds=int(os.getenv('PATHFINDER_REAPER_INTERVAL', '300')),
            eta_seconds=int(os.getenv('PATHFINDER_ETA_SECONDS', '120')),
            analyze_rate_limit=os.getenv('PATHFINDER_ANALYZE_RATE_LIMIT', '10/minute'),
            stream_keepalive_seconds=float(os.getenv('PATHFINDER_KEEPALIVE_SECONDS', '15')),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_json=_env_bool('LOG_JSON', False),
            log_file=os.getenv('LOG_FILE') or None,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def override_settings(settings: Optional[Settings]) -> None:
    """Replace the process-wide settings (used by tests and the CLI)."""
    global _settings
    _settings = settings
