"""Application configuration"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Database
    database_url: str = "sqlite:///./jirasync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Scheduler
    # Only projects with a sync_interval_minutes value get a periodic pass.
    scheduler_enabled: bool = True

    # Jira API
    jira_request_timeout_seconds: float = 30.0
    jira_max_results: int = 100
    # Issue type used when pushing new tasks, unless the integration overrides it.
    default_issue_type: str = "Task"
    # Optional shared secret for webhook HMAC verification (X-Hub-Signature).
    jira_webhook_secret: str | None = None

    # Sync passes
    rate_limit_default_backoff_seconds: float = 10.0
    # Hard ceiling on time a single pass may spend suspended on rate limits.
    rate_limit_ceiling_seconds: float = 300.0
    # Locks older than this are considered abandoned and may be taken over.
    sync_lock_ttl_seconds: int = 900
    auth_failure_threshold: int = 3
    # Incremental fetch overlap to absorb clock skew between us and Jira.
    incremental_overlap_minutes: int = 2

    # Logging
    log_level: str = "INFO"

    # Auth (optional)
    # When enabled, all routes are protected by HTTP Basic auth,
    # except for /health and the Jira webhook.
    auth_enabled: bool = False
    auth_username: str | None = None
    auth_password: str | None = None


settings = Settings()
