from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "pushrelay"
    environment: str = "dev"

    database_url: str = "sqlite:///./pushrelay.db"

    log_level: str = "INFO"
    # JSON log lines outside of dev
    log_json: bool = False

    # VAPID credentials; generated and persisted on startup when unset
    vapid_public_key: str | None = None
    vapid_private_key: str | None = None
    vapid_subject: str = "mailto:admin@example.com"
    vapid_rotation_days: int = 90

    push_timeout_sec: int = 10

    # Dead-letter recovery loop
    scheduler_enabled: bool = True
    dead_letter_poll_interval_sec: int = 60
    dead_letter_batch_size: int = 100
    dead_letter_retention_days: int = 30

    # A delivery lease older than this is considered abandoned
    delivery_lease_seconds: int = 120

    campaign_send_concurrency: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )


settings = Settings()
