import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_FORCE_PUSH_TOPICS = ["wish_quote", "new_quote"]
EXPO_PUSH_SEND_URL = "https://exp.host/--/api/v2/push/send"


class Settings(BaseSettings):
    database_url: str
    internal_api_key: str | None = None
    cron_secret: str | None = None
    app_url: str = "http://localhost:3000"
    log_level: str = "INFO"
    auto_create_tables: bool = False
    auto_run_migrations: bool = False

    push_gateway_url: str = EXPO_PUSH_SEND_URL
    push_gateway_access_token: str | None = None
    push_gateway_timeout_seconds: float = 10.0
    push_max_tokens_per_recipient: int = 10
    default_throttle_window_seconds: int = 30
    force_push_topics: list[str] = DEFAULT_FORCE_PUSH_TOPICS

    email_enabled: bool = True
    smtp_host: str | None = None
    smtp_port: int | None = None
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_sender: str | None = None
    smtp_use_tls: bool = True
    email_max_attempts: int = 3
    email_timeout_seconds: float = 10.0
    email_dedupe_window_minutes: int = 10
    email_throttle_window_minutes: int = 10
    email_throttle_max_per_user: int = 5

    digest_enabled: bool = True
    digest_interval_minutes: int = 15
    digest_first_unread_delay_minutes: int = 10
    digest_batch_size: int = 50
    digest_sweep_max_seconds: float = 55.0
    digest_mark_failed_entries: bool = True

    notification_job_retention_days: int = 30
    email_outbox_retention_days: int = 30

    digest_sweep_interval_seconds: float = 300.0
    retention_interval_seconds: float = 3600.0

    # `force_push_topics` supports comma-separated strings or JSON lists; disable pydantic-settings JSON decoding
    # so our validator can handle both formats.
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        enable_decoding=False,
        env_ignore_empty=True,
    )

    @field_validator("force_push_topics", mode="before")
    @classmethod
    def parse_force_push_topics(cls, value):
        if value is None or value == "":
            return list(DEFAULT_FORCE_PUSH_TOPICS)

        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return [str(topic).strip() for topic in parsed if str(topic).strip()]
            except json.JSONDecodeError:
                pass

            parsed = [topic.strip() for topic in value.split(",")]
            return [topic for topic in parsed if topic]

        if isinstance(value, (list, tuple)):
            return [str(topic).strip() for topic in value if str(topic).strip()]

        raise ValueError("force_push_topics must be a list or comma-separated string")

    @field_validator("push_max_tokens_per_recipient", "digest_batch_size")
    @classmethod
    def validate_positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("limits must be at least 1")
        return value


settings = Settings()
