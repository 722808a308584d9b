"""Application configuration."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    app_name: str = "carewatch"
    debug: bool = False
    database_url: str = "sqlite:///./carewatch.db"

    # JWT (identity tokens are issued by the session provider)
    jwt_secret: str = "change-me-in-production-use-openssl-rand-hex-32"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 12

    # Document store
    membership_query_limit: int = 10  # K: max ids in one "field IN [...]" query
    subjects_collection: str = "subjects"
    alerts_collection: str = "alerts"
    assignment_field: str = "assignee_id"
    alert_match_field: str = "subject_id"

    # Collections streamed by the live feed, keyed by collection -> subject field
    feed_collections: dict[str, str] = {
        "alerts": "subject_id",
        "tasks": "subject_id",
        "health_logs": "subject_id",
        "routines": "subject_id",
    }

    recent_alerts_limit: int = 5


settings = Settings()
