"""Application configuration with load-time validation.

All config is validated when the module is imported via pydantic-settings.
Values come from the environment or a local .env file. Credentials default
to empty so that tooling can import the module; the process shell checks
them with missing_credentials() before starting a sync.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

DEXCOM_REGIONS = {"us", "ous", "jp"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "extra": "ignore"}

    # LibreView / LibreLinkUp (follower account)
    source_email: str = ""
    source_password: str = ""
    source_region: str = ""

    # Dexcom Share (publisher account)
    dest_username: str = ""
    dest_password: str = ""
    dest_region: str = "ous"

    # Sync
    sync_interval_minutes: int = Field(5, gt=0)
    max_readings_per_sync: int = Field(12, gt=0)
    serial_number: str | None = None
    dedup_window_hours: int = Field(24, gt=0)
    verify_uploads: bool = True

    # LibreView transport
    libreview_retry_attempts: int = Field(3, ge=1)
    libreview_retry_base_seconds: float = Field(10.0, ge=0)
    libreview_product: str = "llu.android"
    libreview_version: str = "4.12.0"

    # Dexcom transport
    dexcom_rate_limit_cooldown_seconds: float = Field(60.0, ge=0)
    dexcom_rate_limit_attempts: int = Field(3, ge=1)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Status API
    status_host: str = "127.0.0.1"
    status_port: int = 8080
    api_version: str = "v1"

    @field_validator("source_region", mode="after")
    @classmethod
    def normalize_source_region(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("dest_region", mode="after")
    @classmethod
    def validate_dest_region(cls, v: str) -> str:
        region = v.strip().lower()
        if region not in DEXCOM_REGIONS:
            raise ValueError(
                f"DEST_REGION must be one of: {', '.join(sorted(DEXCOM_REGIONS))} (got {v!r})"
            )
        return region

    @field_validator("serial_number", mode="after")
    @classmethod
    def blank_serial_is_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v.strip()

    @field_validator("log_level", mode="after")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of: {', '.join(sorted(LOG_LEVELS))}")
        return level

    def missing_credentials(self) -> list[str]:
        """Return the env var names of required credentials that are unset."""
        required = {
            "SOURCE_EMAIL": self.source_email,
            "SOURCE_PASSWORD": self.source_password,
            "DEST_USERNAME": self.dest_username,
            "DEST_PASSWORD": self.dest_password,
        }
        return [name for name, value in required.items() if not value]

    @property
    def sync_interval_seconds(self) -> float:
        return self.sync_interval_minutes * 60.0


settings = Settings()
