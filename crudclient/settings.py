import os
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Remote CRUD service
    api_url: str = Field(default="http://localhost:4000", alias="API_URL")
    api_prefix: str = Field(default="api", alias="API_PREFIX")
    api_version: str = Field(default="v1", alias="API_VERSION")
    api_timeout: float = Field(default=30.0, gt=0, alias="API_TIMEOUT")
    refresh_timeout: float = Field(default=10.0, gt=0, alias="API_REFRESH_TIMEOUT")
    refresh_endpoint: str = Field(default="auth/refresh", alias="API_REFRESH_ENDPOINT")

    # Retry policy
    max_retries: int = Field(default=2, ge=0, alias="API_MAX_RETRIES")
    retry_base_delay: float = Field(default=1.0, ge=0, alias="API_RETRY_BASE_DELAY")

    # Credentials
    token_lifetime_minutes: int = Field(
        default=55, gt=0, alias="TOKEN_LIFETIME_MINUTES"
    )
    token_refresh_window_minutes: int = Field(
        default=5, ge=0, alias="TOKEN_REFRESH_WINDOW_MINUTES"
    )
    token_encode: bool = Field(default=False, alias="TOKEN_ENCODE")
    credential_db_url: str | None = Field(default=None, alias="CREDENTIAL_DB_URL")

    # Request deduplication
    dedup_pending_timeout: float = Field(
        default=30.0, gt=0, alias="DEDUP_PENDING_TIMEOUT"
    )
    dedup_cleanup_interval: float = Field(
        default=60.0, gt=0, alias="DEDUP_CLEANUP_INTERVAL"
    )

    debug: bool = Field(default=False, alias="DEBUG")

    @field_validator("api_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Invalid URL format for API_URL: {value}")
        return value.rstrip("/")

    @property
    def base_url(self) -> str:
        """Root URL every request path is joined onto."""
        parts = [self.api_url, self.api_prefix.strip("/"), self.api_version.strip("/")]
        return "/".join(p for p in parts if p) + "/"


def load_settings() -> Settings:
    """Build settings from the process environment (and .env)."""
    return Settings.model_validate(dict(os.environ))


global_settings = load_settings()
