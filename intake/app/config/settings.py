from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    queue_max_concurrent: int = Field(3, ge=1, validation_alias="QUEUE_MAX_CONCURRENT")
    # Automatic retries after the first attempt. The failure seen at retries == max is permanent.
    queue_max_retries: int = Field(3, ge=0, validation_alias="QUEUE_MAX_RETRIES")
    queue_retry_delay_seconds: float = Field(1.0, ge=0, validation_alias="QUEUE_RETRY_DELAY_SECONDS")
    queue_max_retry_delay_seconds: float | None = Field(
        None,
        ge=0,
        validation_alias="QUEUE_MAX_RETRY_DELAY_SECONDS",
    )
    queue_dispatch_interval_seconds: float = Field(
        0.1,
        ge=0,
        validation_alias="QUEUE_DISPATCH_INTERVAL_SECONDS",
    )
    queue_cancel_on_remove: bool = Field(False, validation_alias="QUEUE_CANCEL_ON_REMOVE")

    extraction_base_url: str = Field("http://localhost:8888", validation_alias="EXTRACTION_BASE_URL")
    extraction_connect_timeout_seconds: float = Field(
        5.0,
        validation_alias="EXTRACTION_CONNECT_TIMEOUT_SECONDS",
    )
    extraction_read_timeout_seconds: float = Field(60.0, validation_alias="EXTRACTION_READ_TIMEOUT_SECONDS")
    extraction_user_agent: str = Field("", validation_alias="EXTRACTION_USER_AGENT")

    http_client_backend: str = Field("httpx", validation_alias="HTTP_CLIENT_BACKEND")

    def queue_options(self) -> dict[str, Any]:
        """Keyword arguments for ProcessingQueue."""
        return {
            "max_concurrent": self.queue_max_concurrent,
            "max_retries": self.queue_max_retries,
            "retry_delay": self.queue_retry_delay_seconds,
            "max_retry_delay": self.queue_max_retry_delay_seconds,
            "dispatch_interval": self.queue_dispatch_interval_seconds,
            "cancel_on_remove": self.queue_cancel_on_remove,
        }
