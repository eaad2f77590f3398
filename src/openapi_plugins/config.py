"""Configuration for the OpenAPI plugin invoker."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .audit import log_sink
from .models import TransportConfig


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="OPENAPI_PLUGINS_",
        env_file=(".env", "../.env"),
        extra="ignore",
        case_sensitive=False,
    )

    service_name: str = Field(default="openapi-plugins")
    log_level: str = Field(default="INFO")

    openapi_cache_seconds: int = Field(default=3600)
    openapi_fetch_timeout_seconds: float = Field(default=30)

    default_timeout_seconds: float = Field(default=30)
    verify_tls: bool = Field(default=True)
    audit_requests: bool = Field(default=False)

    def transport_config(self, **overrides: Any) -> TransportConfig:
        values: dict[str, Any] = {
            "timeout": self.default_timeout_seconds,
            "verify_tls": self.verify_tls,
        }
        if self.audit_requests:
            values["audit_sink"] = log_sink
        values.update({key: value for key, value in overrides.items() if value is not None})
        return TransportConfig(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
