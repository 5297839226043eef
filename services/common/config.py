from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "facilities-service"


class ServiceSettings(BaseSettings):
    """Settings shared by the facilities FastAPI services."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    auto_create_tables: bool = Field(default=True)
    event_bus_enabled: bool = Field(default=True)
    escalation_sweep_enabled: bool = Field(default=True)
    escalation_sweep_interval_seconds: float = Field(default=300.0, gt=0.0)
    escalation_batch_size: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
