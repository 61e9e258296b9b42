"""Application configuration models for the listener and the notify client."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .. import BUILD_COMMIT, BUILD_VERSION
from .payload import MAX_REQUEST_BODY_SIZE
from .signature import SUPPORTED_ALGORITHMS


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class BuildSettings(BaseSettings):
    """Build identity, stamped at release time and overridable from the environment."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True, extra="ignore")

    build_version: str = env_field(BUILD_VERSION, "DCHOOK_BUILD_VERSION")
    build_commit: str = env_field(BUILD_COMMIT, "DCHOOK_BUILD_COMMIT")


class ListenerSettings(BuildSettings):
    """Runtime settings for the webhook listener."""


    secret_file: Path = env_field(..., "DCHOOK_SECRET_FILE")
    compose_file: Path = env_field(..., "DCHOOK_COMPOSE_FILE")
    bind_address: str = env_field("127.0.0.1", "DCHOOK_BIND_ADDRESS")
    port: int = env_field(7999, "DCHOOK_PORT")
    allowed_algorithms: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(SUPPORTED_ALGORITHMS),
        validation_alias="DCHOOK_ALLOWED_ALGORITHMS",
    )
    enable_version_endpoint: bool = env_field(False, "DCHOOK_ENABLE_VERSION_ENDPOINT")
    trusted_proxy_cidrs: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        validation_alias="DCHOOK_TRUSTED_PROXY_CIDRS",
    )
    success_limit: int = Field(1, ge=1, validation_alias="DCHOOK_SUCCESS_LIMIT")
    success_window_seconds: float = Field(60.0, ge=0, validation_alias="DCHOOK_SUCCESS_WINDOW")
    fail_limit: int = Field(2, ge=1, validation_alias="DCHOOK_FAIL_LIMIT")
    ban_duration_seconds: float = Field(3600.0, ge=0, validation_alias="DCHOOK_BAN_DURATION")
    replay_retention_seconds: float = Field(600.0, ge=0, validation_alias="DCHOOK_REPLAY_RETENTION")
    max_body_bytes: int = Field(MAX_REQUEST_BODY_SIZE, ge=1, validation_alias="DCHOOK_MAX_BODY_BYTES")
    docker_binary: str = env_field("docker", "DCHOOK_DOCKER_BIN")
    metrics_token: Optional[SecretStr] = env_field(None, "DCHOOK_METRICS_TOKEN")
    log_level: str = env_field("INFO", "DCHOOK_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "DCHOOK_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "DCHOOK_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "DCHOOK_OTEL_SAMPLER_RATIO")

    @field_validator("trusted_proxy_cidrs", mode="before")
    @classmethod
    def _split_proxy_cidrs(cls, value):
        return _split_csv(value)

    @field_validator("allowed_algorithms", mode="before")
    @classmethod
    def _split_algorithms(cls, value):
        return _split_csv(value)

    @field_validator("allowed_algorithms")
    @classmethod
    def _check_algorithms(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one HMAC algorithm must be allowed")
        for algorithm in value:
            if algorithm not in SUPPORTED_ALGORITHMS:
                raise ValueError(
                    f"Invalid algorithm: {algorithm} (must be one of {', '.join(SUPPORTED_ALGORITHMS)})"
                )
        return list(dict.fromkeys(value))


class NotifySettings(BuildSettings):
    """Configuration for the dchook-notify client."""


    url: str = env_field(..., "DCHOOK_URL")
    secret_file: Path = env_field(..., "DCHOOK_SECRET_FILE")
    algorithm: str = env_field("sha256", "DCHOOK_ALGORITHM")
    timeout_seconds: float = env_field(30.0, "DCHOOK_TIMEOUT")

    @field_validator("algorithm")
    @classmethod
    def _check_algorithm(cls, value: str) -> str:
        if value not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"Invalid algorithm '{value}' (must be one of {', '.join(SUPPORTED_ALGORITHMS)})"
            )
        return value
