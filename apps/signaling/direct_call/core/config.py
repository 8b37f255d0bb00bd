"""Application configuration for the direct call signaling server."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    signaling_path: str = Field(default="/one2one")
    max_queued_candidates: int = Field(default=100, ge=1)
    delivery_timeout: float = Field(default=10.0, gt=0, description="Seconds to wait for an offer to reach the callee")

    # Relay credentials handed out on registration
    ice_provider: Literal["static", "auth_service"] = Field(default="static")
    ice_transport_policy: Literal["all", "relay"] = Field(default="relay")

    turn_public_addr: str = Field(default="")
    turn_public_port: int = Field(default=3478)
    turn_udp_enabled: bool = Field(default=True)
    turn_tcp_enabled: bool = Field(default=False)
    turn_auth_type: str = Field(default="plaintext")
    turn_username: str = Field(default="user")
    turn_password: str = Field(default="pass")
    turn_shared_secret: str = Field(default="my-secret")
    turn_credential_ttl: int = Field(default=24 * 60 * 60, ge=1, description="Seconds a longterm credential stays valid")

    auth_service_url: str = Field(default="http://authrest.stunner.svc.cluster.local:8080")
    auth_service_timeout: float = Field(default=5.0, gt=0)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("signaling_path")
    @classmethod
    def _ensure_leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
