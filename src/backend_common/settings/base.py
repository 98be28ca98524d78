"""Settings shared by every aiohttp service."""
from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseServiceSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(".env", "env.example"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    env: Literal["development", "staging", "production"] = "development"
    app_name: str = "service"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    db_pool_size: int = 20

    # Upper bound on request bodies accepted by the aiohttp app.
    max_request_bytes: int = 8 * 1024 * 1024

    # Kept as a plain string so pydantic-settings does not try to JSON-decode it.
    cors_allowed_origins_str: str = Field(
        default="http://localhost:3000,http://localhost:8080",
        alias="CORS_ALLOWED_ORIGINS",
    )
    cors_allowed_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        validation_alias="__cors_allowed_origins_internal__",
    )

    @model_validator(mode="after")
    def parse_cors_origins(self) -> "BaseServiceSettings":
        if self.cors_allowed_origins_str:
            self.cors_allowed_origins = [
                origin.strip() for origin in self.cors_allowed_origins_str.split(",") if origin.strip()
            ]
        return self
