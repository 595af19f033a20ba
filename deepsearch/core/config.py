# pyright: reportMissingImports=false

from __future__ import annotations

from functools import lru_cache
import json
from typing import ClassVar, cast

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings with local dev defaults."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
    )

    api_prefix: str = "/api"
    log_level: str = "INFO"

    env: str = "dev"

    cors_allowed_origins: list[str] = Field(default_factory=list)
    trusted_hosts: list[str] = Field(default_factory=list)

    # Access tokens are minted by the external auth provider with this shared secret.
    auth_access_token_secret: str = "dev-secret-change-me"
    auth_access_token_ttl_seconds: int = 3600

    # Per-user quota, counted per UTC calendar day. Admins are exempt.
    daily_request_limit: int = 50

    # Global fixed-window limiter in front of the model provider.
    global_rate_limit_enabled: bool = False
    global_rate_limit_max_requests: int = 3
    global_rate_limit_window_ms: int = 120_000
    global_rate_limit_max_retries: int = 2
    global_rate_limit_fail_open: bool = True

    openai_mode: str = "fake"
    openai_base_url: str | None = None
    openai_api_key: str | None = None
    openai_model: str | None = None
    openai_timeout_seconds: float = 60.0

    chat_max_steps: int = 10

    serper_api_key: str | None = None
    serper_base_url: str = "https://google.serper.dev"
    search_num_results: int = 10
    search_timeout_seconds: float = 10.0

    scrape_cache_ttl_seconds: int = 6 * 60 * 60
    scrape_timeout_seconds: float = 15.0
    scrape_max_retries: int = 3
    scrape_max_chars: int = 20_000
    scrape_user_agent: str = "DeepSearchBot/0.1 (+https://github.com/deepsearch)"

    redis_url: str = "redis://localhost:6379/0"

    # Prefer DATABASE_URL when provided; otherwise construct from POSTGRES_* vars.
    database_url: str | None = None
    postgres_db: str = "deepsearch"
    postgres_user: str = "deepsearch"
    postgres_password: str = "deepsearch"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    @field_validator("cors_allowed_origins", "trusted_hosts", mode="before")
    @classmethod
    def _parse_listish_env(cls, v: object) -> list[str]:
        if v is None:
            return []
        if isinstance(v, list):
            v_list = cast(list[object], v)
            return [str(x).strip() for x in v_list if str(x).strip()]
        if isinstance(v, str):
            raw = v.strip()
            if raw == "":
                return []
            if raw.lstrip().startswith("["):
                try:
                    parsed: object = cast(object, json.loads(raw))
                except Exception:
                    parsed = None
                if isinstance(parsed, list):
                    parsed_list = cast(list[object], parsed)
                    return [str(x).strip() for x in parsed_list if str(x).strip()]
            parts: list[str] = []
            for chunk in raw.replace("\n", ",").replace("\t", ",").split(","):
                s = chunk.strip()
                if s:
                    parts.append(s)
            return parts
        return [str(v).strip()] if str(v).strip() else []

    @property
    def sqlalchemy_database_uri(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    def _is_prod_env(self) -> bool:
        return self.env.strip().lower() in ("prod", "production")

    @model_validator(mode="after")
    def _validate_prod_config(self) -> "Settings":
        if not self._is_prod_env():
            return self

        problems: list[str] = []

        if self.auth_access_token_secret.strip() in ("", "dev-secret-change-me"):
            problems.append(
                "AUTH_ACCESS_TOKEN_SECRET must be set in production (cannot use default 'dev-secret-change-me')."
            )

        if self.openai_mode.strip().lower() == "fake":
            problems.append("OPENAI_MODE=fake is forbidden in production. Set OPENAI_MODE=openai.")

        if not (self.serper_api_key and self.serper_api_key.strip()):
            problems.append("SERPER_API_KEY must be set in production.")

        if problems:
            details = "\n".join(f"- {p}" for p in problems)
            raise ValueError(
                f"Production settings validation failed (ENV={self.env!r}). Fix the following before starting the server:\n"
                + details
            )

        return self

    @model_validator(mode="after")
    def _validate_openai_config(self) -> "Settings":
        mode = self.openai_mode.strip().lower()
        if mode not in ("fake", "openai"):
            raise ValueError("OPENAI_MODE must be one of: fake, openai")
        if mode == "openai":
            if not (self.openai_base_url and self.openai_base_url.strip()):
                raise ValueError("OPENAI_BASE_URL must be set when OPENAI_MODE=openai")
            if not (self.openai_api_key and self.openai_api_key.strip()):
                raise ValueError("OPENAI_API_KEY must be set when OPENAI_MODE=openai")
            if not (self.openai_model and self.openai_model.strip()):
                raise ValueError("OPENAI_MODEL must be set when OPENAI_MODE=openai")
        return self

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.chat_max_steps < 1:
            raise ValueError("CHAT_MAX_STEPS must be >= 1")
        if self.global_rate_limit_window_ms <= 0:
            raise ValueError("GLOBAL_RATE_LIMIT_WINDOW_MS must be > 0")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
