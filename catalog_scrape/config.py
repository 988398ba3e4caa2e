import os
import re
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, HttpUrl, ValidationError, field_validator


class Settings(BaseModel):
    supabase_url: Optional[HttpUrl] = Field(default=None, alias="SUPABASE_URL")
    supabase_key: Optional[str] = Field(default=None, alias="SUPABASE_SERVICE_KEY")
    env: str = Field(default="local", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    timeout_ms: int = Field(default=8000, alias="SCRAPE_TIMEOUT_MS")
    max_attempts: int = Field(default=4, alias="SCRAPE_MAX_ATTEMPTS")
    retry_delay_ms: int = Field(default=500, alias="SCRAPE_RETRY_DELAY_MS")
    cache_ttl_ms: int = Field(default=5 * 60_000, alias="SCRAPE_CACHE_TTL_MS")
    robots_cache_ttl_ms: int = Field(default=10 * 60_000, alias="SCRAPE_ROBOTS_CACHE_TTL_MS")
    robots_timeout_ms: int = Field(default=5000, alias="SCRAPE_ROBOTS_TIMEOUT_MS")
    host_cache_ttl_ms: int = Field(default=5 * 60_000, alias="SCRAPE_HOST_CACHE_TTL_MS")
    allowed_hosts: str = Field(default="*", alias="SCRAPE_ALLOWED_HOSTS")
    extra_user_agents: str = Field(default="", alias="SCRAPE_EXTRA_USER_AGENTS")

    model_config = {"populate_by_name": True}

    # Floors mirror what the fetch loop can sensibly work with.
    @field_validator("timeout_ms", "robots_timeout_ms")
    @classmethod
    def _timeout_floor(cls, v: int) -> int:
        return max(1000, v)

    @field_validator("max_attempts")
    @classmethod
    def _attempts_floor(cls, v: int) -> int:
        return max(1, v)

    @field_validator("retry_delay_ms", "cache_ttl_ms")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        return max(0, v)

    @field_validator("robots_cache_ttl_ms")
    @classmethod
    def _robots_ttl_floor(cls, v: int) -> int:
        return max(60_000, v)

    @field_validator("host_cache_ttl_ms")
    @classmethod
    def _host_ttl_floor(cls, v: int) -> int:
        return max(30_000, v)

    @property
    def allowed_host_patterns(self) -> List[str]:
        return [p.strip().lower() for p in self.allowed_hosts.split(",") if p.strip()]

    @property
    def extra_user_agent_list(self) -> List[str]:
        return [ua.strip() for ua in re.split(r"[|\n]", self.extra_user_agents) if ua.strip()]

    @property
    def database_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def _load_dotenv():
    # Load from repo root if present, otherwise rely on environment variables.
    root_env = Path(__file__).resolve().parents[1] / ".env"
    if root_env.exists():
        load_dotenv(root_env)
    else:
        load_dotenv()


def load_settings(environ=None) -> Settings:
    try:
        return Settings(**(os.environ if environ is None else environ))
    except ValidationError as exc:
        invalid = sorted({str(e["loc"][0]) for e in exc.errors()})
        detail = f"Invalid scraper environment variables: {', '.join(invalid)}"
        raise RuntimeError(detail) from exc


@lru_cache()
def get_settings() -> Settings:
    _load_dotenv()
    return load_settings()
