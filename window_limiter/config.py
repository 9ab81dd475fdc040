from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import os

from .domain.contracts import LimiterConfig


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration values exposed to FastAPI components."""

    app_name: str = "window-limiter"
    version: str = "0.1.0"
    rate_limit_window_ms: int = field(default_factory=lambda: int(_env("RATE_LIMIT_WINDOW_MS", "60000")))
    rate_limit_requests: int = field(default_factory=lambda: int(_env("RATE_LIMIT_MAX_REQUESTS", "100")))
    rate_limit_key_prefix: str = field(default_factory=lambda: _env("RATE_LIMIT_KEY_PREFIX", "ratelimit"))
    rate_limit_failure_policy: str = field(
        default_factory=lambda: _env("RATE_LIMIT_FAILURE_POLICY", "fail-open").lower()
    )
    rate_limit_atomic: bool = field(default_factory=lambda: _env_flag("RATE_LIMIT_ATOMIC", True))
    rate_limit_backend: str = field(default_factory=lambda: _env("RATE_LIMIT_BACKEND", "redis").lower())
    redis_url: str = field(default_factory=lambda: _env("REDIS_URL", "redis://localhost:6379/0"))

    def limiter_config(self) -> LimiterConfig:
        """Validate the rate limit settings into a :class:`LimiterConfig`."""
        return LimiterConfig(
            window_ms=self.rate_limit_window_ms,
            budget=self.rate_limit_requests,
            key_prefix=self.rate_limit_key_prefix,
            failure_policy=self.rate_limit_failure_policy,
            atomic=self.rate_limit_atomic,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached Settings instance for the running process."""
    return Settings()
