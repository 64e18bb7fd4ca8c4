from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from .models import RuntimeMode

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Process-level settings loaded from environment with fail-fast validation.

    Read once at startup; the runtime loader takes its mode from here and
    never re-reads the environment afterwards.
    """

    env: str | None = None
    config_path: str = "speclock.json"
    workers: int = 4
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            env=os.getenv("SPECLOCK_ENV"),
            config_path=os.getenv("SPECLOCK_CONFIG", "speclock.json"),
            workers=_get_env_int("SPECLOCK_WORKERS", default=4, minimum=1, maximum=64),
            log_level=os.getenv("SPECLOCK_LOG_LEVEL", "INFO"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        env: str | None = None
        if self.env is not None and self.env.strip():
            env = self.env.strip().lower()
            if env not in {mode.value for mode in RuntimeMode}:
                raise ValueError(f"SPECLOCK_ENV must be one of: dev, prod; got: {self.env!r}")

        if not self.config_path.strip():
            raise ValueError("SPECLOCK_CONFIG must be non-empty")

        log_level = self.log_level.strip().upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(f"SPECLOCK_LOG_LEVEL must be one of: {', '.join(sorted(_LOG_LEVELS))}")

        return RuntimeSettings(
            env=env,
            config_path=self.config_path.strip(),
            workers=self.workers,
            log_level=log_level,
        )

    def resolve_mode(self, default: RuntimeMode | str = RuntimeMode.DEV) -> RuntimeMode:
        """Environment wins over the project default."""
        if self.env is not None:
            return RuntimeMode(self.env)
        return RuntimeMode(default)

    def config_file(self, repo_root: Path) -> Path:
        path = Path(self.config_path)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


@lru_cache(maxsize=1)
def process_settings() -> RuntimeSettings:
    """Settings read once per process; tests call ``process_settings.cache_clear()``."""
    return RuntimeSettings.from_env()
