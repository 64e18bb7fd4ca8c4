from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator

from .errors import ConfigurationError
from .models import RuntimeMode, UnitKind

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "default"


class ProviderDefinition(BaseModel):
    """One named completion backend."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["openai"] = "openai"
    model: str = "gpt-4o-mini"
    base_url: str | None = None
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    seed: int | None = 42
    timeout: float = Field(default=60.0, gt=0)
    max_output_tokens: int | None = Field(default=2048, gt=0)
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)

    @field_validator("model", "api_key_env")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must be non-empty")
        return value


class PathsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    checkpoints: str = ".speclock/checkpoints"
    cache: str = ".speclock/cache"
    index: str = ".speclock/index.json"


class PromptsConfig(BaseModel):
    """Per-kind template overrides; ``None`` falls through to the built-in template."""

    model_config = ConfigDict(extra="forbid")

    function: str | None = None
    http_endpoint: str | None = None
    cli_command: str | None = None

    def for_kind(self, kind: UnitKind) -> str | None:
        return getattr(self, kind.value)


class GateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    command: list[str]

    @field_validator("command")
    @classmethod
    def _command_non_empty(cls, value: list[str]) -> list[str]:
        if not value or not value[0].strip():
            raise ValueError("gate command must name an executable")
        return value


class UnitOverride(BaseModel):
    """Declaration metadata for one unit, keyed by unit id under ``units``."""

    model_config = ConfigDict(extra="forbid")

    kind: UnitKind | None = None
    provider: str | None = None
    template: str | None = None
    model: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    options: dict[str, str] = Field(default_factory=dict)

    def overrides(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, exclude_none=True)


class SandboxConfig(BaseModel):
    # Parsed and recorded only; sandboxed execution is not implemented.
    enabled: bool = False


class ProjectSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    env: RuntimeMode = RuntimeMode.DEV
    sources: list[str] = Field(default_factory=list)


class ProjectConfig(BaseModel):
    """Validated contents of ``speclock.json``.

    Every section is optional. Relative paths resolve against ``root``, the
    directory that held the config file (or the directory passed to
    ``load`` when no file exists).
    """

    model_config = ConfigDict(extra="forbid")

    project: ProjectSection = Field(default_factory=ProjectSection)
    provider: dict[str, ProviderDefinition] = Field(
        default_factory=lambda: {DEFAULT_PROVIDER: ProviderDefinition()}
    )
    paths: PathsConfig = Field(default_factory=PathsConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    gates: list[GateConfig] = Field(default_factory=list)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    units: dict[str, UnitOverride] = Field(default_factory=dict)

    _root: Path = PrivateAttr(default_factory=Path.cwd)

    @classmethod
    def load(cls, path: Path, *, required: bool = False) -> "ProjectConfig":
        """Load and validate a config file.

        Raises:
            ConfigurationError: If the file is required but missing, is not
                valid JSON, or fails validation.
        """
        if not path.is_file():
            if required:
                raise ConfigurationError(f"config file not found: {path}")
            logger.debug("No config at %s, using defaults", path)
            config = cls()
            config._root = path.parent.resolve()
            return config

        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"config at {path} is not valid JSON: {exc}") from exc
        try:
            config = cls.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"config at {path} failed validation: {exc}") from exc
        config._root = path.parent.resolve()
        return config

    @classmethod
    def for_root(cls, root: Path, **sections: object) -> "ProjectConfig":
        config = cls.model_validate(sections)
        config._root = root.resolve()
        return config

    @property
    def root(self) -> Path:
        return self._root

    def resolve_path(self, value: str) -> Path:
        path = Path(value)
        return path if path.is_absolute() else self._root / path

    @property
    def checkpoints_root(self) -> Path:
        return self.resolve_path(self.paths.checkpoints)

    @property
    def cache_root(self) -> Path:
        return self.resolve_path(self.paths.cache)

    @property
    def index_path(self) -> Path:
        return self.resolve_path(self.paths.index)

    def unit_metadata(self) -> dict[str, dict[str, Any]]:
        """Per-unit keyword overrides for declaration, keyed by unit id."""
        return {unit_id: override.overrides() for unit_id, override in self.units.items()}

    def provider_definition(self, name: str) -> ProviderDefinition:
        definition = self.provider.get(name)
        if definition is None:
            available = ", ".join(sorted(self.provider)) or "<none>"
            raise ConfigurationError(f"Unknown provider {name!r}. Configured providers: {available}")
        return definition
