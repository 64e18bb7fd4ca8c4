from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class UnitKind(str, Enum):
    FUNCTION = "function"
    HTTP_ENDPOINT = "http_endpoint"
    CLI_COMMAND = "cli_command"


class RuntimeMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class LoaderState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESOLVING = "resolving"
    LOADED = "loaded"
    REGENERATING = "regenerating"
    FAILED = "failed"


class UnitState(str, Enum):
    OK = "ok"
    MISSING = "missing"
    DRIFTED = "drifted"
    TEMPLATE_DRIFTED = "template_drifted"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Spec record (hash input)
# ---------------------------------------------------------------------------

class DocExample(BaseModel):
    """One ``>>> expression`` / expected-output pair from a docstring."""

    model_config = ConfigDict(frozen=True)

    expression: str
    expected: str


class DependencyDigest(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    digest: str


class ParameterSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    kind: str
    annotation: str | None = None
    has_default: bool = False
    default: str | None = None


class GeneratorConfig(BaseModel):
    """Generation parameters that take part in the spec hash."""

    model_config = ConfigDict(frozen=True)

    template_id: str
    provider: str
    model: str
    temperature: float = 0.0
    seed: int | None = None
    max_output_tokens: int | None = None


class SpecRecord(BaseModel):
    """Normalized, hashable generation contract of one unit.

    ``signature`` is the canonical text of the declaration line; the
    structured ``parameters``/``return_annotation``/``is_async`` fields are
    derived from the same AST and only feed the validator.
    """

    model_config = ConfigDict(frozen=True)

    unit_id: str
    kind: UnitKind
    name: str
    signature: str
    is_async: bool = False
    parameters: tuple[ParameterSpec, ...] = ()
    return_annotation: str | None = None
    docstring: str = ""
    examples: tuple[DocExample, ...] = ()
    body: str = ""
    dependencies: tuple[DependencyDigest, ...] = ()
    generator: GeneratorConfig
    tool_version: str
    options: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class CheckpointMeta(BaseModel):
    unit_id: str
    h_chk: str
    spec_hash: str
    prompt_sha: str
    code_sha: str
    tool_version: str
    provider: str
    model: str
    template_id: str
    hash_scheme: str
    created_at: datetime
    dependencies: list[DependencyDigest] = Field(default_factory=list)


class CacheEntry(BaseModel):
    spec_hash: str
    prompt_sha: str
    response: str
    provider: str
    model: str
    created_at: datetime


class IndexDocument(BaseModel):
    version: int = 1
    active: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# In-memory results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Checkpoint:
    unit_id: str
    h_chk: str
    code: str
    meta: CheckpointMeta
    path: Path

    @property
    def impl_path(self) -> Path:
        return self.path / "impl.py"


@dataclass(frozen=True)
class RenderedPrompt:
    text: str
    prompt_sha: str
    template_id: str


@dataclass(frozen=True)
class CleanCode:
    code: str
    function_name: str


@dataclass(frozen=True)
class ExampleResult:
    expression: str
    expected: str
    passed: bool
    actual: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class GateResult:
    name: str
    passed: bool
    output: str = ""


@dataclass(frozen=True)
class TestFailure:
    __test__ = False

    source: str
    name: str
    message: str


@dataclass(frozen=True)
class TestReport:
    """Aggregated outcome of doc examples and static gates for one checkpoint."""

    __test__ = False

    unit_id: str
    h_chk: str
    examples: list[ExampleResult] = field(default_factory=list)
    gates: list[GateResult] = field(default_factory=list)
    failures: list[TestFailure] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class CompileResult:
    unit_id: str
    spec_hash: str
    h_chk: str
    prompt_sha: str
    code_sha: str
    cache_hit: bool


@dataclass(frozen=True)
class BatchItem:
    unit_id: str
    ok: bool
    h_chk: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class BatchReport:
    items: list[BatchItem]

    @property
    def ok(self) -> bool:
        return all(item.ok for item in self.items)

    def render_table(self) -> str:
        """Plain-text per-unit summary (unit, result, detail)."""
        rows = [("unit", "result", "detail")]
        for item in self.items:
            detail = item.h_chk[:12] if item.ok and item.h_chk else item.reason
            rows.append((item.unit_id, "ok" if item.ok else "failed", detail))
        width_unit = max(len(row[0]) for row in rows)
        width_result = max(len(row[1]) for row in rows)
        return "\n".join(
            f"{unit.ljust(width_unit)}  {result.ljust(width_result)}  {detail}".rstrip()
            for unit, result, detail in rows
        )


@dataclass(frozen=True)
class UnitStatus:
    unit_id: str
    state: UnitState
    current_hash: str | None = None
    active_checkpoint: str | None = None
    stored_hash: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class LoadedUnit:
    unit_id: str
    h_chk: str
    spec_hash: str
    implementation: Any
    namespace: dict[str, Any] = field(repr=False, default_factory=dict)
