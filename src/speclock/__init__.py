from .cache import CacheStore
from .checkpoints import CheckpointStore
from .config import ProjectConfig, ProviderDefinition
from .dependencies import DependencyResolver, SymbolTable
from .errors import (
    CheckpointMissingError,
    ConfigurationError,
    DependencyCycleError,
    DriftWarning,
    ExtractionError,
    HashMismatchError,
    LoaderFailedError,
    MalformedDeclarationError,
    NameMismatchError,
    NoGenerationMarkerFound,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    SignatureMismatchError,
    SpeclockError,
    SyntaxInvalidError,
    TemplateNotFoundError,
    TestsFailedError,
    UnknownUnitError,
    ValidationError,
)
from .extractor import SpecExtractor
from .harness import CommandGate, TestHarness
from .hashing import HASH_SCHEME_VERSION, checkpoint_hash, serialize_spec, spec_hash, tool_version
from .index import ActiveIndex
from .loader import RuntimeLoader
from .models import (
    BatchReport,
    Checkpoint,
    CheckpointMeta,
    CompileResult,
    LoadedUnit,
    LoaderState,
    RuntimeMode,
    SpecRecord,
    TestReport,
    UnitKind,
    UnitState,
    UnitStatus,
)
from .pipeline import Compiler, Stores
from .prompts import PromptRenderer
from .providers import GenerationParams, OpenAIChatProvider, Provider, RetryingProvider, build_provider
from .registry import Declaration, Unimplemented, UnitRegistry, declarations_from_source, declare
from .settings import RuntimeSettings
from .validator import validate


def get_version() -> str:
    return tool_version()


__all__ = [
    "ActiveIndex",
    "BatchReport",
    "CacheStore",
    "Checkpoint",
    "CheckpointMeta",
    "CheckpointMissingError",
    "CheckpointStore",
    "CommandGate",
    "CompileResult",
    "Compiler",
    "ConfigurationError",
    "Declaration",
    "DependencyCycleError",
    "DependencyResolver",
    "DriftWarning",
    "ExtractionError",
    "GenerationParams",
    "HASH_SCHEME_VERSION",
    "HashMismatchError",
    "LoadedUnit",
    "LoaderFailedError",
    "LoaderState",
    "MalformedDeclarationError",
    "NameMismatchError",
    "NoGenerationMarkerFound",
    "OpenAIChatProvider",
    "ProjectConfig",
    "PromptRenderer",
    "Provider",
    "ProviderAuthError",
    "ProviderDefinition",
    "ProviderError",
    "ProviderRateLimitError",
    "ProviderTimeoutError",
    "RetryingProvider",
    "RuntimeLoader",
    "RuntimeMode",
    "RuntimeSettings",
    "SignatureMismatchError",
    "SpecExtractor",
    "SpecRecord",
    "SpeclockError",
    "Stores",
    "SymbolTable",
    "SyntaxInvalidError",
    "TemplateNotFoundError",
    "TestHarness",
    "TestReport",
    "TestsFailedError",
    "Unimplemented",
    "UnitKind",
    "UnitRegistry",
    "UnitState",
    "UnitStatus",
    "UnknownUnitError",
    "ValidationError",
    "build_provider",
    "checkpoint_hash",
    "declarations_from_source",
    "declare",
    "get_version",
    "serialize_spec",
    "spec_hash",
    "validate",
]
