from __future__ import annotations


class SpeclockError(Exception):
    """Base class for every error raised by the generation pipeline."""

    def __init__(self, message: str, *, unit_id: str | None = None) -> None:
        super().__init__(message)
        self.unit_id = unit_id


class ConfigurationError(SpeclockError):
    """Invalid project configuration or missing provider credential."""


class UnknownUnitError(SpeclockError, KeyError):
    def __init__(self, unit_id: str) -> None:
        super().__init__(f"unknown unit: {unit_id}", unit_id=unit_id)

    def __str__(self) -> str:
        return str(self.args[0])


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class ExtractionError(SpeclockError):
    """A declaration could not be turned into a spec record."""


class MalformedDeclarationError(ExtractionError):
    pass


class NoGenerationMarkerFound(ExtractionError):
    pass


class DependencyCycleError(SpeclockError):
    def __init__(self, cycle: list[str], *, unit_id: str | None = None) -> None:
        super().__init__(f"dependency cycle detected: {' -> '.join(cycle)}", unit_id=unit_id)
        self.cycle = list(cycle)


class TemplateNotFoundError(SpeclockError):
    def __init__(self, template_id: str, path: str, *, unit_id: str | None = None) -> None:
        super().__init__(f"prompt template {template_id!r} is not readable at {path}", unit_id=unit_id)
        self.template_id = template_id
        self.path = path


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class ProviderError(SpeclockError):
    """A completion backend call failed."""

    retryable: bool = True


class ProviderTimeoutError(ProviderError):
    pass


class ProviderAuthError(ProviderError):
    retryable = False


class ProviderRateLimitError(ProviderError):
    pass


# ---------------------------------------------------------------------------
# Validation of generated code
# ---------------------------------------------------------------------------

class ValidationError(SpeclockError):
    """Generated code was rejected by the validator."""


class SyntaxInvalidError(ValidationError):
    pass


class NameMismatchError(ValidationError):
    pass


class SignatureMismatchError(ValidationError):
    pass


# ---------------------------------------------------------------------------
# Runtime consistency
# ---------------------------------------------------------------------------

class CheckpointMissingError(SpeclockError):
    pass


class HashMismatchError(SpeclockError):
    def __init__(self, unit_id: str, *, stored_hash: str, current_hash: str) -> None:
        super().__init__(
            f"spec hash mismatch for {unit_id}: stored={stored_hash} current={current_hash}",
            unit_id=unit_id,
        )
        self.stored_hash = stored_hash
        self.current_hash = current_hash


class TestsFailedError(SpeclockError):
    def __init__(self, unit_id: str, report: object) -> None:
        failures = getattr(report, "failures", [])
        summary = "; ".join(f"{item.source}:{item.name}: {item.message}" for item in failures[:5])
        super().__init__(f"tests failed for {unit_id}: {summary or 'no details'}", unit_id=unit_id)
        self.report = report


class LoaderFailedError(SpeclockError):
    """Raised when loading a unit whose loader state is already ``failed``."""

    def __init__(self, unit_id: str, cause: BaseException) -> None:
        super().__init__(f"loader for {unit_id} is in failed state: {cause}", unit_id=unit_id)
        self.cause = cause


class DriftWarning(UserWarning):
    """A unit's source no longer matches its active checkpoint (dev mode only)."""
