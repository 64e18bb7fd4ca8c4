"""Spec and checkpoint hashing.

The spec hash serializes the record as an RFC 8785 canonical JSON array of
``[field, value]`` pairs in the order given by ``SPEC_HASH_FIELDS``. The
array form keeps field order explicit and unambiguous. Changing the order
or the set of fields changes every hash, so it must come with a new
``HASH_SCHEME_VERSION``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

from .canonical import is_hex_digest, sha256_text, to_canonical_json
from .models import SpecRecord

HASH_SCHEME_VERSION = "speclock-spec-v1"

SPEC_HASH_FIELDS: tuple[str, ...] = (
    "scheme",
    "unit_id",
    "kind",
    "options",
    "signature",
    "docstring",
    "examples",
    "body",
    "tool_version",
    "template_id",
    "provider",
    "model",
    "temperature",
    "seed",
    "max_output_tokens",
    "dependencies",
)


def tool_version() -> str:
    try:
        return version("speclock")
    except PackageNotFoundError:
        return "0.0.0"


def _field_values(record: SpecRecord) -> dict[str, object]:
    generator = record.generator
    return {
        "scheme": HASH_SCHEME_VERSION,
        "unit_id": record.unit_id,
        "kind": record.kind,
        "options": dict(sorted(record.options.items())),
        "signature": record.signature,
        "docstring": record.docstring,
        "examples": [[example.expression, example.expected] for example in record.examples],
        "body": record.body,
        "tool_version": record.tool_version,
        "template_id": generator.template_id,
        "provider": generator.provider,
        "model": generator.model,
        "temperature": generator.temperature,
        "seed": generator.seed,
        "max_output_tokens": generator.max_output_tokens,
        "dependencies": [[dep.symbol, dep.digest] for dep in record.dependencies],
    }


def serialize_spec(record: SpecRecord) -> str:
    """Exact text that ``spec_hash`` digests."""
    values = _field_values(record)
    return to_canonical_json([[name, values[name]] for name in SPEC_HASH_FIELDS])


def spec_hash(record: SpecRecord) -> str:
    return sha256_text(serialize_spec(record))


def checkpoint_hash(spec_sha: str, prompt_sha: str, code_sha: str) -> str:
    """H_chk over the three hex digests joined by newlines.

    Raises:
        ValueError: If any input is not a lower-case SHA-256 hex digest.
    """
    for label, value in (("spec hash", spec_sha), ("prompt_sha", prompt_sha), ("code_sha", code_sha)):
        if not is_hex_digest(value):
            raise ValueError(f"{label} must be a 64-char lower-case hex digest, got: {value!r}")
    return sha256_text("\n".join((spec_sha, prompt_sha, code_sha)))
