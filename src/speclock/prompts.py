from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

from .canonical import sha256_text
from .errors import TemplateNotFoundError
from .models import RenderedPrompt, SpecRecord

if TYPE_CHECKING:
    from .config import ProjectConfig
    from .dependencies import SymbolTable
    from .registry import Declaration

logger = logging.getLogger(__name__)

BUILTIN_PREFIX = "builtin:"
BUILTIN_TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}")


def resolve_template_id(declaration: "Declaration", config: "ProjectConfig") -> str:
    """Per-unit override, then the configured default for the kind, then the built-in."""
    if declaration.template:
        return declaration.template
    configured = config.prompts.for_kind(declaration.kind)
    if configured:
        return configured
    return f"{BUILTIN_PREFIX}{declaration.kind.value}"


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``{{ name }}`` and dotted ``{{ a.b }}`` placeholders; unknown keys render empty."""

    def lookup(path: str) -> str:
        current: Any = variables
        for part in path.split("."):
            if isinstance(current, Mapping):
                current = current.get(part)
            else:
                current = getattr(current, part, None)
            if current is None:
                return ""
        return str(current)

    return _PLACEHOLDER_RE.sub(lambda match: lookup(match.group(1)), template)


class PromptRenderer:
    """Renders a spec record through a template into prompt text plus its digest."""

    def __init__(self, root: Path, symbols: "SymbolTable | None" = None) -> None:
        self.root = root
        self.symbols = symbols

    def template_path(self, template_id: str) -> Path:
        if template_id.startswith(BUILTIN_PREFIX):
            name = template_id[len(BUILTIN_PREFIX):]
            return BUILTIN_TEMPLATE_DIR / f"{name}.prompt"
        path = Path(template_id)
        return path if path.is_absolute() else self.root / path

    def load_template(self, template_id: str, *, unit_id: str | None = None) -> str:
        path = self.template_path(template_id)
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise TemplateNotFoundError(template_id, str(path), unit_id=unit_id) from exc

    def render(self, template_id: str, context: Mapping[str, Any], *, unit_id: str | None = None) -> RenderedPrompt:
        """Raises TemplateNotFoundError if the resolved template is unreadable."""
        text = render_template(self.load_template(template_id, unit_id=unit_id), context)
        return RenderedPrompt(text=text, prompt_sha=sha256_text(text), template_id=template_id)

    def render_spec(self, record: SpecRecord) -> RenderedPrompt:
        return self.render(record.generator.template_id, self.build_context(record), unit_id=record.unit_id)

    def build_context(self, record: SpecRecord) -> dict[str, Any]:
        examples_block = "\n".join(
            f">>> {example.expression}\n{example.expected}" for example in record.examples
        )
        return {
            "unit_id": record.unit_id,
            "kind": record.kind.value,
            "name": record.name,
            "signature": record.signature,
            "docstring": record.docstring,
            "examples_block": examples_block or "(none)",
            "body": record.body or "(empty)",
            "dependencies_block": self._dependencies_block(record) or "(none)",
            "options": dict(record.options),
            "model": record.generator.model,
        }

    def _dependencies_block(self, record: SpecRecord) -> str:
        if self.symbols is None:
            return "\n".join(dep.symbol for dep in record.dependencies)
        chunks: list[str] = []
        for dep in record.dependencies:
            module, _, name = dep.symbol.rpartition(".")
            symbol = self.symbols.get(module, name)
            chunks.append(f"# {dep.symbol}\n{symbol.source}" if symbol is not None else f"# {dep.symbol}")
        return "\n\n".join(chunks)
