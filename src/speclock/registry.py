from __future__ import annotations

import ast
import logging
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from .dependencies import SymbolTable
from .errors import ConfigurationError, MalformedDeclarationError, UnknownUnitError
from .models import UnitKind

logger = logging.getLogger(__name__)

MARKER_NAME = "Unimplemented"


class Unimplemented(NotImplementedError):
    """Generation marker.

    A declaration whose body ends in ``raise Unimplemented`` is handed to the
    generator. The marker is detected structurally at parse time; raising it
    at runtime only means the unit was called before a checkpoint was loaded.
    """


def is_generation_marker(stmt: ast.stmt) -> bool:
    """True for ``raise Unimplemented``, ``raise Unimplemented(...)`` and qualified forms."""
    if not isinstance(stmt, ast.Raise) or stmt.exc is None:
        return False
    target = stmt.exc.func if isinstance(stmt.exc, ast.Call) else stmt.exc
    if isinstance(target, ast.Name):
        return target.id == MARKER_NAME
    if isinstance(target, ast.Attribute):
        return target.attr == MARKER_NAME
    return False


def _has_marker(node: ast.FunctionDef | ast.AsyncFunctionDef) -> bool:
    return bool(node.body) and is_generation_marker(node.body[-1])


@dataclass(frozen=True)
class Declaration:
    """Explicit registration record for one generateable unit.

    ``options`` carries kind-specific settings such as ``method``/``path``
    for HTTP endpoints or ``command`` for CLI commands.
    """

    unit_id: str
    kind: UnitKind
    module: str
    name: str
    source: str
    source_path: Path | None = None
    provider: str | None = None
    template: str | None = None
    model: str | None = None
    depends_on: tuple[str, ...] = ()
    options: Mapping[str, str] = field(default_factory=dict)


def make_unit_id(module: str, name: str) -> str:
    return f"{module}/{name}"


def declare(
    module: str,
    source: str,
    *,
    kind: UnitKind | str = UnitKind.FUNCTION,
    source_path: Path | None = None,
    provider: str | None = None,
    template: str | None = None,
    model: str | None = None,
    depends_on: Iterable[str] = (),
    options: Mapping[str, str] | None = None,
) -> Declaration:
    """Build a Declaration for the first function defined in ``source``.

    Raises:
        MalformedDeclarationError: If the source does not define a function.
    """
    try:
        tree = ast.parse(textwrap.dedent(source))
    except SyntaxError as exc:
        raise MalformedDeclarationError(f"declaration in {module} does not parse: {exc}") from exc
    node = next(
        (item for item in tree.body if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))),
        None,
    )
    if node is None:
        raise MalformedDeclarationError(f"no function declaration found in {module} source")
    return Declaration(
        unit_id=make_unit_id(module, node.name),
        kind=UnitKind(kind),
        module=module,
        name=node.name,
        source=source,
        source_path=source_path,
        provider=provider,
        template=template,
        model=model,
        depends_on=tuple(depends_on),
        options=MappingProxyType(dict(options or {})),
    )


def declarations_from_source(
    module: str,
    source: str,
    *,
    source_path: Path | None = None,
    metadata: Mapping[str, Mapping[str, Any]] | None = None,
) -> list[Declaration]:
    """Declare every top-level function of a module whose body ends in the marker.

    ``metadata`` maps a function name to keyword overrides for ``declare``
    (``kind``, ``provider``, ``template``, ``model``, ``depends_on``,
    ``options``).
    """
    tree = ast.parse(source, filename=str(source_path or module))
    overrides = metadata or {}
    declarations: list[Declaration] = []
    for node in tree.body:
        if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) or not _has_marker(node):
            continue
        segment = ast.get_source_segment(source, node)
        if segment is None:
            raise MalformedDeclarationError(f"cannot recover source for {module}.{node.name}")
        declarations.append(
            declare(module, segment, source_path=source_path, **dict(overrides.get(node.name, {})))
        )
    return declarations


def module_name_for(path: Path, root: Path) -> str:
    relative = path.resolve().relative_to(root.resolve()).with_suffix("")
    parts = [part for part in relative.parts if part != "__init__"]
    if relative.parts and relative.parts[0] == "src":
        parts = parts[1:]
    return ".".join(parts)


class UnitRegistry:
    """Immutable collection of declared units plus the project symbol table.

    Built once by a registration pass and passed by reference to the
    compiler and the runtime loader.
    """

    def __init__(self, declarations: Iterable[Declaration], symbols: SymbolTable | None = None) -> None:
        units: dict[str, Declaration] = {}
        for declaration in declarations:
            if declaration.unit_id in units:
                raise ValueError(f"duplicate unit declaration: {declaration.unit_id}")
            units[declaration.unit_id] = declaration
        self._units: Mapping[str, Declaration] = MappingProxyType(dict(sorted(units.items())))
        self.symbols = symbols if symbols is not None else SymbolTable()

    @classmethod
    def from_sources(cls, sources: Mapping[str, str], *, metadata: Mapping[str, Mapping[str, Any]] | None = None) -> "UnitRegistry":
        """Register every marked function in ``{module name: source}``.

        ``metadata`` is keyed by unit id.

        Raises:
            ConfigurationError: If ``metadata`` names a unit that is not declared.
        """
        declarations: list[Declaration] = []
        for module in sorted(sources):
            per_module = {
                unit_id.split("/", 1)[1]: values
                for unit_id, values in (metadata or {}).items()
                if unit_id.split("/", 1)[0] == module
            }
            declarations.extend(declarations_from_source(module, sources[module], metadata=per_module))
        unknown = sorted(set(metadata or {}) - {declaration.unit_id for declaration in declarations})
        if unknown:
            raise ConfigurationError(f"metadata given for undeclared unit(s): {', '.join(unknown)}")
        return cls(declarations, SymbolTable.from_sources(sources))

    @classmethod
    def from_files(
        cls,
        paths: Iterable[Path],
        *,
        root: Path,
        metadata: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> "UnitRegistry":
        sources: dict[str, str] = {}
        for path in paths:
            module = module_name_for(path, root)
            sources[module] = path.read_text(encoding="utf-8")
        registry = cls.from_sources(sources, metadata=metadata)
        logger.info("Registered %d unit(s) from %d source file(s)", len(registry), len(sources))
        return registry

    def get(self, unit_id: str) -> Declaration:
        try:
            return self._units[unit_id]
        except KeyError:
            raise UnknownUnitError(unit_id) from None

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __iter__(self) -> Iterator[Declaration]:
        return iter(self._units.values())

    def __len__(self) -> int:
        return len(self._units)

    def unit_ids(self) -> list[str]:
        return list(self._units)
