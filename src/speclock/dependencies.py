from __future__ import annotations

import ast
import hashlib
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from .errors import DependencyCycleError
from .models import DependencyDigest

logger = logging.getLogger(__name__)

_MAX_REEXPORT_HOPS = 16


@dataclass(frozen=True)
class Symbol:
    """A top-level definition that generated code may depend on."""

    module: str
    name: str
    source: str
    references: frozenset[str]

    @property
    def qualified_name(self) -> str:
        return f"{self.module}.{self.name}"


def loaded_names(node: ast.AST) -> set[str]:
    """Every bare name read anywhere under ``node``."""
    return {
        child.id
        for child in ast.walk(node)
        if isinstance(child, ast.Name) and isinstance(child.ctx, ast.Load)
    }


def bound_names(node: ast.AST) -> set[str]:
    """Names bound locally under ``node``: parameters, assignment targets, nested defs, imports.

    Names declared ``global`` or ``nonlocal`` are not local and are left out.
    """
    names: set[str] = set()
    escaped: set[str] = set()
    for child in ast.walk(node):
        if isinstance(child, ast.Name) and isinstance(child.ctx, (ast.Store, ast.Del)):
            names.add(child.id)
        elif isinstance(child, ast.arg):
            names.add(child.arg)
        elif isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)) and child is not node:
            names.add(child.name)
        elif isinstance(child, ast.alias):
            names.add(child.asname or child.name.split(".")[0])
        elif isinstance(child, ast.ExceptHandler) and child.name:
            names.add(child.name)
        elif isinstance(child, (ast.Global, ast.Nonlocal)):
            escaped.update(child.names)
    return names - escaped


def _free_names(node: ast.AST) -> set[str]:
    return loaded_names(node) - bound_names(node)


def _import_source(module: str, node: ast.ImportFrom) -> str | None:
    if node.level == 0:
        return node.module
    package = module.split(".")
    if node.level > len(package):
        return None
    base = package[: len(package) - node.level]
    if node.module:
        base.append(node.module)
    return ".".join(base) or None


def _symbols_from_module(module: str, tree: ast.Module) -> Iterable[Symbol]:
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            yield Symbol(
                module=module,
                name=node.name,
                source=ast.unparse(node),
                references=frozenset(_free_names(node) - {node.name}),
            )
        elif isinstance(node, (ast.Assign, ast.AnnAssign)):
            targets = node.targets if isinstance(node, ast.Assign) else [node.target]
            value_refs = loaded_names(node.value) if node.value is not None else set()
            if isinstance(node, ast.AnnAssign):
                value_refs |= loaded_names(node.annotation)
            for target in targets:
                if isinstance(target, ast.Name):
                    yield Symbol(
                        module=module,
                        name=target.id,
                        source=ast.unparse(node),
                        references=frozenset(value_refs - {target.id}),
                    )


def _imports_from_module(module: str, tree: ast.Module) -> dict[str, tuple[str, str]]:
    """``{local name: (source module, original name)}`` for top-level ``from ... import``."""
    imports: dict[str, tuple[str, str]] = {}
    for node in tree.body:
        if not isinstance(node, ast.ImportFrom):
            continue
        source = _import_source(module, node)
        if source is None:
            continue
        for alias in node.names:
            if alias.name == "*":
                continue
            imports[alias.asname or alias.name] = (source, alias.name)
    return imports


class SymbolTable:
    """Immutable project symbol table.

    A name resolves within its module: a same-module definition first (later
    definitions shadow earlier ones, as in Python), then an explicit
    ``from module import name`` of a project module. Names are never
    resolved against modules the referencing module does not import.
    """

    def __init__(
        self,
        symbols: Iterable[Symbol] = (),
        imports: Mapping[str, Mapping[str, tuple[str, str]]] | None = None,
    ) -> None:
        by_module: dict[str, dict[str, Symbol]] = {}
        for symbol in symbols:
            by_module.setdefault(symbol.module, {})[symbol.name] = symbol
        self._by_module: Mapping[str, Mapping[str, Symbol]] = MappingProxyType(
            {module: MappingProxyType(names) for module, names in by_module.items()}
        )
        self._imports: Mapping[str, Mapping[str, tuple[str, str]]] = MappingProxyType(
            {module: MappingProxyType(dict(entries)) for module, entries in (imports or {}).items()}
        )

    @classmethod
    def from_sources(cls, sources: Mapping[str, str]) -> "SymbolTable":
        """Build a table from ``{module name: module source}``.

        Raises:
            SyntaxError: If any module source does not parse.
        """
        symbols: list[Symbol] = []
        imports: dict[str, dict[str, tuple[str, str]]] = {}
        for module in sorted(sources):
            tree = ast.parse(sources[module], filename=module)
            symbols.extend(_symbols_from_module(module, tree))
            imports[module] = _imports_from_module(module, tree)
        return cls(symbols, imports)

    def __len__(self) -> int:
        return sum(len(names) for names in self._by_module.values())

    def get(self, module: str, name: str) -> Symbol | None:
        """The definition of ``name`` in ``module`` itself, ignoring imports."""
        return self._by_module.get(module, {}).get(name)

    def lookup(self, name: str, module: str) -> Symbol | None:
        """Resolve ``name`` as seen from ``module``; re-exports are followed."""
        seen: set[tuple[str, str]] = set()
        for _ in range(_MAX_REEXPORT_HOPS):
            if (module, name) in seen:
                return None
            seen.add((module, name))
            symbol = self.get(module, name)
            if symbol is not None:
                return symbol
            imported = self._imports.get(module, {}).get(name)
            if imported is None:
                return None
            module, name = imported
        return None


class DependencyResolver:
    """Transitive content digests for referenced project symbols.

    A symbol's digest covers its own normalized source plus the digests of
    everything it references, so editing a transitive dependency changes the
    digest of every dependent. Cycles fail closed with DependencyCycleError.
    """

    def __init__(self, table: SymbolTable) -> None:
        self.table = table
        self._memo: dict[str, str] = {}

    def resolve(self, names: Iterable[str], *, module: str, unit_id: str | None = None) -> list[DependencyDigest]:
        resolved: dict[str, DependencyDigest] = {}
        for name in sorted(set(names)):
            symbol = self.table.lookup(name, module)
            if symbol is None:
                continue
            digest = self._digest(symbol, path=[], unit_id=unit_id)
            resolved[symbol.qualified_name] = DependencyDigest(symbol=symbol.qualified_name, digest=digest)
        return [resolved[key] for key in sorted(resolved)]

    def _digest(self, symbol: Symbol, *, path: list[str], unit_id: str | None) -> str:
        key = symbol.qualified_name
        cached = self._memo.get(key)
        if cached is not None:
            return cached
        if key in path:
            cycle = path[path.index(key):] + [key]
            raise DependencyCycleError(cycle, unit_id=unit_id)

        path.append(key)
        child_digests: list[str] = []
        for ref in sorted(symbol.references):
            dep = self.table.lookup(ref, symbol.module)
            if dep is None:
                continue
            child_digests.append(f"{dep.qualified_name}={self._digest(dep, path=path, unit_id=unit_id)}")
        path.pop()

        hasher = hashlib.sha256()
        hasher.update(symbol.source.encode("utf-8"))
        for item in child_digests:
            hasher.update(b"\n")
            hasher.update(item.encode("utf-8"))
        digest = hasher.hexdigest()
        self._memo[key] = digest
        logger.debug("Digested dependency %s -> %s", key, digest[:12])
        return digest
