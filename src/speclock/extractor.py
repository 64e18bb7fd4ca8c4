from __future__ import annotations

import ast
import doctest
import inspect
import logging
import textwrap

from .config import DEFAULT_PROVIDER, ProjectConfig
from .dependencies import DependencyResolver, SymbolTable, bound_names, loaded_names
from .errors import MalformedDeclarationError, NoGenerationMarkerFound
from .hashing import tool_version as installed_tool_version
from .models import DocExample, GeneratorConfig, ParameterSpec, SpecRecord
from .prompts import resolve_template_id
from .registry import Declaration, is_generation_marker

logger = logging.getLogger(__name__)

_DOCTEST_PARSER = doctest.DocTestParser()


def _parse_declaration(declaration: Declaration) -> ast.FunctionDef | ast.AsyncFunctionDef:
    try:
        tree = ast.parse(textwrap.dedent(declaration.source))
    except SyntaxError as exc:
        raise MalformedDeclarationError(
            f"declaration {declaration.unit_id} does not parse: {exc.msg} (line {exc.lineno})",
            unit_id=declaration.unit_id,
        ) from exc
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            return node
    raise MalformedDeclarationError(
        f"declaration {declaration.unit_id} has no function signature",
        unit_id=declaration.unit_id,
    )


def render_signature(node: ast.FunctionDef | ast.AsyncFunctionDef) -> str:
    """Canonical one-line signature; decorators, comments and layout are dropped."""
    prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
    signature = f"{prefix} {node.name}({ast.unparse(node.args)})"
    if node.returns is not None:
        signature += f" -> {ast.unparse(node.returns)}"
    return signature


def parameter_specs(args: ast.arguments) -> tuple[ParameterSpec, ...]:
    params: list[ParameterSpec] = []
    positional = [*args.posonlyargs, *args.args]
    first_default = len(positional) - len(args.defaults)
    for idx, arg in enumerate(positional):
        params.append(
            ParameterSpec(
                name=arg.arg,
                kind="positional_only" if idx < len(args.posonlyargs) else "positional_or_keyword",
                annotation=ast.unparse(arg.annotation) if arg.annotation is not None else None,
                has_default=idx >= first_default,
                default=ast.unparse(args.defaults[idx - first_default]) if idx >= first_default else None,
            )
        )
    if args.vararg is not None:
        params.append(_variadic(args.vararg, "var_positional"))
    for arg, default in zip(args.kwonlyargs, args.kw_defaults):
        params.append(
            ParameterSpec(
                name=arg.arg,
                kind="keyword_only",
                annotation=ast.unparse(arg.annotation) if arg.annotation is not None else None,
                has_default=default is not None,
                default=ast.unparse(default) if default is not None else None,
            )
        )
    if args.kwarg is not None:
        params.append(_variadic(args.kwarg, "var_keyword"))
    return tuple(params)


def _variadic(arg: ast.arg, kind: str) -> ParameterSpec:
    return ParameterSpec(
        name=arg.arg,
        kind=kind,
        annotation=ast.unparse(arg.annotation) if arg.annotation is not None else None,
    )


def normalize_docstring(raw: str | None) -> str:
    if not raw:
        return ""
    lines = [line.rstrip() for line in inspect.cleandoc(raw).splitlines()]
    return "\n".join(lines).strip("\n")


def parse_examples(docstring: str) -> tuple[DocExample, ...]:
    """Doctest-style examples in declaration order."""
    return tuple(
        DocExample(expression=example.source.strip(), expected=example.want.rstrip("\n"))
        for example in _DOCTEST_PARSER.get_examples(docstring)
    )


class SpecExtractor:
    """Turns a Declaration into a SpecRecord.

    Extraction reads nothing but the declaration, the project config and the
    symbol table, so two extractions of the same inputs are identical.
    """

    def __init__(self, config: ProjectConfig, symbols: SymbolTable, *, tool_version: str | None = None) -> None:
        self.config = config
        self.resolver = DependencyResolver(symbols)
        self.tool_version = tool_version if tool_version is not None else installed_tool_version()

    def extract(self, declaration: Declaration) -> SpecRecord:
        """Build the spec record for one unit.

        Raises:
            MalformedDeclarationError: If the source is not a parseable function
                or a docstring example is malformed.
            NoGenerationMarkerFound: If the body does not end in the marker.
            DependencyCycleError: If referenced project symbols form a cycle.
            ConfigurationError: If the unit names an unknown provider.
        """
        node = _parse_declaration(declaration)
        if not node.body or not is_generation_marker(node.body[-1]):
            raise NoGenerationMarkerFound(
                f"{declaration.unit_id} does not end in 'raise Unimplemented'",
                unit_id=declaration.unit_id,
            )

        docstring = normalize_docstring(ast.get_docstring(node, clean=False))
        statements = node.body[:-1]
        if statements and ast.get_docstring(node, clean=False) is not None:
            statements = statements[1:]
        body = "\n".join(ast.unparse(stmt) for stmt in statements)
        parameters = parameter_specs(node.args)
        try:
            examples = parse_examples(docstring)
        except ValueError as exc:
            raise MalformedDeclarationError(
                f"{declaration.unit_id} has a malformed docstring example: {exc}",
                unit_id=declaration.unit_id,
            ) from exc

        referenced = loaded_names(node.args)
        if node.returns is not None:
            referenced |= loaded_names(node.returns)
        local = {param.name for param in parameters} | {node.name}
        for stmt in statements:
            referenced |= loaded_names(stmt)
            local |= bound_names(stmt)
        referenced = (referenced - local) | set(declaration.depends_on)
        dependencies = self.resolver.resolve(referenced, module=declaration.module, unit_id=declaration.unit_id)

        record = SpecRecord(
            unit_id=declaration.unit_id,
            kind=declaration.kind,
            name=node.name,
            signature=render_signature(node),
            is_async=isinstance(node, ast.AsyncFunctionDef),
            parameters=parameters,
            return_annotation=ast.unparse(node.returns) if node.returns is not None else None,
            docstring=docstring,
            examples=examples,
            body=body,
            dependencies=tuple(dependencies),
            generator=self._generator_config(declaration),
            tool_version=self.tool_version,
            options=dict(declaration.options),
        )
        logger.debug("Extracted %s with %d example(s)", declaration.unit_id, len(record.examples))
        return record

    def _generator_config(self, declaration: Declaration) -> GeneratorConfig:
        provider_name = declaration.provider or DEFAULT_PROVIDER
        definition = self.config.provider_definition(provider_name)
        return GeneratorConfig(
            template_id=resolve_template_id(declaration, self.config),
            provider=provider_name,
            model=declaration.model or definition.model,
            temperature=definition.temperature,
            seed=definition.seed,
            max_output_tokens=definition.max_output_tokens,
        )
