from __future__ import annotations

import ast
import re

from .errors import NameMismatchError, SignatureMismatchError, SyntaxInvalidError
from .extractor import parameter_specs
from .models import CleanCode, SpecRecord

_FENCE_OPEN_RE = re.compile(r"^\s*(```|~~~)[\w+.-]*[ \t]*$")
_FENCE_CLOSE_RE = re.compile(r"^\s*(```|~~~)\s*$")


def strip_fences(raw_text: str) -> str:
    """Return the code inside the first Markdown fence, or the whole text when unfenced.

    Prose around a fenced block is dropped along with the fence itself.
    """
    lines = raw_text.splitlines()
    start = next((idx for idx, line in enumerate(lines) if _FENCE_OPEN_RE.match(line)), None)
    if start is not None:
        end = next(
            (idx for idx in range(start + 1, len(lines)) if _FENCE_CLOSE_RE.match(lines[idx])),
            None,
        )
        lines = lines[start + 1:end] if end is not None else lines[start + 1:]
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines) + "\n"


def validate(raw_text: str, spec: SpecRecord) -> CleanCode:
    """Check generated code against the declared unit.

    Raises:
        SyntaxInvalidError: If the stripped text does not parse.
        NameMismatchError: If no top-level function carries the unit's name.
        SignatureMismatchError: If parameters, return annotation or async-ness differ.
    """
    code = strip_fences(raw_text)
    try:
        tree = ast.parse(code)
    except SyntaxError as exc:
        raise SyntaxInvalidError(
            f"generated code for {spec.unit_id} does not parse: {exc.msg} (line {exc.lineno})",
            unit_id=spec.unit_id,
        ) from exc

    functions = {
        node.name: node
        for node in tree.body
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
    }
    node = functions.get(spec.name)
    if node is None:
        found = ", ".join(sorted(functions)) or "<none>"
        raise NameMismatchError(
            f"generated code for {spec.unit_id} defines no function {spec.name!r} (found: {found})",
            unit_id=spec.unit_id,
        )

    _check_signature(node, spec)
    return CleanCode(code=code, function_name=spec.name)


def _check_signature(node: ast.FunctionDef | ast.AsyncFunctionDef, spec: SpecRecord) -> None:
    problems: list[str] = []
    if isinstance(node, ast.AsyncFunctionDef) != spec.is_async:
        problems.append("async-ness differs")

    generated = parameter_specs(node.args)
    expected = spec.parameters
    if len(generated) != len(expected):
        problems.append(f"expected {len(expected)} parameter(s), got {len(generated)}")
    for want, got in zip(expected, generated):
        if want.name != got.name or want.kind != got.kind:
            problems.append(f"parameter {want.name} ({want.kind}) became {got.name} ({got.kind})")
        elif want.has_default != got.has_default:
            problems.append(f"parameter {want.name} default presence differs")
        elif want.default is not None and got.default is not None and want.default != got.default:
            problems.append(f"parameter {want.name} defaults to {got.default}, expected {want.default}")
        elif want.annotation and got.annotation and want.annotation != got.annotation:
            problems.append(f"parameter {want.name} annotated {got.annotation}, expected {want.annotation}")

    returns = ast.unparse(node.returns) if node.returns is not None else None
    if spec.return_annotation and returns and spec.return_annotation != returns:
        problems.append(f"return annotation {returns}, expected {spec.return_annotation}")

    if problems:
        raise SignatureMismatchError(
            f"generated {spec.name} does not match {spec.signature!r}: {'; '.join(problems)}",
            unit_id=spec.unit_id,
        )
