from __future__ import annotations

import ast
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Sequence

from .config import GateConfig
from .models import Checkpoint, ExampleResult, GateResult, SpecRecord, TestFailure, TestReport

logger = logging.getLogger(__name__)

_TRACEBACK_HEADER = "Traceback (most recent call last):"
_GATE_TIMEOUT_SECONDS = 300


def execute_checkpoint(checkpoint: Checkpoint, base_namespace: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Run a checkpoint's code in a fresh module namespace and return that namespace.

    ``base_namespace`` (typically the declaring module's globals) is copied
    first so generated code can see project symbols it was prompted with.
    """
    namespace: dict[str, Any] = dict(base_namespace or {})
    namespace["__name__"] = f"speclock_impl.{checkpoint.unit_id.replace('/', '.')}"
    namespace["__file__"] = str(checkpoint.impl_path)
    code = compile(checkpoint.code, str(checkpoint.impl_path), "exec")
    exec(code, namespace)  # noqa: S102 - executing a validated checkpoint is the loader's job.
    return namespace


class StaticGate(Protocol):
    name: str

    def check(self, checkpoint: Checkpoint) -> GateResult:
        ...


@dataclass(frozen=True)
class CommandGate:
    """External static check (linter, type checker) run against ``impl.py``; exit code 0 passes."""

    name: str
    command: tuple[str, ...]
    timeout: float = _GATE_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, config: GateConfig) -> "CommandGate":
        return cls(name=config.name, command=tuple(config.command))

    def check(self, checkpoint: Checkpoint) -> GateResult:
        try:
            completed = subprocess.run(
                [*self.command, str(checkpoint.impl_path)],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError:
            return GateResult(name=self.name, passed=False, output=f"executable not found: {self.command[0]}")
        except subprocess.TimeoutExpired:
            return GateResult(name=self.name, passed=False, output=f"timed out after {self.timeout}s")
        output = (completed.stdout + completed.stderr).strip()
        return GateResult(name=self.name, passed=completed.returncode == 0, output=output)


def _expected_exception(expected: str) -> str | None:
    lines = [line for line in expected.splitlines() if line.strip()]
    if not lines or lines[0].strip() != _TRACEBACK_HEADER:
        return None
    return lines[-1].split(":", 1)[0].strip().rsplit(".", 1)[-1]


def _matches(result: Any, expected: str) -> bool:
    try:
        return result == ast.literal_eval(expected)
    except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
        return repr(result) == expected.strip()


def run_example(expression: str, expected: str, namespace: dict[str, Any]) -> ExampleResult:
    exception_name = _expected_exception(expected)
    try:
        if not expected.strip():
            exec(compile(expression, "<example>", "exec"), namespace)  # noqa: S102
            return ExampleResult(expression=expression, expected=expected, passed=True)
        result = eval(compile(expression, "<example>", "eval"), namespace)  # noqa: S307
    except Exception as exc:  # noqa: BLE001 - any failure of the example is a test failure.
        if exception_name is not None and type(exc).__name__ == exception_name:
            return ExampleResult(expression=expression, expected=expected, passed=True, actual=type(exc).__name__)
        return ExampleResult(
            expression=expression,
            expected=expected,
            passed=False,
            error=f"{type(exc).__name__}: {exc}",
        )
    if exception_name is not None:
        return ExampleResult(
            expression=expression,
            expected=expected,
            passed=False,
            actual=repr(result),
            error=f"expected {exception_name} to be raised",
        )
    return ExampleResult(expression=expression, expected=expected, passed=_matches(result, expected), actual=repr(result))


class TestHarness:
    """Runs doc examples and static gates against a candidate checkpoint.

    Every example must pass and every gate must pass for the candidate to be
    eligible for activation.
    """

    __test__ = False

    def __init__(self, gates: Sequence[StaticGate] = ()) -> None:
        self.gates = list(gates)

    def run(self, checkpoint: Checkpoint, spec: SpecRecord, namespace: Mapping[str, Any] | None = None) -> TestReport:
        failures: list[TestFailure] = []
        examples: list[ExampleResult] = []

        try:
            module_namespace = execute_checkpoint(checkpoint, namespace)
        except Exception as exc:  # noqa: BLE001 - import-time failure fails the candidate.
            failures.append(TestFailure(source="load", name=checkpoint.unit_id, message=f"{type(exc).__name__}: {exc}"))
            module_namespace = None

        if module_namespace is not None:
            for example in spec.examples:
                outcome = run_example(example.expression, example.expected, module_namespace)
                examples.append(outcome)
                if not outcome.passed:
                    detail = outcome.error or f"expected {example.expected!r}, got {outcome.actual}"
                    failures.append(TestFailure(source="example", name=example.expression, message=detail))

        gates: list[GateResult] = []
        for gate in self.gates:
            result = gate.check(checkpoint)
            gates.append(result)
            if not result.passed:
                failures.append(TestFailure(source="gate", name=result.name, message=result.output or "failed"))

        report = TestReport(
            unit_id=checkpoint.unit_id,
            h_chk=checkpoint.h_chk,
            examples=examples,
            gates=gates,
            failures=failures,
        )
        logger.info(
            "Tested %s@%s: %d/%d example(s), %d/%d gate(s) passed",
            checkpoint.unit_id,
            checkpoint.h_chk[:12],
            sum(1 for item in examples if item.passed),
            len(spec.examples),
            sum(1 for item in gates if item.passed),
            len(gates),
        )
        return report
