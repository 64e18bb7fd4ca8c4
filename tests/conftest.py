import threading
from pathlib import Path
from typing import Callable

import pytest

from speclock.config import ProjectConfig
from speclock.pipeline import Compiler
from speclock.providers import GenerationParams
from speclock.registry import UnitRegistry


ADD_SOURCE = '''
from speclock import Unimplemented


def add(a: int, b: int) -> int:
    """Add two integers.

    >>> add(2, 3)
    5
    >>> add(-1, 1)
    0
    """
    raise Unimplemented
'''

ADD_IMPL = "```python\ndef add(a: int, b: int) -> int:\n    return a + b\n```\n"


class StubProvider:
    """Answers from a ``{function name: response}`` table and counts calls.

    With a ``gate``, calls for the names in ``gated`` (every name when
    ``gated`` is None) set ``started`` and block until the gate opens.
    """

    def __init__(
        self,
        responses: dict[str, str],
        *,
        gate: threading.Event | None = None,
        gated: set[str] | None = None,
    ) -> None:
        self.responses = responses
        self.gated = gated
        self.calls: list[str] = []
        self.started = threading.Event()
        self.gate = gate
        self._lock = threading.Lock()

    def complete(self, prompt: str, params: GenerationParams) -> str:
        with self._lock:
            self.calls.append(prompt)
        for name, response in self.responses.items():
            if f"implementation of `{name}`" in prompt:
                if self.gate is not None and (self.gated is None or name in self.gated):
                    self.started.set()
                    self.gate.wait(timeout=5)
                return response
        raise AssertionError(f"no stub response for prompt:\n{prompt}")


class ExplodingProvider:
    def complete(self, prompt: str, params: GenerationParams) -> str:
        raise AssertionError("provider must not be called")


@pytest.fixture
def config(tmp_path: Path) -> ProjectConfig:
    return ProjectConfig.for_root(tmp_path)


@pytest.fixture
def add_registry() -> UnitRegistry:
    return UnitRegistry.from_sources({"app.math": ADD_SOURCE})


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider({"add": ADD_IMPL})


@pytest.fixture
def make_compiler(config: ProjectConfig) -> Callable[..., Compiler]:
    def factory(registry: UnitRegistry, provider: object, **kwargs: object) -> Compiler:
        return Compiler(
            registry,
            kwargs.pop("config", config),
            provider_factory=lambda name: provider,
            tool_version="0.0.0-test",
            **kwargs,
        )

    return factory
