import threading
import time
from pathlib import Path
from typing import Callable

import pytest

from conftest import ADD_IMPL, ADD_SOURCE, StubProvider
from speclock.config import ProjectConfig
from speclock.errors import NameMismatchError, TestsFailedError
from speclock.models import UnitState
from speclock.pipeline import Compiler
from speclock.registry import UnitRegistry

TWO_UNITS = ADD_SOURCE + '''

def broken(x: int) -> int:
    """Never generated correctly."""
    raise Unimplemented
'''


def test_compile_test_save_end_to_end(add_registry: UnitRegistry, stub_provider: StubProvider, make_compiler: Callable[..., Compiler]) -> None:
    compiler = make_compiler(add_registry, stub_provider)

    result = compiler.compile_unit("app.math/add")
    assert not result.cache_hit
    assert compiler.stores.index.get("app.math/add") is None

    report = compiler.test_unit("app.math/add")
    assert report.passed
    assert len(report.examples) == 2

    compiler.save_unit("app.math/add")
    assert compiler.stores.index.get("app.math/add") == result.h_chk

    checkpoint = compiler.stores.checkpoints.read("app.math/add", result.h_chk)
    assert checkpoint.code == "def add(a: int, b: int) -> int:\n    return a + b\n"
    assert checkpoint.meta.spec_hash == result.spec_hash
    assert checkpoint.meta.prompt_sha == result.prompt_sha
    assert len(stub_provider.calls) == 1


def test_warm_cache_reproduces_same_checkpoint(add_registry: UnitRegistry, stub_provider: StubProvider, make_compiler: Callable[..., Compiler]) -> None:
    first = make_compiler(add_registry, stub_provider).compile_unit("app.math/add")
    second = make_compiler(add_registry, stub_provider).compile_unit("app.math/add")

    assert second.cache_hit
    assert second.h_chk == first.h_chk
    assert len(stub_provider.calls) == 1


def test_force_bypasses_cache(add_registry: UnitRegistry, stub_provider: StubProvider, make_compiler: Callable[..., Compiler]) -> None:
    compiler = make_compiler(add_registry, stub_provider)
    compiler.compile_unit("app.math/add")
    forced = compiler.compile_unit("app.math/add", force=True)

    assert not forced.cache_hit
    assert len(stub_provider.calls) == 2


def test_docstring_change_produces_new_spec_hash(add_registry: UnitRegistry, stub_provider: StubProvider, make_compiler: Callable[..., Compiler]) -> None:
    original = make_compiler(add_registry, stub_provider).compile_unit("app.math/add")
    edited = UnitRegistry.from_sources({"app.math": ADD_SOURCE.replace("Add two integers.", "Sum two integers.")})
    changed = make_compiler(edited, stub_provider).compile_unit("app.math/add")

    assert changed.spec_hash != original.spec_hash
    assert changed.h_chk != original.h_chk
    assert not changed.cache_hit
    assert len(stub_provider.calls) == 2
    assert make_compiler(add_registry, stub_provider).stores.cache.get(original.spec_hash, original.prompt_sha) is not None


def test_invalid_output_is_not_cached(add_registry: UnitRegistry, make_compiler: Callable[..., Compiler]) -> None:
    provider = StubProvider({"add": "def plus(a, b):\n    return a + b\n"})
    compiler = make_compiler(add_registry, provider)
    for _ in range(2):
        with pytest.raises(NameMismatchError):
            compiler.compile_unit("app.math/add")
    assert len(provider.calls) == 2


def test_save_refuses_failing_candidate(add_registry: UnitRegistry, make_compiler: Callable[..., Compiler]) -> None:
    provider = StubProvider({"add": "def add(a: int, b: int) -> int:\n    return a - b\n"})
    compiler = make_compiler(add_registry, provider)
    compiler.compile_unit("app.math/add")

    with pytest.raises(TestsFailedError) as excinfo:
        compiler.save_unit("app.math/add")
    assert not excinfo.value.report.passed
    assert compiler.stores.index.get("app.math/add") is None


def test_batch_reports_each_unit(make_compiler: Callable[..., Compiler]) -> None:
    registry = UnitRegistry.from_sources({"app.math": TWO_UNITS})
    provider = StubProvider({"add": ADD_IMPL, "broken": "def something_else():\n    pass\n"})
    report = make_compiler(registry, provider).compile_batch(workers=2)

    outcomes = {item.unit_id: item for item in report.items}
    assert not report.ok
    assert outcomes["app.math/add"].ok
    assert not outcomes["app.math/broken"].ok
    assert "NameMismatchError" in outcomes["app.math/broken"].reason

    table = report.render_table()
    assert table.splitlines()[0].split() == ["unit", "result", "detail"]
    assert "failed" in table


def test_concurrent_compiles_share_one_provider_call(add_registry: UnitRegistry, make_compiler: Callable[..., Compiler]) -> None:
    release = threading.Event()
    provider = StubProvider({"add": ADD_IMPL}, gate=release)
    compiler = make_compiler(add_registry, provider)
    results: list[str] = []

    def run() -> None:
        results.append(compiler.compile_unit("app.math/add").h_chk)

    first = threading.Thread(target=run)
    first.start()
    assert provider.started.wait(timeout=5)
    second = threading.Thread(target=run)
    second.start()
    time.sleep(0.3)
    release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert len(provider.calls) == 1
    assert len(results) == 2
    assert results[0] == results[1]


def test_status_and_check_report_drift(add_registry: UnitRegistry, stub_provider: StubProvider, make_compiler: Callable[..., Compiler]) -> None:
    compiler = make_compiler(add_registry, stub_provider)
    assert [status.state for status in compiler.status()] == [UnitState.MISSING]
    assert not compiler.check()

    compiler.compile_test_save("app.math/add")
    assert [status.state for status in compiler.status()] == [UnitState.OK]
    assert compiler.check()

    edited = UnitRegistry.from_sources({"app.math": ADD_SOURCE.replace("Add two integers.", "Sum two integers.")})
    drifted = make_compiler(edited, stub_provider).status()
    assert drifted[0].state is UnitState.DRIFTED
    assert drifted[0].stored_hash != drifted[0].current_hash
    assert len(stub_provider.calls) == 1


def test_edited_template_is_reported_as_template_drift(tmp_path: Path, add_registry: UnitRegistry, stub_provider: StubProvider, make_compiler: Callable[..., Compiler]) -> None:
    template = tmp_path / "prompts" / "fn.prompt"
    template.parent.mkdir()
    template.write_text("Write the implementation of `{{ name }}`.\n{{ signature }}\n", encoding="utf-8")
    config = ProjectConfig.for_root(tmp_path, prompts={"function": "prompts/fn.prompt"})
    compiler = make_compiler(add_registry, stub_provider, config=config)

    compiler.compile_test_save("app.math/add")
    assert [status.state for status in compiler.status()] == [UnitState.OK]

    template.write_text("Write the implementation of `{{ name }}`.\n{{ signature }}\nNo imports.\n", encoding="utf-8")
    [status] = compiler.status()

    assert status.state is UnitState.TEMPLATE_DRIFTED
    assert status.stored_hash == status.current_hash
    assert "prompts/fn.prompt" in status.reason
    assert not compiler.check()
    assert len(stub_provider.calls) == 1
