import pytest

from conftest import ADD_SOURCE
from speclock.config import ProjectConfig
from speclock.errors import NameMismatchError, SignatureMismatchError, SyntaxInvalidError
from speclock.extractor import SpecExtractor
from speclock.models import SpecRecord
from speclock.registry import UnitRegistry
from speclock.validator import strip_fences, validate


@pytest.fixture
def add_spec(config: ProjectConfig) -> SpecRecord:
    registry = UnitRegistry.from_sources({"app.math": ADD_SOURCE})
    return SpecExtractor(config, registry.symbols, tool_version="1.0").extract(registry.get("app.math/add"))


def test_strip_fences_drops_prose_and_fence() -> None:
    raw = "Here you go:\n\n```python\ndef f():\n    return 1\n```\nHope that helps."
    assert strip_fences(raw) == "def f():\n    return 1\n"


def test_strip_fences_passes_unfenced_code_through() -> None:
    assert strip_fences("\n\ndef f():\n    return 1\n\n") == "def f():\n    return 1\n"


def test_validate_accepts_matching_function_with_helpers(add_spec: SpecRecord) -> None:
    raw = "import operator\n\n\ndef _impl(a, b):\n    return operator.add(a, b)\n\n\ndef add(a: int, b: int) -> int:\n    return _impl(a, b)\n"
    clean = validate(raw, add_spec)
    assert clean.function_name == "add"
    assert clean.code == raw


def test_validate_rejects_syntax_errors(add_spec: SpecRecord) -> None:
    with pytest.raises(SyntaxInvalidError):
        validate("def add(a, b)\n    return a + b\n", add_spec)


def test_validate_rejects_wrong_name(add_spec: SpecRecord) -> None:
    with pytest.raises(NameMismatchError) as excinfo:
        validate("def plus(a: int, b: int) -> int:\n    return a + b\n", add_spec)
    assert "plus" in str(excinfo.value)


@pytest.mark.parametrize(
    "raw",
    [
        "def add(a: int) -> int:\n    return a\n",
        "def add(x: int, b: int) -> int:\n    return x + b\n",
        "def add(a: str, b: int) -> int:\n    return 0\n",
        "def add(a: int, b: int) -> str:\n    return ''\n",
        "async def add(a: int, b: int) -> int:\n    return a + b\n",
        "def add(a: int, b: int = 0) -> int:\n    return a + b\n",
    ],
)
def test_validate_rejects_signature_drift(add_spec: SpecRecord, raw: str) -> None:
    with pytest.raises(SignatureMismatchError):
        validate(raw, add_spec)


def test_validate_tolerates_missing_annotations(add_spec: SpecRecord) -> None:
    assert validate("def add(a, b):\n    return a + b\n", add_spec).function_name == "add"


def test_validate_rejects_changed_default_value(config: ProjectConfig) -> None:
    source = '''
from speclock import Unimplemented


def scale(x: int, factor: int = 1, *, offset: int = 0) -> int:
    """Scale and shift."""
    raise Unimplemented
'''
    registry = UnitRegistry.from_sources({"app.calc": source})
    spec = SpecExtractor(config, registry.symbols, tool_version="1.0").extract(registry.get("app.calc/scale"))

    assert [param.default for param in spec.parameters] == [None, "1", "0"]
    assert validate("def scale(x, factor=1, *, offset=0):\n    return x * factor + offset\n", spec).function_name == "scale"
    with pytest.raises(SignatureMismatchError, match="factor defaults to 2"):
        validate("def scale(x, factor=2, *, offset=0):\n    return x * factor + offset\n", spec)
    with pytest.raises(SignatureMismatchError, match="offset"):
        validate("def scale(x, factor=1, *, offset=5):\n    return x * factor + offset\n", spec)
