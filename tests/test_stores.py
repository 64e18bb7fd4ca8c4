from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from speclock.cache import CacheStore
from speclock.checkpoints import CheckpointStore
from speclock.errors import CheckpointMissingError
from speclock.index import ActiveIndex
from speclock.models import CheckpointMeta
from speclock.state_store import create_exclusive_text, unit_path

SPEC = "1" * 64
PROMPT = "2" * 64


def _meta(h_chk: str, *, created_at: datetime | None = None) -> CheckpointMeta:
    return CheckpointMeta(
        unit_id="app.math/add",
        h_chk=h_chk,
        spec_hash=SPEC,
        prompt_sha=PROMPT,
        code_sha="3" * 64,
        tool_version="1.0",
        provider="default",
        model="gpt-4o-mini",
        template_id="builtin:function",
        hash_scheme="speclock-spec-v1",
        created_at=created_at or datetime.now(UTC),
    )


def test_unit_path_splits_module_segments() -> None:
    assert unit_path("app.math/add") == Path("app", "math", "add")
    with pytest.raises(ValueError):
        unit_path("no-slash")


def test_create_exclusive_text_never_overwrites(tmp_path: Path) -> None:
    target = tmp_path / "impl.py"
    assert create_exclusive_text(target, "first\n") is True
    assert create_exclusive_text(target, "second\n") is False
    assert target.read_text(encoding="utf-8") == "first\n"
    assert [path.name for path in tmp_path.iterdir()] == ["impl.py"]


def test_cache_roundtrip_and_prompt_mismatch_is_miss(tmp_path: Path) -> None:
    cache = CacheStore(tmp_path / "cache")
    assert cache.get(SPEC, PROMPT) is None

    cache.put(SPEC, PROMPT, "def add(a, b):\n    return a + b\n", provider="default", model="gpt-4o-mini")
    entry = cache.get(SPEC, PROMPT)
    assert entry is not None
    assert entry.response.startswith("def add")
    assert cache.get(SPEC, "9" * 64) is None
    assert cache.get(SPEC) is not None


def test_corrupt_cache_entry_is_miss(tmp_path: Path) -> None:
    cache = CacheStore(tmp_path / "cache")
    path = cache.entry_path(SPEC)
    path.parent.mkdir(parents=True)
    path.write_text("{not json", encoding="utf-8")
    assert cache.get(SPEC, PROMPT) is None


def test_checkpoint_write_is_append_only(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "checkpoints")
    h_chk = "4" * 64
    directory = store.write("app.math/add", h_chk, "def add(a, b):\n    return a + b\n", _meta(h_chk))

    assert directory == tmp_path / "checkpoints" / "app" / "math" / "add" / h_chk
    store.write("app.math/add", h_chk, "def add(a, b):\n    return 0\n", _meta(h_chk))
    checkpoint = store.read("app.math/add", h_chk)
    assert "return a + b" in checkpoint.code
    assert checkpoint.meta.spec_hash == SPEC


def test_checkpoint_write_rejects_foreign_meta(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    with pytest.raises(ValueError):
        store.write("app.math/add", "4" * 64, "x = 1\n", _meta("5" * 64))


def test_checkpoint_read_missing_raises(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    assert not store.exists("app.math/add", "4" * 64)
    with pytest.raises(CheckpointMissingError):
        store.read("app.math/add", "4" * 64)


def test_checkpoint_list_orders_by_creation(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path)
    now = datetime.now(UTC)
    store.write("app.math/add", "6" * 64, "x = 1\n", _meta("6" * 64, created_at=now))
    store.write("app.math/add", "5" * 64, "x = 2\n", _meta("5" * 64, created_at=now - timedelta(minutes=1)))
    assert store.list("app.math/add") == ["5" * 64, "6" * 64]
    assert store.list("app.other/none") == []


def test_index_activate_and_deactivate(tmp_path: Path) -> None:
    index = ActiveIndex(tmp_path / "index.json")
    assert index.get("app.math/add") is None

    assert index.activate("app.math/add", "4" * 64) is None
    assert index.activate("app.math/add", "5" * 64) == "4" * 64
    assert ActiveIndex(tmp_path / "index.json").get("app.math/add") == "5" * 64
    assert index.entries() == {"app.math/add": "5" * 64}

    assert index.deactivate("app.math/add") == "5" * 64
    assert index.get("app.math/add") is None


def test_index_rejects_bad_hash(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        ActiveIndex(tmp_path / "index.json").activate("app.math/add", "not-a-hash")
