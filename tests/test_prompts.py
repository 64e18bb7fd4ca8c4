from pathlib import Path

import pytest

from conftest import ADD_SOURCE
from speclock.config import ProjectConfig
from speclock.errors import TemplateNotFoundError
from speclock.extractor import SpecExtractor
from speclock.models import UnitKind
from speclock.prompts import PromptRenderer, render_template, resolve_template_id
from speclock.registry import UnitRegistry, declare


def test_template_resolution_order(tmp_path: Path) -> None:
    plain = declare("app.api", "def handler():\n    raise Unimplemented\n", kind=UnitKind.HTTP_ENDPOINT)
    override = declare("app.api", "def handler():\n    raise Unimplemented\n", kind="http_endpoint", template="custom/h.prompt")

    defaults = ProjectConfig.for_root(tmp_path)
    configured = ProjectConfig.for_root(tmp_path, prompts={"http_endpoint": "prompts/http.prompt"})

    assert resolve_template_id(plain, defaults) == "builtin:http_endpoint"
    assert resolve_template_id(plain, configured) == "prompts/http.prompt"
    assert resolve_template_id(override, configured) == "custom/h.prompt"


def test_render_template_fills_dotted_placeholders() -> None:
    text = render_template("{{ name }} {{options.method}} {{ options.path }}{{ missing }}", {"name": "list_users", "options": {"method": "GET", "path": "/users"}})
    assert text == "list_users GET /users"


def test_builtin_templates_exist_for_every_kind(tmp_path: Path) -> None:
    renderer = PromptRenderer(tmp_path)
    for kind in UnitKind:
        assert renderer.load_template(f"builtin:{kind.value}").strip()


def test_render_spec_includes_contract_and_digest(config: ProjectConfig) -> None:
    registry = UnitRegistry.from_sources({"app.math": ADD_SOURCE})
    record = SpecExtractor(config, registry.symbols, tool_version="1.0").extract(registry.get("app.math/add"))
    renderer = PromptRenderer(config.root, registry.symbols)

    first = renderer.render_spec(record)
    second = renderer.render_spec(record)

    assert "def add(a: int, b: int) -> int" in first.text
    assert ">>> add(2, 3)\n5" in first.text
    assert first.prompt_sha == second.prompt_sha
    assert first.template_id == "builtin:function"


def test_project_template_is_loaded_relative_to_root(tmp_path: Path) -> None:
    (tmp_path / "prompts").mkdir()
    (tmp_path / "prompts" / "fn.prompt").write_text("Write {{ name }} now.", encoding="utf-8")
    rendered = PromptRenderer(tmp_path).render("prompts/fn.prompt", {"name": "add"})
    assert rendered.text == "Write add now."


def test_missing_template_raises(tmp_path: Path) -> None:
    with pytest.raises(TemplateNotFoundError) as excinfo:
        PromptRenderer(tmp_path).render("prompts/absent.prompt", {}, unit_id="app.math/add")
    assert excinfo.value.unit_id == "app.math/add"
    assert excinfo.value.template_id == "prompts/absent.prompt"
