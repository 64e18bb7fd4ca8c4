from pathlib import Path
from types import SimpleNamespace

import pytest

from speclock import providers
from speclock.config import ProjectConfig, ProviderDefinition
from speclock.errors import ConfigurationError, ProviderAuthError, ProviderRateLimitError, ProviderTimeoutError
from speclock.providers import GenerationParams, OpenAIChatProvider, RetryingProvider, build_provider, ensure_api_key, params_for

PARAMS = GenerationParams(model="gpt-4o-mini", seed=42)


class ScriptedProvider:
    def __init__(self, *outcomes: object) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def complete(self, prompt: str, params: GenerationParams) -> str:
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return str(outcome)


def test_retrying_provider_backs_off_exponentially() -> None:
    sleeps: list[float] = []
    inner = ScriptedProvider(ProviderTimeoutError("slow"), ProviderRateLimitError("busy"), "def f(): pass")
    provider = RetryingProvider(inner, max_attempts=3, base_delay=0.5, sleep=sleeps.append)

    assert provider.complete("prompt", PARAMS) == "def f(): pass"
    assert inner.calls == 3
    assert sleeps == [0.5, 1.0]


def test_retrying_provider_caps_delay_and_gives_up() -> None:
    sleeps: list[float] = []
    inner = ScriptedProvider(*(ProviderRateLimitError("busy") for _ in range(4)))
    provider = RetryingProvider(inner, max_attempts=4, base_delay=10.0, max_delay=15.0, sleep=sleeps.append)

    with pytest.raises(ProviderRateLimitError):
        provider.complete("prompt", PARAMS)
    assert inner.calls == 4
    assert sleeps == [10.0, 15.0, 15.0]


def test_retrying_provider_does_not_retry_auth_errors() -> None:
    sleeps: list[float] = []
    inner = ScriptedProvider(ProviderAuthError("bad key"), "unused")
    with pytest.raises(ProviderAuthError):
        RetryingProvider(inner, sleep=sleeps.append).complete("prompt", PARAMS)
    assert inner.calls == 1
    assert sleeps == []


def test_ensure_api_key_requires_credential(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("SPECLOCK_TEST_KEY", raising=False)
    definition = ProviderDefinition(api_key_env="SPECLOCK_TEST_KEY")
    with pytest.raises(ConfigurationError):
        ensure_api_key(definition, repo_root=tmp_path)

    monkeypatch.setenv("SPECLOCK_TEST_KEY", "sk-test")
    assert ensure_api_key(definition, repo_root=tmp_path) == "sk-test"


def test_build_provider_validates_name_and_credential(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    config = ProjectConfig.for_root(tmp_path)
    with pytest.raises(ConfigurationError):
        build_provider(config, "missing")
    with pytest.raises(ConfigurationError):
        build_provider(config, "default")

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    provider = build_provider(config, "default")
    assert isinstance(provider, RetryingProvider)
    assert provider.max_attempts == 3


def test_openai_provider_joins_text_parts(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    class FakeModel:
        def invoke(self, prompt: str) -> SimpleNamespace:
            captured["prompt"] = prompt
            return SimpleNamespace(content=[{"type": "text", "text": "def f():\n"}, "    return 1\n"])

    def fake_chat_model(*, params: GenerationParams, api_key: str, base_url: str | None = None) -> FakeModel:
        captured["model"] = params.model
        captured["api_key"] = api_key
        return FakeModel()

    monkeypatch.setattr(providers, "get_chat_model", fake_chat_model)
    text = OpenAIChatProvider(name="default", api_key="sk-test").complete("write f", PARAMS)

    assert text == "def f():\n    return 1\n"
    assert captured == {"model": "gpt-4o-mini", "api_key": "sk-test", "prompt": "write f"}


def test_get_chat_model_disables_sdk_retries() -> None:
    model = providers.get_chat_model(params=PARAMS, api_key="sk-test")
    assert model.max_retries == 0
    assert model.model_name == "gpt-4o-mini"


def test_params_for_takes_timeout_from_definition(tmp_path: Path) -> None:
    config = ProjectConfig.for_root(tmp_path, provider={"default": {"timeout": 12}})
    params = params_for(config, "default", model="m", temperature=0.0, seed=1, max_output_tokens=None)
    assert params.timeout == 12
    assert params.model == "m"
