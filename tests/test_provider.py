import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel

from conftest import BrokenLLM
from core.exceptions import AIInvocationError, ConfigurationError
from core.schemas import CompletionOptions
from infra.llm.factory import get_chat_model, resolve_provider
from infra.llm.provider import AIProvider


def test_completion_from_prebuilt_model(config):
    provider = AIProvider(provider="fake", config=config, llm=FakeListChatModel(responses=["hello"]))
    completion = provider.generate_completion("Say hello", CompletionOptions(system_prompt="Be brief"))
    assert completion.content == "hello"
    assert completion.provider == "fake"
    assert completion.usage.total_tokens == 0


def test_provider_errors_are_wrapped(config):
    provider = AIProvider(provider="fake", config=config, llm=BrokenLLM())
    with pytest.raises(AIInvocationError, match="connection reset"):
        provider.generate_completion("anything")


def test_factory_builds_model_from_template(config):
    llm = get_chat_model("fake", temperature=0.1, max_tokens=100, config=config)
    assert isinstance(llm, FakeListChatModel)
    assert llm.responses == config["providers"]["fake"]["responses"]


def test_provider_resolved_from_config(config):
    provider = AIProvider(provider="fake", config=config)
    assert provider.default_model == "fake-list"
    completion = provider.generate_completion("ping")
    assert completion.content == '{"content": "offline response"}'
    assert completion.model == "fake-list"


def test_default_provider(config):
    tag, provider_config = resolve_provider(None, config)
    assert tag == config["providers"]["default"]
    assert provider_config["model"]


def test_unknown_provider(config):
    with pytest.raises(ConfigurationError):
        AIProvider(provider="nonexistent", config=config)


def test_missing_api_key_is_a_configuration_error(config, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    provider = AIProvider(provider="openai", config=config)
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        provider.generate_completion("hello")
