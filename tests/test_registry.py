import pytest

from src.orbitmate.errors import ProviderError, ValidationError
from src.orbitmate.services.providers.gemini_provider import GeminiAdapter
from src.orbitmate.services.providers.ollama_provider import OllamaAdapter
from src.orbitmate.services.providers.openai_provider import OpenAIAdapter
from src.orbitmate.services.providers.registry import PROVIDER_CONFIG, ProviderRegistry

from tests.utils import FakeAdapter


def test_default_resolves_to_ollama_with_env_overrides():
    registry = ProviderRegistry(env={"OLLAMA_BASE_URL": "http://gpu:11434", "OLLAMA_MODEL": "llama3"})

    selection = registry.resolve()

    assert selection.name == "ollama"
    assert selection.model == "llama3"
    assert isinstance(selection.adapter, OllamaAdapter)
    assert selection.adapter.base_url == "http://gpu:11434"
    assert selection.capabilities.streaming is True


def test_model_override_and_case_insensitive_keys():
    registry = ProviderRegistry(env={"OPENAI_API_KEY": "sk"})
    selection = registry.resolve(" OpenAI ", "gpt-4.1")
    assert selection.name == "openai"
    assert selection.model == "gpt-4.1"
    assert isinstance(selection.adapter, OpenAIAdapter)


def test_unknown_provider_is_a_validation_error():
    registry = ProviderRegistry(env={})
    with pytest.raises(ValidationError):
        registry.resolve("mystery")


def test_missing_credentials_is_not_configured():
    registry = ProviderRegistry(env={})
    with pytest.raises(ProviderError) as exc:
        registry.resolve("geminiapi")
    assert exc.value.provider_code == "not_configured"
    assert registry.provider_available("geminiapi") is False
    assert registry.provider_available("ollama") is True


def test_adapters_are_cached():
    registry = ProviderRegistry(env={"GEMINI_API_KEY": "g"})
    first = registry.get("geminiapi")
    assert isinstance(first, GeminiAdapter)
    assert registry.get("geminiapi") is first


def test_explicit_adapters_are_always_available():
    fake = FakeAdapter(name="fake")
    registry = ProviderRegistry(env={}, default_provider="fake", adapters={"fake": fake})

    selection = registry.resolve()

    assert selection.adapter is fake
    assert selection.model == "fake-model"
    assert registry.names()[-1] == "fake"


def test_catalog_lists_every_provider():
    registry = ProviderRegistry(env={"OPENAI_API_KEY": "sk"}, default_provider="openai")

    catalog = registry.catalog()

    assert catalog.default_provider == "openai"
    by_name = {p.provider: p for p in catalog.providers}
    assert set(by_name) == set(PROVIDER_CONFIG)
    assert by_name["openai"].available and by_name["openai"].default
    assert by_name["geminiapi"].available is False
    assert by_name["geminiapi"].streaming is False
    assert by_name["ollama"].label == "Ollama (gemma3:4b)"
