import pytest

from muxgate.converters import (
    ClaudeConverter, ConverterRegistry, GeminiConverter, KiroConverter,
    OpenAIChatConverter, OpenAIResponsesConverter, default_registry,
)
from muxgate.errors import UnknownProviderError
from muxgate.types import PROVIDER_TYPES


class TestConverterRegistry:

    def test_default_registry_covers_all_providers(self, registry):
        assert sorted(registry.provider_types()) == sorted(PROVIDER_TYPES)

    @pytest.mark.parametrize("name,cls", [
        ("openai-custom", OpenAIChatConverter),
        ("openai", OpenAIChatConverter),
        ("openaiResponses-custom", OpenAIResponsesConverter),
        ("responses", OpenAIResponsesConverter),
        ("claude-custom", ClaudeConverter),
        ("anthropic", ClaudeConverter),
        ("gemini-cli-oauth", GeminiConverter),
        ("gemini", GeminiConverter),
        ("claude-kiro-oauth", KiroConverter),
        ("kiro", KiroConverter),
    ])
    def test_lookup_by_name_or_alias(self, registry, name, cls):
        assert isinstance(registry.get(name), cls)

    def test_unknown_provider_fails(self, registry):
        with pytest.raises(UnknownProviderError) as exc_info:
            registry.get("mistral-custom")
        assert exc_info.value.provider_type == "mistral-custom"

    def test_contains(self, registry):
        assert "kiro" in registry
        assert "mistral-custom" not in registry

    def test_empty_registry_fails_closed(self):
        registry = ConverterRegistry()
        with pytest.raises(UnknownProviderError):
            registry.get("openai-custom")

    def test_register_replaces(self):
        registry = ConverterRegistry([OpenAIChatConverter()])
        replacement = OpenAIChatConverter()
        registry.register(replacement)
        assert registry.get("openai") is replacement
        assert registry.provider_types() == ["openai-custom"]

    def test_register_requires_provider_type(self):
        class Nameless(OpenAIChatConverter):
            provider_type = ""

        with pytest.raises(ValueError):
            ConverterRegistry().register(Nameless())

    def test_registries_are_independent(self):
        first = default_registry()
        second = default_registry()
        assert first.get("gemini") is not second.get("gemini")
