from typing import Dict, List, Optional

from loguru import logger

from .base import BaseConverter, StreamState
from .openai import OpenAIChatConverter
from .openai_responses import OpenAIResponsesConverter
from .anthropic import ClaudeConverter
from .gemini import GeminiConverter
from .kiro import KiroConverter
from ..errors import UnknownProviderError
from ..types import normalize_provider_type


class ConverterRegistry:
    """
    Maps provider types to converters. Lookups of unregistered types fail.
    """

    def __init__(self, converters: Optional[List[BaseConverter]] = None):
        self._converters: Dict[str, BaseConverter] = {}
        for converter in converters or []:
            self.register(converter)

    def register(self, converter: BaseConverter) -> None:
        if not converter.provider_type:
            raise ValueError(f"{type(converter).__name__} has no provider_type")
        if converter.provider_type in self._converters:
            logger.debug(f"Replacing converter for {converter.provider_type}")
        self._converters[converter.provider_type] = converter

    def get(self, provider_type: str) -> BaseConverter:
        """
        Get the converter for a provider type or one of its aliases.

        Raises:
            UnknownProviderError: If no converter is registered for the type.
        """
        converter = self._converters.get(normalize_provider_type(provider_type))
        if converter is None:
            raise UnknownProviderError(provider_type)
        return converter

    def __contains__(self, provider_type: str) -> bool:
        return normalize_provider_type(provider_type) in self._converters

    def provider_types(self) -> List[str]:
        return list(self._converters)


def default_registry() -> ConverterRegistry:
    return ConverterRegistry([
        OpenAIChatConverter(),
        OpenAIResponsesConverter(),
        ClaudeConverter(),
        GeminiConverter(),
        KiroConverter(),
    ])


__all__ = [
    "BaseConverter",
    "StreamState",
    "ConverterRegistry",
    "default_registry",
    "OpenAIChatConverter",
    "OpenAIResponsesConverter",
    "ClaudeConverter",
    "GeminiConverter",
    "KiroConverter",
]
