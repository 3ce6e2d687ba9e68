import pytest
from unittest.mock import AsyncMock

from muxgate.converters import default_registry
from muxgate.pool import ProviderPool

PNG_DATA_URI = "data:image/png;base64,iVBORw0KGgo="


class FakeClock:
    """Manually advanced time source for pool tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def native_stream(events):
    """Async iterator over recorded native stream events."""
    for event in events:
        yield event


async def failing_stream(events, exc):
    """Yields ``events`` then raises ``exc``."""
    for event in events:
        yield event
    raise exc


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def pool_definitions():
    """Two OpenAI keys, one Gemini and one Kiro credential."""
    return {
        "openai-custom": [
            {"uuid": "openai-1", "OPENAI_API_KEY": "sk-test-1"},
            {"uuid": "openai-2", "OPENAI_API_KEY": "sk-test-2", "priority": 1},
        ],
        "gemini-cli-oauth": [
            {"uuid": "gemini-1", "access_token": "ya29.test", "PROJECT_ID": "proj-1"},
        ],
        "claude-kiro-oauth": [
            {"uuid": "kiro-1", "accessToken": "kiro-token"},
        ],
    }


@pytest.fixture
def pool(pool_definitions, clock):
    return ProviderPool(pool_definitions, max_error_count=3, cooldown_seconds=300, clock=clock)


@pytest.fixture
def no_sleep():
    return AsyncMock()


@pytest.fixture
def simple_request():
    """Canonical request with a system prompt and a user turn."""
    return {
        "model": "gpt-4",
        "messages": [
            {"role": "system", "content": [{"type": "text", "text": "Be brief."}]},
            {"role": "user", "content": [{"type": "text", "text": "Hello"}]},
        ],
        "stream": False,
    }


@pytest.fixture
def tool_conversation():
    """Canonical conversation exercising a full tool call cycle."""
    return {
        "model": "gpt-4",
        "messages": [
            {"role": "user", "content": [{"type": "text", "text": "Weather in Paris?"}]},
            {"role": "assistant", "content": [
                {"type": "tool_call", "id": "call_1", "name": "get_weather", "arguments": '{"city": "Paris"}'},
            ]},
            {"role": "tool", "content": [
                {"type": "tool_result", "tool_call_id": "call_1", "output": "Sunny, 21C"},
            ]},
            {"role": "assistant", "content": [{"type": "text", "text": "It is sunny."}]},
            {"role": "user", "content": [{"type": "text", "text": "Thanks"}]},
        ],
        "tools": [{
            "name": "get_weather",
            "description": "Get the weather",
            "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
        }],
        "stream": False,
    }
