import pytest

from muxgate.converters import KiroConverter
from muxgate.converters.kiro import CONTINUE_PROMPT, aggregate_events, estimate_usage
from muxgate.errors import ConversionError
from muxgate.streams import assemble_response
from conftest import PNG_DATA_URI

converter = KiroConverter()

STREAM_EVENTS = [
    {"content": "Hel"},
    {"content": "lo"},
    {"name": "get_weather", "toolUseId": "tooluse_1", "input": ""},
    {"input": '{"city": ', "toolUseId": "tooluse_1"},
    {"input": '"Paris"}', "toolUseId": "tooluse_1"},
    {"stop": True, "toolUseId": "tooluse_1"},
    {"contextUsagePercentage": 1.0},
]


class TestKiroRequests:

    def test_round_trip(self, tool_conversation):
        native = converter.to_native_request(tool_conversation, "claude-sonnet-4")
        state = native["conversationState"]
        assert state["currentMessage"]["userInputMessage"]["content"] == "Thanks"
        assert [list(entry) for entry in state["history"]] == [
            ["userInputMessage"], ["assistantResponseMessage"], ["userInputMessage"], ["assistantResponseMessage"],
        ]
        assert converter.to_canonical_request(native) == {**tool_conversation, "model": "claude-sonnet-4"}

    def test_tool_results_join_user_turn(self, tool_conversation):
        native = converter.to_native_request(tool_conversation, "claude-sonnet-4")
        turn = native["conversationState"]["history"][2]["userInputMessage"]
        assert turn["userInputMessageContext"]["toolResults"] == [
            {"toolUseId": "call_1", "content": [{"text": "Sunny, 21C"}], "status": "success"},
        ]
        assistant = native["conversationState"]["history"][1]["assistantResponseMessage"]
        assert assistant["toolUses"] == [{"toolUseId": "call_1", "name": "get_weather", "input": {"city": "Paris"}}]

    def test_tools_go_on_current_message(self, tool_conversation):
        native = converter.to_native_request(tool_conversation, "claude-sonnet-4")
        tools = native["conversationState"]["currentMessage"]["userInputMessage"]["userInputMessageContext"]["tools"]
        assert tools[0]["toolSpecification"]["name"] == "get_weather"
        assert tools[0]["toolSpecification"]["inputSchema"]["json"]["type"] == "object"

    def test_system_prompt_is_prepended(self, simple_request):
        native = converter.to_native_request(simple_request, "claude-sonnet-4")
        state = native["conversationState"]
        assert "history" not in state
        assert state["currentMessage"]["userInputMessage"]["content"] == "Be brief.\n\nHello"
        assert state["chatTriggerType"] == "MANUAL"
        assert state["conversationId"]

    def test_system_prompt_goes_to_first_user_turn(self, tool_conversation):
        messages = [{"role": "system", "content": [{"type": "text", "text": "Be brief."}]}] + tool_conversation["messages"]
        native = converter.to_native_request({**tool_conversation, "messages": messages}, "claude-sonnet-4")
        first = native["conversationState"]["history"][0]["userInputMessage"]
        assert first["content"] == "Be brief.\n\nWeather in Paris?"

    def test_trailing_assistant_gets_continue_prompt(self):
        request = {
            "model": "x",
            "messages": [
                {"role": "user", "content": [{"type": "text", "text": "Hi"}]},
                {"role": "assistant", "content": [{"type": "text", "text": "Hello"}]},
            ],
            "stream": False,
        }
        native = converter.to_native_request(request, "claude-sonnet-4")
        assert native["conversationState"]["currentMessage"]["userInputMessage"]["content"] == CONTINUE_PROMPT
        assert len(native["conversationState"]["history"]) == 2

    def test_images(self):
        request = {
            "model": "x",
            "messages": [{"role": "user", "content": [
                {"type": "text", "text": "What is this?"},
                {"type": "image", "reference": PNG_DATA_URI, "mime_type": "image/png"},
            ]}],
            "stream": False,
        }
        native = converter.to_native_request(request, "claude-sonnet-4")
        current = native["conversationState"]["currentMessage"]["userInputMessage"]
        assert current["images"] == [{"format": "png", "source": {"bytes": "iVBORw0KGgo="}}]
        assert converter.to_canonical_request(native)["messages"][0]["content"][1]["reference"] == PNG_DATA_URI

    def test_rejects_remote_images(self):
        request = {
            "model": "x",
            "messages": [{"role": "user", "content": [
                {"type": "image", "reference": "https://example.com/cat.png", "mime_type": "image/png"},
            ]}],
            "stream": False,
        }
        with pytest.raises(ConversionError, match="inline"):
            converter.to_native_request(request, "claude-sonnet-4")

    def test_rejects_system_only(self):
        request = {"model": "x", "messages": [{"role": "system", "content": [{"type": "text", "text": "Hi"}]}], "stream": False}
        with pytest.raises(ConversionError):
            converter.to_native_request(request, "claude-sonnet-4")

    @pytest.mark.parametrize("native", [
        {},
        {"conversationState": {}},
        {"conversationState": {"currentMessage": {"userInputMessage": {"content": "Hi"}}}},
        {"conversationState": {
            "currentMessage": {"userInputMessage": {"content": "Hi", "modelId": "m"}},
            "history": [{"systemMessage": {}}],
        }},
    ])
    def test_rejects_malformed_requests(self, native):
        with pytest.raises(ConversionError):
            converter.to_canonical_request(native)


class TestKiroResponses:

    def test_response_to_canonical(self):
        response = converter.to_canonical_response({
            "conversationId": "conv-1",
            "assistantResponseMessage": {
                "content": "Hello",
                "toolUses": [{"toolUseId": "tooluse_1", "name": "get_weather", "input": {"city": "Paris"}}],
            },
            "contextUsagePercentage": 1.0,
        })
        choice = response["choices"][0]
        assert choice["finish_reason"] == "tool_calls"
        assert choice["message"]["content"][1]["arguments"] == '{"city": "Paris"}'
        assert response["id"] == "conv-1"
        assert response["usage"] == {"prompt_tokens": 1998, "completion_tokens": 2}

    def test_plain_text_finishes_with_stop(self):
        response = converter.to_canonical_response({"assistantResponseMessage": {"content": "Hi"}})
        assert response["choices"][0]["finish_reason"] == "stop"

    def test_to_native_response(self):
        native = converter.to_native_response({
            "id": "conv-2",
            "model": "claude-sonnet-4",
            "choices": [{"message": {"role": "assistant", "content": [{"type": "text", "text": "Hi"}]}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 1},
        })
        assert native["assistantResponseMessage"] == {"content": "Hi"}
        assert native["usage"] == {"inputTokens": 3, "outputTokens": 1}


class TestKiroUsage:

    def test_explicit_usage_wins(self):
        assert estimate_usage({"inputTokens": 10, "outputTokens": 4}, 50.0, 400) == {"prompt_tokens": 10, "completion_tokens": 4}

    def test_estimate_from_context_percentage(self):
        assert estimate_usage(None, 0.5, 40) == {"prompt_tokens": 990, "completion_tokens": 10}

    def test_estimate_without_context(self):
        assert estimate_usage(None, None, 5) == {"prompt_tokens": 0, "completion_tokens": 2}


class TestKiroStreaming:

    def decode(self, events):
        state = converter.new_stream_state()
        chunks = [converter.to_canonical_chunk(e, state) for e in events]
        chunks.append(converter.end_of_stream(state))
        return [c for c in chunks if c is not None]

    def test_stream_matches_aggregated_response(self):
        assembled = assemble_response(self.decode(STREAM_EVENTS))
        whole = converter.to_canonical_response(aggregate_events(STREAM_EVENTS, "conv-1"))
        assert assembled["choices"] == whole["choices"]
        assert assembled["usage"] == whole["usage"]

    def test_end_of_stream_is_normal_termination(self):
        chunks = self.decode([{"content": "Hi"}])
        assert chunks[-1]["finish_reason"] == "stop"
        assert "error" not in chunks[-1]

    def test_duplicate_and_followup_content_dropped(self):
        chunks = self.decode([
            {"content": "Hi"},
            {"content": "Hi"},
            {"content": "Want more?", "followupPrompt": {"content": "x"}},
            {"content": " there"},
        ])
        text = "".join(p["text"] for c in chunks for p in c.get("delta", []))
        assert text == "Hi there"

    def test_credits_are_not_usage(self):
        state = converter.new_stream_state()
        assert converter.to_canonical_chunk({"usage": 0.25}, state) is None
        assert state.extra["credits"] == 0.25
        assert converter.end_of_stream(state)["usage"] == {"prompt_tokens": 0, "completion_tokens": 0}

    def test_error_event(self):
        chunk = converter.to_canonical_chunk({"error": {"type": "ThrottlingException", "message": "slow down"}})
        assert chunk["finish_reason"] == "error"
        assert chunk["error"]["type"] == "ThrottlingException"

    def test_aggregate_events(self):
        body = aggregate_events(STREAM_EVENTS, "conv-1")
        assert body["assistantResponseMessage"] == {
            "content": "Hello",
            "toolUses": [{"toolUseId": "tooluse_1", "name": "get_weather", "input": {"city": "Paris"}}],
        }
        assert body["contextUsagePercentage"] == 1.0
        assert body["conversationId"] == "conv-1"

    def test_encode_stream(self):
        state = converter.new_stream_state()
        events = converter.to_native_chunk({"delta": [{"type": "text", "text": "Hi"}]}, state)
        events += converter.to_native_chunk({"delta": [
            {"type": "tool_call", "id": "tooluse_9", "name": "get_weather", "arguments": '{"city": '},
            {"type": "tool_call", "id": "", "name": "", "arguments": '"Paris"}'},
        ]}, state)
        events += converter.to_native_chunk({"finish_reason": "tool_calls", "usage": {"prompt_tokens": 3, "completion_tokens": 5}}, state)
        assert events == [
            {"content": "Hi"},
            {"name": "get_weather", "toolUseId": "tooluse_9", "input": '{"city": '},
            {"input": '"Paris"}', "toolUseId": "tooluse_9"},
            {"stop": True, "toolUseId": "tooluse_9"},
            {"usage": {"inputTokens": 3, "outputTokens": 5}},
        ]
