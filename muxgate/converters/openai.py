from typing import Dict, Any, List, Optional

from .base import BaseConverter, StreamState
from ..errors import ConversionError
from ..types import (
    OPENAI_CUSTOM, ContentPart, ToolSpec, UnifiedMessage, UnifiedRequest,
    UnifiedResponse, UnifiedStreamChunk,
)
from ..utils import (
    generate_id, image_part, normalize_usage, require,
    text_part, tool_result_part, unix_time,
)


class OpenAIChatConverter(BaseConverter):
    """
    Converter for the OpenAI Chat Completions format (and compatible APIs).
    """

    provider_type = OPENAI_CUSTOM

    FINISH_REASONS = {
        "stop": "stop",
        "length": "length",
        "tool_calls": "tool_calls",
        "function_call": "tool_calls",
        "content_filter": "content_filter",
    }
    NATIVE_FINISH_REASONS = {
        "stop": "stop",
        "length": "length",
        "tool_calls": "tool_calls",
        "content_filter": "content_filter",
        "error": "stop",
    }
    KNOWN_REQUEST_KEYS = frozenset({
        "model", "messages", "tools", "max_tokens", "max_completion_tokens",
        "temperature", "stream", "stop", "stream_options",
    })

    # ==========================================================================
    # Requests
    # ==========================================================================

    def to_canonical_request(self, native: Dict[str, Any]) -> UnifiedRequest:
        model = require(native, "model", "chat.completions request")
        messages = require(native, "messages", "chat.completions request")
        if not isinstance(messages, list):
            raise ConversionError("chat.completions request: 'messages' must be a list")

        request: UnifiedRequest = {
            "model": model,
            "messages": [self._message_to_canonical(m) for m in messages],
            "stream": bool(native.get("stream", False)),
        }
        if native.get("tools"):
            request["tools"] = [self._tool_to_canonical(t) for t in native["tools"]]
        max_tokens = native.get("max_completion_tokens", native.get("max_tokens"))
        if max_tokens is not None:
            request["max_output_tokens"] = max_tokens
        if native.get("temperature") is not None:
            request["temperature"] = native["temperature"]
        stop = native.get("stop")
        if stop:
            request["stop_sequences"] = [stop] if isinstance(stop, str) else list(stop)
        extra = self.extract_passthrough(native)
        if extra:
            request["extra"] = extra
        return request

    def _message_to_canonical(self, msg: Dict[str, Any]) -> UnifiedMessage:
        role = require(msg, "role", "chat message")
        if role == "developer":
            role = "system"

        if role == "tool":
            tool_call_id = require(msg, "tool_call_id", "tool message")
            return {"role": "tool", "content": [tool_result_part(tool_call_id, msg.get("content") or "")]}

        if role not in ("system", "user", "assistant"):
            raise ConversionError(f"Unsupported chat message role: {role!r}")

        parts = self._content_to_canonical(msg.get("content"))
        if role == "assistant":
            for tc in msg.get("tool_calls") or []:
                function = require(tc, "function", "tool call")
                parts.append({
                    "type": "tool_call",
                    "id": require(tc, "id", "tool call"),
                    "name": require(function, "name", "tool call function"),
                    "arguments": function.get("arguments") or "{}",
                })
        return {"role": role, "content": parts}

    @staticmethod
    def _content_to_canonical(content: Any) -> List[ContentPart]:
        if content is None or content == "":
            return []
        if isinstance(content, str):
            return [text_part(content)]
        parts: List[ContentPart] = []
        for part in content:
            kind = part.get("type")
            if kind == "text":
                parts.append(text_part(part.get("text", "")))
            elif kind == "image_url":
                image_url = part.get("image_url")
                url = image_url.get("url") if isinstance(image_url, dict) else image_url
                if not url:
                    raise ConversionError("image_url part without a url")
                parts.append(image_part(url))
            else:
                raise ConversionError(f"Unsupported chat content part: {kind!r}")
        return parts

    @staticmethod
    def _tool_to_canonical(tool: Dict[str, Any]) -> ToolSpec:
        if tool.get("type", "function") != "function":
            raise ConversionError(f"Unsupported tool type: {tool.get('type')!r}")
        function = require(tool, "function", "tool")
        return {
            "name": require(function, "name", "tool function"),
            "description": function.get("description", ""),
            "parameters": function.get("parameters") or {"type": "object", "properties": {}},
        }

    def to_native_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        self.check_parts(request["messages"])
        messages: List[Dict[str, Any]] = []
        for msg in request["messages"]:
            messages.extend(self._message_to_native(msg))

        native: Dict[str, Any] = {"model": model, "messages": messages}
        if request.get("tools"):
            native["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t.get("description", ""),
                        "parameters": t.get("parameters") or {"type": "object", "properties": {}},
                    },
                }
                for t in request["tools"]
            ]
        if request.get("max_output_tokens") is not None:
            native["max_tokens"] = request["max_output_tokens"]
        if request.get("temperature") is not None:
            native["temperature"] = request["temperature"]
        if request.get("stop_sequences"):
            native["stop"] = list(request["stop_sequences"])
        if request.get("stream"):
            native["stream"] = True
            native["stream_options"] = {"include_usage": True}
        return self.apply_passthrough(native, request)

    def _message_to_native(self, msg: UnifiedMessage) -> List[Dict[str, Any]]:
        role = msg["role"]
        # Tool results travel as separate role="tool" messages
        out = [
            {"role": "tool", "tool_call_id": p["tool_call_id"], "content": p["output"]}
            for p in msg["content"] if p["type"] == "tool_result"
        ]
        if role == "tool":
            return out

        body = [p for p in msg["content"] if p["type"] in ("text", "image")]
        tool_calls = [p for p in msg["content"] if p["type"] == "tool_call"]
        if role != "user" and any(p["type"] == "image" for p in body):
            raise ConversionError(f"OpenAI chat does not accept images in {role} messages")

        if body or role != "assistant" or not tool_calls:
            native_msg: Dict[str, Any] = {"role": role, "content": self._content_to_native(body)}
        else:
            native_msg = {"role": role, "content": None}
        if tool_calls:
            native_msg["tool_calls"] = [
                {
                    "id": tc["id"],
                    "type": "function",
                    "function": {"name": tc["name"], "arguments": tc["arguments"]},
                }
                for tc in tool_calls
            ]
        if body or tool_calls or not out:
            out.append(native_msg)
        return out

    @staticmethod
    def _content_to_native(parts: List[ContentPart]) -> Any:
        if not parts:
            return ""
        if len(parts) == 1 and parts[0]["type"] == "text":
            return parts[0]["text"]
        native = []
        for p in parts:
            if p["type"] == "text":
                native.append({"type": "text", "text": p["text"]})
            else:
                native.append({"type": "image_url", "image_url": {"url": p["reference"]}})
        return native

    # ==========================================================================
    # Responses
    # ==========================================================================

    def to_canonical_response(self, native: Dict[str, Any]) -> UnifiedResponse:
        choices = require(native, "choices", "chat.completion response")
        if not choices:
            raise ConversionError("chat.completion response has no choices")
        choice = choices[0]
        message = require(choice, "message", "chat.completion choice")
        parts = self._message_to_canonical({**message, "role": "assistant"})["content"]

        usage = native.get("usage") or {}
        return self.build_response(
            native.get("id") or generate_id("chatcmpl-"),
            native.get("model", ""),
            parts,
            self.map_finish_reason(choice.get("finish_reason")),
            normalize_usage(usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")),
            created=native.get("created"),
            system_fingerprint=native.get("system_fingerprint"),
        )

    def to_native_response(self, response: UnifiedResponse) -> Dict[str, Any]:
        choice = self.first_choice(response)
        native_msg = self._message_to_native({"role": "assistant", "content": choice["message"]["content"]})[-1]
        usage = response["usage"]
        return {
            "id": response["id"],
            "object": "chat.completion",
            "created": response.get("raw", {}).get("created") or unix_time(),
            "model": response["model"],
            "choices": [{
                "index": 0,
                "message": native_msg,
                "finish_reason": self.native_finish_reason(choice["finish_reason"]),
            }],
            "usage": {
                "prompt_tokens": usage["prompt_tokens"],
                "completion_tokens": usage["completion_tokens"],
                "total_tokens": usage["prompt_tokens"] + usage["completion_tokens"],
            },
        }

    # ==========================================================================
    # Streaming
    # ==========================================================================

    def to_canonical_chunk(
        self,
        native_chunk: Dict[str, Any],
        state: Optional[StreamState] = None,
    ) -> Optional[UnifiedStreamChunk]:
        state = state if state is not None else self.new_stream_state()
        if "error" in native_chunk and not native_chunk.get("choices"):
            error = native_chunk["error"] or {}
            state.finished = True
            return self._stamp({
                "finish_reason": "error",
                "error": {"type": error.get("type") or "upstream_error", "message": error.get("message", "")},
            }, state)

        state.id = state.id or native_chunk.get("id", "")
        state.model = state.model or native_chunk.get("model", "")

        chunk: UnifiedStreamChunk = {}
        delta_parts: List[ContentPart] = []
        for choice in native_chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if isinstance(content, str) and content:
                delta_parts.append(text_part(content))
            elif isinstance(content, list):
                delta_parts.extend(p for p in self._content_to_canonical(content) if p["type"] == "text")
            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                if tc.get("id"):
                    state.tool_ids[index] = tc["id"]
                function = tc.get("function") or {}
                delta_parts.append({
                    "type": "tool_call",
                    "id": state.tool_ids.get(index, ""),
                    "name": function.get("name") or "",
                    "arguments": function.get("arguments") or "",
                })
            if choice.get("finish_reason"):
                chunk["finish_reason"] = self.map_finish_reason(choice["finish_reason"])
                state.finished = True

        if delta_parts:
            chunk["delta"] = delta_parts
        usage = native_chunk.get("usage")
        if usage:
            chunk["usage"] = normalize_usage(
                usage.get("prompt_tokens"), usage.get("completion_tokens"), usage.get("total_tokens")
            )
        if not chunk:
            return None
        return self._stamp(chunk, state)

    def to_native_chunk(
        self,
        chunk: UnifiedStreamChunk,
        state: Optional[StreamState] = None,
    ) -> List[Dict[str, Any]]:
        state = state if state is not None else self.new_stream_state()
        if chunk.get("error"):
            state.finished = True
            return [{"error": {"type": chunk["error"]["type"], "message": chunk["error"]["message"]}}]

        state.id = state.id or chunk.get("id") or generate_id("chatcmpl-")
        state.model = state.model or chunk.get("model", "")

        delta: Dict[str, Any] = {}
        if not state.started:
            delta["role"] = "assistant"
            state.started = True

        text = ""
        tool_calls = []
        for part in chunk.get("delta", []):
            if part["type"] == "text":
                text += part["text"]
            elif part["type"] == "tool_call":
                tool_calls.append(self._tool_call_delta(part, state))
            else:
                raise ConversionError(f"OpenAI chat streams cannot carry '{part['type']}' content")
        if text:
            delta["content"] = text
        if tool_calls:
            delta["tool_calls"] = tool_calls

        finish = self.native_finish_reason(chunk.get("finish_reason"))
        if not delta and finish is None and "usage" not in chunk:
            return []

        native: Dict[str, Any] = {
            "id": state.id,
            "object": "chat.completion.chunk",
            "created": state.created,
            "model": state.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish}],
        }
        if "usage" in chunk:
            usage = chunk["usage"]
            native["usage"] = {
                "prompt_tokens": usage["prompt_tokens"],
                "completion_tokens": usage["completion_tokens"],
                "total_tokens": usage["prompt_tokens"] + usage["completion_tokens"],
            }
        if finish is not None:
            state.finished = True
        return [native]

    @staticmethod
    def _tool_call_delta(part: Dict[str, Any], state: StreamState) -> Dict[str, Any]:
        call_id = part.get("id") or state.block_id
        if call_id and call_id not in state.tool_indices:
            state.tool_indices[call_id] = len(state.tool_indices)
            state.block_id = call_id
            return {
                "index": state.tool_indices[call_id],
                "id": call_id,
                "type": "function",
                "function": {"name": part.get("name", ""), "arguments": part.get("arguments", "")},
            }
        index = state.tool_indices.get(call_id, max(len(state.tool_indices) - 1, 0))
        return {"index": index, "function": {"arguments": part.get("arguments", "")}}
