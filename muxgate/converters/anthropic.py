import json
from typing import Dict, Any, List, Optional

from loguru import logger

from .base import BaseConverter, StreamState
from ..errors import ConversionError
from ..types import (
    CLAUDE_CUSTOM, ContentPart, ToolSpec, UnifiedMessage, UnifiedRequest,
    UnifiedResponse, UnifiedStreamChunk, Usage,
)
from ..utils import (
    build_data_uri, generate_id, image_part, is_remote_url, load_arguments,
    normalize_usage, parse_data_uri, require, text_part, tool_result_part,
)

DEFAULT_MAX_TOKENS = 4096


class ClaudeConverter(BaseConverter):
    """
    Converter for the Anthropic Claude Messages API.
    """

    provider_type = CLAUDE_CUSTOM

    FINISH_REASONS = {
        "end_turn": "stop",
        "stop_sequence": "stop",
        "pause_turn": "stop",
        "max_tokens": "length",
        "model_context_window_exceeded": "length",
        "tool_use": "tool_calls",
        "refusal": "content_filter",
    }
    NATIVE_FINISH_REASONS = {
        "stop": "end_turn",
        "length": "max_tokens",
        "tool_calls": "tool_use",
        "content_filter": "refusal",
        "error": "end_turn",
    }
    KNOWN_REQUEST_KEYS = frozenset({
        "model", "messages", "system", "tools", "max_tokens", "temperature", "stop_sequences", "stream",
    })

    # ==========================================================================
    # Requests
    # ==========================================================================

    def to_canonical_request(self, native: Dict[str, Any]) -> UnifiedRequest:
        model = require(native, "model", "messages request")
        native_messages = require(native, "messages", "messages request")

        messages: List[UnifiedMessage] = []
        system = native.get("system")
        if system:
            messages.append({"role": "system", "content": self._blocks_to_canonical(system, "system")})
        for msg in native_messages:
            messages.extend(self._message_to_canonical(msg))

        request: UnifiedRequest = {
            "model": model,
            "messages": messages,
            "stream": bool(native.get("stream", False)),
        }
        if native.get("tools"):
            request["tools"] = [self._tool_to_canonical(t) for t in native["tools"]]
        if native.get("max_tokens") is not None:
            request["max_output_tokens"] = native["max_tokens"]
        if native.get("temperature") is not None:
            request["temperature"] = native["temperature"]
        if native.get("stop_sequences"):
            request["stop_sequences"] = list(native["stop_sequences"])
        extra = self.extract_passthrough(native)
        if extra:
            request["extra"] = extra
        return request

    def _message_to_canonical(self, msg: Dict[str, Any]) -> List[UnifiedMessage]:
        role = require(msg, "role", "message")
        if role not in ("user", "assistant"):
            raise ConversionError(f"Unsupported message role: {role!r}")
        parts = self._blocks_to_canonical(msg.get("content", ""), role)

        # tool_result blocks become role="tool" messages, keeping block order
        messages: List[UnifiedMessage] = []
        for part in parts:
            target = "tool" if part["type"] == "tool_result" else role
            if messages and messages[-1]["role"] == target:
                messages[-1]["content"].append(part)
            else:
                messages.append({"role": target, "content": [part]})
        return messages or [{"role": role, "content": []}]

    @staticmethod
    def _blocks_to_canonical(content: Any, role: str) -> List[ContentPart]:
        if isinstance(content, str):
            return [text_part(content)] if content else []
        parts: List[ContentPart] = []
        for block in content:
            kind = block.get("type")
            if kind == "text":
                parts.append(text_part(block.get("text", "")))
            elif kind == "image":
                source = require(block, "source", "image block")
                if source.get("type") == "base64":
                    media_type = require(source, "media_type", "image source")
                    parts.append(image_part(build_data_uri(require(source, "data", "image source"), media_type)))
                elif source.get("type") == "url":
                    parts.append(image_part(require(source, "url", "image source")))
                else:
                    raise ConversionError(f"Unsupported image source type: {source.get('type')!r}")
            elif kind == "tool_use":
                parts.append({
                    "type": "tool_call",
                    "id": require(block, "id", "tool_use block"),
                    "name": require(block, "name", "tool_use block"),
                    "arguments": json.dumps(block.get("input") or {}, ensure_ascii=False),
                })
            elif kind == "tool_result":
                parts.append(tool_result_part(
                    require(block, "tool_use_id", "tool_result block"), block.get("content", "")
                ))
            elif kind in ("thinking", "redacted_thinking"):
                logger.debug(f"Skipping {kind} block in {role} message")
            else:
                raise ConversionError(f"Unsupported content block type: {kind!r}")
        return parts

    @staticmethod
    def _tool_to_canonical(tool: Dict[str, Any]) -> ToolSpec:
        if "input_schema" not in tool:
            raise ConversionError(f"Unsupported tool: {tool.get('type') or tool.get('name')!r}")
        return {
            "name": require(tool, "name", "tool"),
            "description": tool.get("description", ""),
            "parameters": tool["input_schema"],
        }

    def to_native_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        self.check_parts(request["messages"])
        system_parts: List[ContentPart] = []
        messages: List[Dict[str, Any]] = []
        for msg in request["messages"]:
            if msg["role"] == "system":
                system_parts.extend(msg["content"])
                continue
            role = "assistant" if msg["role"] == "assistant" else "user"
            messages.append({"role": role, "content": [self._part_to_block(p) for p in msg["content"]]})

        native: Dict[str, Any] = {
            "model": model,
            "max_tokens": request.get("max_output_tokens") or DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system_parts:
            if any(p["type"] != "text" for p in system_parts):
                raise ConversionError("Claude system prompts accept text only")
            if len(system_parts) == 1:
                native["system"] = system_parts[0]["text"]
            else:
                native["system"] = [{"type": "text", "text": p["text"]} for p in system_parts]
        if request.get("tools"):
            native["tools"] = [
                {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "input_schema": t.get("parameters") or {"type": "object", "properties": {}},
                }
                for t in request["tools"]
            ]
        if request.get("temperature") is not None:
            native["temperature"] = request["temperature"]
        if request.get("stop_sequences"):
            native["stop_sequences"] = list(request["stop_sequences"])
        if request.get("stream"):
            native["stream"] = True
        return self.apply_passthrough(native, request)

    @staticmethod
    def _part_to_block(part: ContentPart) -> Dict[str, Any]:
        if part["type"] == "text":
            return {"type": "text", "text": part["text"]}
        if part["type"] == "image":
            if is_remote_url(part["reference"]):
                return {"type": "image", "source": {"type": "url", "url": part["reference"]}}
            data, mime_type = parse_data_uri(part["reference"])
            return {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}}
        if part["type"] == "tool_call":
            return {"type": "tool_use", "id": part["id"], "name": part["name"], "input": load_arguments(part["arguments"])}
        return {"type": "tool_result", "tool_use_id": part["tool_call_id"], "content": part["output"]}

    # ==========================================================================
    # Responses
    # ==========================================================================

    @staticmethod
    def _usage_from_native(usage: Optional[Dict[str, Any]]) -> Usage:
        usage = usage or {}
        return normalize_usage(usage.get("input_tokens"), usage.get("output_tokens"))

    def to_canonical_response(self, native: Dict[str, Any]) -> UnifiedResponse:
        content = require(native, "content", "message response")
        thinking = [b for b in content if b.get("type") in ("thinking", "redacted_thinking")]
        parts = self._blocks_to_canonical(content, "assistant")
        usage = native.get("usage") or {}
        return self.build_response(
            native.get("id") or generate_id("msg_"),
            native.get("model", ""),
            parts,
            self.map_finish_reason(native.get("stop_reason")),
            self._usage_from_native(usage),
            stop_sequence=native.get("stop_sequence"),
            thinking=thinking or None,
            cache_read_input_tokens=usage.get("cache_read_input_tokens"),
            cache_creation_input_tokens=usage.get("cache_creation_input_tokens"),
        )

    def to_native_response(self, response: UnifiedResponse) -> Dict[str, Any]:
        choice = self.first_choice(response)
        usage = response["usage"]
        return {
            "id": response["id"],
            "type": "message",
            "role": "assistant",
            "model": response["model"],
            "content": [self._part_to_block(p) for p in choice["message"]["content"]],
            "stop_reason": self.native_finish_reason(choice["finish_reason"]),
            "stop_sequence": response.get("raw", {}).get("stop_sequence"),
            "usage": {"input_tokens": usage["prompt_tokens"], "output_tokens": usage["completion_tokens"]},
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
        event = native_chunk.get("type")

        if event == "message_start":
            message = native_chunk.get("message") or {}
            state.id = message.get("id", state.id)
            state.model = message.get("model", state.model)
            state.usage = self._usage_from_native(message.get("usage"))
            return None

        if event == "content_block_start":
            block = native_chunk.get("content_block") or {}
            if block.get("type") == "text" and block.get("text"):
                return self._stamp({"delta": [text_part(block["text"])]}, state)
            if block.get("type") == "tool_use":
                state.tool_ids[native_chunk.get("index", 0)] = block.get("id", "")
                state.tool_count += 1
                return self._stamp({"delta": [{
                    "type": "tool_call", "id": block.get("id", ""), "name": block.get("name", ""), "arguments": "",
                }]}, state)
            return None

        if event == "content_block_delta":
            delta = native_chunk.get("delta") or {}
            if delta.get("type") == "text_delta":
                return self._stamp({"delta": [text_part(delta.get("text", ""))]}, state)
            if delta.get("type") == "input_json_delta":
                return self._stamp({"delta": [{
                    "type": "tool_call",
                    "id": state.tool_ids.get(native_chunk.get("index", 0), ""),
                    "name": "",
                    "arguments": delta.get("partial_json", ""),
                }]}, state)
            return None

        if event == "message_delta":
            delta = native_chunk.get("delta") or {}
            usage = native_chunk.get("usage") or {}
            prompt = usage.get("input_tokens")
            if prompt is None and state.usage:
                prompt = state.usage["prompt_tokens"]
            state.usage = normalize_usage(prompt, usage.get("output_tokens"))
            chunk: UnifiedStreamChunk = {"usage": state.usage}
            if delta.get("stop_reason"):
                chunk["finish_reason"] = self.map_finish_reason(delta["stop_reason"])
                state.finished = True
            return self._stamp(chunk, state)

        if event == "error":
            error = native_chunk.get("error") or {}
            state.finished = True
            return self._stamp({
                "finish_reason": "error",
                "error": {"type": error.get("type") or "upstream_error", "message": error.get("message", "")},
            }, state)

        # ping, content_block_stop, message_stop
        return None

    def to_native_chunk(
        self,
        chunk: UnifiedStreamChunk,
        state: Optional[StreamState] = None,
    ) -> List[Dict[str, Any]]:
        state = state if state is not None else self.new_stream_state()
        if chunk.get("error"):
            state.finished = True
            return [{"type": "error", "error": {"type": chunk["error"]["type"], "message": chunk["error"]["message"]}}]

        events: List[Dict[str, Any]] = []
        if not state.started:
            state.started = True
            state.id = state.id or chunk.get("id") or generate_id("msg_")
            state.model = state.model or chunk.get("model", "")
            events.append({
                "type": "message_start",
                "message": {
                    "id": state.id, "type": "message", "role": "assistant", "model": state.model,
                    "content": [], "stop_reason": None, "stop_sequence": None,
                    "usage": {"input_tokens": 0, "output_tokens": 0},
                },
            })

        for part in chunk.get("delta", []):
            if part["type"] == "text":
                if state.block_type != "text":
                    self._open_block(state, events, {"type": "text", "text": ""})
                events.append({
                    "type": "content_block_delta", "index": state.block_index,
                    "delta": {"type": "text_delta", "text": part["text"]},
                })
            elif part["type"] == "tool_call":
                if part.get("id") and (state.block_type != "tool_use" or part["id"] != state.block_id):
                    self._open_block(state, events, {"type": "tool_use", "id": part["id"], "name": part["name"], "input": {}})
                    state.block_id = part["id"]
                if part.get("arguments"):
                    events.append({
                        "type": "content_block_delta", "index": state.block_index,
                        "delta": {"type": "input_json_delta", "partial_json": part["arguments"]},
                    })
            else:
                raise ConversionError(f"Claude streams cannot carry '{part['type']}' content")

        if "usage" in chunk:
            state.usage = chunk["usage"]
        if chunk.get("finish_reason"):
            self._close_block(state, events)
            usage = state.usage or normalize_usage()
            events.append({
                "type": "message_delta",
                "delta": {"stop_reason": self.native_finish_reason(chunk["finish_reason"]), "stop_sequence": None},
                "usage": {"input_tokens": usage["prompt_tokens"], "output_tokens": usage["completion_tokens"]},
            })
            events.append({"type": "message_stop"})
            state.finished = True
        return events

    @staticmethod
    def _open_block(state: StreamState, events: List[Dict[str, Any]], block: Dict[str, Any]) -> None:
        ClaudeConverter._close_block(state, events)
        state.block_index += 1
        state.block_type = block["type"]
        state.block_id = None
        events.append({"type": "content_block_start", "index": state.block_index, "content_block": block})

    @staticmethod
    def _close_block(state: StreamState, events: List[Dict[str, Any]]) -> None:
        if state.block_type is not None:
            events.append({"type": "content_block_stop", "index": state.block_index})
            state.block_type = None
            state.block_id = None
