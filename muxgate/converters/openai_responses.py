from typing import Dict, Any, List, Optional

from .base import BaseConverter, StreamState
from ..errors import ConversionError
from ..types import (
    OPENAI_RESPONSES_CUSTOM, ContentPart, FinishReason, ToolSpec, UnifiedMessage,
    UnifiedRequest, UnifiedResponse, UnifiedStreamChunk, Usage,
)
from ..utils import (
    generate_id, image_part, normalize_usage, require,
    text_part, tool_result_part, unix_time,
)

TEXT_PART_TYPES = ("input_text", "output_text", "text")


class OpenAIResponsesConverter(BaseConverter):
    """
    Converter for the OpenAI Responses API.

    Input items without a ``type`` but with a ``role`` are treated as
    messages, and message content may be a plain string.
    """

    provider_type = OPENAI_RESPONSES_CUSTOM

    # Keyed by response status, or "incomplete:<reason>" for incomplete responses
    FINISH_REASONS = {
        "completed": "stop",
        "incomplete:max_output_tokens": "length",
        "incomplete:content_filter": "content_filter",
        "failed": "error",
        "cancelled": "error",
    }
    KNOWN_REQUEST_KEYS = frozenset({
        "model", "input", "instructions", "tools", "max_output_tokens", "temperature", "stream",
    })

    # ==========================================================================
    # Requests
    # ==========================================================================

    def to_canonical_request(self, native: Dict[str, Any]) -> UnifiedRequest:
        model = require(native, "model", "responses request")
        items = require(native, "input", "responses request")
        if isinstance(items, str):
            items = [{"type": "message", "role": "user", "content": items}]

        messages: List[UnifiedMessage] = []
        if native.get("instructions"):
            messages.append({"role": "system", "content": [text_part(native["instructions"])]})
        for item in items:
            self._append_item(messages, item)

        request: UnifiedRequest = {
            "model": model,
            "messages": messages,
            "stream": bool(native.get("stream", False)),
        }
        if native.get("tools"):
            request["tools"] = [self._tool_to_canonical(t) for t in native["tools"]]
        if native.get("max_output_tokens") is not None:
            request["max_output_tokens"] = native["max_output_tokens"]
        if native.get("temperature") is not None:
            request["temperature"] = native["temperature"]
        extra = self.extract_passthrough(native)
        if extra:
            request["extra"] = extra
        return request

    def _append_item(self, messages: List[UnifiedMessage], item: Dict[str, Any]) -> None:
        kind = item.get("type") or ("message" if "role" in item else None)
        if kind == "message":
            role = require(item, "role", "input message")
            if role == "developer":
                role = "system"
            if role not in ("system", "user", "assistant"):
                raise ConversionError(f"Unsupported input message role: {role!r}")
            parts = self._content_to_canonical(item.get("content"))
            messages.append({"role": role, "content": parts})
        elif kind == "function_call":
            part: ContentPart = {
                "type": "tool_call",
                "id": require(item, "call_id", "function_call item"),
                "name": require(item, "name", "function_call item"),
                "arguments": item.get("arguments") or "{}",
            }
            # Consecutive calls belong to the preceding assistant turn
            if messages and messages[-1]["role"] == "assistant":
                messages[-1]["content"].append(part)
            else:
                messages.append({"role": "assistant", "content": [part]})
        elif kind == "function_call_output":
            call_id = require(item, "call_id", "function_call_output item")
            messages.append({"role": "tool", "content": [tool_result_part(call_id, item.get("output", ""))]})
        else:
            raise ConversionError(f"Unsupported input item type: {kind!r}")

    @staticmethod
    def _content_to_canonical(content: Any) -> List[ContentPart]:
        if content is None or content == "":
            return []
        if isinstance(content, str):
            return [text_part(content)]
        parts: List[ContentPart] = []
        for part in content:
            kind = part.get("type")
            if kind in TEXT_PART_TYPES:
                parts.append(text_part(part.get("text", "")))
            elif kind == "input_image":
                image_url = part.get("image_url")
                if isinstance(image_url, dict):
                    image_url = image_url.get("url")
                if not image_url:
                    raise ConversionError("input_image part without an image_url")
                parts.append(image_part(image_url))
            else:
                raise ConversionError(f"Unsupported input content part: {kind!r}")
        return parts

    @staticmethod
    def _tool_to_canonical(tool: Dict[str, Any]) -> ToolSpec:
        if tool.get("type", "function") != "function":
            raise ConversionError(f"Unsupported tool type: {tool.get('type')!r}")
        return {
            "name": require(tool, "name", "function tool"),
            "description": tool.get("description") or "",
            "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
        }

    def to_native_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        self.check_parts(request["messages"])
        items: List[Dict[str, Any]] = []
        for msg in request["messages"]:
            items.extend(self._message_to_items(msg))

        native: Dict[str, Any] = {"model": model, "input": items}
        if request.get("tools"):
            native["tools"] = [
                {
                    "type": "function",
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("parameters") or {"type": "object", "properties": {}},
                }
                for t in request["tools"]
            ]
        if request.get("max_output_tokens") is not None:
            native["max_output_tokens"] = request["max_output_tokens"]
        if request.get("temperature") is not None:
            native["temperature"] = request["temperature"]
        if request.get("stop_sequences"):
            raise ConversionError("Responses API has no stop sequences")
        if request.get("stream"):
            native["stream"] = True
        return self.apply_passthrough(native, request)

    @staticmethod
    def _message_to_items(msg: UnifiedMessage) -> List[Dict[str, Any]]:
        role = msg["role"]
        text_type = "output_text" if role == "assistant" else "input_text"
        items: List[Dict[str, Any]] = []
        content: List[Dict[str, Any]] = []
        for part in msg["content"]:
            if part["type"] == "text":
                content.append({"type": text_type, "text": part["text"]})
            elif part["type"] == "image":
                if role == "assistant":
                    raise ConversionError("Responses API does not accept images in assistant messages")
                content.append({"type": "input_image", "image_url": part["reference"]})
            elif part["type"] == "tool_call":
                items.append({
                    "type": "function_call",
                    "call_id": part["id"],
                    "name": part["name"],
                    "arguments": part["arguments"],
                })
            elif part["type"] == "tool_result":
                items.append({
                    "type": "function_call_output",
                    "call_id": part["tool_call_id"],
                    "output": part["output"],
                })
        if content or (role != "tool" and not items):
            items.insert(0, {"type": "message", "role": role, "content": content})
        return items

    # ==========================================================================
    # Responses
    # ==========================================================================

    def _finish_from_response(self, native: Dict[str, Any], saw_tool_call: bool) -> FinishReason:
        status = native.get("status", "completed")
        key = status
        if status == "incomplete":
            key = f"incomplete:{(native.get('incomplete_details') or {}).get('reason')}"
        finish = self.map_finish_reason(key)
        if finish == "stop" and saw_tool_call:
            return "tool_calls"
        return finish

    @staticmethod
    def _usage_from_native(usage: Optional[Dict[str, Any]]) -> Usage:
        usage = usage or {}
        return normalize_usage(usage.get("input_tokens"), usage.get("output_tokens"), usage.get("total_tokens"))

    def to_canonical_response(self, native: Dict[str, Any]) -> UnifiedResponse:
        output = require(native, "output", "responses response")
        parts: List[ContentPart] = []
        reasoning = []
        for item in output:
            kind = item.get("type")
            if kind == "message":
                for block in item.get("content") or []:
                    if block.get("type") == "output_text":
                        parts.append(text_part(block.get("text", "")))
                    elif block.get("type") == "refusal":
                        parts.append(text_part(block.get("refusal", "")))
            elif kind == "function_call":
                parts.append({
                    "type": "tool_call",
                    "id": require(item, "call_id", "function_call output"),
                    "name": require(item, "name", "function_call output"),
                    "arguments": item.get("arguments") or "{}",
                })
            elif kind == "reasoning":
                reasoning.append(item)
            else:
                raise ConversionError(f"Unsupported output item type: {kind!r}")

        saw_tool_call = any(p["type"] == "tool_call" for p in parts)
        return self.build_response(
            native.get("id") or generate_id("resp_"),
            native.get("model", ""),
            parts,
            self._finish_from_response(native, saw_tool_call),
            self._usage_from_native(native.get("usage")),
            created_at=native.get("created_at"),
            reasoning=reasoning or None,
        )

    def _native_envelope(
        self,
        response_id: str,
        model: str,
        created_at: int,
        output: List[Dict[str, Any]],
        finish_reason: Optional[str],
        usage: Optional[Usage],
    ) -> Dict[str, Any]:
        native: Dict[str, Any] = {
            "id": response_id,
            "object": "response",
            "created_at": created_at,
            "model": model,
            "status": "in_progress",
            "output": output,
        }
        if finish_reason in ("stop", "tool_calls"):
            native["status"] = "completed"
        elif finish_reason == "length":
            native["status"] = "incomplete"
            native["incomplete_details"] = {"reason": "max_output_tokens"}
        elif finish_reason == "content_filter":
            native["status"] = "incomplete"
            native["incomplete_details"] = {"reason": "content_filter"}
        elif finish_reason == "error":
            native["status"] = "failed"
        if usage is not None:
            native["usage"] = {
                "input_tokens": usage["prompt_tokens"],
                "output_tokens": usage["completion_tokens"],
                "total_tokens": usage["prompt_tokens"] + usage["completion_tokens"],
            }
        return native

    def to_native_response(self, response: UnifiedResponse) -> Dict[str, Any]:
        choice = self.first_choice(response)
        output: List[Dict[str, Any]] = []
        texts = []
        for part in choice["message"]["content"]:
            if part["type"] == "text":
                texts.append({"type": "output_text", "text": part["text"], "annotations": []})
            elif part["type"] == "tool_call":
                output.append({
                    "type": "function_call",
                    "id": generate_id("fc_"),
                    "call_id": part["id"],
                    "name": part["name"],
                    "arguments": part["arguments"],
                    "status": "completed",
                })
            else:
                raise ConversionError(f"Responses output cannot carry '{part['type']}' content")
        if texts:
            output.insert(0, {
                "type": "message",
                "id": generate_id("msg_"),
                "role": "assistant",
                "status": "completed",
                "content": texts,
            })
        return self._native_envelope(
            response["id"],
            response["model"],
            response.get("raw", {}).get("created_at") or unix_time(),
            output,
            choice["finish_reason"],
            response["usage"],
        )

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

        if event in ("response.created", "response.in_progress"):
            response = native_chunk.get("response") or {}
            state.id = state.id or response.get("id", "")
            state.model = state.model or response.get("model", "")
            return None

        if event == "response.output_text.delta":
            return self._stamp({"delta": [text_part(native_chunk.get("delta", ""))]}, state)

        if event == "response.output_item.added":
            item = native_chunk.get("item") or {}
            if item.get("type") != "function_call":
                return None
            state.tool_ids[native_chunk.get("output_index", 0)] = item.get("call_id", "")
            state.tool_count += 1
            return self._stamp({"delta": [{
                "type": "tool_call",
                "id": item.get("call_id", ""),
                "name": item.get("name", ""),
                "arguments": item.get("arguments") or "",
            }]}, state)

        if event == "response.function_call_arguments.delta":
            call_id = state.tool_ids.get(native_chunk.get("output_index", 0), "")
            return self._stamp({"delta": [{
                "type": "tool_call", "id": call_id, "name": "", "arguments": native_chunk.get("delta", ""),
            }]}, state)

        if event in ("response.completed", "response.incomplete", "response.failed"):
            response = native_chunk.get("response") or {}
            state.finished = True
            saw_tool_call = state.tool_count > 0 or any(
                item.get("type") == "function_call" for item in response.get("output") or []
            )
            chunk: UnifiedStreamChunk = {
                "finish_reason": self._finish_from_response(response, saw_tool_call),
                "usage": self._usage_from_native(response.get("usage")),
            }
            if event == "response.failed":
                error = response.get("error") or {}
                chunk["error"] = {"type": error.get("code") or "upstream_error", "message": error.get("message", "")}
            return self._stamp(chunk, state)

        if event == "error":
            state.finished = True
            return self._stamp({
                "finish_reason": "error",
                "error": {"type": native_chunk.get("code") or "upstream_error", "message": native_chunk.get("message", "")},
            }, state)

        return None

    def to_native_chunk(
        self,
        chunk: UnifiedStreamChunk,
        state: Optional[StreamState] = None,
    ) -> List[Dict[str, Any]]:
        state = state if state is not None else self.new_stream_state()
        events: List[Dict[str, Any]] = []
        if not state.started:
            state.started = True
            state.id = state.id or chunk.get("id") or generate_id("resp_")
            state.model = state.model or chunk.get("model", "")
            events.append(self._event(state, "response.created", response=self._native_envelope(
                state.id, state.model, state.created, [], None, None,
            )))

        for part in chunk.get("delta", []):
            if part["type"] == "text":
                if state.block_type != "message":
                    self._close_block(state, events)
                    self._open_message(state, events)
                state.buffer += part["text"]
                events.append(self._event(
                    state, "response.output_text.delta",
                    item_id=state.block_id, output_index=state.block_index, content_index=0, delta=part["text"],
                ))
            elif part["type"] == "tool_call":
                if part.get("id") and (state.block_type != "function_call" or part["id"] != state.extra.get("call_id")):
                    self._close_block(state, events)
                    self._open_function_call(state, events, part)
                if part.get("arguments"):
                    state.buffer += part["arguments"]
                    events.append(self._event(
                        state, "response.function_call_arguments.delta",
                        item_id=state.block_id, output_index=state.block_index, delta=part["arguments"],
                    ))
            else:
                raise ConversionError(f"Responses streams cannot carry '{part['type']}' content")

        if "usage" in chunk:
            state.usage = chunk["usage"]
        if chunk.get("finish_reason"):
            self._close_block(state, events)
            state.finished = True
            envelope = self._native_envelope(
                state.id, state.model, state.created, list(state.items), chunk["finish_reason"], state.usage,
            )
            if chunk.get("error"):
                envelope["error"] = {"code": chunk["error"]["type"], "message": chunk["error"]["message"]}
            event = {"completed": "response.completed", "incomplete": "response.incomplete"}.get(
                envelope["status"], "response.failed"
            )
            events.append(self._event(state, event, response=envelope))
        return events

    @staticmethod
    def _event(state: StreamState, event_type: str, **fields: Any) -> Dict[str, Any]:
        return {"type": event_type, "sequence_number": state.next_sequence(), **fields}

    def _open_message(self, state: StreamState, events: List[Dict[str, Any]]) -> None:
        state.block_index = len(state.items)
        state.block_type = "message"
        state.block_id = generate_id("msg_")
        state.buffer = ""
        events.append(self._event(
            state, "response.output_item.added", output_index=state.block_index,
            item={"type": "message", "id": state.block_id, "role": "assistant", "status": "in_progress", "content": []},
        ))
        events.append(self._event(
            state, "response.content_part.added", item_id=state.block_id, output_index=state.block_index,
            content_index=0, part={"type": "output_text", "text": "", "annotations": []},
        ))

    def _open_function_call(self, state: StreamState, events: List[Dict[str, Any]], part: Dict[str, Any]) -> None:
        state.block_index = len(state.items)
        state.block_type = "function_call"
        state.block_id = generate_id("fc_")
        state.block_name = part.get("name", "")
        state.extra["call_id"] = part["id"]
        state.buffer = ""
        events.append(self._event(
            state, "response.output_item.added", output_index=state.block_index,
            item={
                "type": "function_call", "id": state.block_id, "call_id": part["id"],
                "name": state.block_name, "arguments": "", "status": "in_progress",
            },
        ))

    def _close_block(self, state: StreamState, events: List[Dict[str, Any]]) -> None:
        if state.block_type == "message":
            text_block = {"type": "output_text", "text": state.buffer, "annotations": []}
            item = {
                "type": "message", "id": state.block_id, "role": "assistant",
                "status": "completed", "content": [text_block],
            }
            events.append(self._event(
                state, "response.output_text.done", item_id=state.block_id,
                output_index=state.block_index, content_index=0, text=state.buffer,
            ))
            events.append(self._event(
                state, "response.content_part.done", item_id=state.block_id,
                output_index=state.block_index, content_index=0, part=text_block,
            ))
        elif state.block_type == "function_call":
            item = {
                "type": "function_call", "id": state.block_id, "call_id": state.extra.get("call_id", ""),
                "name": state.block_name, "arguments": state.buffer, "status": "completed",
            }
            events.append(self._event(
                state, "response.function_call_arguments.done", item_id=state.block_id,
                output_index=state.block_index, arguments=state.buffer,
            ))
        else:
            return
        events.append(self._event(state, "response.output_item.done", output_index=state.block_index, item=item))
        state.items.append(item)
        state.block_type = None
        state.block_id = None
        state.buffer = ""
