import json
import math
import uuid
from typing import Dict, Any, List, Optional, Iterable

from .base import BaseConverter, StreamState
from ..errors import ConversionError
from ..types import (
    KIRO_OAUTH, ContentPart, ToolSpec, UnifiedMessage, UnifiedRequest,
    UnifiedResponse, UnifiedStreamChunk, Usage,
)
from ..utils import (
    build_data_uri, generate_id, image_part, is_remote_url, load_arguments,
    normalize_usage, parse_data_uri, require, text_part, tool_result_part,
)

# Kiro rejects a user turn with no content
CONTINUE_PROMPT = "Continue"
# Context window used to turn contextUsagePercentage into prompt tokens
MAX_INPUT_TOKENS = 200_000


def estimate_usage(
    usage: Optional[Dict[str, Any]],
    context_usage_percentage: Optional[float],
    completion_chars: int,
) -> Usage:
    """
    Token usage for a Kiro response.

    Kiro reports context usage as a percentage rather than token counts.
    Completion tokens are estimated at four characters per token and the
    prompt gets the remainder of the context total.

    Args:
        usage (dict, optional): Explicit {"inputTokens", "outputTokens"} when present.
        context_usage_percentage (float, optional): Percentage of the context window used.
        completion_chars (int): Characters of generated text.

    Returns:
        Usage: Canonical usage.
    """
    if isinstance(usage, dict):
        return normalize_usage(usage.get("inputTokens"), usage.get("outputTokens"))
    completion = math.ceil(completion_chars / 4)
    prompt = 0
    if context_usage_percentage:
        total = int(context_usage_percentage / 100 * MAX_INPUT_TOKENS)
        prompt = max(total - completion, 0)
    return normalize_usage(prompt, completion)


def aggregate_events(events: Iterable[Dict[str, Any]], conversation_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Fold decoded Kiro stream events into a single non-streamed response body.

    Kiro only answers with an event stream; the default transport uses this
    for non-streaming calls.
    """
    content = ""
    last_content = None
    tool_uses: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None
    result: Dict[str, Any] = {}

    def finish_tool():
        nonlocal current
        if current is not None:
            tool_uses.append({
                "toolUseId": current["toolUseId"],
                "name": current["name"],
                "input": load_arguments(current["input"]),
            })
            current = None

    for event in events:
        if "name" in event:
            finish_tool()
            current = {
                "toolUseId": event.get("toolUseId") or generate_id("tooluse_"),
                "name": event["name"],
                "input": _input_text(event.get("input")),
            }
            if event.get("stop"):
                finish_tool()
        elif "input" in event:
            if current is not None:
                current["input"] += _input_text(event["input"])
            if event.get("stop"):
                finish_tool()
        elif "stop" in event:
            if event.get("stop"):
                finish_tool()
        elif "content" in event:
            if event.get("followupPrompt") or event["content"] == last_content:
                continue
            last_content = event["content"]
            content += event["content"]
        elif "usage" in event:
            if isinstance(event["usage"], dict):
                result["usage"] = event["usage"]
            else:
                result["credits"] = event["usage"]
        elif "contextUsagePercentage" in event:
            result["contextUsagePercentage"] = event["contextUsagePercentage"]
    finish_tool()

    message: Dict[str, Any] = {"content": content}
    if tool_uses:
        message["toolUses"] = tool_uses
    response = {"assistantResponseMessage": message, **result}
    if conversation_id:
        response["conversationId"] = conversation_id
    return response


def _input_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class KiroConverter(BaseConverter):
    """
    Converter for the Kiro (AWS CodeWhisperer) ``conversationState`` format.

    Kiro has no system role: system text is prepended to the first user turn.
    It has no finish reason either; a response that used tools finishes with
    "tool_calls", anything else with "stop". Images must be inline bytes.
    """

    provider_type = KIRO_OAUTH
    KNOWN_REQUEST_KEYS = frozenset({"conversationState", "profileArn", "model", "stream"})

    # ==========================================================================
    # Requests
    # ==========================================================================

    def to_canonical_request(self, native: Dict[str, Any]) -> UnifiedRequest:
        state = require(native, "conversationState", "Kiro request")
        current = require(require(state, "currentMessage", "conversationState"), "userInputMessage", "currentMessage")
        model = current.get("modelId") or native.get("model")
        if not model:
            raise ConversionError("Kiro request: missing required field 'modelId'")

        messages: List[UnifiedMessage] = []
        for entry in state.get("history") or []:
            if "userInputMessage" in entry:
                messages.extend(self._user_turn_to_canonical(entry["userInputMessage"]))
            elif "assistantResponseMessage" in entry:
                messages.append(self._assistant_turn_to_canonical(entry["assistantResponseMessage"]))
            else:
                raise ConversionError(f"Unsupported Kiro history entry: {list(entry)}")
        messages.extend(self._user_turn_to_canonical(current))

        request: UnifiedRequest = {
            "model": model,
            "messages": messages,
            "stream": bool(native.get("stream", False)),
        }
        tools = (current.get("userInputMessageContext") or {}).get("tools") or []
        if tools:
            request["tools"] = [self._tool_to_canonical(t) for t in tools]
        extra = self.extract_passthrough(native)
        if extra:
            request["extra"] = extra
        return request

    @staticmethod
    def _user_turn_to_canonical(turn: Dict[str, Any]) -> List[UnifiedMessage]:
        messages: List[UnifiedMessage] = []
        context = turn.get("userInputMessageContext") or {}
        results = []
        for result in context.get("toolResults") or []:
            content = result.get("content", "")
            if isinstance(content, list):
                content = "".join(c.get("text", "") for c in content if isinstance(c, dict))
            results.append(tool_result_part(require(result, "toolUseId", "toolResult"), content))
        if results:
            messages.append({"role": "tool", "content": results})

        parts: List[ContentPart] = []
        if turn.get("content"):
            parts.append(text_part(turn["content"]))
        for image in turn.get("images") or []:
            data = require(require(image, "source", "image"), "bytes", "image source")
            parts.append(image_part(build_data_uri(data, f"image/{image.get('format', 'png')}")))
        if parts or not results:
            messages.append({"role": "user", "content": parts})
        return messages

    @staticmethod
    def _assistant_turn_to_canonical(turn: Dict[str, Any]) -> UnifiedMessage:
        parts: List[ContentPart] = []
        if turn.get("content"):
            parts.append(text_part(turn["content"]))
        for use in turn.get("toolUses") or []:
            parts.append({
                "type": "tool_call",
                "id": require(use, "toolUseId", "toolUse"),
                "name": require(use, "name", "toolUse"),
                "arguments": json.dumps(use.get("input") or {}, ensure_ascii=False),
            })
        return {"role": "assistant", "content": parts}

    @staticmethod
    def _tool_to_canonical(tool: Dict[str, Any]) -> ToolSpec:
        spec = require(tool, "toolSpecification", "Kiro tool")
        schema = (spec.get("inputSchema") or {}).get("json") or {"type": "object", "properties": {}}
        return {"name": require(spec, "name", "toolSpecification"), "description": spec.get("description", ""), "parameters": schema}

    def to_native_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        self.check_parts(request["messages"])
        system_prompt = "\n".join(
            p["text"] for m in request["messages"] if m["role"] == "system" for p in m["content"] if p["type"] == "text"
        )

        # Kiro alternates user and assistant turns; tool messages join the user turn
        turns: List[Dict[str, Any]] = []
        for msg in request["messages"]:
            if msg["role"] == "system":
                continue
            kind = "assistant" if msg["role"] == "assistant" else "user"
            if turns and turns[-1]["kind"] == kind:
                turns[-1]["parts"].extend(msg["content"])
            else:
                turns.append({"kind": kind, "parts": list(msg["content"])})
        if not turns:
            raise ConversionError("Kiro request needs at least one user or assistant message")

        history = []
        for turn in turns:
            if turn["kind"] == "user":
                history.append({"userInputMessage": self._user_turn_to_native(turn["parts"], model)})
            else:
                history.append({"assistantResponseMessage": self._assistant_turn_to_native(turn["parts"])})

        if "assistantResponseMessage" in history[-1]:
            current = {"content": CONTINUE_PROMPT, "modelId": model, "origin": "AI_EDITOR"}
        else:
            current = history.pop()["userInputMessage"]

        if system_prompt:
            first_user = next((h["userInputMessage"] for h in history if "userInputMessage" in h), current)
            first_user["content"] = f"{system_prompt}\n\n{first_user['content']}" if first_user["content"] else system_prompt

        if request.get("tools"):
            current.setdefault("userInputMessageContext", {})["tools"] = [
                {"toolSpecification": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "inputSchema": {"json": t.get("parameters") or {"type": "object", "properties": {}}},
                }}
                for t in request["tools"]
            ]

        conversation: Dict[str, Any] = {
            "chatTriggerType": "MANUAL",
            "conversationId": str(uuid.uuid4()),
            "currentMessage": {"userInputMessage": current},
        }
        if history:
            conversation["history"] = history
        native = {"conversationState": conversation}
        return self.apply_passthrough(native, request)

    @staticmethod
    def _user_turn_to_native(parts: List[ContentPart], model: str) -> Dict[str, Any]:
        texts, images, results = [], [], []
        for part in parts:
            if part["type"] == "text":
                texts.append(part["text"])
            elif part["type"] == "image":
                if is_remote_url(part["reference"]):
                    raise ConversionError("Kiro accepts inline images only, not URLs")
                data, mime_type = parse_data_uri(part["reference"])
                images.append({"format": mime_type.split("/")[-1], "source": {"bytes": data}})
            elif part["type"] == "tool_result":
                results.append({
                    "toolUseId": part["tool_call_id"],
                    "content": [{"text": part["output"]}],
                    "status": "success",
                })
            else:
                raise ConversionError("Kiro user turns cannot carry tool calls")

        content = "\n".join(texts)
        if not content and not results:
            content = CONTINUE_PROMPT
        message: Dict[str, Any] = {"content": content, "modelId": model, "origin": "AI_EDITOR"}
        if images:
            message["images"] = images
        if results:
            message["userInputMessageContext"] = {"toolResults": results}
        return message

    @staticmethod
    def _assistant_turn_to_native(parts: List[ContentPart]) -> Dict[str, Any]:
        texts, tool_uses = [], []
        for part in parts:
            if part["type"] == "text":
                texts.append(part["text"])
            elif part["type"] == "tool_call":
                tool_uses.append({"toolUseId": part["id"], "name": part["name"], "input": load_arguments(part["arguments"])})
            else:
                raise ConversionError(f"Kiro assistant turns cannot carry '{part['type']}' content")
        message: Dict[str, Any] = {"content": "\n".join(texts)}
        if tool_uses:
            message["toolUses"] = tool_uses
        return message

    # ==========================================================================
    # Responses
    # ==========================================================================

    def to_canonical_response(self, native: Dict[str, Any]) -> UnifiedResponse:
        message = require(native, "assistantResponseMessage", "Kiro response")
        parts = self._assistant_turn_to_canonical(message)["content"]
        finish = "tool_calls" if any(p["type"] == "tool_call" for p in parts) else "stop"
        return self.build_response(
            native.get("conversationId") or generate_id("kiro-"),
            native.get("model", ""),
            parts,
            finish,
            estimate_usage(native.get("usage"), native.get("contextUsagePercentage"), len(message.get("content") or "")),
            credits=native.get("credits"),
            context_usage_percentage=native.get("contextUsagePercentage"),
        )

    def to_native_response(self, response: UnifiedResponse) -> Dict[str, Any]:
        choice = self.first_choice(response)
        usage = response["usage"]
        return {
            "conversationId": response["id"],
            "model": response["model"],
            "assistantResponseMessage": self._assistant_turn_to_native(choice["message"]["content"]),
            "usage": {"inputTokens": usage["prompt_tokens"], "outputTokens": usage["completion_tokens"]},
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

        if "error" in native_chunk:
            error = native_chunk["error"] or {}
            state.finished = True
            return self._stamp({
                "finish_reason": "error",
                "error": {"type": error.get("type") or "upstream_error", "message": error.get("message", "")},
            }, state)

        if "name" in native_chunk:
            call_id = native_chunk.get("toolUseId") or generate_id("tooluse_")
            state.block_id = None if native_chunk.get("stop") else call_id
            state.tool_count += 1
            return self._stamp({"delta": [{
                "type": "tool_call",
                "id": call_id,
                "name": native_chunk["name"],
                "arguments": _input_text(native_chunk.get("input")),
            }]}, state)

        if "input" in native_chunk:
            call_id = native_chunk.get("toolUseId") or state.block_id or ""
            return self._stamp({"delta": [{
                "type": "tool_call", "id": call_id, "name": "", "arguments": _input_text(native_chunk["input"]),
            }]}, state)

        if "stop" in native_chunk:
            state.block_id = None
            return None

        if "content" in native_chunk:
            content = native_chunk["content"]
            if native_chunk.get("followupPrompt") or content == state.extra.get("last_content") or not content:
                return None
            state.extra["last_content"] = content
            state.extra["chars"] = state.extra.get("chars", 0) + len(content)
            return self._stamp({"delta": [text_part(content)]}, state)

        if "usage" in native_chunk:
            if isinstance(native_chunk["usage"], dict):
                state.extra["usage"] = native_chunk["usage"]
            else:
                state.extra["credits"] = native_chunk["usage"]
        elif "contextUsagePercentage" in native_chunk:
            state.extra["context_usage_percentage"] = native_chunk["contextUsagePercentage"]
        return None

    def end_of_stream(self, state: StreamState) -> Optional[UnifiedStreamChunk]:
        if state.finished:
            return None
        state.finished = True
        return self._stamp({
            "finish_reason": "tool_calls" if state.tool_count else "stop",
            "usage": estimate_usage(
                state.extra.get("usage"), state.extra.get("context_usage_percentage"), state.extra.get("chars", 0)
            ),
        }, state)

    def to_native_chunk(
        self,
        chunk: UnifiedStreamChunk,
        state: Optional[StreamState] = None,
    ) -> List[Dict[str, Any]]:
        state = state if state is not None else self.new_stream_state()
        if chunk.get("error"):
            state.finished = True
            return [{"error": {"type": chunk["error"]["type"], "message": chunk["error"]["message"]}}]

        events: List[Dict[str, Any]] = []
        for part in chunk.get("delta", []):
            if part["type"] == "text":
                events.extend(self._close_tool(state))
                events.append({"content": part["text"]})
            elif part["type"] == "tool_call":
                if part.get("id") and part["id"] != state.block_id:
                    events.extend(self._close_tool(state))
                    state.block_id = part["id"]
                    events.append({"name": part["name"], "toolUseId": part["id"], "input": part.get("arguments", "")})
                elif part.get("arguments"):
                    events.append({"input": part["arguments"], "toolUseId": state.block_id})
            else:
                raise ConversionError(f"Kiro streams cannot carry '{part['type']}' content")

        if chunk.get("finish_reason"):
            events.extend(self._close_tool(state))
            state.finished = True
        if "usage" in chunk:
            usage = chunk["usage"]
            events.append({"usage": {"inputTokens": usage["prompt_tokens"], "outputTokens": usage["completion_tokens"]}})
        return events

    @staticmethod
    def _close_tool(state: StreamState) -> List[Dict[str, Any]]:
        if state.block_id is None:
            return []
        event = {"stop": True, "toolUseId": state.block_id}
        state.block_id = None
        return [event]
