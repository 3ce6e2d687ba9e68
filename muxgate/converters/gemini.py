import json
from typing import Dict, Any, List, Optional

from .base import BaseConverter, StreamState
from ..errors import ConversionError
from ..types import (
    GEMINI_CLI_OAUTH, ContentPart, FinishReason, ToolSpec, UnifiedMessage,
    UnifiedRequest, UnifiedResponse, UnifiedStreamChunk, Usage,
)
from ..utils import (
    build_data_uri, generate_id, image_part, is_remote_url, load_arguments,
    normalize_usage, parse_data_uri, require, text_part,
)


class GeminiConverter(BaseConverter):
    """
    Converter for the Gemini ``generateContent`` format.

    The model name is not part of a Gemini request body; the HTTP layer puts
    it under ``"model"`` and native requests produced here carry it the same
    way for the transport.
    """

    provider_type = GEMINI_CLI_OAUTH

    FINISH_REASONS = {
        "STOP": "stop",
        "MAX_TOKENS": "length",
        "SAFETY": "content_filter",
        "RECITATION": "content_filter",
        "BLOCKLIST": "content_filter",
        "PROHIBITED_CONTENT": "content_filter",
        "SPII": "content_filter",
        "IMAGE_SAFETY": "content_filter",
        "LANGUAGE": "content_filter",
        "MALFORMED_FUNCTION_CALL": "error",
        "OTHER": "error",
        "FINISH_REASON_UNSPECIFIED": "error",
    }
    NATIVE_FINISH_REASONS = {
        "stop": "STOP",
        "tool_calls": "STOP",
        "length": "MAX_TOKENS",
        "content_filter": "SAFETY",
        "error": "OTHER",
    }
    KNOWN_REQUEST_KEYS = frozenset({
        "model", "contents", "systemInstruction", "system_instruction", "tools", "generationConfig", "stream",
    })
    KNOWN_GENERATION_KEYS = frozenset({"maxOutputTokens", "temperature", "stopSequences"})

    # ==========================================================================
    # Requests
    # ==========================================================================

    def to_canonical_request(self, native: Dict[str, Any]) -> UnifiedRequest:
        model = require(native, "model", "generateContent request")
        contents = require(native, "contents", "generateContent request")

        messages: List[UnifiedMessage] = []
        system = native.get("systemInstruction") or native.get("system_instruction")
        if system:
            system_parts = [text_part(p.get("text", "")) for p in system.get("parts", []) if "text" in p]
            messages.append({"role": "system", "content": system_parts})

        # functionResponse parts carry only a name; pair them with earlier call ids
        pending: Dict[str, List[str]] = {}
        for index, content in enumerate(contents):
            role = content.get("role", "user")
            if role not in ("user", "model"):
                raise ConversionError(f"Unsupported content role: {role!r}")
            canonical_role = "assistant" if role == "model" else "user"
            for part in require(content, "parts", "content"):
                converted = self._part_to_canonical(part, pending, index)
                if converted is None:
                    continue
                target = "tool" if converted["type"] == "tool_result" else canonical_role
                if messages and messages[-1]["role"] == target and messages[-1].get("_index") == index:
                    messages[-1]["content"].append(converted)
                else:
                    messages.append({"role": target, "content": [converted], "_index": index})
            if not content.get("parts"):
                messages.append({"role": canonical_role, "content": [], "_index": index})
        for msg in messages:
            msg.pop("_index", None)

        request: UnifiedRequest = {
            "model": model.split("/")[-1],
            "messages": messages,
            "stream": bool(native.get("stream", False)),
        }
        declarations = []
        for tool in native.get("tools") or []:
            if "functionDeclarations" not in tool:
                raise ConversionError(f"Unsupported Gemini tool: {list(tool)}")
            declarations.extend(tool["functionDeclarations"])
        if declarations:
            request["tools"] = [self._declaration_to_canonical(d) for d in declarations]

        config = native.get("generationConfig") or {}
        if config.get("maxOutputTokens") is not None:
            request["max_output_tokens"] = config["maxOutputTokens"]
        if config.get("temperature") is not None:
            request["temperature"] = config["temperature"]
        if config.get("stopSequences"):
            request["stop_sequences"] = list(config["stopSequences"])

        extra = self.extract_passthrough(native) or {"provider": self.provider_type, "fields": {}}
        leftover = {k: v for k, v in config.items() if k not in self.KNOWN_GENERATION_KEYS}
        if leftover:
            extra["fields"]["generationConfig"] = leftover
        if extra["fields"]:
            request["extra"] = extra
        return request

    @staticmethod
    def _part_to_canonical(part: Dict[str, Any], pending: Dict[str, List[str]], index: int) -> Optional[ContentPart]:
        if "text" in part:
            if part.get("thought"):
                return None
            return text_part(part["text"])
        if "inlineData" in part:
            data = part["inlineData"]
            return image_part(build_data_uri(require(data, "data", "inlineData"), require(data, "mimeType", "inlineData")))
        if "fileData" in part:
            data = part["fileData"]
            return image_part(require(data, "fileUri", "fileData"), data.get("mimeType"))
        if "functionCall" in part:
            call = part["functionCall"]
            name = require(call, "name", "functionCall")
            call_id = call.get("id") or f"call_{name}_{index}"
            pending.setdefault(name, []).append(call_id)
            return {
                "type": "tool_call",
                "id": call_id,
                "name": name,
                "arguments": json.dumps(call.get("args") or {}, ensure_ascii=False),
            }
        if "functionResponse" in part:
            resp = part["functionResponse"]
            name = require(resp, "name", "functionResponse")
            queue = pending.get(name) or []
            call_id = resp.get("id") or (queue.pop(0) if queue else name)
            if resp.get("id") and call_id in queue:
                queue.remove(call_id)
            payload = resp.get("response")
            if isinstance(payload, dict) and set(payload) == {"output"} and isinstance(payload["output"], str):
                output = payload["output"]
            else:
                output = json.dumps(payload, ensure_ascii=False)
            return {"type": "tool_result", "tool_call_id": call_id, "output": output}
        raise ConversionError(f"Unsupported Gemini part: {list(part)}")

    @staticmethod
    def _declaration_to_canonical(decl: Dict[str, Any]) -> ToolSpec:
        return {
            "name": require(decl, "name", "functionDeclaration"),
            "description": decl.get("description", ""),
            "parameters": decl.get("parameters") or decl.get("parametersJsonSchema") or {"type": "object", "properties": {}},
        }

    def to_native_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        self.check_parts(request["messages"])
        call_names: Dict[str, str] = {}
        system_texts: List[str] = []
        contents: List[Dict[str, Any]] = []
        for msg in request["messages"]:
            if msg["role"] == "system":
                for part in msg["content"]:
                    if part["type"] != "text":
                        raise ConversionError("Gemini system instructions accept text only")
                    system_texts.append(part["text"])
                continue
            role = "model" if msg["role"] == "assistant" else "user"
            parts = [self._part_to_native(p, call_names) for p in msg["content"]]
            contents.append({"role": role, "parts": parts})

        native: Dict[str, Any] = {"model": model, "contents": contents}
        if system_texts:
            native["systemInstruction"] = {"parts": [{"text": t} for t in system_texts]}
        if request.get("tools"):
            native["tools"] = [{"functionDeclarations": [
                {"name": t["name"], "description": t.get("description", ""), "parameters": t.get("parameters") or {"type": "object", "properties": {}}}
                for t in request["tools"]
            ]}]

        config: Dict[str, Any] = {}
        if request.get("max_output_tokens") is not None:
            config["maxOutputTokens"] = request["max_output_tokens"]
        if request.get("temperature") is not None:
            config["temperature"] = request["temperature"]
        if request.get("stop_sequences"):
            config["stopSequences"] = list(request["stop_sequences"])
        extra = request.get("extra")
        if extra and extra.get("provider") == self.provider_type:
            for key, value in (extra["fields"].get("generationConfig") or {}).items():
                config.setdefault(key, value)
        if config:
            native["generationConfig"] = config
        return self.apply_passthrough(native, request)

    @staticmethod
    def _part_to_native(part: ContentPart, call_names: Dict[str, str]) -> Dict[str, Any]:
        if part["type"] == "text":
            return {"text": part["text"]}
        if part["type"] == "image":
            if is_remote_url(part["reference"]):
                return {"fileData": {"mimeType": part["mime_type"], "fileUri": part["reference"]}}
            data, mime_type = parse_data_uri(part["reference"])
            return {"inlineData": {"mimeType": mime_type, "data": data}}
        if part["type"] == "tool_call":
            call_names[part["id"]] = part["name"]
            args = load_arguments(part["arguments"])
            return {"functionCall": {"id": part["id"], "name": part["name"], "args": args}}
        return {"functionResponse": {
            "id": part["tool_call_id"],
            "name": call_names.get(part["tool_call_id"], part["tool_call_id"]),
            "response": {"output": part["output"]},
        }}

    # ==========================================================================
    # Responses
    # ==========================================================================

    @staticmethod
    def _usage_from_native(metadata: Optional[Dict[str, Any]]) -> Usage:
        metadata = metadata or {}
        completion = metadata.get("candidatesTokenCount")
        if completion is not None:
            completion += metadata.get("thoughtsTokenCount") or 0
        return normalize_usage(metadata.get("promptTokenCount"), completion, metadata.get("totalTokenCount"))

    def _candidate_parts(self, candidate: Dict[str, Any], response_id: str, tool_offset: int) -> List[ContentPart]:
        """
        Convert a candidate's parts. Calls without an id get one derived from
        the response id and the call's ordinal, so streamed and whole
        responses agree.
        """
        parts: List[ContentPart] = []
        calls = tool_offset
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "text" in part:
                if not part.get("thought"):
                    parts.append(text_part(part["text"]))
            elif "functionCall" in part:
                call = part["functionCall"]
                calls += 1
                parts.append({
                    "type": "tool_call",
                    "id": call.get("id") or f"call_{response_id}_{calls}",
                    "name": require(call, "name", "functionCall"),
                    "arguments": json.dumps(call.get("args") or {}, ensure_ascii=False),
                })
            elif "inlineData" in part:
                data = part["inlineData"]
                parts.append(image_part(build_data_uri(data.get("data", ""), data.get("mimeType"))))
            else:
                raise ConversionError(f"Unsupported Gemini response part: {list(part)}")
        return parts

    def _finish(self, value: Optional[str], saw_tool_call: bool) -> FinishReason:
        finish = self.map_finish_reason(value)
        if finish == "stop" and saw_tool_call:
            return "tool_calls"
        return finish

    def to_canonical_response(self, native: Dict[str, Any]) -> UnifiedResponse:
        # Cloud Code Assist wraps the payload under "response"
        native = native.get("response", native)
        response_id = native.get("responseId") or generate_id("gen-")
        candidates = native.get("candidates") or []
        if not candidates:
            block_reason = (native.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                return self.build_response(
                    response_id, native.get("modelVersion", ""), [], "content_filter",
                    self._usage_from_native(native.get("usageMetadata")), block_reason=block_reason,
                )
            raise ConversionError("generateContent response has no candidates")

        candidate = candidates[0]
        parts = self._candidate_parts(candidate, response_id, 0)
        saw_tool_call = any(p["type"] == "tool_call" for p in parts)
        return self.build_response(
            response_id,
            native.get("modelVersion", ""),
            parts,
            self._finish(candidate.get("finishReason"), saw_tool_call),
            self._usage_from_native(native.get("usageMetadata")),
            safety_ratings=candidate.get("safetyRatings"),
        )

    def _native_response(
        self,
        response_id: str,
        model: str,
        parts: List[Dict[str, Any]],
        finish_reason: Optional[str],
        usage: Optional[Usage],
    ) -> Dict[str, Any]:
        candidate: Dict[str, Any] = {"content": {"role": "model", "parts": parts}, "index": 0}
        if finish_reason is not None:
            candidate["finishReason"] = self.native_finish_reason(finish_reason)
        native: Dict[str, Any] = {"candidates": [candidate], "modelVersion": model, "responseId": response_id}
        if usage is not None:
            native["usageMetadata"] = {
                "promptTokenCount": usage["prompt_tokens"],
                "candidatesTokenCount": usage["completion_tokens"],
                "totalTokenCount": usage["prompt_tokens"] + usage["completion_tokens"],
            }
        return native

    def to_native_response(self, response: UnifiedResponse) -> Dict[str, Any]:
        choice = self.first_choice(response)
        parts = [self._part_to_native(p, {}) for p in choice["message"]["content"]]
        return self._native_response(
            response["id"], response["model"], parts, choice["finish_reason"], response["usage"],
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
        if "error" in native_chunk:
            error = native_chunk["error"] or {}
            state.finished = True
            return self._stamp({
                "finish_reason": "error",
                "error": {"type": error.get("status") or "upstream_error", "message": error.get("message", "")},
            }, state)

        native_chunk = native_chunk.get("response", native_chunk)
        state.id = state.id or native_chunk.get("responseId") or generate_id("gen-")
        state.model = state.model or native_chunk.get("modelVersion", "")

        chunk: UnifiedStreamChunk = {}
        candidates = native_chunk.get("candidates") or []
        if candidates:
            candidate = candidates[0]
            parts = self._candidate_parts(candidate, state.id, state.tool_count)
            state.tool_count += sum(1 for p in parts if p["type"] == "tool_call")
            if parts:
                chunk["delta"] = parts
            if candidate.get("finishReason"):
                chunk["finish_reason"] = self._finish(candidate["finishReason"], state.tool_count > 0)

        if native_chunk.get("usageMetadata"):
            state.usage = self._usage_from_native(native_chunk["usageMetadata"])
        # Usage is cumulative on every chunk; report it on the terminal chunk
        # or after it, never on intermediate ones
        if state.usage is not None and ("finish_reason" in chunk or state.finished):
            chunk["usage"] = state.usage
        if "finish_reason" in chunk:
            state.finished = True
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
            return [{"error": {"code": 500, "message": chunk["error"]["message"], "status": chunk["error"]["type"]}}]

        state.id = state.id or chunk.get("id") or generate_id("gen-")
        state.model = state.model or chunk.get("model", "")

        parts: List[Dict[str, Any]] = []
        for part in chunk.get("delta", []):
            if part["type"] == "tool_call":
                # functionCall parts must be whole: buffer argument pieces
                if part.get("id") and part["id"] != state.block_id:
                    parts.extend(self._flush_tool_call(state))
                    state.block_type = "tool_call"
                    state.block_id = part["id"]
                    state.block_name = part.get("name", "")
                state.buffer += part.get("arguments", "")
            else:
                parts.extend(self._flush_tool_call(state))
                parts.append(self._part_to_native(part, {}))

        finish = chunk.get("finish_reason")
        if finish:
            parts.extend(self._flush_tool_call(state))
            state.finished = True
        if "usage" in chunk:
            state.usage = chunk["usage"]
        if not parts and not finish and "usage" not in chunk:
            return []
        if not parts and not finish:
            native = self._native_response(state.id, state.model, [], None, chunk["usage"])
            native.pop("candidates")
            return [native]
        return [self._native_response(state.id, state.model, parts, finish, chunk.get("usage"))]

    @staticmethod
    def _flush_tool_call(state: StreamState) -> List[Dict[str, Any]]:
        if state.block_type != "tool_call":
            return []
        call = {"functionCall": {"id": state.block_id, "name": state.block_name, "args": load_arguments(state.buffer)}}
        state.block_type = None
        state.block_id = None
        state.buffer = ""
        return [call]
