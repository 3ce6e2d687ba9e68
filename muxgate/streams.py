"""
Stream helpers: the forward-only chunk stream handed to callers, terminal
chunk merging and reassembly of chunks into a whole response.
"""
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

from .types import ContentPart, UnifiedResponse, UnifiedStreamChunk
from .utils import merge_usage, normalize_usage


class ChunkStream:
    """
    Forward-only, non-restartable async iterator over stream chunks.

    The consumer pulls chunks at its own pace; nothing is read from upstream
    until asked for. ``aclose()`` cancels the stream and releases the
    upstream connection, also when no chunk has been pulled yet: ``on_close``
    runs after the source is closed.

    Attributes:
        provider_type (str): Provider that serves the stream.
        model (str): Model that serves the stream.
        credential_id (str): Credential used.
        attempts (list): Attempts made before this stream was established.
    """

    def __init__(
        self,
        source: AsyncIterator[Any],
        *,
        provider_type: Optional[str] = None,
        model: Optional[str] = None,
        credential_id: Optional[str] = None,
        attempts: Optional[List[Any]] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._source = source
        self._on_close = on_close
        self._iterating = False
        self._closed = False
        self.provider_type = provider_type
        self.model = model
        self.credential_id = credential_id
        self.attempts = list(attempts or [])

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "ChunkStream":
        if self._iterating:
            raise RuntimeError("ChunkStream can only be iterated once")
        self._iterating = True
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._source.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._source, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()

    async def __aenter__(self) -> "ChunkStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def derive(self, source: AsyncIterator[Any]) -> "ChunkStream":
        """
        New stream over ``source`` carrying this stream's serving metadata.

        Closing the new stream closes this one too.
        """
        return ChunkStream(
            source,
            provider_type=self.provider_type,
            model=self.model,
            credential_id=self.credential_id,
            attempts=self.attempts,
            on_close=self.aclose,
        )


def is_usage_only(chunk: UnifiedStreamChunk) -> bool:
    return (
        "usage" in chunk
        and not chunk.get("delta")
        and not chunk.get("finish_reason")
        and not chunk.get("error")
    )


async def merge_trailing_usage(source: AsyncIterator[UnifiedStreamChunk]) -> AsyncIterator[UnifiedStreamChunk]:
    """
    Forward chunks in order, folding usage-only chunks that follow the
    terminal chunk into it.

    Only the chunk carrying ``finish_reason`` is held back, until the next
    chunk shows whether it is a trailing usage report.
    """
    held: Optional[UnifiedStreamChunk] = None
    try:
        async for chunk in source:
            if held is not None:
                if is_usage_only(chunk):
                    held["usage"] = merge_usage(held.get("usage"), chunk["usage"])
                    continue
                yield held
                held = None
            if chunk.get("finish_reason") and not chunk.get("error"):
                held = dict(chunk)  # type: ignore[assignment]
            else:
                yield chunk
        if held is not None:
            yield held
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


def assemble_response(chunks: Iterable[UnifiedStreamChunk], provider_type: str = "") -> UnifiedResponse:
    """
    Fold canonical stream chunks into a whole response.

    Text fragments extend the preceding text part. A tool_call fragment
    extends the call with the same id, or the latest call when it has no id;
    otherwise it starts a new call.

    Args:
        chunks (Iterable[UnifiedStreamChunk]): Chunks in arrival order.
        provider_type (str): Recorded under raw["provider"].

    Returns:
        UnifiedResponse: The reassembled response.
    """
    response_id = ""
    model = ""
    parts: List[ContentPart] = []
    calls: Dict[str, ContentPart] = {}
    last_call: Optional[ContentPart] = None
    finish_reason = None
    usage = None
    error = None

    for chunk in chunks:
        response_id = response_id or chunk.get("id", "")
        model = model or chunk.get("model", "")
        for fragment in chunk.get("delta", []):
            kind = fragment["type"]
            if kind == "text":
                if parts and parts[-1]["type"] == "text":
                    parts[-1] = {"type": "text", "text": parts[-1]["text"] + fragment["text"]}
                else:
                    parts.append({"type": "text", "text": fragment["text"]})
            elif kind == "tool_call":
                call_id = fragment.get("id", "")
                target = calls.get(call_id) if call_id else last_call
                if target is None:
                    target = {"type": "tool_call", "id": call_id, "name": fragment.get("name", ""), "arguments": ""}
                    parts.append(target)
                    calls[call_id] = target
                if fragment.get("name") and not target["name"]:
                    target["name"] = fragment["name"]
                target["arguments"] += fragment.get("arguments", "")
                last_call = target
            else:
                parts.append(dict(fragment))  # type: ignore[arg-type]
        if chunk.get("finish_reason"):
            finish_reason = chunk["finish_reason"]
        if chunk.get("usage"):
            usage = merge_usage(usage, chunk["usage"])
        if chunk.get("error"):
            error = chunk["error"]

    raw: Dict[str, Any] = {"provider": provider_type}
    if error is not None:
        raw["error"] = error
        finish_reason = "error"
    for part in parts:
        if part["type"] == "tool_call" and not part["arguments"]:
            part["arguments"] = "{}"
    return {
        "id": response_id,
        "model": model,
        "choices": [{
            "message": {"role": "assistant", "content": parts},
            "finish_reason": finish_reason or "stop",
        }],
        "usage": usage or normalize_usage(),
        "raw": raw,
    }


async def collect_stream(stream: AsyncIterator[UnifiedStreamChunk], provider_type: str = "") -> UnifiedResponse:
    """
    Drain a canonical chunk stream and reassemble it.
    """
    chunks = [chunk async for chunk in stream]
    return assemble_response(chunks, provider_type)
