import pytest

from muxgate.streams import ChunkStream, assemble_response, collect_stream, merge_trailing_usage
from conftest import native_stream


class ClosableSource:
    """Async iterator that remembers whether it was closed."""

    def __init__(self, items):
        self._items = list(items)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        return self._items.pop(0)

    async def aclose(self):
        self.closed = True


class TestChunkStream:

    @pytest.mark.asyncio
    async def test_iterates_in_order(self):
        stream = ChunkStream(native_stream([1, 2, 3]), provider_type="openai-custom", model="gpt-4")
        assert [item async for item in stream] == [1, 2, 3]
        assert stream.closed
        assert stream.provider_type == "openai-custom"

    @pytest.mark.asyncio
    async def test_iterates_only_once(self):
        stream = ChunkStream(native_stream([1]))
        async for _ in stream:
            pass
        with pytest.raises(RuntimeError):
            async for _ in stream:
                pass

    @pytest.mark.asyncio
    async def test_aclose_releases_source(self):
        source = ClosableSource([1, 2, 3])
        stream = ChunkStream(source)
        assert await stream.__anext__() == 1
        await stream.aclose()
        assert source.closed
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        source = ClosableSource([1])
        async with ChunkStream(source) as stream:
            await stream.__anext__()
        assert source.closed

    @pytest.mark.asyncio
    async def test_derive_keeps_metadata(self):
        stream = ChunkStream(native_stream([]), provider_type="gemini-cli-oauth", model="gemini-2.5-pro",
                             credential_id="gemini-1", attempts=["first"])
        derived = stream.derive(native_stream(["x"]))
        assert derived.provider_type == "gemini-cli-oauth"
        assert derived.credential_id == "gemini-1"
        assert derived.attempts == ["first"]
        assert [item async for item in derived] == ["x"]

    @pytest.mark.asyncio
    async def test_on_close_runs_without_reading(self):
        upstream = ClosableSource([1, 2])
        stream = ChunkStream(native_stream([1, 2]), on_close=upstream.aclose)
        await stream.aclose()
        assert upstream.closed
        assert stream.closed

    @pytest.mark.asyncio
    async def test_closing_derived_stream_closes_parent(self):
        upstream = ClosableSource(["a"])
        parent = ChunkStream(native_stream(["a"]), on_close=upstream.aclose)

        async def encode():
            async with parent:
                async for item in parent:
                    yield item.upper()

        derived = parent.derive(encode())
        await derived.aclose()
        assert parent.closed
        assert upstream.closed


class TestMergeTrailingUsage:

    @pytest.mark.asyncio
    async def test_folds_usage_into_terminal_chunk(self):
        chunks = [
            {"delta": [{"type": "text", "text": "Hi"}]},
            {"finish_reason": "stop"},
            {"usage": {"prompt_tokens": 3, "completion_tokens": 1}},
        ]
        merged = [c async for c in merge_trailing_usage(native_stream(chunks))]
        assert merged == [
            {"delta": [{"type": "text", "text": "Hi"}]},
            {"finish_reason": "stop", "usage": {"prompt_tokens": 3, "completion_tokens": 1}},
        ]

    @pytest.mark.asyncio
    async def test_usage_before_finish_is_forwarded(self):
        chunks = [
            {"usage": {"prompt_tokens": 3, "completion_tokens": 0}},
            {"finish_reason": "stop", "usage": {"prompt_tokens": 3, "completion_tokens": 1}},
        ]
        merged = [c async for c in merge_trailing_usage(native_stream(chunks))]
        assert merged == chunks

    @pytest.mark.asyncio
    async def test_error_chunks_are_not_held(self):
        chunks = [{"finish_reason": "error", "error": {"type": "upstream_error", "message": "lost"}}]
        merged = [c async for c in merge_trailing_usage(native_stream(chunks))]
        assert merged == chunks

    @pytest.mark.asyncio
    async def test_closes_source(self):
        source = ClosableSource([{"finish_reason": "stop"}])
        merged = [c async for c in merge_trailing_usage(source)]
        assert merged == [{"finish_reason": "stop"}]
        assert source.closed


class TestAssembleResponse:

    def test_text_and_tool_calls(self):
        response = assemble_response([
            {"id": "c1", "model": "gpt-4", "delta": [{"type": "text", "text": "Hel"}]},
            {"delta": [{"type": "text", "text": "lo"}]},
            {"delta": [{"type": "tool_call", "id": "call_1", "name": "lookup", "arguments": '{"q":'}]},
            {"delta": [{"type": "tool_call", "id": "", "name": "", "arguments": ' "x"}'}]},
            {"delta": [{"type": "tool_call", "id": "call_2", "name": "noop", "arguments": ""}]},
            {"finish_reason": "tool_calls", "usage": {"prompt_tokens": 5, "completion_tokens": 9}},
        ], "openai-custom")
        assert response["id"] == "c1"
        assert response["model"] == "gpt-4"
        assert response["choices"][0]["message"]["content"] == [
            {"type": "text", "text": "Hello"},
            {"type": "tool_call", "id": "call_1", "name": "lookup", "arguments": '{"q": "x"}'},
            {"type": "tool_call", "id": "call_2", "name": "noop", "arguments": "{}"},
        ]
        assert response["choices"][0]["finish_reason"] == "tool_calls"
        assert response["usage"] == {"prompt_tokens": 5, "completion_tokens": 9}
        assert response["raw"] == {"provider": "openai-custom"}

    def test_error_chunk_marks_error(self):
        response = assemble_response([
            {"delta": [{"type": "text", "text": "partial"}]},
            {"finish_reason": "error", "error": {"type": "upstream_error", "message": "lost"}},
        ])
        assert response["choices"][0]["finish_reason"] == "error"
        assert response["raw"]["error"]["message"] == "lost"

    def test_defaults(self):
        response = assemble_response([])
        assert response["choices"][0]["finish_reason"] == "stop"
        assert response["usage"] == {"prompt_tokens": 0, "completion_tokens": 0}

    @pytest.mark.asyncio
    async def test_collect_stream(self):
        response = await collect_stream(native_stream([
            {"delta": [{"type": "text", "text": "Hi"}]},
            {"finish_reason": "length"},
        ]))
        assert response["choices"][0]["message"]["content"] == [{"type": "text", "text": "Hi"}]
        assert response["choices"][0]["finish_reason"] == "length"
