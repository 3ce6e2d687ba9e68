import asyncio
import functools
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union

import httpx
from loguru import logger

from .config import GatewayConfig
from .converters import BaseConverter, ConverterRegistry, StreamState
from .errors import (
    AttemptRecord, AuthError, ConversionError, PoolExhaustedError, RequestTimeoutError,
    UnknownProviderError, UpstreamError,
)
from .pool import PoolGeneration, ProviderCredential, ProviderPool
from .streams import ChunkStream, merge_trailing_usage
from .types import UnifiedRequest, UnifiedResponse, UnifiedStreamChunk, normalize_provider_type

# call_upstream(provider_type, native_request, credential, stream)
Transport = Callable[
    [str, Dict[str, Any], ProviderCredential, bool],
    Awaitable[Union[Dict[str, Any], AsyncIterator[Dict[str, Any]]]],
]

# Stream error event types that mean the request itself is bad
NON_RETRYABLE_STREAM_ERRORS = frozenset({
    "invalid_request_error", "not_found_error", "request_too_large", "INVALID_ARGUMENT", "NOT_FOUND",
})
AUTH_STREAM_ERRORS = frozenset({
    "authentication_error", "permission_error", "UNAUTHENTICATED", "PERMISSION_DENIED",
})


@dataclass(frozen=True)
class Candidate:
    """
    One (provider type, model) pair in the fallback sequence.
    """
    provider_type: str
    model: str


def build_candidates(
    provider_type: str,
    model: str,
    provider_fallback_chain: Optional[Dict[str, List[str]]] = None,
    model_fallback_mapping: Optional[Dict[str, List[str]]] = None,
) -> List[Candidate]:
    """
    Build the ordered, duplicate-free candidate list for one dispatch.

    The requested provider is tried with the requested model, then with each
    fallback model; every provider of the fallback chain follows with the
    same model list.

    Example:
        >>> build_candidates("kiro", "gpt-4", {"kiro": ["gemini"]}, {"gpt-4": ["gpt-4-fallback"]})
        [(kiro, gpt-4), (kiro, gpt-4-fallback), (gemini, gpt-4), (gemini, gpt-4-fallback)]
    """
    provider_fallback_chain = provider_fallback_chain or {}
    model_fallback_mapping = model_fallback_mapping or {}

    models = [model] + list(model_fallback_mapping.get(model, []))
    chain = provider_fallback_chain.get(provider_type)
    if chain is None:
        chain = provider_fallback_chain.get(normalize_provider_type(provider_type), [])
    providers = [provider_type] + list(chain)

    candidates: List[Candidate] = []
    seen = set()
    for provider in providers:
        for name in models:
            key = (normalize_provider_type(provider), name)
            if key in seen:
                continue
            seen.add(key)
            candidates.append(Candidate(key[0], name))
    return candidates


def backoff_delay(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """
    Delay in milliseconds before the retry that follows failed attempt ``attempt`` (1-based).
    """
    if attempt < 1:
        return 0
    return min(base_delay_ms * 2 ** (attempt - 1), max_delay_ms)


def classify_error(exc: BaseException, provider_type: Optional[str] = None) -> UpstreamError:
    """
    Normalize a transport failure into an UpstreamError.

    Network failures and timeouts are retryable; upstream errors keep the
    classification derived from their status code.
    """
    if isinstance(exc, UpstreamError):
        if exc.provider_type is None:
            exc.provider_type = provider_type
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return UpstreamError(f"Upstream timed out: {exc}", None, retryable=True, provider_type=provider_type)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return AuthError(f"Upstream rejected credential: {status}", status, provider_type=provider_type)
        return UpstreamError(f"Upstream returned {status}", status, provider_type=provider_type)
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return UpstreamError(f"Network error: {exc}", None, retryable=True, provider_type=provider_type)
    logger.exception(f"Unexpected transport failure for {provider_type}")
    return UpstreamError(f"{type(exc).__name__}: {exc}", None, retryable=True, provider_type=provider_type)


def _stream_error(chunk: UnifiedStreamChunk, provider_type: str) -> UpstreamError:
    error = chunk.get("error") or {}
    error_type = error.get("type", "upstream_error")
    message = error.get("message") or error_type
    if error_type in AUTH_STREAM_ERRORS:
        return AuthError(message, provider_type=provider_type)
    return UpstreamError(
        message, None, retryable=error_type not in NON_RETRYABLE_STREAM_ERRORS, provider_type=provider_type,
    )


class FallbackRouter:
    """
    Orchestrates one logical call across candidates and credentials.

    Args:
        registry (ConverterRegistry): Converters by provider type.
        pool (ProviderPool): Credential pool; each dispatch uses one generation.
        transport (Transport): ``call_upstream`` implementation.
        provider_fallback_chain (dict): Provider type -> fallback provider types.
        model_fallback_mapping (dict): Model -> fallback models.
        max_retries (int): Total attempts allowed per dispatch.
        base_delay_ms (int): First backoff delay.
        max_delay_ms (int): Backoff cap.
        timeout_seconds (float, optional): Deadline for a whole call (streams: until the first chunk).
    """

    def __init__(
        self,
        registry: ConverterRegistry,
        pool: ProviderPool,
        transport: Transport,
        *,
        provider_fallback_chain: Optional[Dict[str, List[str]]] = None,
        model_fallback_mapping: Optional[Dict[str, List[str]]] = None,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.registry = registry
        self.pool = pool
        self.transport = transport
        self.provider_fallback_chain = provider_fallback_chain or {}
        self.model_fallback_mapping = model_fallback_mapping or {}
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        registry: ConverterRegistry,
        pool: ProviderPool,
        transport: Transport,
        **kwargs: Any,
    ) -> "FallbackRouter":
        return cls(
            registry,
            pool,
            transport,
            provider_fallback_chain=config.provider_fallback_chain,
            model_fallback_mapping=config.model_fallback_mapping,
            max_retries=config.request_max_retries,
            base_delay_ms=config.request_base_delay,
            max_delay_ms=config.request_max_delay,
            timeout_seconds=config.request_timeout_seconds,
            **kwargs,
        )

    async def dispatch(
        self,
        request: UnifiedRequest,
        requested_provider_type: str,
        generation: Optional[PoolGeneration] = None,
    ) -> Union[UnifiedResponse, ChunkStream]:
        """
        Serve a canonical request, falling back across candidates.

        Args:
            request (UnifiedRequest): The canonical request; ``stream`` selects streaming.
            requested_provider_type (str): Provider type the request is addressed to.
            generation (PoolGeneration, optional): Pool generation to use; defaults to
                the pool's current snapshot.

        Returns:
            UnifiedResponse | ChunkStream: Whole response, or a stream of
            canonical chunks once the first chunk has arrived.

        Raises:
            UnknownProviderError: If the requested provider type has no converter.
            ConversionError: If the request cannot be expressed for a candidate.
            UpstreamError: On a non-retryable upstream failure.
            PoolExhaustedError: When attempts or candidates run out.
            RequestTimeoutError: When the deadline passes.
        """
        requested = normalize_provider_type(requested_provider_type)
        self.registry.get(requested)

        deadline = None
        if self.timeout_seconds:
            deadline = asyncio.get_running_loop().time() + self.timeout_seconds
        timeout = asyncio.timeout_at(deadline)
        try:
            async with timeout:
                return await self._dispatch(request, requested, generation or self.pool.snapshot())
        except TimeoutError:
            if timeout.expired():
                logger.warning(f"Request for {request.get('model')} timed out after {self.timeout_seconds}s")
                raise RequestTimeoutError(f"Request timed out after {self.timeout_seconds}s") from None
            raise

    async def _dispatch(
        self, request: UnifiedRequest, requested: str, generation: PoolGeneration,
    ) -> Union[UnifiedResponse, ChunkStream]:
        stream = bool(request.get("stream"))
        candidates = build_candidates(
            requested, request["model"], self.provider_fallback_chain, self.model_fallback_mapping,
        )
        attempts: List[AttemptRecord] = []
        auth_excluded: Set[str] = set()

        for candidate in candidates:
            if len(attempts) >= self.max_retries:
                break
            try:
                converter = self.registry.get(candidate.provider_type)
            except UnknownProviderError:
                logger.warning(f"Skipping fallback provider {candidate.provider_type}: no converter registered")
                continue

            native: Optional[Dict[str, Any]] = None
            tried: Set[str] = set()
            while len(attempts) < self.max_retries:
                credential = generation.select(candidate.provider_type, tried | auth_excluded)
                if credential is None:
                    break
                tried.add(credential.id)
                if native is None:
                    native = converter.to_native_request(request, candidate.model)
                if attempts:
                    delay = backoff_delay(len(attempts), self.base_delay_ms, self.max_delay_ms)
                    logger.debug(f"Backing off {delay}ms before attempt {len(attempts) + 1}")
                    await self.sleep(delay / 1000)

                logger.info(
                    f"Attempt {len(attempts) + 1}/{self.max_retries}: "
                    f"{candidate.provider_type}/{candidate.model} credential={credential.id}"
                )
                try:
                    if stream:
                        return await self._attempt_stream(converter, candidate, credential, native, generation, attempts)
                    result = await self._attempt(converter, candidate, credential, native)
                except ConversionError:
                    raise
                except Exception as exc:
                    error = classify_error(exc, candidate.provider_type)
                    attempts.append(AttemptRecord(
                        provider_type=candidate.provider_type,
                        model=candidate.model,
                        credential_id=credential.id,
                        kind="auth" if isinstance(error, AuthError) else "upstream",
                        retryable=error.retryable,
                        message=error.message,
                        status_code=error.status_code,
                    ))
                    logger.warning(
                        f"Attempt failed: {candidate.provider_type}/{candidate.model} credential={credential.id} "
                        f"status={error.status_code} retryable={error.retryable}: {error.message}"
                    )
                    if isinstance(error, AuthError):
                        auth_excluded.add(credential.id)
                    else:
                        generation.record_failure(credential.id, error.retryable)
                    if not error.retryable:
                        raise error from (exc if exc is not error else None)
                    continue

                generation.record_success(credential.id)
                return result

        if not attempts:
            raise PoolExhaustedError(
                f"No available credentials for model {request['model']} on "
                + ", ".join(dict.fromkeys(c.provider_type for c in candidates)),
                attempts,
            )
        raise PoolExhaustedError(
            f"All {len(attempts)} attempts failed for model {request['model']}; last error: {attempts[-1].message}",
            attempts,
        )

    async def _attempt(
        self,
        converter: BaseConverter,
        candidate: Candidate,
        credential: ProviderCredential,
        native: Dict[str, Any],
    ) -> UnifiedResponse:
        native_response = await self.transport(candidate.provider_type, native, credential, False)
        return converter.to_canonical_response(native_response)

    async def _attempt_stream(
        self,
        converter: BaseConverter,
        candidate: Candidate,
        credential: ProviderCredential,
        native: Dict[str, Any],
        generation: PoolGeneration,
        attempts: List[AttemptRecord],
    ) -> ChunkStream:
        native_stream = await self.transport(candidate.provider_type, native, credential, True)
        iterator = native_stream.__aiter__()
        state = converter.new_stream_state()
        try:
            first = await self._first_chunk(converter, candidate, iterator, state)
        except BaseException:
            await _aclose(iterator)
            raise

        # The first chunk is in: the attempt counts as a success from here on
        generation.record_success(credential.id)
        source = self._forward(first, iterator, converter, candidate, credential, generation, state)
        return ChunkStream(
            merge_trailing_usage(source),
            provider_type=candidate.provider_type,
            model=candidate.model,
            credential_id=credential.id,
            attempts=attempts,
            on_close=functools.partial(_aclose, iterator),
        )

    async def _first_chunk(
        self,
        converter: BaseConverter,
        candidate: Candidate,
        iterator: AsyncIterator[Dict[str, Any]],
        state: StreamState,
    ) -> UnifiedStreamChunk:
        while True:
            try:
                native_chunk = await iterator.__anext__()
            except StopAsyncIteration:
                break
            chunk = converter.to_canonical_chunk(native_chunk, state)
            if chunk is None:
                continue
            if chunk.get("error"):
                raise _stream_error(chunk, candidate.provider_type)
            return chunk
        raise UpstreamError(
            "Upstream stream ended before the first chunk", None,
            retryable=True, provider_type=candidate.provider_type,
        )

    async def _forward(
        self,
        first: UnifiedStreamChunk,
        iterator: AsyncIterator[Dict[str, Any]],
        converter: BaseConverter,
        candidate: Candidate,
        credential: ProviderCredential,
        generation: PoolGeneration,
        state: StreamState,
    ) -> AsyncIterator[UnifiedStreamChunk]:
        """
        Forward chunks after the first. A failure from here on ends the stream
        with one error chunk and is never retried.
        """
        try:
            yield first
            async for native_chunk in iterator:
                chunk = converter.to_canonical_chunk(native_chunk, state)
                if chunk is None:
                    continue
                yield chunk
                if chunk.get("error"):
                    error = _stream_error(chunk, candidate.provider_type)
                    if not isinstance(error, AuthError):
                        generation.record_failure(credential.id, error.retryable)
                    return
            tail = converter.end_of_stream(state)
            if tail is not None:
                yield tail
        except ConversionError as exc:
            logger.warning(f"Dropping stream from {candidate.provider_type}: {exc.message}")
            yield {"finish_reason": "error", "error": {"type": exc.error_type, "message": exc.message}}
        except Exception as exc:
            error = classify_error(exc, candidate.provider_type)
            if not isinstance(error, AuthError):
                generation.record_failure(credential.id, error.retryable)
            logger.warning(
                f"Stream failed mid-way: {candidate.provider_type}/{candidate.model} "
                f"credential={credential.id}: {error.message}"
            )
            yield {"finish_reason": "error", "error": {"type": error.error_type, "message": error.message}}
        finally:
            await _aclose(iterator)


async def _aclose(iterator: Any) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()
