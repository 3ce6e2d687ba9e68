from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Iterable, FrozenSet

from loguru import logger

from ..errors import ConversionError
from ..types import (
    ALL_PART_KINDS, ContentPart, FinishReason, Passthrough, UnifiedMessage,
    UnifiedRequest, UnifiedResponse, UnifiedStreamChunk, Usage, new_usage,
)
from ..utils import unix_time


@dataclass
class StreamState:
    """
    Cross-chunk context for one stream, owned by the caller.

    Converters keep no state of their own; everything a wire format needs to
    remember between chunks (open content block, tool call index <-> id,
    usage seen so far) lives here.
    """
    id: str = ""
    model: str = ""
    created: int = field(default_factory=unix_time)
    started: bool = False
    finished: bool = False
    # Open output block (encoding side)
    block_index: int = -1
    block_type: Optional[str] = None
    block_id: Optional[str] = None
    block_name: str = ""
    buffer: str = ""
    # Tool call bookkeeping
    tool_ids: Dict[int, str] = field(default_factory=dict)
    tool_indices: Dict[str, int] = field(default_factory=dict)
    tool_count: int = 0
    # Completed native output items (Responses)
    items: List[Dict[str, Any]] = field(default_factory=list)
    sequence: int = 0
    usage: Optional[Usage] = None
    # Provider specific leftovers (Kiro context usage, dedup, ...)
    extra: Dict[str, Any] = field(default_factory=dict)

    def next_sequence(self) -> int:
        value = self.sequence
        self.sequence += 1
        return value


class BaseConverter(ABC):
    """
    Abstract base class for wire-format converters.

    A converter translates one provider's native JSON schema to and from the
    canonical model, for requests, whole responses and stream chunks. It has
    no side effects and holds no per-request state.
    """

    provider_type: str = ""
    supported_parts: FrozenSet[str] = ALL_PART_KINDS

    # native finish value -> canonical finish reason
    FINISH_REASONS: Dict[str, FinishReason] = {}
    # canonical finish reason -> native finish value
    NATIVE_FINISH_REASONS: Dict[str, str] = {}

    # Request keys with a canonical equivalent; everything else is passthrough
    KNOWN_REQUEST_KEYS: FrozenSet[str] = frozenset()

    @abstractmethod
    def to_canonical_request(self, native: Dict[str, Any]) -> UnifiedRequest:
        """
        Convert a native request body into a canonical request.

        Args:
            native (Dict[str, Any]): Request body in this provider's format.

        Returns:
            UnifiedRequest: The canonical request.

        Raises:
            ConversionError: If required fields are missing or malformed.
        """

    @abstractmethod
    def to_native_request(self, request: UnifiedRequest, model: str) -> Dict[str, Any]:
        """
        Convert a canonical request into this provider's request body.

        Args:
            request (UnifiedRequest): The canonical request.
            model (str): Model name to address (may differ from request["model"]).

        Returns:
            Dict[str, Any]: The native request body.

        Raises:
            ConversionError: If the request holds content this provider cannot express.
        """

    @abstractmethod
    def to_canonical_response(self, native: Dict[str, Any]) -> UnifiedResponse:
        pass

    @abstractmethod
    def to_native_response(self, response: UnifiedResponse) -> Dict[str, Any]:
        pass

    @abstractmethod
    def to_canonical_chunk(
        self,
        native_chunk: Dict[str, Any],
        state: Optional[StreamState] = None,
    ) -> Optional[UnifiedStreamChunk]:
        """
        Convert one native stream event into a canonical chunk.

        Returns None for events that carry nothing (keep-alives, block
        boundaries).
        """

    @abstractmethod
    def to_native_chunk(
        self,
        chunk: UnifiedStreamChunk,
        state: Optional[StreamState] = None,
    ) -> List[Dict[str, Any]]:
        """
        Convert one canonical chunk into zero or more native stream events.
        """

    def new_stream_state(self) -> StreamState:
        return StreamState()

    def end_of_stream(self, state: StreamState) -> Optional[UnifiedStreamChunk]:
        """
        Terminal chunk for a native stream that ended without one.

        Wire formats with no explicit end event override this. By default an
        unterminated stream is reported as an error.
        """
        if state.finished:
            return None
        logger.warning(f"{self.provider_type} stream ended without a finish reason")
        state.finished = True
        return self._stamp({
            "finish_reason": "error",
            "error": {"type": "incomplete_stream", "message": "Upstream stream ended without a finish reason"},
        }, state)

    # ==========================================================================
    # Shared helpers
    # ==========================================================================

    def map_finish_reason(self, value: Optional[str]) -> FinishReason:
        """
        Map a native finish value through the fixed table; unknown values become "error".
        """
        if value in self.FINISH_REASONS:
            return self.FINISH_REASONS[value]
        logger.warning(f"Unknown {self.provider_type} finish reason: {value!r}")
        return "error"

    def native_finish_reason(self, finish_reason: Optional[str]) -> Optional[str]:
        if finish_reason is None:
            return None
        return self.NATIVE_FINISH_REASONS.get(finish_reason, self.NATIVE_FINISH_REASONS.get("stop"))

    def check_parts(self, messages: Iterable[UnifiedMessage]) -> None:
        """
        Raise ConversionError for content kinds this provider cannot carry.
        """
        for msg in messages:
            for part in msg["content"]:
                if part["type"] not in self.supported_parts:
                    raise ConversionError(
                        f"{self.provider_type} does not support '{part['type']}' content"
                    )

    def extract_passthrough(self, native: Dict[str, Any]) -> Optional[Passthrough]:
        fields = {k: v for k, v in native.items() if k not in self.KNOWN_REQUEST_KEYS}
        if not fields:
            return None
        return {"provider": self.provider_type, "fields": fields}

    def apply_passthrough(self, native: Dict[str, Any], request: UnifiedRequest) -> Dict[str, Any]:
        """
        Re-apply passthrough fields captured from this same provider type.
        """
        extra = request.get("extra")
        if extra and extra.get("provider") == self.provider_type:
            for key, value in extra.get("fields", {}).items():
                native.setdefault(key, value)
        return native

    def build_response(
        self,
        response_id: str,
        model: str,
        parts: List[ContentPart],
        finish_reason: FinishReason,
        usage: Optional[Usage] = None,
        **raw: Any,
    ) -> UnifiedResponse:
        return {
            "id": response_id,
            "model": model,
            "choices": [{
                "message": {"role": "assistant", "content": parts},
                "finish_reason": finish_reason,
            }],
            "usage": usage or new_usage(),
            "raw": {"provider": self.provider_type, **{k: v for k, v in raw.items() if v is not None}},
        }

    @staticmethod
    def first_choice(response: UnifiedResponse) -> Dict[str, Any]:
        choices = response.get("choices") or []
        if not choices:
            raise ConversionError("Canonical response has no choices")
        return choices[0]

    @staticmethod
    def _stamp(chunk: UnifiedStreamChunk, state: Optional[StreamState]) -> UnifiedStreamChunk:
        """Attach the stream's id and model to a decoded chunk."""
        if state is not None:
            if state.id:
                chunk.setdefault("id", state.id)
            if state.model:
                chunk.setdefault("model", state.model)
        return chunk
