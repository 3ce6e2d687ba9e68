from typing import Literal, List, Dict, Any, Union, TypedDict, Optional

# =============================================================================
# Provider Types
# =============================================================================

OPENAI_CUSTOM = "openai-custom"
OPENAI_RESPONSES_CUSTOM = "openaiResponses-custom"
CLAUDE_CUSTOM = "claude-custom"
GEMINI_CLI_OAUTH = "gemini-cli-oauth"
KIRO_OAUTH = "claude-kiro-oauth"

PROVIDER_TYPES = (
    OPENAI_CUSTOM,
    OPENAI_RESPONSES_CUSTOM,
    CLAUDE_CUSTOM,
    GEMINI_CLI_OAUTH,
    KIRO_OAUTH,
)

# Short names accepted wherever a provider type is expected
PROVIDER_ALIASES: Dict[str, str] = {
    "openai": OPENAI_CUSTOM,
    "openai-responses": OPENAI_RESPONSES_CUSTOM,
    "openai_responses": OPENAI_RESPONSES_CUSTOM,
    "responses": OPENAI_RESPONSES_CUSTOM,
    "claude": CLAUDE_CUSTOM,
    "anthropic": CLAUDE_CUSTOM,
    "gemini": GEMINI_CLI_OAUTH,
    "google": GEMINI_CLI_OAUTH,
    "kiro": KIRO_OAUTH,
}


def normalize_provider_type(provider_type: str) -> str:
    """
    Resolve a provider alias to its canonical provider type.

    Unknown names are returned unchanged so that the registry can reject them.
    """
    return PROVIDER_ALIASES.get(provider_type.strip().lower(), provider_type.strip())


# =============================================================================
# Content Parts
# =============================================================================

Role = Literal["system", "user", "assistant", "tool"]
FinishReason = Literal["stop", "length", "tool_calls", "content_filter", "error"]
PartKind = Literal["text", "image", "tool_call", "tool_result"]

ALL_PART_KINDS = frozenset({"text", "image", "tool_call", "tool_result"})


class TextPart(TypedDict):
    """
    Plain text content.
    """
    type: Literal["text"]
    text: str


class ImagePart(TypedDict):
    """
    Image content. `reference` is an http(s) URL or a data URI.
    """
    type: Literal["image"]
    reference: str
    mime_type: str


class ToolCallPart(TypedDict):
    """
    A tool invocation requested by the model.
    """
    type: Literal["tool_call"]
    id: str
    name: str
    arguments: str  # JSON text


class ToolResultPart(TypedDict):
    """
    The output of a tool invocation, sent back to the model.
    """
    type: Literal["tool_result"]
    tool_call_id: str
    output: str


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart]


# =============================================================================
# Messages and Requests
# =============================================================================

class UnifiedMessage(TypedDict):
    """
    Chat message in canonical form.

    Roles:
    - "system": System prompt / instructions
    - "user": User message
    - "assistant": Model response
    - "tool": Tool execution result
    """
    role: Role
    content: List[ContentPart]


class ToolSpec(TypedDict):
    """
    Tool definition. `parameters` is a JSON schema.
    """
    name: str
    description: str
    parameters: Dict[str, Any]


class Passthrough(TypedDict):
    """
    Native fields with no canonical equivalent, kept for same-provider calls.
    """
    provider: str
    fields: Dict[str, Any]


class UnifiedRequest(TypedDict, total=False):
    model: str
    messages: List[UnifiedMessage]
    tools: List[ToolSpec]
    max_output_tokens: int
    temperature: float
    stream: bool
    stop_sequences: List[str]
    extra: Passthrough


# =============================================================================
# Responses and Stream Chunks
# =============================================================================

class Usage(TypedDict):
    prompt_tokens: int
    completion_tokens: int


class Choice(TypedDict):
    message: UnifiedMessage
    finish_reason: FinishReason


class UnifiedResponse(TypedDict):
    """
    Complete model response in canonical form.

    `raw` holds {"provider": <type>, ...} with native fields that have no
    canonical equivalent.
    """
    id: str
    model: str
    choices: List[Choice]
    usage: Usage
    raw: Dict[str, Any]


class StreamError(TypedDict):
    type: str
    message: str


class UnifiedStreamChunk(TypedDict, total=False):
    """
    One incremental piece of a streamed response.

    `delta` holds ordered content fragments. A tool_call fragment carries the
    tool call id and a slice of the arguments text; the first fragment of a
    call also carries its name. Only the terminal chunk carries
    `finish_reason` (and `error` when the stream failed).
    """
    id: str
    model: str
    delta: List[ContentPart]
    finish_reason: FinishReason
    usage: Usage
    error: StreamError


def new_usage(prompt_tokens: Optional[int] = None, completion_tokens: Optional[int] = None) -> Usage:
    return {"prompt_tokens": prompt_tokens or 0, "completion_tokens": completion_tokens or 0}
