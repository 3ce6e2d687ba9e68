import json
import time
import uuid
from pathlib import Path
from typing import Optional, Dict, Any, Tuple

from .errors import ConversionError
from .types import ImagePart, TextPart, ToolResultPart, Usage

# =============================================================================
# Image Helpers
# =============================================================================

# Map file extensions to MIME types
MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}


def normalize_mime_type(mime_type: Optional[str], default: str = "image/jpeg") -> str:
    """
    Normalize a MIME type so that equivalent spellings compare equal.

    Lowercases, strips parameters and maps the non-standard "image/jpg" to
    "image/jpeg".

    Args:
        mime_type (str, optional): MIME type as reported by a provider or a data URI.
        default (str): Value to use when nothing is given.

    Returns:
        str: The normalized MIME type.
    """
    if not mime_type:
        return default
    mime_type = mime_type.split(";")[0].strip().lower()
    if mime_type == "image/jpg":
        return "image/jpeg"
    return mime_type


def guess_mime_type(reference: str, default: str = "image/jpeg") -> str:
    """
    Guess the MIME type of an image reference (data URI or URL).
    """
    if reference.startswith("data:"):
        return parse_data_uri(reference)[1]
    suffix = Path(reference.split("?", 1)[0]).suffix.lower()
    return MIME_TYPES.get(suffix, default)


def parse_data_uri(uri: str) -> Tuple[str, str]:
    """
    Split a data URI into its base64 payload and MIME type.

    Args:
        uri (str): A URI of the form data:[<mediatype>][;base64],<data>

    Returns:
        Tuple[str, str]: A tuple containing (base64_data, mime_type).

    Raises:
        ConversionError: If the URI is not a data URI.
    """
    if not uri.startswith("data:") or "," not in uri:
        raise ConversionError(f"Not a data URI: {uri[:50]}")
    header, data = uri.split(",", 1)
    mime_type = header[len("data:"):].split(";")[0]
    return data, normalize_mime_type(mime_type)


def build_data_uri(b64_data: str, mime_type: str) -> str:
    return f"data:{normalize_mime_type(mime_type)};base64,{b64_data}"


def is_remote_url(reference: str) -> bool:
    return reference.startswith(("http://", "https://"))


# =============================================================================
# Content Part Builders
# =============================================================================

def text_part(text: str) -> TextPart:
    return {"type": "text", "text": text}


def image_part(reference: str, mime_type: Optional[str] = None) -> ImagePart:
    """
    Create a canonical image part from a URL or data URI.

    The MIME type is taken from the data URI when not given explicitly.
    """
    if mime_type is None:
        mime_type = guess_mime_type(reference)
    return {"type": "image", "reference": reference, "mime_type": normalize_mime_type(mime_type)}


def tool_result_part(tool_call_id: str, output: Any) -> ToolResultPart:
    return {"type": "tool_result", "tool_call_id": tool_call_id, "output": stringify_output(output)}


# =============================================================================
# Tool Argument Helpers
# =============================================================================

def load_arguments(arguments: str) -> Any:
    """
    Parse tool call arguments text, keeping unparseable text under "_raw".
    """
    if not arguments:
        return {}
    try:
        return json.loads(arguments)
    except json.JSONDecodeError:
        return {"_raw": arguments}


def stringify_output(output: Any) -> str:
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        # Content block lists (Claude / Responses) carry text parts
        texts = [
            item.get("text", "") for item in output
            if isinstance(item, dict) and item.get("type") in ("text", "input_text", "output_text")
        ]
        if len(texts) == len(output):
            return "".join(texts)
    return json.dumps(output, ensure_ascii=False)


# =============================================================================
# Misc
# =============================================================================

def require(payload: Dict[str, Any], key: str, where: str) -> Any:
    """
    Fetch a required field from a native payload.

    Raises:
        ConversionError: If the field is missing or None.
    """
    if not isinstance(payload, dict):
        raise ConversionError(f"{where}: expected an object, got {type(payload).__name__}")
    value = payload.get(key)
    if value is None:
        raise ConversionError(f"{where}: missing required field '{key}'")
    return value


def generate_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:24]}"


def unix_time() -> int:
    return int(time.time())


def normalize_usage(
    prompt_tokens: Optional[int] = None,
    completion_tokens: Optional[int] = None,
    total_tokens: Optional[int] = None,
) -> Usage:
    """
    Normalize token counts into canonical usage.

    Missing completion counts are derived from the total when possible.
    """
    prompt_tokens = prompt_tokens or 0
    if completion_tokens is None and total_tokens is not None:
        completion_tokens = max(total_tokens - prompt_tokens, 0)
    return {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens or 0}


def merge_usage(current: Optional[Usage], update: Optional[Usage]) -> Optional[Usage]:
    """
    Merge two usage snapshots, taking the larger count per field.

    Usage arrives either cumulatively or once per stream.
    """
    if update is None:
        return current
    if current is None:
        return dict(update)  # type: ignore[return-value]
    return {
        "prompt_tokens": max(current["prompt_tokens"], update["prompt_tokens"]),
        "completion_tokens": max(current["completion_tokens"], update["completion_tokens"]),
    }
