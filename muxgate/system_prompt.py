from pathlib import Path
from typing import Optional, Union

from loguru import logger

from .types import UnifiedMessage, UnifiedRequest

SYSTEM_PROMPT_MODES = ("append", "overwrite")


def load_system_prompt(path: Optional[Union[str, Path]]) -> Optional[str]:
    """
    Read the system prompt override file.

    Returns:
        str | None: The prompt, or None when no path is set or the file is
        missing or blank.
    """
    if not path:
        return None
    path = Path(path)
    if not path.exists():
        logger.debug(f"System prompt file not found: {path}")
        return None
    text = path.read_text(encoding="utf-8").strip()
    if not text:
        return None
    logger.info(f"Loaded system prompt override from {path} ({len(text)} chars)")
    return text


def apply_system_prompt(request: UnifiedRequest, prompt: Optional[str], mode: str = "append") -> UnifiedRequest:
    """
    Apply a system prompt override to a canonical request.

    ``append`` adds the prompt after the caller's system text (or inserts a
    system message when there is none); ``overwrite`` replaces every system
    message with the prompt. The request passed in is not modified.

    Args:
        request (UnifiedRequest): Canonical request.
        prompt (str, optional): Override text; None leaves the request as is.
        mode (str): ``append`` or ``overwrite``.

    Returns:
        UnifiedRequest: The request to route.
    """
    if not prompt:
        return request
    if mode not in SYSTEM_PROMPT_MODES:
        raise ValueError(f"Unknown system prompt mode: {mode}")

    override: UnifiedMessage = {"role": "system", "content": [{"type": "text", "text": prompt}]}
    messages = list(request["messages"])
    if mode == "overwrite":
        messages = [override] + [m for m in messages if m["role"] != "system"]
    else:
        for index, msg in enumerate(messages):
            if msg["role"] == "system":
                messages[index] = {"role": "system", "content": list(msg["content"]) + override["content"]}
                break
        else:
            messages.insert(0, override)

    updated = dict(request)
    updated["messages"] = messages
    return updated  # type: ignore[return-value]
