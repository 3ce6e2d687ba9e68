"""
Logging setup for the gateway (loguru).
"""
import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

_sink_id = None


def configure_logging(level: str = "INFO", colorize: bool = True) -> int:
    """
    Replace loguru's default sink with the gateway's stderr sink.

    Calling it again swaps the previous gateway sink instead of stacking sinks.

    Args:
        level (str): Minimum level to emit.
        colorize (bool): Colorize output.

    Returns:
        int: The loguru sink id.
    """
    global _sink_id
    if _sink_id is None:
        logger.remove()
    else:
        logger.remove(_sink_id)
    _sink_id = logger.add(sys.stderr, level=level.upper(), colorize=colorize, format=LOG_FORMAT)
    return _sink_id


def mask_secret(value: str) -> str:
    """
    Mask a secret for logging (show only first and last 4 chars).
    """
    if not value or len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"
