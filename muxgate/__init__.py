from .config import GatewayConfig, load_config, load_pool_definitions
from .converters import ConverterRegistry, default_registry
from .dispatcher import RequestDispatcher
from .errors import (
    AttemptRecord, AuthError, ConfigError, ConversionError, GatewayError, PoolExhaustedError,
    RequestTimeoutError, UnknownProviderError, UpstreamError,
)
from .log import configure_logging
from .pool import PoolGeneration, ProviderCredential, ProviderPool
from .rich_printer import AttemptReportPrinter, PoolStatusPrinter
from .router import FallbackRouter, backoff_delay, build_candidates
from .streams import ChunkStream, collect_stream
from .transports import UpstreamTransport
from .types import UnifiedMessage, UnifiedRequest, UnifiedResponse, UnifiedStreamChunk, normalize_provider_type

__all__ = [
    "GatewayConfig",
    "load_config",
    "load_pool_definitions",
    "ConverterRegistry",
    "default_registry",
    "RequestDispatcher",
    "AttemptRecord",
    "AuthError",
    "ConfigError",
    "ConversionError",
    "GatewayError",
    "PoolExhaustedError",
    "RequestTimeoutError",
    "UnknownProviderError",
    "UpstreamError",
    "configure_logging",
    "PoolGeneration",
    "ProviderCredential",
    "ProviderPool",
    "AttemptReportPrinter",
    "PoolStatusPrinter",
    "FallbackRouter",
    "backoff_delay",
    "build_candidates",
    "ChunkStream",
    "collect_stream",
    "UpstreamTransport",
    "UnifiedMessage",
    "UnifiedRequest",
    "UnifiedResponse",
    "UnifiedStreamChunk",
    "normalize_provider_type",
]
