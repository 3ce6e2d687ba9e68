import threading
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Union

from loguru import logger

from .config import GatewayConfig, PoolDefinitions, load_pool_definitions
from .converters import BaseConverter, ConverterRegistry, default_registry
from .errors import ConversionError
from .pool import PoolGeneration, ProviderPool
from .router import FallbackRouter, Transport
from .streams import ChunkStream
from .system_prompt import apply_system_prompt, load_system_prompt
from .transports import UpstreamTransport
from .types import normalize_provider_type


@dataclass(frozen=True)
class DispatchContext:
    """
    One configuration generation: everything a request reads from config.
    """
    config: GatewayConfig
    router: FallbackRouter
    generation: PoolGeneration
    system_prompt: Optional[str] = None


class RequestDispatcher:
    """
    Entry point for the HTTP layer.

    Converts the caller's native request to canonical form once, routes it,
    and converts the result back to the caller's format, chunk by chunk for
    streams, whichever provider ended up serving it.

    Args:
        registry (ConverterRegistry): Converters by provider type.
        pool (ProviderPool): Credential pool.
        transport (Transport): ``call_upstream`` implementation.
        config (GatewayConfig, optional): Initial configuration.
        **router_kwargs: Extra FallbackRouter arguments (e.g. ``sleep``).

    Example:
        >>> dispatcher = RequestDispatcher.from_config(load_config())
        >>> body = await dispatcher.handle(openai_body, "openai")
    """

    def __init__(
        self,
        registry: ConverterRegistry,
        pool: ProviderPool,
        transport: Transport,
        config: Optional[GatewayConfig] = None,
        **router_kwargs: Any,
    ):
        self.registry = registry
        self.pool = pool
        self.transport = transport
        self._router_kwargs = router_kwargs
        self._lock = threading.Lock()
        self._context = self._build_context(config or GatewayConfig(), pool.snapshot())

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        transport: Optional[Transport] = None,
        definitions: Optional[PoolDefinitions] = None,
        **router_kwargs: Any,
    ) -> "RequestDispatcher":
        """
        Build registry, pool and router from a configuration.

        Args:
            config (GatewayConfig): The configuration.
            transport (Transport, optional): Defaults to UpstreamTransport.
            definitions (PoolDefinitions, optional): Pool definitions; read from
                ``PROVIDER_POOLS_FILE_PATH`` when omitted.
        """
        if definitions is None:
            definitions = load_pool_definitions(config.provider_pools_file_path) if config.provider_pools_file_path else {}
        pool = ProviderPool(
            definitions,
            max_error_count=config.max_error_count,
            cooldown_seconds=config.error_cooldown_seconds,
        )
        if transport is None:
            transport = UpstreamTransport(config)
        return cls(default_registry(), pool, transport, config, **router_kwargs)

    @property
    def config(self) -> GatewayConfig:
        return self._context.config

    def _build_context(self, config: GatewayConfig, generation: PoolGeneration) -> DispatchContext:
        router = FallbackRouter.from_config(config, self.registry, self.pool, self.transport, **self._router_kwargs)
        return DispatchContext(
            config=config,
            router=router,
            generation=generation,
            system_prompt=load_system_prompt(config.system_prompt_file_path),
        )

    def reload(self, config: GatewayConfig, definitions: Optional[PoolDefinitions] = None) -> None:
        """
        Swap in a new configuration and pool generation.

        Requests already being handled finish with the configuration and
        credentials they started with.
        """
        if definitions is None:
            definitions = load_pool_definitions(config.provider_pools_file_path) if config.provider_pools_file_path else {}
        with self._lock:
            generation = self.pool.reload(
                definitions,
                max_error_count=config.max_error_count,
                cooldown_seconds=config.error_cooldown_seconds,
            )
            self._context = self._build_context(config, generation)
        logger.info("Dispatcher configuration reloaded")

    async def handle(
        self,
        native_request: Dict[str, Any],
        caller_provider_type: str,
        stream: Optional[bool] = None,
        target_provider_type: Optional[str] = None,
    ) -> Union[Dict[str, Any], ChunkStream]:
        """
        Serve one native request.

        Args:
            native_request (Dict[str, Any]): Parsed request body in the caller's format.
            caller_provider_type (str): Format the caller speaks (and expects back).
            stream (bool, optional): Overrides the body's stream flag.
            target_provider_type (str, optional): Provider to route to first;
                defaults to the caller's provider type.

        Returns:
            dict | ChunkStream: Native response, or a stream of native chunks.
        """
        context = self._context
        caller = self.registry.get(caller_provider_type)
        request = caller.to_canonical_request(native_request)
        if stream is not None:
            request["stream"] = stream
        request = apply_system_prompt(request, context.system_prompt, context.config.system_prompt_mode)

        target = normalize_provider_type(target_provider_type or caller_provider_type)
        result = await context.router.dispatch(request, target, context.generation)

        if isinstance(result, ChunkStream):
            return result.derive(self._encode_stream(result, caller))
        return caller.to_native_response(result)

    @staticmethod
    async def _encode_stream(stream: ChunkStream, caller: BaseConverter) -> AsyncIterator[Dict[str, Any]]:
        state = caller.new_stream_state()
        async with stream:
            async for chunk in stream:
                try:
                    events = caller.to_native_chunk(chunk, state)
                except ConversionError as exc:
                    # Earlier events are already out
                    logger.warning(f"Ending {stream.provider_type} stream for {caller.provider_type} caller: {exc.message}")
                    error_chunk = {"finish_reason": "error", "error": {"type": exc.error_type, "message": exc.message}}
                    for event in caller.to_native_chunk(error_chunk, state):
                        yield event
                    return
                for event in events:
                    yield event
