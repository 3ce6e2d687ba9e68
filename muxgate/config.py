import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .types import normalize_provider_type

DEFAULT_CONFIG_PATH = "configs/config.json"


class GatewayConfig(BaseModel):
    """
    Parsed gateway configuration.

    Field aliases are the external key names used in the JSON config file and
    in environment variables. Instances are immutable; a reload builds a new
    one.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore", protected_namespaces=())

    provider_pools_file_path: Optional[str] = Field(
        default="configs/provider_pools.json", alias="PROVIDER_POOLS_FILE_PATH"
    )
    provider_fallback_chain: Dict[str, List[str]] = Field(default_factory=dict, alias="providerFallbackChain")
    model_fallback_mapping: Dict[str, List[str]] = Field(default_factory=dict, alias="modelFallbackMapping")

    max_error_count: int = Field(default=3, ge=1, alias="MAX_ERROR_COUNT")
    request_max_retries: int = Field(default=3, ge=1, alias="REQUEST_MAX_RETRIES")
    request_base_delay: int = Field(default=1000, ge=0, alias="REQUEST_BASE_DELAY")  # ms
    request_max_delay: int = Field(default=30000, ge=0, alias="REQUEST_MAX_DELAY")  # ms
    error_cooldown_seconds: float = Field(default=300, ge=0, alias="ERROR_COOLDOWN_SECONDS")
    request_timeout_seconds: Optional[float] = Field(default=None, gt=0, alias="REQUEST_TIMEOUT_SECONDS")

    system_prompt_file_path: Optional[str] = Field(
        default="configs/input_system_prompt.txt", alias="SYSTEM_PROMPT_FILE_PATH"
    )
    system_prompt_mode: Literal["append", "overwrite"] = Field(default="append", alias="SYSTEM_PROMPT_MODE")

    proxy_url: Optional[str] = Field(default=None, alias="PROXY_URL")
    proxy_enabled_providers: List[str] = Field(default_factory=list, alias="PROXY_ENABLED_PROVIDERS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @field_validator("provider_fallback_chain", mode="before")
    @classmethod
    def _normalize_chain(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {
            normalize_provider_type(key): [normalize_provider_type(p) for p in targets]
            for key, targets in value.items()
        }

    @field_validator("proxy_enabled_providers", mode="before")
    @classmethod
    def _split_providers(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [p for p in value.split(",") if p.strip()]
        if isinstance(value, list):
            return [normalize_provider_type(p) for p in value]
        return value

    def proxy_for(self, provider_type: str) -> Optional[str]:
        """
        Proxy URL to use for a provider type, or None when it goes direct.
        """
        if self.proxy_url and normalize_provider_type(provider_type) in self.proxy_enabled_providers:
            return self.proxy_url
        return None


def _read_json(path: Union[str, Path]) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def _env_overrides() -> Dict[str, Any]:
    """
    Collect configuration keys present in the environment.

    Values that parse as JSON (objects, lists, numbers) are decoded.
    """
    overrides: Dict[str, Any] = {}
    for field in GatewayConfig.model_fields.values():
        raw = os.environ.get(field.alias)
        if raw is None:
            continue
        try:
            overrides[field.alias] = json.loads(raw)
        except json.JSONDecodeError:
            overrides[field.alias] = raw
    return overrides


def load_config(path: Optional[Union[str, Path]] = None, *, use_env: bool = True) -> GatewayConfig:
    """
    Load the gateway configuration.

    Reads the JSON config file (``configs/config.json`` when no path is given
    and the file exists), then overlays environment variables of the same
    names. A ``.env`` file in the working directory is loaded first.

    Args:
        path (str | Path, optional): Config file path.
        use_env (bool): Overlay environment variables.

    Returns:
        GatewayConfig: The validated configuration.

    Raises:
        ConfigError: If the file is missing (explicit path) or invalid.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        if not Path(path).exists():
            raise ConfigError(f"Config file not found: {path}")
        data.update(_read_json(path))
    elif Path(DEFAULT_CONFIG_PATH).exists():
        data.update(_read_json(DEFAULT_CONFIG_PATH))

    if use_env:
        dotenv.load_dotenv()
        data.update(_env_overrides())

    try:
        config = GatewayConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        f"Config loaded: retries={config.request_max_retries}, "
        f"max_error_count={config.max_error_count}, "
        f"fallback_chain={config.provider_fallback_chain}"
    )
    return config


class CredentialDefinition(BaseModel):
    """
    One credential entry of the provider pools file.

    Only ``uuid``, ``priority`` and ``isDisabled`` are interpreted; every
    other key is opaque auth material handed to the transport.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    uuid: str
    priority: int = 0
    is_disabled: bool = Field(default=False, alias="isDisabled")

    @property
    def auth(self) -> Dict[str, Any]:
        return dict(self.model_extra or {})


PoolDefinitions = Dict[str, List[CredentialDefinition]]


def parse_pool_definitions(data: Any) -> PoolDefinitions:
    """
    Validate a provider pools mapping (provider type -> list of entries).

    Raises:
        ConfigError: If the structure or an entry is invalid, or a uuid repeats.
    """
    if not isinstance(data, dict):
        raise ConfigError("Provider pools must be an object keyed by provider type")
    definitions: PoolDefinitions = {}
    seen: Dict[str, str] = {}
    for provider_type, entries in data.items():
        if not isinstance(entries, list):
            raise ConfigError(f"Provider pool '{provider_type}' must be a list")
        try:
            parsed = [CredentialDefinition.model_validate(entry) for entry in entries]
        except ValidationError as e:
            raise ConfigError(f"Invalid credential in pool '{provider_type}': {e}") from e
        for entry in parsed:
            # Health is tracked per uuid across all pools
            if entry.uuid in seen:
                raise ConfigError(
                    f"Duplicate credential uuid '{entry.uuid}' in pools '{seen[entry.uuid]}' and '{provider_type}'"
                )
            seen[entry.uuid] = provider_type
        definitions.setdefault(normalize_provider_type(provider_type), []).extend(parsed)
    return definitions


def load_pool_definitions(path: Union[str, Path]) -> PoolDefinitions:
    """
    Load the provider pools file.

    A missing file yields an empty pool rather than an error.
    """
    if not Path(path).exists():
        logger.warning(f"Provider pools file not found: {path}")
        return {}
    return parse_pool_definitions(_read_json(path))
