import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Literal, Mapping, Optional, Tuple, Union

from loguru import logger

from .config import CredentialDefinition, PoolDefinitions, load_pool_definitions
from .errors import ConfigError
from .types import normalize_provider_type

Availability = Literal["available", "exhausted", "absent"]


@dataclass(eq=False)
class ProviderCredential:
    """
    One authenticated identity for a provider, with its live health state.

    Health fields change only through the owning pool, under this
    credential's lock.
    """
    id: str
    provider_type: str
    auth: Dict[str, Any] = field(default_factory=dict, repr=False)
    priority: int = 0
    error_count: int = 0
    disabled_until: Optional[float] = None
    is_disabled: bool = False
    usage_count: int = 0
    last_used: Optional[float] = None
    last_error: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def is_available(self, now: float) -> bool:
        if self.is_disabled:
            return False
        return self.disabled_until is None or self.disabled_until <= now

    def status(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = time.time() if now is None else now
        return {
            "id": self.id,
            "provider_type": self.provider_type,
            "priority": self.priority,
            "error_count": self.error_count,
            "disabled_until": self.disabled_until,
            "is_disabled": self.is_disabled,
            "available": self.is_available(now),
            "usage_count": self.usage_count,
            "last_used": self.last_used,
        }


class PoolGeneration:
    """
    One immutable load of the provider pools.

    The set and order of credentials never changes after construction:
    per provider type they are sorted by priority (ascending), ties kept in
    definition order. Only credential health mutates.

    Args:
        definitions (PoolDefinitions): Provider type -> credential definitions
            (CredentialDefinition objects or plain pools-file dicts).
        max_error_count (int): Consecutive retryable failures before disabling.
        cooldown_seconds (float): How long a disabled credential stays out of rotation.
        clock (Callable[[], float]): Time source, seconds.
    """

    def __init__(
        self,
        definitions: PoolDefinitions,
        *,
        max_error_count: int = 3,
        cooldown_seconds: float = 300,
        clock: Callable[[], float] = time.time,
        generation: int = 0,
    ):
        self.max_error_count = max_error_count
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.generation = generation

        pools: Dict[str, List[ProviderCredential]] = {}
        seen: Dict[str, str] = {}
        for provider_type, entries in definitions.items():
            provider_type = normalize_provider_type(provider_type)
            for entry in entries:
                if not isinstance(entry, CredentialDefinition):
                    entry = CredentialDefinition.model_validate(dict(entry))
                if entry.uuid in seen:
                    raise ConfigError(f"Duplicate credential uuid '{entry.uuid}' in pools '{seen[entry.uuid]}' and '{provider_type}'")
                seen[entry.uuid] = provider_type
                pools.setdefault(provider_type, []).append(ProviderCredential(
                    id=entry.uuid,
                    provider_type=provider_type,
                    auth=entry.auth,
                    priority=entry.priority,
                    is_disabled=entry.is_disabled,
                ))
        # sorted() is stable, so equal priorities keep definition order
        self._pools: Dict[str, Tuple[ProviderCredential, ...]] = {
            provider_type: tuple(sorted(creds, key=lambda c: c.priority))
            for provider_type, creds in pools.items()
        }
        self._by_id: Dict[str, ProviderCredential] = {
            c.id: c for creds in self._pools.values() for c in creds
        }

    def provider_types(self) -> List[str]:
        return list(self._pools)

    def credentials(self, provider_type: str) -> Tuple[ProviderCredential, ...]:
        return self._pools.get(normalize_provider_type(provider_type), ())

    def get(self, credential_id: str) -> Optional[ProviderCredential]:
        return self._by_id.get(credential_id)

    def availability(self, provider_type: str, exclude_ids: Iterable[str] = ()) -> Availability:
        creds = self.credentials(provider_type)
        if not creds:
            return "absent"
        excluded = set(exclude_ids)
        now = self.clock()
        if any(c.id not in excluded and c.is_available(now) for c in creds):
            return "available"
        return "exhausted"

    def select(self, provider_type: str, exclude_ids: Iterable[str] = ()) -> Optional[ProviderCredential]:
        """
        Pick the highest-priority available credential not in ``exclude_ids``.

        Returns:
            ProviderCredential | None: None when the provider has no
            credentials configured or all of them are disabled or excluded.
        """
        creds = self.credentials(provider_type)
        if not creds:
            logger.warning(f"No credentials configured for provider {provider_type}")
            return None
        excluded = set(exclude_ids)
        now = self.clock()
        for cred in creds:
            if cred.id in excluded or not cred.is_available(now):
                continue
            with cred.lock:
                cred.usage_count += 1
                cred.last_used = now
            return cred
        logger.info(f"All credentials for provider {provider_type} are disabled or already tried")
        return None

    def record_success(self, credential_id: str) -> None:
        """
        Reset the error count and clear an elapsed disable period.
        """
        cred = self._by_id.get(credential_id)
        if cred is None:
            return
        with cred.lock:
            cred.error_count = 0
            if cred.disabled_until is not None and cred.disabled_until <= self.clock():
                cred.disabled_until = None

    def record_failure(self, credential_id: str, retryable: bool) -> None:
        """
        Count a retryable failure; disable the credential at the threshold.

        Non-retryable failures (caller-side errors) leave health untouched.
        """
        if not retryable:
            return
        cred = self._by_id.get(credential_id)
        if cred is None:
            return
        with cred.lock:
            now = self.clock()
            cred.error_count += 1
            cred.last_error = now
            count = cred.error_count
            if count >= self.max_error_count:
                cred.disabled_until = now + self.cooldown_seconds
        if count >= self.max_error_count:
            logger.warning(
                f"Credential {credential_id} ({cred.provider_type}) disabled after {count} errors "
                f"for {self.cooldown_seconds:.0f}s"
            )

    def reset_health(self, credential_id: str) -> None:
        cred = self._by_id.get(credential_id)
        if cred is None:
            return
        with cred.lock:
            cred.error_count = 0
            cred.disabled_until = None
        logger.info(f"Health reset for credential {credential_id}")

    def mark_refreshed(self, credential_id: str, auth: Optional[Mapping[str, Any]] = None) -> None:
        """
        Record an external token refresh.

        New auth material replaces the old one and the disable period is
        lifted. The error count is left for the next successful call to reset.
        """
        cred = self._by_id.get(credential_id)
        if cred is None:
            return
        with cred.lock:
            if auth is not None:
                cred.auth = dict(auth)
            cred.disabled_until = None
        logger.info(f"Credential {credential_id} refreshed")

    def status(self) -> Dict[str, List[Dict[str, Any]]]:
        now = self.clock()
        return {pt: [c.status(now) for c in creds] for pt, creds in self._pools.items()}


class ProviderPool:
    """
    Holder of the current pool generation.

    ``reload()`` swaps in a new generation atomically. Callers that took a
    ``snapshot()`` keep working against the generation they started with.
    """

    def __init__(
        self,
        definitions: Optional[PoolDefinitions] = None,
        *,
        max_error_count: int = 3,
        cooldown_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.max_error_count = max_error_count
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._generation = self._build(definitions or {}, 0)

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs: Any) -> "ProviderPool":
        return cls(load_pool_definitions(path), **kwargs)

    def _build(self, definitions: PoolDefinitions, number: int) -> PoolGeneration:
        return PoolGeneration(
            definitions,
            max_error_count=self.max_error_count,
            cooldown_seconds=self.cooldown_seconds,
            clock=self.clock,
            generation=number,
        )

    def snapshot(self) -> PoolGeneration:
        return self._generation

    def reload(
        self,
        definitions: PoolDefinitions,
        *,
        max_error_count: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
    ) -> PoolGeneration:
        """
        Replace the pool with a freshly loaded generation.
        """
        with self._lock:
            if max_error_count is not None:
                self.max_error_count = max_error_count
            if cooldown_seconds is not None:
                self.cooldown_seconds = cooldown_seconds
            generation = self._build(definitions, self._generation.generation + 1)
            self._generation = generation
        logger.info(
            f"Provider pools reloaded (generation {generation.generation}): "
            + ", ".join(f"{pt}={len(generation.credentials(pt))}" for pt in generation.provider_types())
        )
        return generation

    # Delegates to the current generation

    def select(self, provider_type: str, exclude_ids: Iterable[str] = ()) -> Optional[ProviderCredential]:
        return self._generation.select(provider_type, exclude_ids)

    def availability(self, provider_type: str, exclude_ids: Iterable[str] = ()) -> Availability:
        return self._generation.availability(provider_type, exclude_ids)

    def record_success(self, credential_id: str) -> None:
        self._generation.record_success(credential_id)

    def record_failure(self, credential_id: str, retryable: bool) -> None:
        self._generation.record_failure(credential_id, retryable)

    def reset_health(self, credential_id: str) -> None:
        self._generation.reset_health(credential_id)

    def mark_refreshed(self, credential_id: str, auth: Optional[Mapping[str, Any]] = None) -> None:
        self._generation.mark_refreshed(credential_id, auth)

    def status(self) -> Dict[str, List[Dict[str, Any]]]:
        return self._generation.status()
