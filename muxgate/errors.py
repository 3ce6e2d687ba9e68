from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    """
    Base class for every error raised by the gateway core.

    Attributes:
        http_status (int): Status code the HTTP layer should answer with.
    """

    http_status = 500
    error_type = "gateway_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": {"type": self.error_type, "message": self.message}}


class ConfigError(GatewayError):
    error_type = "config_error"


class ConversionError(GatewayError):
    """
    Malformed native payload or a content kind the target cannot express.
    """

    http_status = 400
    error_type = "invalid_request_error"


class UnknownProviderError(GatewayError):
    http_status = 400
    error_type = "unknown_provider"

    def __init__(self, provider_type: str):
        super().__init__(f"No converter registered for provider type '{provider_type}'")
        self.provider_type = provider_type


# Statuses worth retrying on another credential or provider
RETRYABLE_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504, 529})


def is_retryable_status(status_code: Optional[int]) -> bool:
    if status_code is None:
        return True
    return status_code in RETRYABLE_STATUSES or status_code >= 500


class UpstreamError(GatewayError):
    """
    Failure reported by (or while reaching) an upstream provider.

    Args:
        message (str): Human readable description.
        status_code (int, optional): Upstream HTTP status, None for network errors.
        retryable (bool, optional): Overrides the status-based classification.
        provider_type (str, optional): Provider that failed.
    """

    error_type = "upstream_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        retryable: Optional[bool] = None,
        provider_type: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = is_retryable_status(status_code) if retryable is None else retryable
        self.provider_type = provider_type

    @property
    def http_status(self) -> int:  # type: ignore[override]
        if self.status_code and 400 <= self.status_code < 600:
            return self.status_code
        return 502


class AuthError(UpstreamError):
    """
    Upstream rejected the credential (401/403).

    Retryable with another credential. The credential is skipped for the rest
    of the dispatch but its error count is left alone.
    """

    error_type = "authentication_error"

    def __init__(self, message: str, status_code: Optional[int] = 401, *, provider_type: Optional[str] = None):
        super().__init__(message, status_code, retryable=True, provider_type=provider_type)

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 401


class RequestTimeoutError(GatewayError):
    http_status = 504
    error_type = "timeout_error"


@dataclass
class AttemptRecord:
    """
    One transport call made during a dispatch.
    """
    provider_type: str
    model: str
    credential_id: str
    kind: str
    retryable: bool
    message: str
    status_code: Optional[int] = None


class PoolExhaustedError(GatewayError):
    """
    Every candidate and credential was tried (or none was available).
    """

    http_status = 503
    error_type = "pool_exhausted"

    def __init__(self, message: str, attempts: Optional[List[AttemptRecord]] = None):
        super().__init__(message)
        self.attempts = list(attempts or [])

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["error"]["attempts"] = [
            {
                "provider": a.provider_type,
                "model": a.model,
                "credential": a.credential_id,
                "kind": a.kind,
                "retryable": a.retryable,
                "status_code": a.status_code,
            }
            for a in self.attempts
        ]
        return body
