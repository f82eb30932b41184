"""
External Provider Client: Abstract Base Class

The payment gateway and the shipping provider are reached through thin
HTTP clients that share this base: credentials, a bound logger, and one
request helper that turns transport/HTTP failures into provider errors.

Mapping from provider object shapes into the engine's status vocabulary
lives next to each client (``stripe_gateway``, ``shippo``).
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx
import structlog

logger = structlog.get_logger()


# ── Provider types ─────────────────────────────────────────────────────────


class ProviderType(str, Enum):
    """External collaborators the engine reconciles against."""

    PAYMENT_GATEWAY = "payment_gateway"
    SHIPPING = "shipping"


# ── Errors ─────────────────────────────────────────────────────────────────


class ProviderError(Exception):
    """A provider call failed (network, HTTP status, or unusable payload)."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PaymentGatewayError(ProviderError):
    pass


class ShippingProviderError(ProviderError):
    pass


def is_retryable(exc: BaseException) -> bool:
    """Only transport faults and 5xx responses on reads get the single retry."""
    return isinstance(exc, ProviderError) and exc.retryable


# ── Abstract client ────────────────────────────────────────────────────────


class ProviderClient(ABC):
    """
    Base class for provider HTTP clients.

    ``transport`` is passed straight to ``httpx.AsyncClient`` so tests can
    plug in ``httpx.MockTransport``. A new client is opened per call; no
    provider state outlives a request.
    """

    error_cls: type[ProviderError] = ProviderError
    timeout_seconds: float = 30.0

    def __init__(self, base_url: str, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.transport = transport
        self.logger = logger.bind(provider=self.provider_type.value, client=type(self).__name__)

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type this client talks to."""
        ...

    @abstractmethod
    def auth_kwargs(self) -> dict[str, Any]:
        """Headers/auth passed to every request."""
        ...

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout_seconds) as client:
            try:
                response = await client.request(method, f"{self.base_url}{path}", **self.auth_kwargs(), **kwargs)
            except httpx.TransportError as exc:
                self.logger.warning("provider.transport_error", method=method, path=path, error=str(exc))
                raise self.error_cls(f"{method} {path} failed: {exc}", retryable=True) from exc
        return response

    def _json_or_raise(self, response: httpx.Response, action: str) -> dict[str, Any]:
        if response.is_error:
            self.logger.error(
                "provider.http_error",
                action=action,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise self.error_cls(
                f"{action} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise self.error_cls(f"{action} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise self.error_cls(f"{action} returned an unexpected payload")
        return payload
