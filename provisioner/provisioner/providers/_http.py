"""HTTP error classification shared by the provider clients.

Maps transport failures and HTTP status codes onto the provisioning error
taxonomy so that raw ``httpx`` exceptions never escape a provider client.
"""

from __future__ import annotations

import logging

import httpx

from provisioner.errors import ProviderRejected, ProviderUnavailable

logger = logging.getLogger(__name__)

# Status codes that indicate a transient condition on the provider side.
# 423 is returned by branch-based database services while a concurrent
# operation holds the project lock.
_TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 423, 425, 429})

_MAX_DETAIL_CHARS = 300


class ResourceNotFound(ProviderRejected):
    """The provider reported that the addressed resource does not exist."""


def raise_for_response(response: httpx.Response, *, provider: str, operation: str) -> None:
    """Raise the taxonomy error matching *response*, or return if it succeeded."""
    status = response.status_code
    if status < 400:
        return
    detail = f"{operation} returned HTTP {status}: {response.text[:_MAX_DETAIL_CHARS]}"
    if status >= 500 or status in _TRANSIENT_STATUS_CODES:
        raise ProviderUnavailable(detail, provider=provider)
    if status == 404:
        raise ResourceNotFound(detail, provider=provider)
    raise ProviderRejected(detail, provider=provider)


def unavailable_from(exc: httpx.RequestError, *, provider: str, operation: str) -> ProviderUnavailable:
    """Wrap a transport-level failure (DNS, connect, read timeout, ...)."""
    return ProviderUnavailable(f"{operation} request failed: {type(exc).__name__}: {exc}", provider=provider)
