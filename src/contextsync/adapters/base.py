"""Base provider adapter interface.

This module defines the abstract base class every provider adapter
implements. An adapter wraps one provider API behind a uniform fetch
contract:

    fetch_since(owner, credential, since) -> AsyncIterator[RawItem]

The sequence is lazy (pages are requested as it is consumed), finite, and
restartable by calling again. Adapters yield one raw variant per source and
leave mapping to the canonical Context shape to the normalizer.

Every HTTP call goes through the shared RateLimitedExecutor, and every
response is classified into the provider error taxonomy by the adapter's
`_raise_for_status` before the executor decides whether to retry.

Example:
    class MyAdapter(ProviderAdapter):
        name = "my_provider"
        provider = "my_provider"
        sources = ("ticket",)

        def fetch_source(self, credential, source, since, report):
            ...
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar

import httpx

from contextsync.constants import DEFAULT_RETRY_AFTER_SECONDS
from contextsync.exceptions import (
    AuthError,
    DeprecatedEndpointError,
    ProviderError,
    SkippableError,
    ThrottledError,
    TransientError,
)
from contextsync.logging import get_logger
from contextsync.models import FetchReport
from contextsync.normalizer import normalize

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from contextsync.executor import RateLimitedExecutor, RequestPacer
    from contextsync.models import Context, Credential, RawItem

logger = get_logger(__name__)


def parse_retry_after(
    response: httpx.Response, default: float = DEFAULT_RETRY_AFTER_SECONDS
) -> float:
    """Read a Retry-After header in seconds, falling back to default."""
    value = response.headers.get("Retry-After")
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


def error_message(response: httpx.Response) -> str:
    """Extract a human-readable error message from a response body."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(data, dict):
        if data.get("message"):
            return str(data["message"])
        if data.get("errorMessages"):
            return "; ".join(str(m) for m in data["errorMessages"])
        if data.get("error"):
            return str(data["error"])
    return response.reason_phrase


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters.

    Subclasses must implement:
        - name / provider / sources class attributes
        - _get_client: Lazily build the httpx client
        - fetch_source: Stream raw items for one source
        - health_check: Verify the credential works

    Class Attributes:
        name: Adapter identifier used in logs and error strings.
        provider: Provider type the adapter serves.
        sources: Source kinds this adapter produces.
    """

    name: ClassVar[str]
    provider: ClassVar[str]
    sources: ClassVar[tuple[str, ...]]

    def __init__(self, executor: RateLimitedExecutor) -> None:
        self._executor = executor
        self._client: httpx.AsyncClient | None = None
        self._pacer: RequestPacer | None = None

    @abstractmethod
    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        ...

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _auth_headers(self, credential: Credential) -> dict[str, str]:
        """Return per-request authorization headers."""
        return {"Authorization": f"Bearer {credential.access_token}"}

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Classify an HTTP response into the provider error taxonomy.

        Subclasses extend this for provider-specific signals (rate-limit
        headers, error codes in 200 bodies) and call super() for the rest.

        Raises:
            ThrottledError: 429.
            AuthError: 401.
            SkippableError: 403, 404, 409.
            DeprecatedEndpointError: 410.
            TransientError: 5xx.
            ProviderError: Any other 4xx.
        """
        status = response.status_code
        if status < 400:
            return

        message = error_message(response)
        if status == 429:
            raise ThrottledError(
                message,
                self.name,
                retry_after=parse_retry_after(response),
                status_code=status,
            )
        if status == 401:
            raise AuthError(message, self.name, status_code=status)
        if status in (403, 404, 409):
            raise SkippableError(message, self.name, status_code=status)
        if status == 410:
            raise DeprecatedEndpointError(message, self.name, status_code=status)
        if status >= 500:
            raise TransientError(message, self.name, status_code=status)
        raise ProviderError(message, self.name, status_code=status)

    async def _send(
        self,
        credential: Credential,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Perform one HTTP attempt and classify the outcome."""
        client = self._get_client()
        headers = {**self._auth_headers(credential), **kwargs.pop("headers", {})}
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise TransientError(f"Network error: {e}", self.name) from e
        self._raise_for_status(response)
        return response

    async def _request(
        self,
        credential: Credential,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one call through the rate-limited executor.

        Args:
            credential: Credential of the owner being synced.
            method: HTTP method.
            url: Absolute URL or path relative to the client's base URL.
            **kwargs: Passed through to httpx (params, json, headers).

        Returns:
            The successful response.
        """
        return await self._executor.call(
            self._send,
            credential,
            method,
            url,
            description=f"{self.name} {method} {url}",
            pacer=self._pacer,
            **kwargs,
        )

    @abstractmethod
    def fetch_source(
        self,
        credential: Credential,
        source: str,
        since: datetime,
        report: FetchReport,
    ) -> AsyncIterator[RawItem]:
        """Stream raw items of one source updated since `since`.

        Args:
            credential: Credential of the owner being synced.
            source: One of this adapter's `sources`.
            since: Lower bound of the lookback window (UTC).
            report: Accumulator for skips, isolated errors and counters.

        Returns:
            A lazy async iterator of raw items, deduplicated by source id.

        Raises:
            AuthError: When the credential is rejected.
        """
        ...

    async def fetch_since(
        self,
        owner: str,
        credential: Credential,
        since: datetime,
        report: FetchReport | None = None,
    ) -> AsyncIterator[RawItem]:
        """Stream raw items of every source of this adapter, one after another.

        Args:
            owner: Owner being synced, used for log context.
            credential: Credential of the owner.
            since: Lower bound of the lookback window (UTC).
            report: Optional shared accumulator.

        Yields:
            Raw items of all sources.
        """
        report = report if report is not None else FetchReport()
        for source in self.sources:
            logger.debug(
                "Fetching source",
                extra={"owner": owner, "adapter": self.name, "source": source},
            )
            async for item in self.fetch_source(credential, source, since, report):
                yield item

    def normalize(self, owner: str, raw: RawItem) -> Context:
        """Map a raw item of this adapter to the canonical Context."""
        return normalize(owner, raw)

    @abstractmethod
    async def health_check(self, credential: Credential) -> bool:
        """Check whether the credential is accepted by the provider.

        Returns:
            True if the provider accepted the credential, False otherwise.
        """
        ...
