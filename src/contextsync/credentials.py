"""Credential resolution and OAuth state tokens.

The sync engine never reads tokens from the store directly; it asks a
CredentialProvider for the active credential of (owner, provider). The
store-backed provider refreshes tokens that are about to expire through an
injected TokenRefresher, and keeps the current token if refresh fails.

OAuthStateStore issues the random `state` parameter of an authorization
redirect and validates it once on the callback.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Protocol

from contextsync.constants import TOKEN_REFRESH_MARGIN_SECONDS
from contextsync.exceptions import ProviderError
from contextsync.logging import get_logger
from contextsync.models import Credential, Integration

if TYPE_CHECKING:
    from collections.abc import Callable

    from contextsync.cache import TTLCache
    from contextsync.storage import ContextStore

logger = get_logger(__name__)


class CredentialProvider(Protocol):
    """Source of active credentials for the sync engine."""

    async def get_active_credential(self, owner: str, provider: str) -> Credential | None:
        """Return the credential for (owner, provider), or None if not connected."""
        ...


class TokenRefresher(Protocol):
    """Exchanges a refresh token for a new access token."""

    async def refresh(self, integration: Integration) -> Integration:
        """Return the integration with refreshed tokens and expiry."""
        ...


class StoreCredentialProvider:
    """CredentialProvider backed by the integrations table.

    Attributes:
        margin: Tokens expiring within this window are refreshed first.
    """

    def __init__(
        self,
        store: ContextStore,
        refresher: TokenRefresher | None = None,
        margin_seconds: int = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._refresher = refresher
        self.margin = timedelta(seconds=margin_seconds)
        self._clock = clock

    def _needs_refresh(self, integration: Integration) -> bool:
        if integration.expires_at is None or not integration.refresh_token:
            return False
        return integration.expires_at - self._clock() <= self.margin

    async def get_active_credential(self, owner: str, provider: str) -> Credential | None:
        """Return the active credential, refreshing it when near expiry.

        Args:
            owner: Owner.
            provider: Provider type.

        Returns:
            Credential, or None if no active integration exists.
        """
        integration = await self._store.get_integration(owner, provider)
        if integration is None:
            return None

        if self._refresher is not None and self._needs_refresh(integration):
            try:
                refreshed = await self._refresher.refresh(integration)
            except ProviderError as e:
                logger.warning(
                    "Token refresh failed, using current token",
                    extra={"owner": owner, "provider": provider, "error": e.message},
                )
            else:
                await self._store.save_integration(refreshed)
                integration = refreshed
                logger.info("Refreshed token", extra={"owner": owner, "provider": provider})

        return Credential.from_integration(integration)


class OAuthStateStore:
    """One-shot OAuth `state` tokens bound to (owner, provider).

    Entries live in the injected TTLCache, so unconsumed states expire
    with the cache's TTL.
    """

    def __init__(self, cache: TTLCache) -> None:
        self._cache = cache

    def issue(self, owner: str, provider: str) -> str:
        """Create a state token for an authorization redirect."""
        state = secrets.token_urlsafe(32)
        self._cache.set(state, (owner, provider))
        return state

    def consume(self, state: str) -> tuple[str, str] | None:
        """Validate and invalidate a state token.

        Returns:
            (owner, provider) the first time a live state is presented,
            None for unknown, expired or already used states.
        """
        value = self._cache.pop(state)
        if value is None:
            return None
        owner, provider = value
        return str(owner), str(provider)
