"""Identity providers that attribute writes to a stable per-client id."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

import requests

from tripmates.core.supabase_api import SupabaseClient, SupabaseError, SupabaseSession

_LOGGER = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    async def get_or_create_identity(self) -> str:
        ...


class StaticIdentityProvider:
    """Provider returning a fixed identity."""

    def __init__(self, identity: str) -> None:
        if not identity:
            raise ValueError("identity cannot be empty")
        self._identity = identity

    async def get_or_create_identity(self) -> str:
        return self._identity


class SupabaseIdentityProvider:
    """Resolve the client identity through Supabase auth.

    An externally issued access token takes precedence; otherwise the client
    signs in anonymously. The session is cached and refreshed once expired so
    the identity stays stable for the lifetime of the client session.
    """

    def __init__(self, client: SupabaseClient, *, access_token: Optional[str] = None) -> None:
        self._client = client
        self._initial_token = access_token
        self._session: Optional[SupabaseSession] = None
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[SupabaseSession]:
        return self._session

    async def access_token(self) -> Optional[str]:
        """Return a current bearer token, refreshing an expired session first.

        ``None`` until :meth:`get_or_create_identity` has resolved a session.
        """

        async with self._lock:
            if self._session is None:
                return None
            if self._session.is_expired():
                previous = self._session.user.id
                self._session = await asyncio.to_thread(self._resolve_session)
                if self._session.user.id != previous:
                    _LOGGER.warning(
                        "Supabase session was replaced; identity changed from %s to %s",
                        previous,
                        self._session.user.id,
                    )
            return self._session.access_token

    def _resolve_session(self) -> SupabaseSession:
        session = self._session
        if session and not session.is_expired():
            return session
        if session and session.refresh_token:
            try:
                return self._client.refresh_session(session.refresh_token)
            except SupabaseError as exc:
                _LOGGER.warning("Supabase session refresh failed, signing in again: %s", exc)
        if self._initial_token:
            return self._client.session_from_token(self._initial_token)
        return self._client.sign_in_anonymously()

    async def get_or_create_identity(self) -> str:
        async with self._lock:
            self._session = await asyncio.to_thread(self._resolve_session)
            return self._session.user.id


async def acquire_identity(provider: IdentityProvider, *, timeout: float) -> Optional[str]:
    """Return the client identity, or ``None`` if it is not available in time.

    A missing identity disables mutations; it is not treated as a fault.
    """

    try:
        return await asyncio.wait_for(provider.get_or_create_identity(), timeout=timeout)
    except asyncio.TimeoutError:
        _LOGGER.warning("Identity not available after %.1fs; mutations stay disabled", timeout)
    except (SupabaseError, requests.RequestException) as exc:
        _LOGGER.warning("Identity acquisition failed: %s", exc)
    return None


__all__ = [
    "IdentityProvider",
    "StaticIdentityProvider",
    "SupabaseIdentityProvider",
    "acquire_identity",
]
