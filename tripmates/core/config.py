"""Runtime settings for a group sync session."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from tripmates.errors import ConfigurationError

_LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "tripmates"
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_IDENTITY_TIMEOUT = 10.0
DEFAULT_VOTE_MAX_ATTEMPTS = 5
DEFAULT_CURRENCY = "₹"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        _LOGGER.warning("Ignoring malformed %s=%r; using %s", name, raw, default)
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        _LOGGER.warning("Ignoring malformed %s=%r; using %s", name, raw, default)
        return default
    return value if value > 0 else default


@dataclass(slots=True)
class SyncSettings:
    """Configuration threaded into the sync engine at construction time."""

    session_id: str
    namespace: str = DEFAULT_NAMESPACE
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    access_token: Optional[str] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    identity_timeout: float = DEFAULT_IDENTITY_TIMEOUT
    vote_max_attempts: int = DEFAULT_VOTE_MAX_ATTEMPTS
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        if not self.session_id or not self.session_id.strip():
            raise ConfigurationError("A group session id is required")
        if not self.namespace or not self.namespace.strip():
            raise ConfigurationError("A namespace is required")

    @property
    def uses_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    @classmethod
    def from_env(cls, *, session_id: Optional[str] = None) -> "SyncSettings":
        """Build settings from the environment, loading a ``.env`` file first.

        ``session_id`` overrides ``TRIPMATES_SESSION_ID`` so callers can join a
        specific trip group without touching the environment.
        """

        load_dotenv()
        resolved_session = session_id or os.getenv("TRIPMATES_SESSION_ID")
        if not resolved_session:
            raise ConfigurationError(
                "TRIPMATES_SESSION_ID is not set and no session id was provided"
            )
        return cls(
            session_id=resolved_session,
            namespace=os.getenv("TRIPMATES_NAMESPACE") or DEFAULT_NAMESPACE,
            supabase_url=os.getenv("SUPABASE_URL") or None,
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
            access_token=os.getenv("SUPABASE_ACCESS_TOKEN") or None,
            poll_interval=_env_float("TRIPMATES_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            identity_timeout=_env_float("TRIPMATES_IDENTITY_TIMEOUT", DEFAULT_IDENTITY_TIMEOUT),
            vote_max_attempts=_env_int("TRIPMATES_VOTE_MAX_ATTEMPTS", DEFAULT_VOTE_MAX_ATTEMPTS),
            currency=os.getenv("TRIPMATES_CURRENCY") or DEFAULT_CURRENCY,
        )


__all__ = ["SyncSettings"]
