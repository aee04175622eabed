"""Client-facing entry point for a group's collaboration tools."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set

from tripmates.core.config import (
    DEFAULT_CURRENCY,
    DEFAULT_IDENTITY_TIMEOUT,
    DEFAULT_VOTE_MAX_ATTEMPTS,
    SyncSettings,
)
from tripmates.core.identity import (
    IdentityProvider,
    StaticIdentityProvider,
    SupabaseIdentityProvider,
    acquire_identity,
)
from tripmates.core.session_store import InMemorySessionStore, SupabaseSessionStore
from tripmates.core.supabase_api import SupabaseClient
from tripmates.errors import ConnectivityError, ValidationError, VoteConflictError
from tripmates.schemas import CollectionKind, Expense, Poll
from tripmates.sync.engine import Subscription, SyncEngine
from tripmates.sync.ledger import (
    ExpenseSummary,
    format_amount,
    PollTally,
    summarize_expenses,
    tally_poll,
    voted_poll_ids,
)
from tripmates.sync.polls import PollVotingResolver, VoteOutcome

_LOGGER = logging.getLogger(__name__)

_DISABLED_MESSAGE = "Still connecting to your group; try again in a moment."
_UNSAVED_MESSAGE = "Could not reach your group; the change was not saved."


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    OFFLINE = "offline"


@dataclass(slots=True)
class ActionResult:
    """Outcome of a user action, suitable for inline, non-blocking display."""

    ok: bool
    message: Optional[str] = None
    record_id: Optional[str] = None
    problems: List[str] = field(default_factory=list)


class GroupSession:
    """Bundle identity bootstrap, the sync engine and the vote resolver.

    Every mutation returns an :class:`ActionResult`; nothing raises to the
    presentation layer. Until an identity is known all mutations are inert.
    """

    def __init__(
        self,
        engine: SyncEngine,
        identity_provider: IdentityProvider,
        *,
        identity_timeout: float = DEFAULT_IDENTITY_TIMEOUT,
        vote_max_attempts: int = DEFAULT_VOTE_MAX_ATTEMPTS,
        currency: str = DEFAULT_CURRENCY,
    ) -> None:
        self.engine = engine
        self.state = ConnectionState.CONNECTING
        self.identity: Optional[str] = None
        self._identity_provider = identity_provider
        self._identity_timeout = identity_timeout
        self.currency = currency
        self._resolver = PollVotingResolver(engine, max_attempts=vote_max_attempts)

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        *,
        client: Optional[SupabaseClient] = None,
    ) -> "GroupSession":
        """Wire a session against Supabase, or an in-memory store when unconfigured."""

        identity_provider: IdentityProvider
        if settings.uses_supabase:
            client = client or SupabaseClient(settings.supabase_url, settings.supabase_anon_key)
            supabase_identity = SupabaseIdentityProvider(client, access_token=settings.access_token)
            store: Any = SupabaseSessionStore(
                client,
                token_provider=supabase_identity.access_token,
                poll_interval=settings.poll_interval,
            )
            identity_provider = supabase_identity
        else:
            _LOGGER.info("Supabase is not configured; group data stays in this process")
            store = InMemorySessionStore()
            identity_provider = StaticIdentityProvider(f"local-{uuid.uuid4().hex[:12]}")
        return cls(
            SyncEngine.from_settings(store, settings),
            identity_provider,
            identity_timeout=settings.identity_timeout,
            vote_max_attempts=settings.vote_max_attempts,
            currency=settings.currency,
        )

    async def start(self) -> ConnectionState:
        """Acquire the client identity within the configured bound."""

        self.state = ConnectionState.CONNECTING
        self.identity = await acquire_identity(self._identity_provider, timeout=self._identity_timeout)
        self.state = ConnectionState.READY if self.identity else ConnectionState.OFFLINE
        _LOGGER.info("Group session %s is %s", self.engine.session_id, self.state.value)
        return self.state

    @property
    def mutations_enabled(self) -> bool:
        return self.state is ConnectionState.READY and bool(self.identity)

    @property
    def stale(self) -> bool:
        """``True`` while any open subscription is showing its last good snapshot."""

        return any(subscription.stale for subscription in self.engine.open_subscriptions)

    def subscribe_checklist(self, **kwargs: Any) -> Subscription:
        return self.engine.subscribe_checklist(**kwargs)

    def subscribe_expenses(self, **kwargs: Any) -> Subscription:
        return self.engine.subscribe_expenses(**kwargs)

    def subscribe_announcements(self, **kwargs: Any) -> Subscription:
        return self.engine.subscribe_announcements(**kwargs)

    def subscribe_polls(self, **kwargs: Any) -> Subscription:
        return self.engine.subscribe_polls(**kwargs)

    async def _create(self, write: Callable[[str], Awaitable[Optional[str]]]) -> ActionResult:
        if not self.mutations_enabled or self.identity is None:
            return ActionResult(ok=False, message=_DISABLED_MESSAGE)
        try:
            record_id = await write(self.identity)
        except ValidationError as exc:
            return ActionResult(ok=False, message=str(exc), problems=exc.problems)
        if record_id is None:
            return ActionResult(ok=False, message=_UNSAVED_MESSAGE)
        return ActionResult(ok=True, record_id=record_id)

    async def _delete(self, remove: Callable[[str], Awaitable[bool]], record_id: str) -> ActionResult:
        if not self.mutations_enabled:
            return ActionResult(ok=False, message=_DISABLED_MESSAGE)
        removed = await remove(record_id)
        return ActionResult(ok=True, record_id=record_id, message=None if removed else "Already removed.")

    async def add_checklist_item(self, text: str) -> ActionResult:
        return await self._create(lambda identity: self.engine.add_checklist_item(text, identity))

    async def add_expense(self, name: str, amount: object) -> ActionResult:
        return await self._create(lambda identity: self.engine.add_expense(name, amount, identity))

    async def post_announcement(self, text: str) -> ActionResult:
        return await self._create(lambda identity: self.engine.post_announcement(text, identity))

    async def create_poll(self, question: str, options: Sequence[Any]) -> ActionResult:
        return await self._create(lambda identity: self.engine.create_poll(question, options, identity))

    async def delete_checklist_item(self, record_id: str) -> ActionResult:
        return await self._delete(self.engine.delete_checklist_item, record_id)

    async def delete_expense(self, record_id: str) -> ActionResult:
        return await self._delete(self.engine.delete_expense, record_id)

    async def delete_announcement(self, record_id: str) -> ActionResult:
        return await self._delete(self.engine.delete_announcement, record_id)

    async def vote(self, poll_id: str, option_index: int) -> ActionResult:
        if not self.mutations_enabled or self.identity is None:
            return ActionResult(ok=False, message=_DISABLED_MESSAGE)
        try:
            outcome = await self._resolver.vote(poll_id, option_index, self.identity)
        except ValidationError as exc:
            return ActionResult(ok=False, message=str(exc), problems=exc.problems)
        except (ConnectivityError, VoteConflictError) as exc:
            _LOGGER.warning("Vote on poll %s failed: %s", poll_id, exc)
            return ActionResult(ok=False, message="Your vote could not be recorded; please try again.")
        if outcome is VoteOutcome.ALREADY_VOTED:
            return ActionResult(ok=True, record_id=poll_id, message="You already voted on this poll.")
        if outcome is VoteOutcome.NOT_FOUND:
            return ActionResult(ok=True, record_id=poll_id, message="This poll is no longer available.")
        return ActionResult(ok=True, record_id=poll_id)

    def has_voted(self, poll: Poll) -> bool:
        return poll.has_voted(self.identity)

    def voted_polls(self) -> Set[str]:
        polls = [poll for poll in self.engine.snapshot(CollectionKind.POLLS) if isinstance(poll, Poll)]
        return voted_poll_ids(polls, self.identity)

    def poll_tallies(self) -> List[PollTally]:
        return [
            tally_poll(poll)
            for poll in self.engine.snapshot(CollectionKind.POLLS)
            if isinstance(poll, Poll)
        ]

    def expense_summary(self, *, member_count: Optional[int] = None) -> ExpenseSummary:
        expenses = [
            expense
            for expense in self.engine.snapshot(CollectionKind.EXPENSES)
            if isinstance(expense, Expense)
        ]
        return summarize_expenses(expenses, member_count=member_count)

    def format_amount(self, amount: float) -> str:
        return format_amount(amount, self.currency)

    def close(self) -> None:
        self.engine.close()

    async def __aenter__(self) -> "GroupSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["ActionResult", "ConnectionState", "GroupSession"]
