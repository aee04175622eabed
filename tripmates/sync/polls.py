"""Single-vote enforcement for group polls."""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional

from tripmates.core.config import DEFAULT_VOTE_MAX_ATTEMPTS
from tripmates.errors import NotFoundError, ValidationError, VersionConflictError, VoteConflictError
from tripmates.schemas import CollectionKind, Poll
from tripmates.sync.engine import SyncEngine

_LOGGER = logging.getLogger(__name__)


class VoteOutcome(str, Enum):
    VOTED = "voted"
    ALREADY_VOTED = "already_voted"
    NOT_FOUND = "not_found"


def _apply_vote(poll: Poll, option_index: int, identity: str) -> dict:
    options: List[dict] = [option.model_dump() for option in poll.options]
    options[option_index]["votes"] += 1
    return {"options": options, "votedBy": [*poll.voted_by, identity]}


class PollVotingResolver:
    """Apply at most one vote per identity per poll.

    The vote is computed from the most recent locally known poll and written
    as one update guarded by that poll's version. When another client voted
    in between, the guarded write is rejected, the poll is read again from
    the store and the vote recomputed, so concurrent votes compose instead of
    overwriting one another.
    """

    def __init__(self, engine: SyncEngine, *, max_attempts: int = DEFAULT_VOTE_MAX_ATTEMPTS) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._engine = engine
        self._max_attempts = max_attempts

    async def _load(self, poll_id: str, *, refresh: bool) -> Optional[Poll]:
        record = await self._engine.get_record(CollectionKind.POLLS, poll_id, refresh=refresh)
        return record if isinstance(record, Poll) else None

    async def vote(self, poll_id: str, option_index: int, identity: str) -> VoteOutcome:
        if not identity:
            raise ValidationError("An identity is required to vote")

        poll = await self._load(poll_id, refresh=False)
        for attempt in range(1, self._max_attempts + 1):
            if poll is None:
                _LOGGER.info("Poll %s no longer exists; vote ignored", poll_id)
                return VoteOutcome.NOT_FOUND
            if poll.has_voted(identity):
                return VoteOutcome.ALREADY_VOTED
            if not 0 <= option_index < len(poll.options):
                raise ValidationError(
                    f"Option {option_index} is out of range for poll {poll_id}"
                )
            try:
                await self._engine.update_record(
                    CollectionKind.POLLS,
                    poll_id,
                    _apply_vote(poll, option_index, identity),
                    expected_version=poll.version,
                )
            except VersionConflictError:
                _LOGGER.debug(
                    "Vote on poll %s raced another writer (attempt %d/%d)",
                    poll_id,
                    attempt,
                    self._max_attempts,
                )
                poll = await self._load(poll_id, refresh=True)
                continue
            except NotFoundError:
                _LOGGER.info("Poll %s was removed before the vote landed", poll_id)
                return VoteOutcome.NOT_FOUND
            return VoteOutcome.VOTED

        _LOGGER.warning(
            "Giving up on vote for poll %s after %d conflicting writes", poll_id, self._max_attempts
        )
        raise VoteConflictError(
            f"Vote on poll {poll_id} could not be applied after {self._max_attempts} attempts"
        )


__all__ = ["PollVotingResolver", "VoteOutcome"]
