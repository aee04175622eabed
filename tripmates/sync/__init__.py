"""Sync engine, collection definitions and poll voting."""

from .engine import Subscription, SyncEngine, order_records
from .polls import PollVotingResolver, VoteOutcome

__all__ = [
    "PollVotingResolver",
    "Subscription",
    "SyncEngine",
    "VoteOutcome",
    "order_records",
]
