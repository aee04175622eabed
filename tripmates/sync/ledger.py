"""Derived views over the shared expense and poll lists."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from tripmates.core.config import DEFAULT_CURRENCY
from tripmates.schemas import Expense, Poll

_UNKNOWN_MEMBER = "unknown"


@dataclass
class ExpenseSummary:
    """Totals for the group's expense ledger."""

    total: float = 0.0
    count: int = 0
    by_member: Dict[str, float] = field(default_factory=dict)
    share_per_member: Optional[float] = None


def summarize_expenses(expenses: Iterable[Expense], *, member_count: Optional[int] = None) -> ExpenseSummary:
    """Total the ledger and, given a group size, split it evenly."""

    summary = ExpenseSummary()
    for expense in expenses:
        member = expense.created_by or _UNKNOWN_MEMBER
        summary.total += expense.amount
        summary.count += 1
        summary.by_member[member] = round(summary.by_member.get(member, 0.0) + expense.amount, 2)
    summary.total = round(summary.total, 2)
    if member_count is not None:
        if member_count < 1:
            raise ValueError("member_count must be positive")
        summary.share_per_member = round(summary.total / member_count, 2)
    return summary


def format_amount(amount: float, currency: str = DEFAULT_CURRENCY) -> str:
    return f"{currency}{amount:,.2f}"


@dataclass
class OptionTally:
    text: str
    votes: int
    percentage: float


@dataclass
class PollTally:
    """Vote counts for one poll, ready for display."""

    poll_id: str
    question: str
    total_votes: int
    options: List[OptionTally]
    leaders: List[str]


def tally_poll(poll: Poll) -> PollTally:
    total = poll.total_votes
    options = [
        OptionTally(
            text=option.text,
            votes=option.votes,
            percentage=round(option.votes * 100.0 / total, 1) if total else 0.0,
        )
        for option in poll.options
    ]
    top = max((option.votes for option in poll.options), default=0)
    leaders = [option.text for option in poll.options if top and option.votes == top]
    return PollTally(
        poll_id=poll.id,
        question=poll.question,
        total_votes=total,
        options=options,
        leaders=leaders,
    )


def voted_poll_ids(polls: Iterable[Poll], identity: Optional[str]) -> Set[str]:
    """Ids of the polls ``identity`` has already voted on."""

    if not identity:
        return set()
    return {poll.id for poll in polls if poll.has_voted(identity)}


__all__ = [
    "ExpenseSummary",
    "OptionTally",
    "PollTally",
    "format_amount",
    "summarize_expenses",
    "tally_poll",
    "voted_poll_ids",
]
