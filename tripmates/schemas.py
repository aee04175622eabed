"""Data schemas for the Tripmates group collaboration lists."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


class CollectionKind(str, Enum):
    """The four shared lists that live under one group session."""

    CHECKLIST = "checklist"
    EXPENSES = "expenses"
    ANNOUNCEMENTS = "announcements"
    POLLS = "polls"


def _from_epoch(seconds: float) -> datetime:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValueError(f"createdAt {seconds!r} is out of range") from exc


def _coerce_timestamp(value: object) -> object:
    """Normalise the timestamp shapes a document store may hand back.

    ISO 8601 strings are left to pydantic's own datetime parser, which accepts
    any fractional precision PostgREST emits.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        raise ValueError("createdAt must be a timestamp")
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as produced by JavaScript clients.
        return _from_epoch(float(value) / 1000.0)
    if isinstance(value, dict) and "seconds" in value:
        try:
            seconds = float(value.get("seconds") or 0)
            nanos = float(value.get("nanoseconds") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Unsupported createdAt value: {value!r}") from exc
        return _from_epoch(seconds + nanos / 1e9)
    if isinstance(value, str):
        return value.strip()
    raise ValueError(f"Unsupported createdAt value: {value!r}")


def _clean_required_text(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be text")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{label} cannot be empty")
    return cleaned


def parse_amount(value: object) -> float:
    """Parse a user supplied amount strictly.

    Accepts numbers and numeric strings such as ``"42.50"``. Rejects partial
    numbers (``"42abc"``), booleans, non-finite values and negatives.
    """

    if isinstance(value, bool):
        raise ValueError("Amount must be a number")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, Decimal):
        numeric = float(value)
    elif isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Amount cannot be empty")
        try:
            numeric = float(Decimal(cleaned))
        except InvalidOperation as exc:
            raise ValueError(f"Amount {value!r} is not a number") from exc
    else:
        raise ValueError("Amount must be a number")
    if not math.isfinite(numeric):
        raise ValueError("Amount must be a finite number")
    if numeric < 0:
        raise ValueError("Amount cannot be negative")
    return numeric


class SessionRecord(BaseModel):
    """Fields shared by every record stored under a group session."""

    id: str
    created_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("createdAt", "created_at"),
        serialization_alias="createdAt",
    )
    created_by: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("createdBy", "created_by"),
        serialization_alias="createdBy",
    )
    version: int = Field(default=1, ge=1, exclude=True)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalise_created_at(cls, value: object) -> object:
        return _coerce_timestamp(value)

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ChecklistItem(SessionRecord):
    """A shared packing or to-do entry."""

    text: str


class Expense(SessionRecord):
    """A shared cost logged by one member of the group."""

    name: str
    amount: float = Field(ge=0)


class Announcement(SessionRecord):
    """A message pinned to the group board."""

    text: str


class PollOption(BaseModel):
    """One answer of a poll together with its running vote count."""

    text: str
    votes: int = Field(default=0, ge=0)


class Poll(SessionRecord):
    """A group question whose members each get a single vote."""

    question: str
    options: List[PollOption] = Field(min_length=2)
    voted_by: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("votedBy", "voted_by"),
        serialization_alias="votedBy",
    )

    def has_voted(self, identity: Optional[str]) -> bool:
        return bool(identity) and identity in self.voted_by

    @property
    def total_votes(self) -> int:
        return sum(option.votes for option in self.options)


class ChecklistDraft(BaseModel):
    """Validated input for a new checklist item."""

    text: str

    @field_validator("text", mode="before")
    @classmethod
    def _require_text(cls, value: object) -> str:
        return _clean_required_text(value, "Checklist item")

    def to_payload(self) -> Dict[str, Any]:
        return {"text": self.text}


class ExpenseDraft(BaseModel):
    """Validated input for a new expense."""

    name: str
    amount: float

    @field_validator("name", mode="before")
    @classmethod
    def _require_name(cls, value: object) -> str:
        return _clean_required_text(value, "Expense name")

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: object) -> float:
        return parse_amount(value)

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "amount": self.amount}


class AnnouncementDraft(BaseModel):
    """Validated input for a new announcement."""

    text: str

    @field_validator("text", mode="before")
    @classmethod
    def _require_text(cls, value: object) -> str:
        return _clean_required_text(value, "Announcement")

    def to_payload(self) -> Dict[str, Any]:
        return {"text": self.text}


class PollDraft(BaseModel):
    """Validated input for a new poll.

    Options may be given as plain strings or as ``{"text": ...}`` mappings.
    Blank options are dropped before the two-option minimum is enforced.
    """

    question: str
    options: List[str] = Field(min_length=2)

    @field_validator("question", mode="before")
    @classmethod
    def _require_question(cls, value: object) -> str:
        return _clean_required_text(value, "Poll question")

    @field_validator("options", mode="before")
    @classmethod
    def _clean_options(cls, value: object) -> object:
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
            return value
        cleaned: List[str] = []
        for option in value:
            if isinstance(option, dict):
                option = option.get("text")
            if isinstance(option, str) and option.strip():
                cleaned.append(option.strip())
        return cleaned

    def to_payload(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "options": [{"text": option, "votes": 0} for option in self.options],
            "votedBy": [],
        }


__all__ = [
    "Announcement",
    "AnnouncementDraft",
    "ChecklistDraft",
    "ChecklistItem",
    "CollectionKind",
    "Expense",
    "ExpenseDraft",
    "Poll",
    "PollDraft",
    "PollOption",
    "SessionRecord",
    "parse_amount",
]
