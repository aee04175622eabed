"""Per-kind description of the four shared collections."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from tripmates.errors import ValidationError
from tripmates.schemas import (
    Announcement,
    AnnouncementDraft,
    ChecklistDraft,
    ChecklistItem,
    CollectionKind,
    Expense,
    ExpenseDraft,
    Poll,
    PollDraft,
    SessionRecord,
)


def _describe_errors(exc: PydanticValidationError) -> list[str]:
    problems = []
    for error in exc.errors():
        message = str(error.get("msg") or "invalid value")
        message = message.removeprefix("Value error, ")
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {message}" if location else message)
    return problems


@dataclass(frozen=True, slots=True)
class CollectionDefinition:
    """Validation rule and record shape for one collection kind."""

    kind: CollectionKind
    draft_model: Type[BaseModel]
    record_model: Type[SessionRecord]

    def validate_draft(self, payload: Mapping[str, Any] | BaseModel) -> Dict[str, Any]:
        """Return the wire payload for ``payload`` or raise :class:`ValidationError`."""

        if isinstance(payload, self.draft_model):
            draft = payload
        else:
            data = payload.model_dump() if isinstance(payload, BaseModel) else payload
            try:
                draft = self.draft_model.model_validate(data)
            except PydanticValidationError as exc:
                problems = _describe_errors(exc)
                raise ValidationError(
                    f"Invalid {self.kind.value} payload: {'; '.join(problems)}",
                    problems=problems,
                ) from exc
        return draft.to_payload()  # type: ignore[attr-defined]

    def parse_record(self, document: Mapping[str, Any]) -> SessionRecord:
        return self.record_model.model_validate(document)


COLLECTIONS: Dict[CollectionKind, CollectionDefinition] = {
    CollectionKind.CHECKLIST: CollectionDefinition(CollectionKind.CHECKLIST, ChecklistDraft, ChecklistItem),
    CollectionKind.EXPENSES: CollectionDefinition(CollectionKind.EXPENSES, ExpenseDraft, Expense),
    CollectionKind.ANNOUNCEMENTS: CollectionDefinition(
        CollectionKind.ANNOUNCEMENTS, AnnouncementDraft, Announcement
    ),
    CollectionKind.POLLS: CollectionDefinition(CollectionKind.POLLS, PollDraft, Poll),
}


def definition_for(kind: CollectionKind | str) -> CollectionDefinition:
    return COLLECTIONS[CollectionKind(kind)]


__all__ = ["COLLECTIONS", "CollectionDefinition", "definition_for"]
