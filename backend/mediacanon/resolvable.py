"""
resolvable.py

Three-state value for enrichment fields that are fetched lazily from the
detail API: never checked, checked and found, checked and nothing there.

The store keeps all three in one nullable text column. `ResolvableText`
converts at the column boundary so the rest of the code only ever sees a
`FieldState`; the sentinel strings never leave this module.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import String, cast, or_
from sqlalchemy.types import Text, TypeDecorator

# Title posters and episode stills use different markers so their negative
# results can be told apart (and expired on different schedules).
TITLE_IMAGE_NOT_FOUND = "none"
EPISODE_IMAGE_NOT_FOUND = "TMDB_NOT_FOUND_DO_NOT_RETRY"


class Resolution(str, enum.Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class FieldState:
    status: Resolution
    value: Optional[str] = None

    @classmethod
    def unresolved(cls) -> "FieldState":
        return cls(Resolution.UNRESOLVED)

    @classmethod
    def not_found(cls) -> "FieldState":
        return cls(Resolution.NOT_FOUND)

    @classmethod
    def resolved(cls, value: Optional[str]) -> "FieldState":
        if not value:
            return cls.unresolved()
        return cls(Resolution.RESOLVED, value)

    @classmethod
    def of(cls, raw: Union["FieldState", str, None]) -> "FieldState":
        """Normalise an ORM attribute that may not have round-tripped the column yet."""
        if isinstance(raw, FieldState):
            return raw
        return cls.resolved(raw)

    @property
    def is_unresolved(self) -> bool:
        return self.status is Resolution.UNRESOLVED

    @property
    def is_resolved(self) -> bool:
        return self.status is Resolution.RESOLVED

    @property
    def is_not_found(self) -> bool:
        return self.status is Resolution.NOT_FOUND

    def or_none(self) -> Optional[str]:
        """The value callers may render: a real URL or nothing."""
        return self.value if self.is_resolved else None

    # --- persistence boundary -------------------------------------------

    @classmethod
    def from_storage(cls, raw: Optional[str], sentinel: str) -> "FieldState":
        if raw is None or raw == "":
            return cls.unresolved()
        if raw == sentinel:
            return cls.not_found()
        return cls(Resolution.RESOLVED, raw)

    def to_storage(self, sentinel: str) -> Optional[str]:
        if self.is_not_found:
            return sentinel
        if self.is_resolved:
            return self.value
        return None


class ResolvableText(TypeDecorator):
    """Text column holding a `FieldState`, with `sentinel` marking NOT_FOUND."""

    impl = Text
    cache_ok = True

    def __init__(self, sentinel: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sentinel = sentinel

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return FieldState.of(value).to_storage(self.sentinel)

    def process_result_value(self, value, dialect):
        return FieldState.from_storage(value, self.sentinel)

    def copy(self, **kw):
        return ResolvableText(self.sentinel)


def unresolved_clause(column):
    """SQL filter for rows whose `column` reads back as UNRESOLVED (NULL or empty)."""
    # Compared as plain text: binding "" through ResolvableText would turn it into NULL
    return or_(column.is_(None), cast(column, String) == "")
