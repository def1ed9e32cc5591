"""
Data types for utask.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from . import trailers as _trailers
from .errors import InvalidInputError
from .trailers import Trailer


def utc_now() -> str:
    """Current UTC timestamp in canonical RFC 3339 form: YYYY-MM-DDTHH:MM:SSZ."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Status(str, Enum):
    """Completion filter for listings."""
    OPEN = "open"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["Status"]:
        """Parse a user-supplied status; None/empty means no filter."""
        if value is None or not value.strip():
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise InvalidInputError(
                f"invalid status: {value!r} (expected 'open' or 'closed')"
            ) from None

    def matches(self, task: "Task") -> bool:
        return task.done is (self is Status.CLOSED)


@dataclass
class Task:
    """
    A task record as stored in the entity collection.

    The id is derived from content (see ``normalize.normalize_input``) and
    never changes, even when the text or tags are later updated.

    Attributes:
        id: 128-character lowercase hex SHA-512 of the canonical content
        text: Free-form text; first line is the title
        done: Completion state
        tags: Normalized tags, sorted
        created: RFC 3339 UTC timestamp, set once at creation
        priority: Optional priority (0 = unset, 1 = highest)
        estimate_minutes: Optional estimate (0 = unset)
    """
    id: str
    text: str
    done: bool = False
    tags: list[str] = field(default_factory=list)
    created: str = ""
    priority: int = 0
    estimate_minutes: int = 0

    # -- Wire format --

    def to_dict(self) -> dict[str, Any]:
        """Entity wire format; zero priority/estimate are omitted."""
        d: dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "done": self.done,
            "tags": list(self.tags),
            "created": self.created,
        }
        if self.priority:
            d["priority"] = self.priority
        if self.estimate_minutes:
            d["estimate_minutes"] = self.estimate_minutes
        return d

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Task":
        return cls(
            id=d["id"],
            text=d.get("text", ""),
            done=bool(d.get("done", False)),
            tags=list(d.get("tags") or []),
            created=d.get("created", ""),
            priority=int(d.get("priority") or 0),
            estimate_minutes=int(d.get("estimate_minutes") or 0),
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> "Task":
        return cls.from_dict(json.loads(raw))

    # -- Presentation --

    @property
    def status(self) -> Status:
        return Status.CLOSED if self.done else Status.OPEN

    @property
    def short(self) -> str:
        """First line of the text, trimmed."""
        return _trailers.title(self.text)

    @property
    def details(self) -> str:
        """Text after the title, excluding any trailer block."""
        return _trailers.details(self.text)

    @property
    def trailers(self) -> list[Trailer]:
        return _trailers.trailers(self.text)

    @property
    def trailer_drops(self) -> list[str]:
        return _trailers.trailer_drops(self.text)


@dataclass
class TaskInput:
    """Creation request. Normalized before the id is derived."""
    text: str
    tags: list[str] = field(default_factory=list)
    priority: int = 0
    estimate_minutes: int = 0


@dataclass
class UpdateSet:
    """
    Sparse patch for ``TaskStore.update``.

    Fields left as None are not touched. ``tags`` replaces the whole tag
    set when given (an empty list clears it).
    """
    text: Optional[str] = None
    done: Optional[bool] = None
    tags: Optional[list[str]] = None
    priority: Optional[int] = None

    def is_empty(self) -> bool:
        return (
            self.text is None
            and self.done is None
            and self.tags is None
            and self.priority is None
        )
