"""
Input canonicalization and content-derived task ids.

A task id is the SHA-512 of a canonical JSON rendering of the task's
semantic content::

    {"text": ..., "tags": [...], "priority": N, "estimate_minutes": N}

Text is trimmed, tags are lowercased, trimmed, deduplicated and sorted.
No timestamp or random nonce goes into the hash, so creating the same task
twice (in any tag order or case) yields the same id. That is what makes
``TaskStore.create`` idempotent.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Iterable

from .types import TaskInput

ID_LENGTH = 128
_FULL_ID_RE = re.compile(r'^[0-9a-f]{128}$')

# Hashed JSON escapes these as \uXXXX; existing ids depend on the exact bytes.
_HTML_SAFE = str.maketrans({
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
})


@dataclass(frozen=True)
class CanonicalTask:
    """The fields that determine a task's identity, in hash order."""
    text: str
    tags: list[str] = field(default_factory=list)
    priority: int = 0
    estimate_minutes: int = 0

    def to_json(self) -> str:
        # Field order is part of the id contract; do not reorder
        raw = json.dumps(
            {
                "text": self.text,
                "tags": self.tags,
                "priority": self.priority,
                "estimate_minutes": self.estimate_minutes,
            },
            ensure_ascii=False,
            separators=(",", ":"),
        )
        return raw.translate(_HTML_SAFE)


def normalize_tags(tags: Iterable[str] | None) -> list[str]:
    """Lowercase, trim, drop empties and dedupe, keeping first-seen order."""
    seen: set[str] = set()
    out: list[str] = []
    for tag in tags or ():
        tag = tag.strip().lower()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return out


def canonical_tags(tags: Iterable[str] | None) -> list[str]:
    """Normalized tags in sorted order (storage form)."""
    return sorted(normalize_tags(tags))


def derive_id(canonical: CanonicalTask) -> str:
    """Hex SHA-512 of the canonical JSON."""
    return hashlib.sha512(canonical.to_json().encode("utf-8")).hexdigest()


def normalize_input(task_input: TaskInput) -> tuple[CanonicalTask, str]:
    """Canonicalize a creation request and derive its id."""
    canonical = CanonicalTask(
        text=task_input.text.strip(),
        tags=canonical_tags(task_input.tags),
        priority=int(task_input.priority or 0),
        estimate_minutes=int(task_input.estimate_minutes or 0),
    )
    return canonical, derive_id(canonical)


def is_full_id(value: str) -> bool:
    """True if value looks like a complete task id."""
    return bool(_FULL_ID_RE.match(value))
