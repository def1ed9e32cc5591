"""
Git-style short id resolution.
"""

from typing import Iterable

from .errors import AmbiguousPrefixError, InvalidInputError, NotFoundError

# Advisory only: the CLI prints ids at this length. Any non-empty prefix
# is accepted by match_prefix.
RECOMMENDED_PREFIX_LENGTH = 8


def match_prefix(ids: Iterable[str], prefix: str) -> str:
    """Resolve a (possibly shortened) id against the full id space.

    Raises:
        InvalidInputError: prefix is empty
        NotFoundError: no id starts with prefix
        AmbiguousPrefixError: two or more ids start with prefix; the
            sorted matches are in ``candidates``
    """
    prefix = (prefix or "").strip()
    if not prefix:
        raise InvalidInputError("empty id prefix")

    matches = sorted({i for i in ids if i.startswith(prefix)})
    if not matches:
        raise NotFoundError(f"no task matches {prefix!r}")
    if len(matches) > 1:
        raise AmbiguousPrefixError(prefix, matches)
    return matches[0]


def short_id(id: str, length: int = RECOMMENDED_PREFIX_LENGTH) -> str:
    return id[:length]
