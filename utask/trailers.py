"""
Git-style trailer parsing for task text.

A task's text is free-form: the first line is the title, the rest is the
body. A trailing paragraph of ``Key: Value`` lines, separated from the body
by at least one blank line, is a trailer block (the same convention Git uses
for ``Co-Authored-By:`` and friends)::

    Fix the deploy script

    The staging host changed names.

    Co-Authored-By: Jane <jane@example.com>
    Reviewed-by: Bob <bob@example.com>

Lines in that final paragraph that are not well-formed trailers are
"drops": they are excluded from the details and reported separately so
``ut check`` can flag them.
"""

import re
from typing import NamedTuple


class Trailer(NamedTuple):
    """A parsed ``Key: Value`` trailer line."""
    key: str
    value: str


class ParsedText(NamedTuple):
    """Task text split into its display parts."""
    title: str
    details: str
    trailers: list[Trailer]
    drops: list[str]


# Key: letters, digits, hyphen. Value: everything after the colon, leading
# spaces/tabs stripped.
_TRAILER_RE = re.compile(r'^([A-Za-z0-9-]+):[ \t]*(.*)$')


def _is_blank(line: str) -> bool:
    return not line.strip()


def title(text: str) -> str:
    """First line of the text, trimmed."""
    return text.split("\n", 1)[0].strip()


def parse_trailer_line(line: str) -> Trailer | None:
    """Parse one ``Key: Value`` line, or return None if it is malformed."""
    m = _TRAILER_RE.match(line)
    if not m:
        return None
    return Trailer(m.group(1), m.group(2))


def trailer_bounds(lines: list[str]) -> tuple[int, int]:
    """Locate the trailer region as a half-open ``(start, end)`` line range.

    Skips trailing blank lines, then walks up the contiguous non-blank run.
    That run is a trailer region only if a blank line precedes it. Returns
    ``(len(lines), len(lines))`` when there is no region.
    """
    n = len(lines)
    end = n
    while end > 0 and _is_blank(lines[end - 1]):
        end -= 1
    if end == 0:
        return n, n

    start = end
    while start > 0 and not _is_blank(lines[start - 1]):
        start -= 1
    if start == 0:
        # Nothing separates the run from the top of the text
        return n, n
    return start, end


def _trim_blank_lines(lines: list[str]) -> str:
    start, end = 0, len(lines)
    while start < end and _is_blank(lines[start]):
        start += 1
    while end > start and _is_blank(lines[end - 1]):
        end -= 1
    return "\n".join(lines[start:end])


def parse(text: str) -> ParsedText:
    """Split task text into title, details, trailers and dropped lines."""
    lines = text.split("\n")
    start, end = trailer_bounds(lines)

    trailers: list[Trailer] = []
    drops: list[str] = []
    for line in lines[start:end]:
        trailer = parse_trailer_line(line)
        if trailer is not None:
            trailers.append(trailer)
        elif not _is_blank(line):
            drops.append(line)

    # The title line is never part of the region (a blank line precedes it)
    body = lines[1:start] if start < len(lines) else lines[1:]
    return ParsedText(
        title=title(text),
        details=_trim_blank_lines(body),
        trailers=trailers,
        drops=drops,
    )


def details(text: str) -> str:
    """Body of the text: everything after the title, minus any trailer block."""
    return parse(text).details


def trailers(text: str) -> list[Trailer]:
    """Trailers in top-to-bottom order."""
    return parse(text).trailers


def trailer_drops(text: str) -> list[str]:
    """Raw lines of the trailer block that are not valid trailers."""
    return parse(text).drops
