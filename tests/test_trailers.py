"""Tests for title/details/trailer parsing of task text."""

from utask.trailers import Trailer, details, parse, title, trailer_bounds, trailer_drops, trailers

SAMPLE = (
    "Title\n\nBody line 1\nBody line 2\n\n"
    "Co-Authored-By: Jane <jane@example.com>\n"
    "Reviewed-by: Bob <bob@example.com>\n"
)


class TestTitle:

    def test_first_line_trimmed(self):
        assert title("  Fix deploy  \nmore") == "Fix deploy"

    def test_single_line(self):
        assert title("Just this") == "Just this"

    def test_empty(self):
        assert title("") == ""


class TestTrailerBlock:

    def test_details_exclude_trailers(self):
        assert details(SAMPLE) == "Body line 1\nBody line 2"

    def test_trailers_in_order(self):
        assert trailers(SAMPLE) == [
            Trailer("Co-Authored-By", "Jane <jane@example.com>"),
            Trailer("Reviewed-by", "Bob <bob@example.com>"),
        ]

    def test_no_drops(self):
        assert trailer_drops(SAMPLE) == []

    def test_malformed_lines_are_drops(self):
        text = "Title\n\nBody\n\nSigned-off-by: Ann\nnot a trailer line\nBad Key: x\n"
        parsed = parse(text)
        assert parsed.trailers == [Trailer("Signed-off-by", "Ann")]
        assert parsed.drops == ["not a trailer line", "Bad Key: x"]
        assert parsed.details == "Body"

    def test_value_leading_whitespace_stripped(self):
        assert trailers("T\n\nKey:\t  value here") == [Trailer("Key", "value here")]

    def test_empty_value_allowed(self):
        assert trailers("T\n\nRefs:") == [Trailer("Refs", "")]

    def test_no_separating_blank_line_means_no_region(self):
        text = "Title\nCo-Authored-By: Jane"
        assert trailers(text) == []
        assert trailer_drops(text) == []
        assert details(text) == "Co-Authored-By: Jane"

    def test_single_line_text_has_no_region(self):
        assert trailers("Co-Authored-By: Jane") == []

    def test_trailing_blank_lines_skipped(self):
        text = "Title\n\nBody\n\nAcked-by: Kim\n\n\n"
        assert trailers(text) == [Trailer("Acked-by", "Kim")]
        assert details(text) == "Body"

    def test_trailers_directly_after_title(self):
        text = "Title\n\nFixes: 42"
        assert trailers(text) == [Trailer("Fixes", "42")]
        assert details(text) == ""

    def test_final_prose_paragraph_reported_as_drops(self):
        """The last paragraph is the candidate block even when it is prose."""
        text = "Title\n\nFirst paragraph.\n\nSecond paragraph."
        assert trailer_drops(text) == ["Second paragraph."]
        assert details(text) == "First paragraph."


class TestTrailerBounds:

    def test_bounds_for_sample(self):
        lines = SAMPLE.split("\n")
        assert trailer_bounds(lines) == (5, 7)

    def test_all_blank(self):
        assert trailer_bounds(["", "  ", ""]) == (3, 3)

    def test_no_region(self):
        assert trailer_bounds(["a", "b"]) == (2, 2)
