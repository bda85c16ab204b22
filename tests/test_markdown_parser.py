"""Tests for the markdown note format."""

import datetime

import pytest

from notevault.storage.markdown_parser import MarkdownParser
from tests.fakes import at, make_note


@pytest.fixture
def parser():
    return MarkdownParser()


class TestRenderAndParse:
    def test_roundtrip_preserves_fields(self, parser):
        note = make_note(
            title="Trip plan",
            content="# Trip plan\n\n- pack\n- go",
            tags=["travel", "todo"],
            notebook_id="nb7",
            is_pinned=True,
            updated_at=at(30),
            revision="4-abcdef",
            metadata={"source": "phone", "rating": 5},
        )

        parsed = parser.parse_note(parser.render_to_markdown(note))

        assert parsed == note

    def test_optional_flags_omitted_when_unset(self, parser):
        text = parser.render_to_markdown(make_note())
        for key in ("pinned:", "trashed:", "revision:", "notebook:"):
            assert key not in text

    def test_metadata_cannot_shadow_reserved_keys(self, parser):
        note = make_note(metadata={"title": "spoofed", "extra": 1})
        parsed = parser.parse_note(parser.render_to_markdown(note))
        assert parsed.title == "Note n1"
        assert parsed.metadata == {"extra": 1}


class TestParseHandWritten:
    def test_title_from_heading(self, parser):
        parsed = parser.parse_note("---\nid: abc\n---\n\n# From Heading\n\nText")
        assert parsed.title == "From Heading"

    def test_untitled_fallback(self, parser):
        assert parser.parse_note("---\nid: abc\n---\nplain text").title == "Untitled"

    def test_missing_id_rejected(self, parser):
        with pytest.raises(ValueError):
            parser.parse_note("---\ntitle: No id\n---\nText")

    def test_comma_separated_tags(self, parser):
        parsed = parser.parse_note("---\nid: abc\ntags: one, two ,, three\n---\n")
        assert parsed.tags == ["one", "two", "three"]

    def test_unquoted_yaml_timestamps(self, parser):
        parsed = parser.parse_note(
            "---\nid: abc\ncreated: 2024-03-01 10:00:00\nupdated: 2024-03-02\n---\nx"
        )
        utc = datetime.timezone.utc
        assert parsed.created_at == datetime.datetime(2024, 3, 1, 10, 0, tzinfo=utc)
        assert parsed.updated_at == datetime.datetime(2024, 3, 2, tzinfo=utc)

    def test_updated_defaults_to_created(self, parser):
        parsed = parser.parse_note("---\nid: abc\ncreated: '2024-03-01T10:00:00+00:00'\n---\n")
        assert parsed.updated_at == parsed.created_at

    def test_body_whitespace_trimmed(self, parser):
        parsed = parser.parse_note("---\nid: abc\n---\n\n\n  body  \n\n")
        assert parsed.content == "body"
