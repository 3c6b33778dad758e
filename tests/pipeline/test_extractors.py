"""Tests for the streaming extractor: marker line, fences, partial documents,
display policy and final validation."""

import pytest

from scenecast.pipeline import (
    EmptyGeneration,
    MissingSummaryMarker,
    extract_markup,
    feed,
    validate,
)


# ── extract_markup ───────────────────────────────────────────


def test_extract_full_document_trims_surroundings():
    text = "Sure! Here is the scene:\n<html><body>X</body></html>\nEnjoy."
    assert extract_markup(text) == "<html><body>X</body></html>"


def test_extract_html_fence():
    text = "Here you go:\n```html\n<html>X</html>\n```\nAnything else?"
    assert extract_markup(text) == "<html>X</html>"


def test_extract_markup_fence():
    text = "prose first\n```markup\n<html>X</html>\n```"
    assert extract_markup(text) == "<html>X</html>"


def test_extract_fence_is_case_insensitive():
    assert extract_markup("```HTML\n<HTML>X</HTML>\n```") == "<HTML>X</HTML>"


def test_extract_unterminated_fence_while_streaming():
    assert extract_markup("```html\n<html><body>hal") == "<html><body>hal"


def test_extract_partial_document():
    assert extract_markup("<html>partial") == "<html>partial"


def test_extract_start_tag_with_attributes():
    text = 'junk <html lang="en"><body>X</body></html> junk'
    assert extract_markup(text) == '<html lang="en"><body>X</body></html>'


def test_extract_outermost_span():
    text = "<html>a</html> between <html>b</html>"
    assert extract_markup(text) == "<html>a</html> between <html>b</html>"


def test_extract_fragment_unchanged():
    assert extract_markup("<h1>Title</h1><p>Text</p>") == "<h1>Title</h1><p>Text</p>"


def test_extract_does_not_mistake_htmlish_tags():
    assert extract_markup("<htmlfoo>x") == "<htmlfoo>x"


# ── feed: marker handling ────────────────────────────────────


def test_feed_marker_and_document():
    result = feed("ACTION_SUMMARY: foo\n<html>X</html>", True, True)
    assert result.summary == "foo"
    assert result.markup == "<html>X</html>"
    assert result.marker_seen is True
    assert result.is_final is True


def test_feed_marker_line_incomplete_is_not_guessed():
    result = feed("ACTION_SUMMARY: opened the d", False, True)
    assert result.summary is None
    assert result.markup == ""
    assert result.marker_seen is True
    assert result.displayable is False


def test_feed_marker_only_at_final_takes_whole_line():
    result = feed("ACTION_SUMMARY: opened the door", True, True)
    assert result.summary == "opened the door"
    assert result.markup == ""


def test_feed_marker_with_trailing_newline():
    result = feed("ACTION_SUMMARY: opened the door\n", True, True)
    assert result.summary == "opened the door"
    assert result.markup == ""


def test_feed_leading_whitespace_before_marker():
    result = feed("\n  ACTION_SUMMARY: foo\n<html>X</html>", True, True)
    assert result.summary == "foo"


def test_feed_marker_ignored_when_stage_does_not_use_it():
    result = feed("ACTION_SUMMARY: foo\n<html>X</html>", True, False)
    assert result.summary is None
    assert result.marker_seen is False
    assert result.markup == "<html>X</html>"


def test_feed_no_marker():
    result = feed("<html>X</html>", True, True)
    assert result.marker_seen is False
    assert result.summary is None
    assert result.markup == "<html>X</html>"


# ── feed: display policy ─────────────────────────────────────


def test_partial_document_is_displayable():
    result = feed("<html>partial", False, False)
    assert result.markup == "<html>partial"
    assert result.displayable is True
    assert result.is_final is False


def test_partial_after_marker_displayable_once_document_starts():
    result = feed("ACTION_SUMMARY: foo\n<html><body>Hal", False, True)
    assert result.summary == "foo"
    assert result.displayable is True


def test_marker_stage_hides_scaffolding():
    # Neither the half-typed marker nor prose before the document is shown
    assert feed("ACTION_SUMM", False, True).displayable is False
    assert feed("ACTION_SUMMARY: foo\nHere is", False, True).displayable is False


def test_non_marker_stage_shows_fragments():
    result = feed("<h1>Analysis", False, False)
    assert result.displayable is True


def test_empty_buffer_not_displayable():
    assert feed("", False, False).displayable is False


# ── validate ─────────────────────────────────────────────────


def test_validate_blank_markup():
    with pytest.raises(EmptyGeneration):
        validate(feed("   ", True, False))


def test_validate_missing_marker():
    with pytest.raises(MissingSummaryMarker):
        validate(feed("Player opened the door.", True, True),
                 marker_required=True, markup_required=False)


def test_validate_blank_summary():
    with pytest.raises(EmptyGeneration):
        validate(feed("ACTION_SUMMARY:   \n", True, True),
                 marker_required=True, markup_required=False)


def test_validate_summary_only_stage_passes_without_markup():
    result = feed("ACTION_SUMMARY: opened the door\n", True, True)
    validate(result, marker_required=True, markup_required=False)


def test_validate_optional_marker_stage():
    # initial_scene: marker optional, markup required
    validate(feed("<html>Start</html>", True, True))


def test_missing_marker_and_empty_generation_are_value_errors():
    assert issubclass(MissingSummaryMarker, ValueError)
    assert issubclass(EmptyGeneration, ValueError)
