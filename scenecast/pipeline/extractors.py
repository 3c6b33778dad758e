"""Streaming output extractor: synopsis line + HTML payload.

Every call works on the whole accumulated buffer, never on the latest
chunk alone, so it can be called again each time more text arrives.
"""

import logging
import re

from scenecast.models import StreamingResult
from scenecast.prompts import SUMMARY_MARKER

logger = logging.getLogger(__name__)

_HTML_FENCE = re.compile(r"```(?:html|markup)[ \t]*\r?\n?(.*?)(?:```|\Z)", re.IGNORECASE | re.DOTALL)
_DOC_START = re.compile(r"<html[\s>]", re.IGNORECASE)
_DOC_END = "</html>"


class ExtractionError(ValueError):
    """A final stage result failed validation."""


class MissingSummaryMarker(ExtractionError):
    """The stage needed an ACTION_SUMMARY line but the output had none."""


class EmptyGeneration(ExtractionError):
    """The stage produced blank markup or a blank synopsis."""


def _find_doc_start(text: str) -> int:
    match = _DOC_START.search(text)
    if match:
        return match.start()
    # "<html" at the very end of the buffer: the rest of the tag is still coming
    tail = text.lower().rfind("<html")
    if tail != -1 and tail + len("<html") == len(text):
        return tail
    return -1


def extract_markup(text: str) -> str:
    """Pull the HTML document out of raw model output.

    Prefers the inside of a ```html (or ```markup) fence. Within the
    candidate, returns the span from the first <html> to the last </html>;
    from <html> to the end when the closing tag has not arrived yet;
    otherwise the candidate as-is.
    """
    candidate = text.strip()
    fence = _HTML_FENCE.search(candidate)
    if fence:
        candidate = fence.group(1).strip()

    start = _find_doc_start(candidate)
    if start == -1:
        return candidate
    end = candidate.lower().rfind(_DOC_END)
    if end > start:
        return candidate[start:end + len(_DOC_END)]
    return candidate[start:].strip()


def _looks_like_document(markup: str) -> bool:
    return markup[:5].lower() == "<html"


def feed(accumulated_text: str, is_final: bool, stage_uses_marker: bool) -> StreamingResult:
    """Parse the buffer so far into an optional synopsis and a markup payload.

    The synopsis is only looked for when `stage_uses_marker` is set. Until
    the marker line is terminated by a newline the synopsis is None and the
    markup is empty: a half-received marker line is never guessed at.
    """
    text = accumulated_text.lstrip()
    summary: str | None = None
    marker_seen = False
    remainder = text

    if stage_uses_marker and text.startswith(SUMMARY_MARKER):
        marker_seen = True
        newline = text.find("\n", len(SUMMARY_MARKER))
        if newline != -1:
            summary = text[len(SUMMARY_MARKER):newline].strip()
            remainder = text[newline + 1:]
        elif is_final:
            summary = text[len(SUMMARY_MARKER):].strip()
            remainder = ""
        else:
            remainder = ""

    markup = extract_markup(remainder) if remainder else ""

    if is_final:
        displayable = bool(markup.strip())
    else:
        displayable = bool(markup) and (_looks_like_document(markup) or not stage_uses_marker)

    return StreamingResult(
        summary=summary,
        markup=markup,
        is_final=is_final,
        marker_seen=marker_seen,
        displayable=displayable,
    )


def validate(
    result: StreamingResult,
    *,
    marker_required: bool = False,
    markup_required: bool = True,
) -> None:
    """Check a final result before the pipeline acts on it.

    Raises MissingSummaryMarker or EmptyGeneration.
    """
    if marker_required and not result.marker_seen:
        logger.warning("Expected %r prefix not found", SUMMARY_MARKER.strip())
        raise MissingSummaryMarker(f"Expected {SUMMARY_MARKER.strip()} prefix not found")
    if result.marker_seen and marker_required and not (result.summary or "").strip():
        logger.warning("%s prefix found but summary was blank", SUMMARY_MARKER.strip())
        raise EmptyGeneration("Summary marker found but the summary was blank")
    if markup_required and not result.markup.strip():
        logger.warning("Generation produced no markup")
        raise EmptyGeneration("Generation produced no markup")
