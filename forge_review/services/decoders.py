"""
Reviewer Output Decoders

Turns whatever the Reviewer returns into a ``ReviewOutcome``.

Design Decisions:
- Decoders share one interface and are tried in order; structured JSON
  first, free-text markdown as the last resort
- A single decoder signals failure with ``ResponseParseError``; the chain
  never raises and falls back to a plain COMMENT with no line comments
- Invalid individual comments are skipped, not fatal
"""

import json
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from pydantic import ValidationError

from forge_review.logging_config import get_logger
from forge_review.models import (
    LineComment,
    ReviewCategory,
    ReviewDecision,
    ReviewOutcome,
    ReviewSeverity,
)
from forge_review.services.review_tags import format_tag, parse_tag

logger = get_logger(__name__)

RawReview = Union[str, Dict[str, Any], ReviewOutcome]

FALLBACK_SUMMARY = "Automated review completed, but the reviewer output could not be parsed."

JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*\n([\s\S]*?)\n```", re.IGNORECASE)
DECISION_LINE_PATTERN = re.compile(
    r"\*{0,2}Decision\*{0,2}\s*[:：]\s*\*{0,2}\s*`?([A-Za-z_ ]+?)`?\s*\*{0,2}\s*$",
    re.IGNORECASE | re.MULTILINE
)
SUMMARY_SECTION_PATTERN = re.compile(
    r"^#{2,3}\s*Summary\s*\n([\s\S]*?)(?=\n#{2,3}\s|\Z)",
    re.IGNORECASE | re.MULTILINE
)
COMMENT_LINE_PATTERN = re.compile(
    r"^\s*[-*]\s+`?(?P<path>[^\s`:]+):(?P<side>[LR])?(?P<line>\d+)`?\s*[-:]\s*(?P<body>\S.*)$",
    re.MULTILINE
)

_DECISION_ALIASES = {
    "APPROVE": ReviewDecision.APPROVED,
    "APPROVED": ReviewDecision.APPROVED,
    "LGTM": ReviewDecision.APPROVED,
    "REQUEST_CHANGES": ReviewDecision.REQUEST_CHANGES,
    "REQUEST CHANGES": ReviewDecision.REQUEST_CHANGES,
    "CHANGES_REQUESTED": ReviewDecision.REQUEST_CHANGES,
    "COMMENT": ReviewDecision.COMMENT,
}


class ResponseParseError(Exception):
    """Raised by a decoder that cannot make sense of the reviewer output."""
    pass


class ResponseDecoder(Protocol):
    """Turns raw reviewer output into a ``ReviewOutcome`` or raises ``ResponseParseError``."""

    name: str

    def decode(self, raw: RawReview) -> ReviewOutcome: ...


def normalize_decision(value: Any) -> ReviewDecision:
    """Map loose decision spellings onto the canonical enum; unknown means COMMENT."""
    if isinstance(value, ReviewDecision):
        return value
    key = str(value or "").strip().upper().replace("-", "_")
    return _DECISION_ALIASES.get(key, _DECISION_ALIASES.get(key.replace("_", " "), ReviewDecision.COMMENT))


class JsonResponseDecoder:
    """
    Decoder for structured output.

    Accepts a ``ReviewOutcome``, a dict, JSON text, or JSON inside a fenced
    code block. Expected shape::

        {
          "decision": "APPROVED" | "REQUEST_CHANGES" | "COMMENT",
          "summary": "...",
          "comments": [
            {"path": "a.py", "new_line": 12, "body": "...",
             "category": "BUG", "severity": "HIGH", "suggestion": "..."}
          ]
        }

    ``line`` is accepted as an alias of ``new_line`` (``side: "LEFT"`` makes
    it an old-side line). When category and severity are given and the body
    is not already tagged, the tag is prefixed.
    """

    name = "json"

    def decode(self, raw: RawReview) -> ReviewOutcome:
        if isinstance(raw, ReviewOutcome):
            return raw

        data = raw if isinstance(raw, dict) else self._load(raw)
        if not isinstance(data, dict):
            raise ResponseParseError("Structured review output must be a JSON object")

        comments: List[LineComment] = []
        for item in data.get("comments") or data.get("reviews") or []:
            comment = self._decode_comment(item)
            if comment is not None:
                comments.append(comment)

        return ReviewOutcome(
            decision=normalize_decision(data.get("decision")),
            summary=str(data.get("summary") or "").strip(),
            comments=comments,
        )

    def _load(self, raw: Any) -> Any:
        if not isinstance(raw, str) or not raw.strip():
            raise ResponseParseError("Empty reviewer output")

        text = raw.strip()
        fenced = JSON_FENCE_PATTERN.search(text)
        if fenced:
            text = fenced.group(1)

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Invalid JSON: {e}") from e

    def _decode_comment(self, item: Any) -> Optional[LineComment]:
        if not isinstance(item, dict):
            return None

        new_line = item.get("new_line")
        old_line = item.get("old_line")
        if new_line is None and old_line is None and item.get("line") is not None:
            if str(item.get("side", "RIGHT")).upper() == "LEFT":
                old_line = item["line"]
            else:
                new_line = item["line"]

        body = str(item.get("body") or item.get("issue") or "").strip()
        body = self._with_tag(body, item.get("category"), item.get("severity"))

        try:
            return LineComment(
                path=str(item.get("path") or item.get("file") or ""),
                new_line=new_line,
                old_line=old_line,
                body=body,
                suggestion=item.get("suggestion") or None,
            )
        except ValidationError as e:
            logger.warning(
                "Skipping invalid review comment",
                error=str(e),
                path=item.get("path") or item.get("file")
            )
            return None

    def _with_tag(self, body: str, category: Any, severity: Any) -> str:
        if not body or parse_tag(body) is not None or not category or not severity:
            return body
        try:
            tag = format_tag(ReviewCategory(str(category).upper()), ReviewSeverity(str(severity).upper()))
        except ValueError:
            return body
        return f"{tag} {body}"


class MarkdownResponseDecoder:
    """
    Last-resort decoder for free-text output.

    Looks for a ``Decision: X`` line, a ``## Summary`` section and bullet
    lines of the form ``- path/to/file.py:42: comment`` (``:L42`` for the
    old side). Without a summary section the whole text is the summary.
    """

    name = "markdown"

    def decode(self, raw: RawReview) -> ReviewOutcome:
        if not isinstance(raw, str) or not raw.strip():
            raise ResponseParseError("Markdown decoder needs non-empty text")

        text = raw.strip()
        summary_match = SUMMARY_SECTION_PATTERN.search(text)
        summary = summary_match.group(1).strip() if summary_match else text

        comments: List[LineComment] = []
        for match in COMMENT_LINE_PATTERN.finditer(text):
            line = int(match.group("line"))
            if line < 1:
                continue
            old_side = match.group("side") == "L"
            comments.append(LineComment(
                path=match.group("path"),
                new_line=None if old_side else line,
                old_line=line if old_side else None,
                body=match.group("body").strip(),
            ))

        return ReviewOutcome(
            decision=self._decision(text),
            summary=summary,
            comments=comments,
        )

    def _decision(self, text: str) -> ReviewDecision:
        explicit = DECISION_LINE_PATTERN.search(text)
        if explicit:
            return normalize_decision(explicit.group(1))
        if "REQUEST_CHANGES" in text:
            return ReviewDecision.REQUEST_CHANGES
        if "APPROVED" in text:
            return ReviewDecision.APPROVED
        return ReviewDecision.COMMENT


DEFAULT_DECODERS: Sequence[ResponseDecoder] = (JsonResponseDecoder(), MarkdownResponseDecoder())


def decode_review_output(
    raw: RawReview,
    decoders: Sequence[ResponseDecoder] = DEFAULT_DECODERS
) -> ReviewOutcome:
    """
    Run the decoder chain over reviewer output.

    Returns:
        The first successful decoding, or a COMMENT outcome without line
        comments when every decoder gives up
    """
    for decoder in decoders:
        try:
            outcome = decoder.decode(raw)
        except ResponseParseError as e:
            logger.debug("Decoder rejected reviewer output", decoder=decoder.name, error=str(e))
            continue

        logger.debug(
            "Decoded reviewer output",
            decoder=decoder.name,
            decision=outcome.decision.value,
            comments=len(outcome.comments)
        )
        return outcome

    logger.warning("No decoder accepted reviewer output, falling back to COMMENT")
    return ReviewOutcome(decision=ReviewDecision.COMMENT, summary=FALLBACK_SUMMARY, comments=[])
