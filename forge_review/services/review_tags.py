"""
Review Tag Module

Review comments carry a machine-readable ``**[CATEGORY:SEVERITY]**`` prefix
and may embed a fenced ``suggestion`` block that forges render as an
appliable patch. This module parses and formats that convention and
aggregates tagged comments into review statistics.
"""

import re
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from forge_review.logging_config import get_logger
from forge_review.models import (
    Comment,
    IssueRecord,
    LineComment,
    ReviewCategory,
    ReviewSeverity,
    ReviewTag,
)

logger = get_logger(__name__)

TAG_PATTERN = re.compile(r"^\s*(?:\*\*)?\[([A-Z]+):([A-Z]+)\](?:\*\*)?")
STRIP_TAG_PATTERN = re.compile(r"\*?\*?\[[A-Z]+:[A-Z]+\]\*?\*?\s*")
SUGGESTION_BLOCK_PATTERN = re.compile(r"```suggestion[\s\S]*?```")
SUGGESTION_FENCE = "```suggestion"

MAX_DESCRIPTION_LENGTH = 100
NO_DESCRIPTION = "(no description)"
MAX_ISSUE_RECORDS = 200

SEVERITY_WEIGHTS = {
    ReviewSeverity.CRITICAL: 10,
    ReviewSeverity.HIGH: 5,
    ReviewSeverity.MEDIUM: 2,
    ReviewSeverity.LOW: 1,
}

_CATEGORIES = {c.value: c for c in ReviewCategory}
_SEVERITIES = {s.value: s for s in ReviewSeverity}


def parse_tag(body: str) -> Optional[ReviewTag]:
    """
    Parse the leading ``[CATEGORY:SEVERITY]`` tag of a comment body.

    An optional ``**`` bold wrapper is accepted. A bracket whose category or
    severity is outside the known vocabulary counts as no tag at all, so
    ``[NOPE:HIGH]`` parses to None rather than raising.
    """
    if not body:
        return None

    match = TAG_PATTERN.match(body)
    if not match:
        return None

    category = _CATEGORIES.get(match.group(1))
    severity = _SEVERITIES.get(match.group(2))
    if category is None or severity is None:
        return None

    return ReviewTag(category=category, severity=severity)


def format_tag(category: ReviewCategory, severity: ReviewSeverity) -> str:
    """Format a tag the way comment bodies carry it: ``**[BUG:HIGH]**``."""
    return f"**[{ReviewCategory(category).value}:{ReviewSeverity(severity).value}]**"


def format_comment_body(body: str, suggestion: Optional[str] = None) -> str:
    """Append a fenced ``suggestion`` block to a comment body."""
    if not suggestion:
        return body

    return f"{body.rstrip()}\n\n{SUGGESTION_FENCE}\n{suggestion}\n```\n"


def has_suggestion(body: str) -> bool:
    return SUGGESTION_FENCE in body


def extract_description(body: str) -> str:
    """
    Get a short human-readable description from a tagged comment body.

    Strips the tag and any suggestion block, then truncates to
    ``MAX_DESCRIPTION_LENGTH`` characters with a trailing ``...``.
    """
    cleaned = STRIP_TAG_PATTERN.sub("", body).strip()
    cleaned = SUGGESTION_BLOCK_PATTERN.sub("", cleaned).strip()

    if len(cleaned) > MAX_DESCRIPTION_LENGTH:
        return cleaned[:MAX_DESCRIPTION_LENGTH - 3] + "..."

    return cleaned or NO_DESCRIPTION


class ReviewStats(BaseModel):
    """
    Running statistics over review comments.

    Counts are keyed by enum value so the model serializes cleanly.
    """
    total_reviews: int = 0
    total_comments: int = 0
    suggestions: int = 0
    untagged_comments: int = 0
    by_category: Dict[str, int] = Field(
        default_factory=lambda: {c.value: 0 for c in ReviewCategory}
    )
    by_severity: Dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in ReviewSeverity}
    )
    by_category_severity: Dict[str, int] = Field(default_factory=dict)
    by_file: Dict[str, int] = Field(default_factory=dict)
    timeline: Dict[str, int] = Field(
        default_factory=dict,
        description="Comment counts keyed by ISO date (YYYY-MM-DD)"
    )
    issues: List[IssueRecord] = Field(default_factory=list)
    max_issues: int = MAX_ISSUE_RECORDS

    def add_comment(
        self,
        body: str,
        path: Optional[str] = None,
        when: Optional[datetime] = None
    ) -> Optional[ReviewTag]:
        """
        Account for one comment body.

        ``when`` places the comment on the timeline; undated comments are
        counted everywhere else.

        Returns:
            The parsed tag, or None if the comment was untagged
        """
        self.total_comments += 1

        suggestion = has_suggestion(body)
        if suggestion:
            self.suggestions += 1

        if path:
            self.by_file[path] = self.by_file.get(path, 0) + 1

        if when is not None:
            day = when.date().isoformat()
            self.timeline[day] = self.timeline.get(day, 0) + 1

        tag = parse_tag(body)
        if tag is None:
            self.untagged_comments += 1
            return None

        self.by_category[tag.category.value] += 1
        self.by_severity[tag.severity.value] += 1
        key = f"{tag.category.value}:{tag.severity.value}"
        self.by_category_severity[key] = self.by_category_severity.get(key, 0) + 1

        if len(self.issues) < self.max_issues:
            self.issues.append(IssueRecord(
                category=tag.category,
                severity=tag.severity,
                file=path or "(summary)",
                description=extract_description(body),
                has_suggestion=suggestion,
            ))

        return tag

    def add_line_comments(self, comments: Iterable[LineComment]) -> None:
        for comment in comments:
            self.add_comment(format_comment_body(comment.body, comment.suggestion), comment.path)

    @property
    def weighted_issue_total(self) -> int:
        return sum(
            self.by_severity[severity.value] * weight
            for severity, weight in SEVERITY_WEIGHTS.items()
        )

    @property
    def health_score(self) -> int:
        """100 minus the severity-weighted issue count, floored at 0."""
        return max(0, 100 - self.weighted_issue_total)


def stats_for_comments(comments: Iterable[LineComment]) -> ReviewStats:
    """Build statistics for comments about to be submitted."""
    stats = ReviewStats()
    stats.add_line_comments(comments)
    return stats


async def collect_pull_request_stats(provider, owner: str, repo: str, number: int) -> ReviewStats:
    """
    Aggregate tagged comments across every review of a pull request.

    Args:
        provider: ForgeProvider to read reviews and review comments from
        owner: Repository owner
        repo: Repository name
        number: Pull request number

    Returns:
        ReviewStats over all review bodies and line comments
    """
    stats = ReviewStats()
    reviews = await provider.get_pull_request_reviews(owner, repo, number)

    for review in reviews:
        stats.total_reviews += 1
        if review.body:
            stats.add_comment(review.body, when=review.submitted_at)

        comments: List[Comment] = await provider.get_review_comments(owner, repo, number, review.id)
        for comment in comments:
            stats.add_comment(
                comment.body,
                comment.path,
                when=comment.created_at or review.submitted_at
            )

    logger.info(
        "Collected review stats",
        repo=f"{owner}/{repo}",
        pr_number=number,
        total_reviews=stats.total_reviews,
        total_comments=stats.total_comments,
        health_score=stats.health_score
    )

    return stats
