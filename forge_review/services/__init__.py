"""
Services Package

This package contains the service modules of the reviewer:
- diff_parser: unified diff parsing and rendering
- commit_tracker: incremental review scope
- review_tags: comment tag convention and statistics
- decoders: reviewer output decoding
- reviewer: Reviewer capability and OpenAI backend
- store: review job persistence
"""

from forge_review.services.commit_tracker import commits_after, determine_scope, last_reviewed_commit
from forge_review.services.decoders import ResponseParseError, decode_review_output
from forge_review.services.diff_parser import DiffParser, get_diff_parser
from forge_review.services.review_tags import ReviewStats, extract_description, format_tag, parse_tag
from forge_review.services.reviewer import OpenAIReviewer, Reviewer, ReviewerError
from forge_review.services.store import InMemoryReviewStore, ReviewStore

__all__ = [
    "DiffParser",
    "InMemoryReviewStore",
    "OpenAIReviewer",
    "ResponseParseError",
    "ReviewStats",
    "ReviewStore",
    "Reviewer",
    "ReviewerError",
    "commits_after",
    "decode_review_output",
    "determine_scope",
    "extract_description",
    "format_tag",
    "get_diff_parser",
    "last_reviewed_commit",
    "parse_tag",
]
