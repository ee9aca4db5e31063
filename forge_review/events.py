"""
Webhook Event Helpers

Provider-neutral logic over canonical webhook events: comment trigger
extraction and the decision whether an event should start a review.
"""

import re
from functools import lru_cache
from typing import FrozenSet, Iterable, Tuple

from forge_review.models import (
    PullRequestClosedEvent,
    PullRequestCommentEvent,
    WebhookEvent,
    WebhookEventType,
)

DEFAULT_TRIGGERS = ("/oc", "/opencode")


@lru_cache(maxsize=32)
def _trigger_patterns(tokens: Tuple[str, ...]) -> Tuple[Tuple[str, "re.Pattern[str]"], ...]:
    return tuple(
        (token, re.compile(rf"(?<!\w){re.escape(token)}(?!\w)", re.IGNORECASE))
        for token in tokens
    )


def extract_triggers(body: str, tokens: Iterable[str] = DEFAULT_TRIGGERS) -> FrozenSet[str]:
    """
    Find the trigger tokens mentioned in a comment body.

    Matching is case-insensitive and word-bounded, so ``/OC please`` matches
    ``/oc`` but ``/ocular`` does not.

    Returns:
        The configured tokens (as configured) that appear in ``body``
    """
    if not body:
        return frozenset()

    return frozenset(
        token for token, pattern in _trigger_patterns(tuple(tokens))
        if pattern.search(body)
    )


def should_trigger_review(event: WebhookEvent) -> bool:
    """
    Decide whether an event starts a review.

    Opened and updated pull requests always do, closed ones never do.
    Comments do only when newly created and carrying at least one trigger;
    edits and deletions never trigger.
    """
    if event.type in (WebhookEventType.OPENED, WebhookEventType.UPDATED):
        return True
    if event.type == WebhookEventType.COMMENT:
        return event.action == "created" and bool(event.triggers)
    return False


def describe_event(event: WebhookEvent) -> str:
    """One-line human description used in logs and webhook responses."""
    repo = event.repository.full_name
    pr = event.pull_request.number

    if event.type == WebhookEventType.OPENED:
        return f"PR #{pr} opened in {repo}"
    if event.type == WebhookEventType.UPDATED:
        return f"PR #{pr} updated in {repo}"
    if isinstance(event, PullRequestClosedEvent):
        return f"PR #{pr} {'merged' if event.merged else 'closed'} in {repo}"
    if isinstance(event, PullRequestCommentEvent):
        triggers = ", ".join(sorted(event.triggers)) or "none"
        return f"Comment on PR #{pr} in {repo} (triggers: {triggers})"
    return f"Unknown event in {repo}"


def triggered_by(event: WebhookEvent) -> str:
    """Label recorded on the review job for who or what started it."""
    if event.type == WebhookEventType.COMMENT:
        return f"comment:{event.sender.login}"
    return "webhook"
