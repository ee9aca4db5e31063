"""
Commit History Tracker Module

Decides which commits of a pull request still need reviewing by comparing
the PR's commit list with the reviews already submitted on the forge.

Three outcomes matter to callers:
- no usable past review: review everything (first review)
- the last reviewed commit is still in history: review the commits after it
- the last reviewed commit vanished from history: the branch was rewritten
  (force-push/rebase), review everything again
"""

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from forge_review.logging_config import get_logger
from forge_review.models import Commit, ReviewRecord, ReviewScope, ScopeKind

logger = get_logger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _submitted_key(review: ReviewRecord) -> datetime:
    submitted = review.submitted_at
    if submitted is None:
        return _EPOCH
    if submitted.tzinfo is None:
        return submitted.replace(tzinfo=timezone.utc)
    return submitted


def last_reviewed_commit(
    reviews: Iterable[ReviewRecord],
    commits: Sequence[Commit],
    author_login: Optional[str] = None
) -> Optional[str]:
    """
    Find the commit SHA of the most recent review that still applies.

    Reviews pointing at commits that are no longer part of the PR are
    ignored.

    Args:
        reviews: Reviews submitted on the pull request
        commits: Current commits of the pull request
        author_login: Only consider reviews by this user when given

    Returns:
        SHA of the latest valid review, or None if there is none
    """
    commit_shas = {c.sha for c in commits}

    valid = [
        r for r in reviews
        if r.commit_sha and r.commit_sha in commit_shas
        and (author_login is None or r.author_login == author_login)
    ]
    if not valid:
        return None

    return max(valid, key=_submitted_key).commit_sha


def commits_after(commits: Sequence[Commit], sha: Optional[str]) -> List[Commit]:
    """
    Get the commits strictly after ``sha``.

    Returns all commits when ``sha`` is None (nothing reviewed yet) or when
    ``sha`` is not in ``commits`` (history was rewritten). Returns an empty
    list when ``sha`` is the newest commit.
    """
    if sha is None:
        return list(commits)

    for index, commit in enumerate(commits):
        if commit.sha == sha:
            return list(commits[index + 1:])

    return list(commits)


def determine_scope(
    reviews: Iterable[ReviewRecord],
    commits: Sequence[Commit],
    author_login: Optional[str] = None
) -> ReviewScope:
    """
    Classify what a new review of the pull request must cover.

    ``last_reviewed_commit`` only returns SHAs present in ``commits``, so a
    rebase shows up here as reviews that exist but all point at vanished
    commits.
    """
    reviews = list(reviews)
    last_sha = last_reviewed_commit(reviews, commits, author_login)

    if last_sha is None:
        relevant = [
            r for r in reviews
            if r.commit_sha and (author_login is None or r.author_login == author_login)
        ]
        if relevant:
            logger.info(
                "Reviewed commits no longer in history, treating as rebase",
                stale_reviews=len(relevant),
                commits=len(commits)
            )
            return ReviewScope(kind=ScopeKind.REBASE, new_commits=list(commits))
        return ReviewScope(kind=ScopeKind.FIRST, new_commits=list(commits))

    new_commits = commits_after(commits, last_sha)
    if not new_commits:
        return ReviewScope(kind=ScopeKind.UP_TO_DATE, last_reviewed_sha=last_sha)

    return ReviewScope(
        kind=ScopeKind.INCREMENTAL,
        last_reviewed_sha=last_sha,
        new_commits=new_commits,
    )
