"""
PR Review Processor Module

This module orchestrates the entire PR review process.
It coordinates scope detection, diff fetching and parsing, the Reviewer
call and review submission back to the forge.

Design Decisions:
- Intake is cheap: a pending job is recorded and the webhook acknowledged
- The pipeline runs in the background and never raises; every failure
  lands in the job record as ``failed``
- Collaborators (provider, reviewer, store) are injected, not looked up
- Comments the forge cannot anchor (lines outside the diff) are dropped
  before submission
- Optional per-PR serialization and Reviewer timeout, both off by default
- Comment triggers and operator retries review the whole pull request;
  only plain webhook jobs may short-circuit as up to date
"""

import asyncio
import contextlib
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from forge_review.config import Settings, get_settings
from forge_review.logging_config import get_logger
from forge_review.models import (
    FileDiff,
    PullRequest,
    PullRequestCommentEvent,
    ReviewContext,
    ReviewDecision,
    ReviewJob,
    ReviewOutcome,
    ReviewScope,
    ReviewStatus,
    ScopeKind,
    WebhookEvent,
    utcnow,
)
from forge_review.providers.base import ForgeProvider, PartialReviewError, TransportError
from forge_review.services.commit_tracker import determine_scope
from forge_review.services.decoders import DEFAULT_DECODERS, ResponseDecoder, decode_review_output
from forge_review.services.diff_parser import DiffParser
from forge_review.services.review_tags import ReviewStats, stats_for_comments
from forge_review.services.reviewer import Reviewer
from forge_review.services.store import InMemoryReviewStore, JobNotFoundError, ReviewStore

logger = get_logger(__name__)

NO_CHANGES_SUMMARY = "No changes found, skipping review."
NO_REVIEWABLE_FILES_SUMMARY = "No reviewable files after applying file filters, skipping review."
DEFAULT_REVIEW_SUMMARY = "Automated review completed."


class ReviewProcessorError(Exception):
    """Custom exception for review processing errors."""
    pass


class InvalidTransitionError(ReviewProcessorError):
    """Raised when a job is asked to move to a state it cannot reach."""
    pass


class ReviewOrchestrator:
    """
    Orchestrates the PR review process.

    Job lifecycle: pending -> processing -> completed | failed. Only an
    operator ``retry`` moves a failed job back to pending.

    Usage:
        orchestrator = ReviewOrchestrator(provider, reviewer)
        job = await orchestrator.accept(event)
        background_tasks.add_task(orchestrator.run, job.id, event)
    """

    def __init__(
        self,
        provider: ForgeProvider,
        reviewer: Reviewer,
        store: Optional[ReviewStore] = None,
        settings: Optional[Settings] = None,
        diff_parser: Optional[DiffParser] = None,
        decoders: Sequence[ResponseDecoder] = DEFAULT_DECODERS
    ):
        self.provider = provider
        self.reviewer = reviewer
        self.store = store or InMemoryReviewStore()
        self.settings = settings or get_settings()
        self.diff_parser = diff_parser or DiffParser(strict=self.settings.strict_diff_validation)
        self.decoders = decoders
        self._pr_locks: Dict[Tuple[str, int], asyncio.Lock] = {}
        self._pr_waiters: Dict[Tuple[str, int], int] = {}

    # -------------------------------------------------------------------------
    # Job lifecycle
    # -------------------------------------------------------------------------

    async def accept(
        self,
        event: WebhookEvent,
        triggered_by: str = "webhook",
        webhook_event_id: Optional[str] = None
    ) -> ReviewJob:
        """Record a pending review job for a triggering event."""
        pr = event.pull_request
        job = ReviewJob(
            id=str(uuid.uuid4()),
            provider=event.provider,
            repository=event.repository.full_name,
            pr_number=pr.number,
            pr_title=pr.title or None,
            pr_author=pr.author.login or None,
            triggered_by=triggered_by,
            full_review=isinstance(event, PullRequestCommentEvent),
            webhook_event_id=webhook_event_id or event.id,
        )
        job = await self.store.create(job)

        logger.info(
            "Review job accepted",
            job_id=job.id,
            repo=job.repository,
            pr_number=job.pr_number,
            triggered_by=triggered_by
        )
        return job

    async def get_job(self, job_id: str) -> Optional[ReviewJob]:
        return await self.store.get(job_id)

    async def retry(self, job_id: str) -> ReviewJob:
        """
        Reset a failed job to pending.

        Results of the failed attempt are cleared and the job is marked for
        a full review: line comments a partial submission already posted
        would otherwise make the head look reviewed.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidTransitionError: If the job is not in ``failed`` state
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != ReviewStatus.FAILED:
            raise InvalidTransitionError(
                f"Only failed jobs can be retried (job {job_id} is {job.status.value})"
            )

        logger.info("Review job reset for retry", job_id=job_id)
        return await self.store.update(
            job_id,
            status=ReviewStatus.PENDING,
            full_review=True,
            scope=None,
            decision=None,
            summary=None,
            comments_count=0,
            health_score=None,
            error=None,
            completed_at=None,
            duration_ms=None,
        )

    async def run(self, job_id: str, event: Optional[WebhookEvent] = None) -> Optional[ReviewJob]:
        """
        Execute the review pipeline for a pending job.

        This is the background task entry point. It never raises; the
        outcome is written to the job record.

        Args:
            job_id: Job created by ``accept`` (or reset by ``retry``)
            event: Triggering event, used for log context only

        Returns:
            The final job record, or None if the job does not exist
        """
        job = await self.store.get(job_id)
        if job is None:
            logger.error("Review job not found", job_id=job_id)
            return None
        if job.status != ReviewStatus.PENDING:
            logger.warning("Review job is not pending, skipping", job_id=job_id, status=job.status.value)
            return job

        started = time.monotonic()
        job = await self.store.update(job_id, status=ReviewStatus.PROCESSING)

        logger.info(
            "Starting PR review process",
            job_id=job_id,
            repo=job.repository,
            pr_number=job.pr_number,
            event_id=event.id if event is not None else None
        )

        try:
            async with self._pr_lock(job):
                changes = await self._execute(job)
        except Exception as e:
            changes = self._failure_changes(job, e)

        changes["completed_at"] = utcnow()
        changes["duration_ms"] = int((time.monotonic() - started) * 1000)
        final = await self.store.update(job_id, **changes)

        logger.info(
            "PR review process finished",
            job_id=job_id,
            status=final.status.value,
            decision=final.decision.value if final.decision else None,
            comments=final.comments_count,
            duration_ms=final.duration_ms
        )
        return final

    def _failure_changes(self, job: ReviewJob, error: Exception) -> Dict[str, Any]:
        message = str(error) or type(error).__name__
        if isinstance(error, asyncio.TimeoutError):
            message = f"Reviewer timed out after {self.settings.review_timeout_seconds}s"

        logger.error(
            "PR review process failed",
            job_id=job.id,
            repo=job.repository,
            pr_number=job.pr_number,
            error=message,
            error_type=type(error).__name__
        )

        changes: Dict[str, Any] = {"status": ReviewStatus.FAILED, "error": message}
        if isinstance(error, PartialReviewError):
            changes["comments_count"] = error.submitted_count
        return changes

    @contextlib.asynccontextmanager
    async def _pr_lock(self, job: ReviewJob):
        """Hold the per-PR lock; the entry is dropped once nobody waits on it."""
        if not self.settings.serialize_reviews_per_pr:
            yield
            return

        key = (job.repository, job.pr_number)
        lock = self._pr_locks.setdefault(key, asyncio.Lock())
        self._pr_waiters[key] = self._pr_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._pr_waiters[key] -= 1
            if not self._pr_waiters[key]:
                del self._pr_waiters[key]
                del self._pr_locks[key]

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _execute(self, job: ReviewJob) -> Dict[str, Any]:
        owner, repo = job.repository.split("/", 1)

        pr = await self.provider.get_pull_request(owner, repo, job.pr_number)
        await self.store.update(job.id, pr_title=pr.title or None, pr_author=pr.author.login or None)

        scope = await self._determine_scope(owner, repo, pr)
        if scope.kind == ScopeKind.UP_TO_DATE:
            if not job.full_review:
                logger.info("No new commits since last review", job_id=job.id, last_sha=scope.last_reviewed_sha)
                return {
                    "status": ReviewStatus.COMPLETED,
                    "scope": scope.kind,
                    "summary": f"Already reviewed up to {(scope.last_reviewed_sha or '')[:7]}, nothing new.",
                }
            logger.info("Head already reviewed, running full review on request", job_id=job.id)
            scope = ReviewScope(kind=ScopeKind.FIRST)

        files = await self._fetch_files(owner, repo, pr, scope)
        if not files:
            return {
                "status": ReviewStatus.COMPLETED,
                "scope": scope.kind,
                "decision": ReviewDecision.COMMENT,
                "summary": NO_CHANGES_SUMMARY,
                "comments_count": 0,
            }

        files = self.diff_parser.filter_by_patterns(
            files,
            include=self.settings.file_patterns_list,
            exclude=self.settings.ignore_patterns_list
        )
        if not files:
            return {
                "status": ReviewStatus.COMPLETED,
                "scope": scope.kind,
                "decision": ReviewDecision.COMMENT,
                "summary": NO_REVIEWABLE_FILES_SUMMARY,
                "comments_count": 0,
            }

        context = ReviewContext(
            owner=owner,
            repo=repo,
            pull_request=pr,
            scope=scope,
            files=files,
            diff_text=self.diff_parser.format_for_review(files, max_chars=self.settings.max_diff_chars),
            language=self.settings.review_language,
        )

        raw = await self._invoke_reviewer(context)
        outcome = self._drop_unaddressable(decode_review_output(raw, self.decoders), files)
        stats = stats_for_comments(outcome.comments)

        if self.settings.enable_forge_submission:
            await self.provider.create_review(
                owner,
                repo,
                pr.number,
                outcome.decision,
                outcome.comments,
                body=self._review_body(outcome, stats),
                commit_id=pr.head.sha or None,
            )
        else:
            logger.info("Forge submission disabled, review not posted", job_id=job.id)

        return {
            "status": ReviewStatus.COMPLETED,
            "scope": scope.kind,
            "decision": outcome.decision,
            "summary": outcome.summary or DEFAULT_REVIEW_SUMMARY,
            "comments_count": len(outcome.comments),
            "health_score": stats.health_score,
        }

    async def _determine_scope(self, owner: str, repo: str, pr: PullRequest) -> ReviewScope:
        if not self.settings.incremental_review:
            return ReviewScope(kind=ScopeKind.FIRST)

        commits = await self.provider.get_pull_request_commits(owner, repo, pr.number)
        reviews = await self.provider.get_pull_request_reviews(owner, repo, pr.number)
        scope = determine_scope(reviews, commits, author_login=self.settings.bot_login)

        logger.info(
            "Determined review scope",
            repo=f"{owner}/{repo}",
            pr_number=pr.number,
            scope=scope.kind.value,
            last_reviewed=scope.last_reviewed_sha,
            new_commits=len(scope.new_commits)
        )
        return scope

    async def _fetch_files(
        self,
        owner: str,
        repo: str,
        pr: PullRequest,
        scope: ReviewScope
    ) -> List[FileDiff]:
        """
        Fetch and parse the diff for a scope.

        Incremental scopes use the compare diff from the last reviewed
        commit to head. If the forge cannot produce it, each new commit's
        diff is parsed in commit order, so one path may yield several
        sections.
        """
        if scope.kind != ScopeKind.INCREMENTAL:
            return self.diff_parser.parse(
                await self.provider.get_pull_request_diff(owner, repo, pr.number)
            )

        head = pr.head.sha or scope.new_commits[-1].sha
        try:
            return self.diff_parser.parse(
                await self.provider.get_compare_diff(owner, repo, scope.last_reviewed_sha, head)
            )
        except TransportError as e:
            logger.warning(
                "Compare diff unavailable, falling back to per-commit diffs",
                repo=f"{owner}/{repo}",
                pr_number=pr.number,
                error=str(e)
            )

        files: List[FileDiff] = []
        for commit in scope.new_commits:
            diff_text = await self.provider.get_commit_diff(owner, repo, commit.sha)
            files.extend(self.diff_parser.parse(diff_text))
        return files

    async def _invoke_reviewer(self, context: ReviewContext):
        timeout = self.settings.review_timeout_seconds
        if timeout is None:
            return await self.reviewer.review(context)
        return await asyncio.wait_for(self.reviewer.review(context), timeout=timeout)

    def _drop_unaddressable(self, outcome: ReviewOutcome, files: List[FileDiff]) -> ReviewOutcome:
        """
        Remove comments whose line is not part of the parsed diff.

        Line sets are merged across every section of a path.
        """
        addressable: Dict[str, Tuple[set, set]] = {}
        for file_diff in files:
            old_lines, new_lines = addressable.setdefault(file_diff.path, (set(), set()))
            file_old, file_new = self.diff_parser.addressable_lines(file_diff)
            old_lines.update(file_old)
            new_lines.update(file_new)

        kept = []
        for comment in outcome.comments:
            old_lines, new_lines = addressable.get(comment.path, (set(), set()))
            if comment.new_line is not None and comment.new_line in new_lines:
                kept.append(comment)
            elif comment.old_line is not None and comment.old_line in old_lines:
                kept.append(comment)

        if len(kept) != len(outcome.comments):
            logger.warning(
                "Dropped comments outside the diff",
                dropped=len(outcome.comments) - len(kept),
                kept=len(kept)
            )

        return outcome.model_copy(update={"comments": kept})

    def _review_body(self, outcome: ReviewOutcome, stats: ReviewStats) -> str:
        body = outcome.summary or DEFAULT_REVIEW_SUMMARY
        if not outcome.comments:
            return body
        return (
            f"{body}\n\n---\n"
            f"{len(outcome.comments)} inline comment(s), health score {stats.health_score}/100"
        )
