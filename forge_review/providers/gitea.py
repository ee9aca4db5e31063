"""
Gitea Provider Module

Forge adapter for Gitea and Forgejo (API v1).

Design Decisions:
- All JSON is mapped into canonical models at the edge; nothing above this
  module sees Gitea field names
- Gitea needs line comments submitted before the aggregate review; each one
  goes out as its own single-comment review
- Comment positions always carry both ``new_position`` and ``old_position``,
  with 0 as the "other side" sentinel
- Webhook normalization never raises; unknown or malformed payloads map to None
"""

import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from pydantic import ValidationError

from forge_review.events import DEFAULT_TRIGGERS, extract_triggers
from forge_review.logging_config import get_logger
from forge_review.models import (
    BranchRef,
    ChangedFile,
    Comment,
    Commit,
    EventRepository,
    LineComment,
    ProviderType,
    PullRequest,
    PullRequestClosedEvent,
    PullRequestCommentEvent,
    PullRequestOpenedEvent,
    PullRequestUpdatedEvent,
    Repository,
    ReviewDecision,
    ReviewRecord,
    User,
    WebhookEvent,
)
from forge_review.providers.base import (
    ForgeHttpClient,
    PartialReviewError,
    ProviderConfig,
    TransportError,
    verify_hmac_sha256,
)
from forge_review.services.review_tags import format_comment_body

logger = get_logger(__name__)

API_PREFIX = "/api/v1"
PAGE_SIZE = 50
MAX_PAGES = 20

EVENT_HEADER = "x-gitea-event"
DELIVERY_HEADER = "x-gitea-delivery"

DECISION_EVENTS = {
    ReviewDecision.APPROVED: "APPROVE",
    ReviewDecision.REQUEST_CHANGES: "REQUEST_CHANGES",
    ReviewDecision.COMMENT: "COMMENT",
}

_OPENED_ACTIONS = {"opened", "reopened"}
_UPDATED_ACTIONS = {"synchronized"}
_CLOSED_ACTIONS = {"closed"}
_COMMENT_EVENTS = {"issue_comment", "pull_request_comment"}


def to_gitea_comment(comment: LineComment) -> Dict[str, Any]:
    """
    Map a canonical line comment onto Gitea's review comment payload.

    Exactly one of ``new_position``/``old_position`` is non-zero.
    """
    if comment.new_line is not None:
        new_position, old_position = comment.new_line, 0
    else:
        new_position, old_position = 0, comment.old_line

    return {
        "path": comment.path,
        "body": format_comment_body(comment.body, comment.suggestion),
        "new_position": new_position,
        "old_position": old_position,
    }


class GiteaProvider:
    """
    Gitea/Forgejo implementation of ``ForgeProvider``.

    Usage:
        provider = GiteaProvider(ProviderConfig(type="gitea", base_url=url, token=token))
        pr = await provider.get_pull_request("owner", "repo", 42)
    """

    name = ProviderType.GITEA

    def __init__(
        self,
        config: ProviderConfig,
        trigger_keywords: Sequence[str] = DEFAULT_TRIGGERS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.trigger_keywords = tuple(trigger_keywords)
        self._http = ForgeHttpClient(config, api_prefix=API_PREFIX, transport=transport)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_repository(self, owner: str, repo: str) -> Repository:
        data = await self._http.get_json(f"/repos/{owner}/{repo}")
        return self._map_repository(data)

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequest:
        data = await self._http.get_json(f"/repos/{owner}/{repo}/pulls/{number}")
        return self._map_pull_request(data)

    async def get_pull_request_diff(self, owner: str, repo: str, number: int) -> str:
        diff = await self._http.get_text(f"/repos/{owner}/{repo}/pulls/{number}.diff")
        logger.debug("Fetched PR diff", repo=f"{owner}/{repo}", pr_number=number, diff_size=len(diff))
        return diff

    async def get_pull_request_files(self, owner: str, repo: str, number: int) -> List[ChangedFile]:
        data = await self._get_paginated(f"/repos/{owner}/{repo}/pulls/{number}/files")
        return [self._map_changed_file(item) for item in data]

    async def get_pull_request_commits(self, owner: str, repo: str, number: int) -> List[Commit]:
        data = await self._get_paginated(f"/repos/{owner}/{repo}/pulls/{number}/commits")
        return [self._map_commit(item) for item in data]

    async def get_pull_request_reviews(self, owner: str, repo: str, number: int) -> List[ReviewRecord]:
        data = await self._get_paginated(f"/repos/{owner}/{repo}/pulls/{number}/reviews")
        return [self._map_review(item) for item in data]

    async def get_review_comments(
        self, owner: str, repo: str, number: int, review_id: int
    ) -> List[Comment]:
        data = await self._http.get_json(
            f"/repos/{owner}/{repo}/pulls/{number}/reviews/{review_id}/comments"
        )
        return [self._map_comment(item) for item in data or []]

    async def get_compare_diff(self, owner: str, repo: str, base: str, head: str) -> str:
        return await self._http.get_text(f"/repos/{owner}/{repo}/compare/{base}...{head}.diff")

    async def get_commit_diff(self, owner: str, repo: str, sha: str) -> str:
        return await self._http.get_text(f"/repos/{owner}/{repo}/git/commits/{sha}.diff")

    async def _get_paginated(self, endpoint: str) -> List[Dict[str, Any]]:
        """Collect every page of a list endpoint, bounded by ``MAX_PAGES``."""
        items: List[Dict[str, Any]] = []

        for page in range(1, MAX_PAGES + 1):
            batch = await self._http.get_json(
                endpoint, params={"page": page, "limit": PAGE_SIZE}
            )
            if not batch:
                break
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break

        return items

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create_review(
        self,
        owner: str,
        repo: str,
        number: int,
        decision: ReviewDecision,
        comments: Sequence[LineComment],
        body: str = "",
        commit_id: Optional[str] = None,
    ) -> ReviewRecord:
        """
        Submit a review: every line comment first, then the aggregate review.

        Raises:
            PartialReviewError: If a call fails after at least one line
                comment was already posted
            TransportError: If nothing was posted
        """
        submitted = 0

        try:
            for comment in comments:
                await self.create_line_comment(owner, repo, number, comment, commit_id)
                submitted += 1

            payload: Dict[str, Any] = {
                "body": body,
                "event": DECISION_EVENTS[ReviewDecision(decision)],
            }
            if commit_id:
                payload["commit_id"] = commit_id

            data = await self._http.post_json(
                f"/repos/{owner}/{repo}/pulls/{number}/reviews", payload
            )
        except TransportError as e:
            if submitted == 0:
                raise
            logger.error(
                "Review submission partially failed",
                repo=f"{owner}/{repo}",
                pr_number=number,
                submitted=submitted,
                total=len(comments),
                error=str(e)
            )
            raise PartialReviewError(
                f"Review failed after {submitted} of {len(comments)} comments: {e}",
                submitted_count=submitted,
                total_count=len(comments),
                status_code=e.status_code,
                response_body=e.response_body,
                provider=self.name
            ) from e

        logger.info(
            "Submitted review",
            repo=f"{owner}/{repo}",
            pr_number=number,
            decision=ReviewDecision(decision).value,
            comments=submitted
        )
        return self._map_review(data)

    async def create_comment(self, owner: str, repo: str, number: int, body: str) -> Comment:
        data = await self._http.post_json(
            f"/repos/{owner}/{repo}/issues/{number}/comments", {"body": body}
        )
        return self._map_comment(data)

    async def create_line_comment(
        self,
        owner: str,
        repo: str,
        number: int,
        comment: LineComment,
        commit_id: Optional[str] = None,
    ) -> Comment:
        payload: Dict[str, Any] = {
            "body": "",
            "event": DECISION_EVENTS[ReviewDecision.COMMENT],
            "comments": [to_gitea_comment(comment)],
        }
        if commit_id:
            payload["commit_id"] = commit_id

        data = await self._http.post_json(f"/repos/{owner}/{repo}/pulls/{number}/reviews", payload)

        mapped = self._map_comment(data)
        mapped.path = comment.path
        return mapped

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_webhook_signature(self, payload: bytes, signature: str, secret: str) -> bool:
        try:
            return verify_hmac_sha256(payload, signature, secret)
        except (TypeError, ValueError) as e:
            logger.warning("Malformed webhook signature input", error=str(e))
            return False

    def parse_webhook_event(
        self, payload: Any, headers: Mapping[str, str]
    ) -> Optional[WebhookEvent]:
        """
        Normalize a Gitea webhook delivery into a canonical event.

        Returns None for deliveries this service does not act on and for
        payloads of unexpected shape.
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        event_name = (lowered.get(EVENT_HEADER) or "").strip().lower()
        if not event_name or not isinstance(payload, dict):
            return None

        delivery_id = lowered.get(DELIVERY_HEADER) or str(uuid.uuid4())

        try:
            if event_name == "pull_request":
                return self._parse_pull_request_event(payload, delivery_id)
            if event_name in _COMMENT_EVENTS:
                return self._parse_comment_event(payload, delivery_id)
        except (KeyError, TypeError, AttributeError, ValueError, ValidationError) as e:
            logger.warning(
                "Could not parse Gitea webhook payload",
                event=event_name,
                delivery_id=delivery_id,
                error=str(e),
                error_type=type(e).__name__
            )
            return None

        logger.debug("Ignoring Gitea event", event=event_name, delivery_id=delivery_id)
        return None

    def _base_event_fields(self, data: Dict[str, Any], delivery_id: str) -> Dict[str, Any]:
        repository = data["repository"]
        return {
            "id": delivery_id,
            "provider": self.name,
            "repository": EventRepository(
                full_name=repository["full_name"],
                url=repository.get("html_url") or "",
            ),
            "sender": self._map_user(data.get("sender")),
        }

    def _parse_pull_request_event(
        self, data: Dict[str, Any], delivery_id: str
    ) -> Optional[WebhookEvent]:
        pr_data = data.get("pull_request")
        if not pr_data:
            return None

        action = data.get("action")
        fields = self._base_event_fields(data, delivery_id)
        fields["pull_request"] = self._map_pull_request(pr_data)

        if action in _OPENED_ACTIONS:
            return PullRequestOpenedEvent(**fields)
        if action in _UPDATED_ACTIONS:
            return PullRequestUpdatedEvent(before=data.get("before"), **fields)
        if action in _CLOSED_ACTIONS:
            return PullRequestClosedEvent(merged=bool(pr_data.get("merged")), **fields)

        return None

    def _parse_comment_event(
        self, data: Dict[str, Any], delivery_id: str
    ) -> Optional[WebhookEvent]:
        comment_data = data.get("comment")
        issue = data.get("issue") or {}
        pr_data = data.get("pull_request")

        # Plain issue comments are not ours
        if not comment_data or not (pr_data or issue.get("pull_request")):
            return None

        fields = self._base_event_fields(data, delivery_id)
        if pr_data:
            fields["pull_request"] = self._map_pull_request(pr_data)
        else:
            fields["pull_request"] = PullRequest(
                id=issue["id"],
                number=issue["number"],
                title=issue.get("title") or "",
                body=issue.get("body"),
                state=issue.get("state") or "open",
                author=self._map_user(issue.get("user")),
            )

        comment = self._map_comment(comment_data)
        return PullRequestCommentEvent(
            action=data.get("action") or "created",
            comment=comment,
            triggers=extract_triggers(comment.body, self.trigger_keywords),
            **fields
        )

    # -------------------------------------------------------------------------
    # Mapping helpers
    # -------------------------------------------------------------------------

    def _map_user(self, data: Optional[Dict[str, Any]]) -> User:
        if not data:
            return User()
        return User(
            id=data.get("id") or 0,
            login=data.get("login") or data.get("username") or "",
            avatar_url=data.get("avatar_url"),
        )

    def _map_repository(self, data: Dict[str, Any]) -> Repository:
        return Repository(
            id=data["id"],
            name=data["name"],
            full_name=data["full_name"],
            description=data.get("description"),
            default_branch=data.get("default_branch") or "main",
            private=bool(data.get("private")),
            url=data.get("html_url") or "",
        )

    def _map_pull_request(self, data: Dict[str, Any]) -> PullRequest:
        base = data.get("base") or {}
        head = data.get("head") or {}
        return PullRequest(
            id=data["id"],
            number=data["number"],
            title=data.get("title") or "",
            body=data.get("body"),
            state=data.get("state") or "open",
            author=self._map_user(data.get("user")),
            base=BranchRef(ref=base.get("ref") or "", sha=base.get("sha") or ""),
            head=BranchRef(ref=head.get("ref") or "", sha=head.get("sha") or ""),
            merged=bool(data.get("merged")),
            created_at=data.get("created_at") or None,
            updated_at=data.get("updated_at") or None,
        )

    def _map_changed_file(self, data: Dict[str, Any]) -> ChangedFile:
        return ChangedFile(
            filename=data["filename"],
            status=data.get("status") or "modified",
            additions=data.get("additions") or 0,
            deletions=data.get("deletions") or 0,
            patch=data.get("patch"),
        )

    def _map_commit(self, data: Dict[str, Any]) -> Commit:
        details = data.get("commit") or {}
        author = details.get("author") or {}
        return Commit(
            sha=data["sha"],
            timestamp=data.get("created") or author.get("date") or None,
            message=details.get("message") or "",
        )

    def _map_review(self, data: Dict[str, Any]) -> ReviewRecord:
        return ReviewRecord(
            id=data["id"],
            author_login=self._map_user(data.get("user")).login,
            commit_sha=data.get("commit_id") or None,
            submitted_at=data.get("submitted_at") or None,
            state=data.get("state") or "",
            body=data.get("body") or "",
        )

    def _map_comment(self, data: Dict[str, Any]) -> Comment:
        return Comment(
            id=data["id"],
            body=data.get("body") or "",
            user=self._map_user(data.get("user")),
            path=data.get("path"),
            created_at=data.get("created_at") or data.get("submitted_at") or None,
        )
