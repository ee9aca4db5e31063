"""
Test Configuration

Pytest configuration and fixtures for the test suite.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Generator, List, Optional, Sequence

import pytest
from fastapi.testclient import TestClient

from forge_review.config import Settings
from forge_review.main import create_app
from forge_review.models import (
    ChangedFile,
    Comment,
    Commit,
    LineComment,
    PullRequest,
    Repository,
    ReviewContext,
    ReviewDecision,
    ReviewRecord,
)
from forge_review.providers.base import ProviderConfig, TransportError
from forge_review.providers.gitea import GiteaProvider
from forge_review.services.diff_parser import DiffParser
from forge_review.webhook.processor import ReviewOrchestrator

WEBHOOK_SECRET = "test_secret"

SAMPLE_DIFF = "\n".join([
    "diff --git a/app/main.py b/app/main.py",
    "index 83db48f..bf269f4 100644",
    "--- a/app/main.py",
    "+++ b/app/main.py",
    "@@ -1,5 +1,7 @@",
    " import os",
    "+import sys",
    " ",
    " def main():",
    "-    print(\"Hello\")",
    "+    name = input(\"Enter name: \")",
    "+    print(f\"Hello, {name}!\")",
    "     return 0",
    "",
])


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class FakeGiteaProvider(GiteaProvider):
    """
    Gitea provider with in-memory forge state.

    Webhook parsing and signature checks are the real ones; network calls
    read and write the attributes below.
    """

    def __init__(self, trigger_keywords: Sequence[str] = ("/oc", "/opencode")):
        super().__init__(
            ProviderConfig(type="gitea", base_url="http://gitea.test", token="test-token"),
            trigger_keywords=trigger_keywords,
        )
        self.pull_request = PullRequest(
            id=123,
            number=42,
            title="Add greeting",
            author={"id": 7, "login": "alice"},
            base={"ref": "main", "sha": "base000"},
            head={"ref": "feature", "sha": "ccc333"},
        )
        self.diff = SAMPLE_DIFF
        self.compare_diffs: Dict[str, str] = {}
        self.commit_diffs: Dict[str, str] = {}
        self.commits: List[Commit] = [Commit(sha="ccc333")]
        self.reviews: List[ReviewRecord] = []
        self.fail_compare = False
        self.fail_create_review: Optional[Exception] = None

        self.submitted: List[Dict[str, Any]] = []
        self.diff_requests: List[str] = []

    async def get_repository(self, owner: str, repo: str) -> Repository:
        return Repository(id=1, name=repo, full_name=f"{owner}/{repo}")

    async def get_pull_request(self, owner: str, repo: str, number: int) -> PullRequest:
        return self.pull_request

    async def get_pull_request_diff(self, owner: str, repo: str, number: int) -> str:
        self.diff_requests.append("full")
        return self.diff

    async def get_pull_request_files(self, owner: str, repo: str, number: int) -> List[ChangedFile]:
        return [ChangedFile(filename="app/main.py", additions=3, deletions=1)]

    async def get_pull_request_commits(self, owner: str, repo: str, number: int) -> List[Commit]:
        return list(self.commits)

    async def get_pull_request_reviews(self, owner: str, repo: str, number: int) -> List[ReviewRecord]:
        return list(self.reviews)

    async def get_review_comments(self, owner, repo, number, review_id) -> List[Comment]:
        return []

    async def get_compare_diff(self, owner: str, repo: str, base: str, head: str) -> str:
        self.diff_requests.append(f"compare:{base}...{head}")
        if self.fail_compare:
            raise TransportError("compare not supported", status_code=404)
        return self.compare_diffs.get(f"{base}...{head}", "")

    async def get_commit_diff(self, owner: str, repo: str, sha: str) -> str:
        self.diff_requests.append(f"commit:{sha}")
        return self.commit_diffs.get(sha, "")

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
        if self.fail_create_review is not None:
            raise self.fail_create_review
        self.submitted.append({
            "decision": decision,
            "comments": list(comments),
            "body": body,
            "commit_id": commit_id,
        })
        return ReviewRecord(id=len(self.submitted), commit_sha=commit_id, state=decision.value)


class FakeReviewer:
    """Reviewer double returning a canned response and recording contexts."""

    def __init__(self, response: Any = None, error: Optional[Exception] = None):
        self.response = response if response is not None else {
            "decision": "COMMENT",
            "summary": "Looks reasonable overall.",
            "comments": [],
        }
        self.error = error
        self.contexts: List[ReviewContext] = []

    async def review(self, context: ReviewContext):
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        forge_provider="gitea",
        forge_base_url="http://gitea.test",
        forge_token="test-token",
        forge_webhook_secret=WEBHOOK_SECRET,
        openai_api_key="sk-test",
        ignore_patterns="**/*.lock",
        log_json_format=False,
    )


@pytest.fixture
def provider() -> FakeGiteaProvider:
    return FakeGiteaProvider()


@pytest.fixture
def reviewer() -> FakeReviewer:
    return FakeReviewer()


@pytest.fixture
def make_reviewer():
    """Factory for reviewer doubles with a custom response or error."""
    return FakeReviewer


@pytest.fixture
def orchestrator(provider, reviewer, settings) -> ReviewOrchestrator:
    return ReviewOrchestrator(
        provider=provider,
        reviewer=reviewer,
        settings=settings,
        diff_parser=DiffParser(),
    )


@pytest.fixture
def client(orchestrator) -> Generator[TestClient, None, None]:
    """Create a test client wired to the fake provider and reviewer."""
    with TestClient(create_app(orchestrator)) as test_client:
        yield test_client


@pytest.fixture
def gitea_pr_json() -> Dict[str, Any]:
    """Pull request as returned by the Gitea API."""
    return {
        "id": 123,
        "number": 42,
        "title": "Add greeting",
        "body": "Greets the user by name.",
        "state": "open",
        "user": {"id": 7, "login": "alice", "avatar_url": "http://gitea.test/avatars/7"},
        "base": {"ref": "main", "sha": "base000"},
        "head": {"ref": "feature", "sha": "ccc333"},
        "merged": False,
        "created_at": "2024-01-15T10:00:00Z",
        "updated_at": "2024-01-15T11:00:00Z",
    }


@pytest.fixture
def gitea_repository_json() -> Dict[str, Any]:
    return {
        "id": 1,
        "name": "repo",
        "full_name": "owner/repo",
        "description": "Demo repository",
        "default_branch": "main",
        "private": False,
        "html_url": "http://gitea.test/owner/repo",
    }


@pytest.fixture
def sample_pr_payload(gitea_pr_json, gitea_repository_json) -> Dict[str, Any]:
    """Gitea ``pull_request`` webhook payload."""
    return {
        "action": "opened",
        "number": 42,
        "pull_request": gitea_pr_json,
        "repository": gitea_repository_json,
        "sender": {"id": 7, "login": "alice"},
    }


@pytest.fixture
def sample_comment_payload(gitea_repository_json) -> Dict[str, Any]:
    """Gitea ``issue_comment`` webhook payload on a pull request."""
    return {
        "action": "created",
        "is_pull": True,
        "issue": {
            "id": 123,
            "number": 42,
            "title": "Add greeting",
            "body": "Greets the user by name.",
            "state": "open",
            "user": {"id": 7, "login": "alice"},
            "pull_request": {"merged": False},
        },
        "comment": {
            "id": 900,
            "body": "/oc please take a look",
            "user": {"id": 8, "login": "bob"},
            "created_at": "2024-01-15T12:00:00Z",
        },
        "repository": gitea_repository_json,
        "sender": {"id": 8, "login": "bob"},
    }


@pytest.fixture
def sample_diff() -> str:
    """Sample unified diff."""
    return SAMPLE_DIFF


@pytest.fixture
def post_webhook(client):
    """POST a signed Gitea webhook delivery."""
    def _post(payload: Dict[str, Any], event: str, secret: str = WEBHOOK_SECRET, **headers):
        body = json.dumps(payload).encode()
        all_headers = {
            "Content-Type": "application/json",
            "X-Gitea-Event": event,
            "X-Gitea-Delivery": "delivery-1",
            "X-Gitea-Signature": sign(body, secret),
        }
        all_headers.update(headers)
        return client.post("/webhook/gitea", content=body, headers=all_headers)

    return _post
