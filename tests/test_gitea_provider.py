"""
Tests for the Gitea Provider

Exercises the adapter against an in-process HTTP transport plus the pure
webhook helpers.
"""

import hashlib
import hmac
import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from forge_review.config import Settings
from forge_review.models import (
    LineComment,
    PullRequestClosedEvent,
    PullRequestCommentEvent,
    PullRequestOpenedEvent,
    PullRequestUpdatedEvent,
    ReviewDecision,
)
from forge_review.providers import (
    ForgeProvider,
    GiteaProvider,
    PartialReviewError,
    ProviderConfig,
    TransportError,
    create_provider,
    create_provider_from_settings,
    supported_providers,
)
from forge_review.providers.base import normalize_signature
from forge_review.providers.gitea import PAGE_SIZE, to_gitea_comment

WEBHOOK_SECRET = "test_secret"

REVIEW_JSON = {
    "id": 501,
    "body": "",
    "state": "COMMENT",
    "commit_id": "ccc333",
    "user": {"id": 99, "login": "review-bot"},
    "submitted_at": "2024-01-15T12:00:00Z",
}


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_provider(handler: Callable[[httpx.Request], httpx.Response], **config) -> GiteaProvider:
    return GiteaProvider(
        ProviderConfig(type="gitea", base_url="http://gitea.test/", token="test-token", **config),
        transport=httpx.MockTransport(handler),
    )


class Recorder:
    """Request handler that records calls and replays queued responses."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)

    def json_bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


class TestCommentMapping:
    """Test suite for comment position mapping."""

    def test_new_side(self):
        wire = to_gitea_comment(LineComment(path="a.py", new_line=12, body="x"))

        assert wire["new_position"] == 12
        assert wire["old_position"] == 0

    def test_old_side(self):
        wire = to_gitea_comment(LineComment(path="a.py", old_line=7, body="x"))

        assert wire["new_position"] == 0
        assert wire["old_position"] == 7

    def test_suggestion_is_rendered_into_body(self):
        wire = to_gitea_comment(LineComment(path="a.py", new_line=1, body="rename", suggestion="y = 1"))

        assert "```suggestion\ny = 1\n```" in wire["body"]


class TestReads:
    """Test suite for read operations."""

    async def test_get_pull_request(self, gitea_pr_json):
        recorder = Recorder(httpx.Response(200, json=gitea_pr_json))
        provider = make_provider(recorder)

        pr = await provider.get_pull_request("owner", "repo", 42)

        assert pr.number == 42
        assert pr.author.login == "alice"
        assert pr.head.sha == "ccc333"
        assert pr.created_at is not None

        request = recorder.requests[0]
        assert str(request.url) == "http://gitea.test/api/v1/repos/owner/repo/pulls/42"
        assert request.headers["authorization"] == "token test-token"

    async def test_get_repository(self, gitea_repository_json):
        provider = make_provider(Recorder(httpx.Response(200, json=gitea_repository_json)))

        repository = await provider.get_repository("owner", "repo")

        assert repository.full_name == "owner/repo"
        assert repository.owner == "owner"
        assert repository.url == "http://gitea.test/owner/repo"

    async def test_get_diff_as_text(self, sample_diff):
        recorder = Recorder(httpx.Response(200, text=sample_diff))
        provider = make_provider(recorder)

        diff = await provider.get_pull_request_diff("owner", "repo", 42)

        assert diff == sample_diff
        assert recorder.requests[0].url.path == "/api/v1/repos/owner/repo/pulls/42.diff"
        assert recorder.requests[0].headers["accept"] == "text/plain"

    async def test_compare_and_commit_diff_endpoints(self):
        recorder = Recorder(httpx.Response(200, text="diff"))
        provider = make_provider(recorder)

        await provider.get_compare_diff("owner", "repo", "aaa111", "ccc333")
        await provider.get_commit_diff("owner", "repo", "bbb222")

        assert [r.url.path for r in recorder.requests] == [
            "/api/v1/repos/owner/repo/compare/aaa111...ccc333.diff",
            "/api/v1/repos/owner/repo/git/commits/bbb222.diff",
        ]

    async def test_commits_are_paginated(self):
        def commit(i):
            return {
                "sha": f"sha{i}",
                "commit": {"message": f"commit {i}", "author": {"date": "2024-01-15T10:00:00Z"}},
            }

        recorder = Recorder(
            httpx.Response(200, json=[commit(i) for i in range(PAGE_SIZE)]),
            httpx.Response(200, json=[commit(PAGE_SIZE), commit(PAGE_SIZE + 1)]),
        )
        provider = make_provider(recorder)

        commits = await provider.get_pull_request_commits("owner", "repo", 42)

        assert len(commits) == PAGE_SIZE + 2
        assert commits[-1].sha == f"sha{PAGE_SIZE + 1}"
        assert commits[0].timestamp is not None
        assert [r.url.params["page"] for r in recorder.requests] == ["1", "2"]
        assert recorder.requests[0].url.params["limit"] == str(PAGE_SIZE)

    async def test_reviews_map_commit_and_author(self):
        provider = make_provider(Recorder(httpx.Response(200, json=[REVIEW_JSON])))

        reviews = await provider.get_pull_request_reviews("owner", "repo", 42)

        assert reviews[0].commit_sha == "ccc333"
        assert reviews[0].author_login == "review-bot"
        assert reviews[0].submitted_at is not None

    async def test_changed_files(self):
        files_json = [{"filename": "app/main.py", "status": "modified", "additions": 3, "deletions": 1}]
        provider = make_provider(Recorder(httpx.Response(200, json=files_json)))

        files = await provider.get_pull_request_files("owner", "repo", 42)

        assert files[0].filename == "app/main.py"
        assert files[0].total_lines == 4


class TestTransportErrors:
    """Test suite for error translation."""

    async def test_http_error_status(self):
        provider = make_provider(Recorder(httpx.Response(500, text="boom")))

        with pytest.raises(TransportError) as exc_info:
            await provider.get_pull_request("owner", "repo", 42)

        assert exc_info.value.status_code == 500
        assert exc_info.value.response_body == "boom"

    async def test_forbidden_mentions_permission(self):
        provider = make_provider(Recorder(httpx.Response(403, text="forbidden")))

        with pytest.raises(TransportError, match="permission"):
            await provider.create_comment("owner", "repo", 42, "hi")

    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        provider = make_provider(handler)

        with pytest.raises(TransportError) as exc_info:
            await provider.get_pull_request("owner", "repo", 42)

        assert exc_info.value.status_code is None

    async def test_network_error_retried_when_configured(self, gitea_pr_json):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json=gitea_pr_json)

        provider = make_provider(handler, max_attempts=2)

        pr = await provider.get_pull_request("owner", "repo", 42)

        assert pr.number == 42
        assert len(calls) == 2

    async def test_invalid_json(self):
        provider = make_provider(Recorder(httpx.Response(200, text="<html>")))

        with pytest.raises(TransportError, match="invalid JSON"):
            await provider.get_repository("owner", "repo")


class TestCreateReview:
    """Test suite for review submission."""

    COMMENTS = [
        LineComment(path="app/main.py", new_line=2, body="**[STYLE:LOW]** unused import"),
        LineComment(path="app/main.py", old_line=4, body="why drop this?", suggestion="print('Hello')"),
    ]

    async def test_line_comments_then_aggregate(self):
        recorder = Recorder(httpx.Response(200, json=REVIEW_JSON))
        provider = make_provider(recorder)

        record = await provider.create_review(
            "owner", "repo", 42,
            ReviewDecision.APPROVED,
            self.COMMENTS,
            body="Looks good",
            commit_id="ccc333",
        )

        assert record.id == 501
        assert all(r.url.path == "/api/v1/repos/owner/repo/pulls/42/reviews" for r in recorder.requests)

        first, second, aggregate = recorder.json_bodies()
        assert first["event"] == "COMMENT"
        assert first["comments"][0]["new_position"] == 2
        assert first["comments"][0]["old_position"] == 0
        assert second["comments"][0]["old_position"] == 4
        assert second["comments"][0]["new_position"] == 0
        assert "```suggestion" in second["comments"][0]["body"]
        assert aggregate == {"body": "Looks good", "event": "APPROVE", "commit_id": "ccc333"}

    async def test_without_comments_posts_only_the_review(self):
        recorder = Recorder(httpx.Response(200, json=REVIEW_JSON))
        provider = make_provider(recorder)

        await provider.create_review("owner", "repo", 42, ReviewDecision.REQUEST_CHANGES, [], body="No")

        assert recorder.json_bodies() == [{"body": "No", "event": "REQUEST_CHANGES"}]

    async def test_partial_failure_reports_submitted_count(self):
        recorder = Recorder(
            httpx.Response(200, json=REVIEW_JSON),
            httpx.Response(500, text="database is locked"),
        )
        provider = make_provider(recorder)

        with pytest.raises(PartialReviewError) as exc_info:
            await provider.create_review("owner", "repo", 42, ReviewDecision.COMMENT, self.COMMENTS)

        assert exc_info.value.submitted_count == 1
        assert exc_info.value.total_count == 2
        assert exc_info.value.status_code == 500

    async def test_failure_before_any_comment_is_plain_transport_error(self):
        provider = make_provider(Recorder(httpx.Response(502, text="bad gateway")))

        with pytest.raises(TransportError) as exc_info:
            await provider.create_review("owner", "repo", 42, ReviewDecision.COMMENT, self.COMMENTS)

        assert not isinstance(exc_info.value, PartialReviewError)

    async def test_create_line_comment_keeps_path(self):
        provider = make_provider(Recorder(httpx.Response(200, json=REVIEW_JSON)))

        comment = await provider.create_line_comment("owner", "repo", 42, self.COMMENTS[0])

        assert comment.id == 501
        assert comment.path == "app/main.py"

    async def test_create_comment(self):
        recorder = Recorder(httpx.Response(201, json={"id": 7, "body": "hi", "user": {"login": "review-bot"}}))
        provider = make_provider(recorder)

        comment = await provider.create_comment("owner", "repo", 42, "hi")

        assert comment.body == "hi"
        assert recorder.requests[0].url.path == "/api/v1/repos/owner/repo/issues/42/comments"


class TestWebhookSignature:
    """Test suite for signature verification."""

    PAYLOAD = b'{"action": "opened"}'

    def setup_method(self):
        self.provider = make_provider(Recorder(httpx.Response(200)))

    def test_bare_hex(self):
        assert self.provider.verify_webhook_signature(self.PAYLOAD, sign(self.PAYLOAD), WEBHOOK_SECRET)

    def test_prefixed(self):
        signature = f"sha256={sign(self.PAYLOAD).upper()}"

        assert self.provider.verify_webhook_signature(self.PAYLOAD, signature, WEBHOOK_SECRET)

    @pytest.mark.parametrize("signature", [
        "0" * 64,
        "not-hex-at-all",
        "sha1=abcdef",
        "",
    ])
    def test_rejected(self, signature):
        assert not self.provider.verify_webhook_signature(self.PAYLOAD, signature, WEBHOOK_SECRET)

    def test_wrong_secret(self):
        signature = sign(self.PAYLOAD, "other_secret")

        assert not self.provider.verify_webhook_signature(self.PAYLOAD, signature, WEBHOOK_SECRET)

    def test_tampered_payload(self):
        signature = sign(self.PAYLOAD)

        assert not self.provider.verify_webhook_signature(b'{"action": "closed"}', signature, WEBHOOK_SECRET)

    def test_non_ascii_characters_are_not_ignored(self):
        digest = sign(self.PAYLOAD)
        signature = digest[:10] + "é" + digest[10:]

        assert not self.provider.verify_webhook_signature(self.PAYLOAD, signature, WEBHOOK_SECRET)

    @pytest.mark.parametrize("signature,expected", [
        (f"sha256={'AB' * 32}", "ab" * 32),
        (f"  {'0f' * 32}\n", "0f" * 32),
        ("ab" * 31, None),
        ("ab" * 33, None),
        ("zz" * 32, None),
        ("sha512=" + "ab" * 32, None),
        (None, None),
    ])
    def test_normalize_signature(self, signature, expected):
        assert normalize_signature(signature) == expected


class TestParseWebhookEvent:
    """Test suite for webhook normalization."""

    def setup_method(self):
        self.provider = make_provider(Recorder(httpx.Response(200)))

    def headers(self, event: str) -> Dict[str, str]:
        return {"X-Gitea-Event": event, "X-Gitea-Delivery": "delivery-9"}

    @pytest.mark.parametrize("action", ["opened", "reopened"])
    def test_opened(self, sample_pr_payload, action):
        sample_pr_payload["action"] = action

        event = self.provider.parse_webhook_event(sample_pr_payload, self.headers("pull_request"))

        assert isinstance(event, PullRequestOpenedEvent)
        assert event.id == "delivery-9"
        assert event.repository.full_name == "owner/repo"
        assert event.pull_request.number == 42
        assert event.pull_request.head.sha == "ccc333"
        assert event.sender.login == "alice"

    def test_synchronized(self, sample_pr_payload):
        sample_pr_payload["action"] = "synchronized"
        sample_pr_payload["before"] = "bbb222"

        event = self.provider.parse_webhook_event(sample_pr_payload, self.headers("pull_request"))

        assert isinstance(event, PullRequestUpdatedEvent)
        assert event.before == "bbb222"

    def test_closed_merged(self, sample_pr_payload):
        sample_pr_payload["action"] = "closed"
        sample_pr_payload["pull_request"]["merged"] = True

        event = self.provider.parse_webhook_event(sample_pr_payload, self.headers("pull_request"))

        assert isinstance(event, PullRequestClosedEvent)
        assert event.merged is True

    def test_other_pull_request_action_is_ignored(self, sample_pr_payload):
        sample_pr_payload["action"] = "label_updated"

        assert self.provider.parse_webhook_event(sample_pr_payload, self.headers("pull_request")) is None

    def test_comment_on_pull_request(self, sample_comment_payload):
        event = self.provider.parse_webhook_event(sample_comment_payload, self.headers("issue_comment"))

        assert isinstance(event, PullRequestCommentEvent)
        assert event.action == "created"
        assert event.triggers == {"/oc"}
        assert event.comment.user.login == "bob"
        assert event.pull_request.number == 42
        assert event.pull_request.author.login == "alice"

    def test_comment_with_embedded_pull_request(self, sample_comment_payload, gitea_pr_json):
        sample_comment_payload["pull_request"] = gitea_pr_json

        event = self.provider.parse_webhook_event(sample_comment_payload, self.headers("pull_request_comment"))

        assert isinstance(event, PullRequestCommentEvent)
        assert event.pull_request.head.sha == "ccc333"

    def test_plain_issue_comment_is_ignored(self, sample_comment_payload):
        del sample_comment_payload["issue"]["pull_request"]

        assert self.provider.parse_webhook_event(sample_comment_payload, self.headers("issue_comment")) is None

    def test_unknown_event(self, sample_pr_payload):
        assert self.provider.parse_webhook_event(sample_pr_payload, self.headers("push")) is None

    def test_missing_event_header(self, sample_pr_payload):
        assert self.provider.parse_webhook_event(sample_pr_payload, {}) is None

    @pytest.mark.parametrize("payload", [
        [],
        "text",
        {"action": "opened", "pull_request": {"id": 1}},
        {"action": "opened", "pull_request": {"number": 1}, "repository": {"full_name": "o/r"}},
    ])
    def test_malformed_payload_is_none(self, payload):
        assert self.provider.parse_webhook_event(payload, self.headers("pull_request")) is None

    def test_delivery_id_is_generated(self, sample_pr_payload):
        event = self.provider.parse_webhook_event(sample_pr_payload, {"X-Gitea-Event": "pull_request"})

        assert event is not None
        assert event.id


class TestProviderFactory:
    """Test suite for provider construction."""

    def test_gitea(self):
        provider = create_provider(
            ProviderConfig(type="gitea", base_url="http://gitea.test", token="t"),
            trigger_keywords=["/review"],
        )

        assert isinstance(provider, GiteaProvider)
        assert isinstance(provider, ForgeProvider)
        assert provider.trigger_keywords == ("/review",)

    @pytest.mark.parametrize("provider_type", ["github", "gitlab"])
    def test_declared_but_unimplemented(self, provider_type):
        config = ProviderConfig(type=provider_type, base_url="http://forge.test", token="t")

        with pytest.raises(NotImplementedError):
            create_provider(config)

    def test_supported_providers(self):
        assert [p.value for p in supported_providers()] == ["gitea"]

    def test_from_settings(self, settings: Settings):
        provider = create_provider_from_settings(settings)

        assert isinstance(provider, GiteaProvider)
        assert provider.base_url == "http://gitea.test"
        assert provider.trigger_keywords == ("/oc", "/opencode")
