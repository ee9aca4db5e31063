"""
Data Models Module

This module defines all Pydantic models used throughout the application.
Strong typing ensures data integrity and provides clear contracts between components.

Design Decisions:
- Use Pydantic models for all data transfer objects
- Canonical forge models are provider-neutral; adapters map into them
- Webhook events are a discriminated union keyed on ``type``
- Line comments enforce exactly one diff side at construction time
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class ProviderType(str, Enum):
    """Supported forge platforms."""
    GITEA = "gitea"
    GITHUB = "github"
    GITLAB = "gitlab"


class ChangeType(str, Enum):
    """Kind of line inside a diff hunk."""
    ADD = "add"
    DELETE = "del"
    CONTEXT = "context"


class FileStatus(str, Enum):
    """Change status of a file in a diff."""
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class ReviewDecision(str, Enum):
    """Canonical review decision; providers map it to their own vocabulary."""
    APPROVED = "APPROVED"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    COMMENT = "COMMENT"


class ReviewStatus(str, Enum):
    """Lifecycle of a single review attempt."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScopeKind(str, Enum):
    """What part of a pull request needs reviewing."""
    FIRST = "first"
    INCREMENTAL = "incremental"
    REBASE = "rebase"
    UP_TO_DATE = "up_to_date"


class WebhookEventType(str, Enum):
    """Canonical webhook event types."""
    OPENED = "pull_request.opened"
    UPDATED = "pull_request.updated"
    CLOSED = "pull_request.closed"
    COMMENT = "pull_request.comment"


class ReviewCategory(str, Enum):
    """Categories for structured review tags."""
    BUG = "BUG"
    SECURITY = "SECURITY"
    PERFORMANCE = "PERFORMANCE"
    STYLE = "STYLE"
    DOCS = "DOCS"
    TEST = "TEST"
    LOGIC = "LOGIC"
    REFACTOR = "REFACTOR"


class ReviewSeverity(str, Enum):
    """Severity levels for structured review tags."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


# =============================================================================
# Forge Models
# =============================================================================

class User(BaseModel):
    """Forge user information."""
    id: int = 0
    login: str = ""
    avatar_url: Optional[str] = None


class Repository(BaseModel):
    """Forge repository information."""
    id: int
    name: str
    full_name: str
    description: Optional[str] = None
    default_branch: str = "main"
    private: bool = False
    url: str = ""

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]


class BranchRef(BaseModel):
    """One side (base or head) of a pull request."""
    ref: str = ""
    sha: str = ""


class PullRequest(BaseModel):
    """Pull request information."""
    id: int
    number: int
    title: str = ""
    body: Optional[str] = None
    state: str = "open"
    author: User = Field(default_factory=User)
    base: BranchRef = Field(default_factory=BranchRef)
    head: BranchRef = Field(default_factory=BranchRef)
    merged: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ChangedFile(BaseModel):
    """
    Information about a file in a pull request.

    Attributes:
        filename: Path to the file in the repository
        status: Change status (added, modified, deleted, renamed)
        additions: Number of added lines
        deletions: Number of deleted lines
        patch: Unified diff patch (may be None for binary files)
    """
    filename: str
    status: str = FileStatus.MODIFIED.value
    additions: int = 0
    deletions: int = 0
    patch: Optional[str] = None

    @property
    def total_lines(self) -> int:
        """Get total number of changed lines."""
        return self.additions + self.deletions


class Commit(BaseModel):
    """A commit belonging to a pull request."""
    model_config = ConfigDict(frozen=True)

    sha: str
    timestamp: Optional[datetime] = None
    message: str = ""


class ReviewRecord(BaseModel):
    """
    A review as stored on the forge.

    Only used to find the last reviewed commit; this service does not own it.
    """
    id: int
    author_login: str = ""
    commit_sha: Optional[str] = None
    submitted_at: Optional[datetime] = None
    state: str = ""
    body: str = ""


class Comment(BaseModel):
    """A comment on a pull request, either issue-level or on a diff line."""
    id: int
    body: str = ""
    user: User = Field(default_factory=User)
    path: Optional[str] = None
    created_at: Optional[datetime] = None


# =============================================================================
# Diff Models
# =============================================================================

class Change(BaseModel):
    """
    A single line inside a hunk.

    Attributes:
        type: add, del or context
        content: Line text without the diff marker
        old_line: Line number in the old file (None for additions)
        new_line: Line number in the new file (None for deletions)
    """
    type: ChangeType
    content: str
    old_line: Optional[int] = None
    new_line: Optional[int] = None


class Hunk(BaseModel):
    """
    A contiguous block of a unified diff.

    ``old_count``/``new_count`` are the lengths declared in the header. They
    are recorded for validation only; line numbering uses the start offsets.
    """
    old_start: int = Field(ge=0)
    new_start: int = Field(ge=0)
    old_count: int = Field(default=1, ge=0)
    new_count: int = Field(default=1, ge=0)
    changes: List[Change] = Field(default_factory=list)


class FileDiff(BaseModel):
    """Parsed diff for a single file."""
    path: str
    status: FileStatus = FileStatus.MODIFIED
    old_path: Optional[str] = None
    hunks: List[Hunk] = Field(default_factory=list)

    @property
    def additions(self) -> int:
        return sum(1 for h in self.hunks for c in h.changes if c.type == ChangeType.ADD)

    @property
    def deletions(self) -> int:
        return sum(1 for h in self.hunks for c in h.changes if c.type == ChangeType.DELETE)


# =============================================================================
# Review Comment Models
# =============================================================================

class LineComment(BaseModel):
    """
    A review comment anchored to exactly one side of the diff.

    ``new_line`` addresses the new file (added or context lines),
    ``old_line`` addresses the old file (deleted lines). Setting both or
    neither is rejected.
    """
    path: str = Field(min_length=1)
    body: str = Field(min_length=1)
    old_line: Optional[int] = Field(default=None, ge=1)
    new_line: Optional[int] = Field(default=None, ge=1)
    suggestion: Optional[str] = None

    @model_validator(mode="after")
    def check_single_side(self) -> "LineComment":
        if (self.old_line is None) == (self.new_line is None):
            raise ValueError("exactly one of old_line or new_line must be set")
        return self

    @property
    def line(self) -> int:
        return self.new_line if self.new_line is not None else self.old_line

    @property
    def side(self) -> str:
        return "RIGHT" if self.new_line is not None else "LEFT"


class ReviewTag(BaseModel):
    """Structured ``[CATEGORY:SEVERITY]`` tag parsed from a comment body."""
    model_config = ConfigDict(frozen=True)

    category: ReviewCategory
    severity: ReviewSeverity


class IssueRecord(BaseModel):
    """A tagged issue collected while aggregating review statistics."""
    category: ReviewCategory
    severity: ReviewSeverity
    file: str
    description: str
    has_suggestion: bool = False


class ReviewOutcome(BaseModel):
    """Decoded reviewer output, ready to submit to a forge."""
    decision: ReviewDecision = ReviewDecision.COMMENT
    summary: str = ""
    comments: List[LineComment] = Field(default_factory=list)


# =============================================================================
# Webhook Event Models
# =============================================================================

class EventRepository(BaseModel):
    """Repository reference carried by every webhook event."""
    full_name: str
    url: str = ""

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.full_name.split("/", 1)[-1]


class BaseWebhookEvent(BaseModel):
    """Fields shared by every canonical webhook event."""
    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    provider: ProviderType
    repository: EventRepository
    sender: User
    pull_request: PullRequest


class PullRequestOpenedEvent(BaseWebhookEvent):
    type: Literal["pull_request.opened"] = "pull_request.opened"


class PullRequestUpdatedEvent(BaseWebhookEvent):
    type: Literal["pull_request.updated"] = "pull_request.updated"
    before: Optional[str] = None


class PullRequestClosedEvent(BaseWebhookEvent):
    type: Literal["pull_request.closed"] = "pull_request.closed"
    merged: bool = False


class PullRequestCommentEvent(BaseWebhookEvent):
    type: Literal["pull_request.comment"] = "pull_request.comment"
    action: str = "created"
    comment: Comment
    triggers: FrozenSet[str] = frozenset()


WebhookEvent = Annotated[
    Union[
        PullRequestOpenedEvent,
        PullRequestUpdatedEvent,
        PullRequestClosedEvent,
        PullRequestCommentEvent,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# Internal Processing Models
# =============================================================================

class ReviewScope(BaseModel):
    """Result of comparing a pull request's commits with its past reviews."""
    kind: ScopeKind
    last_reviewed_sha: Optional[str] = None
    new_commits: List[Commit] = Field(default_factory=list)


class ReviewContext(BaseModel):
    """
    Everything the reviewer needs to review a pull request.

    This is the payload handed to the external Reviewer capability.
    """
    owner: str
    repo: str
    pull_request: PullRequest
    scope: ReviewScope
    files: List[FileDiff] = Field(default_factory=list)
    diff_text: str = ""
    language: str = "en"

    @property
    def full_repo_name(self) -> str:
        """Get the full repository name (owner/repo)."""
        return f"{self.owner}/{self.repo}"


class ReviewJob(BaseModel):
    """
    Status record for one review attempt.

    Owned exclusively by the task that runs the review.
    """
    id: str = Field(description="Unique job identifier")
    provider: ProviderType = ProviderType.GITEA
    repository: str
    pr_number: int
    pr_title: Optional[str] = None
    pr_author: Optional[str] = None
    status: ReviewStatus = ReviewStatus.PENDING
    scope: Optional[ScopeKind] = None
    decision: Optional[ReviewDecision] = None
    summary: Optional[str] = None
    comments_count: int = 0
    health_score: Optional[int] = None
    error: Optional[str] = None
    triggered_by: str = "webhook"
    full_review: bool = Field(
        default=False,
        description="Review the whole pull request even if its head was already reviewed"
    )
    webhook_event_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
