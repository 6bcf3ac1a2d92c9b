"""Data models and enums for bonk."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum


class RunState(StrEnum):
    """Lifecycle of a tracked workflow run. Everything but POLLING is terminal."""

    POLLING = "polling"
    SUCCESS = "terminal-success"
    FAILURE = "terminal-failure"
    CANCELLED = "terminal-cancelled"
    TIMEOUT = "terminal-timeout"
    UNKNOWN = "terminal-unknown"

    @property
    def is_terminal(self) -> bool:
        return self is not RunState.POLLING

    @classmethod
    def from_conclusion(cls, conclusion: str | None) -> RunState:
        return {
            "success": cls.SUCCESS,
            "failure": cls.FAILURE,
            "cancelled": cls.CANCELLED,
            "timeout": cls.TIMEOUT,
        }.get(conclusion or "", cls.UNKNOWN)


class Mode(StrEnum):
    DIRECT = "direct"
    WORKFLOW = "workflow"


@dataclass
class PendingCorrelation:
    """Delegated work waiting for the workflow run that will carry it out."""

    actor: str
    timestamp: str
    issue_number: int
    created_at: float

    @property
    def key(self) -> str:
        return correlation_key(self.actor, self.timestamp)


def correlation_key(actor: str, timestamp: str) -> str:
    return f"{actor}:{timestamp}"


@dataclass
class TrackedRun:
    run_id: int
    run_url: str
    issue_number: int
    created_at: float
    state: RunState = RunState.POLLING

    def to_payload(self) -> dict:
        return {
            "run_id": self.run_id,
            "run_url": self.run_url,
            "issue_number": self.issue_number,
            "created_at": self.created_at,
        }


@dataclass
class RunStatus:
    status: str
    conclusion: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


@dataclass
class ReviewCommentContext:
    file: str
    diff_hunk: str
    line: int | None = None
    original_line: int | None = None
    position: int | None = None
    commit_id: str = ""
    original_commit_id: str = ""


@dataclass
class EventContext:
    """Where a request came from and who asked for it."""

    owner: str
    repo: str
    issue_number: int
    actor: str
    is_pull_request: bool = False
    is_private: bool = False
    default_branch: str = "main"
    head_branch: str | None = None
    head_sha: str | None = None

    @property
    def full_repo(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def issue_ref(self) -> str:
        return f"{self.full_repo}#{self.issue_number}"


@dataclass
class ParsedRequest:
    context: EventContext
    prompt: str
    trigger_comment_id: int
    trigger_timestamp: str = ""
    review_context: ReviewCommentContext | None = None


@dataclass
class ModelConfig:
    provider_id: str
    model_id: str

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


@dataclass
class AgentResult:
    response: str
    changed_files: list[str] = field(default_factory=list)
    session_id: str = ""
    session_link: str | None = None
    new_branch: str | None = None
    summary: str = ""
    cost_usd: float = 0.0
    turns_used: int = 0


@dataclass
class WorkflowResult:
    success: bool
    message: str
    pr_url: str | None = None


@dataclass
class ReviewComment:
    id: int
    author: str
    body: str
    path: str | None = None
    line: int | None = None
    created_at: str | None = None
