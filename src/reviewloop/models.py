from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


BotLabel = Literal[
    "bot-review-needed",
    "bot-changes-needed",
    "bot-ci-pending",
    "human-review-needed",
    "bot-human-intervention",
]
CIState = Literal["passed", "failed", "pending"]
Platform = Literal["ios", "android", "golang", "react"]
PipelineKind = Literal["review", "write", "ci"]


@dataclass(frozen=True)
class PullRequestTask:
    owner: str
    repo: str
    number: int
    head_branch: str
    base_branch: str
    title: str

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.owner, self.repo, self.number)

    @property
    def display_name(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    head_ref: str
    head_sha: str
    base_ref: str
    state: str
    labels: tuple[str, ...]


@dataclass(frozen=True)
class PullRequestIssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str


@dataclass(frozen=True)
class PullRequestReviewComment:
    comment_id: int
    body: str
    path: str
    line: int | None
    in_reply_to_id: int | None
    user_login: str
    html_url: str
    created_at: str


@dataclass(frozen=True)
class CommentTag:
    thread_id: str
    cycle_id: str | None = None


@dataclass(frozen=True)
class ReviewComment:
    path: str | None
    line: int | None
    body: str

    @property
    def is_inline(self) -> bool:
        return self.path is not None and self.line is not None


@dataclass(frozen=True)
class ThreadVerdict:
    thread_id: str
    resolved: bool
    response: str | None = None


@dataclass(frozen=True)
class ArchitectureUpdate:
    needed: bool
    reason: str | None = None


@dataclass(frozen=True)
class ReviewPassResult:
    comments: tuple[ReviewComment, ...]
    thread_verdicts: tuple[ThreadVerdict, ...]
    summary: str | None
    architecture_update: ArchitectureUpdate


@dataclass(frozen=True)
class MergedReviewResult:
    comments: tuple[ReviewComment, ...]
    thread_verdicts: tuple[ThreadVerdict, ...]
    architecture_update: ArchitectureUpdate
    summary: str

    @property
    def has_unresolved(self) -> bool:
        return any(not verdict.resolved for verdict in self.thread_verdicts)


@dataclass(frozen=True)
class AddressedThread:
    thread_id: str
    explanation: str


@dataclass(frozen=True)
class FixResult:
    threads_addressed: tuple[AddressedThread, ...]
    build_passed: bool
    summary: str


@dataclass(frozen=True)
class ResolvedConflict:
    file: str
    explanation: str


@dataclass(frozen=True)
class ConflictResult:
    conflicts_resolved: tuple[ResolvedConflict, ...]
    build_passed: bool
    summary: str


@dataclass(frozen=True)
class CheckRunSnapshot:
    name: str
    status: str
    conclusion: str | None
    html_url: str | None


@dataclass(frozen=True)
class CommitStatusSnapshot:
    context: str
    state: str
    target_url: str | None


@dataclass(frozen=True)
class FailedCheck:
    name: str
    conclusion: str
    url: str | None


@dataclass(frozen=True)
class CIVerdict:
    state: CIState
    summary: str
    failed_checks: tuple[FailedCheck, ...] = ()


@dataclass(frozen=True)
class BuildResult:
    success: bool
    output: str
