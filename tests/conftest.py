from __future__ import annotations

from collections.abc import Callable, Iterator
import logging
from pathlib import Path

import pytest

from reviewloop.agent_adapter import AgentAdapter, AgentRequest, AgentRun
from reviewloop.config import AgentConfig, AppConfig, BotIdentityConfig, RepoConfig, RuntimeConfig
from reviewloop.github_gateway import GitHubApiError, GitHubNotFoundError
from reviewloop.labels import BOT_LABELS
from reviewloop.models import (
    CheckRunSnapshot,
    CommitStatusSnapshot,
    PullRequestIssueComment,
    PullRequestReviewComment,
    PullRequestSnapshot,
    PullRequestTask,
    ReviewComment,
)


class FakeGitHub:
    """In-memory stand-in for GitHubGateway that records every write."""

    def __init__(self, owner: str = "o", name: str = "r") -> None:
        self.owner = owner
        self.name = name
        self.labels: dict[int, set[str]] = {}
        self.pull_requests: dict[int, PullRequestSnapshot] = {}
        self.files: dict[int, tuple[str, ...]] = {}
        self.existing_issue_comments: list[PullRequestIssueComment] = []
        self.existing_review_comments: list[PullRequestReviewComment] = []
        self.issue_comments: list[tuple[int, str]] = []
        self.review_replies: list[tuple[int, int, str]] = []
        self.reviews: list[tuple[int, str, tuple[ReviewComment, ...]]] = []
        self.label_calls: list[tuple[str, int, str]] = []
        self.missing_reply_targets: set[int] = set()
        self.fail_batch_review = False
        self.unresolvable_paths: set[str] = set()
        self.fail_issue_comments = False
        self.check_runs: tuple[CheckRunSnapshot, ...] = ()
        self.statuses: tuple[CommitStatusSnapshot, ...] = ()
        self.commit_timestamp: str | None = None
        self.listing_errors: set[str] = set()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_pull_requests_with_label(self, label: str) -> list[int]:
        if label in self.listing_errors:
            raise RuntimeError(f"listing failed for {label}")
        return sorted(number for number, names in self.labels.items() if label in names)

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        snapshot = self.pull_requests[pr_number]
        return PullRequestSnapshot(
            number=snapshot.number,
            title=snapshot.title,
            head_ref=snapshot.head_ref,
            head_sha=snapshot.head_sha,
            base_ref=snapshot.base_ref,
            state=snapshot.state,
            labels=tuple(sorted(self.labels.get(pr_number, set()))),
        )

    def list_pull_request_files(self, pr_number: int) -> tuple[str, ...]:
        return self.files.get(pr_number, ())

    def list_issue_comments(self, issue_number: int) -> list[PullRequestIssueComment]:
        _ = issue_number
        return list(self.existing_issue_comments)

    def list_pull_request_review_comments(self, pr_number: int) -> list[PullRequestReviewComment]:
        _ = pr_number
        return list(self.existing_review_comments)

    def add_label(self, issue_number: int, label: str) -> None:
        self.label_calls.append(("add", issue_number, label))
        self.labels.setdefault(issue_number, set()).add(label)

    def remove_label(self, issue_number: int, label: str) -> bool:
        self.label_calls.append(("remove", issue_number, label))
        present = self.labels.get(issue_number, set())
        if label not in present:
            return False
        present.discard(label)
        return True

    def create_review(
        self, pr_number: int, *, body: str, comments: tuple[ReviewComment, ...] = ()
    ) -> None:
        if self.fail_batch_review and len(comments) > 1:
            raise GitHubApiError("Line could not be resolved", status_code=422)
        if any(comment.path in self.unresolvable_paths for comment in comments):
            raise GitHubApiError("Line could not be resolved", status_code=422)
        self.reviews.append((pr_number, body, tuple(comments)))

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        if self.fail_issue_comments:
            raise GitHubApiError("comment failed", status_code=500)
        self.issue_comments.append((issue_number, body))

    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> None:
        if review_comment_id in self.missing_reply_targets:
            raise GitHubNotFoundError("Not Found", status_code=404)
        self.review_replies.append((pr_number, review_comment_id, body))

    def list_check_runs(self, ref: str) -> tuple[CheckRunSnapshot, ...]:
        _ = ref
        return self.check_runs

    def list_commit_statuses(self, ref: str) -> tuple[CommitStatusSnapshot, ...]:
        _ = ref
        return self.statuses

    def get_commit_timestamp(self, ref: str) -> str | None:
        _ = ref
        return self.commit_timestamp

    def bot_labels(self, pr_number: int) -> set[str]:
        return {label for label in self.labels.get(pr_number, set()) if label in BOT_LABELS}


class FakeAgent(AgentAdapter):
    """Returns queued outputs in order and records each request."""

    def __init__(self, outputs: list[str] | None = None) -> None:
        self.outputs = list(outputs or [])
        self.requests: list[AgentRequest] = []
        self.on_invoke: Callable[[AgentRequest], None] | None = None

    def invoke(self, request: AgentRequest) -> AgentRun:
        self.requests.append(request)
        if self.on_invoke is not None:
            self.on_invoke(request)
        output = self.outputs.pop(0) if self.outputs else ""
        return AgentRun(run_id=f"run-{len(self.requests)}", output=output)


class FakeCheckouts:
    """Stands in for CheckoutManager without touching git."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.calls: list[str] = []
        self.conflicts: tuple[str, ...] = ()
        self.merge_clean = False
        self.remaining_markers: tuple[str, ...] = ()
        self.changes = True
        self.commit_messages: list[str] = []
        self.push_error: Exception | None = None
        self.clone_error: Exception | None = None
        self.shallow: list[bool] = []

    def clone_pull_request(self, task: PullRequestTask, *, shallow: bool = True) -> Path:
        self.calls.append("clone")
        self.shallow.append(shallow)
        if self.clone_error is not None:
            raise self.clone_error
        path = self.root / f"review-{task.number}-{len(self.shallow)}"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def prune_checkouts(self, keep: int | None = None) -> int:
        _ = keep
        self.calls.append("prune")
        return 0

    def fetch_base(self, checkout_path: Path, base_branch: str) -> None:
        _ = checkout_path
        self.calls.append(f"fetch:{base_branch}")

    def find_merge_conflicts(self, checkout_path: Path, base_branch: str) -> tuple[str, ...]:
        _ = checkout_path, base_branch
        self.calls.append("find_conflicts")
        return self.conflicts

    def start_merge(self, checkout_path: Path, base_branch: str) -> bool:
        _ = checkout_path, base_branch
        self.calls.append("start_merge")
        return self.merge_clean

    def files_with_conflict_markers(self, checkout_path: Path) -> tuple[str, ...]:
        _ = checkout_path
        self.calls.append("marker_scan")
        return self.remaining_markers

    def abort_merge(self, checkout_path: Path) -> None:
        _ = checkout_path
        self.calls.append("abort_merge")

    def complete_merge(self, checkout_path: Path) -> None:
        _ = checkout_path
        self.calls.append("complete_merge")

    def has_changes(self, checkout_path: Path) -> bool:
        _ = checkout_path
        return self.changes

    def commit_and_push(self, checkout_path: Path, message: str) -> None:
        _ = checkout_path
        self.calls.append("commit_and_push")
        if self.push_error is not None:
            raise self.push_error
        self.commit_messages.append(message)


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def fake_checkouts(tmp_path: Path) -> FakeCheckouts:
    return FakeCheckouts(tmp_path / "checkouts")


@pytest.fixture
def task() -> PullRequestTask:
    return PullRequestTask(
        owner="o",
        repo="r",
        number=7,
        head_branch="feature/x",
        base_branch="main",
        title="Add widget",
    )


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path / "state", poll_interval_seconds=5),
        agent=AgentConfig(),
        bot=BotIdentityConfig(),
        repos=(RepoConfig(repo_id="r", owner="o", name="r"),),
    )


@pytest.fixture
def review_comment_factory() -> Callable[..., PullRequestReviewComment]:
    def make(
        comment_id: int,
        body: str,
        *,
        in_reply_to_id: int | None = None,
        path: str = "src/a.go",
        line: int | None = 3,
    ) -> PullRequestReviewComment:
        return PullRequestReviewComment(
            comment_id=comment_id,
            body=body,
            path=path,
            line=line,
            in_reply_to_id=in_reply_to_id,
            user_login="review-bot",
            html_url=f"https://example/c/{comment_id}",
            created_at="2026-01-01T00:00:00Z",
        )

    return make


@pytest.fixture(autouse=True)
def restore_reviewloop_logger_state() -> Iterator[None]:
    logger = logging.getLogger("reviewloop")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate
