from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
import logging
from typing import Literal

from reviewloop import labels
from reviewloop.ci_monitor import check_ci
from reviewloop.comment_tags import tag_body
from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import CIVerdict, PullRequestTask
from reviewloop.observability import log_event, log_warning


LOGGER = logging.getLogger("reviewloop.ci_handler")

CIOutcome = Literal["passed", "failed", "timed_out", "pending"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def handle_ci_pending(
    github: GitHubGateway,
    task: PullRequestTask,
    *,
    ci_timeout_seconds: int,
    now: Callable[[], datetime] = _utc_now,
) -> CIOutcome:
    """Settle one ``bot-ci-pending`` PR from its head commit's checks.

    Unlike the review and write pipelines this handler posts no error comment:
    exceptions propagate to the dispatcher, which logs ``pipeline_failed``, and
    the PR keeps its label so the next poll retries. A transient GitHub outage
    would otherwise add a comment on every tick.
    """
    verdict = check_ci(github, task.head_branch)
    log_event(
        LOGGER,
        "ci_verdict",
        pr=task.display_name,
        state=verdict.state,
        summary=verdict.summary,
    )

    if verdict.state == "passed":
        github.post_issue_comment(
            task.number,
            tag_body(f"## CI Passed\n\n{verdict.summary}\n\nProceeding to review."),
        )
        labels.transition(github, task, source=labels.CI_PENDING, target=labels.REVIEW_NEEDED)
        return "passed"

    if verdict.state == "failed":
        github.post_issue_comment(task.number, tag_body(format_ci_failure(verdict)))
        labels.transition(github, task, source=labels.CI_PENDING, target=labels.CHANGES_NEEDED)
        return "failed"

    committed_at = github.get_commit_timestamp(task.head_branch)
    if committed_at is None:
        log_warning(LOGGER, "ci_commit_timestamp_missing", pr=task.display_name)
        return "pending"

    elapsed = now() - _parse_timestamp(committed_at)
    timeout = timedelta(seconds=ci_timeout_seconds)
    if elapsed > timeout:
        minutes = round(ci_timeout_seconds / 60)
        github.post_issue_comment(
            task.number,
            tag_body(
                f"## CI Timeout\n\nCI has been pending for over {minutes} minutes since the "
                f"last commit. Sending back for fixes.\n\n{verdict.summary}"
            ),
        )
        labels.transition(github, task, source=labels.CI_PENDING, target=labels.CHANGES_NEEDED)
        log_event(
            LOGGER,
            "ci_timed_out",
            pr=task.display_name,
            elapsed_seconds=int(elapsed.total_seconds()),
        )
        return "timed_out"

    return "pending"


def format_ci_failure(verdict: CIVerdict) -> str:
    lines = []
    for check in verdict.failed_checks:
        link = f" ([details]({check.url}))" if check.url else ""
        lines.append(f"- **{check.name}**: {check.conclusion}{link}")
    check_list = "\n".join(lines)
    return f"## CI Failed\n\n{verdict.summary}\n\n{check_list}\n\nSending back for fixes."


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed
