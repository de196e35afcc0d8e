from __future__ import annotations

from collections.abc import Sequence

from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import CheckRunSnapshot, CIVerdict, CommitStatusSnapshot, FailedCheck


FAILING_CHECK_CONCLUSIONS = frozenset({"failure", "cancelled", "timed_out"})
FAILING_STATUS_STATES = frozenset({"failure", "error"})
NO_CI_SUMMARY = "No CI checks configured; treating as passed."


def evaluate_ci(
    check_runs: Sequence[CheckRunSnapshot], statuses: Sequence[CommitStatusSnapshot]
) -> CIVerdict:
    if not check_runs and not statuses:
        return CIVerdict(state="passed", summary=NO_CI_SUMMARY)

    failed: list[FailedCheck] = []
    for run in check_runs:
        if run.status != "completed":
            continue
        conclusion = run.conclusion or "unknown"
        if conclusion in FAILING_CHECK_CONCLUSIONS:
            failed.append(FailedCheck(name=run.name, conclusion=conclusion, url=run.html_url))
    for status in statuses:
        if status.state in FAILING_STATUS_STATES:
            failed.append(
                FailedCheck(name=status.context, conclusion=status.state, url=status.target_url)
            )

    if failed:
        names = ", ".join(check.name for check in failed)
        return CIVerdict(state="failed", summary=f"CI failed: {names}", failed_checks=tuple(failed))

    completed_runs = sum(1 for run in check_runs if run.status == "completed")
    completed_statuses = sum(1 for status in statuses if status.state != "pending")
    if completed_runs < len(check_runs) or completed_statuses < len(statuses):
        return CIVerdict(
            state="pending",
            summary=(
                f"CI in progress: {completed_runs}/{len(check_runs)} check runs, "
                f"{completed_statuses}/{len(statuses)} statuses completed."
            ),
        )

    total = len(check_runs) + len(statuses)
    return CIVerdict(state="passed", summary=f"All {total} CI checks passed.")


def check_ci(github: GitHubGateway, ref: str) -> CIVerdict:
    return evaluate_ci(github.list_check_runs(ref), github.list_commit_statuses(ref))
