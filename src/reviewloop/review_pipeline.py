from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging

from reviewloop import labels
from reviewloop.agent_adapter import AgentAdapter, AgentRequest
from reviewloop.agent_results import parse_review_pass
from reviewloop.build_runner import run_build_and_tests
from reviewloop.comment_tags import new_tag_id, tag_body
from reviewloop.config import AppConfig
from reviewloop.git_ops import CheckoutManager
from reviewloop.github_gateway import GitHubGateway
from reviewloop.merger import merge_review_passes
from reviewloop.models import MergedReviewResult, Platform, PullRequestTask, ReviewPassResult
from reviewloop.observability import log_error, log_event, log_warning
from reviewloop.platforms import detect_platform
from reviewloop.posting import post_review_comments, reply_to_thread
from reviewloop.prompts import InstructionKind, build_instructions, build_review_message


LOGGER = logging.getLogger("reviewloop.review_pipeline")

RESOLVED_MARKER = "REVIEW BOT RESOLVED"
APPROVAL_BODY = "LGTM! All review comments have been addressed."
PLATFORM_UNKNOWN_BODY = "Could not detect project platform from changed files. Skipping review."
DEFAULT_ARCHITECTURE_REASON = (
    "This PR changes the project architecture. Please update ARCHITECTURE.md."
)


@dataclass
class _ReviewRun:
    """State of one ``run`` call that the error report needs."""

    cycle_id: str | None = None


class ReviewPipeline:
    """Two-pass agent review of a PR labelled ``bot-review-needed``."""

    def __init__(
        self,
        config: AppConfig,
        github: GitHubGateway,
        checkouts: CheckoutManager,
        agent: AgentAdapter,
    ) -> None:
        self._config = config
        self._github = github
        self._checkouts = checkouts
        self._agent = agent

    def run(self, task: PullRequestTask) -> None:
        review_run = _ReviewRun()
        try:
            self._run(task, review_run)
        except Exception as exc:  # noqa: BLE001
            log_error(
                LOGGER,
                "review_pipeline_failed",
                pr=task.display_name,
                error_type=type(exc).__name__,
            )
            self._report_error(task, exc, cycle_id=review_run.cycle_id)
            raise
        finally:
            self._checkouts.prune_checkouts()

    def _run(self, task: PullRequestTask, review_run: _ReviewRun) -> None:
        checkout = self._checkouts.clone_pull_request(task)

        build = run_build_and_tests(
            checkout,
            timeout_seconds=self._config.runtime.build_command_timeout_seconds,
            max_output_chars=self._config.runtime.max_build_output_chars,
        )
        if not build.success:
            log_event(LOGGER, "review_build_gate_failed", pr=task.display_name)
            self._github.post_issue_comment(
                task.number, tag_body(f"## Build/Test Failure\n\n```\n{build.output}\n```")
            )
            labels.transition(
                self._github, task, source=labels.REVIEW_NEEDED, target=labels.CHANGES_NEEDED
            )
            return

        platform = detect_platform(self._github.list_pull_request_files(task.number))
        if platform is None:
            log_warning(LOGGER, "review_platform_unknown", pr=task.display_name)
            self._github.post_issue_comment(task.number, tag_body(PLATFORM_UNKNOWN_BODY))
            labels.transition(
                self._github, task, source=labels.REVIEW_NEEDED, target=labels.CHANGES_NEEDED
            )
            return

        cycle_id = review_run.cycle_id = new_tag_id()
        log_event(
            LOGGER,
            "review_cycle_started",
            pr=task.display_name,
            cycle_id=cycle_id,
            platform=platform,
        )
        architecture = self._run_pass(task, checkout, platform, "architecture")
        detailed = self._run_pass(task, checkout, platform, "detailed")
        merged = merge_review_passes(architecture, detailed)

        self._post_results(task, merged, cycle_id=cycle_id)

        if merged.has_unresolved or merged.comments:
            labels.transition(
                self._github, task, source=labels.REVIEW_NEEDED, target=labels.CHANGES_NEEDED
            )
        else:
            self._github.post_issue_comment(
                task.number, tag_body(APPROVAL_BODY, cycle_id=cycle_id)
            )
            labels.transition(
                self._github,
                task,
                source=labels.REVIEW_NEEDED,
                target=labels.HUMAN_REVIEW_NEEDED,
            )

    def _run_pass(
        self,
        task: PullRequestTask,
        checkout: Path,
        platform: Platform,
        kind: InstructionKind,
    ) -> ReviewPassResult:
        run = self._agent.invoke(
            AgentRequest(
                cwd=checkout,
                instructions=build_instructions(
                    kind, platform=platform, guides_dir=self._config.agent.guides_dir
                ),
                user_message=build_review_message(task),
                timeout_seconds=self._config.agent.review_timeout_seconds,
                max_turns=self._config.agent.max_review_turns,
                label=f"review-{task.number}-{kind}",
            )
        )
        result = parse_review_pass(run.output, pass_name=kind)
        log_event(
            LOGGER,
            "review_pass_finished",
            pr=task.display_name,
            run_id=run.run_id,
            kind=kind,
            comment_count=len(result.comments),
            verdict_count=len(result.thread_verdicts),
        )
        return result

    def _post_results(
        self, task: PullRequestTask, merged: MergedReviewResult, *, cycle_id: str
    ) -> None:
        review_comments = (
            self._github.list_pull_request_review_comments(task.number)
            if merged.thread_verdicts
            else []
        )
        for verdict in merged.thread_verdicts:
            if verdict.resolved:
                reply_to_thread(
                    self._github,
                    task.number,
                    thread_id=verdict.thread_id,
                    body=RESOLVED_MARKER,
                    fallback_body=f"{RESOLVED_MARKER} (thread::{verdict.thread_id})",
                    review_comments=review_comments,
                    cycle_id=cycle_id,
                )
            elif verdict.response:
                reply_to_thread(
                    self._github,
                    task.number,
                    thread_id=verdict.thread_id,
                    body=verdict.response,
                    review_comments=review_comments,
                    cycle_id=cycle_id,
                )

        if merged.comments:
            post_review_comments(
                self._github,
                task.number,
                comments=merged.comments,
                summary=merged.summary,
                cycle_id=cycle_id,
            )

        if merged.architecture_update.needed:
            reason = merged.architecture_update.reason or DEFAULT_ARCHITECTURE_REASON
            self._github.post_issue_comment(
                task.number,
                tag_body(f"## ARCHITECTURE.md Update Needed\n\n{reason}", cycle_id=cycle_id),
            )

    def _report_error(
        self, task: PullRequestTask, exc: Exception, *, cycle_id: str | None
    ) -> None:
        """Post the error comment, tagged with the run's cycle once one was minted.

        The tag makes a failed review count toward ``max_review_cycles``, so an
        agent that fails on every run still ends in ``bot-human-intervention``.
        """
        try:
            self._github.post_issue_comment(
                task.number,
                tag_body(
                    "## Review Bot Error\n\nThe review pipeline encountered an error. "
                    f"Please check the bot logs.\n\n```\n{exc}\n```",
                    cycle_id=cycle_id,
                ),
            )
            labels.set_label(self._github, task.number, labels.CHANGES_NEEDED)
        except Exception as post_exc:  # noqa: BLE001
            log_error(
                LOGGER,
                "review_error_report_failed",
                pr=task.display_name,
                error_type=type(post_exc).__name__,
            )