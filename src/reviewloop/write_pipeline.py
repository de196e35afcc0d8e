from __future__ import annotations

from pathlib import Path
import logging

from reviewloop import labels
from reviewloop.agent_adapter import AgentAdapter, AgentRequest
from reviewloop.agent_results import parse_conflict_result, parse_fix_result
from reviewloop.build_runner import run_build_and_tests
from reviewloop.comment_tags import count_review_cycles, tag_body
from reviewloop.config import AppConfig
from reviewloop.git_ops import CheckoutManager
from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import PullRequestTask
from reviewloop.observability import log_error, log_event, log_warning
from reviewloop.platforms import detect_platform
from reviewloop.posting import reply_to_thread
from reviewloop.prompts import build_conflict_message, build_fix_message, build_instructions


LOGGER = logging.getLogger("reviewloop.write_pipeline")

PLATFORM_UNKNOWN_BODY = "Could not detect project platform from changed files. Skipping code fix."
NO_CHANGES_BODY = "Could not address review comments automatically. No code changes were made."


class WritePipeline:
    """Agent-driven fix pass for a PR labelled ``bot-changes-needed``."""

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
        try:
            self._run(task)
        except Exception as exc:  # noqa: BLE001
            log_error(
                LOGGER,
                "write_pipeline_failed",
                pr=task.display_name,
                error_type=type(exc).__name__,
            )
            self._report_error(task, exc)
            raise
        finally:
            self._checkouts.prune_checkouts()

    def review_cycle_count(self, task: PullRequestTask) -> int:
        bodies = [comment.body for comment in self._github.list_issue_comments(task.number)]
        bodies.extend(
            comment.body
            for comment in self._github.list_pull_request_review_comments(task.number)
        )
        return count_review_cycles(bodies)

    def _run(self, task: PullRequestTask) -> None:
        cycles = self.review_cycle_count(task)
        max_cycles = self._config.runtime.max_review_cycles
        if cycles >= max_cycles:
            log_warning(
                LOGGER,
                "cycle_limit_reached",
                pr=task.display_name,
                cycles=cycles,
                max_cycles=max_cycles,
            )
            self._github.post_issue_comment(
                task.number,
                tag_body(
                    "## Human Intervention Needed\n\n"
                    f"This PR has gone through {cycles} review cycles without passing. "
                    "Handing off to a human reviewer."
                ),
            )
            labels.transition(
                self._github, task, source=labels.CHANGES_NEEDED, target=labels.HUMAN_INTERVENTION
            )
            return

        checkout = self._checkouts.clone_pull_request(task, shallow=False)
        self._checkouts.fetch_base(checkout, task.base_branch)
        if not self._merge_base_branch(task, checkout):
            return

        platform = detect_platform(self._github.list_pull_request_files(task.number))
        if platform is None:
            log_warning(LOGGER, "write_platform_unknown", pr=task.display_name)
            self._github.post_issue_comment(task.number, tag_body(PLATFORM_UNKNOWN_BODY))
            return

        run = self._agent.invoke(
            AgentRequest(
                cwd=checkout,
                instructions=build_instructions(
                    "fix", platform=platform, guides_dir=self._config.agent.guides_dir
                ),
                user_message=build_fix_message(task),
                timeout_seconds=self._config.agent.write_timeout_seconds,
                max_turns=self._config.agent.max_write_turns,
                label=f"fix-{task.number}",
            )
        )
        result = parse_fix_result(run.output)
        log_event(
            LOGGER,
            "fix_pass_finished",
            pr=task.display_name,
            run_id=run.run_id,
            threads_addressed=len(result.threads_addressed),
            build_passed=result.build_passed,
        )

        if not self._checkouts.has_changes(checkout):
            log_event(LOGGER, "fix_produced_no_changes", pr=task.display_name)
            self._github.post_issue_comment(task.number, tag_body(NO_CHANGES_BODY))
            return

        build = run_build_and_tests(
            checkout,
            timeout_seconds=self._config.runtime.build_command_timeout_seconds,
            max_output_chars=self._config.runtime.max_build_output_chars,
        )
        if not build.success:
            log_event(LOGGER, "fix_build_failed", pr=task.display_name)
            self._github.post_issue_comment(
                task.number,
                tag_body(
                    "## Build/Test Failure After Code Fix\n\n"
                    f"The code changes caused build/test failures:\n\n```\n{build.output}\n```"
                ),
            )
            return

        self._checkouts.commit_and_push(
            checkout, f"bot: address review comments\n\n{result.summary}"
        )

        review_comments = (
            self._github.list_pull_request_review_comments(task.number)
            if result.threads_addressed
            else []
        )
        for thread in result.threads_addressed:
            reply_to_thread(
                self._github,
                task.number,
                thread_id=thread.thread_id,
                body=f"**Addressed:** {thread.explanation}",
                fallback_body=f"**Addressed** (thread::{thread.thread_id}): {thread.explanation}",
                review_comments=review_comments,
            )

        self._github.post_issue_comment(
            task.number,
            tag_body(
                f"## Code Fix Summary\n\n{result.summary}\n\n"
                f"Addressed {len(result.threads_addressed)} review thread(s). "
                "Waiting for CI to pass before re-review."
            ),
        )
        labels.transition(
            self._github, task, source=labels.CHANGES_NEEDED, target=labels.CI_PENDING
        )

    def _merge_base_branch(self, task: PullRequestTask, checkout: Path) -> bool:
        conflicts = self._checkouts.find_merge_conflicts(checkout, task.base_branch)
        if not conflicts:
            return True
        if self._checkouts.start_merge(checkout, task.base_branch):
            log_event(LOGGER, "merge_clean_on_retry", pr=task.display_name)
            return True

        run = self._agent.invoke(
            AgentRequest(
                cwd=checkout,
                instructions=build_instructions("conflict"),
                user_message=build_conflict_message(task, conflicts),
                timeout_seconds=self._config.agent.conflict_timeout_seconds,
                max_turns=self._config.agent.max_write_turns,
                label=f"conflict-{task.number}",
            )
        )
        resolution = parse_conflict_result(run.output)
        log_event(
            LOGGER,
            "conflict_pass_finished",
            pr=task.display_name,
            run_id=run.run_id,
            summary=resolution.summary,
        )

        remaining = self._checkouts.files_with_conflict_markers(checkout)
        if remaining:
            log_warning(
                LOGGER, "conflict_markers_remain", pr=task.display_name, files=remaining
            )
            file_list = "\n".join(remaining)
            self._github.post_issue_comment(
                task.number,
                tag_body(
                    "## Merge Conflict Resolution Failed\n\nConflict markers still present in:\n"
                    f"```\n{file_list}\n```\n\nPlease resolve conflicts manually."
                ),
            )
            self._checkouts.abort_merge(checkout)
            return False

        self._checkouts.complete_merge(checkout)
        return True

    def _report_error(self, task: PullRequestTask, exc: Exception) -> None:
        try:
            self._github.post_issue_comment(
                task.number,
                tag_body(
                    "## Write Bot Error\n\nThe code-fix pipeline encountered an error. "
                    f"Please check the bot logs.\n\n```\n{exc}\n```"
                ),
            )
        except Exception as post_exc:  # noqa: BLE001
            log_error(
                LOGGER,
                "write_error_report_failed",
                pr=task.display_name,
                error_type=type(post_exc).__name__,
            )
