"""Posting helpers that never silently drop feedback.

Replies to a possibly-stale thread go through :func:`reply_to_thread`, which
falls back to a free-standing comment carrying the original thread id. New
review comments go through :func:`post_review_comments`, which degrades from
one batched review to per-comment reviews to plain issue comments.
"""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Literal

from reviewloop.comment_tags import find_thread_comment_id, tag_body
from reviewloop.github_gateway import GitHubApiError, GitHubGateway, GitHubNotFoundError
from reviewloop.models import PullRequestReviewComment, ReviewComment
from reviewloop.observability import log_event, log_warning


LOGGER = logging.getLogger("reviewloop.posting")

ReplyOutcome = Literal["replied", "fallback", "failed"]


def reply_to_thread(
    github: GitHubGateway,
    pr_number: int,
    *,
    thread_id: str,
    body: str,
    review_comments: Sequence[PullRequestReviewComment],
    cycle_id: str | None = None,
    fallback_body: str | None = None,
) -> ReplyOutcome:
    """Reply to a thread, falling back to an issue comment tagged with ``thread_id``.

    Failures are logged and reported through the return value so one stale
    thread never aborts the caller's run.
    """
    comment_id = find_thread_comment_id(thread_id, review_comments)
    if comment_id is not None:
        try:
            github.post_review_comment_reply(
                pr_number, comment_id, tag_body(body, cycle_id=cycle_id)
            )
            return "replied"
        except GitHubNotFoundError:
            log_event(
                LOGGER,
                "thread_reply_target_missing",
                pr_number=pr_number,
                thread_id=thread_id,
                comment_id=comment_id,
            )
        except GitHubApiError as exc:
            log_warning(
                LOGGER,
                "thread_reply_failed",
                pr_number=pr_number,
                thread_id=thread_id,
                status_code=exc.status_code,
            )

    try:
        github.post_issue_comment(
            pr_number,
            tag_body(fallback_body or body, thread_id=thread_id, cycle_id=cycle_id),
        )
    except GitHubApiError as exc:
        log_warning(
            LOGGER,
            "thread_reply_fallback_failed",
            pr_number=pr_number,
            thread_id=thread_id,
            status_code=exc.status_code,
        )
        return "failed"
    return "fallback"


def post_review_comments(
    github: GitHubGateway,
    pr_number: int,
    *,
    comments: Sequence[ReviewComment],
    summary: str,
    cycle_id: str,
) -> None:
    tagged_summary = tag_body(summary, cycle_id=cycle_id)
    inline = tuple(
        ReviewComment(path=c.path, line=c.line, body=tag_body(c.body, cycle_id=cycle_id))
        for c in comments
        if c.is_inline
    )
    general = tuple(c for c in comments if not c.is_inline)

    try:
        github.create_review(pr_number, body=tagged_summary, comments=inline)
    except GitHubApiError as exc:
        log_warning(
            LOGGER,
            "review_batch_failed",
            pr_number=pr_number,
            inline_comment_count=len(inline),
            status_code=exc.status_code,
        )
        _post_summary_only(github, pr_number, tagged_summary)
        for comment in inline:
            _post_single_inline(github, pr_number, comment)

    for comment in general:
        _post_issue_comment(
            github, pr_number, tag_body(comment.body, cycle_id=cycle_id), kind="general"
        )


def _post_summary_only(github: GitHubGateway, pr_number: int, tagged_summary: str) -> None:
    try:
        github.create_review(pr_number, body=tagged_summary)
    except GitHubApiError as exc:
        log_warning(
            LOGGER,
            "review_summary_fallback",
            pr_number=pr_number,
            status_code=exc.status_code,
        )
        _post_issue_comment(github, pr_number, tagged_summary, kind="summary")


def _post_single_inline(github: GitHubGateway, pr_number: int, comment: ReviewComment) -> None:
    try:
        github.create_review(pr_number, body="", comments=(comment,))
    except GitHubApiError:
        log_warning(
            LOGGER,
            "inline_comment_fallback",
            pr_number=pr_number,
            path=comment.path,
            line=comment.line,
        )
        _post_issue_comment(
            github,
            pr_number,
            f"**{comment.path}:{comment.line}**\n\n{comment.body}",
            kind="inline",
        )


def _post_issue_comment(github: GitHubGateway, pr_number: int, body: str, *, kind: str) -> None:
    try:
        github.post_issue_comment(pr_number, body)
    except GitHubApiError as exc:
        log_warning(
            LOGGER,
            "github_comment_failed",
            pr_number=pr_number,
            kind=kind,
            status_code=exc.status_code,
        )
