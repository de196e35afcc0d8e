from __future__ import annotations

from collections.abc import Callable

import pytest

from conftest import FakeGitHub
from reviewloop.comment_tags import parse_tag, tag_body
from reviewloop.github_gateway import GitHubApiError
from reviewloop.models import PullRequestReviewComment, ReviewComment
from reviewloop.observability import configure_logging
from reviewloop.posting import post_review_comments, reply_to_thread


def test_reply_targets_tagged_thread(
    fake_github: FakeGitHub,
    review_comment_factory: Callable[..., PullRequestReviewComment],
) -> None:
    comments = [review_comment_factory(10, tag_body("Handle nil", thread_id="t-1"))]

    outcome = reply_to_thread(
        fake_github, 7, thread_id="t-1", body="Fixed", review_comments=comments, cycle_id="c1"
    )

    assert outcome == "replied"
    pr_number, comment_id, body = fake_github.review_replies[0]
    assert (pr_number, comment_id) == (7, 10)
    assert body.startswith("Fixed\n\n---\n<sub>thread::")
    assert body.endswith("| review::c1</sub>")
    assert fake_github.issue_comments == []


def test_reply_to_deleted_thread_falls_back_with_thread_id(
    fake_github: FakeGitHub, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    fake_github.missing_reply_targets.add(404)

    outcome = reply_to_thread(
        fake_github,
        7,
        thread_id="404",
        body="REVIEW BOT RESOLVED",
        review_comments=[],
        cycle_id="c2",
        fallback_body="REVIEW BOT RESOLVED (thread::404)",
    )

    assert outcome == "fallback"
    assert fake_github.review_replies == []
    (pr_number, body), = fake_github.issue_comments
    assert pr_number == 7
    assert body.startswith("REVIEW BOT RESOLVED (thread::404)")
    tag = parse_tag(body)
    assert tag is not None
    assert tag.thread_id == "404"
    assert tag.cycle_id == "c2"
    assert "event=thread_reply_target_missing" in capsys.readouterr().err


def test_reply_to_unknown_thread_posts_issue_comment(fake_github: FakeGitHub) -> None:
    outcome = reply_to_thread(
        fake_github, 7, thread_id="not-a-thread", body="Addressed", review_comments=[]
    )
    assert outcome == "fallback"
    tag = parse_tag(fake_github.issue_comments[0][1])
    assert tag is not None
    assert tag.thread_id == "not-a-thread"
    assert tag.cycle_id is None


def test_reply_reports_failure_when_fallback_fails(fake_github: FakeGitHub) -> None:
    fake_github.missing_reply_targets.add(5)
    fake_github.fail_issue_comments = True

    outcome = reply_to_thread(fake_github, 7, thread_id="5", body="x", review_comments=[])

    assert outcome == "failed"


def test_post_review_comments_batches_inline_and_posts_general(fake_github: FakeGitHub) -> None:
    post_review_comments(
        fake_github,
        7,
        comments=(
            ReviewComment(path="a.go", line=3, body="Check err"),
            ReviewComment(path="b.go", line=9, body="Rename"),
            ReviewComment(path=None, line=None, body="Add a changelog entry"),
        ),
        summary="Two issues.",
        cycle_id="c3",
    )

    (pr_number, body, inline), = fake_github.reviews
    assert pr_number == 7
    assert body.startswith("Two issues.")
    assert [comment.path for comment in inline] == ["a.go", "b.go"]
    tags = [parse_tag(comment.body) for comment in inline]
    assert all(tag is not None and tag.cycle_id == "c3" for tag in tags)
    (_, general), = fake_github.issue_comments
    assert general.startswith("Add a changelog entry")
    assert "review::c3" in general


def test_post_review_comments_degrades_when_batch_rejected(
    fake_github: FakeGitHub, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    fake_github.fail_batch_review = True
    fake_github.unresolvable_paths.add("gone.go")

    post_review_comments(
        fake_github,
        7,
        comments=(
            ReviewComment(path="a.go", line=3, body="Check err"),
            ReviewComment(path="gone.go", line=1, body="Stale line"),
        ),
        summary="Summary",
        cycle_id="c4",
    )

    assert [len(comments) for _, _, comments in fake_github.reviews] == [0, 1]
    assert fake_github.reviews[1][2][0].path == "a.go"
    (_, fallback), = fake_github.issue_comments
    assert fallback.startswith("**gone.go:1**\n\nStale line")
    assert "review::c4" in fallback
    err = capsys.readouterr().err
    assert "event=review_batch_failed" in err
    assert "event=inline_comment_fallback" in err


class SummaryRejectingGitHub(FakeGitHub):
    def create_review(
        self, pr_number: int, *, body: str, comments: tuple[ReviewComment, ...] = ()
    ) -> None:
        if body.startswith("Bad summary"):
            raise GitHubApiError("body rejected", status_code=422)
        super().create_review(pr_number, body=body, comments=comments)


class FlakyCommentGitHub(FakeGitHub):
    def post_issue_comment(self, issue_number: int, body: str) -> None:
        if body.startswith("First"):
            raise GitHubApiError("comment failed", status_code=500)
        super().post_issue_comment(issue_number, body)


def test_rejected_summary_still_posts_every_comment(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    github = SummaryRejectingGitHub()

    post_review_comments(
        github,
        7,
        comments=(
            ReviewComment(path="a.go", line=3, body="Check err"),
            ReviewComment(path="b.go", line=9, body="Rename"),
            ReviewComment(path=None, line=None, body="Add a changelog entry"),
        ),
        summary="Bad summary",
        cycle_id="c5",
    )

    assert [comments[0].path for _, _, comments in github.reviews] == ["a.go", "b.go"]
    bodies = [body for _, body in github.issue_comments]
    assert len(bodies) == 2
    assert bodies[0].startswith("Bad summary")
    assert bodies[1].startswith("Add a changelog entry")
    assert all("review::c5" in body for body in bodies)
    assert "event=review_summary_fallback" in capsys.readouterr().err


def test_failed_general_comment_does_not_drop_the_rest(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    github = FlakyCommentGitHub()

    post_review_comments(
        github,
        7,
        comments=(
            ReviewComment(path=None, line=None, body="First note"),
            ReviewComment(path=None, line=None, body="Second note"),
        ),
        summary="Summary",
        cycle_id="c6",
    )

    assert [body.split("\n", 1)[0] for _, body in github.issue_comments] == ["Second note"]
    err = capsys.readouterr().err
    assert "event=github_comment_failed" in err
    assert "kind=general" in err
