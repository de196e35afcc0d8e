from __future__ import annotations

from reviewloop.models import (
    MergedReviewResult,
    ReviewComment,
    ReviewPassResult,
    ThreadVerdict,
)


DUPLICATE_LINE_WINDOW = 2
SUMMARY_SEPARATOR = "\n\n"
DEFAULT_SUMMARY = "Review complete."


def merge_review_passes(
    architecture: ReviewPassResult, detailed: ReviewPassResult
) -> MergedReviewResult:
    comments = dedupe_comments(architecture.comments + detailed.comments)

    # Architecture verdicts are applied last so they win for shared threads.
    verdicts: dict[str, ThreadVerdict] = {}
    for verdict in detailed.thread_verdicts:
        verdicts[verdict.thread_id] = verdict
    for verdict in architecture.thread_verdicts:
        verdicts[verdict.thread_id] = verdict

    summaries = [part for part in (architecture.summary, detailed.summary) if part]
    return MergedReviewResult(
        comments=comments,
        thread_verdicts=tuple(verdicts.values()),
        architecture_update=architecture.architecture_update,
        summary=SUMMARY_SEPARATOR.join(summaries) or DEFAULT_SUMMARY,
    )


def dedupe_comments(comments: tuple[ReviewComment, ...]) -> tuple[ReviewComment, ...]:
    kept: list[ReviewComment] = []
    for comment in comments:
        if not any(_is_duplicate(existing, comment) for existing in kept):
            kept.append(comment)
    return tuple(kept)


def _is_duplicate(left: ReviewComment, right: ReviewComment) -> bool:
    if left.path != right.path or left.body != right.body:
        return False
    if left.line is None or right.line is None:
        return False
    return abs(left.line - right.line) <= DUPLICATE_LINE_WINDOW
