"""Footer tags embedded in every comment the bot posts.

A footer looks like::

    ---
    <sub>thread::<uuid> | review::<uuid></sub>

``thread`` identifies a feedback thread for the lifetime of the PR and
``review`` identifies the review run (cycle) that produced the comment. All
recovery logic works from these tags, so comments without one are ignored.
"""

from __future__ import annotations

from collections.abc import Iterable
import re
import uuid

from reviewloop.models import CommentTag, PullRequestReviewComment


_TAG_ID = r"[0-9A-Za-z-]+"
FOOTER_PATTERN = re.compile(
    rf"<sub>\s*thread::(?P<thread>{_TAG_ID})"
    rf"(?:\s*\|\s*review::(?P<review>{_TAG_ID}))?\s*</sub>"
)
REVIEW_TAG_PATTERN = re.compile(rf"review::({_TAG_ID})")


def new_tag_id() -> str:
    return str(uuid.uuid4())


def make_footer(thread_id: str, cycle_id: str | None = None) -> str:
    tag = f"thread::{thread_id}"
    if cycle_id:
        tag = f"{tag} | review::{cycle_id}"
    return f"\n\n---\n<sub>{tag}</sub>"


def tag_body(body: str, *, thread_id: str | None = None, cycle_id: str | None = None) -> str:
    """Append a footer, minting a fresh thread id when none is given."""
    return f"{body}{make_footer(thread_id or new_tag_id(), cycle_id)}"


def parse_tag(body: str) -> CommentTag | None:
    last: re.Match[str] | None = None
    for match in FOOTER_PATTERN.finditer(body):
        last = match
    if last is None:
        return None
    return CommentTag(thread_id=last.group("thread"), cycle_id=last.group("review"))


def extract_cycle_ids(body: str) -> tuple[str, ...]:
    return tuple(match.group(1) for match in REVIEW_TAG_PATTERN.finditer(body))


def count_review_cycles(bodies: Iterable[str]) -> int:
    cycle_ids: set[str] = set()
    for body in bodies:
        if not body:
            continue
        cycle_ids.update(extract_cycle_ids(body))
    return len(cycle_ids)


def find_thread_comment_id(
    thread_id: str, review_comments: Iterable[PullRequestReviewComment]
) -> int | None:
    """Map a thread id to the inline comment that a reply should target.

    Agents may name a thread either by the platform comment id or by the
    ``thread::`` tag of the comment that opened it.
    """
    normalized = thread_id.strip()
    if normalized.isdigit():
        return int(normalized)
    for comment in review_comments:
        tag = parse_tag(comment.body)
        if tag is not None and tag.thread_id == normalized:
            return comment.in_reply_to_id or comment.comment_id
    return None
