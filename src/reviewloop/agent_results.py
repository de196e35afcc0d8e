"""Decoding of the JSON findings the agent embeds in its free-form output.

Agent text is untrusted. Each schema has one decoding function that never
raises: shapes it does not recognize degrade to empty or false defaults.
"""

from __future__ import annotations

import json
import logging
import re
from typing import cast

from reviewloop.models import (
    AddressedThread,
    ArchitectureUpdate,
    ConflictResult,
    FixResult,
    ResolvedConflict,
    ReviewComment,
    ReviewPassResult,
    ThreadVerdict,
)
from reviewloop.observability import log_warning


LOGGER = logging.getLogger("reviewloop.agent_results")
_FENCED_JSON_PATTERN = re.compile(r"```json\s*\n(.*?)```", re.DOTALL)

FIX_PARSE_FAILED_SUMMARY = "Failed to parse code-fix output."
FIX_DEFAULT_SUMMARY = "Code fix complete."
CONFLICT_PARSE_FAILED_SUMMARY = "Failed to parse merge-conflict output."
CONFLICT_DEFAULT_SUMMARY = "Merge conflict resolution complete."


def extract_json_payload(raw: str) -> dict[str, object] | None:
    text = raw
    try:
        envelope = json.loads(raw)
    except json.JSONDecodeError:
        envelope = None
    if isinstance(envelope, str):
        text = envelope
    elif isinstance(envelope, dict):
        result = envelope.get("result")
        text = result if isinstance(result, str) else json.dumps(envelope)
    return _extract_from_text(text)


def _extract_from_text(text: str) -> dict[str, object] | None:
    match = _FENCED_JSON_PATTERN.search(text)
    if match is not None:
        payload = _loads_object(match.group(1))
        if payload is not None:
            return payload

    first = text.find("{")
    last = text.rfind("}")
    if first != -1 and last > first:
        return _loads_object(text[first : last + 1])
    return None


def _loads_object(text: str) -> dict[str, object] | None:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    return _as_object_dict(payload)


def parse_review_pass(raw: str, *, pass_name: str) -> ReviewPassResult:
    payload = extract_json_payload(raw)
    if payload is None:
        log_warning(LOGGER, "agent_output_unparsed", kind=pass_name)
        return ReviewPassResult(
            comments=(),
            thread_verdicts=(),
            summary=None,
            architecture_update=ArchitectureUpdate(needed=False),
        )

    legacy_key = "architecture_comments" if pass_name == "architecture" else "detail_comments"
    raw_comments = payload.get(legacy_key)
    if not isinstance(raw_comments, list):
        raw_comments = payload.get("new_comments")
    return ReviewPassResult(
        comments=_parse_review_comments(raw_comments),
        thread_verdicts=_parse_thread_verdicts(payload.get("thread_responses")),
        summary=_optional_text(payload.get("summary")),
        architecture_update=_parse_architecture_update(
            payload.get("architecture_update_needed")
        ),
    )


def parse_fix_result(raw: str) -> FixResult:
    payload = extract_json_payload(raw)
    if payload is None:
        log_warning(LOGGER, "agent_output_unparsed", kind="fix")
        return FixResult(threads_addressed=(), build_passed=False, summary=FIX_PARSE_FAILED_SUMMARY)

    addressed: list[AddressedThread] = []
    for item in _as_list(payload.get("threads_addressed")):
        item_obj = _as_object_dict(item)
        if item_obj is None:
            continue
        thread_id = _thread_id(item_obj.get("thread_id"))
        if thread_id is None:
            continue
        addressed.append(
            AddressedThread(
                thread_id=thread_id,
                explanation=_optional_text(item_obj.get("explanation")) or "",
            )
        )
    return FixResult(
        threads_addressed=tuple(addressed),
        build_passed=payload.get("build_passed") is True,
        summary=_optional_text(payload.get("summary")) or FIX_DEFAULT_SUMMARY,
    )


def parse_conflict_result(raw: str) -> ConflictResult:
    payload = extract_json_payload(raw)
    if payload is None:
        log_warning(LOGGER, "agent_output_unparsed", kind="conflict")
        return ConflictResult(
            conflicts_resolved=(), build_passed=False, summary=CONFLICT_PARSE_FAILED_SUMMARY
        )

    resolved: list[ResolvedConflict] = []
    for item in _as_list(payload.get("conflicts_resolved")):
        item_obj = _as_object_dict(item)
        if item_obj is None:
            continue
        file = _optional_text(item_obj.get("file"))
        if file is None:
            continue
        resolved.append(
            ResolvedConflict(
                file=file, explanation=_optional_text(item_obj.get("explanation")) or ""
            )
        )
    return ConflictResult(
        conflicts_resolved=tuple(resolved),
        build_passed=payload.get("build_passed") is True,
        summary=_optional_text(payload.get("summary")) or CONFLICT_DEFAULT_SUMMARY,
    )


def _parse_review_comments(value: object) -> tuple[ReviewComment, ...]:
    comments: list[ReviewComment] = []
    for item in _as_list(value):
        item_obj = _as_object_dict(item)
        if item_obj is None:
            continue
        body = item_obj.get("body")
        if not isinstance(body, str) or not body.strip():
            continue
        path = _optional_text(item_obj.get("path"))
        line = _optional_line(item_obj.get("line"))
        comments.append(ReviewComment(path=path, line=line if path else None, body=body))
    return tuple(comments)


def _parse_thread_verdicts(value: object) -> tuple[ThreadVerdict, ...]:
    verdicts: list[ThreadVerdict] = []
    for item in _as_list(value):
        item_obj = _as_object_dict(item)
        if item_obj is None:
            continue
        thread_id = _thread_id(item_obj.get("thread_id"))
        if thread_id is None:
            continue
        verdicts.append(
            ThreadVerdict(
                thread_id=thread_id,
                resolved=item_obj.get("resolved") is True,
                response=_optional_text(item_obj.get("response")),
            )
        )
    return tuple(verdicts)


def _parse_architecture_update(value: object) -> ArchitectureUpdate:
    value_obj = _as_object_dict(value)
    if value_obj is None:
        return ArchitectureUpdate(needed=False)
    return ArchitectureUpdate(
        needed=value_obj.get("needed") is True,
        reason=_optional_text(value_obj.get("reason")),
    )


def _thread_id(value: object) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    return _optional_text(value)


def _optional_line(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _as_list(value: object) -> list[object]:
    if isinstance(value, list):
        return cast(list[object], value)
    return []


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)
