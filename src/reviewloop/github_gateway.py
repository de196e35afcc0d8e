from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from reviewloop.models import (
    CheckRunSnapshot,
    CommitStatusSnapshot,
    PullRequestIssueComment,
    PullRequestReviewComment,
    PullRequestSnapshot,
    ReviewComment,
)
from reviewloop.observability import log_event, log_warning
from reviewloop.shell import run


LOGGER = logging.getLogger("reviewloop.github_gateway")
_PAGE_SIZE = 100


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubNotFoundError(GitHubApiError):
    """The addressed resource (comment, label, ref) does not exist."""


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_pull_requests_with_label(self, label: str) -> list[int]:
        numbers: list[int] = []
        page = 1
        while True:
            query = urlencode(
                {"state": "open", "labels": label, "per_page": _PAGE_SIZE, "page": page}
            )
            payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/issues?{query}")
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list for issues")
            for item in payload:
                item_obj = _as_object_dict(item)
                # The issues endpoint mixes issues and PRs; keep only PRs.
                if item_obj is None or "pull_request" not in item_obj:
                    continue
                numbers.append(_as_int(item_obj.get("number"), field="number"))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="labeled_pull_requests",
            repo_full_name=self.full_name,
            label=label,
            count=len(numbers),
        )
        return sorted(numbers)

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        payload_obj = _as_object_dict(
            self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}")
        )
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head/base")

        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            head_ref=_as_string(head.get("ref")),
            head_sha=_as_string(head.get("sha")),
            base_ref=_as_string(base.get("ref")),
            state=_as_string(payload_obj.get("state")),
            labels=_label_names(payload_obj.get("labels")),
        )
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=snapshot.number)
        return snapshot

    def list_pull_request_files(self, pr_number: int) -> tuple[str, ...]:
        files: list[str] = []
        for item in self._paginate(f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/files"):
            filename = item.get("filename")
            if isinstance(filename, str) and filename:
                files.append(filename)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_files",
            pr_number=pr_number,
            count=len(files),
        )
        return tuple(files)

    def list_issue_comments(self, issue_number: int) -> list[PullRequestIssueComment]:
        comments: list[PullRequestIssueComment] = []
        for item in self._paginate(
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        ):
            user_obj = _as_object_dict(item.get("user"))
            comments.append(
                PullRequestIssueComment(
                    comment_id=_as_int(item.get("id"), field="id"),
                    body=_as_string(item.get("body")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item.get("html_url")),
                    created_at=_as_string(item.get("created_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def list_pull_request_review_comments(self, pr_number: int) -> list[PullRequestReviewComment]:
        comments: list[PullRequestReviewComment] = []
        for item in self._paginate(f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments"):
            user_obj = _as_object_dict(item.get("user"))
            comments.append(
                PullRequestReviewComment(
                    comment_id=_as_int(item.get("id"), field="id"),
                    body=_as_string(item.get("body")),
                    path=_as_string(item.get("path")),
                    line=_as_optional_int(item.get("line")),
                    in_reply_to_id=_as_optional_int(item.get("in_reply_to_id")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
                    html_url=_as_string(item.get("html_url")),
                    created_at=_as_string(item.get("created_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def add_label(self, issue_number: int, label: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels"
        self._api_json("POST", path, payload={"labels": [label]})
        log_event(LOGGER, "github_label_added", issue_number=issue_number, label=label)

    def remove_label(self, issue_number: int, label: str) -> bool:
        path = (
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/"
            f"{quote(label, safe='')}"
        )
        try:
            self._api_json("DELETE", path)
        except GitHubNotFoundError:
            return False
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)
        return True

    def create_review(
        self, pr_number: int, *, body: str, comments: tuple[ReviewComment, ...] = ()
    ) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews"
        inline = [
            {"path": comment.path, "line": comment.line, "body": comment.body}
            for comment in comments
            if comment.is_inline
        ]
        self._api_json("POST", path, payload={"body": body, "event": "COMMENT", "comments": inline})
        log_event(
            LOGGER,
            "github_review_created",
            pr_number=pr_number,
            inline_comment_count=len(inline),
        )

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "github_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_comment_posted", issue_number=issue_number)

    def post_review_comment_reply(self, pr_number: int, review_comment_id: int, body: str) -> None:
        path = (
            f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments/"
            f"{review_comment_id}/replies"
        )
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "github_review_reply_failed",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                review_comment_id=review_comment_id,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_review_reply_posted",
            pr_number=pr_number,
            review_comment_id=review_comment_id,
        )

    def list_check_runs(self, ref: str) -> tuple[CheckRunSnapshot, ...]:
        runs: list[CheckRunSnapshot] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            payload_obj = _as_object_dict(
                self._api_json(
                    "GET",
                    f"/repos/{self.owner}/{self.name}/commits/{quote(ref, safe='')}"
                    f"/check-runs?{query}",
                )
            )
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for check runs")
            items = payload_obj.get("check_runs")
            if not isinstance(items, list):
                raise RuntimeError("Unexpected GitHub response: expected check_runs list")
            for item in items:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                runs.append(
                    CheckRunSnapshot(
                        name=_as_string(item_obj.get("name")),
                        status=_as_string(item_obj.get("status")).strip().lower(),
                        conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                        html_url=_as_optional_str(item_obj.get("html_url")),
                    )
                )
            if len(items) < _PAGE_SIZE:
                break
            page += 1
        log_event(LOGGER, "github_read", endpoint="check_runs", ref=ref, count=len(runs))
        return tuple(runs)

    def list_commit_statuses(self, ref: str) -> tuple[CommitStatusSnapshot, ...]:
        payload_obj = _as_object_dict(
            self._api_json(
                "GET",
                f"/repos/{self.owner}/{self.name}/commits/{quote(ref, safe='')}/status"
                f"?per_page={_PAGE_SIZE}",
            )
        )
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for combined status")
        items = payload_obj.get("statuses")
        if not isinstance(items, list):
            raise RuntimeError("Unexpected GitHub response: expected statuses list")
        statuses: list[CommitStatusSnapshot] = []
        for item in items:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            statuses.append(
                CommitStatusSnapshot(
                    context=_as_string(item_obj.get("context")),
                    state=_as_string(item_obj.get("state")).strip().lower(),
                    target_url=_as_optional_str(item_obj.get("target_url")),
                )
            )
        log_event(
            LOGGER, "github_read", endpoint="commit_statuses", ref=ref, count=len(statuses)
        )
        return tuple(statuses)

    def get_commit_timestamp(self, ref: str) -> str | None:
        payload_obj = _as_object_dict(
            self._api_json(
                "GET", f"/repos/{self.owner}/{self.name}/commits/{quote(ref, safe='')}"
            )
        )
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for commit")
        commit = _as_object_dict(payload_obj.get("commit")) or {}
        for role in ("committer", "author"):
            person = _as_object_dict(commit.get(role))
            date = _as_optional_str(person.get("date")) if person else None
            if date:
                log_event(LOGGER, "github_read", endpoint="commit", ref=ref, source=role)
                return date
        return None

    def _paginate(self, path: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            payload = self._api_json("GET", f"{path}?{query}")
            if not isinstance(payload, list):
                raise RuntimeError(f"Unexpected GitHub response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                return items
            page += 1

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                _raise_for_status(status_code, body)
                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_warning(
                    LOGGER,
                    "github_poll_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, check=False)
        status_code, _headers, body = _parse_http_response(raw)
        _raise_for_status(status_code, body)
        if not body.strip():
            return None
        return json.loads(body)


def _raise_for_status(status_code: int, body: str) -> None:
    if 200 <= status_code < 300:
        return
    message = body.strip() or "<empty>"
    if status_code == 404:
        raise GitHubNotFoundError(
            f"GitHub API resource not found: {message}", status_code=status_code
        )
    raise GitHubApiError(
        f"GitHub API request failed with status {status_code}: {message}",
        status_code=status_code,
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _label_names(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    names: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str):
            names.append(name)
    return tuple(names)


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object) -> int | None:
    if value is None:
        return None
    return _as_int(value, field="optional int field")
