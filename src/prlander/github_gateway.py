from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Literal, cast
from urllib.parse import urlencode

from prlander.models import PullRequestReview, PullRequestReviewComment, PullRequestSnapshot
from prlander.observability import log_event
from prlander.shell import run


LOGGER = logging.getLogger("prlander.github_gateway")
MergeMethod = Literal["merge", "squash", "rebase"]
# GitHub answers 405 when a pull request is not mergeable and 409 on a head mismatch.
NOT_MERGEABLE_STATUS_CODES = frozenset({405, 409})
_PAGE_SIZE = 100


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub read failure; caller should retry next poll."""


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_mergeable(self) -> bool:
        return self.status_code in NOT_MERGEABLE_STATUS_CODES


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.name}/{suffix}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        snapshot = _parse_snapshot(self._api_get(self._repo_path(f"pulls/{pr_number}")))
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            repo_full_name=self.full_name,
            pr_number=snapshot.number,
            state=snapshot.state,
            merged=snapshot.merged,
        )
        return snapshot

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        merge_method: MergeMethod = "squash",
        commit_title: str | None = None,
    ) -> str | None:
        """Merge a pull request and return the merge commit sha when GitHub reports one."""
        request: dict[str, object] = {"merge_method": merge_method}
        if commit_title is not None:
            request["commit_title"] = commit_title
        response = _as_object_dict(
            self._api_write("PUT", self._repo_path(f"pulls/{pr_number}/merge"), payload=request)
        )
        sha = _as_optional_str(response.get("sha")) if response is not None else None
        log_event(
            LOGGER,
            "github_pr_merged",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            merge_method=merge_method,
            sha=sha,
        )
        return sha

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = self._repo_path(f"issues/{issue_number}/comments")
        try:
            self._api_write("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_issue_comment_posted",
            repo_full_name=self.full_name,
            issue_number=issue_number,
        )

    def list_pull_request_reviews(self, pr_number: int) -> list[PullRequestReview]:
        path = self._repo_path(f"pulls/{pr_number}/reviews")
        reviews = [_parse_review(item) for item in self._paginate(path)]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            count=len(reviews),
        )
        return reviews

    def list_pull_request_review_comments(self, pr_number: int) -> list[PullRequestReviewComment]:
        path = self._repo_path(f"pulls/{pr_number}/comments")
        comments = [_parse_review_comment(item) for item in self._paginate(path)]
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            count=len(comments),
        )
        return comments

    def _paginate(self, base_path: str) -> list[dict[str, object]]:
        """Collect every object across ``per_page=100`` pages until a short page."""
        collected: list[dict[str, object]] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            batch = self._api_get(f"{base_path}?{query}")
            if not isinstance(batch, list):
                raise RuntimeError(f"Unexpected GitHub response: expected list for {base_path}")
            collected.extend(obj for obj in map(_as_object_dict, batch) if obj is not None)
            if len(batch) < _PAGE_SIZE:
                return collected
            page += 1

    def _env(self) -> dict[str, str] | None:
        if not self.token:
            return None
        return {"GH_TOKEN": self.token}

    def _api_get(self, path: str) -> object:
        cmd = ["gh", "api", "--method", "GET", "--include", path]
        raw = run(cmd, extra_env=self._env(), check=False)
        try:
            status_code, _headers, body = _parse_http_response(raw)
            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise GitHubApiError(
                    f"GitHub API request failed with status {status_code}: {message}",
                    status_code=status_code,
                )
            return json.loads(body)
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc

    def _api_write(self, method: str, path: str, *, payload: dict[str, object]) -> object:
        cmd = ["gh", "api", "--method", method.upper(), "--include", path, "--input", "-"]
        raw = run(cmd, input_text=json.dumps(payload), extra_env=self._env(), check=False)
        status_code, _headers, body = _parse_http_response(raw)
        if status_code < 200 or status_code >= 300:
            message = _error_message(body)
            log_event(
                LOGGER,
                "github_write_failed",
                method=method.upper(),
                path=path,
                status_code=status_code,
                error=message,
            )
            raise GitHubApiError(
                f"GitHub API {method.upper()} failed with status {status_code}: {message}",
                status_code=status_code,
            )
        if not body.strip():
            return None
        return json.loads(body)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    """Split ``gh api --include`` output into status, lowercased headers and body."""
    text = raw.replace("\r\n", "\n")
    # gh may print several header blocks (redirects, 100-continue); the last one wins.
    start = text.rfind("\nHTTP/") + 1
    if start == 0 and not text.startswith("HTTP/"):
        raise GitHubApiError(
            "Unexpected GitHub response: missing HTTP status line", status_code=None
        )
    head, _, body = text[start:].partition("\n\n")
    status_line, *header_lines = head.split("\n")
    _, _, rest = status_line.partition(" ")
    code = rest.split(" ", 1)[0]
    if not code.isdigit():
        raise GitHubApiError(
            f"Unexpected GitHub response status line: {status_line!r}", status_code=None
        )

    headers: dict[str, str] = {}
    for line in header_lines:
        key, sep, value = line.partition(":")
        if sep:
            headers[key.strip().lower()] = value.strip()
    return int(code), headers, body


def _error_message(body: str) -> str:
    text = body.strip()
    if not text:
        return "<empty>"
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return text
    message = decoded.get("message") if isinstance(decoded, dict) else None
    return message if isinstance(message, str) and message else text


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    flat = text.strip().replace("\n", "\\n")
    if not flat:
        return "<empty>"
    return flat if len(flat) <= limit else flat[:limit] + "..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if isinstance(value, dict) and all(isinstance(key, str) for key in value):
        return cast(dict[str, object], value)
    return None


def _as_string(value: object) -> str:
    return "" if value is None else str(value)


def _as_optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def _as_login(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_int(value: object, *, field: str = "optional int field") -> int | None:
    return None if value is None else _as_int(value, field=field)


def _as_bool(value: object) -> bool:
    if value is None or isinstance(value, bool):
        return bool(value)
    raise RuntimeError("Unexpected GitHub response type for bool field")


def _parse_snapshot(payload: object) -> PullRequestSnapshot:
    pr = _as_object_dict(payload)
    if pr is None:
        raise RuntimeError("Unexpected GitHub response: expected object for pull request")
    head = _as_object_dict(pr.get("head"))
    base = _as_object_dict(pr.get("base"))
    if head is None or base is None:
        raise RuntimeError("Unexpected GitHub response: missing pull request head/base")
    return PullRequestSnapshot(
        number=_as_int(pr.get("number"), field="number"),
        title=_as_string(pr.get("title")),
        state=_as_string(pr.get("state")).strip().lower(),
        merged=_as_bool(pr.get("merged")),
        head_ref=_as_string(head.get("ref")),
        base_ref=_as_string(base.get("ref")),
    )


def _parse_review(item: dict[str, object]) -> PullRequestReview:
    return PullRequestReview(
        review_id=_as_int(item.get("id"), field="id"),
        state=_as_string(item.get("state")).strip().upper(),
        body=_as_string(item.get("body")),
        user_login=_user_login(item),
        submitted_at=_as_optional_str(item.get("submitted_at")),
    )


def _parse_review_comment(item: dict[str, object]) -> PullRequestReviewComment:
    return PullRequestReviewComment(
        comment_id=_as_int(item.get("id"), field="id"),
        body=_as_string(item.get("body")),
        path=_as_string(item.get("path")),
        line=_as_optional_int(item.get("line"), field="line"),
        diff_hunk=_as_string(item.get("diff_hunk")),
        user_login=_user_login(item),
        created_at=_as_string(item.get("created_at")),
    )


def _user_login(item: dict[str, object]) -> str:
    user = _as_object_dict(item.get("user"))
    return _as_login(user.get("login")) if user is not None else ""
