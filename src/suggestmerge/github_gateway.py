from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from suggestmerge.models import (
    FileContent,
    IssueComment,
    PullRequestContext,
    PullRequestMergeResult,
    RepositorySummary,
    WebhookSubscription,
)
from suggestmerge.observability import log_event, log_warning_event
from suggestmerge.shell import run


LOGGER = logging.getLogger("suggestmerge.github_gateway")
_PAGE_SIZE = 100
_REGULAR_FILE_MODE = "100644"


class GitHubApiError(RuntimeError):
    """A `gh api` call failed or returned a non-2xx response."""

    def __init__(
        self,
        message: str,
        *,
        method: str,
        path: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.path = path
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class PathNotAFileError(RuntimeError):
    """Content lookup resolved to a directory, symlink or submodule instead of a file."""


class _GhApiClient:
    def _api_list_paginated(
        self, path: str, *, what: str, query: dict[str, object] | None = None
    ) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            query_items: dict[str, object] = dict(query or {})
            query_items.update({"per_page": _PAGE_SIZE, "page": page})
            payload = self._api_json("GET", f"{path}?{urlencode(query_items)}")
            if not isinstance(payload, list):
                raise RuntimeError(f"Unexpected GitHub response: expected list of {what}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        return items

    def _api_json(
        self, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)

        # gh exits non-zero on HTTP errors but still prints the response with --include.
        raw = run(cmd, input_text=stdin_payload, check=False)
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            log_warning_event(
                LOGGER,
                "github_api_failed",
                method=method_upper,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubApiError(
                f"GitHub {method_upper} {path} failed: {exc}", method=method_upper, path=path
            ) from exc

        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            log_warning_event(
                LOGGER,
                "github_api_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                error=message,
            )
            raise GitHubApiError(
                f"GitHub {method_upper} {path} failed with status {status_code}: {message}",
                method=method_upper,
                path=path,
                status_code=status_code,
            )

        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(
                f"GitHub {method_upper} {path} returned invalid JSON",
                method=method_upper,
                path=path,
                status_code=status_code,
            ) from exc


@dataclass(frozen=True)
class GitHubGateway(_GhApiClient):
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequestContext:
        payload = self._api_json("GET", f"{self._repo_path}/pulls/{pr_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head/base")
        head_repo = _as_object_dict(head.get("repo"))

        context = PullRequestContext(
            owner=self.owner,
            repo_name=self.name,
            number=_as_int(payload_obj.get("number"), field="number"),
            head_ref=_as_string(head.get("ref")),
            head_sha=_as_string(head.get("sha")),
            # A deleted fork reports head.repo as null.
            head_repo_full_name=_as_string(head_repo.get("full_name")) if head_repo else "",
            base_ref=_as_string(base.get("ref")),
            state=_as_string(payload_obj.get("state")),
            draft=_as_bool(payload_obj.get("draft", False)),
            merged=_as_bool(payload_obj.get("merged", False)),
            mergeable=_as_optional_bool(payload_obj.get("mergeable")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=context.number,
            head_sha=context.head_sha,
            mergeable=context.mergeable,
        )
        return context

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        comments: list[IssueComment] = []
        for item_obj in self._api_list_paginated(
            f"{self._repo_path}/issues/{issue_number}/comments", what="issue comments"
        ):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                IssueComment(
                    comment_id=_as_int(item_obj.get("id"), field="id"),
                    body=_as_string(item_obj.get("body")),
                    user_login=_as_string(user_obj.get("login") if user_obj else None),
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

    def get_file_content(self, path: str, *, ref: str | None = None) -> FileContent:
        api_path = f"{self._repo_path}/contents/{quote(path, safe='/')}"
        if ref is not None:
            api_path = f"{api_path}?{urlencode({'ref': ref})}"
        payload = self._api_json("GET", api_path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None or _as_string(payload_obj.get("type")) != "file":
            raise PathNotAFileError(f"{self.full_name}:{path} does not resolve to a file")

        encoding = _as_string(payload_obj.get("encoding"))
        if encoding != "base64":
            raise RuntimeError(f"Unexpected GitHub content encoding for {path}: {encoding!r}")
        try:
            raw = base64.b64decode(_as_string(payload_obj.get("content")))
            text = raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise RuntimeError(f"{self.full_name}:{path} is not valid UTF-8 text") from exc

        log_event(LOGGER, "github_read", endpoint="contents", path=path, ref=ref)
        return FileContent(path=path, sha=_as_string(payload_obj.get("sha")), text=text)

    def get_commit_tree_sha(self, commit_sha: str) -> str:
        payload = self._api_json("GET", f"{self._repo_path}/git/commits/{commit_sha}")
        payload_obj = _as_object_dict(payload)
        tree = _as_object_dict(payload_obj.get("tree")) if payload_obj else None
        if tree is None:
            raise RuntimeError("Unexpected GitHub response: commit is missing its tree")
        tree_sha = _require_sha(tree.get("sha"), field="tree.sha")
        log_event(LOGGER, "github_read", endpoint="git_commit", commit_sha=commit_sha)
        return tree_sha

    def get_branch_head_sha(self, branch: str) -> str:
        payload = self._api_json(
            "GET", f"{self._repo_path}/git/ref/heads/{quote(branch, safe='/')}"
        )
        payload_obj = _as_object_dict(payload)
        target = _as_object_dict(payload_obj.get("object")) if payload_obj else None
        if target is None:
            raise RuntimeError("Unexpected GitHub response: ref is missing its object")
        sha = _require_sha(target.get("sha"), field="object.sha")
        log_event(LOGGER, "github_read", endpoint="git_ref", branch=branch, sha=sha)
        return sha

    def create_blob(self, content: str) -> str:
        payload = self._api_json(
            "POST",
            f"{self._repo_path}/git/blobs",
            payload={"content": content, "encoding": "utf-8"},
        )
        sha = _require_sha(_field(payload, "sha"), field="blob.sha")
        log_event(LOGGER, "github_write", endpoint="git_blob", sha=sha)
        return sha

    def create_tree(self, *, base_tree_sha: str, blobs_by_path: dict[str, str]) -> str:
        entries: list[object] = [
            {"path": path, "mode": _REGULAR_FILE_MODE, "type": "blob", "sha": blob_sha}
            for path, blob_sha in sorted(blobs_by_path.items())
        ]
        payload = self._api_json(
            "POST",
            f"{self._repo_path}/git/trees",
            payload={"base_tree": base_tree_sha, "tree": entries},
        )
        sha = _require_sha(_field(payload, "sha"), field="tree.sha")
        log_event(LOGGER, "github_write", endpoint="git_tree", sha=sha, entry_count=len(entries))
        return sha

    def create_commit(
        self,
        *,
        message: str,
        tree_sha: str,
        parent_shas: tuple[str, ...],
        author_name: str,
        author_email: str,
    ) -> str:
        payload = self._api_json(
            "POST",
            f"{self._repo_path}/git/commits",
            payload={
                "message": message,
                "tree": tree_sha,
                "parents": list(parent_shas),
                "author": {"name": author_name, "email": author_email},
            },
        )
        sha = _require_sha(_field(payload, "sha"), field="commit.sha")
        log_event(LOGGER, "github_write", endpoint="git_commit", sha=sha)
        return sha

    def update_branch_ref(self, branch: str, sha: str, *, force: bool = False) -> None:
        self._api_json(
            "PATCH",
            f"{self._repo_path}/git/refs/heads/{quote(branch, safe='/')}",
            payload={"sha": sha, "force": force},
        )
        log_event(LOGGER, "github_write", endpoint="git_ref", branch=branch, sha=sha, force=force)

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        merge_method: str = "squash",
    ) -> PullRequestMergeResult:
        payload = self._api_json(
            "PUT",
            f"{self._repo_path}/pulls/{pr_number}/merge",
            payload={"merge_method": merge_method},
        )
        payload_obj = _as_object_dict(payload) or {}
        result = PullRequestMergeResult(
            merged=_as_bool(payload_obj.get("merged", False)),
            message=_as_string(payload_obj.get("message")),
            sha=_as_optional_str(payload_obj.get("sha")),
        )
        log_event(
            LOGGER,
            "github_write",
            endpoint="pull_request_merge",
            pr_number=pr_number,
            merge_method=merge_method,
            merged=result.merged,
        )
        return result

    def merge_branches(self, *, base: str, head: str, commit_message: str) -> str | None:
        """Merge `head` into `base`; returns the merge commit SHA, or None when already merged."""
        payload = self._api_json(
            "POST",
            f"{self._repo_path}/merges",
            payload={"base": base, "head": head, "commit_message": commit_message},
        )
        sha = _as_optional_str(_field(payload, "sha")) if payload is not None else None
        log_event(LOGGER, "github_write", endpoint="merges", base=base, head=head, sha=sha)
        return sha

    def list_webhooks(self) -> list[WebhookSubscription]:
        hooks: list[WebhookSubscription] = []
        for item_obj in self._api_list_paginated(f"{self._repo_path}/hooks", what="webhooks"):
            config_obj = _as_object_dict(item_obj.get("config")) or {}
            hooks.append(
                WebhookSubscription(
                    hook_id=_as_int(item_obj.get("id"), field="id"),
                    url=_as_string(config_obj.get("url")),
                )
            )
        log_event(LOGGER, "github_read", endpoint="hooks", count=len(hooks))
        return hooks

    def create_webhook(self, *, url: str, secret: str, events: tuple[str, ...]) -> int:
        payload = self._api_json(
            "POST",
            f"{self._repo_path}/hooks",
            payload={
                "name": "web",
                "active": True,
                "events": list(events),
                "config": {"url": url, "content_type": "json", "secret": secret},
            },
        )
        hook_id = _as_int(_field(payload, "id"), field="id")
        log_event(LOGGER, "github_write", endpoint="hooks", hook_id=hook_id, url=url)
        return hook_id

    def create_file(
        self,
        *,
        path: str,
        content: str,
        message: str,
        author_name: str,
        author_email: str,
    ) -> None:
        identity = {"name": author_name, "email": author_email}
        self._api_json(
            "PUT",
            f"{self._repo_path}/contents/{quote(path, safe='/')}",
            payload={
                "message": message,
                "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                "committer": identity,
                "author": identity,
            },
        )
        log_event(LOGGER, "github_write", endpoint="contents", path=path)


@dataclass(frozen=True)
class GitHubAccountGateway(_GhApiClient):
    login: str

    def get_account_type(self) -> str:
        payload = self._api_json("GET", f"/users/{quote(self.login)}")
        account_type = _as_string(_field(payload, "type"))
        log_event(LOGGER, "github_read", endpoint="user", login=self.login, type=account_type)
        return account_type

    def list_repositories(self, account_type: str) -> list[RepositorySummary]:
        if account_type == "Organization":
            path = f"/orgs/{quote(self.login)}/repos"
            query: dict[str, object] = {}
        else:
            path = f"/users/{quote(self.login)}/repos"
            query = {"type": "owner"}

        repos: list[RepositorySummary] = []
        for item_obj in self._api_list_paginated(path, what="repositories", query=query):
            owner_obj = _as_object_dict(item_obj.get("owner"))
            owner = _as_string(owner_obj.get("login")) if owner_obj else self.login
            repos.append(
                RepositorySummary(
                    owner=owner or self.login,
                    name=_as_string(item_obj.get("name")),
                    archived=_as_bool(item_obj.get("archived", False)),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="repositories",
            login=self.login,
            account_type=account_type,
            count=len(repos),
        )
        return repos


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


def _field(payload: object, key: str) -> object:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise RuntimeError(f"Unexpected GitHub response: expected object with {key!r}")
    return payload_obj.get(key)


def _require_sha(value: object, *, field: str) -> str:
    if not isinstance(value, str) or not value:
        raise RuntimeError(f"Unexpected GitHub response: missing {field}")
    return value


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


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise RuntimeError("Unexpected GitHub response type for bool field")


def _as_optional_bool(value: object) -> bool | None:
    if value is None:
        return None
    return _as_bool(value)
