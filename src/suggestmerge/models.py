from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


MergeOutcome = Literal["already_merged", "merged", "unmergeable", "merge_failed"]
PipelineStatus = Literal[
    "skipped",
    "no_suggestions",
    "batch_aborted",
    "commit_failed",
    "already_merged",
    "merged",
    "unmergeable",
    "merge_failed",
    "failed",
]


@dataclass(frozen=True)
class SuggestionEdit:
    file_path: str
    diff_body: str


@dataclass(frozen=True)
class SuggestionBatch:
    """The edits of one review comment, applied all together or not at all."""

    comment_id: int
    edits: tuple[SuggestionEdit, ...]


@dataclass(frozen=True)
class PullRequestContext:
    owner: str
    repo_name: str
    number: int
    head_ref: str
    head_sha: str
    head_repo_full_name: str
    base_ref: str
    state: str
    draft: bool
    merged: bool
    mergeable: bool | None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo_name}"

    @property
    def is_cross_repository(self) -> bool:
        return self.head_repo_full_name.lower() != self.full_name.lower()


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str


@dataclass(frozen=True)
class FileContent:
    path: str
    sha: str
    text: str


@dataclass(frozen=True)
class PullRequestMergeResult:
    merged: bool
    message: str
    sha: str | None


@dataclass(frozen=True)
class WebhookSubscription:
    hook_id: int
    url: str


@dataclass(frozen=True)
class RepositorySummary:
    owner: str
    name: str
    archived: bool

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class WebhookEvent:
    kind: str
    action: str
    owner: str
    repo_name: str
    pr_number: int
    delivery_id: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo_name}"


@dataclass(frozen=True)
class CommitResult:
    commit_sha: str
    tree_sha: str
    parent_sha: str
    branch: str
    changed_paths: tuple[str, ...]


@dataclass(frozen=True)
class PipelineOutcome:
    status: PipelineStatus
    pr_number: int
    detail: str = ""
    commit_sha: str | None = None
