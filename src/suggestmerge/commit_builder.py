from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
import logging
from typing import Protocol

from suggestmerge.config import BotIdentity
from suggestmerge.github_gateway import GitHubApiError, PathNotAFileError
from suggestmerge.models import CommitResult, FileContent, PullRequestContext, SuggestionEdit
from suggestmerge.observability import log_event, log_warning_event
from suggestmerge.patching import PatchApplyError, apply_patch
from suggestmerge.suggestions import render_patch


LOGGER = logging.getLogger("suggestmerge.commit_builder")
_MAX_BLOB_WORKERS = 4


class SuggestionBatchError(RuntimeError):
    """A suggestion batch cannot be applied as a whole; nothing was written."""


class StaleHeadError(SuggestionBatchError):
    """The pull request branch moved after the batch was read."""


Patcher = Callable[..., str]


class CommitGitHub(Protocol):
    def get_file_content(self, path: str, *, ref: str | None = None) -> FileContent: ...

    def get_commit_tree_sha(self, commit_sha: str) -> str: ...

    def create_blob(self, content: str) -> str: ...

    def create_tree(self, *, base_tree_sha: str, blobs_by_path: dict[str, str]) -> str: ...

    def create_commit(
        self,
        *,
        message: str,
        tree_sha: str,
        parent_shas: tuple[str, ...],
        author_name: str,
        author_email: str,
    ) -> str: ...

    def get_branch_head_sha(self, branch: str) -> str: ...

    def update_branch_ref(self, branch: str, sha: str, *, force: bool = False) -> None: ...


class SuggestionCommitBuilder:
    def __init__(
        self,
        github: CommitGitHub,
        *,
        bot: BotIdentity,
        patcher: Patcher = apply_patch,
    ) -> None:
        self._github = github
        self._bot = bot
        self._patcher = patcher

    def build(
        self, pr: PullRequestContext, edits: Sequence[SuggestionEdit]
    ) -> CommitResult | None:
        """Apply every edit on top of the PR head and push one commit, or nothing.

        Raises SuggestionBatchError when any edit cannot be applied or the branch
        moved underneath us; the branch ref is untouched in that case.
        """
        change_set = self.collect_changes(pr, edits)
        if not change_set:
            log_event(
                LOGGER,
                "suggestion_commit_skipped",
                pr_number=pr.number,
                reason="empty_change_set",
                edit_count=len(edits),
            )
            return None
        return self.commit_changes(pr, change_set)

    def collect_changes(
        self, pr: PullRequestContext, edits: Sequence[SuggestionEdit]
    ) -> dict[str, str]:
        change_set: dict[str, str] = {}
        originals: dict[str, str] = {}
        for edit in edits:
            original = self._read_file(pr, edit.file_path)
            try:
                patched = self._patcher(original, render_patch(edit), file_path=edit.file_path)
            except PatchApplyError as exc:
                raise SuggestionBatchError(str(exc)) from exc
            originals.setdefault(edit.file_path, original)
            change_set[edit.file_path] = patched
            log_event(LOGGER, "suggestion_applied", pr_number=pr.number, file_path=edit.file_path)

        return {
            path: content for path, content in change_set.items() if content != originals[path]
        }

    def commit_changes(self, pr: PullRequestContext, change_set: dict[str, str]) -> CommitResult:
        base_tree_sha = self._github.get_commit_tree_sha(pr.head_sha)
        blobs_by_path = self._create_blobs(change_set)
        tree_sha = self._github.create_tree(
            base_tree_sha=base_tree_sha, blobs_by_path=blobs_by_path
        )
        commit_sha = self._github.create_commit(
            message=f"feat: Apply code suggestions for PR #{pr.number}",
            tree_sha=tree_sha,
            parent_shas=(pr.head_sha,),
            author_name=self._bot.name,
            author_email=self._bot.email,
        )

        observed_head = self._github.get_branch_head_sha(pr.head_ref)
        if observed_head != pr.head_sha:
            log_warning_event(
                LOGGER,
                "suggestion_stale_head",
                pr_number=pr.number,
                expected_head_sha=pr.head_sha,
                observed_head_sha=observed_head,
            )
            raise StaleHeadError(
                f"branch {pr.head_ref} moved from {pr.head_sha} to {observed_head}"
            )
        try:
            self._github.update_branch_ref(pr.head_ref, commit_sha, force=False)
        except GitHubApiError as exc:
            if exc.status_code == 422:
                raise StaleHeadError(
                    f"branch {pr.head_ref} rejected non-fast-forward update to {commit_sha}"
                ) from exc
            raise

        result = CommitResult(
            commit_sha=commit_sha,
            tree_sha=tree_sha,
            parent_sha=pr.head_sha,
            branch=pr.head_ref,
            changed_paths=tuple(sorted(change_set)),
        )
        log_event(
            LOGGER,
            "suggestion_commit_created",
            pr_number=pr.number,
            branch=pr.head_ref,
            commit_sha=commit_sha,
            changed_paths=result.changed_paths,
        )
        return result

    def _read_file(self, pr: PullRequestContext, file_path: str) -> str:
        try:
            return self._github.get_file_content(file_path, ref=pr.head_sha).text
        except PathNotAFileError as exc:
            raise SuggestionBatchError(str(exc)) from exc
        except GitHubApiError as exc:
            if exc.is_not_found:
                raise SuggestionBatchError(
                    f"{file_path} does not exist at {pr.head_sha}"
                ) from exc
            raise

    def _create_blobs(self, change_set: dict[str, str]) -> dict[str, str]:
        workers = max(1, min(_MAX_BLOB_WORKERS, len(change_set)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="blob") as pool:
            futures: dict[str, Future[str]] = {
                path: pool.submit(self._github.create_blob, content)
                for path, content in change_set.items()
            }
            return {path: future.result() for path, future in futures.items()}
