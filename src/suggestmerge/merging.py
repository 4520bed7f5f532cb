from __future__ import annotations

import logging
from typing import Protocol

from suggestmerge.models import MergeOutcome, PullRequestContext, PullRequestMergeResult
from suggestmerge.observability import log_event, log_warning_event
from suggestmerge.policy import RepositoryPolicy


LOGGER = logging.getLogger("suggestmerge.merging")
MERGE_METHOD = "squash"


class MergeGitHub(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestContext: ...

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        merge_method: str = "squash",
    ) -> PullRequestMergeResult: ...

    def merge_branches(self, *, base: str, head: str, commit_message: str) -> str | None: ...


def merge_pull_request(
    github: MergeGitHub,
    pr_number: int,
    policy: RepositoryPolicy,
) -> MergeOutcome:
    pr = github.get_pull_request(pr_number)
    if pr.merged:
        log_event(LOGGER, "pull_request_already_merged", pr_number=pr_number)
        return "already_merged"

    if pr.mergeable is not True:
        log_warning_event(
            LOGGER,
            "pull_request_unmergeable",
            pr_number=pr_number,
            mergeable=pr.mergeable,
        )
        return "unmergeable"

    try:
        result = github.merge_pull_request(pr_number, merge_method=MERGE_METHOD)
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            LOGGER,
            "pull_request_merge_failed",
            pr_number=pr_number,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return "merge_failed"

    if not result.merged:
        log_warning_event(
            LOGGER,
            "pull_request_merge_failed",
            pr_number=pr_number,
            reason=result.message,
        )
        return "merge_failed"

    log_event(
        LOGGER,
        "pull_request_merged",
        pr_number=pr_number,
        merge_sha=result.sha,
        base_ref=pr.base_ref,
    )
    integrate_branch(github, target_branch=pr.base_ref, primary_branch=policy.primary_branch)
    return "merged"


def integrate_branch(github: MergeGitHub, *, target_branch: str, primary_branch: str) -> bool:
    """Merge `target_branch` into `primary_branch`; failures are logged, never raised."""
    if target_branch == primary_branch:
        return True

    log_event(
        LOGGER,
        "branch_integration_started",
        base=primary_branch,
        head=target_branch,
    )
    try:
        sha = github.merge_branches(
            base=primary_branch,
            head=target_branch,
            commit_message=f"Merge branch '{target_branch}' into {primary_branch}",
        )
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            LOGGER,
            "branch_integration_failed",
            base=primary_branch,
            head=target_branch,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return False

    if sha is None:
        log_event(LOGGER, "branch_integration_noop", base=primary_branch, head=target_branch)
    else:
        log_event(
            LOGGER, "branch_integrated", base=primary_branch, head=target_branch, merge_sha=sha
        )
    return True
