from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import replace
import logging
import time
from typing import Protocol

from suggestmerge.commit_builder import (
    CommitGitHub,
    StaleHeadError,
    SuggestionBatchError,
    SuggestionCommitBuilder,
)
from suggestmerge.config import BotIdentity, ReadinessConfig
from suggestmerge.merging import MergeGitHub, merge_pull_request
from suggestmerge.models import (
    CommitResult,
    IssueComment,
    PipelineOutcome,
    PullRequestContext,
    SuggestionBatch,
)
from suggestmerge.observability import log_event, log_warning_event, logging_repo_context
from suggestmerge.policy import RepositoryPolicy
from suggestmerge.readiness import wait_for_ready
from suggestmerge.suggestions import parse_suggestions


LOGGER = logging.getLogger("suggestmerge.pipeline")


class PipelineGitHub(CommitGitHub, MergeGitHub, Protocol):
    @property
    def full_name(self) -> str: ...

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]: ...


def pull_request_skip_reason(pr: PullRequestContext) -> str | None:
    if pr.state != "open":
        return "not_open"
    if pr.draft:
        return "draft"
    if pr.is_cross_repository:
        return "cross_repository_head"
    return None


def collect_trusted_batches(
    comments: Sequence[IssueComment], policy: RepositoryPolicy
) -> tuple[SuggestionBatch, ...]:
    batches: list[SuggestionBatch] = []
    for comment in comments:
        if not policy.trusts(comment.user_login) or not comment.body:
            continue
        parsed = parse_suggestions(comment.body)
        if not parsed:
            continue
        log_event(
            LOGGER,
            "suggestions_parsed",
            comment_id=comment.comment_id,
            edit_count=len(parsed),
        )
        batches.append(SuggestionBatch(comment_id=comment.comment_id, edits=parsed))
    return tuple(batches)


class SuggestionPipeline:
    """Runs extraction, commit, readiness wait and merge for one pull request."""

    def __init__(
        self,
        github: PipelineGitHub,
        policy: RepositoryPolicy,
        *,
        bot: BotIdentity,
        readiness: ReadinessConfig,
        sleep: Callable[[float], None] = time.sleep,
        builder: SuggestionCommitBuilder | None = None,
    ) -> None:
        self._github = github
        self._policy = policy
        self._readiness = readiness
        self._sleep = sleep
        self._builder = builder or SuggestionCommitBuilder(github, bot=bot)

    def run(self, pr_number: int) -> PipelineOutcome:
        with logging_repo_context(self._github.full_name):
            try:
                outcome = self._run(pr_number)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "pipeline_failed",
                    pr_number=pr_number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                outcome = PipelineOutcome(status="failed", pr_number=pr_number, detail=str(exc))
            log_event(
                LOGGER,
                "pipeline_finished",
                pr_number=pr_number,
                status=outcome.status,
                detail=outcome.detail,
                commit_sha=outcome.commit_sha,
            )
            return outcome

    def _run(self, pr_number: int) -> PipelineOutcome:
        pr = self._github.get_pull_request(pr_number)
        skip_reason = pull_request_skip_reason(pr)
        if skip_reason is not None:
            log_event(LOGGER, "pull_request_skipped", pr_number=pr_number, reason=skip_reason)
            return PipelineOutcome(status="skipped", pr_number=pr_number, detail=skip_reason)

        comments = self._github.list_issue_comments(pr_number)
        batches = collect_trusted_batches(comments, self._policy)
        log_event(
            LOGGER,
            "suggestions_collected",
            pr_number=pr_number,
            comment_count=len(comments),
            batch_count=len(batches),
            edit_count=sum(len(batch.edits) for batch in batches),
            bot_username=self._policy.bot_username,
        )
        if not batches:
            return PipelineOutcome(status="no_suggestions", pr_number=pr_number)

        # Comments are applied oldest first; each one commits on top of the previous.
        commit: CommitResult | None = None
        abort_detail: str | None = None
        for batch in batches:
            try:
                result = self._builder.build(pr, batch.edits)
            except StaleHeadError as exc:
                self._log_aborted_batch(pr_number, batch, exc)
                return PipelineOutcome(
                    status="batch_aborted",
                    pr_number=pr_number,
                    detail=str(exc),
                    commit_sha=commit.commit_sha if commit is not None else None,
                )
            except SuggestionBatchError as exc:
                self._log_aborted_batch(pr_number, batch, exc)
                abort_detail = str(exc)
                continue
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "suggestion_commit_failed",
                    pr_number=pr_number,
                    comment_id=batch.comment_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return PipelineOutcome(
                    status="commit_failed",
                    pr_number=pr_number,
                    detail=str(exc),
                    commit_sha=commit.commit_sha if commit is not None else None,
                )
            if result is not None:
                commit = result
                pr = replace(pr, head_sha=result.commit_sha)

        if commit is None:
            if abort_detail is not None:
                return PipelineOutcome(
                    status="batch_aborted", pr_number=pr_number, detail=abort_detail
                )
            return PipelineOutcome(
                status="no_suggestions", pr_number=pr_number, detail="no_effective_changes"
            )

        wait_for_ready(
            self._github,
            pr_number,
            commit.commit_sha,
            max_attempts=self._readiness.max_attempts,
            interval_seconds=self._readiness.interval_seconds,
            sleep=self._sleep,
        )
        merge_outcome = merge_pull_request(self._github, pr_number, self._policy)
        return PipelineOutcome(
            status=merge_outcome,
            pr_number=pr_number,
            commit_sha=commit.commit_sha,
        )

    def _log_aborted_batch(
        self, pr_number: int, batch: SuggestionBatch, exc: SuggestionBatchError
    ) -> None:
        log_warning_event(
            LOGGER,
            "suggestion_batch_aborted",
            pr_number=pr_number,
            comment_id=batch.comment_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
