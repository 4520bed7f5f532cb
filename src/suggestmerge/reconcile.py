from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Protocol

from suggestmerge.config import AppConfig
from suggestmerge.github_gateway import GitHubAccountGateway, GitHubApiError, GitHubGateway
from suggestmerge.models import FileContent, RepositorySummary, WebhookSubscription
from suggestmerge.observability import log_event, log_warning_event, logging_repo_context
from suggestmerge.policy import baseline_policy_document


LOGGER = logging.getLogger("suggestmerge.reconcile")
WEBHOOK_EVENTS = ("pull_request", "issue_comment")
POLICY_COMMIT_MESSAGE = "feat: Add worker configuration file"


class AccountGitHub(Protocol):
    def get_account_type(self) -> str: ...

    def list_repositories(self, account_type: str) -> list[RepositorySummary]: ...


class RepositoryGitHub(Protocol):
    def list_webhooks(self) -> list[WebhookSubscription]: ...

    def create_webhook(self, *, url: str, secret: str, events: tuple[str, ...]) -> int: ...

    def get_file_content(self, path: str, *, ref: str | None = None) -> FileContent: ...

    def create_file(
        self,
        *,
        path: str,
        content: str,
        message: str,
        author_name: str,
        author_email: str,
    ) -> None: ...


@dataclass
class ReconcileReport:
    repository_count: int = 0
    webhooks_created: int = 0
    policies_created: int = 0
    archived_skipped: int = 0
    failures: int = 0
    listing_failed: bool = False


class Reconciler:
    def __init__(
        self,
        config: AppConfig,
        *,
        account: AccountGitHub | None = None,
        repo_gateway_factory: Callable[[str, str], RepositoryGitHub] = GitHubGateway,
    ) -> None:
        self._config = config
        self._account = account or GitHubAccountGateway(config.github.owner)
        self._repo_gateway_factory = repo_gateway_factory

    def run_once(self) -> ReconcileReport:
        report = ReconcileReport()
        log_event(LOGGER, "reconcile_started", owner=self._config.github.owner)
        try:
            account_type = self._account.get_account_type()
            repos = self._account.list_repositories(account_type)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "reconcile_listing_failed",
                owner=self._config.github.owner,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            report.listing_failed = True
            return report

        for repo in repos:
            report.repository_count += 1
            with logging_repo_context(repo.full_name):
                if repo.archived:
                    # Archived repositories are read-only.
                    log_event(LOGGER, "reconcile_repository_skipped", reason="archived")
                    report.archived_skipped += 1
                    continue
                github = self._repo_gateway_factory(repo.owner, repo.name)
                webhook_ok = self._ensure_webhook(github, report)
                policy_ok = self._ensure_policy_file(github, report)
                if not (webhook_ok and policy_ok):
                    report.failures += 1

        log_event(
            LOGGER,
            "reconcile_finished",
            repository_count=report.repository_count,
            webhooks_created=report.webhooks_created,
            policies_created=report.policies_created,
            failures=report.failures,
        )
        return report

    def _ensure_webhook(self, github: RepositoryGitHub, report: ReconcileReport) -> bool:
        webhook_url = self._config.service.webhook_url
        try:
            hooks = github.list_webhooks()
            if any(hook.url == webhook_url for hook in hooks):
                log_event(LOGGER, "reconcile_webhook_present", url=webhook_url)
                return True
            hook_id = github.create_webhook(
                url=webhook_url,
                secret=self._config.service.webhook_secret,
                events=WEBHOOK_EVENTS,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "reconcile_webhook_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        report.webhooks_created += 1
        log_event(LOGGER, "reconcile_webhook_created", hook_id=hook_id, url=webhook_url)
        return True

    def _ensure_policy_file(self, github: RepositoryGitHub, report: ReconcileReport) -> bool:
        policy_path = self._config.service.policy_path
        try:
            github.get_file_content(policy_path)
        except GitHubApiError as exc:
            if not exc.is_not_found:
                log_warning_event(
                    LOGGER,
                    "reconcile_policy_check_failed",
                    path=policy_path,
                    status_code=exc.status_code,
                    error=str(exc),
                )
                return False
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "reconcile_policy_check_failed",
                path=policy_path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        else:
            log_event(LOGGER, "reconcile_policy_present", path=policy_path)
            return True

        try:
            github.create_file(
                path=policy_path,
                content=baseline_policy_document(),
                message=POLICY_COMMIT_MESSAGE,
                author_name=self._config.bot.name,
                author_email=self._config.bot.email,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "reconcile_policy_create_failed",
                path=policy_path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        report.policies_created += 1
        log_event(LOGGER, "reconcile_policy_created", path=policy_path)
        return True
