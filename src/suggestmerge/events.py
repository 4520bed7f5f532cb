from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import cast

from suggestmerge.config import AppConfig
from suggestmerge.github_gateway import GitHubGateway
from suggestmerge.models import PipelineOutcome, WebhookEvent
from suggestmerge.observability import log_event, logging_repo_context
from suggestmerge.pipeline import PipelineGitHub, SuggestionPipeline
from suggestmerge.policy import RepositoryPolicy, load_repository_policy


LOGGER = logging.getLogger("suggestmerge.events")
_PULL_REQUEST_ACTIONS = frozenset({"opened", "synchronize", "reopened", "ready_for_review"})

GatewayFactory = Callable[[str, str], PipelineGitHub]
PipelineFactory = Callable[[PipelineGitHub, RepositoryPolicy], SuggestionPipeline]


@dataclass(frozen=True)
class RouteDecision:
    status_code: int
    message: str
    task: Callable[[], PipelineOutcome] | None = None


def classify_event(
    kind: str, payload: dict[str, object], *, delivery_id: str
) -> WebhookEvent | None:
    """Map a webhook delivery to the pull request it asks us to (re)process."""
    repository = _as_dict(payload.get("repository"))
    owner = _as_dict(repository.get("owner")) if repository else None
    if repository is None or owner is None:
        return None
    owner_login = owner.get("login")
    repo_name = repository.get("name")
    if not isinstance(owner_login, str) or not isinstance(repo_name, str):
        return None

    action = payload.get("action")
    if not isinstance(action, str):
        return None

    pr_number: object = None
    if kind == "issue_comment" and action == "created":
        issue = _as_dict(payload.get("issue"))
        # Issues and pull requests share the comment event; only PRs carry this key.
        if issue is not None and issue.get("pull_request"):
            pr_number = issue.get("number")
    elif kind == "pull_request" and action in _PULL_REQUEST_ACTIONS:
        pull_request = _as_dict(payload.get("pull_request"))
        if pull_request is not None:
            pr_number = pull_request.get("number")

    if isinstance(pr_number, bool) or not isinstance(pr_number, int):
        return None
    return WebhookEvent(
        kind=kind,
        action=action,
        owner=owner_login,
        repo_name=repo_name,
        pr_number=pr_number,
        delivery_id=delivery_id,
    )


class EventRouter:
    def __init__(
        self,
        config: AppConfig,
        *,
        gateway_factory: GatewayFactory = GitHubGateway,
        pipeline_factory: PipelineFactory | None = None,
    ) -> None:
        self._config = config
        self._gateway_factory = gateway_factory
        self._pipeline_factory = pipeline_factory or self._default_pipeline

    def route(
        self, *, event_kind: str, delivery_id: str, payload: dict[str, object]
    ) -> RouteDecision:
        repository = _as_dict(payload.get("repository"))
        if repository is None:
            log_event(LOGGER, "webhook_rejected", delivery_id=delivery_id, reason="no_repository")
            return RouteDecision(400, "No repository information in payload")

        full_name = repository.get("full_name")
        with logging_repo_context(full_name if isinstance(full_name, str) else None):
            log_event(
                LOGGER,
                "webhook_received",
                delivery_id=delivery_id,
                event_kind=event_kind,
                action=payload.get("action") if isinstance(payload.get("action"), str) else None,
            )
            event = classify_event(event_kind, payload, delivery_id=delivery_id)
            if event is None:
                log_event(LOGGER, "webhook_ignored", delivery_id=delivery_id, event_kind=event_kind)
                return RouteDecision(200, "Event ignored.")

            github = self._gateway_factory(event.owner, event.repo_name)
            policy = load_repository_policy(github, self._config.service.policy_path)
            if policy is None:
                return RouteDecision(200, "Configuration not found, ignoring event.")
            if not policy.automatic_pr_processing:
                log_event(
                    LOGGER,
                    "webhook_ignored",
                    delivery_id=delivery_id,
                    reason="automatic_processing_disabled",
                )
                return RouteDecision(200, "Automatic processing disabled.")

            pipeline = self._pipeline_factory(github, policy)
            log_event(
                LOGGER,
                "webhook_dispatched",
                delivery_id=delivery_id,
                event_kind=event.kind,
                action=event.action,
                pr_number=event.pr_number,
            )
            pr_number = event.pr_number
            return RouteDecision(
                202,
                "Webhook event received and is being processed.",
                task=lambda: pipeline.run(pr_number),
            )

    def _default_pipeline(
        self, github: PipelineGitHub, policy: RepositoryPolicy
    ) -> SuggestionPipeline:
        return SuggestionPipeline(
            github,
            policy,
            bot=self._config.bot,
            readiness=self._config.readiness,
        )


def _as_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return cast(dict[str, object], value)
