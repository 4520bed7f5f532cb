from __future__ import annotations

from collections.abc import Callable
import logging
import time
from typing import Protocol

from suggestmerge.models import PullRequestContext
from suggestmerge.observability import log_event, log_warning_event


LOGGER = logging.getLogger("suggestmerge.readiness")
DEFAULT_MAX_ATTEMPTS = 12
DEFAULT_INTERVAL_SECONDS = 5.0


class PullRequestReader(Protocol):
    def get_pull_request(self, pr_number: int) -> PullRequestContext: ...


def is_ready(pr: PullRequestContext, expected_head_sha: str) -> bool:
    return pr.head_sha == expected_head_sha and pr.mergeable is not None


def wait_for_ready(
    github: PullRequestReader,
    pr_number: int,
    expected_head_sha: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll until GitHub reports our head commit with computed mergeability.

    Never raises. Returns False when attempts run out; callers proceed anyway and
    rely on the merge step's own mergeability check.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            pr = github.get_pull_request(pr_number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "readiness_check_failed",
                pr_number=pr_number,
                attempt=attempt,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            if is_ready(pr, expected_head_sha):
                log_event(
                    LOGGER,
                    "pull_request_ready",
                    pr_number=pr_number,
                    attempt=attempt,
                    mergeable=pr.mergeable,
                )
                return True
            log_event(
                LOGGER,
                "pull_request_not_ready",
                pr_number=pr_number,
                attempt=attempt,
                max_attempts=max_attempts,
                head_matches=pr.head_sha == expected_head_sha,
                mergeable=pr.mergeable,
            )

        if attempt < max_attempts:
            sleep(interval_seconds)

    log_warning_event(
        LOGGER,
        "pull_request_readiness_timeout",
        pr_number=pr_number,
        max_attempts=max_attempts,
        expected_head_sha=expected_head_sha,
    )
    return False
