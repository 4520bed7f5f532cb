from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import json
import logging
from typing import Protocol, TypeVar, cast

from suggestmerge.github_gateway import GitHubApiError
from suggestmerge.models import FileContent
from suggestmerge.observability import log_event, log_warning_event


LOGGER = logging.getLogger("suggestmerge.policy")
DEFAULT_BOT_USERNAME = "gemini-code-assist[bot]"
DEFAULT_PRIMARY_BRANCH = "main"
T = TypeVar("T")


class PolicyError(ValueError):
    pass


class _ContentReader(Protocol):
    def get_file_content(self, path: str, *, ref: str | None = None) -> FileContent: ...


@dataclass(frozen=True)
class RepositoryPolicy:
    automatic_pr_processing: bool = False
    bot_username: str = DEFAULT_BOT_USERNAME
    primary_branch: str = DEFAULT_PRIMARY_BRANCH
    ai_model: str | None = None
    custom_prompts: dict[str, str] = field(default_factory=dict)
    ignored_files: tuple[str, ...] = ()

    @property
    def trusted_commenters(self) -> frozenset[str]:
        return frozenset({_normalize_login(self.bot_username)})

    def trusts(self, login: str) -> bool:
        normalized = _normalize_login(login)
        if not normalized:
            return False
        return normalized in self.trusted_commenters


def baseline_policy_document() -> str:
    return json.dumps({"automatic_pr_processing": False}, indent=2) + "\n"


def parse_policy(text: str) -> RepositoryPolicy:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PolicyError(f"policy file is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict) or not all(isinstance(key, str) for key in data.keys()):
        raise PolicyError("policy file must contain a JSON object")
    doc = cast(dict[str, object], data)

    return RepositoryPolicy(
        automatic_pr_processing=_bool_with_default(doc, "automatic_pr_processing", False),
        bot_username=_str_with_default(doc, "bot_username", DEFAULT_BOT_USERNAME),
        primary_branch=_str_with_default(doc, "primary_branch", DEFAULT_PRIMARY_BRANCH),
        ai_model=_optional_field(doc, "ai_model", _as_str, None),
        custom_prompts=_optional_field(doc, "custom_prompts", _as_str_mapping, {}),
        ignored_files=_optional_field(doc, "ignored_files", _as_str_tuple, ()),
    )


def load_repository_policy(github: _ContentReader, policy_path: str) -> RepositoryPolicy | None:
    """Read the policy at the default branch head; None when absent or unreadable."""
    try:
        content = github.get_file_content(policy_path)
    except GitHubApiError as exc:
        if exc.is_not_found:
            log_event(LOGGER, "policy_missing", path=policy_path)
        else:
            log_warning_event(
                LOGGER,
                "policy_read_failed",
                path=policy_path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return None
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            LOGGER,
            "policy_read_failed",
            path=policy_path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return None

    try:
        policy = parse_policy(content.text)
    except PolicyError as exc:
        log_warning_event(LOGGER, "policy_invalid", path=policy_path, error=str(exc))
        return None

    log_event(
        LOGGER,
        "policy_loaded",
        path=policy_path,
        automatic_pr_processing=policy.automatic_pr_processing,
        primary_branch=policy.primary_branch,
    )
    return policy


def _normalize_login(login: str) -> str:
    return login.strip().lower()


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise PolicyError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise PolicyError(f"{key} must be a string")
    return value.strip() or default


def _optional_field(
    data: dict[str, object], key: str, parse: Callable[[object], T], default: T
) -> T:
    """Parse a field the pipeline does not act on; a bad value is logged and ignored."""
    value = data.get(key)
    if value is None:
        return default
    try:
        return parse(value)
    except PolicyError as exc:
        log_warning_event(LOGGER, "policy_field_ignored", field=key, error=str(exc))
        return default


def _as_str(value: object) -> str:
    if not isinstance(value, str):
        raise PolicyError("expected a string")
    return value


def _as_str_mapping(value: object) -> dict[str, str]:
    if not isinstance(value, dict):
        raise PolicyError("expected an object of strings")
    out: dict[str, str] = {}
    for item_key, item_value in value.items():
        if not isinstance(item_key, str) or not isinstance(item_value, str):
            raise PolicyError("expected an object of strings")
        out[item_key] = item_value
    return out


def _as_str_tuple(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise PolicyError("expected a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise PolicyError("expected a list of strings")
        out.append(item)
    return tuple(out)
