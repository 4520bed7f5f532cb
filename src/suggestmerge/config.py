from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
import tomllib
from typing import cast


DEFAULT_POLICY_PATH = ".github/worker-settings.json"
DEFAULT_WEBHOOK_SECRET_ENV = "SUGGESTMERGE_WEBHOOK_SECRET"
WEBHOOK_PATH = "/webhook"


@dataclass(frozen=True)
class GitHubConfig:
    owner: str


@dataclass(frozen=True)
class ServiceConfig:
    public_url: str
    webhook_secret: str
    host: str = "0.0.0.0"
    port: int = 8787
    policy_path: str = DEFAULT_POLICY_PATH
    log_dir: Path | None = None
    pipeline_workers: int = 4

    @property
    def webhook_url(self) -> str:
        return f"{self.public_url}{WEBHOOK_PATH}"


@dataclass(frozen=True)
class BotIdentity:
    name: str = "GH-Worker-Bot"
    email: str = "bot@example.com"


@dataclass(frozen=True)
class ReadinessConfig:
    max_attempts: int = 12
    interval_seconds: float = 5.0


@dataclass(frozen=True)
class AppConfig:
    github: GitHubConfig
    service: ServiceConfig
    bot: BotIdentity = BotIdentity()
    readiness: ReadinessConfig = ReadinessConfig()


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    return parse_config(data, environ=os.environ if environ is None else environ)


def parse_config(data: dict[str, object], *, environ: Mapping[str, str]) -> AppConfig:
    github_data = _require_table(data, "github")
    service_data = _require_table(data, "service")
    bot_data = _optional_table(data, "bot") or {}
    readiness_data = _optional_table(data, "readiness") or {}

    secret_env = _str_with_default(service_data, "webhook_secret_env", DEFAULT_WEBHOOK_SECRET_ENV)
    webhook_secret = environ.get(secret_env, "")
    if not webhook_secret:
        raise ConfigError(f"environment variable {secret_env} must hold the webhook secret")

    service = ServiceConfig(
        public_url=_require_str(service_data, "public_url").rstrip("/"),
        webhook_secret=webhook_secret,
        host=_str_with_default(service_data, "host", "0.0.0.0"),
        port=_int_with_default(service_data, "port", 8787),
        policy_path=_str_with_default(service_data, "policy_path", DEFAULT_POLICY_PATH),
        log_dir=_optional_path(service_data, "log_dir"),
        pipeline_workers=_int_with_default(service_data, "pipeline_workers", 4),
    )
    if not service.public_url.startswith(("http://", "https://")):
        raise ConfigError("service.public_url must be an http(s) URL")
    if not 0 < service.port < 65536:
        raise ConfigError("service.port must be between 1 and 65535")
    if service.pipeline_workers < 1:
        raise ConfigError("service.pipeline_workers must be >= 1")

    readiness = ReadinessConfig(
        max_attempts=_int_with_default(readiness_data, "max_attempts", 12),
        interval_seconds=_number_with_default(readiness_data, "interval_seconds", 5.0),
    )
    if readiness.max_attempts < 1:
        raise ConfigError("readiness.max_attempts must be >= 1")
    if readiness.interval_seconds < 0:
        raise ConfigError("readiness.interval_seconds must be >= 0")

    return AppConfig(
        github=GitHubConfig(owner=_require_str(github_data, "owner")),
        service=service,
        bot=BotIdentity(
            name=_str_with_default(bot_data, "name", "GH-Worker-Bot"),
            email=_str_with_default(bot_data, "email", "bot@example.com"),
        ),
        readiness=readiness,
    )


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
