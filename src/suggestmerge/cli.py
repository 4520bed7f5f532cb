from __future__ import annotations

import argparse
from pathlib import Path
import sys

import uvicorn

from suggestmerge.config import AppConfig, load_config
from suggestmerge.github_gateway import GitHubGateway
from suggestmerge.observability import configure_logging
from suggestmerge.pipeline import SuggestionPipeline
from suggestmerge.policy import RepositoryPolicy, load_repository_policy
from suggestmerge.reconcile import Reconciler
from suggestmerge.webhook_app import create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="suggestmerge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Serve the GitHub webhook endpoint")
    _add_common_arguments(serve_parser)
    serve_parser.add_argument("--host", type=str, help="Override service.host")
    serve_parser.add_argument("--port", type=int, help="Override service.port")

    reconcile_parser = subparsers.add_parser(
        "reconcile",
        help="Ensure every repository of the account has the webhook and policy file",
    )
    _add_common_arguments(reconcile_parser)

    process_parser = subparsers.add_parser(
        "process", help="Apply suggestions and merge one pull request now"
    )
    _add_common_arguments(process_parser)
    process_parser.add_argument("--repo", type=str, required=True, help="owner/name")
    process_parser.add_argument("--pr", type=int, required=True, help="Pull request number")
    process_parser.add_argument(
        "--force",
        action="store_true",
        help="Run even when the repository policy disables automatic processing",
    )

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("suggestmerge.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default mode: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(args.verbose, log_dir=config.service.log_dir)

    if args.command == "serve":
        _cmd_serve(config, host=args.host, port=args.port)
        return
    if args.command == "reconcile":
        sys.exit(_cmd_reconcile(config))
    if args.command == "process":
        sys.exit(_cmd_process(config, repo=args.repo, pr_number=args.pr, force=bool(args.force)))

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_serve(config: AppConfig, *, host: str | None, port: int | None) -> None:
    uvicorn.run(
        create_app(config),
        host=host or config.service.host,
        port=port or config.service.port,
        log_level="info",
    )


def _cmd_reconcile(config: AppConfig) -> int:
    report = Reconciler(config).run_once()
    print(
        f"repositories={report.repository_count} "
        f"webhooks_created={report.webhooks_created} "
        f"policies_created={report.policies_created} "
        f"failures={report.failures}"
    )
    return 1 if report.listing_failed else 0


def _cmd_process(config: AppConfig, *, repo: str, pr_number: int, force: bool) -> int:
    owner, sep, name = repo.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise SystemExit(f"--repo must be owner/name, got {repo!r}")

    github = GitHubGateway(owner, name)
    policy = load_repository_policy(github, config.service.policy_path)
    if policy is None or not policy.automatic_pr_processing:
        if not force:
            print(f"{repo}: automatic processing is not enabled; use --force to override")
            return 1
        policy = policy or RepositoryPolicy()

    outcome = SuggestionPipeline(
        github,
        policy,
        bot=config.bot,
        readiness=config.readiness,
    ).run(pr_number)
    detail = f" ({outcome.detail})" if outcome.detail else ""
    print(f"{repo}#{pr_number}: {outcome.status}{detail}")
    return 0 if outcome.status in {"merged", "already_merged", "no_suggestions", "skipped"} else 1
