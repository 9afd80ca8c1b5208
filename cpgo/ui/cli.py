#!/usr/bin/env python3
"""CLI for cpgo - runs one fetch→validate→compare→write→publish refresh."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from ..core.config import AppConfig, build_run_request, load_config, read_app_key
from ..core.deadline import Deadline
from ..core.errors import CpgoError, UnmanagedPullRequest, error_details
from ..core.logging import setup_logging
from ..core.types import RepositoryRef, RunResult, is_blank
from ..services.github_auth import client_from_app, client_from_token
from ..services.orchestrator import RefreshOrchestrator
from ..tools.github import GitHubClient
from ..tools.pprof import HTTPProfileFetcher, PprofValidator

logger = logging.getLogger(__name__)

EXIT_FAILURE = 1
EXIT_UNMANAGED_PULL_REQUEST = 3


def build_github_client(
    config: AppConfig,
    repository: RepositoryRef,
    deadline: Optional[Deadline] = None,
) -> GitHubClient:
    """Pick token authentication when a token is configured, else GitHub App auth."""
    github = config.github
    if not is_blank(github.token):
        return client_from_token(github.token, api_url=github.api_url, timeout=github.timeout)

    if github.app_id <= 0:
        raise CpgoError("github app id must be positive when token is not configured")

    return client_from_app(
        github.app_id,
        read_app_key(config),
        repository,
        api_url=github.api_url,
        timeout=github.timeout,
        deadline=deadline,
    )


def build_orchestrator(
    config: AppConfig,
    repository: RepositoryRef,
    deadline: Optional[Deadline] = None,
) -> RefreshOrchestrator:
    github_client = build_github_client(config, repository, deadline=deadline)
    return RefreshOrchestrator(
        profile_fetcher=HTTPProfileFetcher(timeout=config.profile.timeout),
        profile_validator=PprofValidator(),
        branch_writer=github_client,
        pull_requests=github_client,
    )


def run(config_path: str) -> RunResult:
    """Run one refresh from a config file.

    Args:
        config_path: Path to the YAML configuration

    Returns:
        Run result

    Raises:
        CpgoError: For any configuration, credential or run failure
    """
    config = load_config(config_path)
    request = build_run_request(config)
    deadline = Deadline(config.runtime.timeout)

    logger.info(f"Starting cpgo run with config {config_path}")
    orchestrator = build_orchestrator(config, request.repository_ref, deadline=deadline)
    result = orchestrator.run(request, deadline=deadline)

    logger.info(
        "Completed cpgo run",
        extra={
            "base_branch": result.base_branch,
            "head_branch": result.head_branch,
            "pr_number": result.pull_request_number,
            "commit_sha": result.commit_sha,
        },
    )
    return result


def main(argv: Optional[List[str]] = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="cpgo",
        description="Refresh a PGO profile in a GitHub repository from a live pprof endpoint",
    )
    parser.add_argument("--config", type=str, required=True, help="Path to cpgo YAML configuration file")
    parser.add_argument("--log-level", type=str, default="INFO", help="Log level (default: INFO)")
    parser.add_argument("--plain-logs", action="store_true", help="Human-readable logs instead of JSON")

    args = parser.parse_args(argv)
    setup_logging(level=args.log_level, structured=not args.plain_logs)

    try:
        result = run(args.config)
    except UnmanagedPullRequest as e:
        logger.error(f"cpgo run refused: {e}", extra=error_details(e))
        sys.exit(EXIT_UNMANAGED_PULL_REQUEST)
    except CpgoError as e:
        logger.error(f"cpgo run failed: {e}", extra=error_details(e))
        sys.exit(EXIT_FAILURE)

    # Output compact JSON to stdout
    print(json.dumps(result.model_dump(), separators=(',', ':')))


if __name__ == "__main__":
    main()
