"""Main application entrypoint for the DORA metrics job."""

from __future__ import annotations

import logging
import sys
from typing import Dict, Optional

from .bigquery_store import BigQueryStore
from .cli import parse_args
from .config import Config, load_config
from .errors import (
    ApiError,
    AuthenticationError,
    ConfigurationError,
    DataValidationError,
    StoreError,
)
from .github_client import GitHubClient, load_repositories
from .jira_client import JiraClient
from .pipeline import MetricsPipeline
from .stats import generate_report
from .strategies import get_strategy
from .token_provider import TokenProvider

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def load_teams(github_client: GitHubClient, roster: Optional[str]) -> Dict[str, str]:
    """Return lower-cased GitHub login to team name from a ``repo:path`` roster.

    A missing or unreadable roster leaves every pull request without a team.
    """
    if not roster:
        return {}

    repo, _, path = roster.partition(":")
    if not repo or not path:
        logger.warning("Ignoring team roster '%s', expected REPO:PATH", roster)
        return {}

    try:
        members = github_client.get_team_members(repo, path)
    except (ApiError, DataValidationError) as exc:
        logger.error("Failed to read team roster %s: %s", roster, exc)
        return {}
    return {member.github_username.lower(): member.team for member in members}


def _build_tracker(config: Config) -> Optional[JiraClient]:
    if config.token_endpoint is None:
        return None

    token_provider = TokenProvider(config.token_endpoint)
    token_provider.get_token(config.jira_scope)
    return JiraClient(config.jira_url, token_provider, config.jira_scope)


def orchestrate_metrics_run() -> int:
    """Run the end-to-end metrics flow.

    Returns:
        Process exit code:
        - 0 on success
        - 1 on unexpected errors
        - 2 on configuration errors
        - 3 on authentication errors
        - 4 on API or store errors
    """
    try:
        args = parse_args()
        _configure_logging(args.verbose)

        config = load_config(
            dataset=args.dataset,
            scheme=args.scheme,
            fallback=args.fallback,
            project_key=args.project_key,
            repositories=args.repositories,
            input_file=args.input_file,
            max_workers=args.max_workers,
            timeout_seconds=args.timeout_seconds,
            dry_run=args.dry_run,
        )

        strategy = get_strategy(config.scheme, fallback=config.fallback)
        store = BigQueryStore(dataset=config.dataset, project=config.bigquery_project)
        if not config.dry_run:
            store.ensure_tables()

        github_client: Optional[GitHubClient] = None
        teams: Dict[str, str] = {}
        repositories = None
        if config.input_file is not None:
            repositories = load_repositories(config.input_file)
        else:
            github_client = GitHubClient(owner=config.github_owner, token=config.github_token or "")
            teams = load_teams(github_client, config.team_roster)

        tracker = _build_tracker(config) if strategy.reconciles_incidents else None

        pipeline = MetricsPipeline(
            store=store,
            strategy=strategy,
            project_key=config.project_key,
            source=github_client,
            tracker=tracker,
            targets=config.repositories,
            teams=teams,
            reminder_teams=config.reminder_teams,
            reminder_comment=config.reminder_comment,
            max_workers=config.max_workers,
            timeout_seconds=config.timeout_seconds,
            dry_run=config.dry_run,
        )

        logger.info(
            "Starting metrics run",
            extra={"scheme": config.scheme, "fallback": config.fallback, "dataset": config.dataset},
        )
        result = pipeline.run(repositories=repositories)

        print(generate_report(result, dry_run=config.dry_run))
        return 0
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    except AuthenticationError as exc:
        print(f"Authentication error: {exc}", file=sys.stderr)
        return 3
    except (ApiError, StoreError, DataValidationError) as exc:
        print(f"API error: {exc}", file=sys.stderr)
        return 4
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}", file=sys.stderr)
        return 1


def main() -> None:
    """CLI entrypoint that exits with orchestration status code."""
    sys.exit(orchestrate_metrics_run())


if __name__ == "__main__":
    main()
