"""Configuration parsing and validation for the DORA metrics job."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .errors import AuthenticationError, ConfigurationError
from .models import RepositoryTarget
from .strategies import STRATEGIES

DEFAULT_GITHUB_OWNER = "navikt"
DEFAULT_PROJECT_KEY = "FAGSYSTEM"
DEFAULT_SCHEME = "ticket"
DEFAULT_JIRA_URL = "https://jira-proxy.prod-fss-pub.nais.io/api"
DEFAULT_JIRA_SCOPE = "api://prod-fss.pesys-felles.jira-proxy/.default"
DEFAULT_TEAM_ROSTER = "pensjon-github-to-slack-username:brukernavnoversikt.csv"
DEFAULT_REMINDER_COMMENT = (
    "Hei! :wave: Hvis dette er en feilretting, hadde det vært flott om du kunne "
    "oppgi en fagsystemsak i kommentarfeltet dersom det er relevant. :pray: :smile:"
)

DEFAULT_REPOSITORIES: Tuple[RepositoryTarget, ...] = (
    RepositoryTarget("pensjon-pen", "Build and deploy main", "Deploy pen to production"),
    RepositoryTarget("pensjon-psak", "Build and deploy main", "Deploy prod"),
    RepositoryTarget("pensjon-dora-metrics", "Deploy DORA Metrics Job", "Build, push, and deploy"),
    RepositoryTarget("pensjon-selvbetjening", "Prod: Dinpensjon backend deploy", "deploy-to-prod"),
    RepositoryTarget(
        "pensjon-selvbetjening-bytt-bruker",
        "Prod: Bytt-bruker frontend deploy",
        "deploy-frontend-borger-to-prod",
    ),
)


@dataclass(frozen=True)
class Config:
    """Validated runtime settings used by the DORA metrics job."""

    dataset: str
    scheme: str
    fallback: bool
    project_key: str
    repositories: Tuple[RepositoryTarget, ...]
    github_owner: str
    github_token: Optional[str]
    input_file: Optional[str] = None
    bigquery_project: Optional[str] = None
    token_endpoint: Optional[str] = None
    jira_url: str = DEFAULT_JIRA_URL
    jira_scope: str = DEFAULT_JIRA_SCOPE
    team_roster: Optional[str] = DEFAULT_TEAM_ROSTER
    reminder_teams: Tuple[str, ...] = ()
    reminder_comment: str = DEFAULT_REMINDER_COMMENT
    max_workers: int = 4
    timeout_seconds: int = 300
    dry_run: bool = False


def parse_repository_target(value: str) -> RepositoryTarget:
    """Parse a ``NAME:WORKFLOW:JOB`` repository specification.

    Raises:
        ConfigurationError: If any of the three parts is missing.
    """
    parts = [part.strip() for part in value.split(":", 2)]
    if len(parts) != 3 or not all(parts):
        raise ConfigurationError(
            f"Invalid repository '{value}': expected NAME:WORKFLOW:JOB."
        )
    return RepositoryTarget(name=parts[0], workflow=parts[1], job=parts[2])


def _split_csv(value: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def load_config(
    dataset: str,
    scheme: str = DEFAULT_SCHEME,
    fallback: bool = True,
    project_key: str = DEFAULT_PROJECT_KEY,
    repositories: Optional[Sequence[str]] = None,
    input_file: Optional[str] = None,
    max_workers: int = 4,
    timeout_seconds: int = 300,
    dry_run: bool = False,
) -> Config:
    """Build and validate application configuration.

    Command-line values are combined with environment variables for
    credentials and endpoints.

    Raises:
        ConfigurationError: If a value is invalid or a required endpoint is missing.
        AuthenticationError: If ``GITHUB_TOKEN`` is required but not configured.
    """
    if not dataset or not dataset.strip():
        raise ConfigurationError("Missing required BigQuery dataset.")
    if scheme not in STRATEGIES:
        raise ConfigurationError(
            f"Invalid value for 'scheme': expected one of {', '.join(sorted(STRATEGIES))}."
        )
    if not project_key or not project_key.strip():
        raise ConfigurationError("Invalid value for 'project_key': must not be empty.")
    if max_workers <= 0:
        raise ConfigurationError("Invalid value for 'max_workers': expected an integer greater than 0.")
    if timeout_seconds <= 0:
        raise ConfigurationError("Invalid value for 'timeout': expected an integer greater than 0.")

    targets = (
        tuple(parse_repository_target(value) for value in repositories)
        if repositories
        else DEFAULT_REPOSITORIES
    )

    github_token: Optional[str] = os.getenv("GITHUB_TOKEN", "").strip() or None
    if github_token is None and input_file is None:
        raise AuthenticationError(
            "Missing required GitHub token. "
            "Set the 'GITHUB_TOKEN' environment variable or run from an --input file."
        )

    reconciles = scheme == "ticket" or fallback
    token_endpoint = os.getenv("NAIS_TOKEN_ENDPOINT", "").strip() or None
    if reconciles and token_endpoint is None:
        raise ConfigurationError(
            "Missing token endpoint for Jira lookups. "
            "Set the 'NAIS_TOKEN_ENDPOINT' environment variable."
        )

    return Config(
        dataset=dataset.strip(),
        scheme=scheme,
        fallback=fallback,
        project_key=project_key.strip().upper(),
        repositories=targets,
        github_owner=os.getenv("GITHUB_OWNER", DEFAULT_GITHUB_OWNER).strip() or DEFAULT_GITHUB_OWNER,
        github_token=github_token,
        input_file=input_file,
        bigquery_project=os.getenv("BIGQUERY_PROJECT", "").strip() or None,
        token_endpoint=token_endpoint,
        jira_url=os.getenv("JIRA_URL", DEFAULT_JIRA_URL).strip() or DEFAULT_JIRA_URL,
        jira_scope=os.getenv("JIRA_SCOPE", DEFAULT_JIRA_SCOPE).strip() or DEFAULT_JIRA_SCOPE,
        team_roster=os.getenv("TEAM_ROSTER", DEFAULT_TEAM_ROSTER).strip() or None,
        reminder_teams=_split_csv(os.getenv("REMINDER_TEAMS", "")),
        reminder_comment=os.getenv("REMINDER_COMMENT", DEFAULT_REMINDER_COMMENT).strip()
        or DEFAULT_REMINDER_COMMENT,
        max_workers=max_workers,
        timeout_seconds=timeout_seconds,
        dry_run=dry_run,
    )
