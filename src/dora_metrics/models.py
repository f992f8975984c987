"""Domain models for DORA metrics derivation.

Input facts model only the subset of GitHub payload fields that are required
for metric computation. Output facts mirror the BigQuery table rows one to one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

DeployKey = Tuple[int, str]


@dataclass(frozen=True, slots=True)
class Commit:
    """A commit on a pull request branch."""

    message: str
    authored_at: datetime


@dataclass(frozen=True, slots=True)
class Deployment:
    """The resolved production deployment of a merged pull request."""

    environment: str
    deployed_at: datetime


@dataclass(slots=True)
class PullRequestFact:
    """A merged pull request as returned by the source-control provider.

    ``deployment`` is ``None`` while the change has not reached production.
    ``is_corrective``, ``referenced_pull`` and ``referenced_ticket`` are filled
    in by the pipeline, never by the provider.
    """

    number: int
    branch: str
    merged_at: datetime
    team: Optional[str] = None
    labels: FrozenSet[str] = frozenset()
    comments: List[str] = field(default_factory=list)
    commits: List[Commit] = field(default_factory=list)
    deployment: Optional[Deployment] = None
    title: str = ""
    body: Optional[str] = None
    author: Optional[str] = None
    is_corrective: bool = False
    referenced_pull: Optional[int] = None
    referenced_ticket: Optional[str] = None


@dataclass(slots=True)
class Repository:
    """All merged pull requests fetched for one repository in this run."""

    name: str
    pulls: List[PullRequestFact] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class RepositoryTarget:
    """A configured repository and how its production deploys are recognised."""

    name: str
    workflow: str
    job: str


@dataclass(frozen=True, slots=True)
class TeamMember:
    """Maps a GitHub login to the team it belongs to."""

    github_username: str
    team: str


@dataclass(frozen=True, slots=True)
class SuccessfulDeploy:
    """One deployed pull request and its lead time for change."""

    pull: int
    repo: str
    team: Optional[str]
    deployed_at: datetime
    lead_time_minutes: Decimal

    @property
    def key(self) -> DeployKey:
        return (self.pull, self.repo)


@dataclass(frozen=True, slots=True)
class CorrectiveDeploy:
    """One deployed bugfix/hotfix pull request.

    ``time_to_recovery_minutes`` is ``None`` when it could not be resolved at
    creation time; under the ticket scheme recovery is emitted separately as a
    :class:`RecoveredIncident`.
    """

    pull: int
    repo: str
    team: Optional[str]
    deployed_at: datetime
    referenced_pull: Optional[int] = None
    referenced_ticket: Optional[str] = None
    time_to_recovery_minutes: Optional[Decimal] = None

    @property
    def key(self) -> DeployKey:
        return (self.pull, self.repo)


@dataclass(frozen=True, slots=True)
class RecoveredIncident:
    """A resolved Jira incident that a corrective deploy referenced."""

    jira: str
    repo: str
    team: Optional[str]
    detected_at: datetime
    recovered_at: datetime
    time_to_recovery_minutes: Decimal

    @property
    def key(self) -> str:
        return self.jira


@dataclass(frozen=True, slots=True)
class RepositoryScanCache:
    """Per-repository scan state used to skip unchanged repositories."""

    repo: str
    latest_pull_request_number: int
    has_unresolved_corrective: bool


@dataclass(frozen=True, slots=True)
class IssueState:
    """Creation and resolution time of an issue-tracker ticket."""

    key: str
    created_at: datetime
    resolved_at: Optional[datetime]

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass(frozen=True, slots=True)
class Classification:
    """Classifier outcome for one pull request."""

    is_corrective: bool
    needs_label: bool


@dataclass(frozen=True, slots=True)
class InsertFailure:
    """A row the store rejected, with the reason reported by the store."""

    key: Any
    reason: str


@dataclass(slots=True)
class InsertReport:
    """Outcome of one bulk insert into a fact table."""

    table: str
    attempted: int = 0
    failures: List[InsertFailure] = field(default_factory=list)

    @property
    def inserted(self) -> int:
        return self.attempted - len(self.failures)


@dataclass(slots=True)
class RunResult:
    """Everything a single pipeline run produced, for reporting."""

    successful_deploys: List[SuccessfulDeploy] = field(default_factory=list)
    corrective_deploys: List[CorrectiveDeploy] = field(default_factory=list)
    recovered_incidents: List[RecoveredIncident] = field(default_factory=list)
    reports: Dict[str, InsertReport] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into a timezone-aware UTC datetime.

    Accepts the ``Z`` suffix used by GitHub and the ``+HHMM`` offsets used by
    Jira. Naive values are assumed to be UTC.
    """
    if not value:
        return None

    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    if len(normalized) > 5 and normalized[-5] in "+-" and normalized[-4:].isdigit():
        normalized = f"{normalized[:-2]}:{normalized[-2:]}"

    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
