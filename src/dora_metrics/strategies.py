"""Reference resolution strategies for corrective deploys.

Two schemes exist for turning a corrective pull request into a recovery time:

- ``pull``: the fix references the pull request that introduced the defect and
  recovery time is measured between the two production deploys, immediately.
- ``ticket``: the fix references an incident ticket; the CorrectiveDeploy row is
  written without a recovery time and the incident reconciler emits a separate
  RecoveredIncident once the ticket is resolved.

Both share the grace period for corrective pull requests that do not (yet)
carry a reference: within two days of the deploy the row is held back, after
that it is written with an unresolved recovery time.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional, Type

from .errors import ConfigurationError
from .metrics import minutes_between
from .models import CorrectiveDeploy, PullRequestFact, SuccessfulDeploy

logger = logging.getLogger(__name__)

GRACE_PERIOD = timedelta(days=2)

DeployLookup = Callable[[int, str], Optional[SuccessfulDeploy]]


def _pull_reference_recovery(
    repo: str,
    pr: PullRequestFact,
    find_deploy: DeployLookup,
) -> Optional[Decimal]:
    """Minutes between the referenced pull request's deploy and this one."""
    if pr.referenced_pull is None or pr.deployment is None:
        return None

    referenced = find_deploy(pr.referenced_pull, repo)
    if referenced is None:
        logger.warning(
            "Corrective deploy PR #%s references PR #%s which is not a known successful deploy",
            pr.number,
            pr.referenced_pull,
            extra={"repo": repo},
        )
        return None

    recovery = minutes_between(referenced.deployed_at, pr.deployment.deployed_at)
    logger.info(
        "Corrective deploy PR #%s time to recovery: %s minutes (referenced PR #%s) repo: %s",
        pr.number,
        recovery,
        pr.referenced_pull,
        repo,
    )
    if recovery < 0:
        logger.warning(
            "Negative time to recovery, referenced PR deployed after the fix",
            extra={"repo": repo, "pull": pr.number, "referenced_pull": pr.referenced_pull},
        )
    return recovery


class ReferenceResolutionStrategy(ABC):
    """Builds CorrectiveDeploy rows for one reference-resolution scheme.

    Args:
        grace_period: How long after the deploy an unreferenced corrective
            pull request is held back instead of written as unresolved.
        fallback: Accept a reference of the other scheme's kind when the
            primary reference is missing.
    """

    name = ""

    def __init__(self, grace_period: timedelta = GRACE_PERIOD, fallback: bool = True) -> None:
        self.grace_period = grace_period
        self.fallback = fallback

    @property
    @abstractmethod
    def reconciles_incidents(self) -> bool:
        """Whether the incident reconciler should run under this scheme."""

    @abstractmethod
    def is_referenced(self, pr: PullRequestFact) -> bool:
        """Whether ``pr`` carries a reference this scheme can work with."""

    @abstractmethod
    def recovery_time(
        self,
        repo: str,
        pr: PullRequestFact,
        find_deploy: DeployLookup,
    ) -> Optional[Decimal]:
        """Time to recovery known at creation time, or ``None``."""

    def build_corrective_deploy(
        self,
        repo: str,
        pr: PullRequestFact,
        find_deploy: DeployLookup,
        now: datetime,
    ) -> Optional[CorrectiveDeploy]:
        """Build the CorrectiveDeploy row for ``pr``.

        Returns ``None`` for pull requests that are not deployed, and for
        unreferenced pull requests still inside the grace period.
        """
        if pr.deployment is None:
            return None

        if not self.is_referenced(pr):
            age = now - pr.deployment.deployed_at
            if age < self.grace_period:
                logger.info(
                    "Corrective deploy PR #%s has no reference, but was deployed within "
                    "the grace period (%.2f days ago), ignoring for now",
                    pr.number,
                    age / timedelta(days=1),
                    extra={"repo": repo, "scheme": self.name},
                )
                return None
            logger.warning(
                "Corrective deploy PR #%s has no reference",
                pr.number,
                extra={"repo": repo, "scheme": self.name},
            )

        return CorrectiveDeploy(
            pull=pr.number,
            repo=repo,
            team=pr.team,
            deployed_at=pr.deployment.deployed_at,
            referenced_pull=pr.referenced_pull,
            referenced_ticket=pr.referenced_ticket,
            time_to_recovery_minutes=self.recovery_time(repo, pr, find_deploy),
        )


class PullReferenceStrategy(ReferenceResolutionStrategy):
    """Recovery time from the deploy of the referenced pull request."""

    name = "pull"

    @property
    def reconciles_incidents(self) -> bool:
        return self.fallback

    def is_referenced(self, pr: PullRequestFact) -> bool:
        if pr.referenced_pull is not None:
            return True
        return self.fallback and pr.referenced_ticket is not None

    def recovery_time(self, repo, pr, find_deploy):
        return _pull_reference_recovery(repo, pr, find_deploy)


class TicketReferenceStrategy(ReferenceResolutionStrategy):
    """Recovery time deferred to the incident ticket's resolution."""

    name = "ticket"

    @property
    def reconciles_incidents(self) -> bool:
        return True

    def is_referenced(self, pr: PullRequestFact) -> bool:
        if pr.referenced_ticket is not None:
            return True
        return self.fallback and pr.referenced_pull is not None

    def recovery_time(self, repo, pr, find_deploy):
        if pr.referenced_ticket is not None or not self.fallback:
            return None
        return _pull_reference_recovery(repo, pr, find_deploy)


STRATEGIES: Dict[str, Type[ReferenceResolutionStrategy]] = {
    PullReferenceStrategy.name: PullReferenceStrategy,
    TicketReferenceStrategy.name: TicketReferenceStrategy,
}


def get_strategy(name: str, fallback: bool = True) -> ReferenceResolutionStrategy:
    """Instantiate the strategy registered under ``name``."""
    try:
        strategy_class = STRATEGIES[name]
    except KeyError as exc:
        raise ConfigurationError(
            f"Unknown reference resolution scheme '{name}'. "
            f"Expected one of: {', '.join(sorted(STRATEGIES))}."
        ) from exc
    return strategy_class(fallback=fallback)
