"""Lead time extraction logic for deployed pull requests.

This module computes the DORA lead time for changes:
- the last commit is the commit with the latest author timestamp
- lead time is the elapsed minutes from that commit to the production deploy

Durations are surfaced as-is, including negative values caused by clock skew
or commits authored after the deploying build started.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from .models import Commit, PullRequestFact, SuccessfulDeploy

logger = logging.getLogger(__name__)

_MICROSECONDS_PER_MINUTE = Decimal(60_000_000)
_TWO_PLACES = Decimal("0.01")


def minutes_between(start: datetime, end: datetime) -> Decimal:
    """Return ``end - start`` in minutes, rounded half-up to two decimals.

    Computed from the exact microsecond delta so no precision is lost to
    floating point.
    """
    microseconds = (end - start) // timedelta(microseconds=1)
    minutes = Decimal(microseconds) / _MICROSECONDS_PER_MINUTE
    return minutes.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)


def find_last_commit(commits: List[Commit]) -> Optional[Commit]:
    """Return the commit with the latest ``authored_at``.

    Ties keep the first commit encountered in provider order.
    """
    last: Optional[Commit] = None
    for commit in commits:
        if last is None or commit.authored_at > last.authored_at:
            last = commit
    return last


def compute_lead_time(pr: PullRequestFact) -> Optional[Decimal]:
    """Compute lead time for change in minutes for a deployed pull request.

    Business logic:
    - Only deployed pull requests are eligible.
    - The reference point is the latest authored commit; a pull request without
      commits falls back to its merge time.
    - Negative durations are returned unchanged.

    Returns ``None`` when the pull request has not been deployed.
    """
    if pr.deployment is None:
        return None

    last_commit = find_last_commit(pr.commits)
    if last_commit is None:
        logger.warning(
            "Pull request has no commits, using merge time for lead time",
            extra={"pull": pr.number},
        )
        changed_at = pr.merged_at
    else:
        changed_at = last_commit.authored_at

    lead_time = minutes_between(changed_at, pr.deployment.deployed_at)
    if lead_time < 0:
        logger.warning(
            "Negative lead time, last commit authored after deploy",
            extra={"pull": pr.number, "lead_time_minutes": str(lead_time)},
        )
    return lead_time


def build_successful_deploy(repo: str, pr: PullRequestFact) -> Optional[SuccessfulDeploy]:
    """Build the SuccessfulDeploy row for ``pr``, or ``None`` when not deployed."""
    lead_time = compute_lead_time(pr)
    if lead_time is None or pr.deployment is None:
        return None

    logger.info(
        "Successful deploy PR #%s lead time: %s minutes repo: %s",
        pr.number,
        lead_time,
        repo,
    )
    return SuccessfulDeploy(
        pull=pr.number,
        repo=repo,
        team=pr.team,
        deployed_at=pr.deployment.deployed_at,
        lead_time_minutes=lead_time,
    )


def collect_successful_deploys(repo: str, prs: List[PullRequestFact]) -> List[SuccessfulDeploy]:
    """Collect one SuccessfulDeploy per deployed pull request.

    Pull requests without a production deployment are skipped; they are picked
    up again on a later run once deployed.
    """
    deploys: List[SuccessfulDeploy] = []
    not_deployed = 0

    for pr in prs:
        deploy = build_successful_deploy(repo, pr)
        if deploy is None:
            not_deployed += 1
        else:
            deploys.append(deploy)

    logger.info(
        "Collected successful deploys",
        extra={
            "repo": repo,
            "prs_total": len(prs),
            "successful_deploys": len(deploys),
            "prs_not_deployed": not_deployed,
        },
    )
    return deploys
