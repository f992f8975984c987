"""Incident recovery reconciliation for ticket-referenced corrective deploys.

Corrective deploys that reference a Jira ticket are written without a recovery
time. Each run this module picks up every such deploy whose ticket has no
RecoveredIncident yet, looks the ticket up, and emits a RecoveredIncident once
the ticket is resolved. Unresolved tickets are simply offered again next run.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional

from .errors import ApiError, AuthenticationError, DataValidationError
from .metrics import minutes_between
from .models import CorrectiveDeploy, IssueState, RecoveredIncident

logger = logging.getLogger(__name__)


def build_recovered_incident(
    deploy: CorrectiveDeploy,
    issue: IssueState,
) -> Optional[RecoveredIncident]:
    """Build the RecoveredIncident for ``deploy`` from the ticket state.

    Returns ``None`` while the ticket is unresolved.
    """
    if deploy.referenced_ticket is None:
        logger.warning(
            "Cannot create recovered incident from corrective deploy PR #%s without a ticket",
            deploy.pull,
            extra={"repo": deploy.repo},
        )
        return None

    if issue.resolved_at is None:
        logger.info(
            "Jira issue %s is not resolved, cannot be a recovered incident",
            issue.key,
        )
        return None

    recovery = minutes_between(issue.created_at, issue.resolved_at)
    logger.info(
        "Recovered incident Jira %s time to recovery: %s minutes repo: %s",
        deploy.referenced_ticket,
        recovery,
        deploy.repo,
    )
    if recovery < 0:
        logger.warning(
            "Negative time to recovery, ticket resolved before it was created",
            extra={"jira": deploy.referenced_ticket},
        )

    return RecoveredIncident(
        jira=deploy.referenced_ticket,
        repo=deploy.repo,
        team=deploy.team,
        detected_at=issue.created_at,
        recovered_at=issue.resolved_at,
        time_to_recovery_minutes=recovery,
    )


class IncidentReconciler:
    """Turns resolved incident tickets into RecoveredIncident rows.

    Ticket lookups run concurrently, bounded by ``max_workers``. When
    ``timeout_seconds`` is set, lookups still running at the deadline are
    abandoned and produce no row; completed lookups are kept.
    """

    def __init__(
        self,
        store,
        tracker,
        max_workers: int = 4,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._max_workers = max_workers
        self._timeout_seconds = timeout_seconds

    def _pending_by_ticket(self) -> Dict[str, CorrectiveDeploy]:
        pending: Dict[str, CorrectiveDeploy] = {}
        for deploy in self._store.unreconciled_corrective_deploys():
            ticket = deploy.referenced_ticket
            if ticket is None or ticket in pending:
                continue
            pending[ticket] = deploy
        return pending

    def reconcile(self) -> List[RecoveredIncident]:
        """Return RecoveredIncident rows for newly resolved tickets.

        Raises:
            AuthenticationError: If the issue tracker rejects the credentials.
        """
        pending = self._pending_by_ticket()
        if not pending:
            logger.info("No unreconciled corrective deploys")
            return []

        executor = ThreadPoolExecutor(max_workers=self._max_workers)
        try:
            futures: Dict[str, Future] = {
                ticket: executor.submit(self._tracker.get_issue, ticket) for ticket in pending
            }
            done, not_done = wait(futures.values(), timeout=self._timeout_seconds)

            incidents: List[RecoveredIncident] = []
            failed = 0
            for ticket, future in futures.items():
                if future not in done:
                    continue
                try:
                    issue = future.result()
                except AuthenticationError:
                    raise
                except (ApiError, DataValidationError) as exc:
                    failed += 1
                    logger.warning(
                        "Skipping ticket %s, lookup failed: %s",
                        ticket,
                        exc,
                        extra={"repo": pending[ticket].repo},
                    )
                    continue

                incident = build_recovered_incident(pending[ticket], issue)
                if incident is not None:
                    incidents.append(incident)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if not_done:
            logger.warning(
                "Abandoned ticket lookups at deadline",
                extra={"abandoned": len(not_done), "timeout_seconds": self._timeout_seconds},
            )

        logger.info(
            "Reconciled incidents",
            extra={
                "tickets_pending": len(pending),
                "recovered_incidents": len(incidents),
                "lookups_failed": failed,
                "lookups_abandoned": len(not_done),
            },
        )
        return incidents
