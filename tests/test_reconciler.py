"""Tests for incident recovery reconciliation."""

import sys
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dora_metrics.errors import ApiError, AuthenticationError, DataValidationError, NotFoundError
from dora_metrics.models import CorrectiveDeploy, IssueState
from dora_metrics.reconciler import IncidentReconciler, build_recovered_incident

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _deploy(pull: int, ticket, repo: str = "pensjon-pen") -> CorrectiveDeploy:
    return CorrectiveDeploy(
        pull=pull,
        repo=repo,
        team="team-a",
        deployed_at=T0,
        referenced_ticket=ticket,
    )


def _issue(key: str, hours: float = 2.0, resolved: bool = True) -> IssueState:
    return IssueState(
        key=key,
        created_at=T0,
        resolved_at=T0 + timedelta(hours=hours) if resolved else None,
    )


def test_build_recovered_incident_from_resolved_ticket():
    """Verify recovery is measured from ticket creation to resolution."""
    incident = build_recovered_incident(_deploy(1, "FAGSYSTEM-1"), _issue("FAGSYSTEM-1", hours=2))

    assert incident is not None
    assert incident.key == "FAGSYSTEM-1"
    assert incident.repo == "pensjon-pen"
    assert incident.team == "team-a"
    assert incident.detected_at == T0
    assert incident.time_to_recovery_minutes == Decimal("120.00")


def test_build_recovered_incident_unresolved_returns_none():
    """Verify unresolved tickets produce no incident."""
    assert build_recovered_incident(_deploy(1, "FAGSYSTEM-1"), _issue("FAGSYSTEM-1", resolved=False)) is None


def test_build_recovered_incident_without_ticket_returns_none():
    """Verify a deploy without ticket reference cannot be reconciled."""
    assert build_recovered_incident(_deploy(1, None), _issue("FAGSYSTEM-1")) is None


def test_reconcile_emits_incidents_for_resolved_tickets_only():
    """Verify only resolved tickets turn into recovered incidents."""
    store = Mock()
    store.unreconciled_corrective_deploys.return_value = [
        _deploy(1, "FAGSYSTEM-1"),
        _deploy(2, "FAGSYSTEM-2"),
    ]
    tracker = Mock()
    tracker.get_issue.side_effect = lambda key: _issue(key, resolved=key == "FAGSYSTEM-1")

    incidents = IncidentReconciler(store, tracker).reconcile()

    assert [incident.jira for incident in incidents] == ["FAGSYSTEM-1"]


def test_reconcile_looks_up_each_ticket_once():
    """Verify several deploys referencing one ticket cause a single lookup and incident."""
    store = Mock()
    store.unreconciled_corrective_deploys.return_value = [
        _deploy(1, "FAGSYSTEM-1"),
        _deploy(2, "FAGSYSTEM-1", repo="pensjon-psak"),
    ]
    tracker = Mock()
    tracker.get_issue.return_value = _issue("FAGSYSTEM-1")

    incidents = IncidentReconciler(store, tracker).reconcile()

    tracker.get_issue.assert_called_once_with("FAGSYSTEM-1")
    assert len(incidents) == 1
    assert incidents[0].repo == "pensjon-pen"


def test_reconcile_without_pending_deploys_skips_tracker():
    """Verify nothing is looked up when every ticket is reconciled already."""
    store = Mock()
    store.unreconciled_corrective_deploys.return_value = []
    tracker = Mock()

    assert IncidentReconciler(store, tracker).reconcile() == []
    tracker.get_issue.assert_not_called()


@pytest.mark.parametrize(
    "error",
    [ApiError("boom"), NotFoundError("gone"), DataValidationError("bad timestamp")],
)
def test_reconcile_skips_failed_lookups(error):
    """Verify a failed ticket lookup skips that ticket and keeps the others."""
    store = Mock()
    store.unreconciled_corrective_deploys.return_value = [
        _deploy(1, "FAGSYSTEM-1"),
        _deploy(2, "FAGSYSTEM-2"),
    ]
    tracker = Mock()

    def get_issue(key):
        if key == "FAGSYSTEM-1":
            raise error
        return _issue(key)

    tracker.get_issue.side_effect = get_issue

    incidents = IncidentReconciler(store, tracker).reconcile()

    assert [incident.jira for incident in incidents] == ["FAGSYSTEM-2"]


def test_reconcile_propagates_authentication_error():
    """Verify rejected credentials abort reconciliation."""
    store = Mock()
    store.unreconciled_corrective_deploys.return_value = [_deploy(1, "FAGSYSTEM-1")]
    tracker = Mock()
    tracker.get_issue.side_effect = AuthenticationError("expired")

    with pytest.raises(AuthenticationError):
        IncidentReconciler(store, tracker).reconcile()


def test_reconcile_abandons_lookups_at_deadline():
    """Verify lookups still running at the deadline produce no incident."""
    store = Mock()
    store.unreconciled_corrective_deploys.return_value = [
        _deploy(1, "FAGSYSTEM-1"),
        _deploy(2, "FAGSYSTEM-2"),
    ]
    release = threading.Event()
    tracker = Mock()

    def get_issue(key):
        if key == "FAGSYSTEM-2":
            release.wait(5)
        return _issue(key)

    tracker.get_issue.side_effect = get_issue

    try:
        incidents = IncidentReconciler(store, tracker, max_workers=2, timeout_seconds=0.5).reconcile()
    finally:
        release.set()

    assert [incident.jira for incident in incidents] == ["FAGSYSTEM-1"]
