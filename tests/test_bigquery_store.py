"""Tests for the BigQuery fact store with a mocked client."""

import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest
from google.api_core.exceptions import BadRequest
from google.cloud import bigquery

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dora_metrics.bigquery_store import (
    CORRECTIVE_DEPLOYS,
    RECOVERED_INCIDENTS,
    REPOSITORY_SCAN_CACHE,
    SUCCESSFUL_DEPLOYS,
    TABLE_SCHEMAS,
    BigQueryStore,
    to_row,
)
from dora_metrics.errors import StoreError
from dora_metrics.models import CorrectiveDeploy, RepositoryScanCache, SuccessfulDeploy

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(rows=None):
    client = Mock()
    client.query.return_value.result.return_value = rows or []
    return BigQueryStore(dataset="dora", project="proj", client=client), client


def _deploy(pull: int, repo: str = "pensjon-pen") -> SuccessfulDeploy:
    return SuccessfulDeploy(
        pull=pull,
        repo=repo,
        team="team-a",
        deployed_at=T0,
        lead_time_minutes=Decimal("12.50"),
    )


def test_to_row_serializes_timestamps_and_decimals():
    """Verify timestamps become ISO strings and minute values exact decimal strings."""
    row = to_row(_deploy(1))

    assert row == {
        "pull": 1,
        "repo": "pensjon-pen",
        "team": "team-a",
        "deployed_at": "2024-03-01T12:00:00+00:00",
        "lead_time_minutes": "12.50",
    }


def test_to_row_keeps_null_recovery():
    """Verify unresolved recovery time is written as null."""
    row = to_row(CorrectiveDeploy(pull=2, repo="pensjon-pen", team=None, deployed_at=T0))

    assert row["time_to_recovery_minutes"] is None
    assert row["referenced_ticket"] is None


def test_ensure_tables_creates_every_table_if_missing():
    """Verify all tables are created with exists_ok so reruns are harmless."""
    store, client = _store()

    store.ensure_tables()

    assert client.create_table.call_count == len(TABLE_SCHEMAS)
    created = {call.args[0].table_id for call in client.create_table.call_args_list}
    assert created == set(TABLE_SCHEMAS)
    assert all(call.kwargs["exists_ok"] is True for call in client.create_table.call_args_list)


def test_insert_streams_rows_with_natural_key_row_ids():
    """Verify rows are streamed with their natural key as insert id."""
    store, client = _store()
    client.insert_rows_json.return_value = []

    report = store.insert(SUCCESSFUL_DEPLOYS, [_deploy(1), _deploy(2)])

    table_id, rows = client.insert_rows_json.call_args.args
    assert table_id == "proj.dora.successful_deploys"
    assert [row["pull"] for row in rows] == [1, 2]
    assert client.insert_rows_json.call_args.kwargs["row_ids"] == ["1::pensjon-pen", "2::pensjon-pen"]
    assert report.inserted == 2
    assert report.failures == []


def test_insert_partial_failure_reports_rejected_rows():
    """Verify rejected rows are listed while accepted rows count as inserted."""
    store, client = _store()
    client.insert_rows_json.return_value = [
        {"index": 1, "errors": [{"reason": "invalid", "message": "bad timestamp"}]}
    ]

    report = store.insert(SUCCESSFUL_DEPLOYS, [_deploy(1), _deploy(2), _deploy(3)])

    assert report.attempted == 3
    assert report.inserted == 2
    assert len(report.failures) == 1
    assert report.failures[0].key == (2, "pensjon-pen")
    assert report.failures[0].reason == "bad timestamp"


def test_insert_request_failure_raises_store_error():
    """Verify a failed insert request is raised as StoreError."""
    store, client = _store()
    client.insert_rows_json.side_effect = BadRequest("schema mismatch")

    with pytest.raises(StoreError):
        store.insert(SUCCESSFUL_DEPLOYS, [_deploy(1)])


def test_insert_without_rows_skips_request():
    """Verify an empty batch does not call BigQuery."""
    store, client = _store()

    report = store.insert(CORRECTIVE_DEPLOYS, [])

    client.insert_rows_json.assert_not_called()
    assert report.attempted == 0


def test_existing_keys_returns_only_candidate_pairs():
    """Verify pairs matched across pull and repo filters are intersected with candidates."""
    store, client = _store(rows=[{"pull": 1, "repo": "a"}, {"pull": 2, "repo": "b"}])

    found = store.existing_keys(SUCCESSFUL_DEPLOYS, [(1, "a"), (2, "a")])

    assert found == {(1, "a")}
    job_config = client.query.call_args.kwargs["job_config"]
    assert {parameter.name for parameter in job_config.query_parameters} == {"pulls", "repos"}


def test_existing_keys_for_incidents_uses_ticket_keys():
    """Verify recovered incidents are looked up by ticket key."""
    store, client = _store(rows=[{"jira": "FAGSYSTEM-1"}])

    found = store.existing_keys(RECOVERED_INCIDENTS, ["FAGSYSTEM-1", "FAGSYSTEM-2"])

    assert found == {"FAGSYSTEM-1"}
    assert "jira IN UNNEST(@keys)" in client.query.call_args.args[0]


def test_existing_keys_without_candidates_skips_query():
    """Verify no query is issued for an empty candidate set."""
    store, client = _store()

    assert store.existing_keys(SUCCESSFUL_DEPLOYS, []) == set()
    client.query.assert_not_called()


def test_query_failure_raises_store_error():
    """Verify query failures are raised as StoreError."""
    store, client = _store()
    client.query.side_effect = BadRequest("syntax")

    with pytest.raises(StoreError):
        store.find_successful_deploy(1, "pensjon-pen")


def test_find_successful_deploy_maps_row():
    """Verify a stored deploy row is mapped back into a SuccessfulDeploy."""
    store, _ = _store(
        rows=[
            {
                "pull": 4,
                "repo": "pensjon-pen",
                "team": "team-a",
                "deployed_at": T0,
                "lead_time_minutes": Decimal("3.00"),
            }
        ]
    )

    deploy = store.find_successful_deploy(4, "pensjon-pen")

    assert deploy == SuccessfulDeploy(
        pull=4, repo="pensjon-pen", team="team-a", deployed_at=T0, lead_time_minutes=Decimal("3.00")
    )


def test_find_successful_deploy_missing_returns_none():
    """Verify an unknown deploy yields None."""
    store, _ = _store()

    assert store.find_successful_deploy(4, "pensjon-pen") is None


def test_unreconciled_corrective_deploys_maps_rows():
    """Verify pending corrective deploys are read through a left join on the ticket."""
    store, client = _store(
        rows=[
            {
                "pull": 6,
                "repo": "pensjon-pen",
                "team": None,
                "deployed_at": T0,
                "referenced_pull": None,
                "referenced_ticket": "FAGSYSTEM-1",
                "time_to_recovery_minutes": None,
            }
        ]
    )

    deploys = store.unreconciled_corrective_deploys()

    assert deploys[0].referenced_ticket == "FAGSYSTEM-1"
    assert "LEFT JOIN" in client.query.call_args.args[0]


def test_scan_cache_read_and_truncating_write():
    """Verify the scan cache is read per repository and rewritten by truncation."""
    store, client = _store(
        rows=[{"repo": "pensjon-pen", "latest_pull_request_number": 9, "has_unresolved_corrective": False}]
    )

    cache = store.read_scan_cache()
    store.write_scan_cache(list(cache.values()))

    assert cache == {
        "pensjon-pen": RepositoryScanCache(
            repo="pensjon-pen", latest_pull_request_number=9, has_unresolved_corrective=False
        )
    }
    rows, table_id = client.load_table_from_json.call_args.args
    assert table_id == f"proj.dora.{REPOSITORY_SCAN_CACHE}"
    assert rows == [{"repo": "pensjon-pen", "latest_pull_request_number": 9, "has_unresolved_corrective": False}]
    job_config = client.load_table_from_json.call_args.kwargs["job_config"]
    assert job_config.write_disposition == bigquery.WriteDisposition.WRITE_TRUNCATE
