"""BigQuery persistence for derived DORA facts and the repository scan cache."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Hashable, Iterable, List, Optional, Sequence, Set

from google.api_core.exceptions import GoogleAPIError
from google.cloud import bigquery

from .errors import StoreError
from .models import (
    CorrectiveDeploy,
    InsertFailure,
    InsertReport,
    RepositoryScanCache,
    SuccessfulDeploy,
)

logger = logging.getLogger(__name__)

SUCCESSFUL_DEPLOYS = "successful_deploys"
CORRECTIVE_DEPLOYS = "corrective_deploys"
RECOVERED_INCIDENTS = "recovered_incidents"
REPOSITORY_SCAN_CACHE = "repository_scan_cache"

TABLE_SCHEMAS: Dict[str, List[bigquery.SchemaField]] = {
    SUCCESSFUL_DEPLOYS: [
        bigquery.SchemaField("pull", "INTEGER", mode="REQUIRED"),
        bigquery.SchemaField("repo", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("team", "STRING", mode="NULLABLE"),
        bigquery.SchemaField("deployed_at", "TIMESTAMP", mode="REQUIRED"),
        bigquery.SchemaField("lead_time_minutes", "NUMERIC", mode="REQUIRED"),
    ],
    CORRECTIVE_DEPLOYS: [
        bigquery.SchemaField("pull", "INTEGER", mode="REQUIRED"),
        bigquery.SchemaField("repo", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("team", "STRING", mode="NULLABLE"),
        bigquery.SchemaField("deployed_at", "TIMESTAMP", mode="REQUIRED"),
        bigquery.SchemaField("referenced_pull", "INTEGER", mode="NULLABLE"),
        bigquery.SchemaField("referenced_ticket", "STRING", mode="NULLABLE"),
        bigquery.SchemaField("time_to_recovery_minutes", "NUMERIC", mode="NULLABLE"),
    ],
    RECOVERED_INCIDENTS: [
        bigquery.SchemaField("jira", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("repo", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("team", "STRING", mode="NULLABLE"),
        bigquery.SchemaField("detected_at", "TIMESTAMP", mode="REQUIRED"),
        bigquery.SchemaField("recovered_at", "TIMESTAMP", mode="REQUIRED"),
        bigquery.SchemaField("time_to_recovery_minutes", "NUMERIC", mode="REQUIRED"),
    ],
    REPOSITORY_SCAN_CACHE: [
        bigquery.SchemaField("repo", "STRING", mode="REQUIRED"),
        bigquery.SchemaField("latest_pull_request_number", "INTEGER", mode="REQUIRED"),
        bigquery.SchemaField("has_unresolved_corrective", "BOOLEAN", mode="REQUIRED"),
    ],
}

FACT_TABLES = (SUCCESSFUL_DEPLOYS, CORRECTIVE_DEPLOYS, RECOVERED_INCIDENTS)


def _to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def to_row(fact: Any) -> Dict[str, Any]:
    """Serialize a fact dataclass into a BigQuery JSON row."""
    return {name: _to_json_value(value) for name, value in asdict(fact).items()}


def _row_id(key: Hashable) -> str:
    if isinstance(key, tuple):
        return "::".join(str(part) for part in key)
    return str(key)


class BigQueryStore:
    """Append-only fact tables plus the repository scan cache in one dataset.

    Args:
        dataset: Dataset holding all tables.
        project: GCP project; defaults to the client's project.
        client: Pre-built ``bigquery.Client``.
        timeout_seconds: Per-query timeout in seconds.
    """

    def __init__(
        self,
        dataset: str,
        project: Optional[str] = None,
        client: Optional[bigquery.Client] = None,
        timeout_seconds: int = 120,
    ) -> None:
        self._client = client or bigquery.Client(project=project)
        self._dataset_ref = f"{project or self._client.project}.{dataset}"
        self._timeout_seconds = timeout_seconds

    def table_id(self, table: str) -> str:
        return f"{self._dataset_ref}.{table}"

    def ensure_tables(self) -> None:
        """Create any missing table. Existing tables are left untouched."""
        for name, schema in TABLE_SCHEMAS.items():
            try:
                self._client.create_table(bigquery.Table(self.table_id(name), schema=schema), exists_ok=True)
            except GoogleAPIError as exc:
                raise StoreError(f"Failed to ensure table {name}: {exc}") from exc
            logger.debug("Ensured table %s", name)

    def _query(self, sql: str, parameters: Sequence[Any] = ()) -> List[Any]:
        job_config = bigquery.QueryJobConfig(query_parameters=list(parameters))
        try:
            job = self._client.query(sql, job_config=job_config)
            return list(job.result(timeout=self._timeout_seconds))
        except GoogleAPIError as exc:
            raise StoreError(f"BigQuery query failed: {exc}") from exc

    def existing_keys(self, table: str, keys: Iterable[Hashable]) -> Set[Hashable]:
        """Return the subset of ``keys`` already present in ``table``.

        Keys are ``(pull, repo)`` tuples for the deploy tables and ticket keys
        for ``recovered_incidents``.
        """
        candidates = set(keys)
        if not candidates:
            return set()

        if table == RECOVERED_INCIDENTS:
            rows = self._query(
                f"SELECT jira FROM `{self.table_id(table)}` WHERE jira IN UNNEST(@keys)",
                [bigquery.ArrayQueryParameter("keys", "STRING", sorted(candidates))],
            )
            found: Set[Hashable] = {row["jira"] for row in rows}
        else:
            rows = self._query(
                f"SELECT pull, repo FROM `{self.table_id(table)}` "
                "WHERE pull IN UNNEST(@pulls) AND repo IN UNNEST(@repos)",
                [
                    bigquery.ArrayQueryParameter("pulls", "INT64", sorted({key[0] for key in candidates})),
                    bigquery.ArrayQueryParameter("repos", "STRING", sorted({key[1] for key in candidates})),
                ],
            )
            found = {(row["pull"], row["repo"]) for row in rows}

        return found & candidates

    def insert(self, table: str, facts: Sequence[Any]) -> InsertReport:
        """Stream ``facts`` into ``table``.

        Rows BigQuery accepts are durable even when others are rejected; the
        rejected rows are listed in the returned report.

        Raises:
            StoreError: If the insert request fails as a whole.
        """
        report = InsertReport(table=table, attempted=len(facts))
        if not facts:
            logger.info("No new data to insert into %s.", table)
            return report

        rows = [to_row(fact) for fact in facts]
        row_ids = [_row_id(fact.key) for fact in facts]
        try:
            errors = self._client.insert_rows_json(self.table_id(table), rows, row_ids=row_ids)
        except GoogleAPIError as exc:
            raise StoreError(f"Error inserting into {table}: {exc}") from exc

        for error in errors or []:
            index = error.get("index")
            key = facts[index].key if isinstance(index, int) and index < len(facts) else None
            reason = "; ".join(
                detail.get("message") or detail.get("reason") or "unknown"
                for detail in error.get("errors", [])
            )
            report.failures.append(InsertFailure(key=key, reason=reason or "unknown"))

        if report.failures:
            logger.error(
                "Partial failure inserting into %s. Successful rows may exist.",
                table,
                extra={"failed_rows": [(str(f.key), f.reason) for f in report.failures]},
            )
        logger.info("Inserted %s rows into %s.", report.inserted, table)
        return report

    def find_successful_deploy(self, pull: int, repo: str) -> Optional[SuccessfulDeploy]:
        rows = self._query(
            f"SELECT pull, repo, team, deployed_at, lead_time_minutes "
            f"FROM `{self.table_id(SUCCESSFUL_DEPLOYS)}` WHERE pull = @pull AND repo = @repo LIMIT 1",
            [
                bigquery.ScalarQueryParameter("pull", "INT64", pull),
                bigquery.ScalarQueryParameter("repo", "STRING", repo),
            ],
        )
        if not rows:
            logger.warning("No existing successful deploy found for PR #%s in repo %s", pull, repo)
            return None

        row = rows[0]
        return SuccessfulDeploy(
            pull=row["pull"],
            repo=row["repo"],
            team=row["team"],
            deployed_at=row["deployed_at"],
            lead_time_minutes=row["lead_time_minutes"],
        )

    def unreconciled_corrective_deploys(self) -> List[CorrectiveDeploy]:
        """Corrective deploys with a ticket that has no RecoveredIncident yet."""
        rows = self._query(
            "SELECT cd.pull, cd.repo, cd.team, cd.deployed_at, cd.referenced_pull, "
            "cd.referenced_ticket, cd.time_to_recovery_minutes "
            f"FROM `{self.table_id(CORRECTIVE_DEPLOYS)}` cd "
            f"LEFT JOIN `{self.table_id(RECOVERED_INCIDENTS)}` ri ON cd.referenced_ticket = ri.jira "
            "WHERE ri.jira IS NULL AND cd.referenced_ticket IS NOT NULL "
            "ORDER BY cd.deployed_at"
        )
        return [
            CorrectiveDeploy(
                pull=row["pull"],
                repo=row["repo"],
                team=row["team"],
                deployed_at=row["deployed_at"],
                referenced_pull=row["referenced_pull"],
                referenced_ticket=row["referenced_ticket"],
                time_to_recovery_minutes=row["time_to_recovery_minutes"],
            )
            for row in rows
        ]

    def read_scan_cache(self) -> Dict[str, RepositoryScanCache]:
        rows = self._query(
            "SELECT repo, latest_pull_request_number, has_unresolved_corrective "
            f"FROM `{self.table_id(REPOSITORY_SCAN_CACHE)}`"
        )
        cache = {
            row["repo"]: RepositoryScanCache(
                repo=row["repo"],
                latest_pull_request_number=row["latest_pull_request_number"],
                has_unresolved_corrective=row["has_unresolved_corrective"],
            )
            for row in rows
        }
        logger.info("Loaded repository cache with %s entries", len(cache))
        return cache

    def write_scan_cache(self, entries: Sequence[RepositoryScanCache]) -> None:
        """Replace the repository scan cache with ``entries``."""
        job_config = bigquery.LoadJobConfig(
            schema=TABLE_SCHEMAS[REPOSITORY_SCAN_CACHE],
            write_disposition=bigquery.WriteDisposition.WRITE_TRUNCATE,
        )
        try:
            job = self._client.load_table_from_json(
                [to_row(entry) for entry in entries],
                self.table_id(REPOSITORY_SCAN_CACHE),
                job_config=job_config,
            )
            job.result(timeout=self._timeout_seconds)
        except GoogleAPIError as exc:
            raise StoreError(f"Failed to write repository cache: {exc}") from exc
        logger.info("Wrote repository cache with %s entries", len(entries))
