"""Row assembly for a DORA metrics run.

A run goes through these phases, in order:

1. fetch merged pull requests per repository (skipping repositories the scan
   cache marks as unchanged), or take them from an exported file
2. classify every pull request and resolve references of corrective ones
3. derive SuccessfulDeploy and CorrectiveDeploy rows for all repositories
4. snapshot existing keys, filter, and insert
5. reconcile ticket-referenced corrective deploys into RecoveredIncident rows

All rows are derived before anything is written, so store lookups during
derivation and the key snapshot see the same state.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .bigquery_store import CORRECTIVE_DEPLOYS, RECOVERED_INCIDENTS, SUCCESSFUL_DEPLOYS
from .classifier import CORRECTIVE_LABEL, classify
from .dedup import filter_new
from .errors import ApiError, AuthenticationError, StoreError
from .metrics import collect_successful_deploys
from .models import (
    CorrectiveDeploy,
    InsertFailure,
    InsertReport,
    PullRequestFact,
    Repository,
    RepositoryScanCache,
    RepositoryTarget,
    RunResult,
    SuccessfulDeploy,
)
from .reconciler import IncidentReconciler
from .references import resolve_references
from .strategies import ReferenceResolutionStrategy

logger = logging.getLogger(__name__)


@dataclass
class _Scan:
    """What the provider saw for one repository in this run."""

    latest: Optional[int]
    failed: List[int] = field(default_factory=list)


def _failed_pulls(rows: Sequence, report: Optional[InsertReport]) -> Dict[str, Set[int]]:
    """Pull numbers per repository whose row was not stored.

    A failure without a key fails every row of the batch.
    """
    failed: Dict[str, Set[int]] = {}
    if report is None or not report.failures:
        return failed

    keys = {failure.key for failure in report.failures}
    for row in rows:
        if None in keys or row.key in keys:
            failed.setdefault(row.repo, set()).add(row.pull)
    return failed


class MetricsPipeline:
    """Composes classification, derivation, deduplication and reconciliation.

    All collaborators are injected; the pipeline holds no module-level state.

    Args:
        store: Fact store (see :class:`~dora_metrics.bigquery_store.BigQueryStore`).
        strategy: Reference resolution scheme for corrective deploys.
        project_key: Issue-tracker project key of incident tickets.
        source: Source-control provider; required to fetch repositories.
        tracker: Issue tracker; required when the strategy reconciles incidents.
        targets: Repositories to fetch from ``source``.
        teams: Lower-cased GitHub login to team name.
        reminder_teams: Teams whose unreferenced corrective pull requests get a
            reminder comment.
        reminder_comment: Body of the reminder comment.
        max_workers: Concurrency bound for repository fetches and ticket lookups.
        timeout_seconds: Deadline for each concurrent phase.
        dry_run: Derive and report rows without writing anything.
    """

    def __init__(
        self,
        store,
        strategy: ReferenceResolutionStrategy,
        project_key: str,
        source=None,
        tracker=None,
        targets: Sequence[RepositoryTarget] = (),
        teams: Optional[Dict[str, str]] = None,
        reminder_teams: Sequence[str] = (),
        reminder_comment: str = "",
        max_workers: int = 4,
        timeout_seconds: Optional[float] = None,
        dry_run: bool = False,
    ) -> None:
        self._store = store
        self._strategy = strategy
        self._project_key = project_key
        self._source = source
        self._tracker = tracker
        self._targets = list(targets)
        self._teams = teams or {}
        self._reminder_teams = set(reminder_teams)
        self._reminder_comment = reminder_comment
        self._max_workers = max_workers
        self._timeout_seconds = timeout_seconds
        self._dry_run = dry_run

    def _fetch_one(
        self,
        target: RepositoryTarget,
        cached: Optional[RepositoryScanCache],
    ) -> Tuple[Optional[Repository], _Scan]:
        latest = self._source.latest_closed_pull_number(target.name)
        if (
            cached is not None
            and latest is not None
            and cached.latest_pull_request_number == latest
            and not cached.has_unresolved_corrective
        ):
            logger.info("No new pull requests in %s since last check. Skipping...", target.name)
            return None, _Scan(latest=latest)

        logger.info("New pull requests found in %s. Fetching...", target.name)
        pulls, failed = self._source.list_merged_pull_requests(target, self._teams)
        return Repository(name=target.name, pulls=pulls), _Scan(latest=latest, failed=failed)

    def fetch_repositories(
        self,
        cache: Dict[str, RepositoryScanCache],
    ) -> Tuple[List[Repository], Dict[str, _Scan]]:
        """Fetch configured repositories concurrently.

        A repository whose fetch fails, or is still running at the deadline,
        is left out of this run.

        Raises:
            AuthenticationError: If the provider rejects the credentials.
        """
        repositories: List[Repository] = []
        scans: Dict[str, _Scan] = {}

        executor = ThreadPoolExecutor(max_workers=self._max_workers)
        try:
            futures = {
                target.name: executor.submit(self._fetch_one, target, cache.get(target.name))
                for target in self._targets
            }
            done, not_done = wait(futures.values(), timeout=self._timeout_seconds)

            for name, future in futures.items():
                if future not in done:
                    logger.warning("Abandoned fetch of %s at deadline", name)
                    continue
                try:
                    repository, scan = future.result()
                except AuthenticationError:
                    raise
                except ApiError as exc:
                    logger.error("Failed to fetch %s: %s", name, exc)
                    continue

                scans[name] = scan
                if repository is not None:
                    repositories.append(repository)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        return repositories, scans

    def prepare(self, repo: str, pr: PullRequestFact) -> None:
        """Classify ``pr`` and resolve its references when it is corrective."""
        classification = classify(pr.labels, pr.branch)
        pr.is_corrective = classification.is_corrective
        if not pr.is_corrective:
            return

        references = resolve_references(pr, self._project_key)
        pr.referenced_pull = references.pull
        pr.referenced_ticket = references.ticket

        if classification.needs_label:
            self._request_label(repo, pr)
        if pr.referenced_ticket is None:
            self._request_reference(repo, pr)

    def _request_label(self, repo: str, pr: PullRequestFact) -> None:
        if self._source is None or self._dry_run:
            return
        try:
            self._source.add_labels(repo, pr.number, [CORRECTIVE_LABEL])
            logger.info("Added %s label to PR #%s", CORRECTIVE_LABEL, pr.number, extra={"repo": repo})
        except ApiError as exc:
            logger.warning("Failed to label PR #%s: %s", pr.number, exc, extra={"repo": repo})

    def _request_reference(self, repo: str, pr: PullRequestFact) -> None:
        if self._source is None or self._dry_run or not self._reminder_comment:
            return
        if pr.team not in self._reminder_teams:
            logger.debug(
                "PR #%s has no ticket reference, team %s is not reminded",
                pr.number,
                pr.team,
                extra={"repo": repo},
            )
            return
        if self._reminder_comment in pr.comments:
            return
        try:
            self._source.add_comment(repo, pr.number, self._reminder_comment)
            logger.info("Commented on PR #%s asking for a reference", pr.number, extra={"repo": repo})
        except ApiError as exc:
            logger.warning("Failed to comment on PR #%s: %s", pr.number, exc, extra={"repo": repo})

    def scan_state(self, repository: Repository, scan: _Scan) -> RepositoryScanCache:
        """Cache entry for a fetched repository.

        The recorded pull request number stops just below the oldest pull
        request that is not fully processed yet (not deployed, failed to fetch,
        or whose row was not stored), so the repository is scanned again until
        it is.
        """
        pending = [pr.number for pr in repository.pulls if pr.deployment is None] + scan.failed
        latest = scan.latest if scan.latest is not None else -1
        if pending:
            latest = min(latest, min(pending) - 1)

        return RepositoryScanCache(
            repo=repository.name,
            latest_pull_request_number=latest,
            has_unresolved_corrective=any(
                pr.is_corrective and not self._strategy.is_referenced(pr) for pr in repository.pulls
            ),
        )

    def derive_repository(
        self,
        repository: Repository,
        now: datetime,
    ) -> Tuple[List[SuccessfulDeploy], List[CorrectiveDeploy], List[int]]:
        """Derive the deploy rows of one repository.

        A corrective pull request whose referenced deploy cannot be looked up
        because the store failed is left out of this run; its number is
        returned as the third element.
        """
        successful = collect_successful_deploys(repository.name, repository.pulls)

        in_batch: Dict[int, SuccessfulDeploy] = {}
        for deploy in successful:
            in_batch.setdefault(deploy.pull, deploy)

        def find_deploy(pull: int, repo: str) -> Optional[SuccessfulDeploy]:
            if repo == repository.name and pull in in_batch:
                return in_batch[pull]
            return self._store.find_successful_deploy(pull, repo)

        corrective: List[CorrectiveDeploy] = []
        deferred: List[int] = []
        for pr in repository.pulls:
            if not pr.is_corrective:
                continue
            try:
                deploy = self._strategy.build_corrective_deploy(repository.name, pr, find_deploy, now)
            except StoreError as exc:
                logger.warning(
                    "Skipping corrective deploy PR #%s, referenced deploy lookup failed: %s",
                    pr.number,
                    exc,
                    extra={"repo": repository.name},
                )
                deferred.append(pr.number)
                continue
            if deploy is not None:
                corrective.append(deploy)

        return successful, corrective, deferred

    def _insert_new(self, table: str, rows: Sequence, existing) -> InsertReport:
        new_rows = filter_new(rows, existing)
        logger.info("Filtered %s to insert: %s out of %s", table, len(new_rows), len(rows))

        if self._dry_run:
            return InsertReport(table=table, attempted=len(new_rows))
        try:
            return self._store.insert(table, new_rows)
        except StoreError as exc:
            logger.error("Insert into %s failed: %s", table, exc)
            return InsertReport(
                table=table,
                attempted=len(new_rows),
                failures=[InsertFailure(key=row.key, reason=str(exc)) for row in new_rows],
            )

    def persist(self, batches: Dict[str, Sequence]) -> Dict[str, InsertReport]:
        """Insert rows whose natural key is not stored yet.

        Existing keys for every table are read before the first insert.
        """
        snapshot = {}
        reports: Dict[str, InsertReport] = {}
        for table, rows in batches.items():
            try:
                snapshot[table] = self._store.existing_keys(table, [row.key for row in rows])
            except StoreError as exc:
                logger.error("Cannot read existing keys of %s, not inserting: %s", table, exc)
                reports[table] = InsertReport(
                    table=table,
                    attempted=len(rows),
                    failures=[InsertFailure(key=row.key, reason=str(exc)) for row in rows],
                )

        for table, existing in snapshot.items():
            reports[table] = self._insert_new(table, batches[table], existing)
        return reports

    def run(
        self,
        repositories: Optional[List[Repository]] = None,
        now: Optional[datetime] = None,
    ) -> RunResult:
        """Execute one run.

        Args:
            repositories: Pre-fetched repositories; fetched from the source
                when ``None``.
            now: Clock snapshot for all grace-period decisions of this run.

        Raises:
            AuthenticationError: If a collaborator rejects the credentials.
        """
        now = now or datetime.now(timezone.utc)
        result = RunResult()

        cache: Dict[str, RepositoryScanCache] = {}
        scans: Dict[str, _Scan] = {}
        if repositories is None:
            if self._source is None:
                raise ValueError("A source-control provider is required to fetch repositories.")
            cache = self._read_cache()
            repositories, scans = self.fetch_repositories(cache)
            result.skipped = [target.name for target in self._targets if target.name not in scans]

        for repository in repositories:
            for pr in repository.pulls:
                self.prepare(repository.name, pr)

        for repository in repositories:
            successful, corrective, deferred = self.derive_repository(repository, now)
            if repository.name in scans:
                scans[repository.name].failed.extend(deferred)
            result.successful_deploys.extend(successful)
            result.corrective_deploys.extend(corrective)

        result.reports.update(
            self.persist(
                {
                    SUCCESSFUL_DEPLOYS: result.successful_deploys,
                    CORRECTIVE_DEPLOYS: result.corrective_deploys,
                }
            )
        )

        for table, rows in (
            (SUCCESSFUL_DEPLOYS, result.successful_deploys),
            (CORRECTIVE_DEPLOYS, result.corrective_deploys),
        ):
            for repo, pulls in _failed_pulls(rows, result.reports.get(table)).items():
                if repo in scans:
                    scans[repo].failed.extend(pulls)

        if scans:
            self._write_cache(repositories, scans, cache)

        if self._strategy.reconciles_incidents:
            if self._tracker is None:
                logger.warning("No issue tracker configured, skipping incident reconciliation")
            else:
                result.recovered_incidents = self._reconcile()
                result.reports.update(self.persist({RECOVERED_INCIDENTS: result.recovered_incidents}))

        return result

    def _read_cache(self) -> Dict[str, RepositoryScanCache]:
        try:
            return self._store.read_scan_cache()
        except StoreError as exc:
            logger.warning("Repository cache unavailable, scanning all repositories: %s", exc)
            return {}

    def _write_cache(
        self,
        repositories: List[Repository],
        scans: Dict[str, _Scan],
        previous: Dict[str, RepositoryScanCache],
    ) -> None:
        if self._dry_run:
            return

        fetched = {repository.name: repository for repository in repositories}
        entries: List[RepositoryScanCache] = []
        for name, scan in scans.items():
            if name in fetched:
                entries.append(self.scan_state(fetched[name], scan))
            elif name in previous:
                entries.append(previous[name])

        # Repositories that failed to fetch keep their previous entry.
        for name, entry in previous.items():
            if name not in scans:
                entries.append(entry)

        try:
            self._store.write_scan_cache(entries)
        except StoreError as exc:
            logger.warning("Failed to write repository cache: %s", exc)

    def _reconcile(self):
        reconciler = IncidentReconciler(
            store=self._store,
            tracker=self._tracker,
            max_workers=self._max_workers,
            timeout_seconds=self._timeout_seconds,
        )
        try:
            return reconciler.reconcile()
        except StoreError as exc:
            logger.error("Cannot read unreconciled corrective deploys: %s", exc)
            return []
