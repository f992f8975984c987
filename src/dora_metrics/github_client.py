"""GitHub REST API client for pull request and deployment data retrieval."""

from __future__ import annotations

import base64
import csv
import io
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import ApiError, AuthenticationError, DataValidationError
from .models import (
    Commit,
    Deployment,
    PullRequestFact,
    Repository,
    RepositoryTarget,
    TeamMember,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


class GitHubClient:
    """Small, typed client for the GitHub pull request and Actions APIs."""

    _API_URL = "https://api.github.com"
    _API_VERSION = "2022-11-28"
    _PAGE_SIZE = 100
    _MAX_RETRIES = 5
    _MAX_BACKOFF_SECONDS = 30
    _PRODUCTION_ENVIRONMENT = "prod"

    def __init__(
        self,
        owner: str,
        token: str,
        timeout_seconds: int = 30,
        max_pages: int = 1,
    ) -> None:
        """Initialize an authenticated GitHub API client.

        Args:
            owner: Organization or user owning the configured repositories.
            token: GitHub token with read access to pulls and Actions, and
                write access to issues for labelling.
            timeout_seconds: Per-request timeout in seconds.
            max_pages: Number of pages of closed pull requests to scan per
                repository, newest first.
        """
        self._owner = owner
        self._timeout_seconds = timeout_seconds
        self._max_pages = max_pages

        self._session = requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": self._API_VERSION,
            }
        )

    def _build_url(self, path: str) -> str:
        return f"{self._API_URL}/{path.lstrip('/')}"

    def _extract_backoff_seconds(self, response: requests.Response, attempt: int) -> int:
        """Compute exponential backoff seconds, honoring Retry-After when available."""
        retry_after_header = response.headers.get("Retry-After")
        if retry_after_header:
            try:
                retry_after_seconds = int(retry_after_header)
                return min(self._MAX_BACKOFF_SECONDS, max(1, retry_after_seconds))
            except ValueError:
                pass

        return min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1))

    def _request_json(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute a request with retry logic for 429/5xx responses.

        Raises:
            AuthenticationError: If GitHub rejects the token (HTTP 401).
            ApiError: If the request repeatedly fails, returns HTTP >= 400,
                or does not return valid JSON.
        """
        url = self._build_url(path)
        last_error: Optional[Exception] = None

        for attempt in range(1, self._MAX_RETRIES + 1):
            try:
                response = self._session.request(
                    method, url, params=params, json=json, timeout=self._timeout_seconds
                )
            except requests.RequestException as exc:
                last_error = exc
                if attempt == self._MAX_RETRIES:
                    raise ApiError(f"GitHub request failed after retries: {method} {url}") from exc
                time.sleep(min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1)))
                continue

            status_code = response.status_code
            if status_code == 401:
                raise AuthenticationError(f"GitHub rejected the token: {method} {url}")

            is_retryable = status_code == 429 or 500 <= status_code <= 599
            if is_retryable and attempt < self._MAX_RETRIES:
                time.sleep(self._extract_backoff_seconds(response, attempt))
                continue

            if status_code >= 400:
                raise ApiError(
                    "GitHub API request failed: "
                    f"{method} {url} returned {status_code} - {response.text}"
                )

            try:
                return response.json()
            except ValueError as exc:
                raise ApiError(f"GitHub API returned invalid JSON: {method} {url}") from exc

        raise ApiError(f"GitHub request failed after retries: {method} {url}") from last_error

    def _get_list(self, path: str, params: Optional[Dict[str, Any]] = None, max_pages: int = 10) -> List[Dict[str, Any]]:
        """GET a list endpoint, following ``page`` until a partial page or ``max_pages``."""
        items: List[Dict[str, Any]] = []

        for page in range(1, max_pages + 1):
            query = dict(params or {})
            query.update({"per_page": self._PAGE_SIZE, "page": page})
            payload = self._request_json("GET", path, params=query)
            if not isinstance(payload, list):
                raise ApiError(f"GitHub API returned unexpected payload shape: GET {path}")

            items.extend(payload)
            if len(payload) < self._PAGE_SIZE:
                break

        return items

    def latest_closed_pull_number(self, repo: str) -> Optional[int]:
        """Return the number of the most recently created closed pull request."""
        payload = self._request_json(
            "GET",
            f"repos/{self._owner}/{repo}/pulls",
            params={"state": "closed", "sort": "created", "direction": "desc", "per_page": 1, "page": 1},
        )
        if not payload:
            return None
        return int(payload[0]["number"])

    def list_closed_pulls(self, repo: str) -> List[Dict[str, Any]]:
        return self._get_list(
            f"repos/{self._owner}/{repo}/pulls",
            params={"state": "closed", "sort": "created", "direction": "desc"},
            max_pages=self._max_pages,
        )

    def list_commits(self, repo: str, pull_number: int) -> List[Commit]:
        commits: List[Commit] = []
        for item in self._get_list(f"repos/{self._owner}/{repo}/pulls/{pull_number}/commits"):
            commit = item.get("commit") or {}
            authored_at = parse_timestamp((commit.get("author") or {}).get("date"))
            if authored_at is None:
                logger.debug(
                    "Skipping commit without author date",
                    extra={"repo": repo, "pull": pull_number, "sha": item.get("sha")},
                )
                continue
            commits.append(Commit(message=commit.get("message") or "", authored_at=authored_at))
        return commits

    def list_comments(self, repo: str, pull_number: int) -> List[str]:
        """Return review comments followed by issue comments, each in API order."""
        review = self._get_list(f"repos/{self._owner}/{repo}/pulls/{pull_number}/comments")
        issue = self._get_list(f"repos/{self._owner}/{repo}/issues/{pull_number}/comments")
        return [item.get("body") or "" for item in review + issue]

    def find_production_deploy(
        self,
        repo: str,
        merge_commit_sha: Optional[str],
        target: RepositoryTarget,
    ) -> Optional[Deployment]:
        """Resolve the production deployment of a merge commit.

        Looks for a successful run of the configured workflow on the merge
        commit and returns the completion time of its successful production
        job. Returns ``None`` when no such run exists yet.

        Raises:
            ApiError: If a matching run has no successful production job.
        """
        if not merge_commit_sha:
            return None

        payload = self._request_json(
            "GET",
            f"repos/{self._owner}/{repo}/actions/runs",
            params={"head_sha": merge_commit_sha, "status": "success"},
        )
        runs = [
            run
            for run in (payload or {}).get("workflow_runs", [])
            if (run.get("name") or "").lower() == target.workflow.lower()
        ]
        if not runs:
            return None

        run = runs[0]
        jobs = self._request_json("GET", f"repos/{self._owner}/{repo}/actions/runs/{run['id']}/jobs")
        deploy_job = next(
            (
                job
                for job in (jobs or {}).get("jobs", [])
                if job.get("conclusion") == "success"
                and target.job.lower() in (job.get("name") or "").lower()
            ),
            None,
        )
        if deploy_job is None:
            raise ApiError(
                f"No deployment job '{target.job}' found in workflow run {run.get('html_url')} "
                f"for repo {repo}"
            )

        deployed_at = parse_timestamp(deploy_job.get("completed_at"))
        if deployed_at is None:
            return None
        return Deployment(environment=self._PRODUCTION_ENVIRONMENT, deployed_at=deployed_at)

    def add_labels(self, repo: str, pull_number: int, labels: List[str]) -> None:
        self._request_json(
            "POST",
            f"repos/{self._owner}/{repo}/issues/{pull_number}/labels",
            json={"labels": labels},
        )

    def add_comment(self, repo: str, pull_number: int, body: str) -> None:
        self._request_json(
            "POST",
            f"repos/{self._owner}/{repo}/issues/{pull_number}/comments",
            json={"body": body},
        )

    def get_team_members(self, repo: str, path: str) -> List[TeamMember]:
        """Read the team roster CSV (``github_username,...,team``) from a repository.

        The first line is a header; rows without username or team are ignored.
        """
        payload = self._request_json("GET", f"repos/{self._owner}/{repo}/contents/{path}")
        try:
            content = base64.b64decode(payload["content"]).decode("utf-8")
        except (KeyError, TypeError, ValueError) as exc:
            raise DataValidationError(f"Team roster {repo}/{path} is not a base64 file payload.") from exc

        members: List[TeamMember] = []
        rows = csv.reader(io.StringIO(content))
        next(rows, None)
        for row in rows:
            if len(row) < 4:
                continue
            username, team = row[0].strip(), row[3].strip()
            if username and team:
                members.append(TeamMember(github_username=username, team=team))

        logger.info("Fetched %s users from %s", len(members), repo)
        return members

    def list_merged_pull_requests(
        self,
        target: RepositoryTarget,
        teams: Optional[Dict[str, str]] = None,
    ) -> Tuple[List[PullRequestFact], List[int]]:
        """List merged pull requests of ``target`` with their deployment, if any.

        ``teams`` maps lower-cased GitHub logins to team names. A pull request
        whose details cannot be fetched is logged and left out of this run; its
        number is returned alongside the fetched pull requests.
        """
        teams = teams or {}
        pulls: List[PullRequestFact] = []
        failed: List[int] = []

        for item in self.list_closed_pulls(target.name):
            merged_at = parse_timestamp(item.get("merged_at"))
            if merged_at is None:
                continue

            number = int(item["number"])
            author = (item.get("user") or {}).get("login")
            try:
                pulls.append(
                    PullRequestFact(
                        number=number,
                        branch=(item.get("head") or {}).get("ref") or "",
                        merged_at=merged_at,
                        team=teams.get(author.lower()) if author else None,
                        labels=frozenset(label.get("name", "") for label in item.get("labels") or []),
                        comments=self.list_comments(target.name, number),
                        commits=self.list_commits(target.name, number),
                        deployment=self.find_production_deploy(
                            target.name, item.get("merge_commit_sha"), target
                        ),
                        title=item.get("title") or "",
                        body=item.get("body"),
                        author=author,
                    )
                )
            except ApiError as exc:
                failed.append(number)
                logger.warning(
                    "Skipping pull request #%s, fetch failed: %s",
                    number,
                    exc,
                    extra={"repo": target.name},
                )

        logger.info(
            "Fetched merged pull requests",
            extra={"repo": target.name, "pulls": len(pulls), "failed": len(failed)},
        )
        return pulls, failed


def _pull_from_export(item: Dict[str, Any]) -> PullRequestFact:
    deployment = item.get("deployment")
    deployed_at = parse_timestamp((deployment or {}).get("deployedAt"))
    merged_at = parse_timestamp(item.get("mergedAt"))
    if merged_at is None:
        raise DataValidationError(f"Pull request #{item.get('pullNumber')} has no mergedAt.")

    return PullRequestFact(
        number=int(item["pullNumber"]),
        branch=item.get("branch") or "",
        merged_at=merged_at,
        team=item.get("team"),
        labels=frozenset(item.get("labels") or []),
        comments=list(item.get("comments") or []),
        commits=[
            Commit(message=commit.get("message") or "", authored_at=parse_timestamp(commit["timestamp"]))
            for commit in item.get("commits") or []
            if commit.get("timestamp")
        ],
        deployment=(
            Deployment(environment=deployment.get("environment") or "prod", deployed_at=deployed_at)
            if deployed_at is not None
            else None
        ),
        title=item.get("title") or "",
        body=item.get("body"),
        author=item.get("author"),
    )


def load_repositories(path: str) -> List[Repository]:
    """Load repositories from a JSON export of the GitHub scrape.

    The export has the shape ``{"repositories": [{"name": ..., "pulls": [...]}]}``
    with camelCase pull request fields (``pullNumber``, ``mergedAt``,
    ``deployment.deployedAt``, ``commits[].timestamp``).

    Raises:
        DataValidationError: If the file is not a valid export.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            payload = json.load(handle)
        repositories = [
            Repository(
                name=entry["name"],
                pulls=[_pull_from_export(item) for item in entry.get("pulls") or []],
            )
            for entry in payload["repositories"]
        ]
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise DataValidationError(f"Cannot read repositories from {path}: {exc}") from exc

    logger.info("Loaded %s repositories from %s", len(repositories), path)
    return repositories
