"""Jira REST client for incident ticket state."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from .errors import ApiError, AuthenticationError, DataValidationError, NotFoundError
from .models import IssueState, parse_timestamp
from .token_provider import TokenProvider

logger = logging.getLogger(__name__)


class JiraClient:
    """Reads issue creation and resolution times through the Jira proxy."""

    _MAX_RETRIES = 3
    _MAX_BACKOFF_SECONDS = 30

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        scope: str,
        timeout_seconds: int = 30,
    ) -> None:
        """Initialize a Jira client that authenticates with bearer tokens.

        Args:
            base_url: Jira REST API root, without a trailing ``/issue``.
            token_provider: Issues the bearer tokens for ``scope``.
            scope: Token audience of the Jira proxy.
            timeout_seconds: Per-request timeout in seconds.
        """
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._scope = scope
        self._timeout_seconds = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"Accept": "application/json"})

    def _get_json(self, path: str) -> Dict[str, Any]:
        """Execute an authenticated GET with retry logic for 429/5xx responses.

        Raises:
            AuthenticationError: On HTTP 401/403.
            NotFoundError: On HTTP 404.
            ApiError: If the request repeatedly fails or returns invalid JSON.
        """
        url = f"{self._base_url}/{path.lstrip('/')}"
        last_error: Optional[Exception] = None

        for attempt in range(1, self._MAX_RETRIES + 1):
            headers = {"Authorization": f"Bearer {self._token_provider.get_token(self._scope)}"}
            try:
                response = self._session.get(url, headers=headers, timeout=self._timeout_seconds)
            except requests.RequestException as exc:
                last_error = exc
                if attempt == self._MAX_RETRIES:
                    raise ApiError(f"Jira request failed after retries: GET {url}") from exc
                time.sleep(min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1)))
                continue

            status_code = response.status_code
            if status_code in (401, 403):
                raise AuthenticationError(f"Jira rejected credentials: GET {url} returned {status_code}")
            if status_code == 404:
                raise NotFoundError(f"Jira resource not found: GET {url}")

            is_retryable = status_code == 429 or 500 <= status_code <= 599
            if is_retryable and attempt < self._MAX_RETRIES:
                time.sleep(min(self._MAX_BACKOFF_SECONDS, 2 ** (attempt - 1)))
                continue

            if status_code >= 400:
                raise ApiError(f"Jira request failed: GET {url} returned {status_code} - {response.text}")

            try:
                payload = response.json()
            except ValueError as exc:
                raise ApiError(f"Jira returned invalid JSON: GET {url}") from exc

            if not isinstance(payload, dict):
                raise ApiError(f"Jira returned unexpected payload shape: GET {url}")
            return payload

        raise ApiError(f"Jira request failed after retries: GET {url}") from last_error

    def get_issue(self, key: str) -> IssueState:
        """Return the creation and resolution time of issue ``key``.

        Raises:
            NotFoundError: If the issue does not exist.
            AuthenticationError: If credentials are invalid or expired.
            DataValidationError: If the issue has no creation timestamp.
        """
        logger.info("Fetching issue from Jira: %s", key)
        payload = self._get_json(f"issue/{key}")
        fields = payload.get("fields") or {}

        try:
            created_at = parse_timestamp(fields.get("created"))
            resolved_at = parse_timestamp(fields.get("resolutiondate") or fields.get("resolved"))
        except ValueError as exc:
            raise DataValidationError(f"Jira issue {key} has a malformed timestamp.") from exc

        if created_at is None:
            raise DataValidationError(f"Jira issue {key} is missing its creation timestamp.")

        return IssueState(key=payload.get("key") or key, created_at=created_at, resolved_at=resolved_at)
