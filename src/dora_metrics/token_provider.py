"""Client-credentials token provider for machine-to-machine API calls."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional, Tuple

import requests

from .errors import AuthenticationError

logger = logging.getLogger(__name__)


class TokenProvider:
    """Fetches and caches access tokens from the platform token endpoint.

    Tokens are cached per scope and refreshed ``_EXPIRY_MARGIN_SECONDS`` before
    they expire. Concurrent callers share one refresh.
    """

    _IDENTITY_PROVIDER = "azuread"
    _EXPIRY_MARGIN_SECONDS = 60

    def __init__(self, endpoint: str, timeout_seconds: int = 30) -> None:
        self._endpoint = endpoint
        self._timeout_seconds = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get_token(self, scope: str) -> str:
        """Return a bearer token for ``scope``.

        Raises:
            AuthenticationError: If the endpoint is unreachable or refuses to
                issue a token.
        """
        with self._lock:
            cached = self._cache.get(scope)
            if cached is not None and cached[1] > time.monotonic():
                return cached[0]
            return self._fetch_token(scope)

    def _fetch_token(self, scope: str) -> str:
        try:
            response = self._session.post(
                self._endpoint,
                json={"identity_provider": self._IDENTITY_PROVIDER, "target": scope},
                timeout=self._timeout_seconds,
            )
        except requests.RequestException as exc:
            raise AuthenticationError(f"Token endpoint is not reachable: {self._endpoint}") from exc

        if response.status_code >= 400:
            raise AuthenticationError(
                f"Failed to fetch token: {response.status_code} - {response.text}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationError("Token endpoint returned invalid JSON.") from exc

        access_token: Optional[str] = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthenticationError("Token endpoint response did not contain an access token.")

        expires_in = int(payload.get("expires_in") or 0)
        expires_at = time.monotonic() + max(0, expires_in - self._EXPIRY_MARGIN_SECONDS)
        self._cache[scope] = (access_token, expires_at)
        logger.debug("Fetched access token", extra={"scope": scope, "expires_in": expires_in})
        return access_token
