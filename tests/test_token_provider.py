"""Tests for the machine-to-machine token provider."""

import sys
import threading
import time
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import requests

# Add src directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dora_metrics.errors import AuthenticationError
from dora_metrics.token_provider import TokenProvider

ENDPOINT = "http://texas.example/api/v1/token"
SCOPE = "api://prod-fss.pesys-felles.jira-proxy/.default"


def _response(status_code: int, payload=None, text: str = ""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = payload if payload is not None else {}
    return response


def test_get_token_posts_identity_provider_and_target():
    """Verify tokens are requested for the azuread identity provider and scope."""
    provider = TokenProvider(ENDPOINT)
    provider._session.post = Mock(return_value=_response(200, {"access_token": "t1", "expires_in": 3600}))

    assert provider.get_token(SCOPE) == "t1"

    provider._session.post.assert_called_once_with(
        ENDPOINT,
        json={"identity_provider": "azuread", "target": SCOPE},
        timeout=30,
    )


def test_get_token_is_cached_until_expiry():
    """Verify a valid token is reused and an expired one is refreshed."""
    provider = TokenProvider(ENDPOINT)
    provider._session.post = Mock(
        side_effect=[
            _response(200, {"access_token": "t1", "expires_in": 3600}),
            _response(200, {"access_token": "t2", "expires_in": 3600}),
        ]
    )

    with patch("dora_metrics.token_provider.time.monotonic", side_effect=[0.0, 10.0, 4000.0, 4000.0]):
        assert provider.get_token(SCOPE) == "t1"
        assert provider.get_token(SCOPE) == "t1"
        assert provider.get_token(SCOPE) == "t2"

    assert provider._session.post.call_count == 2


def test_get_token_error_status_raises_authentication_error():
    """Verify a refused token request is an authentication error."""
    provider = TokenProvider(ENDPOINT)
    provider._session.post = Mock(return_value=_response(400, text="invalid target"))

    with pytest.raises(AuthenticationError):
        provider.get_token(SCOPE)


def test_get_token_without_access_token_raises_authentication_error():
    """Verify a response without access token is rejected."""
    provider = TokenProvider(ENDPOINT)
    provider._session.post = Mock(return_value=_response(200, {"token_type": "Bearer"}))

    with pytest.raises(AuthenticationError):
        provider.get_token(SCOPE)


def test_get_token_unreachable_endpoint_raises_authentication_error():
    """Verify connection failures surface as authentication errors."""
    provider = TokenProvider(ENDPOINT)
    provider._session.post = Mock(side_effect=requests.ConnectionError("refused"))

    with pytest.raises(AuthenticationError):
        provider.get_token(SCOPE)


def test_get_token_concurrent_callers_share_one_fetch():
    """Verify callers racing on an empty cache trigger a single token request."""
    provider = TokenProvider(ENDPOINT)

    def post(*args, **kwargs):
        time.sleep(0.05)
        return _response(200, {"access_token": "t1", "expires_in": 3600})

    provider._session.post = Mock(side_effect=post)
    tokens = []
    threads = [threading.Thread(target=lambda: tokens.append(provider.get_token(SCOPE))) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tokens == ["t1"] * 5
    assert provider._session.post.call_count == 1
