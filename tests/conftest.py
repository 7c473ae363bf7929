import pytest
from unittest.mock import MagicMock

import requests

from main import ProxyConfig, create_app

TEST_KEY = "test-secret-key"


def make_response(status_code=200, body=None):
    """A stand-in for requests.Response with a JSON body."""
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    return resp


@pytest.fixture
def config():
    return ProxyConfig(api_key=TEST_KEY, frontend_origin="https://example.com")


@pytest.fixture
def app(config):
    app = create_app(config)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def mock_request(mocker):
    """Patches the outbound HTTP call made by the retry wrapper."""
    return mocker.patch("fetch_retry.requests.request")


@pytest.fixture
def mock_sleep(mocker):
    """Patches backoff waits so tests never actually sleep."""
    return mocker.patch("fetch_retry.time.sleep")
