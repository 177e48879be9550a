"""Shared fixtures: Redash credentials and a stub Redash behind httpx.MockTransport."""

import json

import httpx
import pytest

BASE_URL = "http://redash.test"
API_KEY = "secret-key"


@pytest.fixture
def redash_env(monkeypatch):
    """Point the server at the stub Redash."""
    monkeypatch.setenv("REDASH_BASE_URL", BASE_URL)
    monkeypatch.setenv("REDASH_API_KEY", API_KEY)


@pytest.fixture
def stub_remote(monkeypatch, redash_env):
    """Install a request handler as the remote service.

    Returns an installer; calling it with a handler returns the list that
    collects every request the client sends.
    """
    real_client = httpx.AsyncClient

    def install(handler):
        requests = []

        def record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        transport = httpx.MockTransport(record)

        def client_factory(*args, **kwargs):
            kwargs["transport"] = transport
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client_factory)
        return requests

    return install


def respond(status_code=200, body=None):
    """Handler that always answers with the given status and JSON body."""

    def handler(request: httpx.Request) -> httpx.Response:
        if body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=body)

    return handler


def unpack(content):
    """Split tool output into (summary, payload text, decoded payload)."""
    assert len(content) == 2
    summary, payload = content
    return summary.text, payload.text, json.loads(payload.text)
