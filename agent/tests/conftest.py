"""Test configuration for the agent test suite."""

import os

import pytest

# Settings are read at import time; give them a valid node identity and
# inventory API before any agent module is imported.
os.environ.setdefault("SERVER_UUID", "5f2c1d9e-8b7a-4c3d-9e1f-0a2b3c4d5e6f")
os.environ.setdefault("VMAPI_URL", "http://vmapi.test")
os.environ.setdefault("RETRY_INITIAL_DELAY", "0.01")
os.environ.setdefault("RETRY_MAX_DELAY", "0.05")
os.environ.setdefault("SHUTDOWN_TIMEOUT", "5")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def client(monkeypatch):
    """TestClient serving the application without running its lifespan."""

    from fastapi.testclient import TestClient

    from vmagent.main import app

    # Entering the client as a context manager would start the reconciler
    yield TestClient(app)
