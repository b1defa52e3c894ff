"""
Shared pytest fixtures for swarm-patrol tests.

Fixtures provided:
- mock_docker_client: Mock Docker SDK client
- credential / bearer_credential: Registry credentials (PAT and plain token)
- make_workload: Factory for ManagedWorkload snapshots
- fake_session: Fake aiohttp session with queued responses
- stop_event: Fresh asyncio stop signal

Nothing here talks to a Docker daemon or the network.
"""

import asyncio
import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from updates.image_ref import parse_image_reference
from updates.types import ManagedWorkload, RegistryCredential, WorkloadKind

DIGEST_OLD = "sha256:" + "a" * 64
DIGEST_NEW = "sha256:" + "b" * 64


class FakeResponse:
    """Stand-in for aiohttp.ClientResponse, usable as an async context manager."""

    def __init__(self, status=200, headers=None, json_body=None, text=""):
        self.status = status
        self.headers = headers or {}
        self._json_body = json_body
        self._text = text

    async def json(self, content_type=None):
        if isinstance(self._json_body, Exception):
            raise self._json_body
        return self._json_body

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Stand-in for aiohttp.ClientSession.

    Responses are queued per method and consumed in order. Queue an
    exception instance to have the request raise it.
    """

    def __init__(self):
        self.closed = False
        self.get_responses = []
        self.head_responses = []
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append(("GET", url, kwargs))
        return self._next(self.get_responses)

    def head(self, url, **kwargs):
        self.requests.append(("HEAD", url, kwargs))
        return self._next(self.head_responses)

    async def close(self):
        self.closed = True

    @staticmethod
    def _next(queue):
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def digest_response(digest=DIGEST_NEW, status=200):
    """Manifest HEAD response carrying a Docker-Content-Digest header."""
    return FakeResponse(status=status, headers={"Docker-Content-Digest": digest})


@pytest.fixture
def mock_docker_client():
    """
    Mock Docker SDK client for testing without real Docker daemon.

    Returns a MagicMock with the SDK methods swarm-patrol uses stubbed.
    """
    client = MagicMock()

    client.services.list = MagicMock(return_value=[])
    client.containers.list = MagicMock(return_value=[])
    client.images.pull = MagicMock()
    client.login = MagicMock(return_value={"Status": "Login Succeeded"})

    client.api.inspect_swarm = MagicMock(return_value={"ID": "swarm123"})
    client.api.inspect_service = MagicMock(return_value={
        "ID": "svc123",
        "Version": {"Index": 42},
        "Spec": {
            "Name": "web",
            "TaskTemplate": {
                "ContainerSpec": {
                    "Image": f"ghcr.io/acme/web:latest@{DIGEST_OLD}",
                    "Labels": {"com.example.team": "platform"},
                },
                "RestartPolicy": {"Condition": "any"},
            },
        },
    })
    client.api.update_service = MagicMock(return_value={"Warnings": None})
    client.api.tasks = MagicMock(return_value=[])

    return client


@pytest.fixture
def credential():
    """Credential holding a GitHub personal access token."""
    return RegistryCredential(owner="acme", username="octocat", token="ghp_secret123")


@pytest.fixture
def bearer_credential():
    """Credential holding a token that is already a bearer token."""
    return RegistryCredential(owner="acme", username="octocat", token="plain-bearer-token")


@pytest.fixture
def make_workload():
    """Factory for ManagedWorkload snapshots."""
    def _make(
        image=f"ghcr.io/acme/web:latest@{DIGEST_OLD}",
        name="web",
        kind=WorkloadKind.SERVICE,
        workload_id="svc123",
        version=41
    ):
        return ManagedWorkload(
            id=workload_id,
            name=name,
            kind=kind,
            image=parse_image_reference(image),
            version=version if kind is WorkloadKind.SERVICE else None,
        )
    return _make


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def stop_event():
    return asyncio.Event()


@pytest.fixture
def make_response():
    """Factory for fake aiohttp responses."""
    return FakeResponse


@pytest.fixture
def make_digest_response():
    """Factory for manifest HEAD responses with a digest header."""
    return digest_response
