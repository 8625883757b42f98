"""
Test configuration and fixtures for pytest.

This module provides shared fixtures used across all tests:
- A device registry with two Twitter accounts and two security cameras
  (Xkcd and Facebook need no setup and are configured on first use)
- A contact directory knowing "mom"
- In-memory loader and remote sender
- A recording delegate and a ready-to-use state machine
- Test client (FastAPI TestClient) wired to fixture sessions
"""

import pytest
from typing import Generator

from fastapi.testclient import TestClient

from almond.deps import get_session_manager
from almond.dialog.schemas import Contact, DeviceDescriptor
from almond.dialog.state_machine import DialogStateMachine
from almond.main import app
from almond.services.app_loader import (
    InMemoryAppLoader,
    InMemoryContactDirectory,
    InMemoryRemoteSender,
)
from almond.services.delegate import RecordingDelegate
from almond.services.device_registry import InMemoryDeviceRegistry
from almond.services.flow_token import fixed_token
from almond.services.session_manager import Session, SessionManager


MOM = Contact(principal="mock-account:MOCK1234-phone:+1800666", name="Mom Corp Inc.")

TWITTER_FOO = DeviceDescriptor(kind="twitter", id="twitter-foo", label="Twitter Account foo")
TWITTER_BAR = DeviceDescriptor(kind="twitter", id="twitter-bar", label="Twitter Account bar")
CAMERA_1 = DeviceDescriptor(kind="security-camera", id="security-camera-1", label="Some Device 1")
CAMERA_2 = DeviceDescriptor(kind="security-camera", id="security-camera-2", label="Some Device 2")


def make_registry(**kwargs) -> InMemoryDeviceRegistry:
    """Registry with the fixture devices; auto-configured ids start at 6."""
    kwargs.setdefault("first_id", 6)
    return InMemoryDeviceRegistry(
        devices=[TWITTER_FOO, TWITTER_BAR, CAMERA_1, CAMERA_2],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# COLLABORATOR FIXTURES
# ---------------------------------------------------------------------------

@pytest.fixture
def registry() -> InMemoryDeviceRegistry:
    return make_registry()


@pytest.fixture
def registry_factory():
    """Build fixture registries with extra options, e.g. setups."""
    return make_registry


@pytest.fixture
def contacts() -> InMemoryContactDirectory:
    return InMemoryContactDirectory({"mom": MOM})


@pytest.fixture
def loader() -> InMemoryAppLoader:
    return InMemoryAppLoader()


@pytest.fixture
def remote() -> InMemoryRemoteSender:
    return InMemoryRemoteSender()


@pytest.fixture
def delegate() -> RecordingDelegate:
    return RecordingDelegate()


# ---------------------------------------------------------------------------
# STATE MACHINE FIXTURES
# ---------------------------------------------------------------------------

@pytest.fixture
def machine(delegate, registry, loader, remote, contacts) -> DialogStateMachine:
    """
    A dialog wired to the fixture collaborators.

    Flow tokens are always "XXX" so remote programs compare exactly.
    """
    return DialogStateMachine(
        delegate=delegate,
        devices=registry,
        loader=loader,
        remote=remote,
        contacts=contacts,
        token_generator=fixed_token("XXX"),
        session_id="test",
        show_welcome=True,
    )


# ---------------------------------------------------------------------------
# HTTP FIXTURES
# ---------------------------------------------------------------------------

def fixture_session(session_id: str) -> Session:
    delegate = RecordingDelegate()
    loader = InMemoryAppLoader()
    remote = InMemoryRemoteSender()
    machine = DialogStateMachine(
        delegate=delegate,
        devices=make_registry(),
        loader=loader,
        remote=remote,
        contacts=InMemoryContactDirectory({"mom": MOM}),
        token_generator=fixed_token("XXX"),
        session_id=session_id,
        show_welcome=True,
    )
    return Session(session_id=session_id, machine=machine, delegate=delegate, loader=loader, remote=remote)


@pytest.fixture
def sessions() -> SessionManager:
    return SessionManager(factory=fixture_session)


@pytest.fixture
def client(sessions: SessionManager) -> Generator[TestClient, None, None]:
    """
    Create a test client whose sessions use the fixture devices.
    """
    app.dependency_overrides[get_session_manager] = lambda: sessions

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
