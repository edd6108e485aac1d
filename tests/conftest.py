"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Force settings to use test-safe defaults before any import
os.environ.setdefault("FLEET_API_KEY", "")
os.environ.setdefault("FLEET_AUDIT_LOG_PATH", "")
os.environ.setdefault("FLEET_CREDENTIALS_DIR", "")

import pytest
from httpx import ASGITransport, AsyncClient

from fleetcmd.config import Settings
from fleetcmd.models.identity import Principal, Role
from fleetcmd.services.fleet import Fleet
from tests.fake_ssh import FAKE_KEY, FakeConnector


def make_settings(**overrides) -> Settings:
    values = dict(
        fleet_api_key="",
        fleet_connect_backoff_seconds=0.0,
        fleet_acquire_timeout_seconds=2.0,
        fleet_command_timeout_seconds=5.0,
        fleet_audit_log_path="",
        fleet_credentials_dir="",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_ssh():
    """Provide a fresh FakeConnector."""
    return FakeConnector()


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="alice", role=Role.admin)


@pytest.fixture
def devops() -> Principal:
    return Principal(user_id="dave", role=Role.devops)


@pytest.fixture
def viewer() -> Principal:
    return Principal(user_id="victor", role=Role.viewer)


@pytest.fixture
async def make_fleet(fake_ssh):
    """Factory for Fleet instances wired to the fake transport."""
    created: list[Fleet] = []

    def _make(**overrides) -> Fleet:
        fleet = Fleet(make_settings(**overrides), connector=fake_ssh)
        fleet.vault.put("deploy-key", private_key=FAKE_KEY)
        created.append(fleet)
        return fleet

    yield _make

    for fleet in created:
        await fleet.close()


@pytest.fixture
async def fleet(make_fleet) -> Fleet:
    return make_fleet()


@pytest.fixture
async def client(fleet):
    """Async test client with the fake-backed fleet injected."""
    from fleetcmd.main import app as fastapi_app
    from fleetcmd.services.fleet import get_fleet

    fastapi_app.dependency_overrides[get_fleet] = lambda: fleet
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    fastapi_app.dependency_overrides.pop(get_fleet, None)
