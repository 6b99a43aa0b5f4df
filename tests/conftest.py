"""Shared test fixtures for the permission engine test suite.

Nothing here touches the network or the wall clock: engines talk to
``FakeTransport`` and read time from ``FakeClock``. Settings are built
with ``_env_file=None`` so a developer's local ``.env`` cannot leak in.
"""

import pytest

from permission_engine.services.facade import PermissionEngine

from fakes import FakeClock, FakeTransport, grant, make_settings, make_summary


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def transport():
    """Backend holding a small, typical grant set."""
    return FakeTransport(make_summary(
        grant("role", "assign", "organization"),
        grant("user", "read", "own"),
        grant("booking", "view", "property"),
    ))


@pytest.fixture()
def make_engine(settings, clock):
    """Factory so tests can build engines against their own transports."""

    def _make(transport, **setting_overrides):
        engine_settings = make_settings(**setting_overrides) if setting_overrides else settings
        return PermissionEngine(transport, settings=engine_settings, clock=clock)

    return _make


@pytest.fixture()
def engine(make_engine, transport):
    return make_engine(transport)
