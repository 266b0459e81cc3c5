from __future__ import annotations

import os

import pytest

from leadauth.core.config.manager import ConfigManager
from leadauth.core.config.paths import ConfigFsPaths
from leadauth.core.session.manager import SessionManager
from leadauth.core.session.store import MemoryCredentialStore

from .helpers.fakes import CapturingEventLogger, DummyLogger, FakeClock, FakeIdentityService


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated root with config/ and secure/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    os.makedirs(fs.secure_dir, exist_ok=True)
    return fs


@pytest.fixture
def config_manager(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=DummyLogger(), read_only=False, environ={})
    cm.load_all()
    return cm


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    svc = FakeIdentityService(clock=clock)
    svc.add_account("partner@example.com", "partner-pass", role="partner", user_id="p1")
    svc.add_account("admin@example.com", "admin-pass", role="superadmin", user_id="a1")
    return svc


@pytest.fixture
def events():
    return CapturingEventLogger()


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def session_manager(service, store, clock, events):
    sm = SessionManager(client=service, store=store, logger=DummyLogger(), event_logger=events, clock=clock)
    yield sm
    sm.close()
