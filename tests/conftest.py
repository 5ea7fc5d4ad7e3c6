"""Pytest configuration and fixtures for LocalModel tests."""

import pytest

from fakes import FakeClock, FakeSpawner, echo_responder, tags_transport
from localmodel.config import ManagerSettings
from localmodel.manager import SessionManager


@pytest.fixture
def fast_settings() -> ManagerSettings:
    """Settings with short timeouts so tests never wait long."""
    return ManagerSettings(
        default_model="phi3:mini",
        session_timeout=0.2,
        request_timeout=0.3,
        warmup_timeout=0.5,
        version_probe_timeout=0.5,
        download_timeout=1.0,
        stop_grace=0.1,
        kill_grace=0.1,
        retry_attempts=2,
        retry_backoff=0.01,
        server_start_attempts=3,
        server_poll_interval=0.01,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def spawner() -> FakeSpawner:
    """Spawner with a working engine and no model rules."""
    fake = FakeSpawner()
    fake.on_version({"output": [b"ollama version is 0.3.12\n"]})
    fake.on_serve({"hang": True})
    return fake


@pytest.fixture
def hello_spawner(spawner: FakeSpawner) -> FakeSpawner:
    """Engine whose phi3:mini session answers 'hello' with 'hi'."""
    spawner.on_session("phi3:mini", {"responder": echo_responder({"hello": "hi\n"})})
    spawner.on_run_once("phi3:mini", {"output": [b"hi\n"]})
    return spawner


@pytest.fixture
def make_manager(fast_settings, clock):
    """Factory for managers wired to fakes and a mock engine listing."""

    def factory(spawner, *model_names, settings=None, transport=None, **kwargs):
        return SessionManager(
            settings or fast_settings,
            spawner=spawner,
            http_transport=transport or tags_transport(*model_names),
            clock=clock,
            **kwargs,
        )

    return factory
