"""Shared fixtures for phaseflow tests."""

from unittest.mock import Mock

import pytest
from typer.testing import CliRunner

from phaseflow.cli.common import set_config_path
from phaseflow.config import PhaseflowConfig, clear_config_cache
from phaseflow.durable.engine import WorkflowEngine
from phaseflow.events.bus import EventBus
from phaseflow.logger import clear_logger_cache
from phaseflow.phases import PhaseServices
from phaseflow.pipeline import Pipeline
from phaseflow.store import PipelineStore
from tests.fakes import PR_URL, FakeClock, FakeEnvironment, FakeProvider, ScriptedModelClient


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_global_state():
    """Clear module-level caches between tests."""
    clear_config_cache()
    clear_logger_cache()
    set_config_path(None)
    yield
    clear_config_cache()
    clear_logger_cache()
    set_config_path(None)


@pytest.fixture
def config(tmp_path):
    """Default configuration rooted in a temporary directory."""
    return PhaseflowConfig(repo_root=str(tmp_path))


@pytest.fixture
def store(config):
    return PipelineStore.from_config(config)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(config, clock):
    return WorkflowEngine(config.db_path, clock=clock)


@pytest.fixture
def model():
    return ScriptedModelClient()


@pytest.fixture
def env():
    return FakeEnvironment()


@pytest.fixture
def provider(env):
    return FakeProvider(env)


@pytest.fixture
def github():
    client = Mock()
    client.create_pull_request.return_value = {"prUrl": PR_URL, "prNumber": 7}
    return client


@pytest.fixture
def bus(config):
    return EventBus(config.events_path)


@pytest.fixture
def services(config, store, model, provider, github, bus):
    return PhaseServices(
        config=config,
        store=store,
        client=model,
        provider=provider,
        github=github,
        bus=bus,
    )


@pytest.fixture
def pipeline(services, engine):
    return Pipeline(services, engine)


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
