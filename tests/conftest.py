"""
Pytest configuration and fixtures for PegSentinel tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from backtest.replay import SimClock
from core.events import EventLog
from tests.helpers.vault_builders import KEEPER, OWNER, build_test_vault


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return SimClock(start=1_000_000.0)


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def paper(clock, events):
    """Funded vault with a core position, NORMAL regime, pool at the peg."""
    return build_test_vault(clock=clock, events=events)


@pytest.fixture
def vault(paper):
    return paper.vault


@pytest.fixture
def pool(paper):
    return paper.pool


@pytest.fixture
def owner():
    return OWNER


@pytest.fixture
def keeper():
    return KEEPER
