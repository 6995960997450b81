"""
Shared fixtures for the feedback loop tests.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from feedback_loop.audit.forensic import ForensicCapture
from feedback_loop.config import MonitorConfig, ReweightingConfig
from feedback_loop.monitoring.outcome_monitor import OutcomeMonitor, OutcomeResult
from feedback_loop.registry.observation import SourceClassification, create_observation
from feedback_loop.registry.store import Registry
from feedback_loop.reweighting.engine import ReweightingEngine

START_TIME = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)

IDENTITY_2X2 = [1.0, 0.0, 1.0]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_result(distance: float, horizon: str = "T+1", threshold: float = 0.3) -> OutcomeResult:
    return OutcomeResult(
        horizon=horizon,
        distance=distance,
        is_failure=distance > threshold,
        threshold=threshold,
        evaluation_time=START_TIME,
        predicted_state=tuple(IDENTITY_2X2),
        actual_state=(2.0, 0.0, 2.0),
    )


@pytest.fixture
def temp_ledger_dir():
    """Create a temporary ledger directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return Registry()


@pytest.fixture
def classification():
    return SourceClassification.default()


@pytest.fixture
def monitor(registry, clock):
    return OutcomeMonitor(registry, MonitorConfig(), clock=clock)


@pytest.fixture
def engine(registry, classification):
    return ReweightingEngine(
        registry,
        monitor=None,
        classification=classification,
        config=ReweightingConfig(seed=42),
    )


@pytest.fixture
def populated_registry(registry):
    """Registry with endogenous, exogenous and derived entries."""
    registry.set("market.spy", create_observation(
        412.5, "YFINANCE_API", "price_model", "risk_on", confidence=(410.0, 415.0)
    ))
    registry.set("market.eurusd", create_observation(
        1.08, "EXCHANGE_RATE_API", "fx_model", "risk_on"
    ))
    registry.set("news.sentiment", create_observation(
        0.35, "SENTIMENT_API", "sentiment_model", "risk_off"
    ))
    registry.set("derived.covariance", create_observation(
        {"covariance": [2.0, 0.5, 0.5, 3.0]}, "FRED_API", "cov_model", "risk_on"
    ))
    return registry


@pytest.fixture
def snapshot_factory(populated_registry, classification):
    """Returns a callable producing fresh snapshots of the populated registry."""
    capture = ForensicCapture(populated_registry, classification)
    weights = {
        "YFINANCE_API": 0.5,
        "EXCHANGE_RATE_API": 0.4,
        "SENTIMENT_API": 0.1,
    }

    def factory(decision_id: str = "mut_test"):
        return capture.capture(decision_id, weights=weights)

    return factory
