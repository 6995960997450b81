"""
Tests for feedback_loop/audit/forensic.py - forensic snapshots.
"""

import json
from datetime import datetime, timezone

import numpy as np
import pytest

from feedback_loop.audit.forensic import (
    ForensicCapture,
    ForensicSnapshot,
    serialize_value,
    snapshot_size,
)
from feedback_loop.registry.observation import (
    DeadSignalWarning,
    Payload,
    SourceClass,
    create_observation,
)
from feedback_loop.reweighting.engine import ReweightingEngine


class TestSerializeValue:
    """Tests for serialize_value function."""

    def test_non_finite_floats(self):
        assert serialize_value(float("nan")) == "NaN"
        assert serialize_value(float("inf")) == "Infinity"
        assert serialize_value(float("-inf")) == "-Infinity"

    def test_plain_values_unchanged(self):
        assert serialize_value(None) is None
        assert serialize_value(True) is True
        assert serialize_value(3) == 3
        assert serialize_value(2.5) == 2.5
        assert serialize_value("text") == "text"

    def test_numpy(self):
        assert serialize_value(np.array([[1.0, 2.0], [3.0, np.nan]])) == [[1.0, 2.0], [3.0, "NaN"]]
        assert serialize_value(np.float64(1.5)) == 1.5

    def test_containers(self):
        value = {"a": (1, 2), "b": {3, 1}, 4: [float("inf")]}
        assert serialize_value(value) == {
            "a": [1, 2],
            "b": {"__type": "set", "values": [1, 3]},
            "4": ["Infinity"],
        }

    def test_datetime_and_enum(self):
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert serialize_value(ts) == ts.isoformat()
        assert serialize_value(SourceClass.EXOGENOUS) == "exogenous"

    def test_payload(self):
        assert serialize_value(Payload.matrix([1.0, 0.0, 1.0], 2)) == {
            "kind": "matrix", "data": [1.0, 0.0, 1.0], "dimension": 2,
        }

    def test_result_is_json_native(self):
        value = {"x": float("nan"), "y": np.arange(3), "z": {1, 2}}
        json.dumps(serialize_value(value), allow_nan=False)


class TestCapture:
    """Tests for ForensicCapture.capture."""

    def test_registry_dump(self, snapshot_factory):
        snapshot = snapshot_factory("mut_1")
        state = snapshot.registry_state
        assert snapshot.decision_id == "mut_1"
        assert state["count"] == 4
        assert set(state["observations"]) == {
            "market.spy", "market.eurusd", "news.sentiment", "derived.covariance"
        }
        assert state["observations"]["market.spy"]["source"] == "YFINANCE_API"
        assert state["observations"]["market.spy"]["confidence"] == [410.0, 415.0]

    def test_paths_classified_by_source(self, snapshot_factory):
        state = snapshot_factory().registry_state
        assert state["exogenous_paths"] == ["news.sentiment"]
        assert "market.spy" in state["endogenous_paths"]
        assert "derived.covariance" in state["endogenous_paths"]

    def test_weights_split(self, snapshot_factory):
        weights = snapshot_factory().weights
        assert weights["endogenous"] == {"YFINANCE_API": 0.5, "EXCHANGE_RATE_API": 0.4}
        assert weights["exogenous"] == {"SENTIMENT_API": 0.1}
        assert weights["total_exogenous_weight"] == pytest.approx(0.1)

    def test_derived_matrices(self, snapshot_factory):
        matrices = snapshot_factory().matrices
        assert matrices == {"covariance": [2.0, 0.5, 0.5, 3.0]}

    def test_regime_and_models(self, snapshot_factory):
        snapshot = snapshot_factory()
        assert snapshot.regime_id == "risk_on"
        assert snapshot.model_ids == ["cov_model", "fx_model", "price_model", "sentiment_model"]

    def test_empty_registry(self, registry, classification):
        snapshot = ForensicCapture(registry, classification).capture("mut_1")
        assert snapshot.registry_state["count"] == 0
        assert snapshot.regime_id == "unknown"
        assert snapshot.weights["endogenous"] == {}
        assert snapshot.matrices == {}

    def test_weights_read_from_registry(self, registry, classification):
        engine = ReweightingEngine(registry, classification=classification)
        engine.reset_weights()
        snapshot = ForensicCapture(registry, classification).capture("mut_1")
        assert snapshot.weights["total_exogenous_weight"] == pytest.approx(0.15 / 1.15)
        assert set(snapshot.weights["exogenous"]) == set(classification.exogenous)

    def test_dead_signal_serialized(self, registry, classification):
        with pytest.warns(DeadSignalWarning):
            registry.set("market.spy", create_observation(float("nan"), "YFINANCE_API", "m", "r"))
        snapshot = ForensicCapture(registry, classification).capture("mut_1")
        observation = snapshot.registry_state["observations"]["market.spy"]
        assert observation["value"]["data"] == "NaN"
        assert observation["confidence"] == [0.0, 0.0]

    def test_snapshot_ids_unique(self, snapshot_factory):
        assert snapshot_factory().id != snapshot_factory().id


class TestSnapshotSerialization:
    """Tests for snapshot round trip and size."""

    def test_dict_round_trip(self, snapshot_factory):
        snapshot = snapshot_factory()
        restored = ForensicSnapshot.from_dict(json.loads(json.dumps(snapshot.to_dict())))
        assert restored == snapshot

    def test_snapshot_size(self, snapshot_factory):
        snapshot = snapshot_factory()
        size = snapshot_size(snapshot)
        assert size > 0
        assert size == len(json.dumps(snapshot.to_dict(), sort_keys=True).encode("utf-8"))
