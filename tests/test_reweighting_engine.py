"""
Tests for feedback_loop/reweighting/engine.py - the Reweighting Engine.
"""

import dataclasses

import pytest

from feedback_loop.config import ConfigurationError, ReweightingConfig
from feedback_loop.monitoring.geometry import SENTINEL_DISTANCE
from feedback_loop.registry.observation import DeadSignalWarning, create_observation
from feedback_loop.reweighting.engine import EVENTS_PREFIX, WEIGHTS_PATH, ReweightingEngine

from conftest import make_result

EXOGENOUS = ["GNEWS_API", "POLYMARKET_API", "SENTIMENT_API"]


def _exogenous_total(engine):
    return sum(engine.get_weight(s) for s in EXOGENOUS)


def _seed_errors(engine, values):
    for value in values:
        engine.record_error(value)


def _seed_volatile_source(engine, source="YFINANCE_API"):
    # Variance 1.0 for one source; others have no history
    for i in range(10):
        engine.record_data_point(source, 0.0 if i % 2 else 2.0)


class TestInitialWeights:
    """Tests for weight initialization."""

    def test_sum_to_one(self, engine):
        assert sum(engine.get_weights().values()) == pytest.approx(1.0)

    def test_exogenous_share(self, engine):
        # Endogenous share 1.0, exogenous share the cap, then normalize
        assert _exogenous_total(engine) == pytest.approx(0.15 / 1.15)

    def test_endogenous_equal(self, engine):
        vector = engine.get_weight_vector()
        values = list(vector.endogenous.values())
        assert len(values) == 5
        assert max(values) == pytest.approx(min(values))

    def test_invalid_config_rejected(self, registry):
        with pytest.raises(ConfigurationError):
            ReweightingEngine(registry, config=ReweightingConfig(max_exogenous_weight=1.5))
        with pytest.raises(ConfigurationError):
            ReweightingEngine(registry, config=ReweightingConfig(learning_rate=0.0))


class TestHandleFailure:
    """Tests for attribution and weight adjustment."""

    def test_significant_failure_reduces_weight(self, engine):
        _seed_errors(engine, [0.08, 0.12] * 5)
        _seed_volatile_source(engine)
        before = engine.get_weights()

        event = engine.handle_failure("pred_1", make_result(0.5))

        assert event is not None
        assert event.z_score > 1.5
        assert len(event.adjustments) >= 1
        after = engine.get_weights()
        assert any(after[s] < before[s] for s in before)
        assert after["YFINANCE_API"] < before["YFINANCE_API"]
        assert sum(after.values()) == pytest.approx(1.0)
        assert _exogenous_total(engine) <= 0.15 + 1e-9

    def test_within_tolerance_no_adjustment(self, engine):
        _seed_errors(engine, [0.4, 0.6] * 5)
        _seed_volatile_source(engine)
        before = engine.get_weights()

        # mean 0.5, stddev 0.1 -> z = 0.5
        event = engine.handle_failure("pred_1", make_result(0.55))

        assert event is None
        assert engine.get_weights() == before
        assert engine.get_mutation_events() == []

    def test_error_recorded_even_without_mutation(self, engine):
        _seed_errors(engine, [0.4, 0.6] * 5)
        engine.handle_failure("pred_1", make_result(0.55))
        assert engine.get_error_history()[-1] == 0.55
        assert len(engine.get_error_history()) == 11

    @pytest.mark.parametrize("distance", [float("inf"), float("nan"), 1e308])
    def test_non_finite_distance_does_not_disable_filter(self, engine, distance):
        _seed_errors(engine, [0.1] * 10)
        _seed_volatile_source(engine)

        assert engine.handle_failure("pred_1", make_result(distance)) is not None
        assert engine.get_error_history()[-1] == SENTINEL_DISTANCE

        assert engine.handle_failure("pred_2", make_result(0.1)) is None
        assert len(engine.get_mutation_events()) == 1

    def test_record_error_bounded(self, engine):
        engine.record_error(float("inf"))
        engine.record_error(-1.0)
        assert engine.get_error_history() == [SENTINEL_DISTANCE, 0.0]

    def test_short_history_always_mutates(self, engine):
        _seed_errors(engine, [0.5, 0.5, 0.5])
        _seed_volatile_source(engine)
        event = engine.handle_failure("pred_1", make_result(0.5))
        assert event is not None

    def test_attributions_normalized(self, engine):
        _seed_volatile_source(engine)
        event = engine.handle_failure("pred_1", make_result(0.8))
        assert sum(a.contribution for a in event.attributions) == pytest.approx(1.0)
        assert len(event.attributions) == 8
        volatile = next(a for a in event.attributions if a.source == "YFINANCE_API")
        assert volatile.peak_lag == 5

    def test_culprit_is_volatile_source(self, engine):
        _seed_volatile_source(engine, "FRED_API")
        event = engine.handle_failure("pred_1", make_result(0.8))
        assert [a.source for a in event.adjustments] == ["FRED_API"]
        adjustment = event.adjustments[0]
        assert adjustment.new_weight < adjustment.previous_weight
        assert adjustment.reason == "Failure at T+1"
        assert event.total_weight_reduction == pytest.approx(adjustment.delta)

    def test_weight_floor(self, registry, classification):
        engine = ReweightingEngine(
            registry,
            classification=classification,
            config=ReweightingConfig(seed=1, min_weight=0.17, learning_rate=1.0),
        )
        _seed_volatile_source(engine)
        event = engine.handle_failure("pred_1", make_result(1.0))
        assert event.adjustments[0].new_weight == pytest.approx(0.17)

    def test_error_history_capped(self, registry, classification):
        engine = ReweightingEngine(
            registry,
            classification=classification,
            config=ReweightingConfig(seed=1, error_history_cap=5),
        )
        _seed_errors(engine, [0.1] * 10)
        assert len(engine.get_error_history()) == 5

    def test_event_is_immutable(self, engine):
        _seed_volatile_source(engine)
        event = engine.handle_failure("pred_1", make_result(0.8))
        with pytest.raises(dataclasses.FrozenInstanceError):
            event.prediction_id = "other"

    def test_event_and_weights_published(self, engine, registry):
        _seed_volatile_source(engine)
        event = engine.handle_failure("pred_1", make_result(0.8))

        published = registry.get(f"{EVENTS_PREFIX}.{event.id}")
        assert published.value.data["prediction_id"] == "pred_1"

        weights = registry.get(WEIGHTS_PATH).value.data
        assert weights["total_exogenous_weight"] == pytest.approx(_exogenous_total(engine))

    def test_mutation_subscribers(self, engine):
        received = []
        engine.on_mutation(received.append)
        _seed_volatile_source(engine)
        event = engine.handle_failure("pred_1", make_result(0.8))
        assert received == [event]

    def test_seeded_runs_are_reproducible(self, registry, classification):
        results = []
        for _ in range(2):
            engine = ReweightingEngine(
                registry, classification=classification, config=ReweightingConfig(seed=7)
            )
            _seed_volatile_source(engine)
            _seed_volatile_source(engine, "FRED_API")
            engine.handle_failure("pred_1", make_result(0.8))
            results.append(engine.get_weights())
        assert results[0] == results[1]


class TestTriggerMutation:
    """Tests for manual mutation."""

    def test_not_running_returns_none(self, engine):
        assert engine.trigger_mutation("pred_1", make_result(0.8)) is None

    def test_running(self, engine):
        engine.start()
        try:
            _seed_volatile_source(engine)
            event = engine.trigger_mutation("pred_1", make_result(0.8))
            assert event is not None
            assert engine.get_mutation_events() == [event]
        finally:
            engine.stop()


class TestMonitorIntegration:
    """Tests for reacting to monitor failures."""

    def test_auto_mutate_on_failure(self, registry, monitor, classification):
        engine = ReweightingEngine(
            registry, monitor, classification, ReweightingConfig(seed=3)
        )
        engine.start()
        try:
            _seed_volatile_source(engine)
            prediction_id = monitor.register_prediction([1.0, 0.0, 1.0], 2, "m", "market.state")
            monitor.evaluate(prediction_id, "T+1", [2.0, 0.0, 2.0])
            events = engine.get_mutation_events()
            assert len(events) == 1
            assert events[0].prediction_id == prediction_id
        finally:
            engine.stop()

    def test_stopped_engine_ignores_failures(self, registry, monitor, classification):
        engine = ReweightingEngine(registry, monitor, classification, ReweightingConfig(seed=3))
        engine.start()
        engine.stop()
        prediction_id = monitor.register_prediction([1.0, 0.0, 1.0], 2, "m", "market.state")
        monitor.evaluate(prediction_id, "T+1", [2.0, 0.0, 2.0])
        assert engine.get_mutation_events() == []

    def test_auto_mutate_disabled(self, registry, monitor, classification):
        engine = ReweightingEngine(
            registry, monitor, classification, ReweightingConfig(seed=3, auto_mutate=False)
        )
        engine.start()
        try:
            prediction_id = monitor.register_prediction([1.0, 0.0, 1.0], 2, "m", "market.state")
            monitor.evaluate(prediction_id, "T+1", [2.0, 0.0, 2.0])
            assert engine.get_mutation_events() == []
        finally:
            engine.stop()


class TestDataPoints:
    """Tests for per-source observation history."""

    def test_history_window(self, registry, classification):
        engine = ReweightingEngine(
            registry, classification=classification, config=ReweightingConfig(history_window=3)
        )
        for value in range(5):
            engine.record_data_point("FRED_API", value)
        assert engine.get_history("FRED_API") == [2.0, 3.0, 4.0]

    def test_fed_from_admitted_block_writes(self, engine, registry):
        engine.start()
        try:
            obs = create_observation(1.5, "FRED_API", "m", "r")
            registry.set("market.rate", obs)
            assert engine.get_history("FRED_API") == []

            registry.set("blocks.endogenous.market.rate", obs)
            assert engine.get_history("FRED_API") == [1.5]

            registry.set("blocks.endogenous.market.cov", create_observation(
                [1.0, 0.0, 1.0], "FRED_API", "m", "r"
            ))
            with pytest.warns(DeadSignalWarning):
                registry.set("blocks.endogenous.market.dead", create_observation(
                    2.0, "FRED_API", "m", "r", confidence=(0.0, 0.0)
                ))
            assert engine.get_history("FRED_API") == [1.5]
        finally:
            engine.stop()


class TestWeightMaintenance:
    """Tests for decay, configuration changes and resets."""

    def test_full_decay_respects_cap(self, registry, classification):
        engine = ReweightingEngine(
            registry, classification=classification, config=ReweightingConfig(decay_factor=0.0)
        )
        weights = engine.apply_decay()
        # Uniform 3/8 exogenous is capped back to 0.15
        assert sum(weights.values()) == pytest.approx(1.0)
        assert _exogenous_total(engine) == pytest.approx(0.15)
        endogenous = [w for s, w in weights.items() if s not in EXOGENOUS]
        assert max(endogenous) == pytest.approx(min(endogenous))

    def test_decay_pulls_toward_uniform(self, registry, classification):
        engine = ReweightingEngine(
            registry, classification=classification,
            config=ReweightingConfig(seed=5, decay_factor=0.5),
        )
        _seed_volatile_source(engine)
        engine.handle_failure("pred_1", make_result(0.9))
        punished = engine.get_weight("YFINANCE_API")
        peer = engine.get_weight("FRED_API")
        engine.apply_decay()
        assert abs(engine.get_weight("YFINANCE_API") - engine.get_weight("FRED_API")) < peer - punished

    def test_update_config_lowers_cap(self, engine):
        engine.update_config(max_exogenous_weight=0.05)
        assert engine.weight_cap.cap == 0.05
        assert _exogenous_total(engine) <= 0.05 + 1e-9
        assert sum(engine.get_weights().values()) == pytest.approx(1.0)

    def test_update_config_rejects_invalid(self, engine):
        with pytest.raises(ConfigurationError):
            engine.update_config(max_exogenous_weight=1.5)
        with pytest.raises(ConfigurationError):
            engine.update_config(learning_rate=0.0)
        with pytest.raises(ConfigurationError):
            engine.update_config(not_a_setting=1)
        assert engine.config.max_exogenous_weight == 0.15
        assert engine.weight_cap.cap == 0.15

    def test_reset_weights(self, engine):
        initial = engine.get_weights()
        _seed_volatile_source(engine)
        engine.handle_failure("pred_1", make_result(0.8))
        engine.reset_weights()
        assert engine.get_weights() == pytest.approx(initial)

    def test_clear_history(self, engine):
        _seed_volatile_source(engine)
        engine.handle_failure("pred_1", make_result(0.8))
        engine.clear_history()
        assert engine.get_mutation_events() == []
        assert engine.get_history("YFINANCE_API") == []

    def test_statistics(self, engine):
        _seed_volatile_source(engine)
        event = engine.handle_failure("pred_1", make_result(0.8))
        stats = engine.get_statistics()
        assert stats["total_mutations"] == 1
        assert stats["total_weight_reduction"] == pytest.approx(event.total_weight_reduction)
        assert stats["current_exogenous_weight"] + stats["current_endogenous_weight"] == pytest.approx(1.0)
