"""
End-to-end tests for feedback_loop/loop.py.
"""

import pytest

from feedback_loop import loop as loop_module
from feedback_loop.audit import ledger
from feedback_loop.audit.chain import verify_chain
from feedback_loop.audit.ledger import LedgerError
from feedback_loop.config import FeedbackLoopConfig, ReweightingConfig
from feedback_loop.loop import FeedbackLoop, training_record

from conftest import IDENTITY_2X2, FakeClock

LARGE_SHIFT = [2.0, 0.0, 2.0]


@pytest.fixture
def loop_config(temp_ledger_dir):
    return FeedbackLoopConfig(
        reweighting=ReweightingConfig(seed=7),
        ledger_dir=temp_ledger_dir,
    )


@pytest.fixture
def loop(loop_config):
    feedback_loop = FeedbackLoop(loop_config, clock=FakeClock())
    feedback_loop.start(poll=False)
    yield feedback_loop
    feedback_loop.stop()


def _fail_prediction(loop):
    prediction_id = loop.monitor.register_prediction(IDENTITY_2X2, 2, "cov_model", "market.state")
    return loop.monitor.evaluate(prediction_id, "T+1", LARGE_SHIFT)


class TestIngest:
    """Tests for routing through the loop."""

    def test_endogenous_admitted(self, loop):
        routed = loop.ingest("market.spy", 412.5, "YFINANCE_API", "price_model", "risk_on")
        assert routed.included
        assert routed.reason == "admitted"
        assert loop.registry.has("market.spy")

    def test_exogenous_held_back_until_cap_allows(self, loop):
        routed = loop.ingest("news.tone", 0.2, "GNEWS_API", "sentiment_model", "risk_off")
        assert routed.stored
        assert not routed.included
        assert routed.reason == "exogenous_cap"

    def test_unknown_source(self, loop):
        routed = loop.ingest("misc.value", 1.0, "UNKNOWN_API", "m", "r")
        assert not routed.stored
        assert not loop.registry.has("misc.value")


class TestFailureToSeal:
    """Tests for the failure -> mutation -> seal -> ledger flow."""

    def test_failure_is_sealed_and_persisted(self, loop, temp_ledger_dir):
        for i in range(10):
            loop.ingest(f"market.spy.{i}", 400.0 + i, "YFINANCE_API", "price_model", "risk_on")

        result = _fail_prediction(loop)
        assert result.is_failure

        assert loop.chain.chain_length == 1
        assert loop.chain.verify_chain().valid
        assert not loop.registry.is_dirty

        entries = ledger.read_sealed_entries(temp_ledger_dir)
        assert [e.hash for e in entries] == [loop.chain.head_hash]

        training = ledger.read_training_records(temp_ledger_dir)
        assert len(training) == 1
        assert training[0]["mutation_id"] == entries[0].payload["id"]
        assert training[0]["horizon"] == "T+1"

    def test_sealed_snapshot_holds_weights_after(self, loop):
        _fail_prediction(loop)
        event = loop.engine.get_mutation_events()[-1]
        snapshot = loop.chain.entries[-1].snapshot
        assert snapshot.decision_id == event.id
        assert snapshot.weights["total_exogenous_weight"] <= 0.15 + 1e-9

    def test_success_not_sealed(self, loop):
        prediction_id = loop.monitor.register_prediction(IDENTITY_2X2, 2, "cov_model", "market.state")
        loop.monitor.evaluate(prediction_id, "T+1", IDENTITY_2X2)
        assert loop.chain.chain_length == 0

    def test_resume_restores_chain(self, loop, loop_config):
        _fail_prediction(loop)
        _fail_prediction(loop)
        loop.stop()

        resumed = FeedbackLoop(loop_config, resume=True)
        assert resumed.chain.chain_length == loop.chain.chain_length
        assert resumed.chain.head_hash == loop.chain.head_hash

    def test_no_persistence(self, loop_config, temp_ledger_dir):
        feedback_loop = FeedbackLoop(loop_config, persist=False)
        feedback_loop.start(poll=False)
        try:
            _fail_prediction(feedback_loop)
        finally:
            feedback_loop.stop()
        assert feedback_loop.chain.chain_length == 1
        assert ledger.read_sealed_entries(temp_ledger_dir) == []

    def test_ledger_failure_keeps_memory_and_disk_in_step(self, loop, temp_ledger_dir, monkeypatch):
        original = loop_module.append_sealed_entry
        calls = []

        def fail_second(entry, ledger_dir):
            calls.append(entry.hash)
            if len(calls) == 2:
                raise LedgerError("Failed to append record: disk full")
            original(entry, ledger_dir)

        monkeypatch.setattr(loop_module, "append_sealed_entry", fail_second)
        for _ in range(3):
            _fail_prediction(loop)

        entries = ledger.read_sealed_entries(temp_ledger_dir)
        assert len(calls) == 3
        assert loop.chain.chain_length == 2
        assert [e.hash for e in entries] == [e.hash for e in loop.chain.entries]
        assert verify_chain(entries).valid

        # Training records only for entries that reached the ledger
        training = ledger.read_training_records(temp_ledger_dir)
        assert [r["mutation_id"] for r in training] == [e.payload["id"] for e in entries]

    def test_ledger_failure_raises_from_commit(self, loop, temp_ledger_dir, monkeypatch):
        def fail(entry, ledger_dir):
            raise LedgerError("Failed to append record: disk full")

        monkeypatch.setattr(loop_module, "append_sealed_entry", fail)
        _fail_prediction(loop)
        event = loop.engine.get_mutation_events()[-1]

        with pytest.raises(LedgerError):
            loop.commit_decision(event)
        assert loop.chain.chain_length == 0
        assert ledger.read_training_records(temp_ledger_dir) == []

    def test_resume_after_ledger_failure(self, loop, loop_config, monkeypatch):
        original = loop_module.append_sealed_entry
        failed = []

        def fail_first(entry, ledger_dir):
            if not failed:
                failed.append(entry.hash)
                raise LedgerError("Failed to append record: disk full")
            original(entry, ledger_dir)

        monkeypatch.setattr(loop_module, "append_sealed_entry", fail_first)
        _fail_prediction(loop)
        _fail_prediction(loop)
        loop.stop()

        resumed = FeedbackLoop(loop_config, resume=True)
        assert resumed.chain.chain_length == 1
        assert resumed.chain.head_hash == loop.chain.head_hash

    def test_decisions_share_chain_and_resume(self, loop, loop_config, temp_ledger_dir):
        _fail_prediction(loop)
        decision = loop.record_decision("SPY", {"amount": 500.0}, strategy="rebalance")
        _fail_prediction(loop)

        assert decision.chain_index == 2
        assert loop.chain.verify_chain().valid
        assert len(ledger.read_sealed_entries(temp_ledger_dir)) == 3
        # Decisions are not weight mutations
        assert len(ledger.read_training_records(temp_ledger_dir)) == 2
        loop.stop()

        resumed = FeedbackLoop(loop_config, resume=True)
        assert resumed.journal.get(decision.decision.id).decision.ticker == "SPY"
        assert resumed.journal.verify_integrity().valid
        assert resumed.get_status()["journal"]["decision_count"] == 1

    def test_training_record(self, loop):
        _fail_prediction(loop)
        event = loop.engine.get_mutation_events()[-1]
        record = training_record(event)
        assert record["mutation_id"] == event.id
        assert record["error_magnitude"] == pytest.approx(event.outcome.distance)
        assert record["adjustment_count"] == len(event.adjustments)


class TestLifecycle:
    """Tests for start/stop and status."""

    def test_context_manager(self, loop_config):
        with FeedbackLoop(loop_config) as feedback_loop:
            assert feedback_loop.is_running
            assert feedback_loop.monitor.is_running
        assert not feedback_loop.is_running
        assert not feedback_loop.monitor.is_running

    def test_stopped_loop_does_not_seal(self, loop):
        loop.stop()
        _fail_prediction(loop)
        assert loop.chain.chain_length == 0

    def test_status(self, loop):
        loop.ingest("market.spy", 412.5, "YFINANCE_API", "price_model", "risk_on")
        _fail_prediction(loop)
        status = loop.get_status()
        assert status["running"] is True
        assert status["chain"]["chain_length"] == 1
        assert status["monitor"]["failures"] == 1
        assert status["routing"]["endogenous"]["count"] == 1
