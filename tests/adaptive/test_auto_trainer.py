"""Tests for AutoTrainer: triggers, the training pipeline and shadow mode"""

import asyncio
import random
import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import numpy as np
import pytest

from adaptive.auto_trainer import AutoTrainer
from adaptive.jobs import JobStatus, TrainingTrigger
from adaptive.outcomes import OutcomeEvent
from core.config import AutoTrainerConfig, RegistryConfig, TrainingConfig
from core.exceptions import TrainingConflictError
from core.sample_model import LabeledSample, LabelSource, OutcomeLabel
from features.token_features import FEATURE_COUNT
from model_registry.registry import ModelVersionRegistry
from monitoring.events import EVENT_SHADOW_PROMOTED, EVENT_SHADOW_STARTED, EVENT_TRAINING_FAILED, EventLog
from storage.audit_repo import AuditRepo
from storage.sample_repo import SampleRepo
from training.evaluator import ModelEvaluator

# Monday
START = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)
GOOD = {"accuracy": 0.8, "f1_score": 0.75}


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def separable_samples(n_stable=100, n_rug=50, seed=7):
    """Rugs have high feature values, stable tokens low ones."""
    rnd = random.Random(seed)
    samples = []
    labels = [OutcomeLabel.STABLE] * n_stable + [OutcomeLabel.RUG] * n_rug
    for i, label in enumerate(labels):
        lo, hi = (0.8, 1.0) if label is OutcomeLabel.RUG else (0.0, 0.2)
        ts = (START - timedelta(days=10) + timedelta(minutes=i)).isoformat()
        samples.append(
            LabeledSample(
                token_id=f"tok{i}",
                feature_vector=tuple(rnd.uniform(lo, hi) for _ in range(FEATURE_COUNT)),
                outcome_label=label,
                label_confidence=1.0,
                label_source=LabelSource.AUTO,
                discovered_at=ts,
                labeled_at=ts,
            )
        )
    return samples


def outcome(token_id, kind="rug", value=0.9):
    return OutcomeEvent(
        token_id=token_id,
        outcome_kind=kind,
        feature_vector=tuple(value for _ in range(FEATURE_COUNT)),
    )


def make_trainer(tmp_path, clock, samples=(), training=None, **overrides):
    db = tmp_path / "ml.db"
    repo = SampleRepo(db)
    repo.save_many(samples)
    registry = ModelVersionRegistry(
        RegistryConfig(models_dir=tmp_path / "models"), clock=clock, rng=random.Random(0)
    )
    return AutoTrainer(
        AutoTrainerConfig(**overrides),
        training or TrainingConfig(epochs=30),
        repo,
        registry,
        audit_repo=AuditRepo(db),
        clock=clock,
        rng=np.random.default_rng(0),
    )


class TestTriggerPolicy:
    """should_trigger_training"""

    def test_first_run_with_enough_samples(self, tmp_path):
        clock = FakeClock()
        at = make_trainer(tmp_path, clock, separable_samples(), min_new_samples=100)
        assert at.new_samples == 150
        decision = at.should_trigger_training()
        assert decision.should_train
        assert decision.trigger is TrainingTrigger.AUTO

    def test_nothing_to_do(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        decision = at.should_trigger_training()
        assert not decision.should_train
        assert decision.trigger is None

    def test_scheduled_window(self, tmp_path):
        sunday_3am = datetime(2024, 3, 10, 3, 15, tzinfo=timezone.utc)
        at = make_trainer(tmp_path, FakeClock(sunday_3am))
        decision = at.should_trigger_training()
        assert decision.should_train
        assert decision.trigger is TrainingTrigger.SCHEDULED

    def test_min_interval_then_sample_count(self, tmp_path):
        """A fresh job blocks triggers until the interval passes"""
        clock = FakeClock()
        at = make_trainer(tmp_path, clock, separable_samples(), min_new_samples=5)
        job = asyncio.run(at.train(hyperparams={"epochs": 5}))
        assert job.status is JobStatus.COMPLETED
        assert at.new_samples == 0
        assert at.last_training_at == START

        for i in range(5):
            at.ingest_outcome(outcome(f"new{i}"))
        assert at.new_samples == 5
        assert not at.should_trigger_training().should_train

        clock.advance(hours=25)
        decision = at.should_trigger_training()
        assert decision.should_train
        assert decision.trigger is TrainingTrigger.AUTO

    def test_interval_alone_is_not_a_trigger(self, tmp_path):
        clock = FakeClock()
        at = make_trainer(tmp_path, clock, separable_samples(), min_new_samples=5)
        asyncio.run(at.train(hyperparams={"epochs": 5}))
        clock.advance(hours=25)
        assert not at.should_trigger_training().should_train

    def test_check_and_train_skips_without_trigger(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        assert asyncio.run(at.check_and_train()) is None
        assert at.get_recent_jobs() == []


class TestTrainingPipeline:
    """train()"""

    def test_completed_job(self, tmp_path):
        clock = FakeClock()
        at = make_trainer(tmp_path, clock, separable_samples())
        job = asyncio.run(at.train(hyperparams={"epochs": 5}))

        assert job.status is JobStatus.COMPLETED
        assert job.trigger is TrainingTrigger.MANUAL
        assert job.samples_used == 150
        assert job.train_size + job.validation_size + job.test_size == 150
        assert job.metrics["epochs_run"] <= 5
        assert job.training_time_ms > 0

        version = at.registry.get_version(job.resulting_version)
        assert version is not None
        assert version.samples_used == 150

    def test_random_features(self, tmp_path, sample_factory):
        """Unlearnable data still yields a completed job and a registered version"""
        at = make_trainer(tmp_path, FakeClock(), sample_factory(100, 50))
        job = asyncio.run(at.train(hyperparams={"epochs": 5}))
        assert job.status is JobStatus.COMPLETED
        assert at.registry.get_version(job.resulting_version).samples_used == 150
        assert job.train_size + job.validation_size + job.test_size == 150

    def test_first_model_goes_straight_to_production(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock(), separable_samples())
        changes = []
        at.add_model_listener(changes.append)
        job = asyncio.run(at.train())

        assert job.metrics["accuracy"] >= 0.65
        assert job.deployed
        assert at.registry.get_production_version().version == job.resulting_version
        assert changes == [job.resulting_version]

    def test_second_model_is_compared_not_swapped(self, tmp_path):
        clock = FakeClock()
        at = make_trainer(tmp_path, clock, separable_samples())
        first = asyncio.run(at.train())
        clock.advance(hours=1)
        second = asyncio.run(at.train())

        assert second.status is JobStatus.COMPLETED
        assert second.resulting_version != first.resulting_version
        assert at.registry.get_production_version().version == first.resulting_version
        assert len(at.audit_repo.recent_comparisons()) == 1

    def test_insufficient_data(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock(), separable_samples(30, 20))
        job = asyncio.run(at.train())
        assert job.status is JobStatus.FAILED
        assert "Insufficient training data" in job.error
        assert at.registry.list_versions() == []
        assert not at.is_training

    def test_min_samples_override(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock(), separable_samples(30, 20))
        job = asyncio.run(at.train(hyperparams={"min_samples": 40, "epochs": 3}))
        assert job.status is JobStatus.COMPLETED
        assert job.samples_used == 50

    def test_quality_gate(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock(), separable_samples(), min_quality_score=101)
        job = asyncio.run(at.train())
        assert job.status is JobStatus.FAILED
        assert "quality" in job.error

    def test_concurrent_request_is_rejected(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock(), separable_samples())

        async def run_two():
            return await asyncio.gather(
                at.train(hyperparams={"epochs": 3}),
                at.train(hyperparams={"epochs": 3}),
                return_exceptions=True,
            )

        first, second = asyncio.run(run_two())
        assert first.status is JobStatus.COMPLETED
        assert isinstance(second, TrainingConflictError)

        statuses = sorted(j.status.value for j in at.get_recent_jobs())
        assert statuses == ["completed", "failed"]
        assert not at.is_training

    def test_conflict_while_slot_held(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock(), separable_samples())
        at._slot.try_acquire("job_external")
        with pytest.raises(TrainingConflictError):
            asyncio.run(at.train())
        rejected = at.get_recent_jobs()[0]
        assert rejected.status is JobStatus.FAILED
        assert rejected.started_at is None
        assert at.audit_repo.recent_training_runs()[0]["status"] == "failed"

    def test_state_restored_from_audit(self, tmp_path):
        clock = FakeClock()
        at = make_trainer(tmp_path, clock, separable_samples())
        asyncio.run(at.train(hyperparams={"epochs": 3}))
        clock.advance(minutes=5)
        at.ingest_outcome(outcome("late"))

        restored = make_trainer(tmp_path, clock)
        assert restored.last_training_at == START
        assert restored.new_samples == 1


class TestDeployGate:
    """should_deploy"""

    def compare(self, prod_preds, chal_preds, labels):
        return ModelEvaluator().compare_predictions("a", "b", prod_preds, chal_preds, labels)

    def test_clear_winner_deploys(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        labels = [0, 1] * 50
        comparison = self.compare([1 - y for y in labels[:60]] + labels[60:], labels, labels)
        ok, reason = at.should_deploy(comparison)
        assert ok, reason

    def test_tie_is_not_deployed(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        labels = [0, 1] * 50
        ok, reason = at.should_deploy(self.compare(labels, labels, labels))
        assert not ok
        assert "Improvement" in reason

    def test_weak_challenger_is_not_deployed(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        labels = [0, 1] * 50
        bad = [0] * 100
        ok, reason = at.should_deploy(self.compare(bad, bad, labels))
        assert not ok
        assert "Accuracy" in reason


class TestShadowMode:
    """Shadow predictions and evaluate_shadow"""

    def setup_shadow(self, tmp_path, clock, **overrides):
        overrides.setdefault("shadow_min_predictions", 3)
        overrides.setdefault("shadow_duration_hours", 24)
        at = make_trainer(tmp_path, clock, **overrides)
        prod = at.registry.register_version(GOOD, 10).version
        at.registry.activate_version(prod)
        clock.advance(seconds=1)
        chal = at.registry.register_version(GOOD, 10).version
        ok, _ = at.registry.start_ab_test(chal, traffic_split=0.0)
        assert ok
        # restore picks the running shadow up from the registry
        at = AutoTrainer(
            at.config,
            at.training_config,
            at.sample_repo,
            at.registry,
            audit_repo=at.audit_repo,
            clock=clock,
        )
        assert at.shadow is not None
        return at, prod, chal

    def feed(self, at, n, correct=True):
        for i in range(n):
            at.record_shadow_prediction(f"s{i}", 0.9 if correct else 0.1)
            at.ingest_outcome(outcome(f"s{i}", kind="rug"))

    def test_no_shadow(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        result = at.evaluate_shadow()
        assert not result.promoted
        assert result.reason == "No shadow model"
        assert not at.record_shadow_prediction("tok", 0.7)

    def test_waits_for_duration(self, tmp_path):
        clock = FakeClock()
        at, prod, chal = self.setup_shadow(tmp_path, clock)
        self.feed(at, 5)
        clock.advance(hours=2)
        result = at.evaluate_shadow()
        assert not result.promoted
        assert "still active" in result.reason
        assert at.shadow is not None

    def test_waits_for_enough_outcomes(self, tmp_path):
        clock = FakeClock()
        at, prod, chal = self.setup_shadow(tmp_path, clock)
        self.feed(at, 2)
        clock.advance(hours=25)
        result = at.evaluate_shadow()
        assert not result.promoted
        assert result.predictions_with_outcome == 2
        assert "Insufficient" in result.reason

    def test_promotes_accurate_shadow(self, tmp_path):
        clock = FakeClock()
        at, prod, chal = self.setup_shadow(tmp_path, clock)
        changes = []
        at.add_model_listener(changes.append)
        self.feed(at, 4)
        assert at.registry.get_ab_test_stats()["challenger"]["outcomes"] == 4

        clock.advance(hours=25)
        result = at.evaluate_shadow()
        assert result.promoted
        assert result.accuracy == pytest.approx(1.0)
        assert at.registry.get_production_version().version == chal
        assert at.shadow is None
        assert changes == [chal]

    def test_discards_inaccurate_shadow(self, tmp_path):
        clock = FakeClock()
        at, prod, chal = self.setup_shadow(tmp_path, clock)
        self.feed(at, 4, correct=False)
        clock.advance(hours=25)
        result = at.evaluate_shadow()
        assert not result.promoted
        assert result.accuracy == pytest.approx(0.0)
        assert at.registry.get_production_version().version == prod
        assert at.registry.ab_test is None
        assert at.shadow is None

    def test_outcome_resolves_once(self, tmp_path):
        clock = FakeClock()
        at, _, _ = self.setup_shadow(tmp_path, clock)
        at.record_shadow_prediction("dup", 0.9)
        at.ingest_outcome(outcome("dup", kind="rug"))
        at.ingest_outcome(outcome("dup", kind="stable"))
        assert len(at.shadow.resolved) == 1
        assert at.shadow.predictions["dup"].actual == 1


class TestStatus:
    """get_status"""

    def test_status_fields(self, tmp_path):
        clock = FakeClock()
        at = make_trainer(tmp_path, clock, separable_samples(30, 20))
        asyncio.run(at.train())
        status = at.get_status()
        assert status["is_training"] is False
        assert status["current_job_id"] is None
        assert status["production_version"] is None
        assert status["shadow_version"] is None
        assert status["new_samples"] == 50
        assert len(status["recent_jobs"]) == 1
        assert status["recent_jobs"][0]["status"] == "failed"

    def test_recent_jobs_newest_first(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        first = asyncio.run(at.train())
        second = asyncio.run(at.train())
        assert [j.id for j in at.get_recent_jobs()] == [second.id, first.id]


class TestLifecycleEvents:
    """Events written to the pipeline log"""

    def test_training_and_shadow_events(self, tmp_path):
        clock = FakeClock()
        events = EventLog(tmp_path / "events.jsonl")
        at = make_trainer(tmp_path, clock, separable_samples(30, 20), shadow_min_predictions=1)
        at.events = events
        asyncio.run(at.train())
        failed = events.recent(kind=EVENT_TRAINING_FAILED)
        assert len(failed) == 1
        assert failed[0]["version"] is None

        prod = at.registry.register_version(GOOD, 10).version
        at.registry.activate_version(prod)
        clock.advance(seconds=1)
        chal = at.registry.register_version(GOOD, 10).version
        at._start_shadow(chal)
        at.record_shadow_prediction("e1", 0.9)
        at.ingest_outcome(outcome("e1"))
        clock.advance(hours=25)
        at.evaluate_shadow()

        kinds = [e["kind"] for e in events.recent()]
        assert kinds == [EVENT_TRAINING_FAILED, EVENT_SHADOW_STARTED, EVENT_SHADOW_PROMOTED]
        assert events.recent(kind=EVENT_SHADOW_PROMOTED)[0]["version"] == chal


class TestArmsAndThreshold:
    """Champion outcomes and the shared classification threshold"""

    def start_shadow(self, tmp_path, clock, training=None):
        at = make_trainer(tmp_path, clock, training=training)
        prod = at.registry.register_version(GOOD, 10).version
        at.registry.activate_version(prod)
        clock.advance(seconds=1)
        chal = at.registry.register_version(GOOD, 10).version
        at._start_shadow(chal)
        return at

    def test_champion_outcomes_recorded(self, tmp_path):
        at = self.start_shadow(tmp_path, FakeClock())
        at.record_shadow_prediction("a", 0.9, production_probability=0.2)
        at.ingest_outcome(outcome("a", kind="rug"))
        stats = at.get_status()["ab_test"]
        assert stats["challenger"]["correct"] == 1
        assert stats["champion"]["outcomes"] == 1
        assert stats["champion"]["correct"] == 0

    def test_status_without_ab_test(self, tmp_path):
        assert make_trainer(tmp_path, FakeClock()).get_status()["ab_test"] is None

    def test_boundary_probability_is_positive(self, tmp_path):
        """A score equal to the threshold predicts the positive class"""
        at = self.start_shadow(tmp_path, FakeClock())
        at.record_shadow_prediction("edge", 0.5, production_probability=0.5)
        at.ingest_outcome(outcome("edge", kind="rug"))
        stats = at.registry.get_ab_test_stats()
        assert stats["challenger"]["correct"] == 1
        assert stats["champion"]["correct"] == 1

    def test_configured_threshold(self, tmp_path):
        clock = FakeClock()
        at = self.start_shadow(tmp_path, clock, training=TrainingConfig(epochs=30, threshold=0.6))
        at.record_shadow_prediction("mid", 0.55)
        at.ingest_outcome(outcome("mid", kind="stable"))
        assert at.registry.get_ab_test_stats()["challenger"]["correct"] == 1


class ThreadRecordingDrift:
    """Drift monitor stand-in that notes which thread checked it"""

    def __init__(self):
        self.threads = []

    def check_drift(self):
        self.threads.append(threading.get_ident())
        return SimpleNamespace(retraining_recommended=False, urgency="none")


class ThreadRecordingAudit(AuditRepo):
    def __init__(self, db_path):
        super().__init__(db_path)
        self.threads = []

    def save_training_run(self, run):
        self.threads.append(threading.get_ident())
        return super().save_training_run(run)


class TestEventLoopIsolation:
    """Storage work runs in worker threads, not on the event loop"""

    def test_trigger_check_off_loop(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        drift = ThreadRecordingDrift()
        at.drift_monitor = drift

        async def run():
            await at.check_and_train()
            return threading.get_ident()

        loop_thread = asyncio.run(run())
        assert len(drift.threads) == 1
        assert drift.threads[0] != loop_thread

    def test_job_audit_off_loop(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock(), separable_samples(30, 20))
        at.audit_repo = ThreadRecordingAudit(tmp_path / "ml.db")

        async def run():
            await at.train()
            return threading.get_ident()

        loop_thread = asyncio.run(run())
        assert len(at.audit_repo.threads) == 1
        assert at.audit_repo.threads[0] != loop_thread

    def test_periodic_checks(self, tmp_path):
        at = make_trainer(tmp_path, FakeClock())
        evaluation, job = asyncio.run(at.run_periodic_checks())
        assert evaluation.reason == "No shadow model"
        assert job is None
