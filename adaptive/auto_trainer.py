"""Auto Trainer

Decides when to retrain, runs the training pipeline and manages shadow
deployment of challengers.

Rules:
- Only one training job at a time; a concurrent request fails fast
- A new model never replaces production directly once production exists:
  it must win the comparison, clear the deploy gate and survive shadow mode
- Training failures never touch the serving path
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import numpy as np

from adaptive.jobs import JobSlot, JobStatus, TrainingJob, TrainingTrigger
from adaptive.outcomes import OutcomeEvent, label_outcome
from core.config import AutoTrainerConfig, TrainingConfig
from core.exceptions import DataInsufficientError, MLPipelineError, TrainingConflictError, TransientPersistenceError
from core.sample_model import LabeledSample
from features.token_features import FeatureExtractor
from model_registry.registry import ARM_CHALLENGER, ARM_CHAMPION, ModelVersionRegistry
from monitoring.data_quality import DataQualityChecker
from monitoring.drift_monitor import URGENCY_NONE, DistributionMonitor
from monitoring.events import (
    EVENT_SHADOW_DISCARDED,
    EVENT_SHADOW_PROMOTED,
    EVENT_SHADOW_STARTED,
    EVENT_TRAINING_COMPLETED,
    EVENT_TRAINING_FAILED,
    EventLog,
)
from storage.audit_repo import AuditRepo
from storage.sample_repo import SampleRepo
from training.evaluator import WINNER_CHALLENGER, ModelComparison, ModelEvaluator, predicts_positive
from training.trainer import ModelTrainer, TrainingResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerDecision:
    should_train: bool
    trigger: Optional[TrainingTrigger]
    reason: str

    def to_dict(self) -> dict:
        return {
            "should_train": self.should_train,
            "trigger": self.trigger.value if self.trigger else None,
            "reason": self.reason,
        }


@dataclass
class ShadowPrediction:
    token_id: str
    probability: float
    production_probability: Optional[float] = None
    actual: Optional[int] = None


@dataclass
class ShadowState:
    version: str
    started_at: datetime
    predictions: dict[str, ShadowPrediction] = field(default_factory=dict)

    @property
    def resolved(self) -> list[ShadowPrediction]:
        return [p for p in self.predictions.values() if p.actual is not None]


@dataclass(frozen=True)
class ShadowEvaluation:
    promoted: bool
    reason: str
    version: Optional[str] = None
    accuracy: Optional[float] = None
    predictions_with_outcome: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AutoTrainer:
    """Orchestrates the retraining and promotion lifecycle.

    Owns TrainingJob history and shadow state. Collaborators are injected
    so tests can drive clock and randomness.
    """

    def __init__(
        self,
        config: AutoTrainerConfig,
        training_config: TrainingConfig,
        sample_repo: SampleRepo,
        registry: ModelVersionRegistry,
        trainer: Optional[ModelTrainer] = None,
        evaluator: Optional[ModelEvaluator] = None,
        audit_repo: Optional[AuditRepo] = None,
        quality_checker: Optional[DataQualityChecker] = None,
        drift_monitor: Optional[DistributionMonitor] = None,
        extractor: Optional[FeatureExtractor] = None,
        events: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config
        self.training_config = training_config
        self.sample_repo = sample_repo
        self.registry = registry
        self.evaluator = evaluator or ModelEvaluator()
        self.trainer = trainer or ModelTrainer(training_config, self.evaluator)
        self.audit_repo = audit_repo
        self.quality_checker = quality_checker or DataQualityChecker()
        self.drift_monitor = drift_monitor
        self.extractor = extractor or FeatureExtractor()
        self.events = events

        self._clock = clock or _utc_now
        self._rng = rng if rng is not None else np.random.default_rng(training_config.seed)

        self._slot = JobSlot()
        self._lock = threading.Lock()
        self._jobs: list[TrainingJob] = []
        self._last_training_at: Optional[datetime] = None
        self._new_samples = 0
        self._shadow: Optional[ShadowState] = None
        self._model_listeners: list[Callable[[str], None]] = []

        self._restore_state()

    def _restore_state(self) -> None:
        if self.audit_repo is not None:
            for run in self.audit_repo.recent_training_runs(limit=50):
                if run.get("status") == JobStatus.COMPLETED.value and run.get("completed_at"):
                    self._last_training_at = datetime.fromisoformat(run["completed_at"])
                    break

        if self._last_training_at is not None:
            self._new_samples = self.sample_repo.count_since(self._last_training_at.isoformat())
        else:
            self._new_samples = self.sample_repo.count()

        challenger = self.registry.get_challenger_version()
        ab = self.registry.ab_test
        if challenger is not None and ab is not None and ab.challenger_version == challenger.version:
            self._shadow = ShadowState(challenger.version, datetime.fromisoformat(ab.started_at))

    # Listeners

    def add_model_listener(self, listener: Callable[[str], None]) -> None:
        """Called with the affected version whenever production or shadow changes."""
        self._model_listeners.append(listener)

    def _notify_model_change(self, version: str) -> None:
        for listener in self._model_listeners:
            listener(version)

    # Properties

    @property
    def is_training(self) -> bool:
        return self._slot.busy

    @property
    def new_samples(self) -> int:
        return self._new_samples

    @property
    def last_training_at(self) -> Optional[datetime]:
        return self._last_training_at

    @property
    def shadow(self) -> Optional[ShadowState]:
        return self._shadow

    # Outcome ingestion

    def ingest_outcome(self, event: OutcomeEvent) -> LabeledSample:
        """Label and persist an outcome. Called in arrival order."""
        sample = label_outcome(event, self.extractor, now=self._clock())
        self.sample_repo.save(sample)

        resolved: Optional[ShadowPrediction] = None
        with self._lock:
            self._new_samples += 1
            shadow = self._shadow
            pred = shadow.predictions.get(sample.token_id) if shadow else None
            if pred is not None and pred.actual is None:
                pred.actual = sample.target
                resolved = pred

        if resolved is not None:
            self.registry.record_outcome(ARM_CHALLENGER, self._is_correct(resolved.probability, resolved.actual))
            if resolved.production_probability is not None:
                self.registry.record_outcome(
                    ARM_CHAMPION, self._is_correct(resolved.production_probability, resolved.actual)
                )
        return sample

    def _is_correct(self, probability: float, actual: int) -> bool:
        return bool(predicts_positive(probability, self.training_config.threshold)) == bool(actual)

    def record_shadow_prediction(
        self,
        token_id: str,
        probability: float,
        production_probability: Optional[float] = None,
    ) -> bool:
        """Record a challenger prediction on live traffic. False when no shadow.

        production_probability is the champion's score for the same request;
        it feeds the champion arm of the A/B stats once the outcome arrives.
        """
        with self._lock:
            if self._shadow is None or not token_id:
                return False
            self._shadow.predictions.setdefault(
                token_id,
                ShadowPrediction(
                    token_id=token_id,
                    probability=float(probability),
                    production_probability=(
                        float(production_probability) if production_probability is not None else None
                    ),
                ),
            )
            return True

    # Trigger policy

    def _hours_since_last(self, now: datetime) -> Optional[float]:
        if self._last_training_at is None:
            return None
        return (now - self._last_training_at).total_seconds() / 3600.0

    def should_trigger_training(self, now: Optional[datetime] = None) -> TriggerDecision:
        now = now or self._clock()
        cfg = self.config

        if self._slot.busy:
            return TriggerDecision(False, None, "Training already in progress")

        hours = self._hours_since_last(now)
        if hours is not None and hours < cfg.min_hours_between_training:
            return TriggerDecision(False, None, f"Only {hours:.1f}h since last training")

        if (
            now.weekday() == cfg.scheduled_weekday
            and now.hour == cfg.scheduled_hour
            and (hours is None or hours >= cfg.scheduled_min_hours_since_last)
        ):
            return TriggerDecision(True, TrainingTrigger.SCHEDULED, "Scheduled weekly retraining")

        if self._new_samples >= cfg.min_new_samples:
            return TriggerDecision(
                True, TrainingTrigger.AUTO, f"{self._new_samples} new samples since last training"
            )

        if self.drift_monitor is not None:
            report = self.drift_monitor.check_drift()
            if report.retraining_recommended and report.urgency != URGENCY_NONE:
                return TriggerDecision(
                    True, TrainingTrigger.DEGRADATION, f"Distribution drift ({report.urgency})"
                )

        return TriggerDecision(False, None, "No trigger condition met")

    async def check_and_train(self) -> Optional[TrainingJob]:
        # the drift check reads storage
        decision = await asyncio.to_thread(self.should_trigger_training)
        if not decision.should_train:
            logger.debug("No training triggered: %s", decision.reason)
            return None
        logger.info("Training triggered (%s): %s", decision.trigger.value, decision.reason)
        try:
            return await self.train(decision.trigger)
        except TrainingConflictError:
            logger.info("Training trigger lost the race to a concurrent job")
            return None

    # Training pipeline

    async def train(
        self,
        trigger: TrainingTrigger = TrainingTrigger.MANUAL,
        hyperparams: Optional[dict] = None,
    ) -> TrainingJob:
        """Run one training job to completion.

        Raises:
            TrainingConflictError: another job holds the slot; the rejected
                job is recorded as failed.
        """
        job = TrainingJob.new(trigger, created_at=self._clock().isoformat())
        if not self._slot.try_acquire(job.id):
            job.fail("Training already in progress", at=self._clock().isoformat())
            self._remember(job)
            logger.warning("Rejected %s training request: already training", trigger.value)
            await asyncio.to_thread(self._audit_job, job)
            raise TrainingConflictError("Training already in progress")

        try:
            job.transition(JobStatus.RUNNING, at=self._clock().isoformat())
            logger.info("Training job %s started (trigger=%s)", job.id, trigger.value)
            await asyncio.to_thread(self._run_pipeline, job, hyperparams or {})
        finally:
            self._slot.release(job.id)
            self._remember(job)
            await asyncio.to_thread(self._record_finished, job)

        return job

    def _record_finished(self, job: TrainingJob) -> None:
        self._audit_job(job)
        self._emit(
            EVENT_TRAINING_COMPLETED if job.status is JobStatus.COMPLETED else EVENT_TRAINING_FAILED,
            job.resulting_version,
            job_id=job.id,
            trigger=job.trigger.value,
            deployed=job.deployed,
            error=job.error,
        )

    async def run_periodic_checks(self) -> tuple[ShadowEvaluation, Optional[TrainingJob]]:
        """One scheduler tick: settle the shadow model, then check triggers."""
        evaluation = await asyncio.to_thread(self.evaluate_shadow)
        job = await self.check_and_train()
        return evaluation, job

    async def run_scheduler(self, interval_seconds: float) -> None:
        """Run periodic checks until cancelled. A failing tick is logged and the loop continues."""
        logger.info("ML scheduler started (every %.0fs)", interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.run_periodic_checks()
            except MLPipelineError as e:
                logger.warning("Periodic ML check failed: %s", e)
            except Exception:  # noqa: BLE001
                logger.exception("Periodic ML check failed")

    def _training_config(self, overrides: dict) -> TrainingConfig:
        mapping = {
            "epochs": "epochs",
            "batch_size": "batch_size",
            "min_samples": "min_samples",
            "learning_rate": "learning_rate",
        }
        changes = {mapping[k]: v for k, v in overrides.items() if k in mapping and v is not None}
        return dataclasses.replace(self.training_config, **changes)

    def _run_pipeline(self, job: TrainingJob, overrides: dict) -> None:
        try:
            cfg = self._training_config(overrides)
            samples = self.sample_repo.recent(self.config.max_training_samples)
            if len(samples) < cfg.min_samples:
                raise DataInsufficientError(f"Insufficient training data: {len(samples)} < {cfg.min_samples}")

            quality = self.quality_checker.check_quality(samples)
            if quality.score < self.config.min_quality_score:
                raise DataInsufficientError(
                    f"Data quality score {quality.score:.1f} below {self.config.min_quality_score:.1f}"
                )

            result = self.trainer.train(samples, cfg, rng=self._rng)
            self._fill_job(job, result)
            if self.drift_monitor is not None:
                self.drift_monitor.calculate_baselines([s.feature_vector for s in samples])

            version = self.registry.register_version(
                metrics=result.metrics.to_dict(),
                samples_used=result.samples_used,
                classifier=result.classifier,
            )
            job.resulting_version = version.version

            job.deployed = self._deploy_decision(version.version, result)
            self._after_success()
            job.transition(JobStatus.COMPLETED, at=self._clock().isoformat())
            logger.info(
                "Training job %s completed: version=%s accuracy=%.4f deployed=%s",
                job.id,
                version.version,
                result.metrics.accuracy,
                job.deployed,
            )
        except MLPipelineError as e:
            job.fail(str(e), at=self._clock().isoformat())
            logger.warning("Training job %s failed: %s", job.id, e)
        except Exception as e:  # noqa: BLE001
            job.fail(f"{type(e).__name__}: {e}", at=self._clock().isoformat())
            logger.exception("Training job %s failed", job.id)

    @staticmethod
    def _fill_job(job: TrainingJob, result: TrainingResult) -> None:
        train_size, val_size, test_size = result.split.sizes
        job.samples_used = result.samples_used
        job.train_size = train_size
        job.validation_size = val_size
        job.test_size = test_size
        job.training_time_ms = result.training_time_ms
        job.metrics = {
            **result.metrics.to_dict(),
            "train_loss": result.train_loss,
            "validation_loss": result.validation_loss,
            "epochs_run": result.epochs_run,
        }

    def _deploy_decision(self, version: str, result: TrainingResult) -> bool:
        production = self.registry.get_production_version()
        if production is None:
            ok, reason = self.registry.should_promote(result.metrics.to_dict())
            if ok:
                self.registry.activate_version(version)
                self._notify_model_change(version)
                logger.info("No production model, promoted %s directly", version)
                return True
            logger.info("No production model but %s is not promotable: %s", version, reason)
            return False

        production_model = self.registry.load_classifier(production.version)
        try:
            comparison = self.evaluator.compare_models(
                production_model.predict,
                result.classifier.predict,
                result.split.test_x,
                result.split.test_y.astype(int).tolist(),
                production_version=production.version,
                challenger_version=version,
                threshold=self.training_config.threshold,
            )
        finally:
            production_model.dispose()
        self._audit_comparison(comparison)

        ok, reason = self.should_deploy(comparison)
        if not ok:
            logger.info("Version %s kept but not deployed: %s", version, reason)
            return False

        self._start_shadow(version)
        return True

    def should_deploy(self, comparison: ModelComparison) -> tuple[bool, str]:
        cfg = self.config
        ok, reason = self.registry.should_promote(comparison.challenger_metrics.to_dict())
        if not ok:
            return False, reason
        if (
            comparison.accuracy_delta < cfg.min_improvement_for_deploy
            and comparison.f1_delta < cfg.min_improvement_for_deploy
        ):
            return False, "Improvement below deploy threshold"
        if comparison.p_value > cfg.max_p_value_for_deploy:
            return False, f"Not significant (p={comparison.p_value:.4f})"
        if comparison.winner != WINNER_CHALLENGER:
            return False, f"Comparison winner is {comparison.winner}"
        return True, "Challenger cleared deploy gate"

    def _start_shadow(self, version: str) -> None:
        if self._shadow is not None:
            logger.info("Replacing shadow model %s with %s", self._shadow.version, version)
            self.registry.stop_ab_test(promote=False)

        ok, reason = self.registry.start_ab_test(version, traffic_split=0.0)
        if not ok:
            raise MLPipelineError(f"Could not start shadow mode for {version}: {reason}")
        with self._lock:
            self._shadow = ShadowState(version=version, started_at=self._clock())
        logger.info("Version %s entered shadow mode", version)
        self._emit(EVENT_SHADOW_STARTED, version)
        self._notify_model_change(version)

    def _after_success(self) -> None:
        with self._lock:
            self._new_samples = 0
            self._last_training_at = self._clock()
        self.registry.cleanup_old_versions()

    def _remember(self, job: TrainingJob) -> None:
        with self._lock:
            self._jobs.append(job)
            overflow = len(self._jobs) - max(self.config.job_history_size, 1) * 10
            if overflow > 0:
                del self._jobs[:overflow]

    def _emit(self, kind: str, version: Optional[str], **payload) -> None:
        if self.events is not None:
            self.events.append(kind, payload, version=version)

    def _audit_job(self, job: TrainingJob) -> None:
        if self.audit_repo is None:
            return
        try:
            self.audit_repo.save_training_run(job.to_dict())
        except TransientPersistenceError as e:
            logger.warning("Could not record training run %s: %s", job.id, e)

    def _audit_comparison(self, comparison: ModelComparison) -> None:
        if self.audit_repo is None:
            return
        try:
            self.audit_repo.save_comparison(comparison.to_dict())
        except TransientPersistenceError as e:
            logger.warning("Could not record model comparison: %s", e)

    # Shadow evaluation

    def evaluate_shadow(self, now: Optional[datetime] = None) -> ShadowEvaluation:
        """Promote or discard the shadow model once it has enough evidence."""
        now = now or self._clock()
        with self._lock:
            shadow = self._shadow
            if shadow is None:
                return ShadowEvaluation(False, "No shadow model")

            elapsed_h = (now - shadow.started_at).total_seconds() / 3600.0
            resolved = shadow.resolved
            if elapsed_h < self.config.shadow_duration_hours:
                return ShadowEvaluation(
                    False,
                    f"Shadow period still active ({elapsed_h:.1f}h of {self.config.shadow_duration_hours:.0f}h)",
                    version=shadow.version,
                    predictions_with_outcome=len(resolved),
                )
            if len(resolved) < self.config.shadow_min_predictions:
                return ShadowEvaluation(
                    False,
                    f"Insufficient shadow predictions ({len(resolved)}/{self.config.shadow_min_predictions})",
                    version=shadow.version,
                    predictions_with_outcome=len(resolved),
                )

            correct = sum(1 for p in resolved if self._is_correct(p.probability, p.actual))
            accuracy = correct / len(resolved)
            self._shadow = None

        if accuracy >= self.registry.config.min_accuracy:
            self.registry.stop_ab_test(promote=True)
            self._notify_model_change(shadow.version)
            logger.info("Shadow %s promoted to production (accuracy %.4f)", shadow.version, accuracy)
            self._emit(EVENT_SHADOW_PROMOTED, shadow.version, accuracy=accuracy, outcomes=len(resolved))
            return ShadowEvaluation(True, "Promoted", shadow.version, accuracy, len(resolved))

        self.registry.stop_ab_test(promote=False)
        self._notify_model_change(shadow.version)
        logger.info("Shadow %s discarded (accuracy %.4f)", shadow.version, accuracy)
        self._emit(EVENT_SHADOW_DISCARDED, shadow.version, accuracy=accuracy, outcomes=len(resolved))
        return ShadowEvaluation(False, "Shadow accuracy below deploy floor", shadow.version, accuracy, len(resolved))

    # Status

    def get_recent_jobs(self, limit: int = 10) -> list[TrainingJob]:
        with self._lock:
            return list(reversed(self._jobs[-limit:]))

    def get_status(self) -> dict:
        production = self.registry.get_production_version()
        shadow = self._shadow
        return {
            "is_training": self._slot.busy,
            "current_job_id": self._slot.current,
            "production_version": production.version if production else None,
            "shadow_version": shadow.version if shadow else None,
            "shadow_started_at": shadow.started_at.isoformat() if shadow else None,
            "shadow_predictions": len(shadow.predictions) if shadow else 0,
            "shadow_outcomes": len(shadow.resolved) if shadow else 0,
            "last_training_at": self._last_training_at.isoformat() if self._last_training_at else None,
            "new_samples": self._new_samples,
            "ab_test": self.registry.get_ab_test_stats(),
            "recent_jobs": [j.to_dict() for j in self.get_recent_jobs(self.config.job_history_size)],
        }
