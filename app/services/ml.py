"""Wires the ML subsystem for the HTTP layer.

One MLServices instance per application; it owns the registry, the
orchestrator and the inference server. Built from a YAML config when
ML_CONFIG_PATH is set, otherwise from defaults rooted at DATA_DIR.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from adaptive.auto_trainer import AutoTrainer
from core.config import AppConfig, load_config
from core.logger import setup_app_logger
from features.token_features import FeatureExtractor
from inference.backends import RegistryRugBackend
from inference.fallbacks import ModelKind
from inference.server import InferenceServer
from model_registry.registry import ModelVersionRegistry
from monitoring.data_quality import DataQualityChecker
from monitoring.drift_monitor import DistributionMonitor
from monitoring.events import EventLog
from storage.audit_repo import AuditRepo
from storage.sample_repo import SampleRepo
from training.evaluator import ModelEvaluator
from training.trainer import ModelTrainer

logger = logging.getLogger(__name__)


@dataclass
class MLServices:
    config: AppConfig
    sample_repo: SampleRepo
    audit_repo: AuditRepo
    registry: ModelVersionRegistry
    auto_trainer: AutoTrainer
    inference: InferenceServer
    rug_backend: RegistryRugBackend
    events: EventLog


def build_services(config: AppConfig) -> MLServices:
    sample_repo = SampleRepo(config.storage.db_path)
    audit_repo = AuditRepo(config.storage.db_path)
    registry = ModelVersionRegistry(config.registry)
    extractor = FeatureExtractor()
    evaluator = ModelEvaluator()
    events = EventLog(config.monitoring.events_path)

    auto_trainer = AutoTrainer(
        config=config.auto_trainer,
        training_config=config.training,
        sample_repo=sample_repo,
        registry=registry,
        trainer=ModelTrainer(config.training, evaluator),
        evaluator=evaluator,
        audit_repo=audit_repo,
        quality_checker=DataQualityChecker(config.monitoring, sample_source=sample_repo.recent),
        drift_monitor=DistributionMonitor(
            config.monitoring,
            sample_source=sample_repo.feature_rows,
            events=events,
        ),
        extractor=extractor,
        events=events,
    )

    rug_backend = RegistryRugBackend(
        registry,
        extractor=extractor,
        shadow_recorder=auto_trainer.record_shadow_prediction,
    )
    auto_trainer.add_model_listener(rug_backend.on_model_change)

    inference = InferenceServer(config.inference)
    inference.register_backend(ModelKind.RUG_PREDICTION, rug_backend)

    return MLServices(
        config=config,
        sample_repo=sample_repo,
        audit_repo=audit_repo,
        registry=registry,
        auto_trainer=auto_trainer,
        inference=inference,
        rug_backend=rug_backend,
        events=events,
    )


def services_from_settings(config_path: Optional[str], data_dir: str) -> MLServices:
    if config_path:
        config = load_config(config_path)
    else:
        config = AppConfig.default(Path(data_dir))
    setup_app_logger(config.logging)
    logger.info("Building ML services (config=%s, data_dir=%s)", config_path or "defaults", data_dir)
    return build_services(config)
