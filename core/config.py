from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from core.exceptions import ConfigError


@dataclass(frozen=True)
class LoggingConfig:
    env: str = "dev"
    log_level: str = "INFO"
    log_dir: Optional[Path] = None
    log_file: str = "ml.log"
    json_log_file: str = "ml.json.log"
    console_log_format: str = "text"
    enable_json_file_log: bool = True


@dataclass(frozen=True)
class TrainingConfig:
    min_samples: int = 100
    train_split: float = 0.70
    validation_split: float = 0.15
    test_split: float = 0.15
    epochs: int = 100
    batch_size: int = 32
    learning_rate: float = 0.001
    early_stopping_patience: int = 10
    threshold: float = 0.5
    seed: int = 42


@dataclass(frozen=True)
class AutoTrainerConfig:
    min_new_samples: int = 1000
    min_hours_between_training: float = 24.0
    scheduled_weekday: int = 6  # Monday=0, Sunday=6
    scheduled_hour: int = 3
    scheduled_min_hours_since_last: float = 144.0
    min_improvement_for_deploy: float = 0.05
    max_p_value_for_deploy: float = 0.05
    shadow_duration_hours: float = 24.0
    shadow_min_predictions: int = 100
    min_quality_score: float = 50.0
    max_training_samples: int = 50000
    job_history_size: int = 10


@dataclass(frozen=True)
class RegistryConfig:
    models_dir: Path = Path("ai_data") / "models"
    models_to_keep: int = 5
    min_accuracy: float = 0.65
    min_f1: float = 0.60
    default_traffic_split: float = 0.1


@dataclass(frozen=True)
class InferenceConfig:
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 10000
    max_inference_time_ms: float = 500.0
    max_batch_size: int = 100
    explain_top_n: int = 10


@dataclass(frozen=True)
class MonitoringConfig:
    drift_low: float = 0.1
    drift_medium: float = 0.25
    drift_high: float = 0.4
    drift_critical: float = 0.6
    drift_min_samples: int = 100
    drift_bins: int = 10
    quality_outlier_z: float = 3.0
    quality_imbalance_ratio: float = 5.0
    events_path: Path = Path("ai_data") / "monitoring" / "events.jsonl"


@dataclass(frozen=True)
class StorageConfig:
    db_path: Path = Path("ai_data") / "ml.db"


@dataclass(frozen=True)
class AppConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    auto_trainer: AutoTrainerConfig = field(default_factory=AutoTrainerConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def default(cls, base_dir: Optional[Path] = None) -> AppConfig:
        """All-defaults config, optionally rooted at base_dir."""
        if base_dir is None:
            return cls()
        base = Path(base_dir)
        return cls(
            registry=RegistryConfig(models_dir=base / "models"),
            monitoring=MonitoringConfig(events_path=base / "monitoring" / "events.jsonl"),
            storage=StorageConfig(db_path=base / "ml.db"),
        )


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    val = raw.get(key)
    if val is None:
        return {}
    if not isinstance(val, dict):
        raise ConfigError(f"Config section '{key}' must be a mapping")
    return val


def _get_str(obj: dict[str, Any], key: str, default: str) -> str:
    val = obj.get(key, default)
    if val is None:
        return default
    if not isinstance(val, str):
        raise ConfigError(f"Invalid config value (expected string): {key}")
    return val


def _get_bool(obj: dict[str, Any], key: str, default: bool) -> bool:
    val = obj.get(key, default)
    if isinstance(val, bool):
        return val
    if val is None:
        return default
    raise ConfigError(f"Invalid config value (expected bool): {key}")


def _get_int(obj: dict[str, Any], key: str, default: int) -> int:
    val = obj.get(key, default)
    if val is None:
        return default
    if isinstance(val, bool) or not isinstance(val, int):
        raise ConfigError(f"Invalid config value (expected int): {key}")
    return val


def _get_float(obj: dict[str, Any], key: str, default: float) -> float:
    val = obj.get(key, default)
    if val is None:
        return default
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise ConfigError(f"Invalid config value (expected number): {key}")
    return float(val)


def _get_path(obj: dict[str, Any], key: str, default: Optional[Path]) -> Optional[Path]:
    val = obj.get(key)
    if val is None:
        return default
    if not isinstance(val, str) or not val.strip():
        raise ConfigError(f"Invalid config value (expected path): {key}")
    return Path(val).expanduser()


def _get_fraction(obj: dict[str, Any], key: str, default: float) -> float:
    val = _get_float(obj, key, default)
    if not 0.0 <= val <= 1.0:
        raise ConfigError(f"Config value must be within [0, 1]: {key}")
    return val


def _parse_training(sec: dict[str, Any]) -> TrainingConfig:
    d = TrainingConfig()
    cfg = TrainingConfig(
        min_samples=_get_int(sec, "min_samples", d.min_samples),
        train_split=_get_fraction(sec, "train_split", d.train_split),
        validation_split=_get_fraction(sec, "validation_split", d.validation_split),
        test_split=_get_fraction(sec, "test_split", d.test_split),
        epochs=_get_int(sec, "epochs", d.epochs),
        batch_size=_get_int(sec, "batch_size", d.batch_size),
        learning_rate=_get_float(sec, "learning_rate", d.learning_rate),
        early_stopping_patience=_get_int(sec, "early_stopping_patience", d.early_stopping_patience),
        threshold=_get_fraction(sec, "threshold", d.threshold),
        seed=_get_int(sec, "seed", d.seed),
    )
    if cfg.train_split + cfg.validation_split > 1.0:
        raise ConfigError("train_split + validation_split must not exceed 1")
    return cfg


def _parse_auto_trainer(sec: dict[str, Any]) -> AutoTrainerConfig:
    d = AutoTrainerConfig()
    cfg = AutoTrainerConfig(
        min_new_samples=_get_int(sec, "min_new_samples", d.min_new_samples),
        min_hours_between_training=_get_float(sec, "min_hours_between_training", d.min_hours_between_training),
        scheduled_weekday=_get_int(sec, "scheduled_weekday", d.scheduled_weekday),
        scheduled_hour=_get_int(sec, "scheduled_hour", d.scheduled_hour),
        scheduled_min_hours_since_last=_get_float(
            sec, "scheduled_min_hours_since_last", d.scheduled_min_hours_since_last
        ),
        min_improvement_for_deploy=_get_float(sec, "min_improvement_for_deploy", d.min_improvement_for_deploy),
        max_p_value_for_deploy=_get_fraction(sec, "max_p_value_for_deploy", d.max_p_value_for_deploy),
        shadow_duration_hours=_get_float(sec, "shadow_duration_hours", d.shadow_duration_hours),
        shadow_min_predictions=_get_int(sec, "shadow_min_predictions", d.shadow_min_predictions),
        min_quality_score=_get_float(sec, "min_quality_score", d.min_quality_score),
        max_training_samples=_get_int(sec, "max_training_samples", d.max_training_samples),
        job_history_size=_get_int(sec, "job_history_size", d.job_history_size),
    )
    if not 0 <= cfg.scheduled_weekday <= 6:
        raise ConfigError("scheduled_weekday must be within 0..6")
    if not 0 <= cfg.scheduled_hour <= 23:
        raise ConfigError("scheduled_hour must be within 0..23")
    return cfg


def load_config(config_path: str | Path) -> AppConfig:
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    import yaml

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config: {path}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a YAML mapping")

    app = _section(raw, "app")
    ld = LoggingConfig()
    logging_cfg = LoggingConfig(
        env=_get_str(app, "env", ld.env),
        log_level=_get_str(app, "log_level", ld.log_level),
        log_dir=_get_path(app, "log_dir", ld.log_dir),
        log_file=_get_str(app, "log_file", ld.log_file),
        json_log_file=_get_str(app, "json_log_file", ld.json_log_file),
        console_log_format=_get_str(app, "console_log_format", ld.console_log_format),
        enable_json_file_log=_get_bool(app, "enable_json_file_log", ld.enable_json_file_log),
    )

    reg = _section(raw, "registry")
    rd = RegistryConfig()
    registry_cfg = RegistryConfig(
        models_dir=_get_path(reg, "models_dir", rd.models_dir),
        models_to_keep=_get_int(reg, "models_to_keep", rd.models_to_keep),
        min_accuracy=_get_fraction(reg, "min_accuracy", rd.min_accuracy),
        min_f1=_get_fraction(reg, "min_f1", rd.min_f1),
        default_traffic_split=_get_fraction(reg, "default_traffic_split", rd.default_traffic_split),
    )

    inf = _section(raw, "inference")
    idf = InferenceConfig()
    inference_cfg = InferenceConfig(
        cache_ttl_seconds=_get_float(inf, "cache_ttl_seconds", idf.cache_ttl_seconds),
        cache_max_entries=_get_int(inf, "cache_max_entries", idf.cache_max_entries),
        max_inference_time_ms=_get_float(inf, "max_inference_time_ms", idf.max_inference_time_ms),
        max_batch_size=_get_int(inf, "max_batch_size", idf.max_batch_size),
        explain_top_n=_get_int(inf, "explain_top_n", idf.explain_top_n),
    )

    mon = _section(raw, "monitoring")
    md = MonitoringConfig()
    monitoring_cfg = MonitoringConfig(
        drift_low=_get_float(mon, "drift_low", md.drift_low),
        drift_medium=_get_float(mon, "drift_medium", md.drift_medium),
        drift_high=_get_float(mon, "drift_high", md.drift_high),
        drift_critical=_get_float(mon, "drift_critical", md.drift_critical),
        drift_min_samples=_get_int(mon, "drift_min_samples", md.drift_min_samples),
        drift_bins=_get_int(mon, "drift_bins", md.drift_bins),
        quality_outlier_z=_get_float(mon, "quality_outlier_z", md.quality_outlier_z),
        quality_imbalance_ratio=_get_float(mon, "quality_imbalance_ratio", md.quality_imbalance_ratio),
        events_path=_get_path(mon, "events_path", md.events_path),
    )

    sto = _section(raw, "storage")
    storage_cfg = StorageConfig(db_path=_get_path(sto, "db_path", StorageConfig().db_path))

    return AppConfig(
        logging=logging_cfg,
        training=_parse_training(_section(raw, "training")),
        auto_trainer=_parse_auto_trainer(_section(raw, "auto_trainer")),
        registry=registry_cfg,
        inference=inference_cfg,
        monitoring=monitoring_cfg,
        storage=storage_cfg,
    )
