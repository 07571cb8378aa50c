"""Tests for YAML config loading"""

from pathlib import Path

import pytest

from core.config import AppConfig, AutoTrainerConfig, TrainingConfig, load_config
from core.exceptions import ConfigError

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config" / "ml.yaml"


def write(tmp_path, text):
    path = tmp_path / "ml.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestDefaults:
    """Documented defaults"""

    def test_training_defaults(self):
        cfg = TrainingConfig()
        assert cfg.min_samples == 100
        assert (cfg.train_split, cfg.validation_split, cfg.test_split) == (0.70, 0.15, 0.15)
        assert cfg.epochs == 100
        assert cfg.batch_size == 32
        assert cfg.early_stopping_patience == 10

    def test_auto_trainer_defaults(self):
        cfg = AutoTrainerConfig()
        assert cfg.min_new_samples == 1000
        assert cfg.min_hours_between_training == 24
        assert (cfg.scheduled_weekday, cfg.scheduled_hour) == (6, 3)
        assert cfg.shadow_min_predictions == 100

    def test_default_rooted_at_dir(self, tmp_path):
        cfg = AppConfig.default(tmp_path)
        assert cfg.storage.db_path == tmp_path / "ml.db"
        assert cfg.registry.models_dir == tmp_path / "models"
        assert cfg.monitoring.events_path.parent == tmp_path / "monitoring"

    def test_empty_file_gives_defaults(self, tmp_path):
        cfg = load_config(write(tmp_path, ""))
        assert cfg.training == TrainingConfig()
        assert cfg.inference.max_batch_size == 100

    def test_shipped_config_loads(self):
        cfg = load_config(REPO_CONFIG)
        assert cfg.auto_trainer == AutoTrainerConfig()
        assert cfg.logging.log_dir == Path("ai_data/logs")


class TestOverrides:
    """Values read from YAML"""

    def test_sections(self, tmp_path):
        path = write(
            tmp_path,
            "training:\n"
            "  epochs: 7\n"
            "  learning_rate: 0.01\n"
            "auto_trainer:\n"
            "  min_new_samples: 5\n"
            "registry:\n"
            f"  models_dir: {tmp_path / 'm'}\n"
            "inference:\n"
            "  cache_ttl_seconds: 60\n",
        )
        cfg = load_config(path)
        assert cfg.training.epochs == 7
        assert cfg.training.learning_rate == pytest.approx(0.01)
        assert cfg.training.batch_size == 32
        assert cfg.auto_trainer.min_new_samples == 5
        assert cfg.registry.models_dir == tmp_path / "m"
        assert cfg.inference.cache_ttl_seconds == 60.0


class TestInvalid:
    """Malformed configs raise ConfigError"""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_bad_yaml(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "training: [unclosed\n"))

    def test_root_not_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "- a\n- b\n"))

    def test_section_not_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "training: 5\n"))

    def test_wrong_type(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "training:\n  epochs: many\n"))

    def test_bool_is_not_int(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "training:\n  epochs: true\n"))

    def test_fraction_out_of_range(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "registry:\n  min_accuracy: 1.5\n"))

    def test_splits_exceed_one(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "training:\n  train_split: 0.9\n  validation_split: 0.2\n"))

    def test_bad_weekday(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(write(tmp_path, "auto_trainer:\n  scheduled_weekday: 7\n"))
