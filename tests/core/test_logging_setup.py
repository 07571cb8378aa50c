"""Tests for logger setup"""

import json
import logging
from logging.handlers import RotatingFileHandler

from core import logger as app_logger
from core.config import LoggingConfig


class TestAppLogger:
    """Console plus rotating file handlers"""

    def test_console_only_without_log_dir(self):
        handlers = app_logger._build_handlers(LoggingConfig())
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)

    def test_file_handlers(self, tmp_path):
        handlers = app_logger._build_handlers(LoggingConfig(log_dir=tmp_path / "logs"))
        try:
            assert len(handlers) == 3
            assert sum(isinstance(h, RotatingFileHandler) for h in handlers) == 2
            assert (tmp_path / "logs").is_dir()
        finally:
            for h in handlers:
                h.close()

    def test_json_file_optional(self, tmp_path):
        handlers = app_logger._build_handlers(
            LoggingConfig(log_dir=tmp_path, enable_json_file_log=False)
        )
        try:
            assert len(handlers) == 2
        finally:
            for h in handlers:
                h.close()

    def test_json_formatter(self):
        record = logging.LogRecord("adaptive", logging.WARNING, __file__, 1, "job %s failed", ("j1",), None)
        payload = json.loads(app_logger._JsonFormatter().format(record))
        assert payload["level"] == "WARNING"
        assert payload["logger"] == "adaptive"
        assert payload["msg"] == "job j1 failed"

    def test_setup_app_logger(self, tmp_path, monkeypatch):
        names = ("ml_pipeline_test_root",)
        monkeypatch.setattr(app_logger, "ROOT_LOGGER_NAMES", names)
        configured = app_logger.setup_app_logger(
            LoggingConfig(log_level="DEBUG", log_dir=tmp_path, enable_json_file_log=True)
        )
        log = logging.getLogger(names[0])
        try:
            assert configured == [log]
            assert log.level == logging.DEBUG
            assert log.propagate is False

            logging.getLogger("ml_pipeline_test_root.child").info("trained v2")
            for h in log.handlers:
                h.flush()
            assert "trained v2" in (tmp_path / "ml.log").read_text(encoding="utf-8")
            line = (tmp_path / "ml.json.log").read_text(encoding="utf-8").strip().splitlines()[-1]
            assert json.loads(line)["msg"] == "trained v2"
        finally:
            for h in list(log.handlers):
                h.close()
                log.removeHandler(h)
