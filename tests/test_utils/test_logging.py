"""
Tests for portfolio_scorer/utils/logging.py.

What we test
------------
  - correlation_scope() sets and restores the current correlation id.
  - JSON lines written to the log file carry the scope's correlation id
    and any extra= fields.
  - Text lines outside a scope show "-" as the correlation id.
"""

from __future__ import annotations

import json
import logging

import pytest

from portfolio_scorer.config import LoggingConfig
from portfolio_scorer.utils.logging import (
    configure_logging,
    correlation_scope,
    current_correlation_id,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)


class TestCorrelationScope:
    def test_default_is_dash(self):
        assert current_correlation_id() == "-"

    def test_scope_sets_and_restores(self):
        with correlation_scope("job-1"):
            assert current_correlation_id() == "job-1"
            with correlation_scope("job-2"):
                assert current_correlation_id() == "job-2"
            assert current_correlation_id() == "job-1"
        assert current_correlation_id() == "-"


class TestConfigureLogging:
    def test_json_lines_carry_correlation_id(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "scorer.log"
        configure_logging(LoggingConfig(level="INFO", log_file=str(log_file), json_format=True))

        with correlation_scope("run-abc"):
            logging.getLogger("portfolio_scorer.test").info(
                "scored %d users", 3, extra={"job_run_id": 7}
            )
        for handler in logging.getLogger().handlers:
            handler.flush()

        line = log_file.read_text(encoding="utf-8").strip().splitlines()[-1]
        record = json.loads(line)
        assert record["msg"] == "scored 3 users"
        assert record["correlation_id"] == "run-abc"
        assert record["job_run_id"] == 7
        assert record["level"] == "INFO"

    def test_text_format_outside_scope(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "scorer.log"
        configure_logging(LoggingConfig(level="DEBUG", log_file=str(log_file)))

        logging.getLogger("portfolio_scorer.test").debug("hello")
        for handler in logging.getLogger().handlers:
            handler.flush()

        text = log_file.read_text(encoding="utf-8")
        assert "[DEBUG] portfolio_scorer.test (-): hello" in text

    def test_noisy_loggers_quietened(self, tmp_path, restore_root_logger):
        configure_logging(LoggingConfig(level="DEBUG", log_file=""))
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("redis").level == logging.WARNING
