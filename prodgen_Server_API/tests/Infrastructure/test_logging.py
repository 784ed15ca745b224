"""
Tests for the loguru setup and logging context helpers.
"""

import json
import logging
import sys

import pytest
from loguru import logger

from prodgen_Server_API.app.core.Logging.log_context import log_context, new_request_id
from prodgen_Server_API.app.core.Logging.log_setup import setup_logging

pytestmark = pytest.mark.unit


@pytest.fixture
def captured():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    messages = []
    yield messages
    logger.remove()
    logger.add(sys.stderr)
    root.handlers = saved_handlers
    root.setLevel(saved_level)


class TestLogSetup:
    def test_text_format_carries_context(self, captured):
        setup_logging("DEBUG", sink=captured.append)
        with log_context(job_id="job-1", stage="scrape", queue=None):
            logger.info("stage started")

        line = captured[-1]
        assert "stage started" in line
        assert "job=job-1" in line
        assert "stage=scrape" in line
        assert "queue= " in line

    def test_json_logs(self, captured):
        setup_logging("INFO", json_logs=True, sink=captured.append)
        with log_context(request_id="req-9"):
            logger.info("hello")

        record = json.loads(captured[-1])["record"]
        assert record["message"] == "hello"
        assert record["extra"]["request_id"] == "req-9"

    def test_level_filter(self, captured):
        setup_logging("WARNING", sink=captured.append)
        logger.info("quiet")
        logger.warning("loud")
        assert len(captured) == 1
        assert "loud" in captured[0]

    def test_stdlib_records_are_intercepted(self, captured):
        setup_logging("INFO", sink=captured.append)
        logging.getLogger("apscheduler").warning("scheduler says hi")
        assert any("scheduler says hi" in m for m in captured)


class TestLogContext:
    def test_bound_logger_and_nesting(self, captured):
        setup_logging("INFO", sink=captured.append)
        with log_context(request_id="outer") as log:
            with log_context(job_id="inner"):
                log.info("nested")
        assert "req=outer" in captured[-1]
        assert "job=inner" in captured[-1]

    def test_request_ids_are_unique(self):
        assert new_request_id() != new_request_id()
        assert len(new_request_id()) == 32
