#!/usr/bin/env python3
"""
Tests for logging utilities.
"""

import json
import logging

import pytest
import structlog
import structlog.testing

from consensus_pipeline.utils.logging import (
    PerformanceMonitor,
    PipelineLogger,
    default_worker_count,
    setup_logging,
)


@pytest.fixture(autouse=True)
def reset_handlers():
    yield
    logging.getLogger().handlers.clear()


def test_setup_logging_writes_json_lines(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    logger = setup_logging(log_level="DEBUG", log_file=log_file)

    logger.info("Stage started", stage_name="align", sample_id="s1")
    logging.getLogger().handlers[0].flush()

    record = json.loads(log_file.read_text().splitlines()[-1])
    assert record["event"] == "Stage started"
    assert record["stage_name"] == "align"
    assert record["level"] == "info"


def test_pipeline_logger_reraises(logger):
    with pytest.raises(RuntimeError):
        with PipelineLogger(logger, "run_chain") as pipeline_logger:
            pipeline_logger.add_context(sample_id="s1")
            raise RuntimeError("boom")


def test_performance_monitor(logger):
    monitor = PerformanceMonitor(logger)

    monitor.start_timer("run_chains")
    duration = monitor.stop_timer("run_chains")

    assert duration >= 0
    assert monitor.get_summary() == {"run_chains": duration}
    with pytest.raises(ValueError, match="was not started"):
        monitor.stop_timer("run_chains")


def test_default_worker_count():
    assert default_worker_count() >= 1


def test_pipeline_logger_context_does_not_clash_with_its_own_keys():
    with structlog.testing.capture_logs() as logs:
        with PipelineLogger(structlog.get_logger(), "chain_s1") as pipeline_logger:
            pipeline_logger.add_context(status="succeeded", operation="other", sample_id="s1")
            pipeline_logger.log_progress("Chain halfway", status="running")

    assert [entry["event"] for entry in logs] == ["Starting chain_s1", "Chain halfway", "Completed chain_s1"]
    assert logs[1]["operation"] == "chain_s1"
    assert logs[-1]["status"] == "success"
    assert logs[-1]["operation"] == "chain_s1"
    assert logs[-1]["sample_id"] == "s1"
