#!/usr/bin/env python3
"""
Tests for logging utilities.
"""

import csv
from unittest.mock import MagicMock, patch

import pytest

from genomic_workflows.utils import (
    setup_logging,
    PipelineLogger,
    PerformanceMonitor,
    log_error,
    log_file_operation,
)


def test_setup_logging_to_file(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    logger = setup_logging(log_level="DEBUG", log_file=log_file, log_format="json")

    logger.info("hello", sample="pbmc")

    assert log_file.exists()
    assert '"sample": "pbmc"' in log_file.read_text()


def test_pipeline_logger_success():
    logger = MagicMock()

    with PipelineLogger(logger, "cluster_cells") as plog:
        plog.add_context(sample="pbmc")
        plog.log_progress("halfway", step=1)

    messages = [c.args[0] for c in logger.info.call_args_list]
    assert messages == ["Starting cluster_cells", "halfway", "Completed cluster_cells"]
    assert logger.info.call_args_list[-1].kwargs["status"] == "success"
    assert logger.info.call_args_list[-1].kwargs["sample"] == "pbmc"


def test_pipeline_logger_failure_propagates():
    logger = MagicMock()

    with pytest.raises(ValueError):
        with PipelineLogger(logger, "count_windows"):
            raise ValueError("bad header")

    kwargs = logger.error.call_args.kwargs
    assert kwargs["status"] == "error"
    assert kwargs["error_type"] == "ValueError"
    assert kwargs["error_message"] == "bad header"


def test_performance_monitor_sections(tmp_path):
    monitor = PerformanceMonitor(MagicMock())

    result = monitor.section("normalize", lambda x, y=0: x + y, 2, y=3)

    assert result == 5
    assert "normalize" in monitor.metrics
    assert monitor.peak_ram_mb > 0

    csv_path = tmp_path / "performance.csv"
    monitor.write_csv(csv_path)
    with open(csv_path) as f:
        rows = list(csv.DictReader(f))
    assert [r["section"] for r in rows] == ["normalize"]


def test_log_resources_warns_on_oversubscription():
    logger = MagicMock()
    monitor = PerformanceMonitor(logger)
    memory = MagicMock(total=8 * 1024 ** 3, available=2 * 1024 ** 3)

    with patch("genomic_workflows.utils.logging.psutil.cpu_count", return_value=4), \
            patch("genomic_workflows.utils.logging.psutil.virtual_memory", return_value=memory):
        assert monitor.log_resources(threads=2) == 4
        logger.warning.assert_not_called()
        assert logger.info.call_args.kwargs["memory_total_gb"] == 8.0

        monitor.log_resources(threads=16)
    assert logger.warning.call_args.kwargs == {"threads": 16, "cpu_count": 4}


def test_stop_unknown_timer():
    monitor = PerformanceMonitor(MagicMock())
    with pytest.raises(ValueError):
        monitor.stop_timer("never_started")


def test_log_helpers(tmp_path):
    logger = MagicMock()
    path = tmp_path / "report.json"
    path.write_text("{}")

    log_file_operation(logger, "written", path, run_id="r1")
    log_error(logger, RuntimeError("boom"), context={"operation": "fetch"})

    assert logger.info.call_args.kwargs["file_path"] == str(path)
    assert logger.info.call_args.kwargs["run_id"] == "r1"
    assert logger.error.call_args.kwargs["error_type"] == "RuntimeError"
    assert logger.error.call_args.kwargs["context"] == {"operation": "fetch"}
