"""
Logging utilities for genomic workflows.
"""


from pathlib import Path
from structlog.stdlib import LoggerFactory
from typing import Any, Callable, Dict, List, Optional

import csv
import logging
import psutil
import structlog
import sys
import time


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    log_format: str = "json"
) -> structlog.BoundLogger:
    """
    Set up structured logging for the workflows.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        log_format: Log format ("json" or "console")

    Returns:
        Configured logger instance
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, mode="w")
    else:
        handler = logging.StreamHandler(sys.stdout)

    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    return structlog.get_logger("genomic_workflows")


class PipelineLogger:
    """Context manager for workflow step logging with timing."""

    def __init__(self, logger: structlog.BoundLogger, operation: str):
        """
        Initialize the step logger.

        Args:
            logger: Structured logger instance
            operation: Name of the operation being logged
        """
        self.logger = logger
        self.operation = operation
        self.start_time = None
        self.context: Dict[str, Any] = {}

    def __enter__(self):
        """Enter the logging context."""
        self.start_time = time.time()
        self.logger.info(
            f"Starting {self.operation}",
            operation=self.operation,
            **self.context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the logging context."""
        duration = time.time() - self.start_time

        if exc_type is None:
            self.logger.info(
                f"Completed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                status="success",
                **self.context
            )
        else:
            self.logger.error(
                f"Failed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                **self.context
            )

    def add_context(self, **kwargs):
        """Add context information to the logger."""
        self.context.update(kwargs)
        return self

    def log_progress(self, message: str, **kwargs):
        """Log progress information."""
        self.logger.info(
            message,
            operation=self.operation,
            **{**self.context, **kwargs}
        )


class PerformanceMonitor:
    """Time workflow sections and track peak memory."""

    def __init__(self, logger: structlog.BoundLogger):
        """
        Initialize the performance monitor.

        Args:
            logger: Structured logger instance
        """
        self.logger = logger
        self.metrics: Dict[str, float] = {}
        self.start_times: Dict[str, float] = {}
        self.sections: List[Dict[str, Any]] = []
        self.peak_ram_mb = 0.0

    def start_timer(self, name: str):
        """Start a timer for a named operation."""
        self.start_times[name] = time.time()

    def stop_timer(self, name: str) -> float:
        """Stop a timer and return the duration."""
        if name not in self.start_times:
            raise ValueError(f"Timer '{name}' was not started")

        duration = time.time() - self.start_times[name]
        self.metrics[name] = duration

        self.logger.info(
            f"Operation '{name}' completed",
            operation=name,
            duration_seconds=duration
        )

        del self.start_times[name]
        return duration

    def _current_ram_mb(self) -> float:
        return psutil.Process().memory_info().rss / 1024 / 1024

    def log_resources(self, threads: int) -> int:
        """
        Log the host's CPUs and memory against the requested threads.

        Returns:
            Number of CPUs available
        """
        cpu_count = psutil.cpu_count() or 1
        memory = psutil.virtual_memory()
        self.logger.info(
            "Host resources",
            cpu_count=cpu_count,
            threads=threads,
            memory_total_gb=round(memory.total / 1024 ** 3, 2),
            memory_available_gb=round(memory.available / 1024 ** 3, 2),
        )
        if threads > cpu_count:
            self.logger.warning("More threads requested than CPUs available",
                                threads=threads, cpu_count=cpu_count)
        return cpu_count

    def section(self, name: str, func: Callable, *args, **kwargs):
        """Run a workflow section, recording its duration and memory footprint."""
        self.start_timer(name)
        result = func(*args, **kwargs)
        duration = self.stop_timer(name)

        ram_mb = self._current_ram_mb()
        self.peak_ram_mb = max(self.peak_ram_mb, ram_mb)
        self.sections.append({
            "section": name,
            "duration_seconds": duration,
            "proc_ram_mb": ram_mb,
        })
        return result

    def report_peaks(self):
        self.logger.info(
            "Peak resource usage",
            peak_ram_mb=self.peak_ram_mb,
        )

    def write_csv(self, csv_path: Path):
        """Write recorded sections to a CSV file."""
        csv_path.parent.mkdir(parents=True, exist_ok=True)
        with open(csv_path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=["section", "duration_seconds", "proc_ram_mb"])
            writer.writeheader()
            writer.writerows(self.sections)


def log_file_operation(logger: structlog.BoundLogger, operation: str, file_path: Path, **kwargs):
    """Log a file operation."""
    logger.info(
        f"File {operation}",
        operation=operation,
        file_path=str(file_path),
        file_size_mb=file_path.stat().st_size / 1024 / 1024 if file_path.exists() else 0,
        **kwargs
    )


def log_error(logger: structlog.BoundLogger, error: Exception, context: Optional[Dict[str, Any]] = None):
    """Log an error with context."""
    logger.error(
        "Workflow error",
        error_type=type(error).__name__,
        error_message=str(error),
        context=context or {}
    )
