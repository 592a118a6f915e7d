"""
Utility modules for genomic workflows.
"""

from .logging import (
    setup_logging,
    PipelineLogger,
    PerformanceMonitor,
    log_file_operation,
    log_error,
)

__all__ = [
    "setup_logging",
    "PipelineLogger",
    "PerformanceMonitor",
    "log_file_operation",
    "log_error",
]
