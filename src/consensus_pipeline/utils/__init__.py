"""
Utility modules for the Viral Consensus Pipeline.
"""

from .logging import (
    setup_logging,
    PipelineLogger,
    PerformanceMonitor,
    default_worker_count,
    log_command,
    log_file_operation,
    log_error,
)

__all__ = [
    "setup_logging",
    "PipelineLogger",
    "PerformanceMonitor",
    "default_worker_count",
    "log_command",
    "log_file_operation",
    "log_error",
]
