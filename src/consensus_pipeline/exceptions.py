"""
Exception classes for the Viral Consensus Pipeline.
"""

from pathlib import Path
from typing import List, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""
    pass


class ConfigurationError(PipelineError):
    """Raised for invalid or incomplete configuration, before any stage runs."""
    pass


class DiscoveryError(PipelineError):
    """Raised when the input directory does not yield a valid set of samples."""
    pass


class StageError(PipelineError):
    """Base class for per-task errors that the executor retries."""

    def __init__(self, message: str, stage_name: str, sample_id: str):
        super().__init__(message)
        self.stage_name = stage_name
        self.sample_id = sample_id


class ToolInvocationError(StageError):
    """Raised when an external tool exits non-zero or times out."""

    def __init__(
        self,
        stage_name: str,
        sample_id: str,
        returncode: Optional[int],
        stderr_tail: str = "",
        timed_out: bool = False,
        log_file: Optional[Path] = None,
    ):
        if timed_out:
            message = f"Stage {stage_name} timed out for sample {sample_id}"
        else:
            message = (
                f"Stage {stage_name} failed for sample {sample_id} "
                f"with exit code {returncode}"
            )
        if stderr_tail:
            message += f": {stderr_tail}"
        super().__init__(message, stage_name, sample_id)
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        self.timed_out = timed_out
        self.log_file = log_file


class ToolOutputError(StageError):
    """Raised when a tool exits 0 but a declared output is missing or empty."""

    def __init__(self, stage_name: str, sample_id: str, bad_outputs: List[Path]):
        listing = ", ".join(str(p) for p in bad_outputs)
        super().__init__(
            f"Stage {stage_name} produced missing or empty outputs "
            f"for sample {sample_id}: {listing}",
            stage_name,
            sample_id,
        )
        self.bad_outputs = bad_outputs


class RetriesExhaustedError(PipelineError):
    """Raised when a task has failed on every allowed attempt."""

    def __init__(self, stage_name: str, sample_id: str, attempts: int, last_error: StageError):
        super().__init__(
            f"Stage {stage_name} failed for sample {sample_id} "
            f"after {attempts} attempts: {last_error}"
        )
        self.stage_name = stage_name
        self.sample_id = sample_id
        self.attempts = attempts
        self.last_error = last_error


class PublishError(PipelineError):
    """Raised when an output artifact cannot be copied to the output root."""

    def __init__(self, source: Path, destination: Path, reason: str):
        super().__init__(f"Could not publish {source} to {destination}: {reason}")
        self.source = source
        self.destination = destination
        self.reason = reason
