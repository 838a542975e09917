"""
Execution of one task instance with retries and output checks.
"""

import os
import signal
import subprocess
import time
import traceback
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from ..exceptions import (
    RetriesExhaustedError,
    StageError,
    ToolInvocationError,
    ToolOutputError,
)
from ..models.stages import StageSpec, TaskInstance, TaskStatus
from ..utils import log_command


class StageExecutor:
    """
    Runs a task's command and classifies the outcome.

    An attempt succeeds when the command exits 0 and every verified output
    exists and is non-empty. Failed attempts are retried until the stage's
    retry policy is exhausted.
    """

    def __init__(self, logger: Optional[structlog.BoundLogger] = None, stderr_tail_lines: int = 20):
        self.logger = logger or structlog.get_logger(__name__)
        self.stderr_tail_lines = stderr_tail_lines

    def execute(self, task: TaskInstance, spec: StageSpec) -> TaskInstance:
        """
        Run a task to a terminal status.

        Returns:
            The task, Succeeded

        Raises:
            RetriesExhaustedError: If every attempt failed; the task is Failed
        """
        policy = spec.retry_policy
        task.work_dir.mkdir(parents=True, exist_ok=True)
        log = self.logger.bind(stage=spec.name, sample_id=task.sample_id)

        for attempt in range(1, policy.max_attempts + 1):
            task.transition(TaskStatus.RUNNING)
            task.attempt_count = attempt
            try:
                self._run_attempt(task, spec, attempt)
                self._check_outputs(task, spec)
            except StageError as e:
                task.last_error = str(e)
                log.warning("Stage attempt failed",
                            attempt=attempt,
                            max_attempts=policy.max_attempts,
                            error_type=type(e).__name__,
                            error=str(e))
                if attempt < policy.max_attempts:
                    task.transition(TaskStatus.RETRYING)
                    if policy.backoff_seconds:
                        time.sleep(policy.backoff_seconds)
                    continue
                task.transition(TaskStatus.FAILED)
                raise RetriesExhaustedError(spec.name, task.sample_id, attempt, e) from e

            task.transition(TaskStatus.SUCCEEDED)
            task.last_error = None
            log.info("Stage completed", attempts=attempt)
            return task

    def attempt_log_paths(self, task: TaskInstance, attempt: int) -> Tuple[Path, Path]:
        log_dir = task.work_dir / "logs"
        base = f"{task.stage_name}.attempt{attempt}"
        return log_dir / f"{base}.stdout", log_dir / f"{base}.stderr"

    def _run_attempt(self, task: TaskInstance, spec: StageSpec, attempt: int) -> None:
        self._remove_stale_outputs(task)
        stdout_path, stderr_path = self.attempt_log_paths(task, attempt)
        stdout_path.parent.mkdir(parents=True, exist_ok=True)
        task.log_files.extend([stdout_path, stderr_path])

        if spec.function is not None:
            self._run_function(task, spec, stdout_path, stderr_path)
            return

        command = spec.render_command(
            task.sample_id,
            task.resolved_input_paths,
            task.resolved_output_paths,
        )
        log_command(self.logger, command, stage=spec.name, sample_id=task.sample_id, attempt=attempt)

        # Own session, so a timeout can kill every process of the pipeline
        with open(stdout_path, "w") as out, open(stderr_path, "w") as err:
            process = subprocess.Popen(
                ["bash", "-c", f"set -o pipefail\n{command}"],
                cwd=task.work_dir,
                stdout=out,
                stderr=err,
                start_new_session=True,
            )
            try:
                returncode = process.wait(timeout=spec.retry_policy.timeout_seconds)
            except subprocess.TimeoutExpired:
                self._kill_process_group(process)
                returncode = None

        if returncode is None:
            raise ToolInvocationError(
                spec.name,
                task.sample_id,
                returncode=None,
                stderr_tail=self._stderr_tail(stderr_path),
                timed_out=True,
                log_file=stderr_path,
            )

        if returncode != 0:
            raise ToolInvocationError(
                spec.name,
                task.sample_id,
                returncode=returncode,
                stderr_tail=self._stderr_tail(stderr_path),
                log_file=stderr_path,
            )

    def _kill_process_group(self, process: subprocess.Popen) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        process.wait()

    def _run_function(self, task: TaskInstance, spec: StageSpec, stdout_path: Path, stderr_path: Path) -> None:
        try:
            result = spec.function(
                task.sample_id,
                task.resolved_input_paths,
                task.resolved_output_paths,
            )
        except Exception as e:
            stdout_path.write_text("")
            stderr_path.write_text(traceback.format_exc())
            raise ToolInvocationError(
                spec.name,
                task.sample_id,
                returncode=None,
                stderr_tail=f"{type(e).__name__}: {e}",
                log_file=stderr_path,
            ) from e
        stdout_path.write_text(f"{result}\n" if result is not None else "")
        stderr_path.write_text("")

    def _check_outputs(self, task: TaskInstance, spec: StageSpec) -> None:
        bad_outputs: List[Path] = []
        for slot, path in task.resolved_output_paths.items():
            declared = spec.declared_outputs.get(slot)
            if declared is not None and not declared.verify:
                continue
            if not path.is_file() or path.stat().st_size == 0:
                bad_outputs.append(path)
        if bad_outputs:
            raise ToolOutputError(spec.name, task.sample_id, bad_outputs)

    def _remove_stale_outputs(self, task: TaskInstance) -> None:
        for path in task.resolved_output_paths.values():
            if path.is_file() or path.is_symlink():
                path.unlink()

    def _stderr_tail(self, stderr_path: Path) -> str:
        if not stderr_path.exists():
            return ""
        lines = stderr_path.read_text(errors="replace").splitlines()
        return "\n".join(lines[-self.stderr_tail_lines:])
