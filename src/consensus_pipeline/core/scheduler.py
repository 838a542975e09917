"""
Per-sample scheduling: chains run concurrently, stages within a chain in order.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from ..exceptions import RetriesExhaustedError, ToolInvocationError
from ..models.results import ChainResult, ChainStatus, RunSummary
from ..utils import PipelineLogger, log_error
from .executor import StageExecutor
from .graph import ChainPlan, PlannedTask
from .publish import OutputOrganizer


class SampleScheduler:
    """
    Drives every sample's chain to a terminal status.

    Each external invocation holds one of ``max_workers`` slots. A chain that
    fails does not affect its siblings, and side-branch (QC) failures never
    fail their chain.
    """

    def __init__(
        self,
        executor: StageExecutor,
        organizer: OutputOrganizer,
        logger: Optional[structlog.BoundLogger] = None,
        max_workers: int = 1,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.executor = executor
        self.organizer = organizer
        self.logger = logger or structlog.get_logger(__name__)
        self.max_workers = max_workers
        self._slots = threading.BoundedSemaphore(max_workers)
        self._stop = threading.Event()

    def request_stop(self) -> None:
        """Stop dispatching new tasks; running tools are left to finish."""
        self.logger.warning("Stop requested, no new tasks will be dispatched")
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def run(self, plans: List[ChainPlan]) -> RunSummary:
        """Run all chains and collect one ChainResult per sample."""
        summary = RunSummary(started_at=datetime.now())
        results: List[ChainResult] = []

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="chain") as chain_pool, \
                ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="side") as side_pool:
            futures = {
                chain_pool.submit(self.run_chain, plan, side_pool): plan
                for plan in plans
            }
            for future in as_completed(futures):
                plan = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    log_error(self.logger, e, context={"sample_id": plan.sample_id, "operation": "chain"})
                    result = ChainResult(
                        sample_id=plan.sample_id,
                        status=ChainStatus.FAILED,
                        error=f"{type(e).__name__}: {e}",
                    )
                results.append(result)
                self.logger.info("Chain finished",
                                 sample_id=result.sample_id,
                                 status=result.status.value,
                                 completed=len(results),
                                 total=len(plans))

        summary.results = sorted(results, key=lambda r: r.sample_id)
        summary.finished_at = datetime.now()
        return summary

    def run_chain(self, plan: ChainPlan, side_pool: Optional[ThreadPoolExecutor] = None) -> ChainResult:
        """
        Run one sample's tasks in plan order.

        Side-branch tasks go to ``side_pool`` once their inputs exist; their
        outcome is recorded but never changes the chain's status.
        """
        if side_pool is None:
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="side") as pool:
                return self.run_chain(plan, pool)

        result = ChainResult(sample_id=plan.sample_id, status=ChainStatus.SUCCEEDED)
        succeeded = set()
        side_futures: Dict[str, Future] = {}

        with PipelineLogger(self.logger, f"chain_{plan.sample_id}") as plog:
            plog.add_context(sample_id=plan.sample_id)

            for planned in plan.tasks:
                if self.stop_requested:
                    result.status = ChainStatus.FAILED
                    result.failed_stage = planned.stage_name
                    result.error = "Run stopped before this stage was dispatched"
                    break

                missing = planned.depends_on - succeeded
                if missing:
                    result.status = ChainStatus.FAILED
                    result.failed_stage = planned.stage_name
                    result.error = f"Predecessors did not succeed: {', '.join(sorted(missing))}"
                    break

                if planned.spec.side_branch:
                    side_futures[planned.stage_name] = side_pool.submit(self._run_side_task, planned, result)
                    continue

                task = planned.new_task_instance()
                result.tasks.append(task)
                try:
                    with self._slots:
                        self.executor.execute(task, planned.spec)
                except RetriesExhaustedError as e:
                    self._mark_failed(result, e)
                    plog.log_progress("Chain failed", failed_stage=e.stage_name, attempts=e.attempts)
                    break

                succeeded.add(planned.stage_name)
                for error in self.organizer.publish(task, planned.spec):
                    result.publish_errors.append(str(error))

            for stage_name, future in side_futures.items():
                self._collect_side_task(stage_name, future, result)

            plog.add_context(chain_status=result.status.value)

        return result

    def _run_side_task(self, planned: PlannedTask, result: ChainResult) -> List[str]:
        task = planned.new_task_instance()
        result.tasks.append(task)
        with self._slots:
            self.executor.execute(task, planned.spec)
        return [str(e) for e in self.organizer.publish(task, planned.spec)]

    def _collect_side_task(self, stage_name: str, future: Future, result: ChainResult) -> None:
        try:
            publish_errors = future.result()
        except Exception as e:
            result.side_branch_failures[stage_name] = str(e)
            self.logger.warning("Side-branch stage failed, chain status unaffected",
                                sample_id=result.sample_id,
                                stage=stage_name,
                                error=str(e))
            return
        result.publish_errors.extend(publish_errors)

    def _mark_failed(self, result: ChainResult, error: RetriesExhaustedError) -> None:
        result.status = ChainStatus.FAILED
        result.failed_stage = error.stage_name
        last = error.last_error
        details = [str(last)]
        if isinstance(last, ToolInvocationError) and last.log_file is not None:
            result.log_file = last.log_file
            details.append(f"log: {last.log_file}")
        result.error = f"{error.attempts} attempt(s); " + " | ".join(details)
        self.logger.error("Chain failed",
                          sample_id=result.sample_id,
                          failed_stage=error.stage_name,
                          attempts=error.attempts,
                          error=str(last))
