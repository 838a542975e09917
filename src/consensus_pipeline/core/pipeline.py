"""
Main pipeline class for the Viral Consensus Pipeline.
"""

from typing import Any, Dict, List, Optional

import structlog

from ..config.settings import PipelineConfig
from ..exceptions import ConfigurationError
from ..models.results import RunSummary
from ..utils import PerformanceMonitor, PipelineLogger
from .discovery import discover_samples
from .executor import StageExecutor
from .graph import ChainPlan, build_plan
from .publish import OutputOrganizer
from .references import ensure_fasta_index
from .scheduler import SampleScheduler
from .stages import build_stage_specs


class Pipeline:
    """Discovers samples, plans their chains and runs them to completion."""

    def __init__(self, config: PipelineConfig, logger: structlog.BoundLogger):
        """
        Initialize the pipeline.

        Args:
            config: Pipeline configuration
            logger: Structured logger instance
        """
        self.config = config
        self.logger = logger
        self.monitor: PerformanceMonitor = PerformanceMonitor(logger)

        self.executor = StageExecutor(logger)
        self.organizer = OutputOrganizer(config.output_dir, logger)
        self.scheduler = SampleScheduler(
            self.executor,
            self.organizer,
            logger,
            max_workers=config.max_workers,
        )

    def validate(self, check_tools: bool = True) -> None:
        """
        Check inputs, references and tools before anything runs.

        Raises:
            ConfigurationError: Listing every problem found
        """
        errors = self.config.validate_setup(check_tools=check_tools)
        if errors:
            error_msg = "Pipeline setup validation failed:\n" + \
                "\n".join(f"  - {e}" for e in errors)
            raise ConfigurationError(error_msg)

    def plan(self) -> List[ChainPlan]:
        """
        Discover the samples and build one chain plan per sample.

        Nothing is executed. Every configuration and discovery error of the
        run surfaces here.

        Raises:
            ConfigurationError: If the stage toggles cannot be satisfied
            DiscoveryError: If the reads directory does not yield samples
        """
        specs = build_stage_specs(self.config)
        samples = discover_samples(self.config.reads_dir, self.config.read_mode, self.logger)
        plans = [build_plan(self.config, sample, specs) for sample in samples]
        self.logger.info("Chain plans built",
                         sample_count=len(plans),
                         stages=[spec.name for spec in specs])
        return plans

    def prepare_references(self) -> None:
        """Verify the reference bundles and index their FASTA files once."""
        references = [self.config.virus_reference]
        if self.config.host_removal_enabled and self.config.host_reference is not None:
            references.append(self.config.host_reference)
        for reference in references:
            reference.verify()

        # Only the virus FASTA is read by samtools/bcftools.
        ensure_fasta_index(
            self.config.virus_reference,
            self.config.get_work_dir(),
            self.executor,
            self.logger,
            retry_policy=self.config.retry_policy,
        )

    def run(self, plans: Optional[List[ChainPlan]] = None, check_tools: bool = True) -> RunSummary:
        """
        Run every sample chain and write the run summary.

        Args:
            plans: Plans from plan(); built here when omitted
            check_tools: Whether to require the external tools in PATH

        Returns:
            RunSummary with one result per sample
        """
        with PipelineLogger(self.logger, "pipeline_run") as plog:
            self.validate(check_tools=check_tools)
            if plans is None:
                plans = self.plan()
            plog.add_context(sample_count=len(plans))

            self.config.ensure_directories()
            self.monitor.log_system_info(self.config.output_dir)
            self.logger.info("Pipeline initialized", config_summary=self._get_config_summary())

            self.monitor.start_timer("prepare_references")
            self.prepare_references()
            self.monitor.stop_timer("prepare_references")

            self.monitor.start_timer("run_chains")
            summary = self.scheduler.run(plans)
            self.monitor.stop_timer("run_chains")
            self.monitor.log_memory_usage()

            written = summary.write(self.config.get_info_dir())
            plog.log_progress("Run summary written", **{k: str(v) for k, v in written.items()})
            plog.add_context(
                succeeded=len(summary.results) - len(summary.failed_samples),
                failed=len(summary.failed_samples),
            )

        return summary

    def _get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of the configuration for logging."""
        return {
            "reads_dir": str(self.config.reads_dir),
            "output_dir": str(self.config.output_dir),
            "work_dir": str(self.config.get_work_dir()),
            "read_mode": self.config.read_mode.value,
            "trimming": not self.config.skip_trim,
            "host_removal": self.config.host_removal_enabled,
            "qc": self.config.with_qc,
            "threads": self.config.threads,
            "max_workers": self.config.max_workers,
            "max_attempts": self.config.max_attempts,
        }
