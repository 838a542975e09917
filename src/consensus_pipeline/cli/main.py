"""
Main command-line interface for the Viral Consensus Pipeline.
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ..config.settings import PipelineConfig, load_pipeline_config
from ..core.executor import StageExecutor
from ..core.pipeline import Pipeline
from ..core.references import build_bowtie2_index, ensure_fasta_index
from ..exceptions import ConfigurationError, DiscoveryError, PipelineError
from ..models.results import ChainStatus, RunSummary
from ..models.stages import RetryPolicy
from ..utils import setup_logging
from .. import __version__


console = Console()


_CONFIG_OPTIONS = [
    click.option("--work-dir", help="Working directory (default: <outdir>/work)",
                 type=click.Path(file_okay=False, path_type=Path)),
    click.option("--virus-fasta", help="Target virus genome FASTA file",
                 type=click.Path(dir_okay=False, path_type=Path)),
    click.option("--virus-index", help="Bowtie2 index prefix of the virus genome",
                 type=click.Path(path_type=Path)),
    click.option("--host-fasta", help="Host genome FASTA file (enables host removal)",
                 type=click.Path(dir_okay=False, path_type=Path)),
    click.option("--host-index", help="Bowtie2 index prefix of the host genome",
                 type=click.Path(path_type=Path)),
    click.option("--single-end", is_flag=True, help="Treat every read file as its own single-end sample"),
    click.option("--no-trim", is_flag=True, help="Skip adapter and quality trimming"),
    click.option("--with-qc", is_flag=True, help="Run FastQC on raw and trimmed reads"),
    click.option("--save-trimmed", is_flag=True, help="Publish trimmed reads"),
    click.option("--no-mask", is_flag=True, help="Do not build the low-coverage masked consensus"),
    click.option("--adapters", help="Adapter FASTA file for Trimmomatic",
                 type=click.Path(dir_okay=False, path_type=Path)),
    click.option("--adapter-seed-mismatches", type=int, help="ILLUMINACLIP seed mismatches"),
    click.option("--adapter-palindrome-clip", type=int, help="ILLUMINACLIP palindrome clip threshold"),
    click.option("--adapter-simple-clip", type=int, help="ILLUMINACLIP simple clip threshold"),
    click.option("--window-size", type=int, help="SLIDINGWINDOW window length"),
    click.option("--window-quality", type=int, help="SLIDINGWINDOW required average quality"),
    click.option("--min-length", type=int, help="Minimum retained read length"),
    click.option("--min-variant-quality", type=int, help="Minimum QUAL of retained variants"),
    click.option("--min-coverage", type=int, help="Depth below which consensus sites are masked"),
    click.option("--max-workers", type=int, help="Concurrent worker slots (default: CPU count)"),
    click.option("--threads", type=int, help="Threads per external tool invocation"),
    click.option("--max-attempts", type=int, help="Attempts per stage before a sample fails"),
    click.option("--timeout", type=int, help="Timeout per stage attempt in seconds"),
    click.option("--config", help="Configuration file path ([Paths] and [Parameters] sections)",
                 type=click.Path(exists=True, dir_okay=False, path_type=Path)),
    click.option("--log-level",
                 type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
                 help="Logging level"),
    click.option("--log-file", help="Log file path", type=click.Path(path_type=Path)),
]


def config_options(func):
    """Attach the options shared by every command that builds a PipelineConfig."""
    for option in reversed(_CONFIG_OPTIONS):
        func = option(func)
    return func


def _config_overrides(options: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map CLI options onto PipelineConfig fields.

    Flags are only passed when set, so values from the configuration file
    are not reset by an absent flag.
    """
    return {
        "reads_dir": options.get("reads"),
        "output_dir": options.get("outdir"),
        "work_dir": options["work_dir"],
        "virus_fasta": options["virus_fasta"],
        "virus_index": options["virus_index"],
        "host_fasta": options["host_fasta"],
        "host_index": options["host_index"],
        "single_end": True if options["single_end"] else None,
        "skip_trim": True if options["no_trim"] else None,
        "with_qc": True if options["with_qc"] else None,
        "save_trimmed": True if options["save_trimmed"] else None,
        "mask_low_coverage": False if options["no_mask"] else None,
        "adapters": options["adapters"],
        "adapter_seed_mismatches": options["adapter_seed_mismatches"],
        "adapter_palindrome_clip": options["adapter_palindrome_clip"],
        "adapter_simple_clip": options["adapter_simple_clip"],
        "window_size": options["window_size"],
        "window_quality": options["window_quality"],
        "min_length": options["min_length"],
        "min_variant_quality": options["min_variant_quality"],
        "min_coverage": options["min_coverage"],
        "max_workers": options["max_workers"],
        "threads": options["threads"],
        "max_attempts": options["max_attempts"],
        "timeout_seconds": options["timeout"],
        "log_level": options["log_level"],
        "log_file": options["log_file"],
    }


def _load_config(options: Dict[str, Any]) -> PipelineConfig:
    try:
        return load_pipeline_config(options["config"], **_config_overrides(options))
    except ConfigurationError as e:
        console.print(f"[red]Error loading configuration: {escape(str(e))}[/red]")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="Viral Consensus Pipeline")
def cli():
    """Viral Consensus Pipeline - Build consensus genomes of a target virus from raw reads."""
    pass


@cli.command()
@click.option(
    "--reads",
    required=True,
    help="Directory containing the raw read files",
    type=click.Path(path_type=Path),
)
@click.option(
    "--outdir",
    required=True,
    help="Output directory for results",
    type=click.Path(file_okay=False, path_type=Path),
)
@config_options
@click.option(
    "--dry-run",
    is_flag=True,
    help="Print the planned stages of every sample without running them",
)
def run(dry_run: bool, **options):
    """Run the pipeline on every sample found in the reads directory."""
    pipeline_config = _load_config(options)

    logger = setup_logging(
        log_level=pipeline_config.log_level,
        log_file=pipeline_config.log_file,
        log_format="console"
    )

    console.print(f"[bold blue]Viral Consensus Pipeline v{__version__}[/bold blue]")
    display_config_summary(pipeline_config)

    pipeline = Pipeline(pipeline_config, logger)
    try:
        pipeline.validate(check_tools=not dry_run)
        plans = pipeline.plan()
    except (ConfigurationError, DiscoveryError) as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        logger.error("Pipeline initialization failed", error=str(e))
        sys.exit(1)

    if dry_run:
        console.print("[yellow]Dry run mode - no actual processing will occur[/yellow]")
        for plan in plans:
            console.print(plan.describe(), markup=False, highlight=False)
        return

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Running {len(plans)} sample(s)...", total=None)
            summary = pipeline.run(plans)
            progress.update(task, description="Pipeline finished")
    except PipelineError as e:
        console.print(f"[red]Pipeline failed: {escape(str(e))}[/red]")
        logger.error("Pipeline execution failed", error=str(e))
        sys.exit(1)

    display_run_summary(summary)
    console.print(f"Run summary: {pipeline_config.get_info_dir() / 'run_summary.tsv'}")

    if not summary.succeeded:
        console.print(f"[red]{len(summary.failed_samples)} sample(s) failed: "
                      f"{', '.join(summary.failed_samples)}[/red]")
        sys.exit(1)
    console.print("[green]✓ All samples completed successfully[/green]")


@cli.command()
@click.option(
    "--reads",
    help="Directory containing the raw read files",
    type=click.Path(path_type=Path),
)
@click.option(
    "--outdir",
    help="Output directory for results",
    type=click.Path(file_okay=False, path_type=Path),
)
@config_options
@click.option(
    "--skip-tools",
    is_flag=True,
    help="Do not check that the external tools are in PATH",
)
def validate(skip_tools: bool, **options):
    """Validate pipeline configuration, references and dependencies."""
    pipeline_config = _load_config(options)

    console.print("[bold blue]Validating pipeline configuration...[/bold blue]")

    errors = pipeline_config.validate_setup(check_tools=not skip_tools)
    if errors:
        console.print("[red]Configuration validation failed:[/red]")
        for error in errors:
            console.print(f"  [red]• {escape(error)}[/red]")
        sys.exit(1)

    console.print("[green]✓ Configuration validation passed[/green]")
    display_config_summary(pipeline_config)


@cli.command("build-index")
@click.option(
    "--fasta",
    required=True,
    help="Genome FASTA file to index",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
@click.option(
    "--prefix",
    required=True,
    help="Bowtie2 index prefix to create",
    type=click.Path(path_type=Path),
)
@click.option(
    "--threads",
    default=1,
    help="Number of threads to use",
    type=int,
)
@click.option(
    "--max-attempts",
    default=3,
    help="Attempts before giving up",
    type=int,
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level",
)
def build_index(fasta: Path, prefix: Path, threads: int, max_attempts: int, log_level: str):
    """Build a Bowtie2 index bundle and FASTA index for a reference genome."""
    logger = setup_logging(log_level=log_level, log_format="console")
    executor = StageExecutor(logger)

    try:
        retry_policy = RetryPolicy(max_attempts=max_attempts)
    except ValueError as e:
        console.print(f"[red]Invalid --max-attempts: {e}[/red]")
        sys.exit(1)

    try:
        with console.status("[bold green]Building index..."):
            reference = build_bowtie2_index(fasta, prefix, threads, executor, logger, retry_policy)
            fai = ensure_fasta_index(reference, Path(reference.index).parent, executor, logger, retry_policy)
    except PipelineError as e:
        console.print(f"[red]Index build failed: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Reference Files")
    table.add_column("File", style="cyan")
    for path in reference.index_files() + [fai]:
        table.add_row(str(path))
    console.print(table)
    console.print(f"[green]✓ Index ready, use --virus-index/--host-index {reference.index}[/green]")


def display_config_summary(config: PipelineConfig):
    """Display configuration summary."""

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Reads Directory", str(config.reads_dir))
    table.add_row("Output Directory", str(config.output_dir))
    table.add_row("Work Directory", str(config.get_work_dir()))
    table.add_row("Read Mode", config.read_mode.value)
    table.add_row("Virus Reference", str(config.virus_fasta))
    table.add_row("Host Removal", str(config.host_fasta) if config.host_removal_enabled else "Off")
    table.add_row("Trimming", "Off" if config.skip_trim else str(config.adapters))
    table.add_row("QC", "On" if config.with_qc else "Off")
    table.add_row("Worker Slots", str(config.max_workers))
    table.add_row("Threads per Tool", str(config.threads))
    table.add_row("Attempts per Stage", str(config.max_attempts))

    console.print(table)


def display_run_summary(summary: RunSummary):
    """Display the terminal status of every sample."""

    console.print("\n[bold green]Pipeline Results[/bold green]")

    table = Table(title="Run Summary")
    table.add_column("Sample", style="cyan")
    table.add_column("Status")
    table.add_column("Failed Stage")
    table.add_column("Attempts", justify="right")
    table.add_column("Details", overflow="fold")

    for result in summary.results:
        if result.status == ChainStatus.SUCCEEDED:
            status = "[green]succeeded[/green]"
        else:
            status = "[red]failed[/red]"
        details = result.error or ""
        if result.side_branch_failures:
            details = (details + " " if details else "") + \
                f"QC failed: {', '.join(sorted(result.side_branch_failures))}"
        table.add_row(
            result.sample_id,
            status,
            result.failed_stage or "",
            str(result.total_attempts),
            escape(details),
        )

    console.print(table)


def main(args: Optional[list] = None):
    """Main entry point for the CLI."""
    cli(args)


if __name__ == "__main__":
    main()
