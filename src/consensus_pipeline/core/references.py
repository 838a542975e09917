"""
Preparation of reference genomes shared by all chains.
"""

from pathlib import Path
from typing import Optional

import structlog

from ..models.stages import (
    BOWTIE2_INDEX_SUFFIXES,
    InputBinding,
    OutputSlot,
    ReferenceSet,
    RetryPolicy,
    StageSpec,
    TaskInstance,
)
from .executor import StageExecutor


def ensure_fasta_index(
    reference: ReferenceSet,
    work_dir: Path,
    executor: StageExecutor,
    logger: structlog.BoundLogger,
    retry_policy: Optional[RetryPolicy] = None,
) -> Path:
    """
    Make sure ``<fasta>.fai`` exists before any chain starts.

    The reference is read-only once chains are running.
    """
    fasta = Path(reference.fasta).expanduser().resolve()
    fai = Path(f"{fasta}.fai")
    if fai.is_file() and fai.stat().st_size > 0:
        logger.info("FASTA index already present", reference=reference.name, fai=str(fai))
        return fai

    spec = StageSpec(
        name="faidx",
        declared_inputs={"fasta": InputBinding.from_static(fasta)},
        declared_outputs={"fai": OutputSlot(template=fai.name)},
        command_template="samtools faidx {in_fasta}",
        retry_policy=retry_policy or RetryPolicy(),
    )
    task = TaskInstance(
        stage_name=spec.name,
        sample_id=reference.name,
        resolved_input_paths={"fasta": fasta},
        resolved_output_paths={"fai": fai},
        work_dir=Path(work_dir) / "references" / reference.name,
    )
    executor.execute(task, spec)
    logger.info("FASTA index built", reference=reference.name, fai=str(fai))
    return fai


def build_bowtie2_index(
    fasta: Path,
    prefix: Path,
    threads: int,
    executor: StageExecutor,
    logger: structlog.BoundLogger,
    retry_policy: Optional[RetryPolicy] = None,
) -> ReferenceSet:
    """
    Build the Bowtie2 index bundle of a FASTA file.

    Returns:
        The ReferenceSet pairing the FASTA with the new index

    Raises:
        RetriesExhaustedError: If bowtie2-build keeps failing
    """
    fasta = Path(fasta).expanduser().resolve()
    prefix = Path(prefix).expanduser().resolve()
    prefix.parent.mkdir(parents=True, exist_ok=True)

    outputs = {
        f"index{i}": Path(f"{prefix}{suffix}")
        for i, suffix in enumerate(BOWTIE2_INDEX_SUFFIXES, start=1)
    }
    spec = StageSpec(
        name="bowtie2_build",
        declared_inputs={
            "fasta": InputBinding.from_static(fasta),
            "prefix": InputBinding.from_static(prefix),
        },
        declared_outputs={slot: OutputSlot(template=path.name) for slot, path in outputs.items()},
        command_template="bowtie2-build --threads {threads} {in_fasta} {in_prefix}",
        params={"threads": threads},
        retry_policy=retry_policy or RetryPolicy(),
    )
    task = TaskInstance(
        stage_name=spec.name,
        sample_id=prefix.name,
        resolved_input_paths={"fasta": fasta, "prefix": prefix},
        resolved_output_paths=outputs,
        work_dir=prefix.parent / f"{prefix.name}_build",
    )

    logger.info("Building Bowtie2 index", fasta=str(fasta), prefix=str(prefix), threads=threads)
    executor.execute(task, spec)

    reference = ReferenceSet(name=prefix.name, fasta=fasta, index=prefix)
    reference.verify()
    logger.info("Bowtie2 index built", prefix=str(prefix))
    return reference
