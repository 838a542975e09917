"""
Read counts before and after trimming.
"""

import gzip
from pathlib import Path
from typing import Dict

from ..models.results import TrimSummary


def count_reads(fastq_file: Path) -> int:
    """Count the records of a (optionally gzipped) FASTQ file."""
    opener = gzip.open if fastq_file.suffix == ".gz" else open
    lines = 0
    with opener(fastq_file, "rt") as f:
        for _ in f:
            lines += 1
    return lines // 4


def summarize_trimming(untrimmed: Path, trimmed: Path, sample_id: str) -> TrimSummary:
    """Compare the read counts of the raw and trimmed R1 files."""
    return TrimSummary.from_counts(
        sample_id=sample_id,
        untrimmed_reads=count_reads(untrimmed),
        trimmed_reads=count_reads(trimmed),
    )


def write_trim_summary(sample_id: str, inputs: Dict[str, Path], outputs: Dict[str, Path]) -> TrimSummary:
    """Stage function: write the trim summary of one sample."""
    summary = summarize_trimming(inputs["untrimmed"], inputs["trimmed"], sample_id)
    outputs["summary"].write_text(summary.to_text())
    return summary
