"""
Discovery of raw read files and their grouping into samples.
"""

import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..exceptions import DiscoveryError
from ..models.stages import ReadMode, Sample


# Paired-end names: <sample>[_S<n>][_L<nnn>]_R<1|2>[_<nnn>].<fastq|fq>[.gz]
# e.g. sampleA_R1.fastq.gz, sampleA_S3_L001_R2_001.fastq.gz -> sampleA
PAIRED_READ_PATTERN = re.compile(
    r"^(?P<sample>.+?)(?:_S\d+)?(?:_L\d{3})?_R(?P<read>[12])(?:_\d{3})?\.(?:fastq|fq)(?:\.gz)?$"
)

# Single-end names: <sample>.<fastq|fq>[.gz]
SINGLE_READ_PATTERN = re.compile(r"^(?P<sample>.+?)\.(?:fastq|fq)(?:\.gz)?$")

PAIRED_GLOB = "*_R[12]*"
SINGLE_GLOBS = ("*.fastq.gz", "*.fq.gz")


def derive_sample_id(filename: str, read_mode: ReadMode = ReadMode.PAIRED_END) -> str:
    """
    Derive the sample identifier from a read file name.

    Paired-end names lose their read (``_R1``/``_R2``), sample-sheet index
    (``_S<n>``), lane (``_L<nnn>``) and chunk (``_<nnn>``) suffixes along with
    the extension; single-end names only lose the extension.

    Raises:
        DiscoveryError: If the name does not follow the naming pattern.
    """
    pattern = PAIRED_READ_PATTERN if read_mode == ReadMode.PAIRED_END else SINGLE_READ_PATTERN
    match = pattern.match(Path(filename).name)
    if match is None:
        raise DiscoveryError(
            f"Cannot derive a sample id from '{filename}' in {read_mode.value} mode"
        )
    return match.group("sample")


def read_number(filename: str) -> Optional[int]:
    """Return 1 or 2 for paired-end read files, None for anything else."""
    match = PAIRED_READ_PATTERN.match(Path(filename).name)
    return int(match.group("read")) if match else None


def discover_samples(
    reads_dir: Path,
    read_mode: ReadMode,
    logger: Optional[structlog.BoundLogger] = None,
) -> List[Sample]:
    """
    Scan an input directory and group its read files into samples.

    Args:
        reads_dir: Directory containing the raw read files
        read_mode: Paired-end groups R1/R2 files, single-end keeps one file per sample
        logger: Logger instance

    Returns:
        Samples sorted by sample_id

    Raises:
        DiscoveryError: If no samples are found or the R1/R2 pairing is malformed
    """
    logger = logger or structlog.get_logger(__name__)
    reads_dir = Path(reads_dir)
    if not reads_dir.is_dir():
        raise DiscoveryError(f"Reads directory not found: {reads_dir}")

    if read_mode == ReadMode.PAIRED_END:
        samples = _discover_paired(reads_dir, logger)
    else:
        samples = _discover_single(reads_dir)

    logger.info("Sample discovery completed",
                reads_dir=str(reads_dir),
                read_mode=read_mode.value,
                sample_count=len(samples),
                samples=[s.sample_id for s in samples])
    return samples


def _discover_paired(reads_dir: Path, logger: structlog.BoundLogger) -> List[Sample]:
    groups: Dict[str, Dict[int, List[Path]]] = defaultdict(lambda: {1: [], 2: []})
    for path in sorted(reads_dir.glob(PAIRED_GLOB)):
        if not path.is_file():
            continue
        match = PAIRED_READ_PATTERN.match(path.name)
        if match is None:
            logger.warning("Skipping file that does not follow the paired-end naming pattern",
                           file=str(path))
            continue
        groups[match.group("sample")][int(match.group("read"))].append(path)

    if not groups:
        raise DiscoveryError(f"No paired-end read files (*_R1*/*_R2*) found in {reads_dir}")

    problems = []
    samples = []
    for sample_id in sorted(groups):
        r1_files, r2_files = groups[sample_id][1], groups[sample_id][2]
        if len(r1_files) != 1 or len(r2_files) != 1:
            problems.append(
                f"{sample_id}: {len(r1_files)} R1 file(s) and {len(r2_files)} R2 file(s)"
            )
            continue
        samples.append(Sample(
            sample_id=sample_id,
            read_mode=ReadMode.PAIRED_END,
            raw_files=(r1_files[0], r2_files[0]),
        ))

    if problems:
        raise DiscoveryError(
            "Samples without exactly one R1 and one R2 file: " + "; ".join(problems)
        )
    return samples


def _discover_single(reads_dir: Path) -> List[Sample]:
    files = sorted(
        {p for pattern in SINGLE_GLOBS for p in reads_dir.glob(pattern) if p.is_file()},
        key=lambda p: p.name,
    )
    if not files:
        raise DiscoveryError(f"No compressed read files (*.fastq.gz, *.fq.gz) found in {reads_dir}")

    seen: Dict[str, Path] = {}
    samples = []
    for path in files:
        sample_id = derive_sample_id(path.name, ReadMode.SINGLE_END)
        if sample_id in seen:
            raise DiscoveryError(
                f"Files {seen[sample_id].name} and {path.name} both map to sample {sample_id}"
            )
        seen[sample_id] = path
        samples.append(Sample(
            sample_id=sample_id,
            read_mode=ReadMode.SINGLE_END,
            raw_files=(path,),
        ))
    return samples
