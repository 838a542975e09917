"""
Shared fixtures for the pipeline tests.
"""

import gzip
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
import structlog

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from consensus_pipeline.config.settings import PipelineConfig  # noqa: E402
from consensus_pipeline.models.stages import BOWTIE2_INDEX_SUFFIXES  # noqa: E402


def write_fastq(path: Path, n_reads: int) -> Path:
    """Write a small FASTQ file, gzipped when the name ends in .gz."""
    records = "".join(
        f"@read{i}\nACGTACGTAC\n+\nIIIIIIIIII\n" for i in range(n_reads)
    )
    if path.suffix == ".gz":
        with gzip.open(path, "wt") as f:
            f.write(records)
    else:
        path.write_text(records)
    return path


def make_reference(ref_dir: Path, name: str):
    """Create a FASTA file and a complete (fake) Bowtie2 index bundle."""
    ref_dir.mkdir(parents=True, exist_ok=True)
    fasta = ref_dir / f"{name}.fasta"
    fasta.write_text(f">{name}\nACGTACGTACGTACGT\n")
    index = ref_dir / name
    for suffix in BOWTIE2_INDEX_SUFFIXES:
        Path(f"{index}{suffix}").write_text("index")
    return fasta, index


@pytest.fixture
def logger():
    """Create a test logger."""
    return structlog.get_logger()


@pytest.fixture
def references(tmp_path):
    """Virus and host references plus an adapter file."""
    ref_dir = tmp_path / "ref"
    virus_fasta, virus_index = make_reference(ref_dir, "virus")
    host_fasta, host_index = make_reference(ref_dir, "host")
    Path(f"{virus_fasta}.fai").write_text("virus\t16\t7\t16\t17\n")
    adapters = ref_dir / "TruSeq3-PE.fa"
    adapters.write_text(">PrefixPE/1\nTACACTCTTTCCCTACACGACGCTCTTCCGATCT\n")
    return SimpleNamespace(
        virus_fasta=virus_fasta,
        virus_index=virus_index,
        host_fasta=host_fasta,
        host_index=host_index,
        adapters=adapters,
    )


@pytest.fixture
def paired_reads(tmp_path):
    """Two paired-end samples, one with Illumina sample-sheet suffixes."""
    reads_dir = tmp_path / "reads"
    reads_dir.mkdir()
    write_fastq(reads_dir / "sampleA_R1.fastq.gz", 4)
    write_fastq(reads_dir / "sampleA_R2.fastq.gz", 4)
    write_fastq(reads_dir / "sampleB_S2_L001_R1_001.fastq.gz", 4)
    write_fastq(reads_dir / "sampleB_S2_L001_R2_001.fastq.gz", 4)
    return reads_dir


@pytest.fixture
def single_reads(tmp_path):
    """Two single-end samples."""
    reads_dir = tmp_path / "single_reads"
    reads_dir.mkdir()
    write_fastq(reads_dir / "sample1.fastq.gz", 4)
    write_fastq(reads_dir / "sample2.fq.gz", 4)
    return reads_dir


@pytest.fixture
def make_config(tmp_path, references, paired_reads):
    """Factory building a PipelineConfig around the fixture files."""
    def _make(**overrides):
        values = {
            "reads_dir": paired_reads,
            "output_dir": tmp_path / "results",
            "virus_fasta": references.virus_fasta,
            "virus_index": references.virus_index,
            "adapters": references.adapters,
            "max_workers": 2,
        }
        values.update(overrides)
        return PipelineConfig(**values)
    return _make
