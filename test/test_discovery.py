#!/usr/bin/env python3
"""
Tests for sample discovery and grouping.
"""

import pytest
import structlog
import structlog.testing

from consensus_pipeline.core.discovery import derive_sample_id, discover_samples, read_number
from consensus_pipeline.exceptions import DiscoveryError
from consensus_pipeline.models.stages import ReadMode

from conftest import write_fastq


@pytest.mark.parametrize("filename,expected", [
    ("sampleA_R1.fastq.gz", "sampleA"),
    ("sampleA_R2.fastq.gz", "sampleA"),
    ("sampleB_S3_L001_R1_001.fastq.gz", "sampleB"),
    ("sampleB_S3_L001_R2_001.fastq.gz", "sampleB"),
    ("patient_07_L002_R1.fq.gz", "patient_07"),
    ("my_sample_R1.fq", "my_sample"),
    ("run1/sampleC_R2.fastq", "sampleC"),
])
def test_derive_sample_id_paired(filename, expected):
    """Paired-end names lose index, lane, read and chunk suffixes."""
    assert derive_sample_id(filename, ReadMode.PAIRED_END) == expected


@pytest.mark.parametrize("filename,expected", [
    ("sample1.fastq.gz", "sample1"),
    ("sample2.fq.gz", "sample2"),
    ("sampleA_R1.fastq.gz", "sampleA_R1"),
])
def test_derive_sample_id_single(filename, expected):
    """Single-end names only lose the extension."""
    assert derive_sample_id(filename, ReadMode.SINGLE_END) == expected


@pytest.mark.parametrize("filename,read_mode", [
    ("notes.txt", ReadMode.PAIRED_END),
    ("sampleA.fastq.gz", ReadMode.PAIRED_END),
    ("sampleA_R3.fastq.gz", ReadMode.PAIRED_END),
    ("reads.bam", ReadMode.SINGLE_END),
])
def test_derive_sample_id_rejects_unknown_names(filename, read_mode):
    with pytest.raises(DiscoveryError):
        derive_sample_id(filename, read_mode)


def test_read_number():
    assert read_number("sampleA_R1.fastq.gz") == 1
    assert read_number("sampleA_S1_L001_R2_001.fastq.gz") == 2
    assert read_number("sampleA.fastq.gz") is None


def test_discover_paired_samples(paired_reads, logger):
    """Files are grouped per sample, R1 first, samples sorted."""
    samples = discover_samples(paired_reads, ReadMode.PAIRED_END, logger)

    assert [s.sample_id for s in samples] == ["sampleA", "sampleB"]
    sample_a = samples[0]
    assert sample_a.read_mode == ReadMode.PAIRED_END
    assert [p.name for p in sample_a.raw_files] == ["sampleA_R1.fastq.gz", "sampleA_R2.fastq.gz"]
    assert [p.name for p in samples[1].raw_files] == [
        "sampleB_S2_L001_R1_001.fastq.gz",
        "sampleB_S2_L001_R2_001.fastq.gz",
    ]


def test_discover_paired_ignores_unrelated_files(paired_reads, logger):
    (paired_reads / "README_R1.txt").write_text("not reads")
    (paired_reads / "sampleZ.fastq.gz").write_text("")

    samples = discover_samples(paired_reads, ReadMode.PAIRED_END, logger)

    assert [s.sample_id for s in samples] == ["sampleA", "sampleB"]


def test_discover_paired_warns_about_unmatched_files(paired_reads):
    (paired_reads / "sampleC_R1.fastq.bz2").write_text("compressed with bzip2")

    with structlog.testing.capture_logs() as logs:
        samples = discover_samples(paired_reads, ReadMode.PAIRED_END)

    assert [s.sample_id for s in samples] == ["sampleA", "sampleB"]
    warnings = [entry for entry in logs if entry["log_level"] == "warning"]
    assert len(warnings) == 1
    assert warnings[0]["file"].endswith("sampleC_R1.fastq.bz2")


def test_discover_paired_missing_mate(tmp_path, logger):
    """A sample without its R2 file is reported by name."""
    write_fastq(tmp_path / "good_R1.fastq.gz", 1)
    write_fastq(tmp_path / "good_R2.fastq.gz", 1)
    write_fastq(tmp_path / "lonely_R1.fastq.gz", 1)

    with pytest.raises(DiscoveryError, match="lonely"):
        discover_samples(tmp_path, ReadMode.PAIRED_END, logger)


def test_discover_paired_duplicate_mates(tmp_path, logger):
    """Two R1 files mapping to the same sample make the group malformed."""
    write_fastq(tmp_path / "dup_R1.fastq.gz", 1)
    write_fastq(tmp_path / "dup_S1_R1.fastq.gz", 1)
    write_fastq(tmp_path / "dup_R2.fastq.gz", 1)

    with pytest.raises(DiscoveryError, match="dup: 2 R1"):
        discover_samples(tmp_path, ReadMode.PAIRED_END, logger)


def test_discover_paired_empty_directory(tmp_path, logger):
    with pytest.raises(DiscoveryError, match="No paired-end read files"):
        discover_samples(tmp_path, ReadMode.PAIRED_END, logger)


def test_discover_missing_directory(tmp_path, logger):
    with pytest.raises(DiscoveryError, match="not found"):
        discover_samples(tmp_path / "missing", ReadMode.PAIRED_END, logger)


def test_discover_single_samples(single_reads, logger):
    """Every compressed read file is its own sample."""
    write_fastq(single_reads / "uncompressed.fastq", 1)

    samples = discover_samples(single_reads, ReadMode.SINGLE_END, logger)

    assert [s.sample_id for s in samples] == ["sample1", "sample2"]
    assert all(s.read_mode == ReadMode.SINGLE_END for s in samples)
    assert samples[1].raw_files[0].name == "sample2.fq.gz"


def test_discover_single_duplicate_ids(tmp_path, logger):
    write_fastq(tmp_path / "s1.fastq.gz", 1)
    write_fastq(tmp_path / "s1.fq.gz", 1)

    with pytest.raises(DiscoveryError, match="both map to sample s1"):
        discover_samples(tmp_path, ReadMode.SINGLE_END, logger)


def test_discover_single_empty_directory(tmp_path, logger):
    with pytest.raises(DiscoveryError, match="No compressed read files"):
        discover_samples(tmp_path, ReadMode.SINGLE_END, logger)
