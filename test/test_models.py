#!/usr/bin/env python3
"""
Tests for the pydantic data models.
"""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from consensus_pipeline.exceptions import ConfigurationError
from consensus_pipeline.models import (
    ChainResult,
    ChainStatus,
    InputBinding,
    OutputSlot,
    PublishRule,
    ReadMode,
    ReferenceSet,
    RetryPolicy,
    RunSummary,
    Sample,
    StageSpec,
    TaskInstance,
    TaskStatus,
    TrimSummary,
)
from consensus_pipeline.models.stages import BOWTIE2_INDEX_SUFFIXES

from conftest import make_reference


def test_sample_file_count_must_match_read_mode():
    Sample(sample_id="s1", read_mode=ReadMode.SINGLE_END, raw_files=(Path("s1.fastq.gz"),))
    Sample(sample_id="s1", read_mode=ReadMode.PAIRED_END,
           raw_files=(Path("s1_R1.fastq.gz"), Path("s1_R2.fastq.gz")))

    with pytest.raises(ValidationError):
        Sample(sample_id="s1", read_mode=ReadMode.PAIRED_END, raw_files=(Path("s1_R1.fastq.gz"),))
    with pytest.raises(ValidationError):
        Sample(sample_id="s1", read_mode=ReadMode.SINGLE_END,
               raw_files=(Path("a.fastq.gz"), Path("b.fastq.gz")))


def test_reference_set_complete(tmp_path):
    fasta, index = make_reference(tmp_path, "virus")
    reference = ReferenceSet(name="virus", fasta=fasta, index=index)

    assert len(reference.index_files()) == 6
    assert reference.missing_files() == []
    reference.verify()


def test_reference_set_missing_index_file(tmp_path):
    fasta, index = make_reference(tmp_path, "virus")
    Path(f"{index}.rev.2.bt2").unlink()
    reference = ReferenceSet(name="virus", fasta=fasta, index=index)

    assert reference.missing_files() == [Path(f"{index}.rev.2.bt2")]
    with pytest.raises(ConfigurationError, match="rev.2.bt2"):
        reference.verify()


def test_reference_set_empty_fasta(tmp_path):
    fasta, index = make_reference(tmp_path, "virus")
    fasta.write_text("")
    reference = ReferenceSet(name="virus", fasta=fasta, index=index)

    assert reference.missing_files() == [fasta]


def test_reference_set_large_index(tmp_path):
    """Large genomes come with a .bt2l bundle."""
    fasta = tmp_path / "big.fasta"
    fasta.write_text(">big\nACGT\n")
    index = tmp_path / "big"
    for suffix in BOWTIE2_INDEX_SUFFIXES:
        Path(f"{index}{suffix}l").write_text("index")
    reference = ReferenceSet(name="big", fasta=fasta, index=index)

    assert all(p.name.endswith(".bt2l") for p in reference.index_files())
    assert reference.missing_files() == []


def test_retry_policy_defaults_and_validation():
    policy = RetryPolicy()
    assert policy.max_attempts == 3
    assert policy.backoff_seconds == 0.0
    assert policy.timeout_seconds is None

    with pytest.raises(ValidationError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValidationError):
        RetryPolicy(backoff_seconds=-1)


def test_input_binding_needs_exactly_one_source():
    assert InputBinding.from_stage("trim", "read1").stage == "trim"
    assert InputBinding.from_raw(1).raw == 1

    with pytest.raises(ValidationError):
        InputBinding()
    with pytest.raises(ValidationError):
        InputBinding(stage="trim", slot="read1", raw=0)
    with pytest.raises(ValidationError):
        InputBinding(stage="trim")


def test_stage_spec_needs_one_runner():
    with pytest.raises(ValidationError):
        StageSpec(name="nothing")
    with pytest.raises(ValidationError):
        StageSpec(name="both", command_template="true", function=lambda *args: None)


def test_stage_spec_rejects_undeclared_publish_slot():
    with pytest.raises(ValidationError):
        StageSpec(
            name="align",
            declared_outputs={"sam": OutputSlot(template="{sample_id}.sam")},
            command_template="true",
            publish_rules=(PublishRule(slots=("bam",), subdir="bam"),),
        )


def test_stage_spec_render_command_quotes_paths(tmp_path):
    spec = StageSpec(
        name="copy",
        declared_inputs={"src": InputBinding.from_raw(0)},
        declared_outputs={"dst": OutputSlot(template="{sample_id}.txt")},
        command_template="cp {in_src} {out_dst} # {sample_id} x{threads}",
        params={"threads": 4},
    )
    outputs = spec.output_paths("s1", tmp_path)

    command = spec.render_command("s1", {"src": Path("/data/my reads.fq")}, outputs)

    assert outputs == {"dst": tmp_path / "s1.txt"}
    assert command == f"cp '/data/my reads.fq' {tmp_path / 's1.txt'} # s1 x4"
    assert spec.dependencies == set()


def test_stage_spec_dependencies():
    spec = StageSpec(
        name="sort_index",
        declared_inputs={
            "sam": InputBinding.from_stage("align", "sam"),
            "fasta": InputBinding.from_static(Path("/ref/virus.fasta")),
        },
        command_template="true",
    )
    assert spec.dependencies == {"align"}


class TestTaskInstanceTransitions:
    """Lifecycle of a task instance."""

    def make_task(self, tmp_path):
        return TaskInstance(stage_name="align", sample_id="s1", work_dir=tmp_path)

    def test_success_path(self, tmp_path):
        task = self.make_task(tmp_path)
        assert task.status == TaskStatus.PENDING

        task.transition(TaskStatus.RUNNING)
        assert task.started_at is not None
        task.transition(TaskStatus.RETRYING)
        task.transition(TaskStatus.RUNNING)
        task.transition(TaskStatus.SUCCEEDED)

        assert task.is_terminal
        assert task.finished_at is not None

    def test_pending_cannot_finish_directly(self, tmp_path):
        task = self.make_task(tmp_path)
        with pytest.raises(ValueError):
            task.transition(TaskStatus.SUCCEEDED)

    def test_retrying_cannot_fail_directly(self, tmp_path):
        task = self.make_task(tmp_path)
        task.transition(TaskStatus.RUNNING)
        task.transition(TaskStatus.RETRYING)
        with pytest.raises(ValueError):
            task.transition(TaskStatus.FAILED)

    @pytest.mark.parametrize("terminal", [TaskStatus.SUCCEEDED, TaskStatus.FAILED])
    def test_terminal_states_are_final(self, tmp_path, terminal):
        task = self.make_task(tmp_path)
        task.transition(TaskStatus.RUNNING)
        task.transition(terminal)
        for status in TaskStatus:
            with pytest.raises(ValueError):
                task.transition(status)


@pytest.mark.parametrize("untrimmed,trimmed,percent", [
    (100, 75, 25),
    (100, 100, 0),
    (3, 2, 34),
    (7, 0, 100),
    (0, 0, 0),
])
def test_trim_summary_percent(untrimmed, trimmed, percent):
    """Percent removed uses truncating integer arithmetic."""
    summary = TrimSummary.from_counts("s1", untrimmed, trimmed)
    assert summary.percent_trimmed == percent


def test_trim_summary_text():
    text = TrimSummary.from_counts("s1", 8, 6).to_text()
    assert text.splitlines() == [
        "sample_id\ts1",
        "untrimmed_reads\t8",
        "trimmed_reads\t6",
        "percent_trimmed\t25",
    ]


def test_trim_summary_rejects_negative_counts():
    with pytest.raises(ValidationError):
        TrimSummary.from_counts("s1", -1, 0)


def _succeeded_task(tmp_path, stage, attempts=1):
    task = TaskInstance(stage_name=stage, sample_id="s", work_dir=tmp_path)
    for _ in range(attempts - 1):
        task.transition(TaskStatus.RUNNING)
        task.transition(TaskStatus.RETRYING)
    task.transition(TaskStatus.RUNNING)
    task.transition(TaskStatus.SUCCEEDED)
    task.attempt_count = attempts
    return task


def test_chain_result_accessors(tmp_path):
    result = ChainResult(
        sample_id="s",
        status=ChainStatus.SUCCEEDED,
        tasks=[_succeeded_task(tmp_path, "trim", 2), _succeeded_task(tmp_path, "align")],
    )
    assert result.total_attempts == 3
    assert result.completed_stages() == ["trim", "align"]
    assert result.task("align").stage_name == "align"
    assert result.task("consensus") is None


def test_run_summary_status():
    assert not RunSummary().succeeded

    ok = ChainResult(sample_id="a", status=ChainStatus.SUCCEEDED)
    bad = ChainResult(sample_id="b", status=ChainStatus.FAILED, failed_stage="align")

    assert RunSummary(results=[ok]).succeeded
    summary = RunSummary(results=[ok, bad])
    assert not summary.succeeded
    assert summary.failed_samples == ["b"]
    assert summary.result("b").failed_stage == "align"


def test_run_summary_dataframe_and_files(tmp_path):
    summary = RunSummary(results=[
        ChainResult(sample_id="zeta", status=ChainStatus.SUCCEEDED,
                    side_branch_failures={"qc_raw": "boom"}),
        ChainResult(sample_id="alpha", status=ChainStatus.FAILED,
                    failed_stage="align", error="3 attempt(s); exit code 1"),
    ])

    df = summary.to_dataframe()
    assert list(df["sample_id"]) == ["alpha", "zeta"]
    assert list(df["status"]) == ["failed", "succeeded"]
    assert df.loc[1, "qc_failures"] == "qc_raw"

    written = summary.write(tmp_path / "pipeline_info")
    assert written["tsv"].read_text().splitlines()[0].split("\t")[:3] == [
        "sample_id", "status", "failed_stage",
    ]
    data = json.loads(written["json"].read_text())
    assert {r["sample_id"] for r in data["results"]} == {"alpha", "zeta"}
