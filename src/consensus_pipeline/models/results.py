"""
Data models for chain outcomes, the run summary and the trimming summary.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, Field, field_validator

from .stages import TaskInstance, TaskStatus


class ChainStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ChainResult(BaseModel):
    """Terminal outcome of one sample's chain."""

    sample_id: str
    status: ChainStatus
    tasks: List[TaskInstance] = Field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    log_file: Optional[Path] = None
    side_branch_failures: Dict[str, str] = Field(
        default_factory=dict,
        description="Side-branch stage name -> error, never affecting status",
    )
    publish_errors: List[str] = Field(default_factory=list)

    @property
    def total_attempts(self) -> int:
        return sum(task.attempt_count for task in self.tasks)

    def task(self, stage_name: str) -> Optional[TaskInstance]:
        for task in self.tasks:
            if task.stage_name == stage_name:
                return task
        return None

    def completed_stages(self) -> List[str]:
        return [t.stage_name for t in self.tasks if t.status == TaskStatus.SUCCEEDED]


class RunSummary(BaseModel):
    """Per-sample terminal statuses of one pipeline run."""

    results: List[ChainResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        """True when every chain finished and none failed."""
        return bool(self.results) and all(
            r.status == ChainStatus.SUCCEEDED for r in self.results
        )

    @property
    def failed_samples(self) -> List[str]:
        return [r.sample_id for r in self.results if r.status == ChainStatus.FAILED]

    def result(self, sample_id: str) -> Optional[ChainResult]:
        for result in self.results:
            if result.sample_id == sample_id:
                return result
        return None

    def to_dataframe(self) -> pd.DataFrame:
        """One row per sample, sorted by sample_id."""
        rows = []
        for r in self.results:
            rows.append({
                "sample_id": r.sample_id,
                "status": r.status.value,
                "failed_stage": r.failed_stage or "",
                "completed_stages": ",".join(r.completed_stages()),
                "attempts": r.total_attempts,
                "qc_failures": ",".join(sorted(r.side_branch_failures)),
                "publish_errors": len(r.publish_errors),
                "error": r.error or "",
            })
        columns = [
            "sample_id", "status", "failed_stage", "completed_stages",
            "attempts", "qc_failures", "publish_errors", "error",
        ]
        df = pd.DataFrame(rows, columns=columns)
        return df.sort_values("sample_id").reset_index(drop=True)

    def write(self, output_dir: Path) -> Dict[str, Path]:
        """Write the summary as TSV and JSON into ``output_dir``."""
        output_dir.mkdir(parents=True, exist_ok=True)
        tsv_file = output_dir / "run_summary.tsv"
        json_file = output_dir / "run_summary.json"
        self.to_dataframe().to_csv(tsv_file, sep="\t", index=False)
        json_file.write_text(self.model_dump_json(indent=2))
        return {"tsv": tsv_file, "json": json_file}


class TrimSummary(BaseModel):
    """Read counts before and after trimming."""

    sample_id: str
    untrimmed_reads: int
    trimmed_reads: int
    percent_trimmed: int

    @field_validator("untrimmed_reads", "trimmed_reads")
    @classmethod
    def validate_counts(cls, v):
        if v < 0:
            raise ValueError("Read counts must be non-negative")
        return v

    @classmethod
    def from_counts(cls, sample_id: str, untrimmed_reads: int, trimmed_reads: int) -> "TrimSummary":
        """
        Build a summary, computing the percentage of reads removed.

        The percentage uses truncating integer arithmetic:
        ``100 - (100 * trimmed // untrimmed)``, and is 0 when there were no
        reads to begin with.
        """
        if untrimmed_reads == 0:
            percent = 0
        else:
            percent = 100 - (100 * trimmed_reads // untrimmed_reads)
        return cls(
            sample_id=sample_id,
            untrimmed_reads=untrimmed_reads,
            trimmed_reads=trimmed_reads,
            percent_trimmed=percent,
        )

    def to_text(self) -> str:
        return (
            f"sample_id\t{self.sample_id}\n"
            f"untrimmed_reads\t{self.untrimmed_reads}\n"
            f"trimmed_reads\t{self.trimmed_reads}\n"
            f"percent_trimmed\t{self.percent_trimmed}\n"
        )
