"""
Data models for samples, references, stage contracts and task instances.
"""

import shlex
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..exceptions import ConfigurationError


BOWTIE2_INDEX_SUFFIXES = (
    ".1.bt2",
    ".2.bt2",
    ".3.bt2",
    ".4.bt2",
    ".rev.1.bt2",
    ".rev.2.bt2",
)


class ReadMode(str, Enum):
    """Sequencing layout of a sample."""

    SINGLE_END = "single_end"
    PAIRED_END = "paired_end"


class Sample(BaseModel):
    """One sequencing unit tracked through the pipeline."""

    model_config = ConfigDict(frozen=True)

    sample_id: str = Field(description="Sample identifier derived from the read file names")
    read_mode: ReadMode = Field(description="Single-end or paired-end layout")
    raw_files: Tuple[Path, ...] = Field(description="Raw read files, R1 first")

    @model_validator(mode="after")
    def validate_file_count(self):
        """Validate that the number of raw files matches the read mode."""
        expected = 2 if self.read_mode == ReadMode.PAIRED_END else 1
        if len(self.raw_files) != expected:
            raise ValueError(
                f"Sample {self.sample_id} in {self.read_mode.value} mode needs "
                f"{expected} raw file(s), got {len(self.raw_files)}"
            )
        return self


class ReferenceSet(BaseModel):
    """A genome FASTA plus its prebuilt Bowtie2 index bundle."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Reference name (e.g. virus, host)")
    fasta: Path = Field(description="Genome FASTA file")
    index: Path = Field(description="Bowtie2 index prefix")

    def index_files(self) -> List[Path]:
        """
        Return the six files of the index bundle.

        Bowtie2 writes ``.bt2l`` files instead of ``.bt2`` for large genomes;
        the large bundle is returned when it is the one present on disk.
        """
        small = [Path(f"{self.index}{suffix}") for suffix in BOWTIE2_INDEX_SUFFIXES]
        large = [Path(f"{path}l") for path in small]
        if not all(p.exists() for p in small) and all(p.exists() for p in large):
            return large
        return small

    def missing_files(self) -> List[Path]:
        """List reference files that are absent or empty."""
        missing = []
        for path in [self.fasta] + self.index_files():
            if not path.is_file() or path.stat().st_size == 0:
                missing.append(path)
        return missing

    def verify(self) -> None:
        """Raise ConfigurationError unless the FASTA and full index bundle exist."""
        missing = self.missing_files()
        if missing:
            raise ConfigurationError(
                f"Reference '{self.name}' is incomplete, missing: "
                + ", ".join(str(p) for p in missing)
            )


class RetryPolicy(BaseModel):
    """How many times a stage may be attempted and how long to wait in between."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, description="Total attempts including the first")
    backoff_seconds: float = Field(default=0.0, description="Delay before each retry")
    timeout_seconds: Optional[int] = Field(default=None, description="Per-attempt timeout")

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v):
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @field_validator("backoff_seconds")
    @classmethod
    def validate_backoff(cls, v):
        if v < 0:
            raise ValueError("backoff_seconds must be non-negative")
        return v


class OutputSlot(BaseModel):
    """A declared output file, named from a template keyed by sample_id."""

    model_config = ConfigDict(frozen=True)

    template: str = Field(description="File name template, e.g. '{sample_id}.sam'")
    verify: bool = Field(
        default=True,
        description="Whether the executor requires the file to exist and be non-empty",
    )

    def filename(self, sample_id: str) -> str:
        return self.template.format(sample_id=sample_id)


class InputBinding(BaseModel):
    """Where a stage input comes from: a predecessor output, a raw read file or a static path."""

    model_config = ConfigDict(frozen=True)

    stage: Optional[str] = None
    slot: Optional[str] = None
    raw: Optional[int] = None
    static: Optional[Path] = None

    @model_validator(mode="after")
    def validate_single_source(self):
        sources = [
            self.stage is not None,
            self.raw is not None,
            self.static is not None,
        ]
        if sum(sources) != 1:
            raise ValueError("An input binding needs exactly one source")
        if (self.stage is None) != (self.slot is None):
            raise ValueError("Stage bindings need both a stage and a slot")
        return self

    @classmethod
    def from_stage(cls, stage: str, slot: str) -> "InputBinding":
        return cls(stage=stage, slot=slot)

    @classmethod
    def from_raw(cls, index: int) -> "InputBinding":
        return cls(raw=index)

    @classmethod
    def from_static(cls, path: Path) -> "InputBinding":
        return cls(static=path)


class PublishRule(BaseModel):
    """Output slots copied into a subdirectory of the output root."""

    model_config = ConfigDict(frozen=True)

    slots: Tuple[str, ...]
    subdir: str


class StageSpec(BaseModel):
    """
    Contract of one pipeline stage, shared by every sample.

    A stage runs either a shell ``command_template`` or an in-process
    ``function``. Shell templates are formatted with ``{in_<slot>}`` and
    ``{out_<slot>}`` for the resolved (quoted) paths, ``{sample_id}``, its
    shell-quoted form ``{quoted_sample_id}`` and every key of ``params``.
    Functions are called with the sample_id and the resolved input and
    output path mappings.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    declared_inputs: Dict[str, InputBinding] = Field(default_factory=dict)
    declared_outputs: Dict[str, OutputSlot] = Field(default_factory=dict)
    command_template: Optional[str] = None
    function: Optional[Callable[[str, Dict[str, Path], Dict[str, Path]], Any]] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    publish_rules: Tuple[PublishRule, ...] = ()
    side_branch: bool = Field(
        default=False,
        description="Best-effort stage whose failure never fails the chain",
    )

    @model_validator(mode="after")
    def validate_contract(self):
        if (self.command_template is None) == (self.function is None):
            raise ValueError(f"Stage {self.name} needs exactly one of command_template or function")
        for rule in self.publish_rules:
            unknown = [s for s in rule.slots if s not in self.declared_outputs]
            if unknown:
                raise ValueError(f"Stage {self.name} publishes undeclared outputs: {unknown}")
        return self

    @property
    def dependencies(self) -> Set[str]:
        """Names of the stages whose outputs this stage consumes."""
        return {b.stage for b in self.declared_inputs.values() if b.stage is not None}

    def output_paths(self, sample_id: str, work_dir: Path) -> Dict[str, Path]:
        return {
            slot: work_dir / output.filename(sample_id)
            for slot, output in self.declared_outputs.items()
        }

    def render_command(
        self,
        sample_id: str,
        inputs: Dict[str, Path],
        outputs: Dict[str, Path],
    ) -> str:
        """Format the command template for one sample."""
        if self.command_template is None:
            raise ValueError(f"Stage {self.name} has no command template")
        values: Dict[str, Any] = dict(self.params)
        values["sample_id"] = sample_id
        values["quoted_sample_id"] = shlex.quote(sample_id)
        values.update({f"in_{slot}": shlex.quote(str(p)) for slot, p in inputs.items()})
        values.update({f"out_{slot}": shlex.quote(str(p)) for slot, p in outputs.items()})
        return self.command_template.format(**values)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.RUNNING},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.RETRYING},
    TaskStatus.RETRYING: {TaskStatus.RUNNING},
    TaskStatus.SUCCEEDED: set(),
    TaskStatus.FAILED: set(),
}


class TaskInstance(BaseModel):
    """One execution of a stage for one sample."""

    stage_name: str
    sample_id: str
    status: TaskStatus = TaskStatus.PENDING
    attempt_count: int = 0
    resolved_input_paths: Dict[str, Path] = Field(default_factory=dict)
    resolved_output_paths: Dict[str, Path] = Field(default_factory=dict)
    work_dir: Path
    log_files: List[Path] = Field(default_factory=list)
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)

    def transition(self, new_status: TaskStatus) -> None:
        """Move to a new status, rejecting moves the lifecycle does not allow."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Task {self.stage_name}/{self.sample_id} cannot move "
                f"from {self.status.value} to {new_status.value}"
            )
        if new_status == TaskStatus.RUNNING and self.started_at is None:
            self.started_at = datetime.now()
        self.status = new_status
        if self.is_terminal:
            self.finished_at = datetime.now()
