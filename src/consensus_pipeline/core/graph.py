"""
Task graph: binds the run's stage list to the concrete paths of one sample.
"""

from pathlib import Path
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from ..config.settings import PipelineConfig
from ..exceptions import ConfigurationError
from ..models.stages import InputBinding, Sample, StageSpec, TaskInstance
from .stages import build_stage_specs


class PlannedTask(BaseModel):
    """A StageSpec bound to one sample's input and output paths."""

    model_config = ConfigDict(frozen=True)

    spec: StageSpec
    sample_id: str
    work_dir: Path
    inputs: Dict[str, Path]
    outputs: Dict[str, Path]
    depends_on: Set[str] = Field(default_factory=set)

    @property
    def stage_name(self) -> str:
        return self.spec.name

    def new_task_instance(self) -> TaskInstance:
        return TaskInstance(
            stage_name=self.spec.name,
            sample_id=self.sample_id,
            resolved_input_paths=dict(self.inputs),
            resolved_output_paths=dict(self.outputs),
            work_dir=self.work_dir,
        )


class ChainPlan(BaseModel):
    """Ordered tasks of one sample; every task comes after the tasks it depends on."""

    model_config = ConfigDict(frozen=True)

    sample: Sample
    tasks: List[PlannedTask]

    @property
    def sample_id(self) -> str:
        return self.sample.sample_id

    @property
    def stage_names(self) -> List[str]:
        return [t.stage_name for t in self.tasks]

    @property
    def main_tasks(self) -> List[PlannedTask]:
        return [t for t in self.tasks if not t.spec.side_branch]

    @property
    def side_tasks(self) -> List[PlannedTask]:
        return [t for t in self.tasks if t.spec.side_branch]

    def get(self, stage_name: str) -> Optional[PlannedTask]:
        for task in self.tasks:
            if task.stage_name == stage_name:
                return task
        return None

    def describe(self) -> str:
        """Human-readable listing of the chain, used for dry runs."""
        lines = [f"{self.sample_id} ({self.sample.read_mode.value})"]
        for task in self.tasks:
            marker = " [side branch]" if task.spec.side_branch else ""
            after = f" after {', '.join(sorted(task.depends_on))}" if task.depends_on else ""
            lines.append(f"  {task.stage_name}{marker}{after}")
            for slot, path in task.inputs.items():
                lines.append(f"    < {slot}: {path}")
            for slot, path in task.outputs.items():
                lines.append(f"    > {slot}: {path}")
        return "\n".join(lines)


def _resolve_input(
    spec: StageSpec,
    slot: str,
    binding: InputBinding,
    sample: Sample,
    planned: Dict[str, PlannedTask],
) -> Path:
    if binding.static is not None:
        return binding.static
    if binding.raw is not None:
        if binding.raw >= len(sample.raw_files):
            raise ConfigurationError(
                f"Stage {spec.name} input '{slot}' needs raw file #{binding.raw + 1} "
                f"but sample {sample.sample_id} has {len(sample.raw_files)}"
            )
        return Path(sample.raw_files[binding.raw]).expanduser().resolve()
    producer = planned.get(binding.stage)
    if producer is None:
        raise ConfigurationError(
            f"Stage {spec.name} input '{slot}' refers to stage {binding.stage}, "
            "which does not run before it"
        )
    if producer.spec.side_branch and not spec.side_branch:
        raise ConfigurationError(
            f"Stage {spec.name} cannot consume outputs of side-branch stage {binding.stage}"
        )
    if binding.slot not in producer.outputs:
        raise ConfigurationError(
            f"Stage {spec.name} input '{slot}' refers to undeclared output "
            f"{binding.stage}.{binding.slot}"
        )
    return producer.outputs[binding.slot]


def bind_chain(specs: List[StageSpec], sample: Sample, work_root: Path) -> ChainPlan:
    """
    Bind an ordered stage list to one sample.

    Raises:
        ConfigurationError: On a forward or dangling input reference.
    """
    work_root = Path(work_root).expanduser().resolve()
    planned: Dict[str, PlannedTask] = {}
    tasks: List[PlannedTask] = []

    for spec in specs:
        if spec.name in planned:
            raise ConfigurationError(f"Stage {spec.name} appears twice in the plan")
        inputs = {
            slot: _resolve_input(spec, slot, binding, sample, planned)
            for slot, binding in spec.declared_inputs.items()
        }
        work_dir = work_root / sample.sample_id / spec.name
        task = PlannedTask(
            spec=spec,
            sample_id=sample.sample_id,
            work_dir=work_dir,
            inputs=inputs,
            outputs=spec.output_paths(sample.sample_id, work_dir),
            depends_on=spec.dependencies,
        )
        planned[spec.name] = task
        tasks.append(task)

    return ChainPlan(sample=sample, tasks=tasks)


def build_plan(
    config: PipelineConfig,
    sample: Sample,
    specs: Optional[List[StageSpec]] = None,
) -> ChainPlan:
    """
    Build the chain plan of one sample. No stage is executed.

    Args:
        config: Run configuration
        sample: Sample to plan for
        specs: Stage list from build_stage_specs; built from config when omitted

    Raises:
        ConfigurationError: If the toggles reference a missing reference or
            adapter file, or the sample's read mode differs from the run's.
    """
    if sample.read_mode != config.read_mode:
        raise ConfigurationError(
            f"Sample {sample.sample_id} is {sample.read_mode.value} "
            f"but the run is configured for {config.read_mode.value}"
        )
    if specs is None:
        specs = build_stage_specs(config)
    return bind_chain(specs, sample, config.get_work_dir())
