"""
Publishing of stage outputs into the results directory.
"""

import shutil
from pathlib import Path
from typing import List, Optional

import structlog

from ..exceptions import PublishError
from ..models.stages import StageSpec, TaskInstance, TaskStatus
from ..utils import log_error, log_file_operation


class OutputOrganizer:
    """Copies declared outputs to ``<output_root>/<subdir>/<filename>``."""

    def __init__(self, output_root: Path, logger: Optional[structlog.BoundLogger] = None):
        self.output_root = Path(output_root)
        self.logger = logger or structlog.get_logger(__name__)

    def destination(self, source: Path, subdir: str) -> Path:
        return self.output_root / subdir / source.name

    def publish_file(self, source: Path, subdir: str) -> Path:
        """
        Copy one file, overwriting any previous copy.

        Raises:
            PublishError: If the copy fails
        """
        destination = self.destination(source, subdir)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
        except OSError as e:
            raise PublishError(source, destination, str(e)) from e
        return destination

    def publish(self, task: TaskInstance, spec: StageSpec) -> List[PublishError]:
        """
        Publish every output named by the stage's publish rules.

        Copy failures are logged and returned, never raised: the outputs are
        still in the task's working directory.
        """
        if task.status != TaskStatus.SUCCEEDED:
            raise ValueError(
                f"Only succeeded tasks can be published, {task.stage_name}/{task.sample_id} "
                f"is {task.status.value}"
            )

        errors: List[PublishError] = []
        for rule in spec.publish_rules:
            for slot in rule.slots:
                source = task.resolved_output_paths[slot]
                if not source.exists() and not spec.declared_outputs[slot].verify:
                    continue
                try:
                    destination = self.publish_file(source, rule.subdir)
                except PublishError as e:
                    log_error(self.logger, e, context={
                        "sample_id": task.sample_id,
                        "stage": task.stage_name,
                        "operation": "publish",
                    })
                    errors.append(e)
                    continue
                log_file_operation(self.logger, "published", destination,
                                   sample_id=task.sample_id, stage=task.stage_name)
        return errors
