"""
Pipeline dependency graph and per-pipeline step planning.
"""

import logging
from typing import Dict, Iterable, List, Optional

from controller.src.engine.trigger import matches, with_default_status
from controller.src.exceptions import (
    CyclicDependencyError,
    PipelineConfigError,
    UnknownDependencyError,
)
from controller.src.models.event import Event
from controller.src.models.pipeline import CloneConfig, PipelineDefinition, Step
from controller.src.models.step import Status

logger = logging.getLogger(__name__)

CLONE_STEP_NAME = "clone"

class PipelineGraph:
    """
    DAG of pipelines built from their `depends_on` edges.

    Construction validates the whole configuration: duplicate names,
    dependencies on undefined pipelines and cycles are all fatal.
    """

    def __init__(self, pipelines: Iterable[PipelineDefinition]):
        self.pipelines: Dict[str, PipelineDefinition] = {}
        for pipeline in pipelines:
            if pipeline.name in self.pipelines:
                raise PipelineConfigError(f"Duplicate pipeline name '{pipeline.name}'")
            self.pipelines[pipeline.name] = pipeline

        self._downstream: Dict[str, List[str]] = {name: [] for name in self.pipelines}
        for pipeline in self.pipelines.values():
            for dependency in pipeline.depends_on:
                if dependency not in self.pipelines:
                    raise UnknownDependencyError(pipeline.name, dependency)
                self._downstream[dependency].append(pipeline.name)

        self._check_cycles()

    def _check_cycles(self):
        visited = set()

        def visit(name: str, path: List[str]):
            if name in path:
                raise CyclicDependencyError(path[path.index(name):] + [name])
            if name in visited:
                return
            path.append(name)
            for dependency in self.pipelines[name].depends_on:
                visit(dependency, path)
            path.pop()
            visited.add(name)

        for name in self.pipelines:
            visit(name, [])

    def __contains__(self, name: str) -> bool:
        return name in self.pipelines

    def __len__(self) -> int:
        return len(self.pipelines)

    def upstream(self, name: str) -> List[str]:
        return list(self.pipelines[name].depends_on)

    def downstream(self, name: str) -> List[str]:
        return list(self._downstream[name])

    def topological_order(self, names: Optional[Iterable[str]] = None) -> List[str]:
        """
        Pipelines ordered so every pipeline follows its dependencies.
        Ties keep declaration order.
        """
        selected = set(self.pipelines if names is None else names)
        remaining = {
            name: {d for d in self.pipelines[name].depends_on if d in selected}
            for name in self.pipelines
            if name in selected
        }
        order: List[str] = []
        while remaining:
            ready = [name for name, deps in remaining.items() if not deps]
            for name in ready:
                order.append(name)
                del remaining[name]
            for deps in remaining.values():
                deps.difference_update(ready)
        return order

def build_clone_step(
    event: Event,
    clone_url: str,
    image: str,
    clone: Optional[CloneConfig] = None,
) -> Step:
    """Implicit first step that checks out the event's commit."""
    target = event.commit_sha or event.ref or event.branch or "HEAD"
    depth = f" --depth={clone.depth}" if clone and clone.depth else ""
    commands = [
        "git init -q",
        f"git remote add origin {clone_url}",
        f"git fetch -q{depth} origin {target}",
        "git checkout -qf FETCH_HEAD",
    ]
    return Step(name=CLONE_STEP_NAME, image=image, commands=commands)

def plan_steps(
    pipeline: PipelineDefinition,
    event: Event,
    clone_url: str = "",
    clone_image: str = "alpine/git:latest",
) -> List[Step]:
    """Ordered steps to execute for a run of `pipeline`."""
    steps = list(pipeline.steps)
    if clone_url and not pipeline.clone.disable:
        if any(step.name == CLONE_STEP_NAME for step in steps):
            logger.warning(
                f"Pipeline {pipeline.name} defines a '{CLONE_STEP_NAME}' step, "
                "skipping the implicit clone"
            )
        else:
            steps.insert(0, build_clone_step(event, clone_url, clone_image, pipeline.clone))
    return steps

def should_run_step(
    step: Step,
    event: Event,
    run_status: Status,
    finished: Dict[str, Status],
) -> bool:
    """
    Gate a step on its `when` block and on the steps it requires.

    `run_status` is the run's aggregate status so far. Steps without a
    status condition only run while it is success.
    """
    for required in step.depends_on:
        if finished.get(required) in (None, Status.SKIPPED):
            return False

    conditions = with_default_status(step.when)
    return matches(conditions, event.with_status(run_status.value))
