from controller.src.models.event import Event, EventKind
from controller.src.models.pipeline import (
    CloneConfig,
    Conditions,
    Constraint,
    PipelineDefinition,
    PipelineVolume,
    SecretRef,
    Step,
    StepVolume,
)
from controller.src.models.run import Run
from controller.src.models.step import (
    Status,
    StepInvocation,
    StepOutcome,
    StepResult,
    VolumeHandle,
)

__all__ = [
    "Event",
    "EventKind",
    "CloneConfig",
    "Conditions",
    "Constraint",
    "PipelineDefinition",
    "PipelineVolume",
    "SecretRef",
    "Step",
    "StepVolume",
    "Run",
    "Status",
    "StepInvocation",
    "StepOutcome",
    "StepResult",
    "VolumeHandle",
]
