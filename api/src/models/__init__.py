from api.src.models.pipeline import Build, PipelineRun, PipelineStep
from api.src.models.run import (
    BuildEvent,
    BuildCreate,
    BuildResponse,
    RunResponse,
    StepResponse,
)

__all__ = [
    "Build",
    "PipelineRun",
    "PipelineStep",
    "BuildEvent",
    "BuildCreate",
    "BuildResponse",
    "RunResponse",
    "StepResponse",
]
