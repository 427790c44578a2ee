from controller.src.engine.trigger import evaluate, matches, match_constraint
from controller.src.engine.graph import PipelineGraph, plan_steps, should_run_step
from controller.src.engine.scheduler import Scheduler

__all__ = [
    "evaluate",
    "matches",
    "match_constraint",
    "PipelineGraph",
    "plan_steps",
    "should_run_step",
    "Scheduler",
]
