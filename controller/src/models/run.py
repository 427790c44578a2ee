"""
Pipeline run model.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from controller.src.models.event import Event
from controller.src.models.pipeline import PipelineDefinition
from controller.src.models.step import Status, StepOutcome

@dataclass(eq=False)
class Run:
    """One instantiation of a pipeline for one event."""
    pipeline: PipelineDefinition
    event: Event
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: Status = Status.PENDING
    steps: List[StepOutcome] = field(default_factory=list)
    # aggregate status of the upstream runs when this run became eligible
    upstream_status: Optional[Status] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.pipeline.name

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def propagated_status(self) -> Status:
        """Status this run hands to downstream pipelines."""
        if self.status == Status.SKIPPED and self.upstream_status == Status.FAILURE:
            return Status.FAILURE
        return self.status

    def get_step(self, name: str) -> Optional[StepOutcome]:
        for outcome in self.steps:
            if outcome.name == name:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.id,
            "event_id": self.event.id,
            "pipeline": self.name,
            "status": self.status.value,
            "upstream_status": self.upstream_status.value if self.upstream_status else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "steps": [outcome.to_dict() for outcome in self.steps],
        }

    def __repr__(self) -> str:
        return f"<Run {self.name} {self.status.value}>"
