"""
Step execution models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel

from controller.src.models.pipeline import Step

class Status(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (Status.PENDING, Status.RUNNING)

TIMEOUT_EXIT_CODE = 124

class StepResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None

    @classmethod
    def failed(cls, error: str, duration: float = 0.0) -> "StepResult":
        return cls(exit_code=1, stderr=error, error=error, duration=duration)

@dataclass
class VolumeHandle:
    """
    An acquired volume. Local backends fill `path`, Kubernetes fills
    `claim_name` (or `path` for host volumes).
    """
    name: str
    scope: str
    path: Optional[str] = None
    claim_name: Optional[str] = None
    temporary: bool = True

@dataclass
class StepInvocation:
    """Everything an executor needs to run one step."""
    run_id: str
    step_order: int
    step: Step
    workspace: VolumeHandle
    environment: Dict[str, str] = field(default_factory=dict)
    # mount path -> volume
    volumes: Dict[str, VolumeHandle] = field(default_factory=dict)
    timeout: int = 600

@dataclass(eq=False)
class StepOutcome:
    name: str
    step_order: int
    status: Status = Status.PENDING
    result: Optional[StepResult] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def logs(self) -> Optional[str]:
        if self.result is None:
            return None
        if self.result.stderr and self.result.stderr != self.result.stdout:
            return self.result.stdout + self.result.stderr
        return self.result.stdout

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "order": self.step_order,
            "status": self.status.value,
            "exit_code": self.result.exit_code if self.result else None,
            "duration": self.result.duration if self.result else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
