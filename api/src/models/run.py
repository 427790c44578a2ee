from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
import uuid

class BuildEvent(BaseModel):
    """Event payload queued for the controller."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Optional[str] = None
    branch: Optional[str] = None
    ref: Optional[str] = None
    commit_sha: str = ""
    author: str = ""
    message: str = ""
    build_number: int = 0
    repo_owner: str = ""
    repo_name: str = ""
    link: str = ""
    cron: Optional[str] = None
    action: Optional[str] = None

class BuildCreate(BaseModel):
    """Manual build request."""

    branch: Optional[str] = None
    ref: Optional[str] = None
    commit_sha: str = ""
    kind: Optional[str] = None
    message: str = ""
    triggered_by: Optional[str] = None

class StepResponse(BaseModel):
    name: str
    step_order: int
    status: str
    exit_code: Optional[int] = None
    duration: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class RunResponse(BaseModel):
    id: str
    name: str
    status: str
    upstream_status: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[StepResponse] = []

    class Config:
        from_attributes = True

class BuildResponse(BaseModel):
    id: str
    number: int
    kind: str
    branch: Optional[str] = None
    ref: Optional[str] = None
    commit_sha: Optional[str] = None
    author: Optional[str] = None
    status: str
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    runs: List[RunResponse] = []

    class Config:
        from_attributes = True
