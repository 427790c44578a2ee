"""
Build event models.
"""

import uuid
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

TAG_PREFIX = "refs/tags/"
BRANCH_PREFIX = "refs/heads/"
PULL_PREFIX = "refs/pull/"

class EventKind(str, Enum):
    PUSH = "push"
    TAG = "tag"
    PULL_REQUEST = "pull_request"
    CRON = "cron"

class Event(BaseModel):
    """A repository event that may trigger pipelines."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Optional[EventKind] = None
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
    status: str = "success"

    @model_validator(mode="after")
    def _infer_from_ref(self):
        ref = self.ref or ""
        if self.kind is None:
            if self.cron:
                self.kind = EventKind.CRON
            elif ref.startswith(TAG_PREFIX):
                self.kind = EventKind.TAG
            elif ref.startswith(PULL_PREFIX):
                self.kind = EventKind.PULL_REQUEST
            else:
                self.kind = EventKind.PUSH

        if self.branch is None and ref.startswith(BRANCH_PREFIX):
            self.branch = ref[len(BRANCH_PREFIX):]
        if self.ref is None and self.branch and self.kind in (EventKind.PUSH, EventKind.CRON):
            self.ref = BRANCH_PREFIX + self.branch
        return self

    @property
    def tag(self) -> Optional[str]:
        if self.ref and self.ref.startswith(TAG_PREFIX):
            return self.ref[len(TAG_PREFIX):]
        return None

    @property
    def repo(self) -> Optional[str]:
        if self.repo_owner and self.repo_name:
            return f"{self.repo_owner}/{self.repo_name}"
        return None

    def context(self) -> Dict[str, Optional[str]]:
        """Values matched against each condition dimension."""
        return {
            "branch": self.branch,
            "event": self.kind.value,
            "ref": self.ref,
            "status": self.status,
            "cron": self.cron,
            "repo": self.repo,
            "action": self.action,
        }

    def with_status(self, status: str) -> "Event":
        return self.model_copy(update={"status": status})
