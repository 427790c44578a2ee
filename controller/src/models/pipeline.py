"""
Pipeline configuration models.

Definitions are loaded once from the pipeline configuration and are
immutable afterwards.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_serializer,
    model_validator,
)

from controller.src.exceptions import PipelineConfigError

PipelineType = Literal["docker", "kubernetes", "exec"]

CONDITION_DIMENSIONS = ("branch", "event", "ref", "status", "cron", "repo", "action")

def _scalar_to_str(value: Any) -> Any:
    # YAML turns `true` and `1.0` into non-strings
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value

class Constraint(BaseModel):
    """Include/exclude glob lists for one condition dimension."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    include: List[str] = Field(default_factory=list)
    exclude: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, (str, bool, int, float)):
            return {"include": [value]}
        if isinstance(value, list):
            return {"include": value}
        return value

    @field_validator("include", "exclude", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            value = [value]
        return [_scalar_to_str(v) for v in value]

    @model_serializer
    def _serialize(self):
        if not self.exclude:
            return list(self.include)
        data: Dict[str, List[str]] = {}
        if self.include:
            data["include"] = list(self.include)
        data["exclude"] = list(self.exclude)
        return data

class Conditions(BaseModel):
    """A trigger or `when` predicate. Absent dimensions always match."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    branch: Optional[Constraint] = None
    event: Optional[Constraint] = None
    ref: Optional[Constraint] = None
    status: Optional[Constraint] = None
    cron: Optional[Constraint] = None
    repo: Optional[Constraint] = None
    action: Optional[Constraint] = None

    @model_validator(mode="before")
    @classmethod
    def _allow_null(cls, value: Any) -> Any:
        return {} if value is None else value

class SecretRef(BaseModel):
    """Reference to a value held by the secret store."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    from_secret: str

class StepVolume(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    path: str

class HostPath(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str

class PipelineVolume(BaseModel):
    """A named scratch volume shared by the steps (and pipelines) of one event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    temp: Optional[Dict[str, Any]] = None
    host: Optional[HostPath] = None

    @model_validator(mode="after")
    def _one_source(self):
        if self.temp is not None and self.host is not None:
            raise ValueError(f"Volume '{self.name}' cannot be both 'temp' and 'host'")
        return self

    @property
    def is_host(self) -> bool:
        return self.host is not None

class CloneConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    disable: bool = False
    depth: Optional[int] = None

class Step(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    image: str
    commands: List[str] = Field(default_factory=list)
    environment: Dict[str, Union[SecretRef, str]] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    when: Conditions = Field(default_factory=Conditions)
    failure: Optional[Literal["ignore"]] = None
    volumes: List[StepVolume] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    timeout: Optional[int] = None

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_environment(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _scalar_to_str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _commands_or_settings(self):
        if not self.commands and not self.settings:
            raise ValueError(f"Step '{self.name}' needs 'commands' or 'settings'")
        return self

    @property
    def is_plugin(self) -> bool:
        return not self.commands

    @property
    def ignores_failure(self) -> bool:
        return self.failure == "ignore"

class PipelineDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["pipeline"] = "pipeline"
    type: PipelineType = "docker"
    name: str
    steps: List[Step]
    trigger: Conditions = Field(default_factory=Conditions)
    depends_on: List[str] = Field(default_factory=list)
    volumes: List[PipelineVolume] = Field(default_factory=list)
    clone: CloneConfig = Field(default_factory=CloneConfig)

    @model_validator(mode="after")
    def _check_steps(self):
        if not self.steps:
            raise PipelineConfigError(f"Pipeline '{self.name}' must have at least one step")

        volume_names = {v.name for v in self.volumes}
        if len(volume_names) != len(self.volumes):
            raise PipelineConfigError(f"Pipeline '{self.name}' declares a volume twice")

        seen: List[str] = []
        for step in self.steps:
            if step.name in seen:
                raise PipelineConfigError(
                    f"Pipeline '{self.name}' has duplicate step '{step.name}'"
                )
            for mount in step.volumes:
                if mount.name not in volume_names:
                    raise PipelineConfigError(
                        f"Step '{step.name}' mounts undeclared volume '{mount.name}'"
                    )
            for dep in step.depends_on:
                if dep not in seen:
                    raise PipelineConfigError(
                        f"Step '{step.name}' depends on '{dep}', "
                        f"which is not an earlier step of '{self.name}'"
                    )
            seen.append(step.name)
        return self

    def get_volume(self, name: str) -> PipelineVolume:
        for volume in self.volumes:
            if volume.name == name:
                return volume
        raise KeyError(name)
