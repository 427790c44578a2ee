"""
Pipeline YAML parser and validator.

A configuration is a stream of YAML documents, one pipeline per document.
"""

import yaml
from typing import Any, Dict, List, Sequence

from pydantic import ValidationError

from controller.src.engine.graph import PipelineGraph
from controller.src.exceptions import PipelineConfigError
from controller.src.models.pipeline import PipelineDefinition

def parse_pipeline_config(yaml_content: str) -> List[PipelineDefinition]:
    """Parse and validate a multi-document pipeline configuration."""
    try:
        documents = [doc for doc in yaml.safe_load_all(yaml_content) if doc is not None]
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Invalid YAML: {e}")

    return parse_pipeline_documents(documents)

def load_pipeline_file(path: str) -> List[PipelineDefinition]:
    """Read and validate a pipeline configuration file."""
    try:
        with open(path, "r") as f:
            content = f.read()
    except OSError as e:
        raise PipelineConfigError(f"Cannot read pipeline configuration {path}: {e}")
    return parse_pipeline_config(content)

def parse_pipeline_documents(documents: Sequence[Any]) -> List[PipelineDefinition]:
    """Validate already-loaded documents, including the dependency graph."""
    if not documents:
        raise PipelineConfigError("Empty pipeline configuration")

    pipelines = [validate_document(doc, i) for i, doc in enumerate(documents)]

    # Raises on duplicate names, unknown dependencies and cycles
    PipelineGraph(pipelines)
    return pipelines

def validate_document(document: Any, index: int) -> PipelineDefinition:
    """Validate a single pipeline document."""
    if not isinstance(document, dict):
        raise PipelineConfigError(f"Document {index} must be a dictionary")

    kind = document.get("kind", "pipeline")
    if kind != "pipeline":
        raise PipelineConfigError(f"Document {index} has unsupported kind '{kind}'")

    name = document.get("name")
    if not name:
        raise PipelineConfigError(f"Document {index} missing 'name'")
    if not isinstance(name, str):
        raise PipelineConfigError(f"Document {index} 'name' must be a string")

    steps = document.get("steps")
    if steps is None:
        raise PipelineConfigError(f"Pipeline '{name}' must have 'steps' defined")
    if not isinstance(steps, list):
        raise PipelineConfigError(f"Pipeline '{name}' 'steps' must be a list")
    if len(steps) == 0:
        raise PipelineConfigError(f"Pipeline '{name}' must have at least one step")

    for i, step in enumerate(steps):
        validate_step(step, i, name)

    try:
        return PipelineDefinition.model_validate(document)
    except ValidationError as e:
        raise PipelineConfigError(f"Pipeline '{name}' is invalid: {_describe(e)}")

def validate_step(step: Any, index: int, pipeline: str):
    """Structural checks with positional error messages."""
    if not isinstance(step, dict):
        raise PipelineConfigError(f"Pipeline '{pipeline}' step {index} must be a dictionary")

    if "name" not in step:
        raise PipelineConfigError(f"Pipeline '{pipeline}' step {index} missing 'name'")

    if "image" not in step:
        raise PipelineConfigError(f"Pipeline '{pipeline}' step {index} missing 'image'")

    commands = step.get("commands")
    if commands is not None:
        if not isinstance(commands, list):
            raise PipelineConfigError(f"Pipeline '{pipeline}' step {index} 'commands' must be a list")
        for j, cmd in enumerate(commands):
            if not isinstance(cmd, str):
                raise PipelineConfigError(
                    f"Pipeline '{pipeline}' step {index} command {j} must be a string"
                )

    if not commands and not step.get("settings"):
        raise PipelineConfigError(
            f"Pipeline '{pipeline}' step {index} needs 'commands' or 'settings'"
        )

def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}" if location else first["msg"]

def pipeline_to_dict(pipeline: PipelineDefinition) -> Dict[str, Any]:
    """Serializable form of a pipeline; defaults are omitted."""
    data = pipeline.model_dump(mode="json", exclude_defaults=True)
    ordered: Dict[str, Any] = {"kind": pipeline.kind, "type": pipeline.type, "name": pipeline.name}
    ordered.update({k: v for k, v in data.items() if k not in ordered})
    return ordered

def dump_pipeline_config(pipelines: Sequence[PipelineDefinition]) -> str:
    """Serialize pipelines back into a multi-document YAML stream."""
    return yaml.safe_dump_all(
        [pipeline_to_dict(p) for p in pipelines],
        explicit_start=True,
        sort_keys=False,
        default_flow_style=False,
    )
