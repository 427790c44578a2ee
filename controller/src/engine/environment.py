"""
Build environment for steps: CI variables, secrets and plugin settings.
"""

import json
import re
from typing import Any, Callable, Dict, List, Tuple

from controller.src.models.event import Event
from controller.src.models.pipeline import PipelineDefinition, SecretRef, Step
from controller.src.models.step import Status

SUBSTITUTION = re.compile(r"\$\{(\w+)\}")

Resolver = Callable[[str], str]

def build_environment(
    event: Event,
    pipeline: PipelineDefinition,
    step: Step,
    status: Status,
) -> Dict[str, str]:
    """Variables describing the build, injected into every step."""
    return {
        "CI": "true",
        "CONDUIT": "true",
        "CONDUIT_BUILD_NUMBER": str(event.build_number),
        "CONDUIT_BUILD_EVENT": event.kind.value,
        "CONDUIT_BUILD_STATUS": status.value,
        "CONDUIT_BUILD_LINK": event.link,
        "CONDUIT_COMMIT": event.commit_sha,
        "CONDUIT_COMMIT_AUTHOR": event.author,
        "CONDUIT_BRANCH": event.branch or "",
        "CONDUIT_TAG": event.tag or "",
        "CONDUIT_REF": event.ref or "",
        "CONDUIT_REPO_OWNER": event.repo_owner,
        "CONDUIT_REPO_NAME": event.repo_name,
        "CONDUIT_CRON": event.cron or "",
        "CONDUIT_PIPELINE_NAME": pipeline.name,
        "CONDUIT_STEP_NAME": step.name,
    }

def substitute(value: str, env: Dict[str, str]) -> str:
    """Expand ${VAR} references; unknown variables are left untouched."""
    return SUBSTITUTION.sub(lambda m: env.get(m.group(1), m.group(0)), value)

def encode_setting(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(encode_setting(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value)
    return str(value)

def _secret_name(value: Any):
    if isinstance(value, SecretRef):
        return value.from_secret
    if isinstance(value, dict) and set(value) == {"from_secret"}:
        return value["from_secret"]
    return None

def step_environment(
    step: Step,
    resolve: Resolver,
    base: Dict[str, str],
) -> Tuple[Dict[str, str], List[str]]:
    """
    Resolve a step's `environment` and `settings` on top of `base`.

    Settings become PLUGIN_<KEY> variables. Returns the environment and the
    secret values that were resolved so callers can mask them.
    """
    env = dict(base)
    secrets: List[str] = []

    for key, value in step.environment.items():
        name = _secret_name(value)
        if name is not None:
            value = resolve(name)
            secrets.append(value)
        env[key] = value

    for key, value in step.settings.items():
        name = _secret_name(value)
        if name is not None:
            value = resolve(name)
            secrets.append(value)
        else:
            value = substitute(encode_setting(value), env)
        env["PLUGIN_" + key.upper()] = value

    return env, secrets
