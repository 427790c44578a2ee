"""Tests for step environment construction."""

import pytest

from conftest import FakeSecretStore, push_event
from controller.src.engine.environment import (
    build_environment,
    encode_setting,
    step_environment,
    substitute,
)
from controller.src.exceptions import SecretResolutionError
from controller.src.models.event import Event
from controller.src.models.step import Status

def find(pipelines, pipeline_name, step_name):
    pipeline = next(p for p in pipelines if p.name == pipeline_name)
    return pipeline, next(s for s in pipeline.steps if s.name == step_name)

def test_build_environment(pipelines):
    pipeline, step = find(pipelines, "package", "build-deb")
    env = build_environment(push_event("master"), pipeline, step, Status.SUCCESS)

    assert env["CI"] == "true"
    assert env["CONDUIT_BUILD_NUMBER"] == "42"
    assert env["CONDUIT_BUILD_EVENT"] == "push"
    assert env["CONDUIT_BRANCH"] == "master"
    assert env["CONDUIT_REF"] == "refs/heads/master"
    assert env["CONDUIT_TAG"] == ""
    assert env["CONDUIT_REPO_OWNER"] == "casper-network"
    assert env["CONDUIT_PIPELINE_NAME"] == "package"
    assert env["CONDUIT_STEP_NAME"] == "build-deb"
    assert env["CONDUIT_BUILD_STATUS"] == "success"

def test_build_environment_for_tag(pipelines):
    pipeline, step = find(pipelines, "release-by-tag", "build-deb")
    env = build_environment(Event(ref="refs/tags/v1.0.0"), pipeline, step, Status.FAILURE)

    assert env["CONDUIT_TAG"] == "v1.0.0"
    assert env["CONDUIT_BRANCH"] == ""
    assert env["CONDUIT_BUILD_EVENT"] == "tag"
    assert env["CONDUIT_BUILD_STATUS"] == "failure"

def test_settings_become_plugin_variables(pipelines):
    pipeline, step = find(pipelines, "package", "upload-cache")
    base = build_environment(push_event("master"), pipeline, step, Status.SUCCESS)
    store = FakeSecretStore({"cache_bucket": "artifact-cache"})

    env, secrets = step_environment(step, store.resolve, base)

    assert env["PLUGIN_BUCKET"] == "artifact-cache"
    assert env["PLUGIN_REGION"] == "us-east-2"
    assert env["PLUGIN_TARGET"] == "/cache/42/debian/"
    assert secrets == ["artifact-cache"]

def test_environment_secrets_resolved_lazily(pipelines):
    pipeline, step = find(pipelines, "pre-checks", "cargo-clippy")
    store = FakeSecretStore()

    env, secrets = step_environment(step, store.resolve, {"CI": "true"})

    assert env["RUSTFLAGS"] == "-D warnings"
    assert env["CI"] == "true"
    assert secrets == []
    assert store.requested == []

def test_missing_secret_raises(pipelines):
    pipeline, step = find(pipelines, "failed-pre-checks", "notify")
    store = FakeSecretStore({"unrelated": "x"})

    with pytest.raises(SecretResolutionError, match="slack_webhook"):
        step_environment(step, store.resolve, {})

def test_substitute_leaves_unknown_variables():
    env = {"CONDUIT_BRANCH": "dev"}

    assert substitute("/${CONDUIT_BRANCH}/${UNKNOWN}/", env) == "/dev/${UNKNOWN}/"
    assert substitute("$CONDUIT_BRANCH", env) == "$CONDUIT_BRANCH"

@pytest.mark.parametrize("value,expected", [
    (None, ""),
    (True, "true"),
    (False, "false"),
    (5, "5"),
    (["sha256", "md5"], "sha256,md5"),
    ({"a": 1}, '{"a": 1}'),
])
def test_encode_setting(value, expected):
    assert encode_setting(value) == expected
