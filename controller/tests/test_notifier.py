"""Tests for notification and artifact sinks."""

import asyncio
import json

import httpx
import pytest
from botocore.exceptions import ClientError

from conftest import RecordingSink, push_event
from controller.src.exceptions import ExternalServiceError
from controller.src.models.run import Run
from controller.src.models.step import Status, StepOutcome, StepResult
from controller.src.services.notifier import (
    ObjectStoreSink,
    WebhookSink,
    publish_all,
    render_template,
    template_context,
)

TEMPLATE = (
    "{{ repo.name }} build status: *{{ uppercasefirst build.status }}*\n"
    "Author: {{ build.author }}\n"
    "Commit: {{ truncate build.commit 10 }}"
)

def finished_run(pipelines, name="package", status=Status.FAILURE):
    pipeline = next(p for p in pipelines if p.name == name)
    run = Run(pipeline=pipeline, event=push_event("master", link="https://ci.example/42"))
    run.status = status
    run.steps = [
        StepOutcome(
            name="build-deb",
            step_order=0,
            status=Status.FAILURE,
            result=StepResult(exit_code=2, stdout="make: *** [deb] Error 2\n"),
        )
    ]
    return run

def test_render_template(pipelines):
    text = render_template(TEMPLATE, template_context(finished_run(pipelines)))

    assert text == (
        "casper-node build status: *Failure*\n"
        "Author: octocat\n"
        "Commit: 0123456789"
    )

def test_render_template_helpers_and_unknown_paths():
    context = {"build": {"status": "success", "branch": "Release-1"}}

    assert render_template("{{ uppercase build.status }}", context) == "SUCCESS"
    assert render_template("{{ lowercase build.branch }}", context) == "release-1"
    assert render_template("[{{ build.missing }}]", context) == "[]"
    assert render_template("{{build.status}}", context) == "success"

def test_webhook_sink_posts_rendered_text(pipelines):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"ok": True})

    sink = WebhookSink(
        "https://hooks.example/T000",
        template=TEMPLATE,
        statuses=["failure"],
        transport=httpx.MockTransport(handler),
    )
    asyncio.run(sink.publish(finished_run(pipelines)))

    assert len(requests) == 1
    assert str(requests[0].url) == "https://hooks.example/T000"
    body = json.loads(requests[0].content)
    assert body["text"].startswith("casper-node build status: *Failure*")

def test_webhook_sink_filters_statuses(pipelines):
    requests = []
    transport = httpx.MockTransport(lambda request: requests.append(request) or httpx.Response(200))
    sink = WebhookSink("https://hooks.example", template=TEMPLATE, statuses=["failure"], transport=transport)

    asyncio.run(sink.publish(finished_run(pipelines, status=Status.SUCCESS)))

    assert requests == []

def test_webhook_sink_error(pipelines):
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    sink = WebhookSink("https://hooks.example", template=TEMPLATE, statuses=["failure"], transport=transport)

    with pytest.raises(ExternalServiceError):
        asyncio.run(sink.publish(finished_run(pipelines)))

class FakeS3:
    def __init__(self, error=None):
        self.error = error
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType):
        if self.error:
            raise self.error
        self.objects[(Bucket, Key)] = json.loads(Body)

def test_object_store_sink_uploads_run_report(pipelines):
    client = FakeS3()
    sink = ObjectStoreSink("ci-artifacts", prefix="reports", client=client)
    run = finished_run(pipelines)

    asyncio.run(sink.publish(run))

    key = ("ci-artifacts", "reports/casper-network/casper-node/42/package.json")
    report = client.objects[key]
    assert report["status"] == "failure"
    assert report["steps"][0]["exit_code"] == 2

def test_object_store_sink_error(pipelines):
    error = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
    sink = ObjectStoreSink("ci-artifacts", prefix="", client=FakeS3(error))

    with pytest.raises(ExternalServiceError, match="AccessDenied"):
        asyncio.run(sink.publish(finished_run(pipelines)))

def test_publish_all_isolates_failures(pipelines):
    broken, healthy = RecordingSink(fail=True), RecordingSink()
    run = finished_run(pipelines)

    asyncio.run(publish_all([broken, healthy], run))

    assert healthy.published == [("package", "failure")]
    assert run.status == Status.FAILURE
