"""
Notification and artifact sinks for finished pipeline runs.

Sinks are called once per run that reaches a terminal state. A failing
sink never changes the run's status.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, Iterable, Optional

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from controller.src.config import get_settings
from controller.src.exceptions import ExternalServiceError
from controller.src.models.run import Run
from controller.src.services import queue

logger = logging.getLogger(__name__)
settings = get_settings()

PLACEHOLDER = re.compile(r"\{\{\s*(.*?)\s*\}\}")

def template_context(run: Run) -> Dict[str, Any]:
    event = run.event
    return {
        "build": {
            "status": run.status.value,
            "number": event.build_number,
            "author": event.author,
            "link": event.link,
            "commit": event.commit_sha,
            "branch": event.branch or "",
            "tag": event.tag or "",
            "ref": event.ref or "",
            "event": event.kind.value,
            "message": event.message,
        },
        "repo": {
            "owner": event.repo_owner,
            "name": event.repo_name,
        },
        "pipeline": {
            "name": run.name,
        },
    }

def _lookup(context: Dict[str, Any], path: str) -> str:
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return ""
        value = value[part]
    return "" if value is None else str(value)

def render_template(template: str, context: Dict[str, Any]) -> str:
    """
    Render `{{ path }}` placeholders.

    Supported helpers: uppercasefirst, uppercase, lowercase and
    `truncate <path> <n>`.
    """
    def replace(match):
        parts = match.group(1).split()
        if not parts:
            return ""
        helper = parts[0]
        if helper == "truncate" and len(parts) == 3:
            return _lookup(context, parts[1])[: int(parts[2])]
        if helper == "uppercasefirst" and len(parts) == 2:
            value = _lookup(context, parts[1])
            return value[:1].upper() + value[1:]
        if helper == "uppercase" and len(parts) == 2:
            return _lookup(context, parts[1]).upper()
        if helper == "lowercase" and len(parts) == 2:
            return _lookup(context, parts[1]).lower()
        return _lookup(context, parts[0])

    return PLACEHOLDER.sub(replace, template)

class Sink:
    name = "sink"

    async def publish(self, run: Run):
        raise NotImplementedError

class WebhookSink(Sink):
    """Chat notification through an incoming webhook (Slack compatible)."""

    name = "webhook"

    def __init__(
        self,
        url: str,
        template: str = None,
        statuses: Iterable[str] = None,
        transport: httpx.AsyncBaseTransport = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.template = template or settings.notify_template
        self.statuses = set(settings.notify_statuses if statuses is None else statuses)
        self.transport = transport
        self.timeout = timeout

    def render(self, run: Run) -> str:
        return render_template(self.template, template_context(run))

    async def publish(self, run: Run):
        if run.status.value not in self.statuses:
            return

        payload = {"text": self.render(run)}
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise ExternalServiceError(f"Webhook notification failed: {e}") from e
        logger.info(f"Sent {run.status.value} notification for {run.name}")

class ObjectStoreSink(Sink):
    """Uploads a JSON report of each finished run to S3."""

    name = "object-store"

    def __init__(self, bucket: str, prefix: str = None, client=None, region: Optional[str] = None):
        self.bucket = bucket
        self.prefix = (settings.artifact_prefix if prefix is None else prefix).strip("/")
        self.client = client or boto3.client("s3", region_name=region or settings.artifact_region)

    def object_key(self, run: Run) -> str:
        event = run.event
        parts = [self.prefix, event.repo_owner, event.repo_name, str(event.build_number), f"{run.name}.json"]
        return "/".join(p for p in parts if p)

    async def publish(self, run: Run):
        body = json.dumps(run.to_dict(), indent=2).encode("utf-8")
        key = self.object_key(run)
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError) as e:
            raise ExternalServiceError(f"Upload of s3://{self.bucket}/{key} failed: {e}") from e
        logger.info(f"Uploaded run report to s3://{self.bucket}/{key}")

class RedisStatusSink(Sink):
    """Publishes run status to the live status hash read by the API."""

    name = "redis-status"

    async def publish(self, run: Run):
        await queue.update_run_status(run.id, run.status.value)

async def publish_all(sinks: Iterable[Sink], run: Run):
    """Run every sink, isolating failures from each other and from the run."""
    for sink in sinks:
        try:
            await sink.publish(run)
        except Exception as e:
            logger.warning(f"Sink {sink.name} failed for run {run.name} ({run.id}): {e}")

def create_sinks() -> list:
    sinks = [RedisStatusSink()]
    if settings.notify_webhook_url:
        sinks.append(WebhookSink(settings.notify_webhook_url))
    if settings.artifact_bucket:
        sinks.append(ObjectStoreSink(settings.artifact_bucket))
    return sinks
