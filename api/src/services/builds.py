"""
Build creation shared by webhook and manual triggers.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from api.src.config import get_settings
from api.src.models.pipeline import Build
from api.src.models.run import BuildEvent
from api.src.services.queue import enqueue_event, next_build_number

logger = logging.getLogger(__name__)
settings = get_settings()

TERMINAL_STATUSES = {"success", "failure", "skipped", "cancelled"}

async def queue_build(db: AsyncSession, event: BuildEvent) -> Build:
    """Number the event, record its build row and hand it to the controller."""
    number = await next_build_number()
    update = {"build_number": number}
    if not event.repo_owner:
        update["repo_owner"] = settings.repo_owner
    if not event.repo_name:
        update["repo_name"] = settings.repo_name
    if settings.repo_link:
        update["link"] = f"{settings.repo_link}/{number}"
    event = event.model_copy(update=update)

    build = Build(
        id=event.id,
        number=number,
        kind=event.kind,
        branch=event.branch,
        ref=event.ref,
        commit_sha=event.commit_sha,
        author=event.author,
        message=event.message,
        cron=event.cron,
        status="pending",
        created_at=datetime.utcnow(),
    )
    db.add(build)
    await db.commit()

    await enqueue_event(event)
    logger.info(f"Build {number} ({event.id}) queued for {event.kind} on {event.ref}")
    return build
