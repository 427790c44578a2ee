"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from api.src.db.database import get_db
from api.src.services.builds import queue_build
from api.src.services.github import verify_signature, parse_webhook_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

HANDLED_EVENTS = {"push", "pull_request"}

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.

    Pushes to branches and tags and updated pull requests become builds;
    the controller decides which pipelines they trigger.
    """
    # Get raw body for signature verification
    body = await request.body()

    if x_hub_signature_256:
        if not verify_signature(body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event not in HANDLED_EVENTS:
        return {
            "status": "ignored",
            "event": x_github_event,
            "message": f"Event type '{x_github_event}' not handled"
        }

    event = parse_webhook_payload(payload, x_github_event)
    if event is None:
        logger.info(f"Nothing to build for {x_github_event} webhook")
        return {"status": "skipped", "event": x_github_event}

    build = await queue_build(db, event)
    return {
        "status": "queued",
        "build_id": build.id,
        "number": build.number,
        "event": event.kind,
    }
