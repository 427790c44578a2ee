from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional

from api.src.config import get_settings
from api.src.db.database import get_db
from api.src.models.pipeline import Build, PipelineRun
from api.src.models.run import BuildCreate, BuildEvent, BuildResponse
from api.src.services.builds import TERMINAL_STATUSES, queue_build
from api.src.services.queue import get_run_status, request_cancel

router = APIRouter(prefix="/builds", tags=["builds"])
settings = get_settings()

def _load_build(build_id: str):
    return (
        select(Build)
        .options(selectinload(Build.runs).selectinload(PipelineRun.steps))
        .where(Build.id == build_id)
    )

async def _get_build_or_404(db: AsyncSession, build_id: str) -> Build:
    result = await db.execute(_load_build(build_id))
    build = result.scalar_one_or_none()
    if not build:
        raise HTTPException(status_code=404, detail="Build not found")
    return build

@router.post("", status_code=201)
async def trigger_build(request: BuildCreate, db: AsyncSession = Depends(get_db)):
    """Manually trigger a build for a branch or ref."""
    branch = request.branch
    if branch is None and request.ref is None:
        branch = settings.default_branch

    event = BuildEvent(
        kind=request.kind,
        branch=branch,
        ref=request.ref,
        commit_sha=request.commit_sha,
        message=request.message,
        author=request.triggered_by or "manual",
    )
    if event.kind is None:
        ref = event.ref or ""
        event.kind = "tag" if ref.startswith("refs/tags/") else "push"
    if event.ref is None and event.kind == "push":
        event.ref = f"refs/heads/{branch}"

    build = await queue_build(db, event)
    return {"status": "queued", "build_id": build.id, "number": build.number}

@router.get("", response_model=List[BuildResponse])
async def list_builds(
    limit: int = 20,
    offset: int = 0,
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """List builds, newest first."""
    query = (
        select(Build)
        .options(selectinload(Build.runs).selectinload(PipelineRun.steps))
        .order_by(Build.number.desc())
    )

    if status:
        query = query.where(Build.status == status)

    query = query.limit(limit).offset(offset)

    result = await db.execute(query)
    return result.scalars().all()

@router.get("/stats")
async def get_build_stats(db: AsyncSession = Depends(get_db)):
    """Get build and pipeline run counts by status."""
    result = await db.execute(
        select(Build.status, func.count(Build.id)).group_by(Build.status)
    )
    build_counts = {row[0]: row[1] for row in result.all()}

    result = await db.execute(
        select(PipelineRun.status, func.count(PipelineRun.id)).group_by(PipelineRun.status)
    )
    run_counts = {row[0]: row[1] for row in result.all()}

    return {
        "builds": build_counts,
        "runs": run_counts,
        "total_builds": sum(build_counts.values()),
    }

@router.get("/{build_id}", response_model=BuildResponse)
async def get_build(build_id: str, db: AsyncSession = Depends(get_db)):
    """Get a build with its pipeline runs and steps."""
    build = await _get_build_or_404(db, build_id)

    # Redis holds the freshest status while the build is in flight
    live_status = await get_run_status(build_id)
    if live_status and build.status not in TERMINAL_STATUSES:
        build.status = live_status
    return build

@router.get("/{build_id}/logs")
async def get_build_logs(build_id: str, db: AsyncSession = Depends(get_db)):
    """Get recorded output of every step, grouped by pipeline."""
    build = await _get_build_or_404(db, build_id)

    return {
        "build_id": build_id,
        "pipelines": [
            {
                "name": run.name,
                "status": run.status,
                "steps": [
                    {
                        "name": step.name,
                        "status": step.status,
                        "exit_code": step.exit_code,
                        "logs": step.logs,
                        "started_at": step.started_at,
                        "finished_at": step.finished_at,
                    }
                    for step in run.steps
                ],
            }
            for run in build.runs
        ],
    }

@router.post("/{build_id}/cancel", status_code=202)
async def cancel_build(build_id: str, db: AsyncSession = Depends(get_db)):
    """Request cancellation of a queued or running build."""
    build = await _get_build_or_404(db, build_id)

    status = await get_run_status(build_id) or build.status
    if status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Build already finished with status {status}")

    await request_cancel(build_id)
    return {"status": "cancelling", "build_id": build_id}
