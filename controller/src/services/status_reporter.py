"""
Report build, pipeline run and step status to the database.
"""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from controller.src.config import get_settings
from controller.src.models.db import Build, PipelineRun, PipelineStep
from controller.src.models.event import Event
from controller.src.models.run import Run
from controller.src.models.step import StepOutcome

logger = logging.getLogger(__name__)

@lru_cache()
def get_session_factory() -> sessionmaker:
    # Sync database connection for controller
    engine = create_engine(get_settings().database_url)
    return sessionmaker(bind=engine)

class StatusReporter:
    """Writes run state through a sync session factory."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    def build_updated(self, event: Event, status: str, finished: bool = False):
        """Create or update the build row for an event."""
        with self.session_factory() as session:
            build = session.get(Build, event.id)
            if build is None:
                build = Build(
                    id=event.id,
                    number=event.build_number,
                    kind=event.kind.value,
                    branch=event.branch,
                    ref=event.ref,
                    commit_sha=event.commit_sha,
                    author=event.author,
                    message=event.message,
                    cron=event.cron,
                )
                session.add(build)
            now = datetime.utcnow()
            # API-created rows arrive without a start time
            if status == "running" and build.started_at is None:
                build.started_at = now
            build.status = status
            build.updated_at = now
            if finished:
                build.finished_at = now
            session.commit()
        logger.info(f"Updated build {event.id} status to {status}")

    def run_updated(self, run: Run):
        """Create or update a pipeline run row."""
        with self.session_factory() as session:
            row = session.get(PipelineRun, run.id)
            if row is None:
                row = PipelineRun(id=run.id, build_id=run.event.id, name=run.name)
                session.add(row)
            row.status = run.status.value
            row.upstream_status = run.upstream_status.value if run.upstream_status else None
            row.error = run.error
            row.started_at = run.started_at
            row.finished_at = run.finished_at
            row.updated_at = datetime.utcnow()
            session.commit()
        logger.info(f"Updated run {run.name} ({run.id}) status to {run.status.value}")

    def step_updated(self, run: Run, outcome: StepOutcome):
        """Create or update a pipeline step row."""
        with self.session_factory() as session:
            row = self._get_step(session, run.id, outcome.step_order)
            if row is None:
                row = PipelineStep(run_id=run.id, name=outcome.name, step_order=outcome.step_order)
                session.add(row)
            row.status = outcome.status.value
            row.started_at = outcome.started_at
            row.finished_at = outcome.finished_at
            if outcome.result is not None:
                row.exit_code = outcome.result.exit_code
                row.duration = outcome.result.duration
                row.logs = outcome.logs
            row.updated_at = datetime.utcnow()
            session.commit()
        logger.debug(f"Updated step {outcome.step_order} of run {run.id} to {outcome.status.value}")

    @staticmethod
    def _get_step(session: Session, run_id: str, step_order: int) -> Optional[PipelineStep]:
        return session.execute(
            select(PipelineStep)
            .where(PipelineStep.run_id == run_id)
            .where(PipelineStep.step_order == step_order)
        ).scalar_one_or_none()

