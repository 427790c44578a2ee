from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Float, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from api.src.db.database import Base

class Build(Base):
    """One repository event and everything it triggered."""

    __tablename__ = "builds"

    id = Column(Uuid(as_uuid=False), primary_key=True)
    number = Column(Integer, nullable=False, default=0)
    kind = Column(String(50), nullable=False)
    branch = Column(String(255))
    ref = Column(String(255))
    commit_sha = Column(String(40))
    author = Column(String(255))
    message = Column(Text)
    cron = Column(String(255))
    status = Column(String(50), default="pending")
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    runs = relationship("PipelineRun", back_populates="build")

class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id = Column(Uuid(as_uuid=False), primary_key=True)
    build_id = Column(Uuid(as_uuid=False), ForeignKey("builds.id", ondelete="CASCADE"))
    name = Column(String(255), nullable=False)
    status = Column(String(50), default="pending")
    upstream_status = Column(String(50))
    error = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    build = relationship("Build", back_populates="runs")
    steps = relationship("PipelineStep", back_populates="run", order_by="PipelineStep.step_order")

class PipelineStep(Base):
    __tablename__ = "pipeline_steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=False), ForeignKey("pipeline_runs.id", ondelete="CASCADE"))
    name = Column(String(255), nullable=False)
    step_order = Column(Integer, nullable=False)
    status = Column(String(50), default="pending")
    exit_code = Column(Integer)
    duration = Column(Float)
    logs = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    run = relationship("PipelineRun", back_populates="steps")
