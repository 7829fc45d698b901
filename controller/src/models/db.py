"""
Database models for controller (sync version).
"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Float
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
import uuid

Base = declarative_base()

class BuildRun(Base):
    __tablename__ = "build_runs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    repository_id = Column(UUID(as_uuid=True))
    commit_sha = Column(String(40))
    branch = Column(String(255))
    status = Column(String(50), default="pending")
    triggered_by = Column(String(255))
    config = Column(JSONB)
    substitutions = Column(JSONB)
    timeout_seconds = Column(Float)
    machine_type = Column(String(50))
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class BuildStep(Base):
    __tablename__ = "build_steps"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("build_runs.id"))
    step_id = Column(String(255), nullable=False)
    unit = Column(String(500), nullable=False)
    args = Column(JSONB)
    wait_for = Column(JSONB)
    status = Column(String(50), default="pending")
    exit_code = Column(Integer)
    error = Column(Text)
    step_order = Column(Integer, nullable=False)
    logs = Column(Text)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
