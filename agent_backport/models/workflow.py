"""
Workflow run and step checkpoint models.

A run records how far a workflow has durably progressed; a step row records
the outcome of one named unit of work so a re-driven run can replay it
instead of repeating its side effect.
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from agent_backport.db.base import Base


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"

    run_id = Column(String(64), primary_key=True)

    workflow_name = Column(String, nullable=False)

    # not_started | running | succeeded | aborted
    status = Column(String, nullable=False, default="not_started", index=True)

    # Index of the first step without a durable result
    next_step_index = Column(Integer, nullable=False, default=0)

    error = Column(Text, nullable=True)
    failed_step = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"

    run_id = Column(String(64), primary_key=True)
    step_name = Column(String, primary_key=True)

    step_index = Column(Integer, nullable=True)

    # running | completed | failed
    status = Column(String, nullable=False, default="running")

    attempts = Column(Integer, nullable=False, default=0)

    # JSON-serialised step return value, set once completed
    result = Column(JSON, nullable=True)

    error = Column(Text, nullable=True)

    # fatal | transient | internal
    error_kind = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), onupdate=func.now(), server_default=func.now()
    )
