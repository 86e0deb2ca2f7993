"""
Backport job models - the externally visible record of one backport attempt.
"""

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)

from agent_backport.db.base import Base


class BackportJob(Base):
    __tablename__ = "backport_jobs"

    id = Column(String(64), primary_key=True)

    # "owner/name"
    repository = Column(String, nullable=False, index=True)
    installation_id = Column(BigInteger, nullable=False)

    source_pr = Column(Integer, nullable=False)
    target_branch = Column(String, nullable=False)

    requested_by = Column(String, nullable=False)
    comment_id = Column(BigInteger, nullable=False)

    # pending | in_progress | completed | failed
    status = Column(String, nullable=False, default="pending", index=True)

    # Set only on completion; mutually exclusive with error
    result_pr = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed')",
            name="ck_backport_job_status",
        ),
        CheckConstraint(
            "(status = 'completed' AND result_pr IS NOT NULL AND error IS NULL)"
            " OR (status = 'failed' AND error IS NOT NULL AND result_pr IS NULL)"
            " OR (status IN ('pending', 'in_progress'))",
            name="ck_backport_job_outcome",
        ),
    )


class JobLog(Base):
    """Append-only log entries, joined with the job record on read."""

    __tablename__ = "backport_job_logs"

    # Insertion order is the log order
    seq = Column(Integer, primary_key=True, autoincrement=True)

    job_id = Column(
        String(64),
        ForeignKey("backport_jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    message = Column(Text, nullable=False)
    logged_at = Column(DateTime(timezone=True), nullable=False)
