from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, Index, text
from config.database import Base

JOB_STATUSES = ("pending", "processing", "completed", "failed")
LIVE_STATUSES = ("pending", "processing")


class Job(Base):
    __tablename__ = "pipeline_job"
    __table_args__ = (
        Index("ix_job_claim", "queue", "status", "run_at"),
        Index("ix_job_ordering", "ordering_key", "status"),
        # A dedupe key identifies at most one live job
        Index(
            "uq_job_live_dedupe_key",
            "dedupe_key",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing')"),
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue = Column(String(50), nullable=False)
    name = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, default=0, nullable=False)

    # Jobs sharing an ordering key run one at a time, in id order
    ordering_key = Column(String(100), nullable=True)
    dedupe_key = Column(String(150), nullable=True)

    # Reliability tracking
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)
    last_error = Column(Text, nullable=True)
    run_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Job(id={self.id}, queue={self.queue}, name={self.name}, status={self.status})>"


class QueueControl(Base):
    """Operator switch per queue; a paused queue keeps accepting jobs but hands none out"""
    __tablename__ = "pipeline_queue_control"

    queue = Column(String(50), primary_key=True)
    paused = Column(Boolean, default=False, nullable=False)
    reason = Column(Text, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
