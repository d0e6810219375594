from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Uuid
from sqlalchemy.sql import func

from database.base import Base


class AssemblyJob(Base):
    """
    Assembly job tracking.

    One row per chunk or stitch request. The row is the job-status record
    the progress poller reads; status moves pending -> processing and then
    to exactly one terminal state (completed or failed).
    """

    __tablename__ = "assembly_jobs"

    job_id = Column(
        Uuid, unique=True, index=True, nullable=False, primary_key=True, default=uuid4
    )

    # Job kind and status
    kind = Column(String, nullable=False)  # "chunk" or "stitch"
    status = Column(
        String, nullable=False, default="pending"
    )  # pending, processing, completed, failed

    # Progress tracking
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    stage = Column(String, nullable=True)

    # Optimistic lock; bumped on every status write
    version = Column(Integer, nullable=False, default=1, server_default="1")

    # Request payload (ChunkAudioRequest / StitchVideosRequest JSON)
    request = Column(JSON, nullable=False)

    # Output details
    result_url = Column(String, nullable=True)
    result = Column(JSON, nullable=True)

    # Error handling
    error_message = Column(String, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_assembly_jobs_status", status),)

    def __repr__(self):
        return f"<AssemblyJob job_id={self.job_id} kind={self.kind} status={self.status} progress={self.progress}>"
