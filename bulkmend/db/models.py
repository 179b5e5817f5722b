from datetime import datetime, timezone
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import String, Integer, Boolean, Text, DateTime, ForeignKey, Index, JSON, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from bulkmend.db.session import Base
from bulkmend.domain.states import JobStatus, JobEvent, QueueStatus

JsonType = JSON().with_variant(JSONB(), "postgresql")

# Shared by the partial unique index on both supported dialects.
OPEN_JOB_PREDICATE = text("status IN ('pending', 'running')")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

class Tenant(Base):
    __tablename__ = "tenants"

    # Platform shop domain, e.g. "acme.myshopify.com"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[str] = mapped_column(String, nullable=False)
    api_version: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="tenant")

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)

    # Requested update
    query_string: Mapped[str] = mapped_column(String(500), nullable=False)
    namespace: Mapped[str] = mapped_column(String(50), nullable=False)
    key: Mapped[str] = mapped_column(String(50), nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    value: Mapped[str] = mapped_column(String(1024), nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=True)
    max_items: Mapped[int] = mapped_column(Integer, default=10_000)

    # Idempotency
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)

    # Results, filled progressively by the worker
    matched_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    failed_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_preview: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    bulk_operation_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="jobs")
    events: Mapped[list["JobEventLog"]] = relationship(
        "JobEventLog", back_populates="job", cascade="all, delete-orphan", order_by="JobEventLog.id"
    )

    __table_args__ = (
        # At most one open job per (tenant, fingerprint); admission relies on this.
        Index(
            "ux_jobs_open_fingerprint",
            "tenant_id",
            "fingerprint",
            unique=True,
            postgresql_where=OPEN_JOB_PREDICATE,
            sqlite_where=OPEN_JOB_PREDICATE,
        ),
    )

class JobEventLog(Base):
    __tablename__ = "job_events"

    # Autoincrement id is the ordering key for a job's trail.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, default="")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (e.g. lock holder, counts, bulk operation id)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")

class QueueEntry(Base):
    __tablename__ = "queue_entries"

    # Entry id is the job id, so enqueueing the same job twice is a no-op.
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[QueueStatus] = mapped_column(String, default=QueueStatus.WAITING, index=True)

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lease
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    lease_token: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_queue_entries_poll", "status", "available_at"),
    )
