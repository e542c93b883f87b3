# tasklane/core/models/task_pg.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class TaskRecordModel(Base):
    """
    Generic item row holding one TaskRecord document.

    - id: str # uuid4, same as data->>'id'
    - data: jsonb # camelCase TaskRecord document (status, taskName, userId, ...)
    - created_at / updated_at: row timestamps, maintained by the repo

    Secondary lookups filter on path expressions inside ``data``; their
    expression indexes are created by ``Database.ensure_schema`` (TASK_INDEX_DDL).
    """

    __tablename__ = 'tasks'
    __table_args__ = (
        Index('idx_tasks_created_at', 'created_at'),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )


class JobModel(Base):
    """
    Broker-side job row for the ``postgres`` queue provider.

    - state: waiting | delayed | active | completed | failed
    - attempts_made: 0-indexed count of finished attempts
    - priority: rank, lower runs first (critical=1 .. low=4)
    - run_at: earliest time the job may be claimed (delay / retry backoff)
    - lock_token / lock_expires_at: lease held by the claiming worker; an expired
      lease marks the job stalled and reclaimable
    """

    __tablename__ = 'tasklane_jobs'
    __table_args__ = (
        Index(
            'idx_tasklane_jobs_claim',
            'queue_name',
            'state',
            'priority',
            'run_at',
        ),
        Index('idx_tasklane_jobs_lock_expires', 'lock_expires_at'),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    queue_name: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text('3'),
    )
    attempts_made: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text('0'),
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text('3'),
    )
    backoff_type: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'exponential'"),
    )
    backoff_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text('1000'),
    )
    timeout_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    lock_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lock_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    result: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    failed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
