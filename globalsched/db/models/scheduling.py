from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from globalsched.db.base import Base
from globalsched.db.types import JSONText


class GlobalSchedule(Base):
    """One externally registered recurring job batch."""

    __tablename__ = "global_schedules"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    schedule_type: Mapped[str] = mapped_column(String, nullable=False)
    interval_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_schedule_id: Mapped[str] = mapped_column(String, nullable=False)
    cron_expression: Mapped[str] = mapped_column(String, nullable=False)
    max_batch_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    current_business_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_input_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONText(), nullable=True)
    last_run_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    next_run_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "platform", "schedule_type", "interval_hours", "batch_index", name="uq_global_schedules_group_batch"
        ),
        UniqueConstraint("external_schedule_id", name="uq_global_schedules_external_id"),
        Index("idx_global_schedules_group", "platform", "schedule_type", "interval_hours", "batch_index"),
    )


class BusinessScheduleMapping(Base):
    __tablename__ = "business_schedule_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[str] = mapped_column(String, nullable=False)
    business_id: Mapped[str] = mapped_column(String, nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    schedule_id: Mapped[str] = mapped_column(String, ForeignKey("global_schedules.id"), nullable=False)
    identifier: Mapped[str] = mapped_column(Text, nullable=False)
    assigned_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("business_id", "platform", name="uq_business_schedule_mappings_business_platform"),
        Index("idx_business_schedule_mappings_schedule", "schedule_id", "created_at", "id"),
        Index("idx_business_schedule_mappings_team", "team_id", "platform"),
        Index("idx_business_schedule_mappings_identifier", "platform", "identifier"),
    )


class CustomIntervalOverride(Base):
    __tablename__ = "custom_interval_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[str] = mapped_column(String, nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    interval_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    set_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("team_id", "platform", name="uq_custom_interval_overrides_team_platform"),
    )


class RetryEntry(Base):
    __tablename__ = "retry_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_id: Mapped[str] = mapped_column(String, nullable=False)
    team_id: Mapped[str] = mapped_column(String, nullable=False)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    identifier: Mapped[str] = mapped_column(Text, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[str] = mapped_column(String, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    last_run_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("business_id", "platform", name="uq_retry_entries_business_platform"),
        Index("idx_retry_entries_due", "status", "next_attempt_at", "id"),
        Index("idx_retry_entries_updated_at", "updated_at"),
    )


class CollectionRun(Base):
    """Run ledger: attribution target and idempotency guard for callbacks."""

    __tablename__ = "collection_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    schedule_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    business_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    platform: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="running")
    result_location: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outcomes_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONText(), nullable=True)
    processed_at: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("run_id", name="uq_collection_runs_run_id"),
        Index("idx_collection_runs_processed_at", "processed_at"),
        Index("idx_collection_runs_schedule", "schedule_id", "created_at"),
    )
