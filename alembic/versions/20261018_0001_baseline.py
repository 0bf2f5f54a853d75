"""scheduling baseline

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def _json_type() -> sa.TypeEngine:
    if op.get_context().dialect.name == "postgresql":
        return postgresql.JSONB()
    return sa.Text()


def _has_table(table_name: str) -> bool:
    insp = sa.inspect(op.get_bind())
    return table_name in set(insp.get_table_names())


def _existing_indexes(table_name: str) -> set[str]:
    insp = sa.inspect(op.get_bind())
    return {str(i.get("name", "")) for i in insp.get_indexes(table_name)}


def _create_index_if_missing(name: str, table_name: str, cols: list[str]) -> None:
    if name in _existing_indexes(table_name):
        return
    op.create_index(name, table_name, cols, unique=False)


def upgrade() -> None:
    json_type = _json_type()

    if not _has_table("global_schedules"):
        op.create_table(
            "global_schedules",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("platform", sa.String(), nullable=False),
            sa.Column("schedule_type", sa.String(), nullable=False),
            sa.Column("interval_hours", sa.Integer(), nullable=False),
            sa.Column("batch_index", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("external_schedule_id", sa.String(), nullable=False),
            sa.Column("cron_expression", sa.String(), nullable=False),
            sa.Column("max_batch_capacity", sa.Integer(), nullable=False),
            sa.Column("current_business_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_active", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_input_json", json_type, nullable=True),
            sa.Column("last_run_at", sa.String(), nullable=True),
            sa.Column("next_run_at", sa.String(), nullable=True),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.UniqueConstraint(
                "platform", "schedule_type", "interval_hours", "batch_index", name="uq_global_schedules_group_batch"
            ),
            sa.UniqueConstraint("external_schedule_id", name="uq_global_schedules_external_id"),
        )
    _create_index_if_missing(
        "idx_global_schedules_group",
        "global_schedules",
        ["platform", "schedule_type", "interval_hours", "batch_index"],
    )

    if not _has_table("business_schedule_mappings"):
        op.create_table(
            "business_schedule_mappings",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("team_id", sa.String(), nullable=False),
            sa.Column("business_id", sa.String(), nullable=False),
            sa.Column("platform", sa.String(), nullable=False),
            sa.Column("schedule_id", sa.String(), sa.ForeignKey("global_schedules.id"), nullable=False),
            sa.Column("identifier", sa.Text(), nullable=False),
            sa.Column("assigned_interval_hours", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.UniqueConstraint("business_id", "platform", name="uq_business_schedule_mappings_business_platform"),
        )
    _create_index_if_missing(
        "idx_business_schedule_mappings_schedule", "business_schedule_mappings", ["schedule_id", "created_at", "id"]
    )
    _create_index_if_missing("idx_business_schedule_mappings_team", "business_schedule_mappings", ["team_id", "platform"])
    _create_index_if_missing(
        "idx_business_schedule_mappings_identifier", "business_schedule_mappings", ["platform", "identifier"]
    )

    if not _has_table("custom_interval_overrides"):
        op.create_table(
            "custom_interval_overrides",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("team_id", sa.String(), nullable=False),
            sa.Column("platform", sa.String(), nullable=False),
            sa.Column("interval_hours", sa.Integer(), nullable=False),
            sa.Column("expires_at", sa.String(), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("set_by", sa.String(), nullable=True),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.UniqueConstraint("team_id", "platform", name="uq_custom_interval_overrides_team_platform"),
        )

    if not _has_table("retry_entries"):
        op.create_table(
            "retry_entries",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("business_id", sa.String(), nullable=False),
            sa.Column("team_id", sa.String(), nullable=False),
            sa.Column("platform", sa.String(), nullable=False),
            sa.Column("identifier", sa.Text(), nullable=False),
            sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("next_attempt_at", sa.String(), nullable=False),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("status", sa.String(), nullable=False, server_default="pending"),
            sa.Column("last_run_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.UniqueConstraint("business_id", "platform", name="uq_retry_entries_business_platform"),
        )
    _create_index_if_missing("idx_retry_entries_due", "retry_entries", ["status", "next_attempt_at", "id"])
    _create_index_if_missing("idx_retry_entries_updated_at", "retry_entries", ["updated_at"])

    if not _has_table("collection_runs"):
        op.create_table(
            "collection_runs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("run_id", sa.String(), nullable=False),
            sa.Column("kind", sa.String(), nullable=False),
            sa.Column("schedule_id", sa.String(), nullable=True),
            sa.Column("business_id", sa.String(), nullable=True),
            sa.Column("platform", sa.String(), nullable=False),
            sa.Column("status", sa.String(), nullable=False, server_default="running"),
            sa.Column("result_location", sa.Text(), nullable=True),
            sa.Column("outcomes_json", json_type, nullable=True),
            sa.Column("processed_at", sa.String(), nullable=True),
            sa.Column("created_at", sa.String(), nullable=False),
            sa.Column("updated_at", sa.String(), nullable=False),
            sa.UniqueConstraint("run_id", name="uq_collection_runs_run_id"),
        )
    _create_index_if_missing("idx_collection_runs_processed_at", "collection_runs", ["processed_at"])
    _create_index_if_missing("idx_collection_runs_schedule", "collection_runs", ["schedule_id", "created_at"])


def downgrade() -> None:
    for name in (
        "collection_runs",
        "retry_entries",
        "custom_interval_overrides",
        "business_schedule_mappings",
        "global_schedules",
    ):
        if _has_table(name):
            op.drop_table(name)
