"""create crm pipeline, scoring and routing engine tables

Revision ID: 202610170001
Revises:
Create Date: 2026-10-17 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610170001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _record_columns() -> list[sa.Column]:
    return [
        sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("score_breakdown", sa.JSON(), nullable=False),
        sa.Column("priority_id", sa.Uuid(), nullable=True),
        sa.Column("owner_user_id", sa.Uuid(), nullable=False),
        sa.Column("created_by_user_id", sa.Uuid(), nullable=False),
        sa.Column("qualification", sa.JSON(), nullable=False),
        sa.Column("custom_fields", sa.JSON(), nullable=False),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=128), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id", "created_at"], unique=False)

    op.create_table(
        "crm_pipeline",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_pipeline_module_default", "crm_pipeline", ["module", "is_default"], unique=False)

    op.create_table(
        "crm_pipeline_stage",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("slug", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=16), nullable=False, server_default="#3B82F6"),
        sa.Column("sort_order", sa.Integer(), nullable=False),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_won", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_lost", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("lock_previous_fields", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("pipeline_id", "module", "sort_order", name="uq_crm_pipeline_stage_sort_order"),
        sa.UniqueConstraint("pipeline_id", "module", "slug", name="uq_crm_pipeline_stage_slug"),
    )
    op.create_index(
        "ix_crm_pipeline_stage_pipeline_module",
        "crm_pipeline_stage",
        ["pipeline_id", "module"],
        unique=False,
    )

    op.create_table(
        "crm_stage_field_requirement",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("field_key", sa.String(length=255), nullable=False),
        sa.Column("field_label", sa.Text(), nullable=False),
        sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("display_order", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_stage_field_requirement_stage",
        "crm_stage_field_requirement",
        ["stage_id", "display_order"],
        unique=False,
    )

    op.create_table(
        "crm_scoring_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False, server_default="leads"),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("max_score", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_scoring_template_module_default",
        "crm_scoring_template",
        ["module", "is_default"],
        unique=False,
    )

    op.create_table(
        "crm_scoring_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("field_key", sa.String(length=255), nullable=False),
        sa.Column("operator", sa.String(length=32), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("score_delta", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["template_id"], ["crm_scoring_template.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "name", name="uq_crm_scoring_rule_template_name"),
    )

    op.create_table(
        "crm_priority",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("color", sa.String(length=16), nullable=False, server_default="#9CA3AF"),
        sa.Column("icon", sa.String(length=64), nullable=True),
        sa.Column("score_min", sa.Integer(), nullable=True),
        sa.Column("score_max", sa.Integer(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_priority_module_active", "crm_priority", ["module", "is_active"], unique=False)

    op.create_table(
        "crm_routing_rule",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False, server_default="leads"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("assignment_type", sa.String(length=32), nullable=False),
        sa.Column("assigned_to", sa.JSON(), nullable=False),
        sa.Column("round_robin_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_routing_rule_module_priority",
        "crm_routing_rule",
        ["module", "is_active", "priority"],
        unique=False,
    )

    op.create_table(
        "crm_team",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("lead_user_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "crm_lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("company", sa.Text(), nullable=True),
        sa.Column("job_title", sa.Text(), nullable=True),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("country", sa.String(length=64), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        *_record_columns(),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disqualified_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"]),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"]),
        sa.ForeignKeyConstraint(["priority_id"], ["crm_priority.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_lead_stage_id", "crm_lead", ["stage_id"], unique=False)
    op.create_index("ix_crm_lead_owner_user_id", "crm_lead", ["owner_user_id"], unique=False)
    op.create_index("ix_crm_lead_email", "crm_lead", ["email"], unique=False)

    op.create_table(
        "crm_opportunity",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("stage_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(precision=18, scale=2), nullable=True),
        sa.Column("currency_code", sa.String(length=3), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("probability", sa.Integer(), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("next_step", sa.Text(), nullable=True),
        *_record_columns(),
        sa.Column("won_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"]),
        sa.ForeignKeyConstraint(["stage_id"], ["crm_pipeline_stage.id"]),
        sa.ForeignKeyConstraint(["priority_id"], ["crm_priority.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_opportunity_stage_id", "crm_opportunity", ["stage_id"], unique=False)
    op.create_index("ix_crm_opportunity_owner_user_id", "crm_opportunity", ["owner_user_id"], unique=False)

    op.create_table(
        "crm_record_team_member",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("role_name", sa.String(length=128), nullable=False),
        sa.Column("access_level", sa.String(length=16), nullable=False, server_default="read"),
        sa.Column("added_by_user_id", sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "entity_id", "user_id", name="uq_crm_record_team_member_user"),
    )
    op.create_index(
        "ix_crm_record_team_member_entity",
        "crm_record_team_member",
        ["entity_type", "entity_id"],
        unique=False,
    )

    op.create_table(
        "crm_stage_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("from_stage_id", sa.Uuid(), nullable=True),
        sa.Column("to_stage_id", sa.Uuid(), nullable=False),
        sa.Column("changed_by_user_id", sa.Uuid(), nullable=False),
        sa.Column("unlock_reason", sa.Text(), nullable=True),
        sa.Column("time_in_stage_seconds", sa.Integer(), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_stage_history_entity",
        "crm_stage_history",
        ["entity_type", "entity_id", "changed_at"],
        unique=False,
    )

    op.create_table(
        "crm_module_setting",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("module", sa.String(length=32), nullable=False),
        sa.Column("setting_key", sa.String(length=64), nullable=False),
        sa.Column("setting_value", sa.JSON(), nullable=False),
        sa.Column("updated_by_user_id", sa.Uuid(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("module", "setting_key", name="uq_crm_module_setting_key"),
    )

    op.create_table(
        "crm_job",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_type", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="Queued"),
        sa.Column("requested_by_user_id", sa.Uuid(), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("params_json", sa.Text(), nullable=False),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("run_attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_job_type_status_created", "crm_job", ["job_type", "status", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_crm_job_type_status_created", table_name="crm_job")
    op.drop_table("crm_job")
    op.drop_table("crm_module_setting")
    op.drop_index("ix_crm_stage_history_entity", table_name="crm_stage_history")
    op.drop_table("crm_stage_history")
    op.drop_index("ix_crm_record_team_member_entity", table_name="crm_record_team_member")
    op.drop_table("crm_record_team_member")
    op.drop_index("ix_crm_opportunity_owner_user_id", table_name="crm_opportunity")
    op.drop_index("ix_crm_opportunity_stage_id", table_name="crm_opportunity")
    op.drop_table("crm_opportunity")
    op.drop_index("ix_crm_lead_email", table_name="crm_lead")
    op.drop_index("ix_crm_lead_owner_user_id", table_name="crm_lead")
    op.drop_index("ix_crm_lead_stage_id", table_name="crm_lead")
    op.drop_table("crm_lead")
    op.drop_table("crm_team")
    op.drop_index("ix_crm_routing_rule_module_priority", table_name="crm_routing_rule")
    op.drop_table("crm_routing_rule")
    op.drop_index("ix_crm_priority_module_active", table_name="crm_priority")
    op.drop_table("crm_priority")
    op.drop_table("crm_scoring_rule")
    op.drop_index("ix_crm_scoring_template_module_default", table_name="crm_scoring_template")
    op.drop_table("crm_scoring_template")
    op.drop_index("ix_crm_stage_field_requirement_stage", table_name="crm_stage_field_requirement")
    op.drop_table("crm_stage_field_requirement")
    op.drop_index("ix_crm_pipeline_stage_pipeline_module", table_name="crm_pipeline_stage")
    op.drop_table("crm_pipeline_stage")
    op.drop_index("ix_crm_pipeline_module_default", table_name="crm_pipeline")
    op.drop_table("crm_pipeline")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
