"""Initial knowledge schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18

Creates:
- scopes and private_scope_links (one root per team, one private scope per owner/coupled scope)
- facts and fact_key_heads (supersession log with one head per key)
- remember_previews (two-phase Remember state)
- learning_objectives, team_questions, question_assignees
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

scope_type = sa.Enum("team", "project", "private", name="scopetype")
fact_source_type = sa.Enum(
    "conversation", "document", "manual", "integration", "user_statement",
    name="factsourcetype",
)
preview_state = sa.Enum("drafting", "confirmed", "cancelled", name="previewstate")
question_status = sa.Enum("open", "answered", "closed", name="questionstatus")
objective_status = sa.Enum("active", "paused", "completed", name="objectivestatus")


def upgrade() -> None:
    op.create_table(
        "scopes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("parent_scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=True),
        sa.Column("scope_type", scope_type, nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("coupled_scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("root_team_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("root_team_id"),
    )
    op.create_index("ix_scopes_team_id", "scopes", ["team_id"])
    op.create_index("ix_scopes_parent_scope_id", "scopes", ["parent_scope_id"])
    op.create_index("ix_scopes_owner_id", "scopes", ["owner_id"])
    op.create_index("ix_scopes_coupled_scope_id", "scopes", ["coupled_scope_id"])
    op.create_index("ix_scopes_created_at", "scopes", ["created_at"])

    op.create_table(
        "private_scope_links",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("coupled_scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=False),
        sa.Column("private_scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("private_scope_id"),
        sa.UniqueConstraint("owner_id", "coupled_scope_id", name="uq_private_scope_owner_coupled"),
    )
    op.create_index("ix_private_scope_links_team_id", "private_scope_links", ["team_id"])
    op.create_index(
        "ix_private_scope_links_coupled_scope_id", "private_scope_links", ["coupled_scope_id"]
    )

    op.create_table(
        "facts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_name", sa.String(), nullable=True),
        sa.Column("attribute", sa.String(), nullable=True),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("entity_key", sa.String(), nullable=True),
        sa.Column("attribute_key", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("source_type", fact_source_type, nullable=False),
        sa.Column("source_id", sa.String(), nullable=True),
        sa.Column("source_quote", sa.Text(), nullable=True),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("superseded_by", sa.Uuid(), sa.ForeignKey("facts.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1",
            name="ck_fact_confidence_range",
        ),
    )
    op.create_index("ix_facts_team_id", "facts", ["team_id"])
    op.create_index("ix_facts_scope_id", "facts", ["scope_id"])
    op.create_index("ix_facts_category", "facts", ["category"])
    op.create_index("ix_facts_created_at", "facts", ["created_at"])
    op.create_index("idx_fact_scope_key", "facts", ["scope_id", "entity_key", "attribute_key"])
    op.create_index("idx_fact_scope_current", "facts", ["scope_id", "superseded_by", "valid_until"])

    op.create_table(
        "fact_key_heads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=False),
        sa.Column("entity_key", sa.String(), nullable=False),
        sa.Column("attribute_key", sa.String(), nullable=False),
        sa.Column("current_fact_id", sa.Uuid(), sa.ForeignKey("facts.id"), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("scope_id", "entity_key", "attribute_key", name="uq_fact_key_head"),
    )

    op.create_table(
        "remember_previews",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("source_text", sa.Text(), nullable=False),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("extracted_facts", sa.JSON(), nullable=False),
        sa.Column("conflicts", sa.JSON(), nullable=False),
        sa.Column("is_mismatch", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("mismatch_suggestion", sa.String(), nullable=True),
        sa.Column("state", preview_state, nullable=False, server_default="drafting"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_remember_previews_team_id", "remember_previews", ["team_id"])
    op.create_index("ix_remember_previews_scope_id", "remember_previews", ["scope_id"])
    op.create_index("ix_remember_previews_state", "remember_previews", ["state"])
    op.create_index("ix_remember_previews_expires_at", "remember_previews", ["expires_at"])

    op.create_table(
        "learning_objectives",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", objective_status, nullable=False, server_default="active"),
        sa.Column("assigned_to", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("max_questions", sa.Integer(), nullable=False, server_default="20"),
        sa.Column("questions_asked", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("questions_asked <= max_questions", name="ck_objective_budget"),
    )
    op.create_index("ix_learning_objectives_team_id", "learning_objectives", ["team_id"])
    op.create_index("ix_learning_objectives_scope_id", "learning_objectives", ["scope_id"])
    op.create_index("ix_learning_objectives_assigned_to", "learning_objectives", ["assigned_to"])
    op.create_index("ix_learning_objectives_created_at", "learning_objectives", ["created_at"])
    op.create_index("idx_objective_team_status", "learning_objectives", ["team_id", "status"])

    op.create_table(
        "team_questions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("scope_id", sa.Uuid(), sa.ForeignKey("scopes.id"), nullable=True),
        sa.Column("asked_by", sa.Uuid(), nullable=True),
        sa.Column("asked_by_raven", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("ai_answer", sa.Text(), nullable=True),
        sa.Column("ai_confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("status", question_status, nullable=False, server_default="open"),
        sa.Column("answer", sa.Text(), nullable=True),
        sa.Column("answered_by", sa.Uuid(), nullable=True),
        sa.Column("answered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "parent_question_id", sa.Uuid(), sa.ForeignKey("team_questions.id"), nullable=True
        ),
        sa.Column(
            "learning_objective_id",
            sa.Uuid(),
            sa.ForeignKey("learning_objectives.id"),
            nullable=True,
        ),
        sa.Column("context", sa.Text(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_team_questions_team_id", "team_questions", ["team_id"])
    op.create_index("ix_team_questions_scope_id", "team_questions", ["scope_id"])
    op.create_index("ix_team_questions_parent_question_id", "team_questions", ["parent_question_id"])
    op.create_index(
        "ix_team_questions_learning_objective_id", "team_questions", ["learning_objective_id"]
    )
    op.create_index("ix_team_questions_created_at", "team_questions", ["created_at"])
    op.create_index("idx_team_question_status", "team_questions", ["team_id", "status"])

    op.create_table(
        "question_assignees",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("question_id", sa.Uuid(), sa.ForeignKey("team_questions.id"), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("assigned_by", sa.Uuid(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("question_id", "user_id", name="uq_question_assignee"),
    )
    op.create_index("ix_question_assignees_question_id", "question_assignees", ["question_id"])
    op.create_index("ix_question_assignees_user_id", "question_assignees", ["user_id"])


def downgrade() -> None:
    op.drop_table("question_assignees")
    op.drop_table("team_questions")
    op.drop_table("learning_objectives")
    op.drop_table("remember_previews")
    op.drop_table("fact_key_heads")
    op.drop_table("facts")
    op.drop_table("private_scope_links")
    op.drop_table("scopes")

    bind = op.get_bind()
    for enum_type in (objective_status, question_status, preview_state, fact_source_type, scope_type):
        enum_type.drop(bind, checkfirst=True)
