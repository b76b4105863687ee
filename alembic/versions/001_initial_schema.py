"""Initial schema for Jobflow.

Creates jobs, candidates, embedding_tasks, worker_records and
candidate_matches. Enables the pgvector extension for embedding storage.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 1536

ENUMS = {
    "entitytype": ("job", "candidate"),
    "tasktype": ("generate_embedding", "compute_similarity"),
    "taskstatus": ("pending", "processing", "completed", "failed"),
    "workerstatus": ("starting", "running", "paused", "stopping", "stopped"),
    "embeddingstatus": ("pending", "processing", "completed", "failed"),
    "contactmethod": ("email", "phone", "whatsapp"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _embedding_columns() -> list[sa.Column]:
    return [
        sa.Column("embedding_status", _enum("embeddingstatus"), nullable=False, server_default="pending"),
        sa.Column("embedding_vector", Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column("embedding_model", sa.Text(), nullable=True),
        sa.Column("embedding_retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("embedding_error", sa.Text(), nullable=True),
        sa.Column("embedding_generated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).create(op.get_bind(), checkfirst=True)

    # Jobs table
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("seniority", sa.Text(), nullable=True),
        sa.Column("requirements", JSONB, nullable=True),
        sa.Column("tags", JSONB, nullable=True),
        sa.Column("job_type", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("experience_years", sa.Integer(), nullable=True),
        sa.Column("salary_min", sa.Integer(), nullable=True),
        sa.Column("salary_max", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("similar_jobs", JSONB, nullable=True),
        sa.Column("similarity_computed_at", sa.DateTime(timezone=True), nullable=True),
        *_embedding_columns(),
        *_timestamps(),
    )
    op.create_index("ix_jobs_embedding_status", "jobs", ["embedding_status"])

    # Candidates table
    op.create_table(
        "candidates",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("skills", JSONB, nullable=True),
        sa.Column("bio", sa.Text(), nullable=True),
        sa.Column("experience_years", sa.Integer(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("education", JSONB, nullable=True),
        sa.Column("desired_salary_min", sa.Integer(), nullable=True),
        sa.Column("desired_salary_max", sa.Integer(), nullable=True),
        sa.Column("availability", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_embedding_columns(),
        *_timestamps(),
    )
    op.create_index("ix_candidates_embedding_status", "candidates", ["embedding_status"])

    # Embedding task queue
    op.create_table(
        "embedding_tasks",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", _enum("entitytype"), nullable=False),
        sa.Column("task_type", _enum("tasktype"), nullable=False),
        sa.Column("status", _enum("taskstatus"), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_owner", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_embedding_tasks_claim_order",
        "embedding_tasks",
        ["status", "priority", "created_at"],
    )
    # At most one pending or processing task per (entity, task type)
    op.create_index(
        "uq_embedding_tasks_active_entity",
        "embedding_tasks",
        ["entity_id", "task_type"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
    )
    op.create_index("ix_embedding_tasks_next_retry_at", "embedding_tasks", ["next_retry_at"])
    op.create_index("ix_embedding_tasks_processing_owner", "embedding_tasks", ["processing_owner"])

    # Worker registry
    op.create_table(
        "worker_records",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("worker_id", sa.Text(), nullable=False, unique=True),
        sa.Column("host", sa.Text(), nullable=False),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("status", _enum("workerstatus"), nullable=False, server_default="starting"),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("memory_snapshot", JSONB, nullable=True),
        sa.Column("current_task", JSONB, nullable=True),
        sa.Column("config", JSONB, nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_worker_records_last_heartbeat", "worker_records", ["last_heartbeat"])
    op.create_index("ix_worker_records_status", "worker_records", ["status"])

    # Candidate matches
    op.create_table(
        "candidate_matches",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "candidate_id",
            sa.Uuid(),
            sa.ForeignKey("candidates.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("breakdown", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("semantic_score", sa.Float(), nullable=True),
        sa.Column("calculated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("contacted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("contacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contact_method", _enum("contactmethod"), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("job_id", "candidate_id", name="uq_candidate_matches_pair"),
    )
    op.create_index("ix_candidate_matches_job_score", "candidate_matches", ["job_id", "score"])
    op.create_index("ix_candidate_matches_expires_at", "candidate_matches", ["expires_at"])


def downgrade() -> None:
    op.drop_table("candidate_matches")
    op.drop_table("worker_records")
    op.drop_table("embedding_tasks")
    op.drop_table("candidates")
    op.drop_table("jobs")

    for name in reversed(list(ENUMS)):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
