"""create identity, jobs and extraction cache tables

Revision ID: 3c1f7a9e5b20
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "3c1f7a9e5b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "identity_user",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("password_hash", sa.String(length=200), nullable=False),
        sa.Column(
            "role",
            sa.Enum("MEMBER", "ADMIN", name="userrole", native_enum=False),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_index("ix_identity_user_email", "identity_user", ["email"], unique=True)
    op.create_index("ix_identity_user_role", "identity_user", ["role"])

    op.create_table(
        "jobs_job",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "owner_id", sa.Uuid(as_uuid=True), sa.ForeignKey("identity_user.id"), nullable=False
        ),
        sa.Column("source_ref", sa.String(length=1024), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column(
            "state",
            sa.Enum(
                "pending", "processing", "processed", "failed", name="jobstate", native_enum=False
            ),
            nullable=False,
        ),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(length=50), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("from_cache", sa.Boolean(), nullable=False),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extraction_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("terminal_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("source_ref", name="uq_jobs_job_source_ref"),
    )
    op.create_index("ix_jobs_job_owner_id", "jobs_job", ["owner_id"])
    op.create_index("ix_jobs_job_sha256", "jobs_job", ["sha256"])
    op.create_index("ix_jobs_job_state", "jobs_job", ["state"])
    op.create_index("ix_jobs_job_owner_state", "jobs_job", ["owner_id", "state"])

    op.create_table(
        "extraction_cache",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=False),
        sa.Column("owner_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("model", sa.String(length=100), nullable=False),
        sa.Column("prompt_version", sa.String(length=50), nullable=False),
        sa.Column("result_json", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_extraction_cache_fingerprint", "extraction_cache", ["fingerprint"], unique=True
    )
    op.create_index("ix_extraction_cache_owner_id", "extraction_cache", ["owner_id"])


def downgrade() -> None:
    op.drop_index("ix_extraction_cache_owner_id", table_name="extraction_cache")
    op.drop_index("ix_extraction_cache_fingerprint", table_name="extraction_cache")
    op.drop_table("extraction_cache")
    op.drop_index("ix_jobs_job_owner_state", table_name="jobs_job")
    op.drop_index("ix_jobs_job_state", table_name="jobs_job")
    op.drop_index("ix_jobs_job_sha256", table_name="jobs_job")
    op.drop_index("ix_jobs_job_owner_id", table_name="jobs_job")
    op.drop_table("jobs_job")
    op.drop_index("ix_identity_user_role", table_name="identity_user")
    op.drop_index("ix_identity_user_email", table_name="identity_user")
    op.drop_table("identity_user")
