"""create verification tables

Revision ID: a3f1c9d2e7b4
Revises:
Create Date: 2026-10-17 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a3f1c9d2e7b4"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "verification_profiles",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column(
            "verified", sa.Boolean(), server_default=sa.text("FALSE"), nullable=False
        ),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_method", sa.String(length=64), nullable=True),
        sa.Column("last_verification_token_id", sa.Uuid(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "(verified AND verified_at IS NOT NULL AND verification_method IS NOT NULL)"
            " OR (NOT verified AND verified_at IS NULL AND verification_method IS NULL)",
            name="ck_verification_profiles_verified_fields",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_verification_profiles_email",
        "verification_profiles",
        ["email"],
        unique=False,
    )
    op.create_index(
        "ix_verification_profiles_email_lower",
        "verification_profiles",
        [sa.text("lower(email)")],
        unique=False,
    )

    op.create_table(
        "verification_tokens",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subject_id", sa.Uuid(), nullable=False),
        sa.Column("token_hash", sa.String(length=128), nullable=False),
        sa.Column(
            "purpose",
            sa.String(length=64),
            server_default=sa.text("'email_verification'"),
            nullable=False,
        ),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("used_reason", sa.String(length=32), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "max_attempts", sa.Integer(), server_default=sa.text("3"), nullable=False
        ),
        sa.Column("created_by_ip", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("context", postgresql.JSONB(), nullable=True),
        sa.CheckConstraint("expires_at > issued_at", name="ck_verification_tokens_expiry"),
        sa.CheckConstraint("attempts >= 0", name="ck_verification_tokens_attempts"),
        sa.CheckConstraint(
            "max_attempts > 0", name="ck_verification_tokens_max_attempts"
        ),
        sa.ForeignKeyConstraint(
            ["subject_id"], ["verification_profiles.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_hash"),
    )
    op.create_index(
        "ix_verification_tokens_subject_id",
        "verification_tokens",
        ["subject_id"],
        unique=False,
    )
    op.create_index(
        "ix_verification_tokens_expires_at",
        "verification_tokens",
        ["expires_at"],
        unique=False,
    )
    op.create_index(
        "ix_verification_tokens_pending",
        "verification_tokens",
        ["subject_id", "purpose", "expires_at"],
        unique=False,
        postgresql_where=sa.text("used_at IS NULL"),
    )

    op.create_table(
        "verification_audit_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subject_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column("ip", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("related_token_id", sa.Uuid(), nullable=True),
        sa.Column("context", postgresql.JSONB(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_verification_audit_log_subject_id",
        "verification_audit_log",
        ["subject_id"],
        unique=False,
    )
    op.create_index(
        "ix_verification_audit_log_action",
        "verification_audit_log",
        ["action"],
        unique=False,
    )
    op.create_index(
        "ix_verification_audit_subject_created",
        "verification_audit_log",
        ["subject_id", sa.text("created_at DESC")],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(
        "ix_verification_audit_subject_created", table_name="verification_audit_log"
    )
    op.drop_index("ix_verification_audit_log_action", table_name="verification_audit_log")
    op.drop_index(
        "ix_verification_audit_log_subject_id", table_name="verification_audit_log"
    )
    op.drop_table("verification_audit_log")
    op.drop_index("ix_verification_tokens_pending", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_expires_at", table_name="verification_tokens")
    op.drop_index("ix_verification_tokens_subject_id", table_name="verification_tokens")
    op.drop_table("verification_tokens")
    op.drop_index(
        "ix_verification_profiles_email_lower", table_name="verification_profiles"
    )
    op.drop_index("ix_verification_profiles_email", table_name="verification_profiles")
    op.drop_table("verification_profiles")
