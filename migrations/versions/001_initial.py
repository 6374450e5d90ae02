"""Create access-control schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "children",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("display_name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_children"),
        sa.ForeignKeyConstraint(
            ["owner_id"],
            ["users.id"],
            name="fk_children_owner_id_users",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_children_owner_id", "children", ["owner_id"])

    op.create_table(
        "family_access_grants",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("granted_by", sa.Uuid(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.Uuid(), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_family_access_grants"),
        sa.ForeignKeyConstraint(
            ["owner_id"],
            ["users.id"],
            name="fk_family_access_grants_owner_id_users",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name="fk_family_access_grants_user_id_users",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint(
            "owner_id != user_id", name="ck_family_access_grants_no_self_grant"
        ),
        sa.CheckConstraint(
            "role != 'owner'", name="ck_family_access_grants_owner_not_grantable"
        ),
    )
    op.create_index(
        "ix_family_access_grants_owner_id", "family_access_grants", ["owner_id"]
    )
    op.create_index("ix_family_access_grants_user_id", "family_access_grants", ["user_id"])
    op.create_index(
        "ix_family_access_grants_owner_user",
        "family_access_grants",
        ["owner_id", "user_id"],
    )
    # At most one active grant per (owner, user)
    op.create_index(
        "uq_family_access_grants_active",
        "family_access_grants",
        ["owner_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("revoked_at IS NULL"),
    )

    op.create_table(
        "family_privacy_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("data_sharing", sa.JSON(), nullable=False),
        sa.Column("communications", sa.JSON(), nullable=False),
        sa.Column("data_retention", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_family_privacy_settings"),
        sa.ForeignKeyConstraint(
            ["owner_id"],
            ["users.id"],
            name="fk_family_privacy_settings_owner_id_users",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("owner_id", name="uq_family_privacy_settings_owner_id"),
    )

    op.create_table(
        "child_privacy_settings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("child_id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column(
            "inherit_from_parent", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "restricted_access", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("allowed_users", sa.JSON(), nullable=False),
        sa.Column("custom_permissions", sa.JSON(), nullable=False),
        sa.Column("communication_restrictions", sa.JSON(), nullable=False),
        sa.Column("data_retention_override", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name="pk_child_privacy_settings"),
        sa.ForeignKeyConstraint(
            ["child_id"],
            ["children.id"],
            name="fk_child_privacy_settings_child_id_children",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["owner_id"],
            ["users.id"],
            name="fk_child_privacy_settings_owner_id_users",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("child_id", name="uq_child_privacy_settings_child_id"),
    )
    op.create_index(
        "ix_child_privacy_settings_owner_id", "child_privacy_settings", ["owner_id"]
    )

    op.create_table(
        "capability_tokens",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("child_id", sa.Uuid(), nullable=False),
        sa.Column("created_by", sa.Uuid(), nullable=False),
        sa.Column("provider_name", sa.String(length=200), nullable=False),
        sa.Column("provider_email", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("prefix", sa.String(length=12), nullable=False),
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("permissions", sa.JSON(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("max_access_count", sa.Integer(), nullable=True),
        sa.Column("access_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_capability_tokens"),
        sa.ForeignKeyConstraint(
            ["owner_id"],
            ["users.id"],
            name="fk_capability_tokens_owner_id_users",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["child_id"],
            ["children.id"],
            name="fk_capability_tokens_child_id_children",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_capability_tokens_owner_id", "capability_tokens", ["owner_id"])
    op.create_index("ix_capability_tokens_child_id", "capability_tokens", ["child_id"])
    op.create_index("ix_capability_tokens_prefix", "capability_tokens", ["prefix"])
    op.create_index(
        "ix_capability_tokens_token_hash", "capability_tokens", ["token_hash"], unique=True
    )

    op.create_table(
        "user_sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("device_fingerprint", sa.String(length=128), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=512), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_validated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("elevated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invalidated_reason", sa.String(length=100), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_user_sessions"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name="fk_user_sessions_user_id_users",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_user_sessions_user_id", "user_sessions", ["user_id"])
    op.create_index("ix_user_sessions_status", "user_sessions", ["status"])

    op.create_table(
        "access_log_entries",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Uuid(), nullable=True),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("actor_type", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("resource_type", sa.String(length=64), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=True),
        sa.Column("child_id", sa.Uuid(), nullable=True),
        sa.Column("outcome", sa.String(length=16), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_access_log_entries"),
    )
    op.create_index("ix_access_log_entries_actor_id", "access_log_entries", ["actor_id"])
    op.create_index("ix_access_log_entries_action", "access_log_entries", ["action"])
    op.create_index(
        "ix_access_log_entries_created_at", "access_log_entries", ["created_at"]
    )
    op.create_index(
        "ix_access_log_entries_owner_created",
        "access_log_entries",
        ["owner_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("access_log_entries")
    op.drop_table("user_sessions")
    op.drop_table("capability_tokens")
    op.drop_table("child_privacy_settings")
    op.drop_table("family_privacy_settings")
    op.drop_table("family_access_grants")
    op.drop_table("children")
    op.drop_table("users")
