"""init

Revision ID: 5c1e0d7a9b42
Revises:
Create Date: 2026-10-18 09:12:40.118203

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e0d7a9b42"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmation_token_digest", sa.String(64), nullable=True),
        sa.Column("confirmation_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_users_email", "users", ["email"], unique=True)
    op.create_index(
        "idx_users_confirmation_token_digest",
        "users",
        ["confirmation_token_digest"],
        unique=True,
    )

    op.create_table(
        "external_identities",
        sa.Column("guid", sa.String(64), primary_key=True),
        sa.Column("subject", sa.String(512), nullable=False),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("display_name", sa.String(512), nullable=True),
        sa.Column("avatar_url", sa.String(1024), nullable=True),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_external_identities_subject",
        "external_identities",
        ["subject"],
        unique=True,
    )
    op.create_index(
        "idx_external_identities_user_id",
        "external_identities",
        ["user_id"],
        unique=True,
    )

    op.create_table(
        "session_token_denylist",
        sa.Column("jti", sa.String(64), primary_key=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_session_token_denylist_expires_at",
        "session_token_denylist",
        ["expires_at"],
    )


def downgrade() -> None:
    op.drop_table("session_token_denylist")
    op.drop_table("external_identities")
    op.drop_table("users")
