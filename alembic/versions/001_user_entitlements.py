"""001 – User entitlements.

Revision ID: 001
Revises: None
Create Date: 2026-10-18

One row per directory user. ``scopes`` is always derived from ``roles``
by the application and is never written on its own.
"""

from alembic import op

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_entitlements (
            user_id TEXT PRIMARY KEY,
            email TEXT,
            display_name TEXT,
            roles TEXT[] NOT NULL DEFAULT '{}',
            scopes TEXT[] NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );

        CREATE INDEX IF NOT EXISTS idx_user_entitlements_updated_at
            ON user_entitlements (updated_at DESC);

        CREATE INDEX IF NOT EXISTS idx_user_entitlements_email
            ON user_entitlements (lower(email));
    """)


def downgrade():
    op.execute("""DROP TABLE IF EXISTS user_entitlements;""")
