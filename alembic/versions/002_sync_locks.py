"""002 – Sync locks for single-replica background jobs.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

One row per held lease. The primary key on lock_name makes INSERT the
atomic acquire; expires_at lets a crashed holder's lease be cleared.
"""

from alembic import op

# revision identifiers
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade():
    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_locks (
            lock_name TEXT PRIMARY KEY,
            lock_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            expires_at TIMESTAMPTZ NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sync_locks_expires
            ON sync_locks (expires_at);
    """)


def downgrade():
    op.execute("""DROP TABLE IF EXISTS sync_locks;""")
