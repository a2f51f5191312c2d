"""create_reminders_tables

Revision ID: commitments_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "commitments_001"
down_revision = None
branch_labels = ("commitments",)
depends_on = None


def upgrade() -> None:
    # Journals are written by the journaling app; only read here for history.
    op.execute("""
        CREATE TABLE IF NOT EXISTS journals (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id TEXT NOT NULL,
            content TEXT NOT NULL,
            date DATE NOT NULL DEFAULT CURRENT_DATE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS reminders (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            owner_id TEXT NOT NULL,
            source_journal_id TEXT,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            event_timestamp_utc TIMESTAMPTZ NOT NULL,
            original_sentence TEXT NOT NULL DEFAULT '',
            status VARCHAR NOT NULL DEFAULT 'proposed',
            external_calendar_event_id TEXT,
            last_sync_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT reminders_status_check
                CHECK (status IN ('proposed', 'confirmed', 'synced', 'cancelled')),
            CONSTRAINT reminders_external_id_synced_check
                CHECK ((status = 'synced') = (external_calendar_event_id IS NOT NULL))
        )
    """)

    # Indexes
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_journals_owner_date
            ON journals (owner_id, date DESC)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reminders_owner_event
            ON reminders (owner_id, event_timestamp_utc)
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_reminders_owner_active_created
            ON reminders (owner_id, created_at DESC)
            WHERE status <> 'cancelled'
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS reminders")
    op.execute("DROP TABLE IF EXISTS journals")
