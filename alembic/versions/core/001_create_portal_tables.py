"""create_portal_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS integrations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            access_token TEXT NOT NULL,
            refresh_token TEXT,
            expires_at TIMESTAMPTZ,
            is_active BOOLEAN NOT NULL DEFAULT true,
            scope TEXT,
            account_info JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_integrations_user_provider UNIQUE (user_id, provider)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider_id TEXT,
            source TEXT NOT NULL DEFAULT 'user',
            title TEXT NOT NULL,
            description TEXT,
            location TEXT,
            starts_at TIMESTAMPTZ NOT NULL,
            ends_at TIMESTAMPTZ NOT NULL,
            all_day BOOLEAN NOT NULL DEFAULT false,
            recurring BOOLEAN NOT NULL DEFAULT false,
            series_id TEXT,
            recurrence_rule TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS emails (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider_id TEXT,
            source TEXT NOT NULL DEFAULT 'user',
            thread_id TEXT,
            sender TEXT NOT NULL DEFAULT '',
            to_addresses TEXT[] NOT NULL DEFAULT '{}',
            cc_addresses TEXT[] NOT NULL DEFAULT '{}',
            bcc_addresses TEXT[] NOT NULL DEFAULT '{}',
            subject TEXT NOT NULL DEFAULT '',
            body TEXT NOT NULL DEFAULT '',
            html_body TEXT,
            snippet TEXT NOT NULL DEFAULT '',
            labels TEXT[] NOT NULL DEFAULT '{}',
            is_read BOOLEAN NOT NULL DEFAULT true,
            is_important BOOLEAN NOT NULL DEFAULT false,
            received_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            provider_id TEXT,
            source TEXT NOT NULL DEFAULT 'user',
            title TEXT NOT NULL,
            notes TEXT,
            due_at TIMESTAMPTZ,
            completed BOOLEAN NOT NULL DEFAULT false,
            completed_at TIMESTAMPTZ,
            priority TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS email_attachments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email_id UUID NOT NULL REFERENCES emails (id) ON DELETE CASCADE,
            provider_attachment_id TEXT NOT NULL,
            filename TEXT NOT NULL,
            mime_type TEXT NOT NULL,
            size_bytes INTEGER NOT NULL DEFAULT 0,
            content_id TEXT,
            is_inline BOOLEAN NOT NULL DEFAULT false,
            data BYTEA,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_email_attachments_provider_id UNIQUE (email_id, provider_attachment_id)
        )
    """)

    # Natural sync key: one row per (user, provider record).
    for table in ("calendar_events", "emails", "tasks"):
        op.execute(f"""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_{table}_user_provider_id
            ON {table} (user_id, provider_id)
            WHERE provider_id IS NOT NULL
        """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_events_series
        ON calendar_events (user_id, series_id)
        WHERE series_id IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_calendar_events_user_starts_at
        ON calendar_events (user_id, starts_at)
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_emails_user_received_at
        ON emails (user_id, received_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS email_attachments")
    op.execute("DROP TABLE IF EXISTS tasks")
    op.execute("DROP TABLE IF EXISTS emails")
    op.execute("DROP TABLE IF EXISTS calendar_events")
    op.execute("DROP TABLE IF EXISTS integrations")
