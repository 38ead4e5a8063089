"""escrow schema

Revision ID: 0001_escrow_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_escrow_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS escrow;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS escrow.projects (
            project_id text PRIMARY KEY,
            escrow_balance_cents bigint NOT NULL DEFAULT 0 CHECK (escrow_balance_cents >= 0),
            escrow_status text NOT NULL DEFAULT 'none'
                CHECK (escrow_status IN ('none', 'deposit_pending', 'deposit_verified',
                                         'partially_released', 'released', 'refunded')),
            project_status text,
            updated_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    # append-only: no UPDATE/DELETE path exists in the application
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS escrow.ledger_entries (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id text NOT NULL REFERENCES escrow.projects (project_id),
            seq integer NOT NULL CHECK (seq > 0),
            payment_id text,
            action text NOT NULL CHECK (action IN ('hold', 'release', 'refund', 'adjustment')),
            amount_cents bigint NOT NULL CHECK (amount_cents > 0),
            balance_before bigint NOT NULL CHECK (balance_before >= 0),
            balance_after bigint NOT NULL CHECK (balance_after >= 0),
            note text NOT NULL DEFAULT '',
            status_before text NOT NULL,
            status_after text NOT NULL,
            actor_id text,
            created_at timestamptz NOT NULL DEFAULT now(),
            payer_id text,
            CONSTRAINT ledger_entries_project_seq_uniq UNIQUE (project_id, seq),
            CONSTRAINT ledger_entries_amount_matches CHECK (abs(balance_after - balance_before) = amount_cents)
        );
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_ledger_entries_project_order
          ON escrow.ledger_entries (project_id, created_at, seq);
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_ledger_entries_payment
          ON escrow.ledger_entries (project_id, payment_id)
          WHERE payment_id IS NOT NULL;
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS escrow.commissions (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id text NOT NULL REFERENCES escrow.projects (project_id),
            ledger_entry_id uuid NOT NULL REFERENCES escrow.ledger_entries (id),
            commissioner_id text NOT NULL,
            percent numeric(7, 4) NOT NULL,
            amount_cents bigint NOT NULL CHECK (amount_cents >= 0),
            status text NOT NULL DEFAULT 'scheduled' CHECK (status IN ('scheduled', 'released')),
            split jsonb NOT NULL,
            rates jsonb NOT NULL DEFAULT '{}'::jsonb,
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS escrow.payouts (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id text NOT NULL REFERENCES escrow.projects (project_id),
            ledger_entry_id uuid NOT NULL REFERENCES escrow.ledger_entries (id),
            recipient_id text NOT NULL,
            role text NOT NULL CHECK (role IN ('developer', 'commissioner', 'referrer', 'payer')),
            amount_cents bigint NOT NULL CHECK (amount_cents > 0),
            escrow_funded_cents bigint NOT NULL CHECK (escrow_funded_cents >= 0),
            reserve_funded_cents bigint NOT NULL DEFAULT 0 CHECK (reserve_funded_cents >= 0),
            funding_source text NOT NULL CHECK (funding_source IN ('escrow', 'escrow_and_reserve')),
            method text NOT NULL DEFAULT 'pending',
            status text NOT NULL DEFAULT 'scheduled' CHECK (status IN ('scheduled', 'paid', 'failed')),
            created_at timestamptz NOT NULL DEFAULT now(),
            updated_at timestamptz NOT NULL DEFAULT now(),
            CONSTRAINT payouts_funding_sums CHECK (escrow_funded_cents + reserve_funded_cents = amount_cents)
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_payouts_project ON escrow.payouts (project_id, created_at);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS escrow.audit_log (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            project_id text NOT NULL,
            action text NOT NULL,
            actor_id text,
            metadata jsonb NOT NULL DEFAULT '{}'::jsonb,
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_escrow_audit_project ON escrow.audit_log (project_id, created_at);")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS escrow.idempotency_keys (
            project_id text NOT NULL,
            idempotency_key text NOT NULL,
            request_hash text NOT NULL,
            ledger_entry_ids uuid[] NOT NULL,
            created_at timestamptz NOT NULL DEFAULT now(),
            PRIMARY KEY (project_id, idempotency_key)
        );
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS escrow.idempotency_keys;")
    op.execute("DROP TABLE IF EXISTS escrow.audit_log;")
    op.execute("DROP TABLE IF EXISTS escrow.payouts;")
    op.execute("DROP TABLE IF EXISTS escrow.commissions;")
    op.execute("DROP TABLE IF EXISTS escrow.ledger_entries;")
    op.execute("DROP TABLE IF EXISTS escrow.projects;")
