"""iou ledger and settlement attempts

Revision ID: 0001_iou_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_iou_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.users (
          id text PRIMARY KEY,
          username text NULL UNIQUE,
          last_seen_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.ious (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          owner_id text NOT NULL,
          direction text NOT NULL,
          counterparty text NOT NULL,
          amount numeric(20, 7) NOT NULL,
          note text NULL,
          due_date date NULL,
          status text NOT NULL DEFAULT 'pending',
          created_at timestamptz NOT NULL DEFAULT now(),
          accepted_at timestamptz NULL,
          paid_at timestamptz NULL,
          cancelled_at timestamptz NULL,
          CONSTRAINT ious_direction_check CHECK (direction IN ('outgoing', 'incoming')),
          CONSTRAINT ious_status_check CHECK (status IN ('pending', 'accepted', 'paid', 'cancelled')),
          CONSTRAINT ious_amount_positive CHECK (amount > 0),
          CONSTRAINT ious_paid_requires_paid_at CHECK (status <> 'paid' OR paid_at IS NOT NULL)
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_ious_owner ON app.ious (owner_id, created_at DESC);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_ious_counterparty ON app.ious (lower(counterparty));")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.settlement_attempts (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          iou_id uuid NOT NULL REFERENCES app.ious(id) ON DELETE CASCADE,
          provider_payment_id text NULL UNIQUE,
          phase text NOT NULL DEFAULT 'initiated',
          amount numeric(20, 7) NOT NULL,
          memo text NOT NULL,
          txid text NULL,
          last_error text NULL,
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now(),
          CONSTRAINT settlement_attempts_phase_check
            CHECK (phase IN ('initiated', 'approved', 'completed', 'cancelled', 'errored'))
        );
        """
    )
    # one attempt in flight per IOU
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_settlement_attempts_single_flight
          ON app.settlement_attempts (iou_id)
          WHERE phase IN ('initiated', 'approved');
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_settlement_attempts_phase_created
          ON app.settlement_attempts (phase, created_at);
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.settlement_attempts;")
    op.execute("DROP TABLE IF EXISTS app.ious;")
    op.execute("DROP TABLE IF EXISTS app.users;")
