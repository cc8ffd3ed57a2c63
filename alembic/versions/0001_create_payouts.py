"""create payouts table

Revision ID: 0001_create_payouts
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_create_payouts"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    # Marketplace-owned tables; no-op where they already exist.
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.users (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          external_id text NOT NULL UNIQUE,
          created_at timestamptz NOT NULL DEFAULT now()
        );

        CREATE TABLE IF NOT EXISTS app.businesses (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          owner_id uuid NOT NULL REFERENCES app.users(id),
          payout_bank_code text,
          payout_account_number text,
          payout_account_name text,
          payout_updated_at timestamptz,
          created_at timestamptz NOT NULL DEFAULT now()
        );

        CREATE TABLE IF NOT EXISTS app.payments (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          amount numeric(14, 2) NOT NULL,
          currency text,
          status text NOT NULL,
          processor_fee_total numeric(14, 2),
          created_at timestamptz NOT NULL DEFAULT now()
        );

        CREATE TABLE IF NOT EXISTS app.orders (
          id text PRIMARY KEY,
          amount numeric(14, 2) NOT NULL,
          status text NOT NULL,
          seller_id text,
          buyer_id text,
          payment_id uuid REFERENCES app.payments(id),
          created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payouts (
          id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
          order_id text NOT NULL,
          seller_id text NOT NULL,
          payment_id uuid,
          amount_gross numeric(14, 2) NOT NULL,
          platform_fee_seller numeric(14, 2) NOT NULL,
          processor_fee_allocated numeric(14, 2) NOT NULL,
          amount_net numeric(14, 2) NOT NULL,
          currency text NOT NULL,
          status text NOT NULL,
          reference text NOT NULL,
          chapa_reference text,
          bank_reference text,
          attempts integer NOT NULL DEFAULT 0,
          last_error text,
          created_at timestamptz NOT NULL DEFAULT now(),
          updated_at timestamptz NOT NULL DEFAULT now(),
          CONSTRAINT payouts_order_id_key UNIQUE (order_id),
          CONSTRAINT payouts_reference_key UNIQUE (reference),
          CONSTRAINT payouts_status_check
            CHECK (status IN ('pending', 'approved', 'queued', 'success', 'failed', 'reverted')),
          CONSTRAINT payouts_attempts_check CHECK (attempts >= 0),
          CONSTRAINT payouts_amount_net_check CHECK (amount_net > 0)
        );
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_payouts_status_updated_at ON app.payouts (status, updated_at);")
    op.execute("CREATE INDEX IF NOT EXISTS ix_payouts_seller_id ON app.payouts (seller_id, created_at DESC);")


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS app.ix_payouts_seller_id;")
    op.execute("DROP INDEX IF EXISTS app.ix_payouts_status_updated_at;")
    op.execute("DROP TABLE IF EXISTS app.payouts;")
