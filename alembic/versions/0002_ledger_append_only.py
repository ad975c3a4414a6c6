"""restrict ledger entry updates to reversal

Revision ID: 0002_ledger_append_only
Revises: 0001_coinflow
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_ledger_append_only"
down_revision = "0001_coinflow"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION guard_ledger_entry_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF TG_OP = 'UPDATE'
               AND OLD.status = 'committed'
               AND NEW.status = 'reversed'
               AND NEW.id = OLD.id
               AND NEW.account_id = OLD.account_id
               AND NEW.amount = OLD.amount
               AND NEW.kind = OLD.kind
               AND NEW.idempotency_key = OLD.idempotency_key
               AND NEW.balance_after = OLD.balance_after THEN
                RETURN NEW;
            END IF;
            RAISE EXCEPTION 'ledger_entries is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_append_only
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW
        EXECUTE FUNCTION guard_ledger_entry_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_append_only ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS guard_ledger_entry_mutation();")
