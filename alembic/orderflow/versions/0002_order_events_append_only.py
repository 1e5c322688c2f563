"""enforce append-only order timeline

Revision ID: 0002_order_events_append_only
Revises: 0001_orderflow
Create Date: 2026-10-13
"""

from alembic import op


revision = "0002_order_events_append_only"
down_revision = "0001_orderflow"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_append_only_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only; % is not allowed', TG_TABLE_NAME, TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_order_events_immutable
        BEFORE UPDATE OR DELETE ON order_events
        FOR EACH ROW
        EXECUTE FUNCTION prevent_append_only_mutation();
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_order_items_immutable
        BEFORE UPDATE ON order_items
        FOR EACH ROW
        EXECUTE FUNCTION prevent_append_only_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_order_items_immutable ON order_items;")
    op.execute("DROP TRIGGER IF EXISTS trg_order_events_immutable ON order_events;")
    op.execute("DROP FUNCTION IF EXISTS prevent_append_only_mutation();")
