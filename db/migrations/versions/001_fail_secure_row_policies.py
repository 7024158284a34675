"""Fail-secure row policies and the security alert NOTIFY trigger.

- Enable + FORCE RLS on every tenant-scoped table that exists
- Every pre-existing policy on those tables is dropped
- One policy per table: visible only with app.current_user_id set, and then
  only own rows unless app.current_role = 'admin'
- security_alerts INSERT → pg_notify('new_security_alert', row as JSON)

Revision ID: 001_fail_secure_row_policies
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from __future__ import annotations
from alembic import op
import sqlalchemy as sa

from src.shared.database.policy import TENANT_SCOPED_POLICIES

# revision identifiers, used by Alembic.
revision = "001_fail_secure_row_policies"
down_revision = None
branch_labels = None
depends_on = None

ALERT_CHANNEL = "new_security_alert"


def _table_exists(table: str) -> bool:
    bind = op.get_bind()
    return bind.execute(sa.text("SELECT to_regclass(:t) IS NOT NULL"), {"t": table}).scalar()


def _existing_policies(table: str) -> list[str]:
    bind = op.get_bind()
    rows = bind.execute(
        sa.text(
            "SELECT policyname FROM pg_policies "
            "WHERE schemaname = current_schema() AND tablename = :t ORDER BY policyname"
        ),
        {"t": table},
    )
    return [r[0] for r in rows]


def upgrade() -> None:
    # ---------- Row policies ----------
    for policy in TENANT_SCOPED_POLICIES:
        # Tables are owned by the application schema; skip any not created yet
        if not _table_exists(policy.table):
            continue
        # Legacy policies (user_devices_select_policy and co.) would be OR-ed with ours
        for stmt in policy.ddl(_existing_policies(policy.table)):
            op.execute(stmt)

    # ---------- Alert notification ----------
    # metadata can be large; NOTIFY payloads are capped at 8000 bytes
    op.execute(f"""
    CREATE OR REPLACE FUNCTION notify_new_security_alert() RETURNS trigger
    LANGUAGE plpgsql AS $$
    BEGIN
      PERFORM pg_notify('{ALERT_CHANNEL}', (to_jsonb(NEW) - 'metadata')::text);
      RETURN NEW;
    END;
    $$;
    """)
    if _table_exists("security_alerts"):
        op.execute("DROP TRIGGER IF EXISTS security_alert_notify ON security_alerts")
        op.execute("""
        CREATE TRIGGER security_alert_notify
        AFTER INSERT ON security_alerts
        FOR EACH ROW EXECUTE FUNCTION notify_new_security_alert()
        """)


def downgrade() -> None:
    if _table_exists("security_alerts"):
        op.execute("DROP TRIGGER IF EXISTS security_alert_notify ON security_alerts")
    op.execute("DROP FUNCTION IF EXISTS notify_new_security_alert()")

    for policy in TENANT_SCOPED_POLICIES:
        if not _table_exists(policy.table):
            continue
        for stmt in policy.drop_ddl():
            op.execute(stmt)
