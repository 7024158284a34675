import importlib.util
from pathlib import Path
from types import SimpleNamespace

MIGRATION = Path(__file__).resolve().parents[2] / "db" / "migrations" / "versions" / "001_fail_secure_row_policies.py"


def _load():
    found = importlib.util.spec_from_file_location("fail_secure_row_policies", MIGRATION)
    module = importlib.util.module_from_spec(found)
    found.loader.exec_module(module)
    return module


def test_upgrade_clears_legacy_policies_before_creating(monkeypatch):
    migration = _load()
    executed = []
    monkeypatch.setattr(migration, "op", SimpleNamespace(execute=executed.append))
    monkeypatch.setattr(migration, "_table_exists", lambda table: table == "devices")
    monkeypatch.setattr(
        migration, "_existing_policies",
        lambda table: ["user_devices_select_policy", "user_devices_update_policy"],
    )

    migration.upgrade()

    policy_stmts = [s for s in executed if "POLICY" in s]
    assert policy_stmts[:2] == [
        'DROP POLICY IF EXISTS "user_devices_select_policy" ON devices',
        'DROP POLICY IF EXISTS "user_devices_update_policy" ON devices',
    ]
    assert policy_stmts[-1].startswith("CREATE POLICY tenant_isolation ON devices")
    # tables that do not exist yet are left alone
    assert not any(" ON assets" in s for s in executed)
