from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from entrywatch.services.schema_guard import verify_runtime_schema


class _FakeResult:
    def scalar(self):  # type: ignore[no-untyped-def]
        return 1


class _FakeConnection:
    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False

    def execute(self, _statement):  # type: ignore[no-untyped-def]
        return _FakeResult()


class _FakeEngine:
    def __init__(self, *, reachable: bool = True):
        self._reachable = reachable

    def connect(self):  # type: ignore[no-untyped-def]
        if not self._reachable:
            raise OperationalError("SELECT 1", {}, Exception("could not connect"))
        return _FakeConnection()


class _FakeInspector:
    def __init__(self, *, columns_by_table: dict[str, set[str]]):
        self._columns_by_table = columns_by_table

    def get_table_names(self):  # type: ignore[no-untyped-def]
        return list(self._columns_by_table)

    def get_columns(self, table_name: str):  # type: ignore[no-untyped-def]
        return [{"name": item} for item in self._columns_by_table[table_name]]


_FULL_SCHEMA = {
    "gas_units": {"id", "code", "name", "description", "active", "organization_id"},
    "gas_daily_entries": {"id", "unit_id", "date", "payload"},
    "members": {"id", "organization_id", "user_id", "role"},
    "users": {"id", "name", "email"},
    "user_notification_preferences": {
        "id",
        "user_id",
        "missing_entry_alerts_enabled",
        "preferred_notification_hour",
        "escalation_enabled",
        "escalation_delay_hours",
    },
}


class SchemaGuardTests(unittest.TestCase):
    def test_verify_runtime_schema_ok_when_required_columns_exist(self) -> None:
        with patch("entrywatch.services.schema_guard.inspect", return_value=_FakeInspector(columns_by_table=_FULL_SCHEMA)):
            result = verify_runtime_schema(_FakeEngine())  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(result.issues, [])
        self.assertEqual(result.warnings, [])

    def test_verify_runtime_schema_reports_missing_tables_and_columns(self) -> None:
        columns = dict(_FULL_SCHEMA)
        columns.pop("user_notification_preferences")
        columns["gas_units"] = {"id", "code", "name"}

        with patch("entrywatch.services.schema_guard.inspect", return_value=_FakeInspector(columns_by_table=columns)):
            result = verify_runtime_schema(_FakeEngine())  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertIn("MISSING_TABLE:user_notification_preferences", result.issues)
        self.assertIn("MISSING_COLUMNS:gas_units:active,organization_id", result.issues)

    def test_optional_preference_columns_only_warn(self) -> None:
        columns = dict(_FULL_SCHEMA)
        columns["user_notification_preferences"] = {"id", "user_id", "missing_entry_alerts_enabled", "escalation_enabled"}

        with patch("entrywatch.services.schema_guard.inspect", return_value=_FakeInspector(columns_by_table=columns)):
            result = verify_runtime_schema(_FakeEngine())  # type: ignore[arg-type]

        self.assertTrue(result.ok)
        self.assertEqual(len(result.warnings), 1)
        self.assertTrue(result.warnings[0].startswith("MISSING_OPTIONAL_COLUMNS:user_notification_preferences:"))

    def test_unreachable_database(self) -> None:
        result = verify_runtime_schema(_FakeEngine(reachable=False))  # type: ignore[arg-type]

        self.assertFalse(result.ok)
        self.assertEqual(result.issues, ["DATABASE_UNREACHABLE:OperationalError"])
        self.assertEqual(result.to_dict()["issue_count"], 1)


if __name__ == "__main__":
    unittest.main()
