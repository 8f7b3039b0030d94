from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from entrywatch.db import Base
from entrywatch.models import GasDailyEntry, GasUnit, Member, Organization, User, UserNotificationPreferences
from entrywatch.services.execution_log import ExecutionLog
from entrywatch.services.missing_entries import detect_missing_entries
from entrywatch.services.notifications import NotificationChannel, NotificationMessage
from entrywatch.services.recipients import resolve_members
from entrywatch.services.schema_guard import verify_runtime_schema
from entrywatch.services.sweeps import run_escalation_sweep, run_first_alert_sweep

TODAY = date(2026, 3, 10)


class _RecordingChannel(NotificationChannel):
    configured = True

    def __init__(self) -> None:
        self.recipients: list[str] = []

    def send(self, message: NotificationMessage):  # type: ignore[no-untyped-def]
        self.recipients.extend(message.recipients)
        return {"mode": "sent", "sent": len(message.recipients), "recipients": list(message.recipients)}


def _seed(session: Session) -> None:
    session.add_all(
        [
            Organization(id="org-1", name="Gas Sul"),
            Organization(id="org-2", name="Gas Norte"),
            GasUnit(id="u-cri", code="CRI", name="Criciúma", organization_id="org-1", active=True),
            GasUnit(id="u-uru", code="URU", name="Urussanga", organization_id="org-1", active=True),
            GasUnit(id="u-bot", code="BOT", name="Botucatu", organization_id="org-2", active=True),
            GasUnit(id="u-old", code="OLD", name="Desativada", organization_id="org-1", active=False),
            GasUnit(id="u-orf", code="ORF", name="Sem Org", organization_id=None, active=True),
            GasDailyEntry(id="e1", unit_id="u-cri", date=TODAY, payload={}),
            GasDailyEntry(id="e2", unit_id="u-uru", date=date(2026, 3, 9), payload={}),
            User(id="usr-op", name="Operador", email="op@example.com"),
            User(id="usr-adm", name="Admin", email="adm@example.com"),
            User(id="usr-mem", name="Membro", email="mem@example.com"),
            Member(id="m1", organization_id="org-1", user_id="usr-op", role="operator"),
            Member(id="m2", organization_id="org-1", user_id="usr-adm", role="admin"),
            Member(id="m3", organization_id="org-2", user_id="usr-mem", role="member"),
            UserNotificationPreferences(
                user_id="usr-op",
                missing_entry_alerts_enabled=True,
                escalation_enabled=False,
            ),
        ]
    )
    session.commit()


class StoreQueryTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        _seed(self.session)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_detection_returns_active_routed_units_without_entry(self) -> None:
        missing = detect_missing_entries(self.session, TODAY)

        self.assertEqual(sorted(item.unit_id for item in missing), ["u-bot", "u-uru"])

    def test_members_joined_with_preferences(self) -> None:
        recipients = {item.user_email: item for item in resolve_members(self.session, "org-1")}

        self.assertEqual(set(recipients), {"op@example.com", "adm@example.com"})
        self.assertFalse(recipients["op@example.com"].escalation_enabled)
        self.assertTrue(recipients["adm@example.com"].escalation_enabled)
        self.assertTrue(recipients["adm@example.com"].missing_entry_alerts_enabled)

    async def test_both_sweeps_against_real_queries(self) -> None:
        channel = _RecordingChannel()
        log = ExecutionLog()
        common = {
            "db": self.session,
            "channel": channel,
            "execution_log": log,
            "now_utc": datetime(2026, 3, 10, 21, 0, tzinfo=timezone.utc),
            "tz": ZoneInfo("America/Sao_Paulo"),
            "base_url": "https://gas.example.com",
            "dispatch_timeout_seconds": 5,
        }

        first = await run_first_alert_sweep(**common)
        self.assertEqual(sorted(channel.recipients), ["mem@example.com", "op@example.com"])
        self.assertEqual(first.sent, 2)

        channel.recipients.clear()
        escalation = await run_escalation_sweep(**common)
        # org-2 has no supervisors; org-1's operator is not in the escalation tier.
        self.assertEqual(channel.recipients, ["adm@example.com"])
        self.assertEqual([item.unit.unit_id for item in escalation.outcomes], ["u-uru"])

        self.assertEqual([item.status for item in log.snapshot()], ["success", "success"])


# Only the columns the schema guard requires; no description, payload or per-user timing columns.
_MINIMAL_STORE = (
    "CREATE TABLE gas_units (id VARCHAR(64) PRIMARY KEY, code VARCHAR(32) NOT NULL, name VARCHAR(255) NOT NULL, "
    "active BOOLEAN NOT NULL, organization_id VARCHAR(64))",
    "CREATE TABLE gas_daily_entries (id VARCHAR(64) PRIMARY KEY, unit_id VARCHAR(64) NOT NULL, date DATE NOT NULL)",
    "CREATE TABLE members (id VARCHAR(64) PRIMARY KEY, organization_id VARCHAR(64) NOT NULL, "
    "user_id VARCHAR(64) NOT NULL, role VARCHAR(50) NOT NULL)",
    "CREATE TABLE users (id VARCHAR(64) PRIMARY KEY, name VARCHAR(255) NOT NULL, email VARCHAR(320) NOT NULL)",
    "CREATE TABLE user_notification_preferences (id INTEGER PRIMARY KEY, user_id VARCHAR(64) NOT NULL, "
    "missing_entry_alerts_enabled BOOLEAN NOT NULL, escalation_enabled BOOLEAN NOT NULL)",
    "INSERT INTO gas_units VALUES ('u-a', 'AAA', 'Araranguá', 1, 'org-1')",
    "INSERT INTO gas_units VALUES ('u-b', 'BBB', 'Biguaçu', 1, 'org-1')",
    "INSERT INTO gas_daily_entries VALUES ('e1', 'u-b', '2026-03-10')",
    "INSERT INTO users VALUES ('usr-op', 'Operador', 'op@example.com')",
    "INSERT INTO users VALUES ('usr-adm', 'Admin', 'adm@example.com')",
    "INSERT INTO members VALUES ('m1', 'org-1', 'usr-op', 'operator')",
    "INSERT INTO members VALUES ('m2', 'org-1', 'usr-adm', 'admin')",
    "INSERT INTO user_notification_preferences VALUES (1, 'usr-op', 0, 1)",
)


class MinimalStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        with self.engine.begin() as connection:
            for statement in _MINIMAL_STORE:
                connection.execute(text(statement))
        self.session = Session(self.engine)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_store_accepted_by_schema_guard_is_readable(self) -> None:
        guard = verify_runtime_schema(self.engine)
        self.assertTrue(guard.ok, guard.issues)
        self.assertEqual(len(guard.warnings), 1)

        missing = detect_missing_entries(self.session, TODAY)
        self.assertEqual([item.unit_id for item in missing], ["u-a"])

        recipients = {item.user_email: item for item in resolve_members(self.session, "org-1")}
        self.assertFalse(recipients["op@example.com"].missing_entry_alerts_enabled)
        self.assertTrue(recipients["op@example.com"].escalation_enabled)
        self.assertTrue(recipients["adm@example.com"].missing_entry_alerts_enabled)

    async def test_sweeps_succeed_on_minimal_store(self) -> None:
        channel = _RecordingChannel()
        log = ExecutionLog()
        common = {
            "db": self.session,
            "channel": channel,
            "execution_log": log,
            "now_utc": datetime(2026, 3, 10, 21, 0, tzinfo=timezone.utc),
            "tz": ZoneInfo("America/Sao_Paulo"),
            "base_url": "https://gas.example.com",
            "dispatch_timeout_seconds": 5,
        }

        first = await run_first_alert_sweep(**common)
        escalation = await run_escalation_sweep(**common)

        self.assertEqual(first.skipped, 1)
        self.assertEqual(escalation.sent, 1)
        self.assertEqual(channel.recipients, ["adm@example.com"])
        self.assertEqual([item.status for item in log.snapshot()], ["success", "success"])


if __name__ == "__main__":
    unittest.main()
