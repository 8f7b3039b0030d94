from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


# Columns the sweeps select; the store's owner may add anything else.
REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "gas_units": {"id", "code", "name", "active", "organization_id"},
    "gas_daily_entries": {"id", "unit_id", "date"},
    "members": {"id", "organization_id", "user_id", "role"},
    "users": {"id", "name", "email"},
    "user_notification_preferences": {"id", "user_id", "missing_entry_alerts_enabled", "escalation_enabled"},
}

OPTIONAL_TABLE_COLUMNS: dict[str, set[str]] = {
    "user_notification_preferences": {"preferred_notification_hour", "escalation_delay_hours"},
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)

    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1")).scalar()
    except SQLAlchemyError as exc:
        return SchemaGuardResult(
            ok=False,
            checked_at_utc=checked_at_utc,
            issues=[f"DATABASE_UNREACHABLE:{exc.__class__.__name__}"],
        )

    inspector = inspect(engine)
    table_names = set(inspector.get_table_names())

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        if table_name not in table_names:
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

        missing_optional = sorted(
            item for item in OPTIONAL_TABLE_COLUMNS.get(table_name, set()) if item not in column_names
        )
        if missing_optional:
            warnings.append(f"MISSING_OPTIONAL_COLUMNS:{table_name}:{','.join(missing_optional)}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
