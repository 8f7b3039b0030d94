#!/usr/bin/env python
from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from entrywatch.errors import ConfigurationError
from entrywatch.services.notifications import get_notification_channel_health
from entrywatch.services.schema_guard import verify_runtime_schema
from entrywatch.settings import get_settings, validate_settings


@dataclass(slots=True)
class CheckResult:
    name: str
    status: str
    details: dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def _check_configuration() -> CheckResult:
    settings = get_settings()
    try:
        warnings = validate_settings(settings)
    except ConfigurationError as exc:
        return CheckResult(
            name="configuration",
            status="fail",
            details={"error": str(exc)},
        )
    return CheckResult(
        name="configuration",
        status="ok" if not warnings else "warn",
        details={
            "public_web_url": settings.public_web_url,
            "schedule_timezone": settings.schedule_timezone,
            "first_alert_time": settings.first_alert_time,
            "escalation_time": settings.escalation_time,
            "warnings": warnings,
        },
    )


def _check_email_channel() -> CheckResult:
    email_status = get_notification_channel_health()["email"]
    ready = bool(email_status["enabled"] and email_status["configured"])
    return CheckResult(
        name="email_channel",
        status="ok" if ready else "warn",
        details=email_status,
    )


def _check_database_schema() -> CheckResult:
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if not database_url:
        return CheckResult(
            name="database_schema_guard",
            status="warn",
            details={"reason": "DATABASE_URL_NOT_SET"},
        )

    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        schema_result = verify_runtime_schema(engine)
    finally:
        engine.dispose()

    return CheckResult(
        name="database_schema_guard",
        status="ok" if schema_result.ok else "fail",
        details={
            "schema_guard_ok": schema_result.ok,
            "schema_guard_issues": schema_result.issues,
            "schema_guard_warnings": schema_result.warnings,
        },
    )


def main() -> int:
    checks = [
        _check_configuration(),
        _check_email_channel(),
        _check_database_schema(),
    ]
    failed_checks = [check for check in checks if check.status == "fail"]
    summary = {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": len(failed_checks) == 0,
        "checks": [
            {
                "name": check.name,
                "status": check.status,
                "details": check.details,
            }
            for check in checks
        ],
    }
    print(json.dumps(summary, ensure_ascii=False, indent=2))
    return 0 if len(failed_checks) == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
