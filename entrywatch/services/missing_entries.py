from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, load_only

from entrywatch.errors import StoreError
from entrywatch.models import GasDailyEntry, GasUnit
from entrywatch.settings import get_schedule_timezone

logger = logging.getLogger("entrywatch.detection")


@dataclass(frozen=True, slots=True)
class MissingEntryUnit:
    unit_id: str
    unit_name: str
    unit_code: str
    organization_id: str

    @property
    def label(self) -> str:
        return f"{self.unit_code} - {self.unit_name}"


def normalize_day(value: date | datetime, *, tz: ZoneInfo | None = None) -> date:
    """Reduce a timestamp to the civil date it falls on in the schedule timezone."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(tz or get_schedule_timezone()).date()
    return value


def local_today(now: datetime, *, tz: ZoneInfo | None = None) -> date:
    return normalize_day(now, tz=tz or get_schedule_timezone())


def detect_missing_entries(session: Session, day: date | datetime) -> list[MissingEntryUnit]:
    target_day = normalize_day(day)
    try:
        active_units = list(
            session.scalars(
                select(GasUnit)
                .options(
                    # Columns outside REQUIRED_TABLE_COLUMNS may be absent from the store.
                    load_only(GasUnit.id, GasUnit.code, GasUnit.name, GasUnit.active, GasUnit.organization_id)
                )
                .where(GasUnit.active.is_(True))
                .order_by(GasUnit.code.asc(), GasUnit.id.asc())
            ).all()
        )
        submitted_unit_ids = set(
            session.scalars(
                select(GasDailyEntry.unit_id).where(GasDailyEntry.date == target_day).distinct()
            ).all()
        )
    except SQLAlchemyError as exc:
        logger.error(
            "missing_entry_detection_failed",
            extra={
                "day": target_day.isoformat(),
                "error": str(exc)[:500],
            },
        )
        raise StoreError(str(exc)) from exc

    missing: list[MissingEntryUnit] = []
    unrouted_unit_ids: list[str] = []
    for unit in active_units:
        if not unit.active or unit.id in submitted_unit_ids:
            continue
        if not unit.organization_id:
            unrouted_unit_ids.append(unit.id)
            continue
        missing.append(
            MissingEntryUnit(
                unit_id=unit.id,
                unit_name=unit.name,
                unit_code=unit.code,
                organization_id=unit.organization_id,
            )
        )

    if unrouted_unit_ids:
        logger.info(
            "missing_entry_units_without_organization",
            extra={
                "day": target_day.isoformat(),
                "unit_ids": unrouted_unit_ids,
            },
        )
    return missing
