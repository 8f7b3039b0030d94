from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from entrywatch.services.sweeps import JOB_ESCALATION, JOB_FIRST_ALERT, SWEEP_JOBS
from entrywatch.settings import Settings, get_settings, parse_hhmm

logger = logging.getLogger("entrywatch.scheduler")


@dataclass(frozen=True, slots=True)
class DailyTrigger:
    job_name: str
    local_time: time
    run: Callable[[], Awaitable[Any]]


def build_daily_triggers(settings: Settings | None = None) -> list[DailyTrigger]:
    settings = settings or get_settings()
    return [
        DailyTrigger(
            job_name=JOB_FIRST_ALERT,
            local_time=parse_hhmm(settings.first_alert_time),
            run=SWEEP_JOBS[JOB_FIRST_ALERT],
        ),
        DailyTrigger(
            job_name=JOB_ESCALATION,
            local_time=parse_hhmm(settings.escalation_time),
            run=SWEEP_JOBS[JOB_ESCALATION],
        ),
    ]


def next_fire_at(trigger: DailyTrigger, now_utc: datetime, tz: ZoneInfo) -> datetime:
    local_now = now_utc.astimezone(tz)
    candidate = datetime.combine(local_now.date(), trigger.local_time, tzinfo=tz)
    if candidate <= local_now:
        candidate = datetime.combine(local_now.date() + timedelta(days=1), trigger.local_time, tzinfo=tz)
    return candidate.astimezone(timezone.utc)


class DailyTriggerScheduler:
    """Fires each trigger once per civil day in the schedule timezone.

    Triggers whose time already passed when the loop starts are not
    replayed; they next fire on the following day.
    """

    def __init__(
        self,
        triggers: list[DailyTrigger],
        *,
        tz: ZoneInfo,
        poll_seconds: int = 30,
    ) -> None:
        self.triggers = list(triggers)
        self.tz = tz
        self.poll_seconds = max(1, int(poll_seconds))
        self._last_fired: dict[str, date] = {}

    def prime(self, now_utc: datetime) -> None:
        local_now = now_utc.astimezone(self.tz)
        for trigger in self.triggers:
            if local_now.time() >= trigger.local_time:
                self._last_fired[trigger.job_name] = local_now.date()

    def due_triggers(self, now_utc: datetime) -> list[DailyTrigger]:
        local_now = now_utc.astimezone(self.tz)
        return [
            trigger
            for trigger in self.triggers
            if local_now.time() >= trigger.local_time
            and self._last_fired.get(trigger.job_name) != local_now.date()
        ]

    async def tick(self, now_utc: datetime) -> list[str]:
        fired: list[str] = []
        local_day = now_utc.astimezone(self.tz).date()
        for trigger in self.due_triggers(now_utc):
            self._last_fired[trigger.job_name] = local_day
            fired.append(trigger.job_name)
            logger.info(
                "scheduled_job_started",
                extra={"job_name": trigger.job_name, "local_day": local_day.isoformat()},
            )
            try:
                await trigger.run()
            except Exception:
                # Already recorded in the execution log.
                logger.exception("scheduled_job_failed", extra={"job_name": trigger.job_name})
        return fired

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        self.prime(datetime.now(timezone.utc))
        while not stop_event.is_set():
            try:
                await self.tick(datetime.now(timezone.utc))
            except Exception:
                logger.exception("scheduler_tick_failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                continue

    def status(self, now_utc: datetime | None = None) -> dict[str, Any]:
        reference_utc = now_utc or datetime.now(timezone.utc)
        return {
            "timezone": str(self.tz.key),
            "poll_seconds": self.poll_seconds,
            "triggers": [
                {
                    "job_name": trigger.job_name,
                    "local_time": trigger.local_time.strftime("%H:%M"),
                    "next_fire_at_utc": next_fire_at(trigger, reference_utc, self.tz).isoformat(),
                    "last_fired_local_day": (
                        self._last_fired[trigger.job_name].isoformat()
                        if trigger.job_name in self._last_fired
                        else None
                    ),
                }
                for trigger in self.triggers
            ],
        }


def build_scheduler(settings: Settings | None = None) -> DailyTriggerScheduler:
    settings = settings or get_settings()
    return DailyTriggerScheduler(
        build_daily_triggers(settings),
        tz=ZoneInfo(settings.schedule_timezone),
        poll_seconds=settings.scheduler_poll_seconds,
    )
