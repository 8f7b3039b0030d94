from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from operator import attrgetter
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from entrywatch.db import SessionLocal
from entrywatch.services.execution_log import ExecutionLog, JobExecutionLog, get_execution_log
from entrywatch.services.missing_entries import MissingEntryUnit, detect_missing_entries, local_today
from entrywatch.services.notifications import (
    DispatchResult,
    EmailChannel,
    MissingEntryAlert,
    NotificationChannel,
    format_date_br,
    send_missing_entry_alert,
)
from entrywatch.services.recipients import OrganizationRecipient, RoleTier, classify_role, resolve_members
from entrywatch.settings import build_entry_form_link, get_public_base_url, get_schedule_timezone, get_settings

logger = logging.getLogger("entrywatch.sweeps")

JOB_FIRST_ALERT = "checkMissingEntriesAndAlert"
JOB_ESCALATION = "escalateMissingEntries"
ESCALATION_UNIT_SUFFIX = " (ESCALAÇÃO)"
# The worker thread keeps running after the timeout, so the message may still arrive.
DISPATCH_TIMEOUT_REASON = "TIMEOUT_UNCONFIRMED"


class FallbackPolicy(str, enum.Enum):
    ALL_MEMBERS = "allow_fallback_to_all"
    STRICT = "strict"


@dataclass(frozen=True, slots=True)
class SweepPolicy:
    job_name: str
    tier: RoleTier
    fallback: FallbackPolicy
    is_opted_in: Callable[[OrganizationRecipient], bool]
    unit_name_suffix: str
    detail_key: str
    sent_key: str
    skipped_key: str
    empty_message: str
    summary_message: str

    def unit_display_name(self, unit: MissingEntryUnit) -> str:
        return f"{unit.unit_name}{self.unit_name_suffix}"


FIRST_ALERT_POLICY = SweepPolicy(
    job_name=JOB_FIRST_ALERT,
    tier=RoleTier.OPERATOR,
    fallback=FallbackPolicy.ALL_MEMBERS,
    is_opted_in=attrgetter("missing_entry_alerts_enabled"),
    unit_name_suffix="",
    detail_key="alertDetails",
    sent_key="alertsSent",
    skipped_key="alertsSkipped",
    empty_message="No missing entries found. All units have submitted their daily entries.",
    summary_message="Sent {sent} alerts for {units} units with missing entries ({skipped} skipped by preference)",
)

ESCALATION_POLICY = SweepPolicy(
    job_name=JOB_ESCALATION,
    tier=RoleTier.SUPERVISOR,
    fallback=FallbackPolicy.STRICT,
    is_opted_in=attrgetter("escalation_enabled"),
    unit_name_suffix=ESCALATION_UNIT_SUFFIX,
    detail_key="escalationDetails",
    sent_key="escalationsSent",
    skipped_key="escalationsSkipped",
    empty_message="No missing entries to escalate. All units have submitted their daily entries.",
    summary_message=(
        "Sent {sent} escalation alerts for {units} units still missing entries ({skipped} skipped by preference)"
    ),
)


@dataclass(slots=True)
class UnitOutcome:
    unit: MissingEntryUnit
    notified: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit": self.unit.label,
            "unitId": self.unit.unit_id,
            "notifiedUsers": list(self.notified),
            "skippedUsers": list(self.skipped),
            "failedUsers": list(self.failed),
        }


@dataclass(slots=True)
class SweepSummary:
    policy: SweepPolicy
    day: date
    missing_units: int = 0
    outcomes: list[UnitOutcome] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(len(item.notified) for item in self.outcomes)

    @property
    def skipped(self) -> int:
        return sum(len(item.skipped) for item in self.outcomes)

    @property
    def failed(self) -> int:
        return sum(len(item.failed) for item in self.outcomes)

    @property
    def message(self) -> str:
        if self.missing_units == 0:
            return self.policy.empty_message
        return self.policy.summary_message.format(
            sent=self.sent,
            skipped=self.skipped,
            units=self.missing_units,
        )

    def to_details(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "missingUnits": self.missing_units,
            self.policy.sent_key: self.sent,
            self.policy.skipped_key: self.skipped,
            "failed": self.failed,
            self.policy.detail_key: [item.to_dict() for item in self.outcomes],
        }


def _email_key(recipient: OrganizationRecipient) -> str:
    return " ".join((recipient.user_email or "").strip().lower().split())


def select_recipients(
    members: list[OrganizationRecipient],
    policy: SweepPolicy,
) -> list[OrganizationRecipient] | None:
    """Pick the audience for one unit, or None when the unit gets no notification at all."""
    tiered = [member for member in members if classify_role(member.role) is policy.tier]
    if not tiered:
        if policy.fallback is FallbackPolicy.STRICT:
            return None
        tiered = list(members)

    selected: list[OrganizationRecipient] = []
    seen: set[str] = set()
    without_email: list[str] = []
    for member in tiered:
        key = _email_key(member)
        if not key:
            without_email.append(member.user_id)
            continue
        if key in seen:
            continue
        seen.add(key)
        selected.append(member)

    if without_email:
        logger.info(
            "sweep_recipients_without_email",
            extra={
                "job_name": policy.job_name,
                "user_ids": without_email,
            },
        )
    return selected


async def _dispatch(
    channel: NotificationChannel,
    alert: MissingEntryAlert,
    *,
    timeout_seconds: float,
) -> DispatchResult:
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(send_missing_entry_alert, channel, alert),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error(
            "missing_entry_alert_timeout",
            extra={
                "recipient": alert.user_email,
                "unit_name": alert.unit_name,
                "timeout_seconds": timeout_seconds,
                "reason": DISPATCH_TIMEOUT_REASON,
            },
        )
        return DispatchResult(ok=False, recipient=alert.user_email, reason=DISPATCH_TIMEOUT_REASON)


async def _notify_unit(
    unit: MissingEntryUnit,
    recipients: list[OrganizationRecipient],
    *,
    policy: SweepPolicy,
    channel: NotificationChannel,
    date_formatted: str,
    base_url: str,
    timeout_seconds: float,
) -> UnitOutcome:
    outcome = UnitOutcome(unit=unit)
    entry_form_link = build_entry_form_link(unit.unit_id, base_url=base_url)
    for recipient in recipients:
        if not policy.is_opted_in(recipient):
            outcome.skipped.append(recipient.user_email)
            continue

        result = await _dispatch(
            channel,
            MissingEntryAlert(
                user_name=recipient.user_name,
                user_email=recipient.user_email,
                unit_name=policy.unit_display_name(unit),
                date=date_formatted,
                entry_form_link=entry_form_link,
            ),
            timeout_seconds=timeout_seconds,
        )
        if result.ok:
            outcome.notified.append(recipient.user_email)
        else:
            outcome.failed.append(recipient.user_email)
    return outcome


async def run_sweep(
    policy: SweepPolicy,
    *,
    db: Session | None = None,
    channel: NotificationChannel | None = None,
    execution_log: ExecutionLog | None = None,
    now_utc: datetime | None = None,
    tz: ZoneInfo | None = None,
    base_url: str | None = None,
    dispatch_timeout_seconds: float | None = None,
) -> SweepSummary:
    if db is None:
        with SessionLocal() as managed_db:
            return await run_sweep(
                policy,
                db=managed_db,
                channel=channel,
                execution_log=execution_log,
                now_utc=now_utc,
                tz=tz,
                base_url=base_url,
                dispatch_timeout_seconds=dispatch_timeout_seconds,
            )

    session = db
    log = execution_log or get_execution_log()
    executed_at = datetime.now(timezone.utc)
    reference_utc = now_utc or executed_at
    timeout_seconds = dispatch_timeout_seconds or get_settings().dispatch_timeout_seconds

    try:
        today = local_today(reference_utc, tz=tz or get_schedule_timezone())
        link_base = base_url or get_public_base_url()
        summary = SweepSummary(policy=policy, day=today)
        logger.info("sweep_started", extra={"job_name": policy.job_name, "day": today.isoformat()})

        missing_units = await asyncio.to_thread(detect_missing_entries, session, today)
        summary.missing_units = len(missing_units)
        if not missing_units:
            log.record(
                JobExecutionLog(
                    job_name=policy.job_name,
                    executed_at=executed_at,
                    status="success",
                    message=summary.message,
                )
            )
            return summary

        date_formatted = format_date_br(today)
        email_channel = channel or EmailChannel()
        for unit in missing_units:
            members = await asyncio.to_thread(resolve_members, session, unit.organization_id)
            recipients = select_recipients(members, policy)
            if recipients is None:
                logger.info(
                    "sweep_unit_without_tier_recipients",
                    extra={
                        "job_name": policy.job_name,
                        "unit_id": unit.unit_id,
                        "organization_id": unit.organization_id,
                        "tier": policy.tier.value,
                    },
                )
                continue

            summary.outcomes.append(
                await _notify_unit(
                    unit,
                    recipients,
                    policy=policy,
                    channel=email_channel,
                    date_formatted=date_formatted,
                    base_url=link_base,
                    timeout_seconds=timeout_seconds,
                )
            )
    except Exception as exc:
        log.record(
            JobExecutionLog(
                job_name=policy.job_name,
                executed_at=executed_at,
                status="error",
                message=f"Job failed: {exc}",
            )
        )
        raise

    log.record(
        JobExecutionLog(
            job_name=policy.job_name,
            executed_at=executed_at,
            status="success",
            message=summary.message,
            details=summary.to_details(),
        )
    )
    return summary


async def run_first_alert_sweep(**overrides: Any) -> SweepSummary:
    return await run_sweep(FIRST_ALERT_POLICY, **overrides)


async def run_escalation_sweep(**overrides: Any) -> SweepSummary:
    return await run_sweep(ESCALATION_POLICY, **overrides)


SWEEP_JOBS: dict[str, Callable[..., Awaitable[SweepSummary]]] = {
    JOB_FIRST_ALERT: run_first_alert_sweep,
    JOB_ESCALATION: run_escalation_sweep,
}
