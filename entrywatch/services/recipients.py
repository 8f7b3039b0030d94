from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, load_only

from entrywatch.errors import StoreError
from entrywatch.models import Member, User, UserNotificationPreferences

logger = logging.getLogger("entrywatch.recipients")


class MemberRole(str, enum.Enum):
    MEMBER = "member"
    OPERATOR = "operator"
    ADMIN = "admin"
    OWNER = "owner"
    SUPERVISOR = "supervisor"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str | None) -> MemberRole:
        normalized = (raw or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


class RoleTier(str, enum.Enum):
    OPERATOR = "operator"
    SUPERVISOR = "supervisor"
    NONE = "none"


_ROLE_TIERS: dict[MemberRole, RoleTier] = {
    MemberRole.MEMBER: RoleTier.OPERATOR,
    MemberRole.OPERATOR: RoleTier.OPERATOR,
    MemberRole.ADMIN: RoleTier.SUPERVISOR,
    MemberRole.OWNER: RoleTier.SUPERVISOR,
    MemberRole.SUPERVISOR: RoleTier.SUPERVISOR,
    MemberRole.UNKNOWN: RoleTier.NONE,
}


def classify_role(role: MemberRole | str | None) -> RoleTier:
    if not isinstance(role, MemberRole):
        role = MemberRole.parse(role)
    return _ROLE_TIERS[role]


@dataclass(frozen=True, slots=True)
class OrganizationRecipient:
    user_id: str
    user_name: str
    user_email: str
    role: str
    missing_entry_alerts_enabled: bool = True
    escalation_enabled: bool = True

    @property
    def tier(self) -> RoleTier:
        return classify_role(self.role)


def _recipient_from_member(member: Member) -> OrganizationRecipient:
    user: User = member.user
    preferences = user.notification_preferences
    # No stored preferences means the user never opted out.
    if preferences is None:
        alerts_enabled = True
        escalation_enabled = True
    else:
        alerts_enabled = bool(preferences.missing_entry_alerts_enabled)
        escalation_enabled = bool(preferences.escalation_enabled)

    return OrganizationRecipient(
        user_id=user.id,
        user_name=user.name,
        user_email=user.email,
        role=member.role,
        missing_entry_alerts_enabled=alerts_enabled,
        escalation_enabled=escalation_enabled,
    )


def resolve_members(session: Session, organization_id: str) -> list[OrganizationRecipient]:
    stmt = (
        select(Member)
        .where(Member.organization_id == organization_id)
        .options(
            load_only(Member.id, Member.organization_id, Member.user_id, Member.role),
            joinedload(Member.user).options(
                load_only(User.id, User.name, User.email),
                joinedload(User.notification_preferences).load_only(
                    UserNotificationPreferences.missing_entry_alerts_enabled,
                    UserNotificationPreferences.escalation_enabled,
                ),
            ),
        )
        .order_by(Member.id.asc())
    )
    try:
        members = list(session.scalars(stmt).unique().all())
    except SQLAlchemyError as exc:
        logger.error(
            "organization_members_query_failed",
            extra={
                "organization_id": organization_id,
                "error": str(exc)[:500],
            },
        )
        raise StoreError(str(exc)) from exc

    return [_recipient_from_member(member) for member in members if member.user is not None]
