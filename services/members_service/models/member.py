"""Member entity and its read-only enhanced projections.

Members are immutable values: the cache only ever holds complete snapshots and
every change produces a new instance via ``model_copy``.
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr

from services.members_service.models.enums import (
    ContactMethod,
    Gender,
    HipBeltSize,
    MemberStatus,
    MemberType,
    ReferralSource,
    TrainingPreference,
    UniformSize,
    VestSize,
)


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ActiveSubscriptionSnapshot(BaseModel):
    """Aggregated from the member's active subscription."""

    plan_name: Optional[str] = None
    end_date: Optional[date] = None
    balance_due: float = 0
    remaining_sessions: int = 0

    model_config = ConfigDict(frozen=True)


class SessionStatsSnapshot(BaseModel):
    last_session_date: Optional[datetime] = None
    next_session_date: Optional[datetime] = None
    scheduled_sessions_count: int = 0

    model_config = ConfigDict(frozen=True)


class EnhancedProjections(BaseModel):
    """Server-computed projections attached to list rows.

    Never derived or patched locally; only replaced by a server fetch.
    """

    active_subscription: Optional[ActiveSubscriptionSnapshot] = None
    session_stats: Optional[SessionStatsSnapshot] = None
    last_payment_date: Optional[date] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Optional["EnhancedProjections"]:
        """Nest the flat subscription/session/payment columns of a details row."""
        subscription = None
        if row.get("subscription_end_date"):
            subscription = ActiveSubscriptionSnapshot(
                plan_name=row.get("plan_name"),
                end_date=row["subscription_end_date"],
                balance_due=row.get("balance_due") or 0,
                remaining_sessions=row.get("remaining_sessions") or 0,
            )

        stats = None
        if (
            row.get("last_session_date")
            or row.get("next_session_date")
            or row.get("scheduled_sessions_count")
        ):
            stats = SessionStatsSnapshot(
                last_session_date=row.get("last_session_date"),
                next_session_date=row.get("next_session_date"),
                scheduled_sessions_count=row.get("scheduled_sessions_count") or 0,
            )

        last_payment = row.get("last_payment_date")
        if subscription is None and stats is None and not last_payment:
            return None
        return cls(
            active_subscription=subscription,
            session_stats=stats,
            last_payment_date=last_payment,
        )


PROJECTION_COLUMNS = frozenset(
    {
        "plan_name",
        "subscription_end_date",
        "balance_due",
        "remaining_sessions",
        "last_session_date",
        "next_session_date",
        "scheduled_sessions_count",
        "last_payment_date",
    }
)


class Member(BaseModel):
    """A gym member as stored by the backend."""

    id: str
    member_number: Optional[str] = None

    first_name: str
    last_name: str
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None

    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    preferred_contact_method: ContactMethod = ContactMethod.EMAIL
    address: Optional[Address] = None
    profile_picture_url: Optional[str] = None

    status: MemberStatus
    member_type: MemberType = MemberType.FULL
    join_date: Optional[date] = None
    notes: Optional[str] = None
    medical_conditions: Optional[str] = None
    fitness_goals: Optional[str] = None

    waiver_signed: bool = False
    waiver_signed_date: Optional[date] = None
    marketing_consent: bool = False

    # Equipment & referral tracking
    uniform_size: Optional[UniformSize] = None
    uniform_received: bool = False
    vest_size: Optional[VestSize] = None
    hip_belt_size: Optional[HipBeltSize] = None
    referral_source: Optional[ReferralSource] = None
    referred_by_member_id: Optional[str] = None
    training_preference: Optional[TrainingPreference] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    projections: Optional[EnhancedProjections] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_details_row(cls, row: dict[str, Any]) -> "Member":
        """Build a member from a ``get_members_with_details`` row."""
        base = {k: v for k, v in row.items() if k not in PROJECTION_COLUMNS}
        return cls.model_validate(
            {**base, "projections": EnhancedProjections.from_row(row)}
        )


# Fields a caller may never change after creation
IMMUTABLE_FIELDS = frozenset({"id", "member_number", "created_at"})

# Fields the gateway may apply optimistically: identity, contact, status and the
# other stored columns. Projections are excluded since they need server
# recomputation.
OPTIMISTIC_FIELDS = frozenset(
    name
    for name in Member.model_fields
    if name not in IMMUTABLE_FIELDS and name != "projections"
)
