"""Pydantic schemas for the members admin core.

- MemberCreate / MemberUpdate: mutation payloads (ids never writable)
- StatusCounts: aggregate counts per status bucket
- BulkOperationResult: tagged fan-in result of a bulk operation
- Request/response bodies for the admin router
"""

import enum
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from services.members_service.errors import ErrorKind, PartialBulkFailure
from services.members_service.models import (
    Address,
    ContactMethod,
    Gender,
    HipBeltSize,
    Member,
    MemberStatus,
    MemberType,
    ReferralSource,
    TrainingPreference,
    UniformSize,
    VestSize,
)

# Optional text columns the backend expects as NULL rather than ""
NULLABLE_TEXT_FIELDS = ("phone", "notes", "medical_conditions", "fitness_goals", "profile_picture_url")


def _blank_to_none(value):
    if isinstance(value, str) and value == "":
        return None
    return value


# ============================================================================
# MUTATION PAYLOADS
# ============================================================================


class MemberCreate(BaseModel):
    """Full member payload, validated upstream by the form layer."""

    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[Address] = None
    profile_picture_url: Optional[str] = None
    preferred_contact_method: ContactMethod = ContactMethod.EMAIL

    status: MemberStatus = MemberStatus.ACTIVE
    member_type: MemberType = MemberType.FULL
    join_date: date = Field(default_factory=date.today)
    notes: Optional[str] = None
    medical_conditions: Optional[str] = None
    fitness_goals: Optional[str] = None

    waiver_signed: bool = False
    waiver_signed_date: Optional[date] = None
    marketing_consent: bool = False

    uniform_size: Optional[UniformSize] = None
    uniform_received: bool = False
    vest_size: Optional[VestSize] = None
    hip_belt_size: Optional[HipBeltSize] = None
    referral_source: Optional[ReferralSource] = None
    referred_by_member_id: Optional[str] = None
    training_preference: Optional[TrainingPreference] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator(*NULLABLE_TEXT_FIELDS, mode="before")
    @classmethod
    def blank_text_is_null(cls, v):
        return _blank_to_none(v)


class MemberUpdate(BaseModel):
    """Partial update. ``id`` and ``member_number`` are rejected as extra."""

    first_name: Optional[str] = Field(default=None, min_length=1)
    last_name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    address: Optional[Address] = None
    profile_picture_url: Optional[str] = None
    preferred_contact_method: Optional[ContactMethod] = None

    status: Optional[MemberStatus] = None
    member_type: Optional[MemberType] = None
    join_date: Optional[date] = None
    notes: Optional[str] = None
    medical_conditions: Optional[str] = None
    fitness_goals: Optional[str] = None

    waiver_signed: Optional[bool] = None
    waiver_signed_date: Optional[date] = None
    marketing_consent: Optional[bool] = None

    uniform_size: Optional[UniformSize] = None
    uniform_received: Optional[bool] = None
    vest_size: Optional[VestSize] = None
    hip_belt_size: Optional[HipBeltSize] = None
    referral_source: Optional[ReferralSource] = None
    referred_by_member_id: Optional[str] = None
    training_preference: Optional[TrainingPreference] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator(*NULLABLE_TEXT_FIELDS, mode="before")
    @classmethod
    def blank_text_is_null(cls, v):
        return _blank_to_none(v)

    def changes(self) -> dict:
        """Only the fields the caller actually set, as typed values."""
        return {name: getattr(self, name) for name in self.model_fields_set}


# ============================================================================
# AGGREGATES
# ============================================================================


class StatusCounts(BaseModel):
    active: int = 0
    inactive: int = 0
    suspended: int = 0
    expired: int = 0
    pending: int = 0

    model_config = ConfigDict(frozen=True)

    def adjust(self, status: MemberStatus, delta: int) -> "StatusCounts":
        bucket = MemberStatus(status).value
        return self.model_copy(
            update={bucket: max(getattr(self, bucket) + delta, 0)}
        )

    @property
    def total(self) -> int:
        return self.active + self.inactive + self.suspended + self.expired + self.pending


# ============================================================================
# BULK OPERATIONS
# ============================================================================


class BulkOutcome(str, enum.Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


class BulkItemFailure(BaseModel):
    id: str
    kind: ErrorKind
    message: str


class BulkProgress(BaseModel):
    current: int
    total: int

    @property
    def percentage(self) -> float:
        return (self.current / self.total) * 100 if self.total else 100.0


class BulkOperationResult(BaseModel):
    """Fan-in result of a bulk operation. Counts come from settled items."""

    action: str
    requested: int
    succeeded: list[str] = Field(default_factory=list)
    failed: list[BulkItemFailure] = Field(default_factory=list)

    @property
    def failed_ids(self) -> list[str]:
        return [f.id for f in self.failed]

    @property
    def outcome(self) -> BulkOutcome:
        if not self.failed:
            return BulkOutcome.COMPLETE
        if not self.succeeded:
            return BulkOutcome.FAILED
        return BulkOutcome.PARTIAL

    @property
    def message(self) -> str:
        """E.g. ``"12 of 15 members updated"``."""
        return f"{len(self.succeeded)} of {self.requested} members {self.action}"

    def raise_for_outcome(self) -> None:
        """Raise ``PartialBulkFailure`` unless every item succeeded."""
        if self.outcome is not BulkOutcome.COMPLETE:
            raise PartialBulkFailure(self)


# ============================================================================
# ROUTER BODIES
# ============================================================================


class StatusChangeRequest(BaseModel):
    status: MemberStatus
    confirm: bool = False


class BulkStatusRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1)
    status: MemberStatus
    confirm: bool = False


class BulkDeleteRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1)


class TransitionOption(BaseModel):
    status: MemberStatus
    requires_confirmation: bool


class MemberListResponse(BaseModel):
    items: list[Member]
    page: int
    page_size: int
    total: Optional[int] = None


class BulkOperationResponse(BaseModel):
    outcome: BulkOutcome
    message: str
    succeeded: list[str]
    failed: list[BulkItemFailure]

    @classmethod
    def from_result(cls, result: BulkOperationResult) -> "BulkOperationResponse":
        return cls(
            outcome=result.outcome,
            message=result.message,
            succeeded=result.succeeded,
            failed=result.failed,
        )
