"""Members service models package.

Re-exports the member entity and enums so that
``from services.members_service.models import Member`` works everywhere.
"""

from services.members_service.models.enums import (  # noqa: F401
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
from services.members_service.models.member import (  # noqa: F401
    IMMUTABLE_FIELDS,
    OPTIMISTIC_FIELDS,
    ActiveSubscriptionSnapshot,
    Address,
    EnhancedProjections,
    Member,
    SessionStatsSnapshot,
)
