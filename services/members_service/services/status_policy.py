"""
Member status transition policy.

Pure functions with no I/O so the whole transition matrix can be tested
directly.
"""

from services.members_service.errors import ValidationRejected
from services.members_service.models.enums import MemberStatus

_S = MemberStatus

# Legal next statuses for each current status. No self loops.
TRANSITIONS: dict[MemberStatus, frozenset[MemberStatus]] = {
    _S.ACTIVE: frozenset({_S.INACTIVE, _S.SUSPENDED, _S.PENDING}),
    _S.INACTIVE: frozenset({_S.ACTIVE, _S.SUSPENDED, _S.PENDING}),
    _S.SUSPENDED: frozenset({_S.ACTIVE, _S.INACTIVE, _S.PENDING}),
    _S.EXPIRED: frozenset({_S.ACTIVE, _S.PENDING}),
    _S.PENDING: frozenset({_S.ACTIVE, _S.INACTIVE, _S.SUSPENDED}),
}

# Display order for status menus
_MENU_ORDER = [_S.ACTIVE, _S.INACTIVE, _S.SUSPENDED, _S.PENDING, _S.EXPIRED]


def allowed_transitions(current: MemberStatus | str) -> frozenset[MemberStatus]:
    """Return the set of statuses a member in ``current`` may move to."""
    return TRANSITIONS[MemberStatus(current)]


def is_transition_allowed(
    from_status: MemberStatus | str, to_status: MemberStatus | str
) -> bool:
    return MemberStatus(to_status) in allowed_transitions(from_status)


def requires_confirmation(
    from_status: MemberStatus | str, to_status: MemberStatus | str
) -> bool:
    """
    Suspending a member blocks facility access, so every legal move into
    ``suspended`` needs explicit confirmation. Everything else applies
    immediately.
    """
    return (
        is_transition_allowed(from_status, to_status)
        and MemberStatus(to_status) is MemberStatus.SUSPENDED
    )


def ensure_transition_allowed(
    from_status: MemberStatus | str,
    to_status: MemberStatus | str,
    *,
    member_id: str | None = None,
) -> None:
    """Raise ``ValidationRejected`` unless ``from_status -> to_status`` is legal."""
    if is_transition_allowed(from_status, to_status):
        return

    source = MemberStatus(from_status).value
    target = MemberStatus(to_status).value
    if source == target:
        message = f"Member is already {target}."
    else:
        options = ", ".join(
            s.value for s in _MENU_ORDER if s in allowed_transitions(source)
        )
        message = (
            f"Cannot change status from {source} to {target}. "
            f"Allowed: {options}."
        )
    raise ValidationRejected(message, member_id=member_id, field="status")


def transition_options(current: MemberStatus | str) -> list[tuple[MemberStatus, bool]]:
    """
    Ordered ``(status, needs_confirmation)`` pairs for a status menu.
    """
    allowed = allowed_transitions(current)
    return [
        (status, requires_confirmation(current, status))
        for status in _MENU_ORDER
        if status in allowed
    ]
