"""
Translate member table filter/sort/page state into backend query parameters.

``build_query`` is pure and deterministic: identical input state always yields
an equal (and hashable) ``MemberQueryParams``, which doubles as the list cache
key signature.
"""

from datetime import date
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from services.members_service.errors import ValidationRejected
from services.members_service.models.enums import MemberStatus, MemberType

SortDirection = Literal["asc", "desc"]

# UI sort field -> backend-sortable column. Fields missing here (projection
# columns and anything else) have no server-side sort.
BACKEND_SORT_FIELDS: dict[str, str] = {
    "name": "name",
    "email": "email",
    "status": "status",
    "phone": "phone",
    "join_date": "join_date",
}

# Member fields each backend sort column depends on
_SORT_DEPENDENCIES: dict[str, frozenset[str]] = {
    "name": frozenset({"first_name", "last_name"}),
    "email": frozenset({"email"}),
    "status": frozenset({"status"}),
    "phone": frozenset({"phone"}),
    "join_date": frozenset({"join_date"}),
}

_SEARCH_FIELDS = frozenset({"first_name", "last_name", "email", "phone"})


class MemberFilterState(BaseModel):
    """Filters as held by the member table."""

    search: Optional[str] = None
    status: Union[MemberStatus, Literal["all"], list[MemberStatus], None] = None
    member_type: Optional[MemberType] = None
    join_date_from: Optional[date] = None
    join_date_to: Optional[date] = None
    has_active_subscription: Optional[bool] = None
    has_upcoming_sessions: Optional[bool] = None
    has_outstanding_balance: Optional[bool] = None

    model_config = ConfigDict(frozen=True)


class SortState(BaseModel):
    field: str = "name"
    direction: SortDirection = "asc"

    model_config = ConfigDict(frozen=True)


class PageState(BaseModel):
    """1-indexed page position as exposed to users."""

    page: int = 1
    page_size: int = Field(default=20, ge=1)

    model_config = ConfigDict(frozen=True)


class MemberQueryParams(BaseModel):
    """Normalized query for the backend list endpoint."""

    search: Optional[str] = None
    status: Union[MemberStatus, tuple[MemberStatus, ...], None] = None
    member_type: Optional[MemberType] = None
    join_date_from: Optional[date] = None
    join_date_to: Optional[date] = None
    has_active_subscription: Optional[bool] = None
    has_upcoming_sessions: Optional[bool] = None
    has_outstanding_balance: Optional[bool] = None
    order_by: Optional[str] = None
    order_direction: Optional[SortDirection] = None
    limit: int
    offset: int = 0

    model_config = ConfigDict(frozen=True)

    def to_params(self) -> dict:
        """Plain dict with every unset key omitted entirely."""
        return self.model_dump(mode="json", exclude_none=True)

    @property
    def statuses(self) -> Optional[frozenset[MemberStatus]]:
        if self.status is None:
            return None
        if isinstance(self.status, tuple):
            return frozenset(self.status)
        return frozenset({self.status})

    def filter_fields(self) -> frozenset[str]:
        """Member fields that decide whether a member belongs in this view."""
        fields: set[str] = set()
        if self.search:
            fields |= _SEARCH_FIELDS
        if self.status is not None:
            fields.add("status")
        if self.member_type is not None:
            fields.add("member_type")
        if self.join_date_from or self.join_date_to:
            fields.add("join_date")
        return frozenset(fields)

    def sort_fields(self) -> frozenset[str]:
        """Member fields that decide a row's position in this view."""
        if self.order_by is None:
            return frozenset()
        return _SORT_DEPENDENCIES.get(self.order_by, frozenset())

    def matches(self, member) -> bool:
        """Best-effort local check of whether ``member`` satisfies the filters."""
        statuses = self.statuses
        if statuses is not None and member.status not in statuses:
            return False
        if self.member_type is not None and member.member_type != self.member_type:
            return False
        if self.join_date_from and (
            member.join_date is None or member.join_date < self.join_date_from
        ):
            return False
        if self.join_date_to and (
            member.join_date is None or member.join_date > self.join_date_to
        ):
            return False
        if self.search:
            needle = self.search.lower()
            haystack = [
                member.first_name,
                member.last_name,
                member.email or "",
                member.phone or "",
            ]
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


def _normalize_status(
    status: Union[MemberStatus, str, list, None],
) -> Union[MemberStatus, tuple[MemberStatus, ...], None]:
    if status is None or status == "all":
        return None
    if isinstance(status, (list, tuple, set, frozenset)):
        unique = sorted({MemberStatus(s) for s in status}, key=lambda s: s.value)
        if not unique:
            return None
        if len(unique) == 1:
            return unique[0]
        return tuple(unique)
    return MemberStatus(status)


def build_query(
    filters: MemberFilterState,
    sort: SortState,
    page: PageState,
) -> MemberQueryParams:
    """
    Build the backend query for the given table state.

    - Blank or whitespace-only search is dropped, never sent as "".
    - Sort fields without a backend column produce no server-side sort.
    - ``offset = (page - 1) * page_size`` with page clamped to >= 1.
    """
    search = (filters.search or "").strip() or None
    order_by = BACKEND_SORT_FIELDS.get(sort.field)
    page_number = max(page.page, 1)

    return MemberQueryParams(
        search=search,
        status=_normalize_status(filters.status),
        member_type=filters.member_type,
        join_date_from=filters.join_date_from,
        join_date_to=filters.join_date_to,
        has_active_subscription=filters.has_active_subscription,
        has_upcoming_sessions=filters.has_upcoming_sessions,
        has_outstanding_balance=filters.has_outstanding_balance,
        order_by=order_by,
        order_direction=sort.direction if order_by else None,
        limit=page.page_size,
        offset=(page_number - 1) * page.page_size,
    )


def change_page_size(page: PageState, page_size: int) -> PageState:
    """A new page size always starts over at page 1."""
    return PageState(page=1, page_size=page_size)


def change_page(page: PageState, page_number: int) -> PageState:
    return PageState(page=max(page_number, 1), page_size=page.page_size)


def toggle_sort(sort: SortState, field: str) -> SortState:
    """Clicking the active column flips direction; a new column starts ascending."""
    if sort.field == field and sort.direction == "asc":
        return SortState(field=field, direction="desc")
    return SortState(field=field, direction="asc")


def validate_filters(filters: MemberFilterState) -> None:
    """Reject filter combinations that can never match."""
    if (
        filters.join_date_from
        and filters.join_date_to
        and filters.join_date_from > filters.join_date_to
    ):
        raise ValidationRejected(
            'Join date "from" cannot be later than "to".', field="join_date"
        )
