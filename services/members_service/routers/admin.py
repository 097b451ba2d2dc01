"""Admin members router - listing, counts and member mutations."""

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from services.members_service.dependencies import (
    get_change_feed,
    get_gateway,
    get_query_service,
)
from services.members_service.errors import (
    MemberOperationError,
    NotFound,
    ValidationRejected,
    user_message,
)
from services.members_service.models import Member, MemberStatus, MemberType
from services.members_service.schemas import (
    BulkDeleteRequest,
    BulkOperationResponse,
    BulkStatusRequest,
    MemberCreate,
    MemberListResponse,
    MemberUpdate,
    StatusChangeRequest,
    StatusCounts,
    TransitionOption,
)
from services.members_service.services.change_feed import MemberChangeFeedHandler
from services.members_service.services.mutation_gateway import MemberMutationGateway
from services.members_service.services.query_builder import (
    MemberFilterState,
    PageState,
    SortDirection,
    SortState,
)
from services.members_service.services.query_service import MemberQueryService
from services.members_service.services.status_policy import (
    requires_confirmation,
    transition_options,
)

router = APIRouter(prefix="/admin/members", tags=["admin-members"])
logger = get_logger(__name__)


def _http_error(err: MemberOperationError, operation: str) -> HTTPException:
    if isinstance(err, ValidationRejected):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(err, NotFound):
        code = status.HTTP_404_NOT_FOUND
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=user_message(err, operation))


def _confirmation_required(current: Member, target: MemberStatus) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=(
            f"Changing {current.full_name} to {target.value} blocks facility access. "
            "Resend with confirm=true to proceed."
        ),
    )


async def _ensure_confirmed(
    queries: MemberQueryService,
    member_id: str,
    target: MemberStatus,
    operation: str,
) -> None:
    """Refuse an unconfirmed move into a status that needs confirmation."""
    try:
        current = await queries.get_member(member_id)
    except MemberOperationError as err:
        raise _http_error(err, operation)
    if requires_confirmation(current.status, target):
        raise _confirmation_required(current, target)


@router.get("", response_model=MemberListResponse)
async def list_members(
    search: Optional[str] = None,
    status_filter: Optional[List[MemberStatus]] = Query(default=None, alias="status"),
    member_type: Optional[MemberType] = None,
    join_date_from: Optional[date] = None,
    join_date_to: Optional[date] = None,
    has_active_subscription: Optional[bool] = None,
    has_upcoming_sessions: Optional[bool] = None,
    has_outstanding_balance: Optional[bool] = None,
    sort: str = "name",
    direction: SortDirection = "asc",
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    include_total: bool = False,
    current_user: AuthUser = Depends(require_admin),
    queries: MemberQueryService = Depends(get_query_service),
):
    """List members for the admin table (admin only)."""
    filters = MemberFilterState(
        search=search,
        status=status_filter,
        member_type=member_type,
        join_date_from=join_date_from,
        join_date_to=join_date_to,
        has_active_subscription=has_active_subscription,
        has_upcoming_sessions=has_upcoming_sessions,
        has_outstanding_balance=has_outstanding_balance,
    )
    try:
        _, rows = await queries.list_members(
            filters,
            SortState(field=sort, direction=direction),
            PageState(page=page, page_size=page_size),
        )
        total = await queries.count() if include_total else None
    except MemberOperationError as err:
        raise _http_error(err, "fetch")
    return MemberListResponse(
        items=list(rows), page=page, page_size=page_size, total=total
    )


@router.get("/counts", response_model=StatusCounts)
async def member_status_counts(
    current_user: AuthUser = Depends(require_admin),
    queries: MemberQueryService = Depends(get_query_service),
):
    """Member counts per status bucket (admin only)."""
    try:
        return await queries.count_by_status()
    except MemberOperationError as err:
        raise _http_error(err, "fetch")


@router.get("/search", response_model=List[Member])
async def search_members(
    q: str = Query(..., description="Name, email or phone; at least 2 characters"),
    current_user: AuthUser = Depends(require_admin),
    queries: MemberQueryService = Depends(get_query_service),
):
    """Quick member lookup (admin only)."""
    try:
        return await queries.search(q)
    except MemberOperationError as err:
        raise _http_error(err, "fetch")


@router.post("/bulk/status", response_model=BulkOperationResponse)
async def bulk_change_status(
    body: BulkStatusRequest,
    current_user: AuthUser = Depends(require_admin),
    gateway: MemberMutationGateway = Depends(get_gateway),
):
    """
    Change the status of many members (admin only).

    Partial success is reported, not raised. Suspensions need ``confirm=true``.
    """
    if body.status is MemberStatus.SUSPENDED and not body.confirm:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Suspending {len(set(body.ids))} members blocks their facility "
                "access. Resend with confirm=true to proceed."
            ),
        )
    result = await gateway.bulk_update_status(body.ids, body.status)
    return BulkOperationResponse.from_result(result)


@router.post("/bulk/delete", response_model=BulkOperationResponse)
async def bulk_delete_members(
    body: BulkDeleteRequest,
    current_user: AuthUser = Depends(require_admin),
    gateway: MemberMutationGateway = Depends(get_gateway),
):
    """Permanently delete many members (admin only)."""
    result = await gateway.bulk_delete(body.ids)
    return BulkOperationResponse.from_result(result)


@router.post("/changes", status_code=status.HTTP_202_ACCEPTED)
async def receive_member_change(
    payload: Dict[str, Any],
    current_user: AuthUser = Depends(require_admin),
    feed: MemberChangeFeedHandler = Depends(get_change_feed),
):
    """
    Accept a realtime change payload for the members table (admin only).

    Cached views touched by the change are invalidated; the payload itself is
    never written to the cache. Malformed payloads are acknowledged and skipped.
    """
    return {"handled": feed.handle_payload(payload)}


@router.get("/{member_id}", response_model=Member)
async def get_member(
    member_id: str,
    current_user: AuthUser = Depends(require_admin),
    queries: MemberQueryService = Depends(get_query_service),
):
    """Get a single member (admin only)."""
    try:
        return await queries.get_member(member_id)
    except MemberOperationError as err:
        raise _http_error(err, "fetch")


@router.get("/{member_id}/transitions", response_model=List[TransitionOption])
async def member_transitions(
    member_id: str,
    current_user: AuthUser = Depends(require_admin),
    queries: MemberQueryService = Depends(get_query_service),
):
    """Statuses the member may move to next, in menu order (admin only)."""
    try:
        member = await queries.get_member(member_id)
    except MemberOperationError as err:
        raise _http_error(err, "fetch")
    return [
        TransitionOption(status=option, requires_confirmation=needs_confirmation)
        for option, needs_confirmation in transition_options(member.status)
    ]


@router.post("", response_model=Member, status_code=status.HTTP_201_CREATED)
async def create_member(
    payload: MemberCreate,
    current_user: AuthUser = Depends(require_admin),
    gateway: MemberMutationGateway = Depends(get_gateway),
):
    """Create a member (admin only)."""
    try:
        member = await gateway.create(payload)
    except MemberOperationError as err:
        raise _http_error(err, "create")
    logger.info(f"Member {member.id} created by {current_user.email}")
    return member


@router.patch("/{member_id}", response_model=Member)
async def update_member(
    member_id: str,
    payload: MemberUpdate,
    confirm: bool = False,
    current_user: AuthUser = Depends(require_admin),
    gateway: MemberMutationGateway = Depends(get_gateway),
    queries: MemberQueryService = Depends(get_query_service),
):
    """
    Partially update a member (admin only).

    A ``status`` change into suspended needs ``?confirm=true``, as on the
    status endpoint.
    """
    if payload.status is not None and not confirm:
        await _ensure_confirmed(queries, member_id, payload.status, "update")
    try:
        return await gateway.update(member_id, payload)
    except MemberOperationError as err:
        raise _http_error(err, "update")


@router.post("/{member_id}/status", response_model=Member)
async def change_member_status(
    member_id: str,
    body: StatusChangeRequest,
    current_user: AuthUser = Depends(require_admin),
    gateway: MemberMutationGateway = Depends(get_gateway),
    queries: MemberQueryService = Depends(get_query_service),
):
    """
    Change a member's status (admin only).

    Suspensions need ``confirm=true``; without it the request is refused with
    409 and nothing is sent to the backend.
    """
    if not body.confirm:
        await _ensure_confirmed(queries, member_id, body.status, "update_status")

    try:
        return await gateway.update_status(member_id, body.status)
    except MemberOperationError as err:
        raise _http_error(err, "update_status")


@router.delete("/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_member(
    member_id: str,
    current_user: AuthUser = Depends(require_admin),
    gateway: MemberMutationGateway = Depends(get_gateway),
):
    """Permanently delete a member (admin only)."""
    try:
        await gateway.delete(member_id)
    except MemberOperationError as err:
        raise _http_error(err, "delete")
    logger.info(f"Member {member_id} deleted by {current_user.email}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
