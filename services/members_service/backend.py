"""
Members backend adapter.

The hosted backend is a Supabase project reached over PostgREST. This module
is the only place that knows about its URLs, ``Prefer`` headers and error
payloads; everything above it speaks ``Member`` and the error taxonomy.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import httpx
from pydantic_core import to_jsonable_python

from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.service_client import SupabaseRestClient
from services.members_service.errors import NetworkOrServerError, NotFound
from services.members_service.models import Member, MemberStatus
from services.members_service.schemas import MemberCreate, StatusCounts
from services.members_service.services.query_builder import MemberQueryParams

logger = get_logger(__name__)

# PostgREST: "JSON object requested, multiple (or no) rows returned"
_NO_ROWS_CODE = "PGRST116"


class MemberBackend(Protocol):
    async def list_members(self, params: MemberQueryParams) -> list[Member]: ...

    async def search_members(self, text: str, limit: int = 20) -> list[Member]: ...

    async def get_member(self, member_id: str) -> Member: ...

    async def count_members(self) -> int: ...

    async def count_by_status(self) -> StatusCounts: ...

    async def create_member(self, payload: MemberCreate) -> Member: ...

    async def update_member(self, member_id: str, changes: dict[str, Any]) -> Member: ...

    async def delete_member(self, member_id: str) -> None: ...


def rpc_arguments(params: MemberQueryParams) -> dict[str, Any]:
    """Map query params onto ``get_members_with_details`` arguments.

    Unset filters are left out so the function's own defaults apply.
    """
    args: dict[str, Any] = {"p_limit": params.limit, "p_offset": params.offset}
    if params.statuses is not None:
        args["p_status"] = sorted(s.value for s in params.statuses)
    if params.search:
        args["p_search"] = params.search
    if params.member_type is not None:
        args["p_member_type"] = params.member_type.value
    for flag in (
        "has_active_subscription",
        "has_upcoming_sessions",
        "has_outstanding_balance",
    ):
        value = getattr(params, flag)
        if value is not None:
            args[f"p_{flag}"] = value
    if params.join_date_from:
        args["p_join_date_from"] = params.join_date_from.isoformat()
    if params.join_date_to:
        args["p_join_date_to"] = params.join_date_to.isoformat()
    if params.order_by:
        args["p_order_by"] = params.order_by
        args["p_order_direction"] = params.order_direction or "asc"
    return args


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text or response.reason_phrase}
    if isinstance(body, dict):
        return body
    return {"message": str(body)}


def _raise_for_response(response: httpx.Response, member_id: Optional[str] = None) -> None:
    if response.status_code < 400:
        return
    payload = _error_payload(response)
    code = payload.get("code")
    message = payload.get("message") or f"Backend returned {response.status_code}"

    if response.status_code == 404 or code == _NO_ROWS_CODE:
        raise NotFound(f"Member {member_id} not found", member_id=member_id)

    logger.warning(
        "Members backend error %s (%s): %s", response.status_code, code, message
    )
    raise NetworkOrServerError(
        message,
        member_id=member_id,
        status_code=response.status_code,
        code=code,
        details=payload.get("details"),
    )


@contextmanager
def _decoding(member_id: Optional[str] = None):
    """Malformed bodies (not JSON, or rows that are not members) are server errors."""
    try:
        yield
    except (ValueError, TypeError, AttributeError, KeyError) as exc:
        logger.warning(f"Unreadable members backend response: {exc}")
        raise NetworkOrServerError(
            f"Unexpected response from the members backend: {exc}",
            member_id=member_id,
        ) from exc


def _total_from_content_range(header: Optional[str]) -> int:
    # "0-24/3573" or "*/0"
    if not header or "/" not in header:
        raise NetworkOrServerError("Backend did not report an exact count")
    total = header.rsplit("/", 1)[1]
    if total == "*":
        raise NetworkOrServerError("Backend did not report an exact count")
    return int(total)


def _search_pattern(text: str) -> str:
    q = text.strip().lower()
    return (
        f"(first_name.ilike.{q}*,last_name.ilike.{q}*,"
        f"email.ilike.*{q}*,phone.ilike.*{q}*)"
    )


class SupabaseMemberBackend:
    """``MemberBackend`` backed by Supabase PostgREST."""

    def __init__(
        self,
        client: Optional[SupabaseRestClient] = None,
        table: Optional[str] = None,
        details_rpc: Optional[str] = None,
    ):
        settings = get_settings()
        self.client = client or SupabaseRestClient.from_settings()
        self.table = table or settings.MEMBERS_TABLE
        self.details_rpc = details_rpc or settings.MEMBERS_DETAILS_RPC

    @property
    def _path(self) -> str:
        return f"/{self.table}"

    async def _send(self, method: str, path: str, member_id: Optional[str] = None, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkOrServerError(
                f"Request timed out: {exc}", member_id=member_id
            ) from exc
        except httpx.RequestError as exc:
            raise NetworkOrServerError(
                f"Could not reach the members backend: {exc}", member_id=member_id
            ) from exc
        _raise_for_response(response, member_id)
        return response

    @staticmethod
    def _single(response: httpx.Response, member_id: Optional[str]) -> Member:
        with _decoding(member_id):
            rows = response.json()
            if isinstance(rows, dict):
                return Member.model_validate(rows)
            if not rows:
                raise NotFound(f"Member {member_id} not found", member_id=member_id)
            return Member.model_validate(rows[0])

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_members(self, params: MemberQueryParams) -> list[Member]:
        response = await self._send(
            "POST", f"/rpc/{self.details_rpc}", json=rpc_arguments(params)
        )
        with _decoding():
            return [Member.from_details_row(row) for row in response.json() or []]

    async def search_members(self, text: str, limit: int = 20) -> list[Member]:
        response = await self._send(
            "GET",
            self._path,
            params={
                "select": "*",
                "or": _search_pattern(text),
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        with _decoding():
            return [Member.model_validate(row) for row in response.json()]

    async def get_member(self, member_id: str) -> Member:
        response = await self._send(
            "GET",
            self._path,
            member_id=member_id,
            params={"select": "*", "id": f"eq.{member_id}"},
        )
        return self._single(response, member_id)

    async def count_members(self) -> int:
        response = await self._send(
            "GET",
            self._path,
            params={"select": "id", "limit": "1"},
            prefer="count=exact",
        )
        with _decoding():
            return _total_from_content_range(response.headers.get("content-range"))

    async def count_by_status(self) -> StatusCounts:
        response = await self._send(
            "GET",
            self._path,
            params={"select": "status", "status": "not.is.null"},
        )
        buckets = {status.value: 0 for status in MemberStatus}
        with _decoding():
            for row in response.json():
                status = row.get("status")
                if status in buckets:
                    buckets[status] += 1
        return StatusCounts(**buckets)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_member(self, payload: MemberCreate) -> Member:
        response = await self._send(
            "POST",
            self._path,
            json=payload.model_dump(mode="json"),
            prefer="return=representation",
        )
        return self._single(response, None)

    async def update_member(self, member_id: str, changes: dict[str, Any]) -> Member:
        body = to_jsonable_python(changes)
        body["updated_at"] = datetime.now(timezone.utc).isoformat()
        response = await self._send(
            "PATCH",
            self._path,
            member_id=member_id,
            params={"id": f"eq.{member_id}"},
            json=body,
            prefer="return=representation",
        )
        return self._single(response, member_id)

    async def delete_member(self, member_id: str) -> None:
        response = await self._send(
            "DELETE",
            self._path,
            member_id=member_id,
            params={"id": f"eq.{member_id}"},
            prefer="return=representation",
        )
        with _decoding(member_id):
            deleted = response.json()
        if not deleted:
            raise NotFound(f"Member {member_id} not found", member_id=member_id)
