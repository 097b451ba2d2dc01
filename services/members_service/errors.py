"""Error taxonomy for member mutations and reads.

Every failure surfaced by the members core is exactly one of:

- ``ValidationRejected``: a local policy violation (illegal status transition,
  immutable field, broken referral). Raised before any network call.
- ``NotFound``: the target member vanished server-side.
- ``NetworkOrServerError``: transport failure, timeout or a backend error
  response.
- ``PartialBulkFailure``: a bulk operation where some items failed. Only raised
  when a caller opts in via ``BulkOperationResult.raise_for_outcome()``.
"""

import enum
import re
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from services.members_service.schemas import BulkOperationResult


class ErrorKind(str, enum.Enum):
    VALIDATION_REJECTED = "validation_rejected"
    NOT_FOUND = "not_found"
    NETWORK_OR_SERVER = "network_or_server_error"
    PARTIAL_BULK_FAILURE = "partial_bulk_failure"


class MemberOperationError(Exception):
    """Base class for member core failures."""

    kind: ErrorKind

    def __init__(self, message: str, *, member_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.member_id = member_id


class ValidationRejected(MemberOperationError):
    kind = ErrorKind.VALIDATION_REJECTED

    def __init__(
        self,
        message: str,
        *,
        member_id: Optional[str] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message, member_id=member_id)
        self.field = field


class NotFound(MemberOperationError):
    kind = ErrorKind.NOT_FOUND


class NetworkOrServerError(MemberOperationError):
    kind = ErrorKind.NETWORK_OR_SERVER

    def __init__(
        self,
        message: str,
        *,
        member_id: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message, member_id=member_id)
        self.status_code = status_code
        self.code = code
        self.details = details


class PartialBulkFailure(MemberOperationError):
    kind = ErrorKind.PARTIAL_BULK_FAILURE

    def __init__(self, result: "BulkOperationResult"):
        super().__init__(result.message)
        self.result = result


# ---------------------------------------------------------------------------
# User-facing messages
# ---------------------------------------------------------------------------

_UNIQUE = re.compile(r"duplicate key value violates unique constraint", re.I)
_FOREIGN_KEY = re.compile(r"violates foreign key constraint", re.I)
_NOT_NULL = re.compile(r"null value in column .* violates not-null constraint", re.I)
_CHECK = re.compile(r"violates check constraint", re.I)
_TIMEOUT = re.compile(r"timeout|timed out", re.I)

_OPERATION_PREFIXES = {
    "create": "Failed to create member",
    "update": "Failed to update member",
    "update_status": "Failed to change member status",
    "delete": "Failed to delete member",
    "bulk_update_status": "Failed to update member statuses",
    "bulk_delete": "Failed to delete members",
    "fetch": "Failed to load members",
}


def _extract_field_name(message: str) -> Optional[str]:
    column = re.search(r'column "([^"]+)"', message, re.I)
    if column:
        return column.group(1)

    # Constraint names follow table_column_key
    constraint = re.search(r'"([^"]+)"', message)
    if constraint:
        parts = constraint.group(1).split("_")
        if len(parts) > 2:
            return "_".join(parts[1:-1])
    return None


def _title(field: str) -> str:
    return " ".join(word.capitalize() for word in field.split("_"))


def _constraint_message(message: str) -> Optional[str]:
    if _UNIQUE.search(message):
        field = _extract_field_name(message)
        if field:
            return f"A member with this {_title(field)} already exists. Please use a different value."
        return "A member with these details already exists. Please check for duplicates."

    if _FOREIGN_KEY.search(message):
        return "This member is linked to other records that do not exist or cannot change."

    if _NOT_NULL.search(message):
        field = _extract_field_name(message)
        if field:
            return f"{_title(field)} is required. Please provide a value."
        return "A required field is missing. Please fill in all required information."

    if _CHECK.search(message):
        return "The provided data does not meet validation requirements. Please check your input."

    return None


def user_message(error: MemberOperationError, operation: str = "") -> str:
    """
    Translate an error into the single notification shown to the end user.

    Validation failures are specific and actionable, missing members point to a
    refresh, and network/server failures prompt a retry.
    """
    prefix = _OPERATION_PREFIXES.get(operation, "Operation failed")

    if isinstance(error, ValidationRejected):
        return error.message

    if isinstance(error, NotFound):
        return f"{prefix}: the member no longer exists. Refresh the list and try again."

    if isinstance(error, PartialBulkFailure):
        return error.result.message

    constraint = _constraint_message(error.message)
    if constraint:
        return f"{prefix}. {constraint}"

    if _TIMEOUT.search(error.message):
        return f"{prefix}: the server took too long to respond. Please check your connection and retry."

    return f"{prefix}: the server could not complete the request. Please retry."
