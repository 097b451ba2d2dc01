"""Unit tests for user-facing error messages."""

import pytest
from services.members_service.errors import (
    NetworkOrServerError,
    NotFound,
    PartialBulkFailure,
    ValidationRejected,
    user_message,
)
from services.members_service.schemas import BulkItemFailure, BulkOperationResult


@pytest.mark.unit
def test_validation_message_is_passed_through():
    err = ValidationRejected("Member is already active.", field="status")
    assert user_message(err, "update_status") == "Member is already active."


@pytest.mark.unit
def test_not_found_points_to_refresh():
    msg = user_message(NotFound("gone", member_id="m1"), "delete")
    assert msg.startswith("Failed to delete member")
    assert "Refresh" in msg


@pytest.mark.unit
def test_unique_violation_names_the_field():
    err = NetworkOrServerError(
        'duplicate key value violates unique constraint "members_email_key"',
        status_code=409,
        code="23505",
    )
    assert user_message(err, "create") == (
        "Failed to create member. A member with this Email already exists. "
        "Please use a different value."
    )


@pytest.mark.unit
def test_not_null_violation_names_the_column():
    err = NetworkOrServerError(
        'null value in column "last_name" of relation "members" violates not-null constraint'
    )
    assert "Last Name is required" in user_message(err, "update")


@pytest.mark.unit
def test_generic_server_error_prompts_retry():
    msg = user_message(NetworkOrServerError("boom", status_code=500), "update")
    assert msg == "Failed to update member: the server could not complete the request. Please retry."


@pytest.mark.unit
def test_partial_bulk_failure_states_counts():
    result = BulkOperationResult(
        action="updated",
        requested=15,
        succeeded=[str(i) for i in range(12)],
        failed=[
            BulkItemFailure(id=f"f{i}", kind="network_or_server_error", message="x")
            for i in range(3)
        ],
    )
    err = PartialBulkFailure(result)
    assert user_message(err, "bulk_update_status") == "12 of 15 members updated"
    assert err.result is result
