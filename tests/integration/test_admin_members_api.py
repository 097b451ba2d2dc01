"""
Integration tests for the admin members API.

The FastAPI app runs in-process over ASGITransport; auth and the members core
are overridden with in-memory fixtures (see tests/conftest.py).
"""

import pytest
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from services.members_service.errors import NetworkOrServerError
from services.members_service.models import MemberStatus
from tests.factories import MemberFactory


@pytest.mark.asyncio
@pytest.mark.integration
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_non_admin_is_forbidden(client):
    from services.members_service.app.main import app

    app.dependency_overrides[get_current_user] = lambda: AuthUser(
        user_id="u1", email="member@test.com", role="authenticated"
    )

    response = await client.get("/admin/members")
    assert response.status_code == 403


@pytest.mark.asyncio
@pytest.mark.integration
async def test_list_members_with_filters(client, backend):
    backend.add(
        MemberFactory.create(first_name="Ada", status=MemberStatus.ACTIVE),
        MemberFactory.create(first_name="Bea", status=MemberStatus.SUSPENDED),
    )

    response = await client.get(
        "/admin/members",
        params={"status": "active", "page_size": 10, "include_total": "true"},
    )

    assert response.status_code == 200
    data = response.json()
    assert [m["first_name"] for m in data["items"]] == ["Ada"]
    assert data["page_size"] == 10
    assert data["total"] == 2


@pytest.mark.asyncio
@pytest.mark.integration
async def test_inverted_date_range_is_422(client):
    response = await client.get(
        "/admin/members",
        params={"join_date_from": "2024-05-01", "join_date_to": "2024-01-01"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
@pytest.mark.integration
async def test_status_counts(client, backend):
    backend.add(*MemberFactory.batch(2, status=MemberStatus.PENDING))

    response = await client.get("/admin/members/counts")

    assert response.status_code == 200
    assert response.json()["pending"] == 2


@pytest.mark.asyncio
@pytest.mark.integration
async def test_get_missing_member_is_404(client):
    response = await client.get("/admin/members/does-not-exist")
    assert response.status_code == 404


@pytest.mark.asyncio
@pytest.mark.integration
async def test_transitions_for_member(client, backend):
    member = MemberFactory.create(status=MemberStatus.EXPIRED)
    backend.add(member)

    response = await client.get(f"/admin/members/{member.id}/transitions")

    assert response.status_code == 200
    assert response.json() == [
        {"status": "active", "requires_confirmation": False},
        {"status": "pending", "requires_confirmation": False},
    ]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_create_member(client, backend):
    response = await client.post(
        "/admin/members",
        json={
            "first_name": "Nina",
            "last_name": "Park",
            "email": "nina@test.com",
            "phone": "",
        },
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "active"
    assert data["phone"] is None
    assert data["id"] in backend.members


@pytest.mark.asyncio
@pytest.mark.integration
async def test_patch_cannot_change_member_number(client, backend):
    member = MemberFactory.create()
    backend.add(member)

    response = await client.patch(
        f"/admin/members/{member.id}", json={"member_number": "X"}
    )

    assert response.status_code == 422
    assert backend.calls_for("update_member") == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_suspension_requires_confirmation(client, backend):
    member = MemberFactory.create(status=MemberStatus.ACTIVE)
    backend.add(member)

    refused = await client.post(
        f"/admin/members/{member.id}/status", json={"status": "suspended"}
    )
    assert refused.status_code == 409
    assert backend.calls_for("update_member") == []

    confirmed = await client.post(
        f"/admin/members/{member.id}/status",
        json={"status": "suspended", "confirm": True},
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "suspended"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_illegal_status_change_is_422(client, backend):
    member = MemberFactory.create(status=MemberStatus.EXPIRED)
    backend.add(member)

    response = await client.post(
        f"/admin/members/{member.id}/status",
        json={"status": "inactive", "confirm": True},
    )

    assert response.status_code == 422
    assert "expired to inactive" in response.json()["detail"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_backend_failure_is_502(client, backend):
    member = MemberFactory.create()
    backend.add(member)
    backend.fail(member.id, NetworkOrServerError("boom", status_code=500))

    response = await client.patch(f"/admin/members/{member.id}", json={"phone": "1"})

    assert response.status_code == 502
    assert response.json()["detail"].endswith("Please retry.")


@pytest.mark.asyncio
@pytest.mark.integration
async def test_delete_member(client, backend):
    member = MemberFactory.create()
    backend.add(member)

    response = await client.delete(f"/admin/members/{member.id}")

    assert response.status_code == 204
    assert member.id not in backend.members


@pytest.mark.asyncio
@pytest.mark.integration
async def test_bulk_status_reports_partial_success(client, backend):
    ok = MemberFactory.create(status=MemberStatus.PENDING)
    expired = MemberFactory.create(status=MemberStatus.EXPIRED)
    backend.add(ok, expired)

    response = await client.post(
        "/admin/members/bulk/status",
        json={"ids": [ok.id, expired.id], "status": "inactive"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["outcome"] == "partial"
    assert data["message"] == "1 of 2 members updated"
    assert data["succeeded"] == [ok.id]
    assert data["failed"][0]["id"] == expired.id
    assert data["failed"][0]["kind"] == "validation_rejected"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_bulk_suspension_requires_confirmation(client, backend):
    member = MemberFactory.create()
    backend.add(member)

    response = await client.post(
        "/admin/members/bulk/status",
        json={"ids": [member.id], "status": "suspended"},
    )

    assert response.status_code == 409
    assert backend.calls == []


@pytest.mark.asyncio
@pytest.mark.integration
async def test_bulk_delete(client, backend):
    members = MemberFactory.batch(2)
    backend.add(*members)

    response = await client.post(
        "/admin/members/bulk/delete", json={"ids": [m.id for m in members]}
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "complete"
    assert backend.members == {}


@pytest.mark.asyncio
@pytest.mark.integration
async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"

    generated = await client.get("/health")
    assert generated.headers["X-Request-ID"]


@pytest.mark.asyncio
@pytest.mark.integration
async def test_patch_into_suspended_requires_confirmation(client, backend):
    member = MemberFactory.create(status=MemberStatus.ACTIVE)
    backend.add(member)

    refused = await client.patch(
        f"/admin/members/{member.id}", json={"status": "suspended"}
    )
    assert refused.status_code == 409
    assert backend.calls_for("update_member") == []

    confirmed = await client.patch(
        f"/admin/members/{member.id}",
        params={"confirm": "true"},
        json={"status": "suspended"},
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "suspended"


@pytest.mark.asyncio
@pytest.mark.integration
async def test_change_payload_invalidates_cached_member(client, backend, manager, cache):
    from services.members_service.app.main import app
    from services.members_service.dependencies import get_change_feed
    from services.members_service.services.cache_coherence import member_keys
    from services.members_service.services.change_feed import MemberChangeFeedHandler

    app.dependency_overrides[get_change_feed] = lambda: MemberChangeFeedHandler(manager)
    member = MemberFactory.create()
    manager.store_detail(member)

    response = await client.post(
        "/admin/members/changes",
        json={
            "eventType": "UPDATE",
            "new": {"id": member.id, "status": "active"},
            "old": {"id": member.id, "status": "active"},
        },
    )

    assert response.status_code == 202
    assert response.json() == {"handled": True}
    assert cache.is_stale(member_keys.detail(member.id))

    skipped = await client.post("/admin/members/changes", json={"eventType": "TRUNCATE"})
    assert skipped.json() == {"handled": False}
