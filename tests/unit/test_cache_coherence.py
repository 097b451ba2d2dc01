"""Unit tests for the cache coherence manager.

The manager is driven directly; the cache is inspected afterwards to check
which views were patched and which were marked stale.
"""

import pytest
from services.members_service.models import Member, MemberStatus
from services.members_service.schemas import StatusCounts
from services.members_service.services.cache_coherence import (
    CacheCoherenceManager,
    member_keys,
)
from services.members_service.services.query_builder import (
    MemberFilterState,
    PageState,
    SortState,
    build_query,
)
from tests.factories import MemberFactory


def _params(page_size=20, **filters):
    sort = filters.pop("sort", SortState())
    return build_query(MemberFilterState(**filters), sort, PageState(page_size=page_size))


class CountingCache:
    """Wraps a cache and records every invalidate() call."""

    def __init__(self, inner):
        self.inner = inner
        self.invalidations = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def invalidate(self, prefix):
        self.invalidations.append(prefix)
        return self.inner.invalidate(prefix)


# ---------------------------------------------------------------------------
# Optimistic patch / settle
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_optimistic_patch_updates_detail_and_rows(manager, cache):
    member = MemberFactory.create(email="old@test.com")
    key = member_keys.list(_params())
    cache.set(member_keys.detail(member.id), member)
    manager.store_list(key, [member])

    ticket = manager.begin(member.id)
    manager.apply_optimistic(ticket, {"email": "new@test.com"})

    assert cache.get(member_keys.detail(member.id)).email == "new@test.com"
    assert cache.get(key)[0].email == "new@test.com"
    assert not cache.is_stale(key)


@pytest.mark.unit
def test_optimistic_patch_never_touches_projections(manager, cache):
    member = MemberFactory.details_row()
    row = Member.from_details_row(
        {**member, "subscription_end_date": "2025-01-01", "balance_due": 40}
    )
    cache.set(member_keys.detail(row.id), row)

    ticket = manager.begin(row.id)
    manager.apply_optimistic(ticket, {"projections": None, "phone": "123"})

    cached = cache.get(member_keys.detail(row.id))
    assert cached.phone == "123"
    assert cached.projections.active_subscription.balance_due == 40


@pytest.mark.unit
def test_failure_restores_last_authoritative_snapshot(manager, cache):
    member = MemberFactory.create(email="before@test.com")
    cache.set(member_keys.detail(member.id), member)

    ticket = manager.begin(member.id)
    manager.apply_optimistic(ticket, {"email": "after@test.com"})
    manager.settle_failure(ticket)

    assert cache.get(member_keys.detail(member.id)) == member
    assert not manager.has_pending(member.id)


@pytest.mark.unit
def test_server_values_win_on_success(manager, cache):
    member = MemberFactory.create(first_name="Ann")
    cache.set(member_keys.detail(member.id), member)

    ticket = manager.begin(member.id)
    manager.apply_optimistic(ticket, {"first_name": "ann"})
    server = member.model_copy(update={"first_name": "Ann-Normalized"})
    manager.settle_success(ticket, server)

    assert cache.get(member_keys.detail(member.id)).first_name == "Ann-Normalized"


@pytest.mark.unit
def test_stale_completion_does_not_clobber_newer_mutation(manager, cache):
    member = MemberFactory.create(email="a@test.com")
    cache.set(member_keys.detail(member.id), member)

    first = manager.begin(member.id)
    manager.apply_optimistic(first, {"email": "b@test.com"})
    second = manager.begin(member.id)
    manager.apply_optimistic(second, {"email": "c@test.com"})

    manager.settle_success(second, member.model_copy(update={"email": "c@test.com"}))
    manager.settle_success(first, member.model_copy(update={"email": "b@test.com"}))

    assert cache.get(member_keys.detail(member.id)).email == "c@test.com"


@pytest.mark.unit
def test_rollback_of_newest_restores_latest_server_state(manager, cache):
    member = MemberFactory.create(email="a@test.com")
    cache.set(member_keys.detail(member.id), member)

    first = manager.begin(member.id)
    manager.apply_optimistic(first, {"email": "b@test.com"})
    second = manager.begin(member.id)
    manager.apply_optimistic(second, {"email": "c@test.com"})

    manager.settle_success(first, member.model_copy(update={"email": "b@test.com"}))
    manager.settle_failure(second)

    assert cache.get(member_keys.detail(member.id)).email == "b@test.com"


@pytest.mark.unit
def test_fetch_during_mutation_keeps_optimistic_value(manager, cache):
    member = MemberFactory.create(phone="111")
    key = member_keys.list(_params())
    cache.set(member_keys.detail(member.id), member)

    ticket = manager.begin(member.id)
    manager.apply_optimistic(ticket, {"phone": "222"})
    manager.store_list(key, [member])
    manager.store_detail(member)

    assert cache.get(key)[0].phone == "222"
    assert cache.get(member_keys.detail(member.id)).phone == "222"


# ---------------------------------------------------------------------------
# View policy
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_status_change_invalidates_counts_and_status_filtered_lists(manager, cache):
    member = MemberFactory.create(status="active")
    unfiltered = member_keys.list(_params())
    active_only = member_keys.list(_params(status="active"))
    suspended_only = member_keys.list(_params(status="suspended"))
    manager.store_list(unfiltered, [member])
    manager.store_list(active_only, [member])
    manager.store_list(suspended_only, [])
    manager.store_status_counts(StatusCounts(active=1))
    manager.store_total(1)

    ticket = manager.begin(member.id)
    manager.apply_optimistic(ticket, {"status": MemberStatus.SUSPENDED})
    manager.settle_success(ticket, member.model_copy(update={"status": MemberStatus.SUSPENDED}))

    assert cache.is_stale(member_keys.status_counts)
    assert cache.is_stale(active_only)
    assert cache.is_stale(suspended_only)
    assert not cache.is_stale(unfiltered)
    assert cache.get(unfiltered)[0].status is MemberStatus.SUSPENDED
    assert not cache.is_stale(member_keys.total)


@pytest.mark.unit
def test_contact_change_patches_in_place(manager, cache):
    member = MemberFactory.create(phone="111")
    key = member_keys.list(_params(status="active"))
    manager.store_list(key, [member])
    manager.store_status_counts(StatusCounts(active=1))

    ticket = manager.begin(member.id)
    manager.apply_optimistic(ticket, {"phone": "999"})
    manager.settle_success(ticket, member.model_copy(update={"phone": "999"}))

    assert not cache.is_stale(key)
    assert cache.get(key)[0].phone == "999"
    assert not cache.is_stale(member_keys.status_counts)


@pytest.mark.unit
def test_sort_field_change_invalidates_sorted_view(manager, cache):
    member = MemberFactory.create(email="m@test.com")
    by_email = member_keys.list(_params(sort=SortState(field="email")))
    by_name = member_keys.list(_params(sort=SortState(field="name")))
    manager.store_list(by_email, [member])
    manager.store_list(by_name, [member])

    ticket = manager.begin(member.id)
    manager.apply_optimistic(ticket, {"email": "a@test.com"})
    manager.settle_success(ticket, member.model_copy(update={"email": "a@test.com"}))

    assert cache.is_stale(by_email)
    assert not cache.is_stale(by_name)


@pytest.mark.unit
def test_create_invalidates_lists_and_counts(manager, cache):
    manager.store_list(member_keys.list(_params()), [])
    manager.store_total(0)
    manager.store_status_counts(StatusCounts())
    member = MemberFactory.create()

    manager.apply_created(member)

    assert cache.get(member_keys.detail(member.id)) == member
    assert cache.is_stale(member_keys.list(_params()))
    assert cache.is_stale(member_keys.total)
    assert cache.is_stale(member_keys.status_counts)


# ---------------------------------------------------------------------------
# Deletes
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_delete_from_full_page_marks_it_stale(manager, cache):
    members = MemberFactory.batch(3)
    full_page = member_keys.list(_params(page_size=3))
    short_page = member_keys.list(_params(page_size=10))
    manager.store_list(full_page, members)
    manager.store_list(short_page, members)
    manager.store_total(3)
    manager.store_status_counts(StatusCounts(active=3))

    manager.apply_deleted(manager.begin(members[0].id))

    assert [m.id for m in cache.get(full_page)] == [m.id for m in members[1:]]
    assert cache.is_stale(full_page)
    assert not cache.is_stale(short_page)
    assert len(cache.get(short_page)) == 2
    assert cache.get(member_keys.total) == 2
    assert cache.get(member_keys.status_counts).active == 2


@pytest.mark.unit
def test_delete_of_unknown_member_invalidates_counts(manager, cache):
    manager.store_status_counts(StatusCounts(active=5))
    manager.store_total(5)

    manager.apply_deleted(manager.begin("ghost"))

    assert cache.is_stale(member_keys.status_counts)
    assert cache.get(member_keys.total) == 4


@pytest.mark.unit
def test_completion_after_delete_does_not_resurrect(manager, cache):
    member = MemberFactory.create()
    cache.set(member_keys.detail(member.id), member)

    update = manager.begin(member.id)
    manager.apply_deleted(manager.begin(member.id))
    manager.settle_success(update, member.model_copy(update={"phone": "1"}))

    assert cache.get(member_keys.detail(member.id)) is None


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_batch_coalesces_invalidations(cache):
    counting = CountingCache(cache)
    manager = CacheCoherenceManager(counting)
    members = MemberFactory.batch(3)

    with manager.batch():
        with manager.batch():
            for member in members:
                manager.apply_created(member)
        assert counting.invalidations == []

    assert sorted(counting.invalidations) == sorted(
        [member_keys.lists, member_keys.total, member_keys.status_counts]
    )


@pytest.mark.unit
def test_batch_skips_keys_covered_by_prefix(cache):
    counting = CountingCache(cache)
    manager = CacheCoherenceManager(counting)
    key = member_keys.list(_params(status="active"))
    manager.store_list(key, [])

    with manager.batch():
        manager._invalidate(key)
        manager.invalidate_member()

    assert key not in counting.invalidations
    assert member_keys.lists in counting.invalidations
    assert cache.is_stale(key)
