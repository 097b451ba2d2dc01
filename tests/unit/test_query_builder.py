"""Unit tests for building backend member queries from table state."""

from datetime import date

import pytest
from services.members_service.errors import ValidationRejected
from services.members_service.models import MemberStatus, MemberType
from services.members_service.services.query_builder import (
    MemberFilterState,
    PageState,
    SortState,
    build_query,
    change_page,
    change_page_size,
    toggle_sort,
    validate_filters,
)
from tests.factories import MemberFactory


@pytest.mark.unit
def test_second_page_of_active_members():
    params = build_query(
        MemberFilterState(search="", status="active"),
        SortState(field="name", direction="asc"),
        PageState(page=2, page_size=20),
    )

    assert params.to_params() == {
        "status": "active",
        "order_by": "name",
        "order_direction": "asc",
        "limit": 20,
        "offset": 20,
    }


@pytest.mark.unit
@pytest.mark.parametrize("search", ["", "   ", "\t\n", None])
def test_blank_search_is_omitted(search):
    params = build_query(MemberFilterState(search=search), SortState(), PageState())
    assert "search" not in params.to_params()
    assert params.search is None


@pytest.mark.unit
def test_search_is_trimmed():
    params = build_query(MemberFilterState(search="  jane "), SortState(), PageState())
    assert params.to_params()["search"] == "jane"


@pytest.mark.unit
def test_identical_state_builds_equal_hashable_params():
    state = (
        MemberFilterState(search="a", status=[MemberStatus.PENDING, MemberStatus.ACTIVE]),
        SortState(field="email", direction="desc"),
        PageState(page=3, page_size=10),
    )
    first, second = build_query(*state), build_query(*state)

    assert first == second
    assert hash(first) == hash(second)
    assert {first: 1}[second] == 1


@pytest.mark.unit
def test_status_all_is_omitted():
    params = build_query(MemberFilterState(status="all"), SortState(), PageState())
    assert "status" not in params.to_params()


@pytest.mark.unit
def test_status_list_is_deduplicated_and_sorted():
    params = build_query(
        MemberFilterState(status=["pending", "active", "pending"]),
        SortState(),
        PageState(),
    )
    assert params.to_params()["status"] == ["active", "pending"]


@pytest.mark.unit
def test_single_status_list_collapses():
    params = build_query(MemberFilterState(status=["expired"]), SortState(), PageState())
    assert params.to_params()["status"] == "expired"


@pytest.mark.unit
def test_unmapped_sort_field_has_no_server_sort():
    params = build_query(
        MemberFilterState(), SortState(field="balance_due", direction="desc"), PageState()
    )
    out = params.to_params()
    assert "order_by" not in out
    assert "order_direction" not in out


@pytest.mark.unit
@pytest.mark.parametrize("page, offset", [(1, 0), (0, 0), (-4, 0), (5, 100)])
def test_offset_from_page(page, offset):
    params = build_query(MemberFilterState(), SortState(), PageState(page=page, page_size=25))
    assert params.offset == offset
    assert params.limit == 25


@pytest.mark.unit
def test_optional_filters_pass_through():
    params = build_query(
        MemberFilterState(
            member_type=MemberType.TRIAL,
            join_date_from=date(2024, 1, 1),
            has_outstanding_balance=False,
        ),
        SortState(),
        PageState(),
    )
    out = params.to_params()
    assert out["member_type"] == "trial"
    assert out["join_date_from"] == "2024-01-01"
    assert out["has_outstanding_balance"] is False
    assert "has_active_subscription" not in out


@pytest.mark.unit
def test_changing_page_size_resets_to_first_page():
    page = change_page_size(PageState(page=7, page_size=20), 50)
    assert page == PageState(page=1, page_size=50)


@pytest.mark.unit
def test_change_page_clamps():
    assert change_page(PageState(page=3, page_size=10), 0).page == 1


@pytest.mark.unit
def test_toggle_sort():
    sort = SortState(field="name", direction="asc")
    assert toggle_sort(sort, "name") == SortState(field="name", direction="desc")
    assert toggle_sort(SortState(field="name", direction="desc"), "name").direction == "asc"
    assert toggle_sort(sort, "email") == SortState(field="email", direction="asc")


@pytest.mark.unit
def test_inverted_join_date_range_rejected():
    with pytest.raises(ValidationRejected):
        validate_filters(
            MemberFilterState(join_date_from=date(2024, 5, 1), join_date_to=date(2024, 1, 1))
        )


@pytest.mark.unit
def test_view_dependencies():
    params = build_query(
        MemberFilterState(status="active"), SortState(field="email"), PageState()
    )
    assert params.filter_fields() == {"status"}
    assert params.sort_fields() == {"email"}

    unsorted = build_query(MemberFilterState(), SortState(field="next_session"), PageState())
    assert unsorted.filter_fields() == frozenset()
    assert unsorted.sort_fields() == frozenset()


@pytest.mark.unit
def test_matches_filters_locally():
    params = build_query(
        MemberFilterState(search="ali", status=["active", "pending"]),
        SortState(),
        PageState(),
    )
    assert params.matches(MemberFactory.create(first_name="Alice", status="pending"))
    assert not params.matches(MemberFactory.create(first_name="Alice", status="expired"))
    assert not params.matches(MemberFactory.create(first_name="Bob", last_name="Stone"))
