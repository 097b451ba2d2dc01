"""
Read side for member views.

Serves fresh cache entries and refetches missing or stale ones. Results are
written back through the cache coherence manager, which keeps optimistic
values of in-flight mutations visible in freshly fetched rows.
"""

from typing import Optional

from libs.common.logging import get_logger
from services.members_service.backend import MemberBackend
from services.members_service.models import Member
from services.members_service.schemas import StatusCounts
from services.members_service.services.cache_coherence import (
    CacheCoherenceManager,
    member_keys,
)
from services.members_service.services.query_builder import (
    MemberFilterState,
    MemberQueryParams,
    PageState,
    SortState,
    build_query,
    validate_filters,
)

logger = get_logger(__name__)

MIN_SEARCH_LENGTH = 2
SEARCH_LIMIT = 20


class MemberQueryService:
    def __init__(self, backend: MemberBackend, cache_manager: CacheCoherenceManager):
        self.backend = backend
        self.manager = cache_manager

    @property
    def cache(self):
        return self.manager.cache

    async def list_members(
        self,
        filters: Optional[MemberFilterState] = None,
        sort: Optional[SortState] = None,
        page: Optional[PageState] = None,
    ) -> tuple[MemberQueryParams, tuple[Member, ...]]:
        filters = filters or MemberFilterState()
        validate_filters(filters)
        params = build_query(filters, sort or SortState(), page or PageState())
        return params, await self.fetch_page(params)

    async def fetch_page(self, params: MemberQueryParams) -> tuple[Member, ...]:
        key = member_keys.list(params)
        if not self.cache.is_stale(key):
            return self.cache.get(key)
        rows = await self.backend.list_members(params)
        logger.debug(f"Fetched {len(rows)} members for {params.to_params()}")
        return self.manager.store_list(key, rows)

    async def get_member(self, member_id: str) -> Member:
        key = member_keys.detail(member_id)
        if not self.cache.is_stale(key):
            return self.cache.get(key)
        if self.manager.has_pending(member_id):
            # A mutation owns the displayed value
            current = self.manager.current(member_id)
            if current is not None:
                return current
        member = await self.backend.get_member(member_id)
        self.manager.store_detail(member)
        return self.cache.get(key) or member

    async def count(self) -> int:
        if not self.cache.is_stale(member_keys.total):
            return self.cache.get(member_keys.total)
        total = await self.backend.count_members()
        self.manager.store_total(total)
        return total

    async def count_by_status(self) -> StatusCounts:
        if not self.cache.is_stale(member_keys.status_counts):
            return self.cache.get(member_keys.status_counts)
        counts = await self.backend.count_by_status()
        self.manager.store_status_counts(counts)
        return counts

    async def search(self, text: str) -> list[Member]:
        """Quick lookup by name, email or phone. Needs at least two characters."""
        query = (text or "").strip()
        if len(query) < MIN_SEARCH_LENGTH:
            return []
        key = member_keys.search(query.lower())
        if not self.cache.is_stale(key):
            return list(self.cache.get(key))
        rows = await self.backend.search_members(query, limit=SEARCH_LIMIT)
        return list(self.manager.store_list(key, rows))
