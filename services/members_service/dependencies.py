"""Process-wide wiring for the members core, exposed as FastAPI dependencies."""

from functools import lru_cache

from libs.cache.query_cache import InMemoryQueryCache
from libs.common.config import get_settings
from services.members_service.backend import MemberBackend, SupabaseMemberBackend
from services.members_service.services.cache_coherence import CacheCoherenceManager
from services.members_service.services.change_feed import MemberChangeFeedHandler
from services.members_service.services.mutation_gateway import MemberMutationGateway
from services.members_service.services.notifications import LoggingNotifier
from services.members_service.services.query_service import MemberQueryService


@lru_cache
def get_member_backend() -> MemberBackend:
    return SupabaseMemberBackend()


@lru_cache
def get_cache_manager() -> CacheCoherenceManager:
    settings = get_settings()
    return CacheCoherenceManager(
        InMemoryQueryCache(stale_after=settings.CACHE_STALE_SECONDS)
    )


@lru_cache
def get_gateway() -> MemberMutationGateway:
    return MemberMutationGateway(
        get_member_backend(), get_cache_manager(), LoggingNotifier()
    )


def get_query_service() -> MemberQueryService:
    return MemberQueryService(get_member_backend(), get_cache_manager())


def get_change_feed() -> MemberChangeFeedHandler:
    return MemberChangeFeedHandler(get_cache_manager())
