from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.cache.query_cache import InMemoryQueryCache
from libs.common.config import get_settings
from services.members_service.services.cache_coherence import CacheCoherenceManager
from services.members_service.services.mutation_gateway import MemberMutationGateway
from services.members_service.services.notifications import RecordingNotifier
from services.members_service.services.query_service import MemberQueryService
from tests.fakes import FakeMemberBackend


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def cache() -> InMemoryQueryCache:
    return InMemoryQueryCache()


@pytest.fixture
def manager(cache) -> CacheCoherenceManager:
    return CacheCoherenceManager(cache)


@pytest.fixture
def backend() -> FakeMemberBackend:
    return FakeMemberBackend()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway(backend, manager, notifier, settings) -> MemberMutationGateway:
    return MemberMutationGateway(backend, manager, notifier, settings)


@pytest.fixture
def queries(backend, manager) -> MemberQueryService:
    return MemberQueryService(backend, manager)


@pytest.fixture
def admin_user() -> AuthUser:
    return AuthUser(user_id="admin-user", email="admin@test.com", role="admin")


@pytest_asyncio.fixture
async def client(gateway, queries, admin_user) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient for the members app with auth and the members core
    replaced by in-memory fixtures.
    """
    from services.members_service.app.main import app
    from services.members_service.dependencies import get_gateway, get_query_service

    app.dependency_overrides[get_current_user] = lambda: admin_user
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_query_service] = lambda: queries

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    """Placeholder bearer header; auth itself is overridden per test."""
    return {"Authorization": "Bearer mock-token"}
