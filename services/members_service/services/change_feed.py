"""
Realtime change feed handling.

Push events from the backend's realtime channel are hints that something
changed server-side. They only mark cached views stale; the payload itself is
never written into the cache.
"""

from collections.abc import AsyncIterable
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from libs.common.logging import get_logger
from services.members_service.models import MemberStatus
from services.members_service.services.cache_coherence import CacheCoherenceManager

logger = get_logger(__name__)

ChangeType = Literal["insert", "update", "delete"]


class MemberChangeEvent(BaseModel):
    type: ChangeType
    member_id: str
    status: Optional[MemberStatus] = None
    old_status: Optional[MemberStatus] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "MemberChangeEvent":
        """
        Parse a Supabase realtime payload:
        ``{"eventType": "UPDATE", "new": {...}, "old": {...}}``.
        """
        new = payload.get("new") or {}
        old = payload.get("old") or {}
        return cls(
            type=str(payload.get("eventType", "")).lower(),
            member_id=new.get("id") or old.get("id"),
            status=new.get("status"),
            old_status=old.get("status"),
        )


class MemberChangeFeedHandler:
    def __init__(self, cache_manager: CacheCoherenceManager):
        self.manager = cache_manager

    def handle(self, event: MemberChangeEvent) -> None:
        manager = self.manager
        with manager.batch():
            if event.type in ("insert", "delete"):
                manager.invalidate_member(event.member_id)
            else:
                manager.invalidate_updated(
                    event.member_id,
                    status_changed=event.status is None
                    or event.status != event.old_status,
                )

    def handle_payload(self, payload: Union[dict[str, Any], MemberChangeEvent]) -> bool:
        """Handle one raw event. Malformed events are logged and skipped."""
        try:
            event = (
                payload
                if isinstance(payload, MemberChangeEvent)
                else MemberChangeEvent.from_payload(payload)
            )
        except (ValidationError, AttributeError, TypeError) as exc:
            logger.warning(f"Skipping malformed member change event: {exc}")
            return False
        self.handle(event)
        return True

    async def consume(self, stream: AsyncIterable) -> int:
        """Drain a stream of events. Returns how many were applied."""
        handled = 0
        async for payload in stream:
            if self.handle_payload(payload):
                handled += 1
        return handled
