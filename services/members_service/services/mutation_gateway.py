"""
Member mutation gateway.

Every write to a member goes through here:

1. Local checks (status policy, referral and training-preference rules).
   Violations raise ``ValidationRejected`` before any network call.
2. Optimistic patch of the cached views, applied before the first await so a
   read issued right after the call already sees it.
3. The backend call. Calls for the same member id are sent in issue order.
4. Reconciliation through the cache coherence manager: server state wins on
   success, the last authoritative snapshot is restored on failure.
5. Exactly one user notification.
"""

import asyncio
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

from pydantic import ValidationError

from libs.common.config import Settings, get_settings
from libs.common.logging import get_logger
from services.members_service.backend import MemberBackend
from services.members_service.errors import (
    MemberOperationError,
    NetworkOrServerError,
    NotFound,
    ValidationRejected,
    user_message,
)
from services.members_service.models import (
    IMMUTABLE_FIELDS,
    Gender,
    Member,
    MemberStatus,
    ReferralSource,
)
from services.members_service.schemas import (
    BulkItemFailure,
    BulkOperationResult,
    BulkOutcome,
    BulkProgress,
    MemberCreate,
    MemberUpdate,
)
from services.members_service.services.cache_coherence import (
    CacheCoherenceManager,
    MutationTicket,
)
from services.members_service.services.notifications import LoggingNotifier, Notifier
from services.members_service.services.status_policy import ensure_transition_allowed

logger = get_logger(__name__)

ProgressCallback = Callable[[BulkProgress], None]


def _first_error(exc: ValidationError) -> tuple[str, Optional[str]]:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error.get("loc", ())) or None
    if error.get("type") == "extra_forbidden" and field in IMMUTABLE_FIELDS:
        return f"{field} cannot be changed.", field
    if field:
        return f"{field}: {error.get('msg')}", field
    return str(error.get("msg")), None


def _coerce(model, data, member_id: Optional[str] = None):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        message, field = _first_error(exc)
        raise ValidationRejected(message, member_id=member_id, field=field) from exc


def _unexpected(exc: Exception, member_id: Optional[str]) -> NetworkOrServerError:
    logger.exception(f"Unexpected error while writing member {member_id}")
    return NetworkOrServerError(f"Unexpected error: {exc}", member_id=member_id)


def _check_referral(
    member_id: Optional[str],
    referral_source: Optional[ReferralSource],
    referred_by: Optional[str],
) -> None:
    if referral_source != ReferralSource.MEMBER_REFERRAL:
        return
    if not referred_by:
        raise ValidationRejected(
            "Select the member who made the referral.",
            member_id=member_id,
            field="referred_by_member_id",
        )
    if member_id is not None and referred_by == member_id:
        raise ValidationRejected(
            "A member cannot refer themselves.",
            member_id=member_id,
            field="referred_by_member_id",
        )


class _MemberLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class MemberMutationGateway:
    def __init__(
        self,
        backend: MemberBackend,
        cache_manager: CacheCoherenceManager,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.backend = backend
        self.cache = cache_manager
        self.notifier = notifier or LoggingNotifier()
        self.settings = settings or get_settings()
        self._locks: dict[str, _MemberLock] = {}

    @asynccontextmanager
    async def _member_lock(self, member_id: str):
        """Serialize backend calls per member id. ``asyncio.Lock`` wakes waiters FIFO."""
        entry = self._locks.get(member_id)
        if entry is None:
            entry = self._locks[member_id] = _MemberLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[member_id]

    def _fail(self, error: MemberOperationError, operation: str) -> None:
        logger.warning(
            f"Member {operation} failed ({error.kind.value}): {error.message}"
        )
        self.notifier.error(user_message(error, operation))

    # ------------------------------------------------------------------
    # Single-member mutations
    # ------------------------------------------------------------------

    async def create(self, data: Union[MemberCreate, dict[str, Any]]) -> Member:
        """Create a member. Nothing is cached before the server assigns an id."""
        try:
            payload = _coerce(MemberCreate, data)
            _check_referral(None, payload.referral_source, payload.referred_by_member_id)
        except ValidationRejected as err:
            self._fail(err, "create")
            raise

        if payload.gender != Gender.FEMALE and payload.training_preference is not None:
            payload = payload.model_copy(update={"training_preference": None})

        try:
            member = await self.backend.create_member(payload)
        except MemberOperationError as err:
            self._fail(err, "create")
            raise

        with self.cache.batch():
            self.cache.apply_created(member)
        logger.info(f"Created member {member.id}")
        self.notifier.success(f"Member {member.full_name} created.")
        return member

    def _prepare_changes(
        self, member_id: str, changes: dict[str, Any], current: Optional[Member]
    ) -> dict[str, Any]:
        """Apply cross-field rules against the member as currently displayed."""
        changes = dict(changes)

        if "status" in changes and current is not None:
            if MemberStatus(changes["status"]) != current.status:
                ensure_transition_allowed(
                    current.status, changes["status"], member_id=member_id
                )

        if "referral_source" in changes or "referred_by_member_id" in changes:
            _check_referral(
                member_id,
                changes.get(
                    "referral_source", current.referral_source if current else None
                ),
                changes.get(
                    "referred_by_member_id",
                    current.referred_by_member_id if current else None,
                ),
            )

        # Leaving female always drops the preference, whatever is stored
        if "gender" in changes:
            if changes["gender"] != Gender.FEMALE:
                changes["training_preference"] = None
        elif (
            "training_preference" in changes
            and current is not None
            and current.gender != Gender.FEMALE
        ):
            changes["training_preference"] = None
        return changes

    async def _apply(
        self, member_id: str, changes: dict[str, Any], operation: str
    ) -> Member:
        # No await may come before apply_optimistic
        ticket = self.cache.begin(member_id)
        self.cache.apply_optimistic(ticket, changes)
        try:
            async with self._member_lock(member_id):
                member = await self.backend.update_member(member_id, changes)
        except MemberOperationError as err:
            self.cache.settle_failure(ticket, vanished=isinstance(err, NotFound))
            self._fail(err, operation)
            raise
        except Exception as exc:
            self.cache.settle_failure(ticket)
            self._fail(_unexpected(exc, member_id), operation)
            raise
        self.cache.settle_success(ticket, member)
        return member

    async def update(
        self, member_id: str, data: Union[MemberUpdate, dict[str, Any]]
    ) -> Member:
        """
        Partial update. ``id`` and ``member_number`` can never be sent.

        A status change is checked against the transition policy; when the
        member is not cached its current status is read first.
        """
        try:
            update = _coerce(MemberUpdate, data, member_id)
        except ValidationRejected as err:
            self._fail(err, "update")
            raise
        changes = update.changes()
        current = self.cache.current(member_id)
        if current is None and "status" in changes:
            current = await self._status_source(member_id, "update")

        try:
            changes = self._prepare_changes(member_id, changes, current)
        except ValidationRejected as err:
            self._fail(err, "update")
            raise
        if not changes:
            err = ValidationRejected("Nothing to update.", member_id=member_id)
            self._fail(err, "update")
            raise err

        member = await self._apply(member_id, changes, "update")
        logger.info(f"Updated member {member_id}: {sorted(changes)}")
        self.notifier.success(f"Member {member.full_name} updated.")
        return member

    async def _status_source(self, member_id: str, operation: str) -> Member:
        current = self.cache.current(member_id)
        if current is not None:
            return current
        try:
            member = await self.backend.get_member(member_id)
        except MemberOperationError as err:
            if isinstance(err, NotFound):
                self.cache.invalidate_member(member_id)
            self._fail(err, operation)
            raise
        self.cache.store_detail(member)
        return member

    async def update_status(
        self, member_id: str, status: Union[MemberStatus, str]
    ) -> Member:
        """Change status after checking the transition policy."""
        status = MemberStatus(status)
        current = await self._status_source(member_id, "update_status")
        try:
            ensure_transition_allowed(current.status, status, member_id=member_id)
        except ValidationRejected as err:
            self._fail(err, "update_status")
            raise

        member = await self._apply(member_id, {"status": status}, "update_status")
        logger.info(f"Member {member_id} status {current.status.value} -> {status.value}")
        self.notifier.success(f"{member.full_name} is now {member.status.value}.")
        return member

    async def delete(self, member_id: str) -> None:
        """Hard delete. The cache is updated once the backend confirms."""
        ticket = self.cache.begin(member_id)
        try:
            async with self._member_lock(member_id):
                await self.backend.delete_member(member_id)
        except MemberOperationError as err:
            self.cache.settle_failure(ticket, vanished=isinstance(err, NotFound))
            self._fail(err, "delete")
            raise
        except Exception as exc:
            self.cache.settle_failure(ticket)
            self._fail(_unexpected(exc, member_id), "delete")
            raise

        with self.cache.batch():
            self.cache.apply_deleted(ticket)
        logger.info(f"Deleted member {member_id}")
        self.notifier.success("Member deleted.")

    # ------------------------------------------------------------------
    # Bulk mutations
    # ------------------------------------------------------------------

    def _bulk_notify(self, result: BulkOperationResult) -> None:
        if result.outcome is BulkOutcome.COMPLETE:
            self.notifier.success(f"{result.message}.")
        elif result.outcome is BulkOutcome.PARTIAL:
            self.notifier.warning(
                f"{result.message}. {len(result.failed)} could not be processed."
            )
        else:
            self.notifier.error(f"{result.message}.")

    def _collect(
        self,
        action: str,
        ids: list[str],
        errors: dict[str, Optional[MemberOperationError]],
        operation: str,
    ) -> BulkOperationResult:
        result = BulkOperationResult(action=action, requested=len(ids))
        for member_id in ids:
            err = errors.get(member_id)
            if err is None:
                result.succeeded.append(member_id)
            else:
                result.failed.append(
                    BulkItemFailure(
                        id=member_id, kind=err.kind, message=user_message(err, operation)
                    )
                )
        return result

    async def bulk_update_status(
        self,
        ids: list[str],
        status: Union[MemberStatus, str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkOperationResult:
        """
        Apply ``update_status`` to many members.

        Not atomic: illegal transitions fail locally, legal ones run
        concurrently (bounded by ``BULK_CONCURRENCY``) and each settles on its
        own. The result is reported only after every item settled.
        """
        status = MemberStatus(status)
        member_ids = list(dict.fromkeys(ids))
        errors: dict[str, Optional[MemberOperationError]] = {}
        settled = 0

        def tick() -> None:
            nonlocal settled
            settled += 1
            if on_progress is not None:
                on_progress(BulkProgress(current=settled, total=len(member_ids)))

        semaphore = asyncio.Semaphore(self.settings.BULK_CONCURRENCY)

        async def run(member_id: str, ticket: Optional[MutationTicket]) -> None:
            async with semaphore:
                try:
                    if ticket is None:
                        current = await self.backend.get_member(member_id)
                        self.cache.store_detail(current)
                        ensure_transition_allowed(
                            current.status, status, member_id=member_id
                        )
                        ticket = self.cache.begin(member_id)
                        self.cache.apply_optimistic(ticket, {"status": status})
                    async with self._member_lock(member_id):
                        member = await self.backend.update_member(
                            member_id, {"status": status}
                        )
                except Exception as exc:
                    err = (
                        exc
                        if isinstance(exc, MemberOperationError)
                        else _unexpected(exc, member_id)
                    )
                    if ticket is not None:
                        self.cache.settle_failure(
                            ticket, vanished=isinstance(err, NotFound)
                        )
                    elif isinstance(err, NotFound):
                        self.cache.invalidate_member(member_id)
                    errors[member_id] = err
                else:
                    self.cache.settle_success(ticket, member)
                    errors[member_id] = None
                finally:
                    tick()

        with self.cache.batch():
            pending = []
            for member_id in member_ids:
                current = self.cache.current(member_id)
                if current is None:
                    pending.append(run(member_id, None))
                    continue
                try:
                    ensure_transition_allowed(current.status, status, member_id=member_id)
                except ValidationRejected as err:
                    errors[member_id] = err
                    tick()
                    continue
                ticket = self.cache.begin(member_id)
                self.cache.apply_optimistic(ticket, {"status": status})
                pending.append(run(member_id, ticket))

            await asyncio.gather(*pending)

        result = self._collect("updated", member_ids, errors, "bulk_update_status")
        logger.info(f"Bulk status -> {status.value}: {result.message}")
        self._bulk_notify(result)
        return result

    async def bulk_delete(
        self,
        ids: list[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BulkOperationResult:
        """Delete many members. Non-atomic; items that succeeded stay deleted."""
        member_ids = list(dict.fromkeys(ids))
        errors: dict[str, Optional[MemberOperationError]] = {}
        settled = 0
        semaphore = asyncio.Semaphore(self.settings.BULK_CONCURRENCY)

        async def run(member_id: str, ticket: MutationTicket) -> None:
            nonlocal settled
            async with semaphore:
                try:
                    async with self._member_lock(member_id):
                        await self.backend.delete_member(member_id)
                except Exception as exc:
                    err = (
                        exc
                        if isinstance(exc, MemberOperationError)
                        else _unexpected(exc, member_id)
                    )
                    self.cache.settle_failure(ticket, vanished=isinstance(err, NotFound))
                    errors[member_id] = err
                else:
                    self.cache.apply_deleted(ticket)
                    errors[member_id] = None
                finally:
                    settled += 1
                    if on_progress is not None:
                        on_progress(BulkProgress(current=settled, total=len(member_ids)))

        with self.cache.batch():
            tickets = [(member_id, self.cache.begin(member_id)) for member_id in member_ids]
            await asyncio.gather(*(run(member_id, ticket) for member_id, ticket in tickets))

        result = self._collect("deleted", member_ids, errors, "bulk_delete")
        logger.info(f"Bulk delete: {result.message}")
        self._bulk_notify(result)
        return result
