"""
Cache coherence for member queries.

The manager is the only component allowed to write member entries in the
query cache. Mutations report what happened (created, optimistic change,
server result, failure, deletion) and the manager decides which views to patch
in place and which to mark stale.

Views:
- detail:        ("members", "detail", <id>)       -> Member
- list:          ("members", "list", <params>)     -> tuple[Member, ...]
- total:         ("members", "total")              -> int
- status counts: ("members", "status-counts")      -> StatusCounts

Ordering: every mutation takes a ticket from ``begin``. Tickets are numbered in
issue order and only the newest ticket for a member may change what is
displayed, so a slow early request never clobbers a fast later one. The
rollback snapshot is the last authoritative state of the member, captured
before the first optimistic patch.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from itertools import count
from typing import Any, Iterable, Iterator, Optional

from libs.cache.query_cache import CacheKey, QueryCache
from libs.common.logging import get_logger
from services.members_service.models import OPTIMISTIC_FIELDS, Member, MemberStatus
from services.members_service.schemas import StatusCounts
from services.members_service.services.query_builder import MemberQueryParams

logger = get_logger(__name__)


class member_keys:
    """Query key factory for member views."""

    all: CacheKey = ("members",)
    lists: CacheKey = ("members", "list")
    details: CacheKey = ("members", "detail")
    total: CacheKey = ("members", "total")
    status_counts: CacheKey = ("members", "status-counts")

    @staticmethod
    def list(params: MemberQueryParams) -> CacheKey:
        return ("members", "list", params)

    @staticmethod
    def detail(member_id: str) -> CacheKey:
        return ("members", "detail", member_id)

    @staticmethod
    def search(text: str) -> CacheKey:
        return ("members", "list", "search", text)


@dataclass(frozen=True)
class MutationTicket:
    member_id: str
    seq: int
    # What was displayed right before this mutation's optimistic patch
    previous: Optional[Member]


@dataclass
class _Ledger:
    base: Optional[Member]
    base_seq: int
    latest_seq: int
    outstanding: int
    deleted: bool = False


def _carry_fields(target: Member, source: Member) -> Member:
    """Copy stored columns from ``source`` onto ``target``, keeping projections."""
    return target.model_copy(
        update={name: getattr(source, name) for name in OPTIMISTIC_FIELDS}
    )


def _with_projections(member: Member, existing: Optional[Member]) -> Member:
    if member.projections is None and existing is not None and existing.projections:
        return member.model_copy(update={"projections": existing.projections})
    return member


def changed_fields(before: Optional[Member], after: Member) -> frozenset[str]:
    """Stored columns whose value differs between two snapshots."""
    if before is None:
        return frozenset(OPTIMISTIC_FIELDS)
    return frozenset(
        name
        for name in OPTIMISTIC_FIELDS
        if name != "updated_at" and getattr(before, name) != getattr(after, name)
    )


class CacheCoherenceManager:
    def __init__(self, cache: QueryCache):
        self.cache = cache
        self._seq = count(1)
        self._ledgers: dict[str, _Ledger] = {}
        self._batch_depth = 0
        self._pending: dict[CacheKey, None] = {}

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    @contextmanager
    def batch(self) -> Iterator[None]:
        """
        Coalesce invalidations. Each distinct key or prefix is invalidated once
        when the outermost batch exits.
        """
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._flush()

    def _invalidate(self, prefix: CacheKey) -> None:
        if self._batch_depth:
            self._pending[prefix] = None
        else:
            self.cache.invalidate(prefix)

    def _flush(self) -> None:
        pending, self._pending = list(self._pending), {}
        for prefix in pending:
            # Skip keys already covered by a shorter pending prefix
            if any(
                other != prefix and prefix[: len(other)] == other for other in pending
            ):
                continue
            self.cache.invalidate(prefix)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _list_entries(self) -> list[tuple[CacheKey, Any]]:
        return [
            (key, entry)
            for key, entry in self.cache.entries(member_keys.lists)
            if len(key) == 3 and isinstance(key[2], MemberQueryParams)
        ]

    def _row_entries(self) -> list[tuple[CacheKey, Any]]:
        """Every cached view holding member rows, search results included."""
        return self.cache.entries(member_keys.lists)

    def current(self, member_id: str) -> Optional[Member]:
        """What the UI currently shows for a member, from detail or any list row."""
        member = self.cache.get(member_keys.detail(member_id))
        if member is not None:
            return member
        for _, entry in self._row_entries():
            for row in entry.value:
                if row.id == member_id:
                    return row
        return None

    def has_pending(self, member_id: str) -> bool:
        return member_id in self._ledgers

    # ------------------------------------------------------------------
    # Read-side writes
    # ------------------------------------------------------------------

    def store_detail(self, member: Member) -> None:
        ledger = self._ledgers.get(member.id)
        if ledger is not None:
            # A mutation owns the display; the fetch only refreshes the base
            ledger.base = member
            return
        self.cache.set(member_keys.detail(member.id), member)

    def store_list(self, key: CacheKey, rows: Iterable[Member]) -> tuple[Member, ...]:
        stored = []
        for row in rows:
            if row.id in self._ledgers:
                shown = self.current(row.id)
                if shown is not None:
                    row = _carry_fields(row, shown)
            stored.append(row)
        value = tuple(stored)
        self.cache.set(key, value)
        return value

    def store_total(self, total: int) -> None:
        self.cache.set(member_keys.total, total)

    def store_status_counts(self, counts: StatusCounts) -> None:
        self.cache.set(member_keys.status_counts, counts)

    # ------------------------------------------------------------------
    # Mutation lifecycle
    # ------------------------------------------------------------------

    def begin(self, member_id: str) -> MutationTicket:
        """Issue a ticket. Must be called before any optimistic patch."""
        seq = next(self._seq)
        previous = self.current(member_id)
        ledger = self._ledgers.get(member_id)
        if ledger is None:
            self._ledgers[member_id] = _Ledger(
                base=previous, base_seq=0, latest_seq=seq, outstanding=1
            )
        else:
            ledger.latest_seq = seq
            ledger.outstanding += 1
        return MutationTicket(member_id=member_id, seq=seq, previous=previous)

    def _is_latest(self, ticket: MutationTicket) -> bool:
        ledger = self._ledgers.get(ticket.member_id)
        return (
            ledger is not None
            and not ledger.deleted
            and ledger.latest_seq == ticket.seq
        )

    def _release(self, ticket: MutationTicket) -> None:
        ledger = self._ledgers.get(ticket.member_id)
        if ledger is None:
            return
        ledger.outstanding -= 1
        if ledger.outstanding <= 0:
            del self._ledgers[ticket.member_id]

    def apply_optimistic(self, ticket: MutationTicket, changes: dict) -> None:
        """Patch detail and list rows in place. No view is invalidated."""
        patch = {k: v for k, v in changes.items() if k in OPTIMISTIC_FIELDS}
        if not patch:
            return
        member_id = ticket.member_id
        self.cache.patch(
            member_keys.detail(member_id),
            lambda member: member.model_copy(update=patch),
        )
        for key, entry in self._row_entries():
            if any(row.id == member_id for row in entry.value):
                self.cache.patch(
                    key,
                    lambda rows: tuple(
                        row.model_copy(update=patch) if row.id == member_id else row
                        for row in rows
                    ),
                )

    def settle_success(self, ticket: MutationTicket, server_member: Member) -> None:
        """
        Reconcile with the authoritative server state. Server values win over
        the optimistic guess for every field.
        """
        ledger = self._ledgers.get(ticket.member_id)
        try:
            if ledger is None or ledger.deleted:
                return
            if ticket.seq >= ledger.base_seq:
                ledger.base = server_member
                ledger.base_seq = ticket.seq

            changed = changed_fields(ticket.previous, server_member)
            display = self._is_latest(ticket)
            if display:
                self._write_member(server_member)
            self._apply_view_policy(ticket.member_id, changed, patch_rows=display)
        finally:
            self._release(ticket)

    def settle_failure(self, ticket: MutationTicket, *, vanished: bool = False) -> None:
        """Revert to the last authoritative snapshot if this ticket owns the display."""
        try:
            ledger = self._ledgers.get(ticket.member_id)
            if self._is_latest(ticket) and ledger.base is not None:
                self._write_member(ledger.base)
            if vanished:
                self.invalidate_member(ticket.member_id)
        finally:
            self._release(ticket)

    def abandon(self, ticket: MutationTicket) -> None:
        """Release a ticket that never touched the cache (rejected locally)."""
        self._release(ticket)

    def _write_member(self, member: Member) -> None:
        key = member_keys.detail(member.id)
        existing = self.cache.get(key)
        if existing is not None:
            self.cache.set(key, _with_projections(member, existing))
        for list_key, entry in self._row_entries():
            if any(row.id == member.id for row in entry.value):
                self.cache.patch(
                    list_key,
                    lambda rows: tuple(
                        _carry_fields(row, member) if row.id == member.id else row
                        for row in rows
                    ),
                )

    def _apply_view_policy(
        self, member_id: str, changed: frozenset[str], *, patch_rows: bool
    ) -> None:
        if not changed:
            return
        for key, entry in self._list_entries():
            params: MemberQueryParams = key[2]
            contains = any(row.id == member_id for row in entry.value)
            if contains:
                # Rows were patched in place; order or membership may now be wrong
                if changed & (params.filter_fields() | params.sort_fields()):
                    self._invalidate(key)
            elif changed & params.filter_fields():
                # The member may now match this view
                self._invalidate(key)

        if "status" in changed:
            self._invalidate(member_keys.status_counts)

        if not patch_rows:
            logger.debug("Superseded result for member %s; display left to newer mutation", member_id)

    # ------------------------------------------------------------------
    # Create / delete / external changes
    # ------------------------------------------------------------------

    def apply_created(self, member: Member) -> None:
        """A new row may match any list and occupies one status bucket."""
        self.cache.set(member_keys.detail(member.id), member)
        self._invalidate(member_keys.lists)
        self._invalidate(member_keys.total)
        self._invalidate(member_keys.status_counts)

    def apply_deleted(self, ticket: MutationTicket) -> None:
        """
        Drop the member everywhere and adjust counts in place. A page that was
        full before the removal is marked stale so it refetches instead of
        showing fewer rows than its page size.
        """
        member_id = ticket.member_id
        ledger = self._ledgers.get(member_id)
        if ledger is not None:
            ledger.deleted = True
        try:
            known = (ledger.base if ledger else None) or ticket.previous
            self.cache.remove(member_keys.detail(member_id))

            for key, entry in self._row_entries():
                rows = entry.value
                if not any(row.id == member_id for row in rows):
                    continue
                self.cache.patch(
                    key, lambda old: tuple(r for r in old if r.id != member_id)
                )
                limit = key[2].limit if isinstance(key[2], MemberQueryParams) else None
                if limit is not None and len(rows) >= limit:
                    self._invalidate(key)

            self.cache.patch(member_keys.total, lambda total: max(total - 1, 0))

            if known is not None:
                status = known.status
                self.cache.patch(
                    member_keys.status_counts,
                    lambda counts: counts.adjust(MemberStatus(status), -1),
                )
            else:
                self._invalidate(member_keys.status_counts)
        finally:
            self._release(ticket)

    def invalidate_member(self, member_id: Optional[str] = None) -> None:
        """Mark everything a member could appear in as stale."""
        if member_id is not None:
            self._invalidate(member_keys.detail(member_id))
        self._invalidate(member_keys.lists)
        self._invalidate(member_keys.total)
        self._invalidate(member_keys.status_counts)

    def invalidate_updated(self, member_id: str, *, status_changed: bool = True) -> None:
        """An external update: detail and lists are stale, counts only on status change."""
        self._invalidate(member_keys.detail(member_id))
        self._invalidate(member_keys.lists)
        if status_changed:
            self._invalidate(member_keys.status_counts)
