# =============================================================================
# portfolio_core/offline/fallback_router.py
# Remote-First Data Access with Local Fallback and Offline Queue
# =============================================================================
"""
FallbackRouter - single entry point for collection reads and writes.

Features:
- Remote-first when the connection monitor reports online
- Read-through TTL cache and a local SQLite mirror of every collection
- Optimistic local writes queued for replay while offline
- FIFO replay per collection when the connection comes back
- Dead-letter table for operations that keep failing
- Change events published per collection

Routing:
    read   cache -> remote (online) -> local mirror (stale flag)
           records with queued writes keep their local version until replayed
    write  remote (online) -> local apply + queue

Conflict policy is last-write-wins by enqueue order. Writes made offline
are never merged with concurrent remote edits.
"""

from __future__ import annotations
import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
import logging

from portfolio_core.cache import TTLCache
from portfolio_core.data.supabase_client import RemoteService
from portfolio_core.data.utils import matches
from portfolio_core.errors import AuthorizationError, QueueOverflowError, ValidationError
from portfolio_core.offline.connection_monitor import ConnectionMonitor, ConnectionState, ConnectionStatus
from portfolio_core.offline.local_database import LocalDatabase
from portfolio_core.services.base_service import BaseService, Provenance, Result, ServiceHealth
from portfolio_core.services.request_executor import RequestExecutor

logger = logging.getLogger(__name__)

Publisher = Callable[[str, str, Dict[str, Any]], Awaitable[Any]]


class OperationKind(Enum):
    """Operation routed through the fallback layer."""
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


WRITE_KINDS = (OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE)


@dataclass
class PendingOperation:
    """A write applied locally and waiting to be replayed against the remote."""
    id: str
    target_collection: str
    operation_kind: OperationKind
    payload: Dict[str, Any]
    enqueued_at: datetime = field(default_factory=datetime.now)
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def record_id(self) -> Any:
        return self.payload.get("id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "collection": self.target_collection,
            "kind": self.operation_kind.value,
            "record_id": self.record_id,
            "enqueued_at": self.enqueued_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass
class DeadLetter:
    """An operation that exhausted its replay budget."""
    operation: PendingOperation
    failed_at: datetime
    error: Dict[str, Any]


@dataclass
class ReplayReport:
    """Outcome of one replay round."""
    replayed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    skipped: bool = False
    duration_ms: float = 0.0
    collections: List[str] = field(default_factory=list)

    def combine(self, later: ReplayReport) -> ReplayReport:
        """Totals of this round followed by ``later``."""
        return ReplayReport(
            replayed=self.replayed + later.replayed,
            failed=self.failed + later.failed,
            dead_lettered=self.dead_lettered + later.dead_lettered,
            remaining=later.remaining,
            skipped=self.skipped and later.skipped,
            duration_ms=self.duration_ms + later.duration_ms,
            collections=list(dict.fromkeys(self.collections + later.collections)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "replayed": self.replayed,
            "failed": self.failed,
            "dead_lettered": self.dead_lettered,
            "remaining": self.remaining,
            "skipped": self.skipped,
            "duration_ms": round(self.duration_ms, 2),
            "collections": list(self.collections),
        }


def cache_key(collection: str, filters: Optional[Dict[str, Any]] = None) -> str:
    """Canonical read cache key: collection prefix plus sorted JSON filters."""
    canonical = json.dumps(filters or {}, sort_keys=True, separators=(",", ":"), default=str)
    return f"{collection}:{canonical}"


def collection_prefix(collection: str) -> str:
    return f"{collection}:"


class FallbackRouter(BaseService):
    """
    Routes collection operations between remote, cache and local storage.

    Usage:
        router = FallbackRouter(monitor, executor, cache, local_db, remote)
        await router.initialize()
        result = await router.perform_operation("skills", "create", {"name": "SQL"})
        result.provenance   # Provenance.REMOTE or Provenance.QUEUED
    """

    name = "router"

    def __init__(
        self,
        monitor: ConnectionMonitor,
        executor: RequestExecutor,
        cache: TTLCache,
        local_db: LocalDatabase,
        remote: RemoteService,
        freshness_window: float = 900.0,
        max_replay_attempts: int = 5,
        publisher: Optional[Publisher] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            monitor: Connection monitor gating the remote path
            executor: Executor running every remote call
            cache: Read cache
            local_db: Local mirror, sync queue and dead-letter storage
            remote: Remote service adapter
            freshness_window: Seconds after which locally served data is stale
            max_replay_attempts: Failed replays before an operation is dead-lettered
            publisher: Coroutine receiving (collection, event, payload) change events
            now: Wall clock (injectable for tests)
        """
        super().__init__()
        self.monitor = monitor
        self.executor = executor
        self.cache = cache
        self.local_db = local_db
        self.remote = remote
        self.freshness_window = freshness_window
        self.max_replay_attempts = max_replay_attempts
        self._publisher = publisher
        self._now = now or datetime.now

        self._replay_lock = asyncio.Lock()
        self._replay_task: Optional[asyncio.Task] = None
        self._last_status: ConnectionStatus = monitor.status
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._last_report: Optional[ReplayReport] = None
        self._counters = {
            "cache_hits": 0,
            "remote_reads": 0,
            "local_reads": 0,
            "remote_writes": 0,
            "queued_writes": 0,
            "replays": 0,
        }

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self) -> None:
        """Prepare local storage and start listening for reconnects."""
        self.local_db.initialize()
        if self._unsubscribe is None:
            self._last_status = self.monitor.status
            self._unsubscribe = self.monitor.subscribe(self._on_connection_change)
        pending = self.pending_count
        if pending:
            logger.info(f"{pending} queued operation(s) waiting for replay")

    async def reset(self) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop listening and wait for an in-flight replay."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self.wait_for_replay()

    # =========================================================================
    # ROUTING
    # =========================================================================

    async def perform_operation(
        self,
        collection: str,
        kind: Union[OperationKind, str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> Result:
        """
        Route one operation.

        Args:
            collection: Target collection (table) name
            kind: read / create / update / delete
            payload: Equality filters for reads, the record for writes

        Returns:
            Result tagged with provenance

        Raises:
            AuthorizationError: The remote rejected the caller
            ValidationError: Malformed operation (unknown kind, missing id)
        """
        if not collection:
            raise ValidationError("Collection name is required", field="collection")
        try:
            kind = OperationKind(kind)
        except ValueError:
            raise ValidationError(
                f"Unknown operation kind '{kind}'",
                field="kind",
                expected=", ".join(k.value for k in OperationKind),
                actual=str(kind),
            ) from None

        payload = dict(payload or {})
        if kind == OperationKind.READ:
            return await self._read(collection, payload)
        return await self._write(collection, kind, payload)

    async def _read(self, collection: str, filters: Dict[str, Any]) -> Result:
        key = cache_key(collection, filters)
        cached = self.cache.get(key)
        if cached is not None:
            self._counters["cache_hits"] += 1
            return Result.ok(cached, provenance=Provenance.CACHE)

        remote_error: Optional[str] = None
        attempts = 0
        if self.monitor.is_online():
            result = await self.executor.execute(lambda: self.remote.select(collection, filters))
            attempts = result.attempts
            if result.success:
                rows = list(result.data or [])
                pending_ids = self._pending_record_ids(collection)
                if pending_ids:
                    # Records with queued writes keep their local version until replayed
                    self.local_db.put_many(
                        collection,
                        [r for r in rows if str(r.get("id")) not in pending_ids],
                        sync_status="synced",
                    )
                    rows = self._overlay_pending(collection, filters, rows, pending_ids)
                    result.metadata = {**(result.metadata or {}), "pending_overlay": len(pending_ids)}
                else:
                    self.local_db.put_many(collection, rows, sync_status="synced")
                    self.local_db.mark_confirmed(collection, self._now())
                self.cache.set(key, rows)
                self._counters["remote_reads"] += 1
                result.data = rows
                return result.with_provenance(Provenance.REMOTE)

            self._raise_if_unauthorized(result)
            remote_error = result.error
            logger.warning(f"Remote read of '{collection}' failed, serving local copy: {remote_error}")

        rows = self.local_db.find(collection, filters)
        self._counters["local_reads"] += 1
        result = Result.ok(
            rows,
            provenance=Provenance.LOCAL,
            stale=self.is_stale(collection),
            metadata={"reason": remote_error} if remote_error else None,
        )
        result.attempts = attempts
        return result

    async def _write(self, collection: str, kind: OperationKind, payload: Dict[str, Any]) -> Result:
        self._prepare_write(collection, kind, payload)

        remote_error: Optional[str] = None
        attempts = 0
        # Writes behind queued ones of the same collection wait their turn
        if self.monitor.is_online() and not self._has_pending(collection):
            result = await self.executor.execute(lambda: self._remote_write(collection, kind, payload))
            attempts = result.attempts
            if result.success:
                record = self._apply_local(collection, kind, payload, result.data, sync_status="synced")
                self.cache.invalidate(collection_prefix(collection))
                self._counters["remote_writes"] += 1
                await self._publish(collection, kind, record, Provenance.REMOTE)
                result.data = record
                return result.with_provenance(Provenance.REMOTE)

            self._raise_if_unauthorized(result)
            remote_error = result.error
            logger.warning(f"Remote {kind.value} on '{collection}' failed, queueing locally: {remote_error}")

        operation = PendingOperation(
            id=str(uuid.uuid4()),
            target_collection=collection,
            operation_kind=kind,
            payload=payload,
            enqueued_at=self._now(),
        )
        record = self._apply_local(collection, kind, payload, None, sync_status="pending")
        self.local_db.enqueue(
            operation.id,
            collection,
            kind.value,
            payload,
            operation.enqueued_at,
        )
        self.cache.invalidate(collection_prefix(collection))
        self._counters["queued_writes"] += 1
        logger.info(f"Queued {kind.value} on '{collection}' ({operation.id})")
        await self._publish(collection, kind, record, Provenance.QUEUED)

        metadata: Dict[str, Any] = {"operation_id": operation.id}
        if remote_error:
            metadata["reason"] = remote_error
        result = Result.ok(record, provenance=Provenance.QUEUED, metadata=metadata)
        result.attempts = attempts
        return result

    def _prepare_write(self, collection: str, kind: OperationKind, payload: Dict[str, Any]) -> None:
        """Validate a write before any I/O; assigns an id to new records."""
        if kind == OperationKind.CREATE:
            if payload.get("id") is None:
                payload["id"] = str(uuid.uuid4())
        elif payload.get("id") is None:
            raise ValidationError(
                f"'{kind.value}' on '{collection}' requires an 'id'",
                field="id",
            )

    async def _remote_write(self, collection: str, kind: OperationKind, payload: Dict[str, Any]) -> Any:
        if kind == OperationKind.CREATE:
            return await self.remote.insert(collection, payload)
        changes = {k: v for k, v in payload.items() if k != "id"}
        if kind == OperationKind.UPDATE:
            return await self.remote.update(collection, payload["id"], changes)
        await self.remote.delete(collection, payload["id"])
        return {"id": payload["id"]}

    def _apply_local(
        self,
        collection: str,
        kind: OperationKind,
        payload: Dict[str, Any],
        confirmed: Optional[Dict[str, Any]],
        sync_status: str,
    ) -> Dict[str, Any]:
        """Mirror a write into the local store; returns the resulting record."""
        if kind == OperationKind.DELETE:
            self.local_db.delete(collection, payload["id"])
            return {"id": payload["id"]}

        if isinstance(confirmed, dict) and confirmed.get("id") is not None:
            return self.local_db.put(collection, confirmed, sync_status=sync_status)

        existing = self.local_db.get(collection, payload["id"]) or {}
        return self.local_db.put(collection, {**existing, **payload}, sync_status=sync_status)

    def _raise_if_unauthorized(self, result: Result) -> None:
        if isinstance(result.exception, AuthorizationError):
            raise result.exception

    async def _publish(
        self,
        collection: str,
        kind: OperationKind,
        record: Dict[str, Any],
        provenance: Provenance,
    ) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher(
                collection,
                kind.value,
                {"record": record, "provenance": provenance.value},
            )
        except Exception as e:
            logger.error(f"Change event for '{collection}' failed: {e}", exc_info=True)

    # =========================================================================
    # FRESHNESS
    # =========================================================================

    def is_stale(self, collection: str) -> bool:
        """True when the remote has not confirmed ``collection`` within the freshness window."""
        confirmed = self.local_db.last_confirmed(collection)
        if confirmed is None:
            return True
        return (self._now() - confirmed).total_seconds() > self.freshness_window

    # =========================================================================
    # QUEUE INSPECTION
    # =========================================================================

    def pending_operations(self, collection: Optional[str] = None) -> List[PendingOperation]:
        """Queued operations in enqueue order."""
        return [
            PendingOperation(
                id=entry["op_id"],
                target_collection=entry["collection"],
                operation_kind=OperationKind(entry["operation"]),
                payload=entry["payload"],
                enqueued_at=entry["enqueued_at"],
                attempts=entry["attempts"],
                last_error=entry["last_error"],
            )
            for entry in self.local_db.queue_entries(collection)
        ]

    @property
    def pending_count(self) -> int:
        return self.local_db.queue_count()

    def _has_pending(self, collection: str) -> bool:
        return bool(self.local_db.queue_entries(collection))

    def _pending_record_ids(self, collection: str) -> Set[str]:
        return {str(op.record_id) for op in self.pending_operations(collection)}

    def _overlay_pending(
        self,
        collection: str,
        filters: Dict[str, Any],
        rows: List[Dict[str, Any]],
        pending_ids: Set[str],
    ) -> List[Dict[str, Any]]:
        """Remote rows with the local version of every record that has a queued write."""
        merged = []
        seen = set()
        for row in rows:
            record_id = str(row.get("id"))
            if record_id in pending_ids:
                seen.add(record_id)
                row = self.local_db.get(collection, record_id)
                # Deleted locally, or no longer matching after a local update
                if row is None or not matches(row, filters):
                    continue
            merged.append(row)

        for record in self.local_db.find(collection, filters):
            record_id = str(record.get("id"))
            if record_id in pending_ids and record_id not in seen:
                merged.append(record)
        return merged

    def dead_letters(self) -> List[DeadLetter]:
        return [
            DeadLetter(
                operation=PendingOperation(
                    id=entry["op_id"],
                    target_collection=entry["collection"],
                    operation_kind=OperationKind(entry["operation"]),
                    payload=entry["payload"],
                    enqueued_at=entry["enqueued_at"],
                    attempts=entry["attempts"],
                ),
                failed_at=entry["failed_at"],
                error=entry["error"],
            )
            for entry in self.local_db.dead_letter_entries()
        ]

    def retry_dead_letter(self, operation_id: str) -> bool:
        """Put a dead-lettered operation back at the end of its queue with a fresh budget."""
        for letter in self.dead_letters():
            if letter.operation.id != operation_id:
                continue
            op = letter.operation
            self.local_db.enqueue(
                op.id,
                op.target_collection,
                op.operation_kind.value,
                op.payload,
                self._now(),
            )
            self.local_db.remove_dead_letter(op.id)
            logger.info(f"Dead letter {op.id} requeued for '{op.target_collection}'")
            return True
        return False

    def purge_dead_letters(self) -> int:
        count = self.local_db.clear_dead_letters()
        if count:
            logger.info(f"Purged {count} dead letter(s)")
        return count

    # =========================================================================
    # REPLAY
    # =========================================================================

    def _on_connection_change(self, state: ConnectionState) -> None:
        """Schedule a replay when the connection comes back online."""
        previous, self._last_status = self._last_status, state.status
        if state.status == ConnectionStatus.ONLINE and previous != ConnectionStatus.ONLINE:
            if self.pending_count:
                logger.info("Connection restored, replaying queued operations")
                self.schedule_replay()

    def schedule_replay(self) -> Optional[asyncio.Task]:
        """Start a background replay unless one is already running."""
        if self._replay_task is not None and not self._replay_task.done():
            return self._replay_task
        self._replay_task = asyncio.get_running_loop().create_task(
            self.replay_pending(),
            name="router:replay",
        )
        return self._replay_task

    @property
    def is_replaying(self) -> bool:
        return self._replay_lock.locked()

    async def wait_for_replay(self) -> Optional[ReplayReport]:
        """Wait for the background replay started by a reconnect, if any."""
        task = self._replay_task
        if task is None or task is asyncio.current_task():
            return None
        try:
            return await task
        finally:
            if self._replay_task is task:
                self._replay_task = None

    async def replay_pending(self) -> ReplayReport:
        """
        Replay queued operations against the remote service.

        Collections are drained in parallel, each strictly in enqueue
        order. Only one replay runs at a time, so an operation is sent at
        most once per round and removed as soon as the remote confirms it.
        """
        async with self._replay_lock:
            started = time.perf_counter()
            report = ReplayReport()

            if not self.monitor.is_online():
                report.skipped = True
                report.remaining = self.pending_count
                logger.debug("Replay skipped: offline")
                return report

            by_collection: Dict[str, List[PendingOperation]] = {}
            for op in self.pending_operations():
                by_collection.setdefault(op.target_collection, []).append(op)

            if by_collection:
                total = sum(len(ops) for ops in by_collection.values())
                async with self.log_operation(
                    f"Replaying {total} operation(s) across {len(by_collection)} collection(s)"
                ):
                    outcomes = await asyncio.gather(
                        *(self._replay_collection(ops) for ops in by_collection.values())
                    )
                for replayed, failed, dead in outcomes:
                    report.replayed += replayed
                    report.failed += failed
                    report.dead_lettered += dead
                report.collections = list(by_collection)

            report.remaining = self.pending_count
            report.duration_ms = (time.perf_counter() - started) * 1000
            self._counters["replays"] += 1
            self._last_report = report
            logger.info(
                f"Replay complete: {report.replayed} replayed, {report.failed} failed, "
                f"{report.dead_lettered} dead-lettered, {report.remaining} remaining"
            )
            return report

    async def _replay_collection(self, operations: List[PendingOperation]) -> tuple:
        replayed = failed = dead = 0
        for op in operations:
            result = await self.executor.execute(
                lambda op=op: self._remote_write(op.target_collection, op.operation_kind, op.payload)
            )

            if result.success:
                self.local_db.dequeue(op.id)
                self._mark_replayed(op, result.data)
                replayed += 1
                continue

            op.attempts += 1
            op.last_error = result.error
            self.local_db.record_attempt(op.id, op.attempts, op.last_error)

            if op.attempts >= self.max_replay_attempts:
                error = QueueOverflowError(
                    f"Giving up on {op.operation_kind.value} of '{op.target_collection}' "
                    f"after {op.attempts} attempts: {op.last_error}",
                    operation_id=op.id,
                    collection=op.target_collection,
                    attempts=op.attempts,
                )
                self.local_db.move_to_dead_letters(op.id, error.to_dict())
                logger.error(str(error))
                dead += 1
                continue

            # Later operations on this collection must not overtake this one
            logger.warning(
                f"Replay of {op.id} failed (attempt {op.attempts}/{self.max_replay_attempts}): "
                f"{op.last_error}"
            )
            failed += 1
            break
        return replayed, failed, dead

    def _mark_replayed(self, op: PendingOperation, confirmed: Any) -> None:
        collection = op.target_collection
        if op.operation_kind != OperationKind.DELETE:
            still_pending = any(
                other.record_id == op.record_id for other in self.pending_operations(collection)
            )
            if isinstance(confirmed, dict) and not still_pending:
                self._apply_local(collection, op.operation_kind, op.payload, confirmed, sync_status="synced")
            elif not still_pending:
                self.local_db.set_sync_status(collection, op.record_id, "synced")
        self.cache.invalidate(collection_prefix(collection))

    # =========================================================================
    # REPORTING
    # =========================================================================

    def health(self) -> ServiceHealth:
        if not self.local_db.ping():
            return ServiceHealth.DOWN
        if self.local_db.dead_letter_entries():
            return ServiceHealth.DEGRADED
        return ServiceHealth.HEALTHY

    def stats(self) -> Dict[str, Any]:
        return {
            **self._counters,
            "pending": self.pending_count,
            "dead_letters": len(self.local_db.dead_letter_entries()),
            "replaying": self.is_replaying,
            "last_replay": self._last_report.to_dict() if self._last_report else None,
        }

    def metrics(self) -> Dict[str, Any]:
        return self.stats()
