"""
Offline queue for donations recorded on the field client

Donations that cannot reach the server are kept in an ordered queue,
persisted to local storage after every change and flushed to the
transaction store when connectivity returns, on a periodic timer, or
shortly after a new item is queued while online.

Flushes never raise: a failed insert is recorded on the item
(``sync_attempts``, ``sync_error``) and the pass moves on to the next one.
Items are retried indefinitely, in insertion order.
"""

import asyncio
import logging
import random
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from firefund.client.local_storage import LocalStorage


logger = logging.getLogger(__name__)

STORAGE_KEY = "offline-storage"

REMOTE_FIELDS = (
    'user_id', 'team_id', 'tournee_id', 'amount', 'calendars_given',
    'payment_method', 'donator_name', 'donator_email', 'notes',
)

_ID_ALPHABET = string.digits + string.ascii_lowercase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _remote_payload(record) -> Dict[str, Any]:
    payload = {name: getattr(record, name) for name in REMOTE_FIELDS}
    payload['status'] = 'pending'
    return payload


def generate_offline_id() -> str:
    """``offline_<epoch ms>_<9 base36 chars>``; unique enough for one device"""
    suffix = ''.join(random.choices(_ID_ALPHABET, k=9))
    return f"offline_{int(time.time() * 1000)}_{suffix}"


@dataclass
class TransactionDraft:
    """A donation as entered by the volunteer"""
    user_id: str
    amount: float
    calendars_given: int
    payment_method: str
    team_id: Optional[str] = None
    tournee_id: Optional[str] = None
    donator_name: Optional[str] = None
    donator_email: Optional[str] = None
    notes: Optional[str] = None

    def to_remote_payload(self) -> Dict[str, Any]:
        return _remote_payload(self)


@dataclass
class PendingTransaction:
    """A queued donation plus its local sync bookkeeping"""
    id: str
    user_id: str
    amount: float
    calendars_given: int
    payment_method: str
    created_at: datetime
    team_id: Optional[str] = None
    tournee_id: Optional[str] = None
    donator_name: Optional[str] = None
    donator_email: Optional[str] = None
    notes: Optional[str] = None
    offline_created: bool = True
    sync_attempts: int = 0
    last_sync_attempt: Optional[datetime] = None
    sync_error: Optional[str] = None

    @classmethod
    def from_draft(cls, draft: TransactionDraft, id: str, created_at: datetime) -> 'PendingTransaction':
        return cls(id=id, created_at=created_at, **asdict(draft))

    def to_remote_payload(self) -> Dict[str, Any]:
        """Fields sent to the store; local bookkeeping stays on the device"""
        return _remote_payload(self)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        data['last_sync_attempt'] = self.last_sync_attempt.isoformat() if self.last_sync_attempt else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingTransaction':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['created_at'] = _parse_datetime(values.get('created_at')) or _utcnow()
        values['last_sync_attempt'] = _parse_datetime(values.get('last_sync_attempt'))
        return cls(**values)


class TransactionStore(ABC):
    """Remote store accepting one transaction insert at a time"""

    @abstractmethod
    async def insert(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Insert one row; raise on any failure"""


Listener = Callable[['OfflineQueueManager'], None]


class OfflineQueueManager:
    """Owns the pending queue; every mutation goes through this object"""

    def __init__(self, store: TransactionStore, storage: Optional[LocalStorage] = None,
                 is_online: bool = True, reconnect_delay: float = 1.0,
                 enqueue_delay: float = 0.1, inter_item_delay: float = 0.5,
                 periodic_interval: float = 30.0,
                 clock: Callable[[], datetime] = _utcnow,
                 id_factory: Callable[[], str] = generate_offline_id):
        self.store = store
        self.storage = storage
        self.reconnect_delay = reconnect_delay
        self.enqueue_delay = enqueue_delay
        self.inter_item_delay = inter_item_delay
        self.periodic_interval = periodic_interval
        self._clock = clock
        self._id_factory = id_factory

        self._is_online = is_online
        self._pending: List[PendingTransaction] = []
        self._sync_in_progress = False
        self._last_sync_at: Optional[datetime] = None
        self._total_pending_amount = 0.0
        self._total_pending_calendars = 0

        self._listeners: List[Listener] = []
        self._scheduled: Set[asyncio.Task] = set()
        self._periodic_task: Optional[asyncio.Task] = None

        self._restore()

    @classmethod
    def from_config(cls, config: Dict[str, Any], store: TransactionStore,
                    storage: Optional[LocalStorage] = None, is_online: bool = True) -> 'OfflineQueueManager':
        client_config = config.get('client', {})
        return cls(
            store,
            storage,
            is_online=is_online,
            reconnect_delay=float(client_config.get('reconnect_delay', 1.0)),
            enqueue_delay=float(client_config.get('enqueue_delay', 0.1)),
            inter_item_delay=float(client_config.get('inter_item_delay', 0.5)),
            periodic_interval=float(client_config.get('periodic_interval', 30.0)),
        )

    # Read-only state

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def pending_transactions(self) -> List[PendingTransaction]:
        """Copies of the queued items, in queue order"""
        return [replace(t) for t in self._pending]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    @property
    def last_sync_at(self) -> Optional[datetime]:
        return self._last_sync_at

    @property
    def total_pending_amount(self) -> float:
        return self._total_pending_amount

    @property
    def total_pending_calendars(self) -> int:
        return self._total_pending_calendars

    # Observers

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener(manager)`` after every state change; returns an unsubscribe callable"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Offline queue listener failed")

    # Persistence

    def _restore(self):
        if self.storage is None:
            return

        blob = self.storage.get_item(STORAGE_KEY) or {}
        if not isinstance(blob, dict):
            logger.error(f"Discarding offline queue stored as {type(blob).__name__}")
            blob = {}

        try:
            self._pending = [PendingTransaction.from_dict(item)
                             for item in blob.get('pending_transactions', [])]
            self._last_sync_at = _parse_datetime(blob.get('last_sync_at'))
        except (AttributeError, TypeError, ValueError) as e:
            logger.error(f"Discarding unreadable offline queue: {e}")
            self._pending = []
            self._last_sync_at = None

        self._recompute_totals()
        if self._pending:
            logger.info(f"Restored {len(self._pending)} pending transaction(s) from local storage")

    def _persist(self):
        if self.storage is None:
            return

        try:
            self.storage.set_item(STORAGE_KEY, {
                'pending_transactions': [t.to_dict() for t in self._pending],
                'last_sync_at': self._last_sync_at.isoformat() if self._last_sync_at else None,
            })
        except OSError:
            # memory stays authoritative; the next mutation writes again
            logger.exception(f"Could not persist {len(self._pending)} pending transaction(s)")

    def _recompute_totals(self):
        self._total_pending_amount = sum(t.amount for t in self._pending)
        self._total_pending_calendars = sum(t.calendars_given for t in self._pending)

    def _changed(self):
        self._recompute_totals()
        self._persist()
        self._notify()

    # Scheduling

    def _schedule_sync(self, delay: float):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, flush not scheduled")
            return

        task = loop.create_task(self._delayed_sync(delay))
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)

    async def _delayed_sync(self, delay: float):
        if delay > 0:
            await asyncio.sleep(delay)
        await self.sync_pending_transactions()

    async def _periodic_sync(self):
        while True:
            await asyncio.sleep(self.periodic_interval)
            if self._is_online and self._pending:
                await self.sync_pending_transactions()

    def start(self):
        """Start the periodic flush timer"""
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_sync())
            logger.info(f"Periodic sync every {self.periodic_interval}s")

    async def stop(self):
        """Stop the periodic flush timer"""
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

    async def close(self):
        """Stop the timer and drop scheduled flushes; the queue stays persisted"""
        await self.stop()
        tasks = list(self._scheduled)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduled.clear()

    # Operations

    def set_online_status(self, is_online: bool):
        """Record connectivity; coming back online schedules a flush"""
        was_online = self._is_online
        self._is_online = is_online

        if was_online == is_online:
            return

        logger.info(f"Connectivity changed: {'online' if is_online else 'offline'}")
        self._notify()

        if is_online and self._pending:
            self._schedule_sync(self.reconnect_delay)

    def add_pending_transaction(self, draft: TransactionDraft) -> str:
        """Queue a donation; returns its local id. Never fails."""
        pending_ids = {t.id for t in self._pending}
        transaction_id = self._id_factory()
        while transaction_id in pending_ids:
            transaction_id = self._id_factory()

        transaction = PendingTransaction.from_draft(draft, id=transaction_id, created_at=self._clock())
        self._pending.append(transaction)
        logger.info(f"Queued offline transaction {transaction_id} ({transaction.amount}, "
                    f"{transaction.payment_method})")
        self._changed()

        if self._is_online:
            self._schedule_sync(self.enqueue_delay)

        return transaction_id

    async def sync_pending_transactions(self):
        """Run one flush pass; a no-op when offline, already flushing or empty"""
        if not self._is_online or self._sync_in_progress or not self._pending:
            return

        self._sync_in_progress = True
        self._notify()

        batch = list(self._pending)
        synced = 0
        logger.info(f"Starting sync of {len(batch)} pending transaction(s)")

        try:
            for index, transaction in enumerate(batch):
                if index > 0 and self.inter_item_delay > 0:
                    await asyncio.sleep(self.inter_item_delay)

                try:
                    await self.store.insert(transaction.to_remote_payload())
                except Exception as e:
                    message = str(e) or type(e).__name__
                    logger.warning(f"Sync of transaction {transaction.id} failed: {message}")
                    self.increment_sync_attempts(transaction.id, message)
                else:
                    logger.info(f"Transaction {transaction.id} synced")
                    synced += 1
                    self.clear_synced_transaction(transaction.id)

            self._last_sync_at = self._clock()
            logger.info(f"Sync finished: {synced}/{len(batch)} synced, {len(self._pending)} pending")
        finally:
            self._sync_in_progress = False
            self._persist()
            self._notify()

    def clear_synced_transaction(self, transaction_id: str):
        before = len(self._pending)
        self._pending = [t for t in self._pending if t.id != transaction_id]
        if len(self._pending) != before:
            self._changed()

    def increment_sync_attempts(self, transaction_id: str, error: Optional[str] = None):
        for transaction in self._pending:
            if transaction.id == transaction_id:
                transaction.sync_attempts += 1
                transaction.last_sync_attempt = self._clock()
                transaction.sync_error = error or 'Unknown error'
                self._changed()
                return
