"""Unit tests for the offline transaction queue."""

import asyncio
import re
from datetime import datetime, timezone

import pytest

from firefund.client.local_storage import LocalStorage
from firefund.client.offline_queue import (
    OfflineQueueManager, PendingTransaction, TransactionDraft, TransactionStore,
    STORAGE_KEY, generate_offline_id
)
from firefund.client.remote_store import RemoteStoreError


class FakeStore(TransactionStore):
    """Records inserts; ``fail`` decides per payload whether to raise"""

    def __init__(self, fail=None, gate=None):
        self.calls = []
        self.fail = fail or (lambda payload: False)
        self.gate = gate

    async def insert(self, payload):
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail(payload):
            raise RemoteStoreError("HTTP 500: database unavailable", 500)
        return {"id": f"srv-{len(self.calls)}", **payload}


def draft(amount=10.0, calendars_given=1, payment_method="cash", **kwargs):
    return TransactionDraft(
        user_id="user-1",
        amount=amount,
        calendars_given=calendars_given,
        payment_method=payment_method,
        **kwargs
    )


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
async def make_manager():
    managers = []

    def _make_manager(store, storage=None, is_online=False, **kwargs):
        options = dict(reconnect_delay=60.0, enqueue_delay=60.0, inter_item_delay=0.0,
                       periodic_interval=60.0)
        options.update(kwargs)
        manager = OfflineQueueManager(store, storage, is_online=is_online, **options)
        managers.append(manager)
        return manager

    yield _make_manager

    for manager in managers:
        await manager.close()


class TestScenarios:
    async def test_enqueue_while_offline(self, make_manager):
        manager = make_manager(FakeStore())

        manager.add_pending_transaction(draft(amount=10, calendars_given=1))

        assert manager.pending_count == 1
        assert manager.total_pending_amount == 10
        assert manager.total_pending_calendars == 1

    async def test_going_online_flushes_queue(self, make_manager):
        store = FakeStore()
        manager = make_manager(store, reconnect_delay=0.0)
        manager.add_pending_transaction(draft(amount=10, calendars_given=1))
        started = datetime.now(timezone.utc)

        manager.set_online_status(True)
        await wait_until(lambda: manager.last_sync_at is not None)

        assert manager.pending_count == 0
        assert manager.total_pending_amount == 0
        assert manager.total_pending_calendars == 0
        assert manager.last_sync_at >= started
        assert len(store.calls) == 1

    async def test_failed_flush_keeps_items_in_order(self, make_manager):
        store = FakeStore(fail=lambda payload: True)
        manager = make_manager(store)
        manager.add_pending_transaction(draft(amount=5))
        manager.add_pending_transaction(draft(amount=20))

        manager.set_online_status(True)
        await manager.sync_pending_transactions()

        pending = manager.pending_transactions
        assert [t.amount for t in pending] == [5, 20]
        assert [t.sync_attempts for t in pending] == [1, 1]
        assert all(t.sync_error == "HTTP 500: database unavailable" for t in pending)
        assert all(t.last_sync_attempt is not None for t in pending)

    async def test_partial_success_on_second_pass(self, make_manager):
        store = FakeStore(fail=lambda payload: True)
        manager = make_manager(store)
        manager.add_pending_transaction(draft(amount=5, calendars_given=1))
        manager.add_pending_transaction(draft(amount=20, calendars_given=2))
        manager.set_online_status(True)
        await manager.sync_pending_transactions()

        store.fail = lambda payload: payload["amount"] != 20
        await manager.sync_pending_transactions()

        pending = manager.pending_transactions
        assert len(pending) == 1
        assert pending[0].amount == 5
        assert pending[0].sync_attempts == 2
        assert manager.total_pending_amount == 5
        assert manager.total_pending_calendars == 1

    async def test_concurrent_flush_is_a_noop(self, make_manager):
        gate = asyncio.Event()
        store = FakeStore(gate=gate)
        manager = make_manager(store)
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        first = asyncio.create_task(manager.sync_pending_transactions())
        await wait_until(lambda: len(store.calls) == 1)
        assert manager.sync_in_progress is True

        await manager.sync_pending_transactions()
        assert len(store.calls) == 1

        gate.set()
        await first

        assert len(store.calls) == 1
        assert manager.pending_count == 0
        assert manager.sync_in_progress is False


class TestQueueProperties:
    async def test_aggregates_follow_every_mutation(self, make_manager):
        store = FakeStore(fail=lambda payload: payload["amount"] == 7.5)
        manager = make_manager(store)
        amounts = [(12.0, 2), (7.5, 1), (30.0, 3)]

        for amount, calendars in amounts:
            manager.add_pending_transaction(draft(amount=amount, calendars_given=calendars))
            pending = manager.pending_transactions
            assert manager.total_pending_amount == sum(t.amount for t in pending)
            assert manager.total_pending_calendars == sum(t.calendars_given for t in pending)

        manager.set_online_status(True)
        await manager.sync_pending_transactions()

        assert manager.total_pending_amount == 7.5
        assert manager.total_pending_calendars == 1

    async def test_items_are_sent_in_insertion_order(self, make_manager):
        store = FakeStore(fail=lambda payload: True)
        manager = make_manager(store)
        manager.add_pending_transaction(draft(amount=1, notes="A"))
        manager.add_pending_transaction(draft(amount=2, notes="B"))
        manager.set_online_status(True)

        await manager.sync_pending_transactions()
        await manager.sync_pending_transactions()

        assert [call["notes"] for call in store.calls] == ["A", "B", "A", "B"]

    async def test_synced_item_is_never_resent(self, make_manager):
        store = FakeStore()
        manager = make_manager(store)
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        await manager.sync_pending_transactions()
        await manager.sync_pending_transactions()

        assert len(store.calls) == 1
        assert manager.pending_count == 0

    async def test_sync_attempts_grow_by_one_per_failure(self, make_manager):
        store = FakeStore(fail=lambda payload: True)
        manager = make_manager(store)
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        seen = []
        for _ in range(3):
            await manager.sync_pending_transactions()
            seen.append(manager.pending_transactions[0].sync_attempts)

        assert seen == [1, 2, 3]

    async def test_flush_while_offline_changes_nothing(self, make_manager):
        store = FakeStore()
        manager = make_manager(store)
        manager.add_pending_transaction(draft())
        before = manager.pending_transactions

        await manager.sync_pending_transactions()

        assert store.calls == []
        assert manager.last_sync_at is None
        assert manager.pending_transactions == before

    async def test_flush_with_empty_queue_changes_nothing(self, make_manager):
        manager = make_manager(FakeStore(), is_online=True)

        await manager.sync_pending_transactions()

        assert manager.last_sync_at is None
        assert manager.sync_in_progress is False

    async def test_last_sync_at_set_even_when_items_fail(self, make_manager):
        manager = make_manager(FakeStore(fail=lambda payload: True))
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        await manager.sync_pending_transactions()

        assert manager.last_sync_at is not None
        assert manager.pending_count == 1


class TestEnqueue:
    def test_enqueue_without_event_loop(self):
        manager = OfflineQueueManager(FakeStore(), is_online=True)

        transaction_id = manager.add_pending_transaction(draft())

        assert manager.pending_count == 1
        assert manager.pending_transactions[0].id == transaction_id

    def test_generated_ids(self):
        assert re.match(r"^offline_\d+_[0-9a-z]{9}$", generate_offline_id())

    def test_colliding_ids_are_regenerated(self):
        ids = iter(["offline_1_aaaaaaaaa", "offline_1_aaaaaaaaa", "offline_1_bbbbbbbbb"])
        manager = OfflineQueueManager(FakeStore(), is_online=False, id_factory=lambda: next(ids))

        first = manager.add_pending_transaction(draft())
        second = manager.add_pending_transaction(draft())

        assert first != second
        assert second == "offline_1_bbbbbbbbb"

    def test_new_item_bookkeeping(self):
        created = datetime(2024, 12, 1, 10, 30, tzinfo=timezone.utc)
        manager = OfflineQueueManager(FakeStore(), is_online=False, clock=lambda: created)

        manager.add_pending_transaction(draft(donator_name="Mme Martin"))
        item = manager.pending_transactions[0]

        assert item.created_at == created
        assert item.sync_attempts == 0
        assert item.sync_error is None
        assert item.last_sync_attempt is None
        assert item.donator_name == "Mme Martin"

    async def test_enqueue_while_online_schedules_flush(self, make_manager):
        store = FakeStore()
        manager = make_manager(store, is_online=True, enqueue_delay=0.0)

        manager.add_pending_transaction(draft())
        assert manager.pending_count == 1

        await wait_until(lambda: manager.pending_count == 0)
        assert len(store.calls) == 1

    async def test_payload_excludes_local_bookkeeping(self, make_manager):
        store = FakeStore()
        manager = make_manager(store)
        manager.add_pending_transaction(draft(tournee_id="tour-1", donator_email="a@b.fr"))
        manager.set_online_status(True)

        await manager.sync_pending_transactions()

        payload = store.calls[0]
        for local_field in ("id", "created_at", "sync_attempts", "last_sync_attempt",
                            "sync_error", "offline_created"):
            assert local_field not in payload
        assert payload["tournee_id"] == "tour-1"
        assert payload["status"] == "pending"

    def test_pending_transactions_are_copies(self):
        manager = OfflineQueueManager(FakeStore(), is_online=False)
        manager.add_pending_transaction(draft(amount=10))

        manager.pending_transactions[0].amount = 999

        assert manager.total_pending_amount == 10
        assert manager.pending_transactions[0].amount == 10


class TestFailureHandling:
    async def test_unexpected_exception_is_recorded(self, make_manager):
        class BrokenStore(TransactionStore):
            async def insert(self, payload):
                raise ValueError()

        manager = make_manager(BrokenStore())
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        await manager.sync_pending_transactions()

        assert manager.pending_transactions[0].sync_error == "ValueError"
        assert manager.sync_in_progress is False

    def test_increment_without_error_message(self):
        manager = OfflineQueueManager(FakeStore(), is_online=False)
        transaction_id = manager.add_pending_transaction(draft())

        manager.increment_sync_attempts(transaction_id)

        assert manager.pending_transactions[0].sync_error == "Unknown error"

    def test_mutators_ignore_unknown_ids(self):
        manager = OfflineQueueManager(FakeStore(), is_online=False)
        manager.add_pending_transaction(draft())

        manager.increment_sync_attempts("missing", "boom")
        manager.clear_synced_transaction("missing")

        assert manager.pending_count == 1
        assert manager.pending_transactions[0].sync_attempts == 0


class TestConnectivity:
    async def test_going_offline_has_no_side_effect(self, make_manager):
        store = FakeStore()
        manager = make_manager(store, is_online=True)

        manager.set_online_status(False)
        await asyncio.sleep(0.01)

        assert manager.is_online is False
        assert store.calls == []

    async def test_repeated_online_signal_does_not_schedule(self, make_manager):
        store = FakeStore(fail=lambda payload: True)
        manager = make_manager(store, is_online=True, reconnect_delay=0.0)
        manager.add_pending_transaction(draft())

        manager.set_online_status(True)
        await asyncio.sleep(0.02)

        assert store.calls == []

    async def test_periodic_timer_flushes(self, make_manager):
        store = FakeStore()
        manager = make_manager(store, periodic_interval=0.01)
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        manager.start()
        await wait_until(lambda: manager.pending_count == 0)
        await manager.stop()

        assert len(store.calls) == 1


class TestObservers:
    def test_listeners_are_notified_and_can_unsubscribe(self):
        manager = OfflineQueueManager(FakeStore(), is_online=False)
        seen = []
        unsubscribe = manager.subscribe(lambda m: seen.append(m.pending_count))

        manager.add_pending_transaction(draft())
        unsubscribe()
        manager.add_pending_transaction(draft())

        assert seen == [1]

    def test_failing_listener_does_not_break_queue(self):
        manager = OfflineQueueManager(FakeStore(), is_online=False)

        def broken(m):
            raise RuntimeError("render failed")

        manager.subscribe(broken)
        manager.add_pending_transaction(draft())

        assert manager.pending_count == 1


class TestPersistence:
    def test_queue_survives_restart(self, tmp_path):
        storage = LocalStorage(tmp_path / "offline.json")
        manager = OfflineQueueManager(FakeStore(), storage, is_online=False)
        manager.add_pending_transaction(draft(amount=15, calendars_given=2))
        transaction_id = manager.add_pending_transaction(draft(amount=5, calendars_given=1))
        manager.increment_sync_attempts(transaction_id, "timeout")

        restored = OfflineQueueManager(FakeStore(), LocalStorage(tmp_path / "offline.json"), is_online=False)

        assert [t.amount for t in restored.pending_transactions] == [15, 5]
        assert restored.pending_transactions[1].sync_attempts == 1
        assert restored.pending_transactions[1].sync_error == "timeout"
        assert restored.total_pending_amount == 20
        assert restored.total_pending_calendars == 3

    def test_only_queue_and_last_sync_are_persisted(self, tmp_path):
        storage = LocalStorage(tmp_path / "offline.json")
        manager = OfflineQueueManager(FakeStore(), storage, is_online=False)
        manager.add_pending_transaction(draft())

        blob = storage.get_item(STORAGE_KEY)

        assert set(blob) == {"pending_transactions", "last_sync_at"}

    async def test_last_sync_at_is_persisted(self, tmp_path, make_manager):
        storage = LocalStorage(tmp_path / "offline.json")
        manager = make_manager(FakeStore(), storage)
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        await manager.sync_pending_transactions()
        restored = OfflineQueueManager(FakeStore(), LocalStorage(tmp_path / "offline.json"), is_online=False)

        assert restored.pending_count == 0
        assert restored.last_sync_at == manager.last_sync_at

    def test_pending_transaction_dict_conversion(self):
        item = PendingTransaction(
            id="offline_1_abcdefghi",
            user_id="user-1",
            amount=8.0,
            calendars_given=1,
            payment_method="check",
            created_at=datetime(2024, 11, 2, 9, 0, tzinfo=timezone.utc),
            sync_attempts=2,
            sync_error="HTTP 503",
        )

        restored = PendingTransaction.from_dict({**item.to_dict(), "unexpected": "ignored"})

        assert restored == item

    @pytest.mark.parametrize("blob", [
        ["not", "a", "dict"],
        {"pending_transactions": ["garbage"]},
        {"pending_transactions": [{"id": "x"}]},
    ])
    def test_unreadable_blob_starts_empty(self, tmp_path, blob):
        storage = LocalStorage(tmp_path / "offline.json")
        storage.set_item(STORAGE_KEY, blob)

        manager = OfflineQueueManager(FakeStore(), storage, is_online=False)

        assert manager.pending_count == 0
        assert manager.last_sync_at is None


class FullDiskStorage(LocalStorage):
    """Reads work, every write fails like a full disk"""

    def __init__(self, path):
        super().__init__(path)
        self.write_attempts = 0

    def set_item(self, key, value):
        self.write_attempts += 1
        raise OSError(28, "No space left on device")


class TestStorageFailures:
    async def test_enqueue_survives_write_error(self, tmp_path, make_manager):
        storage = FullDiskStorage(tmp_path / "offline.json")
        manager = make_manager(FakeStore(), storage)

        transaction_id = manager.add_pending_transaction(draft(amount=12))

        assert transaction_id.startswith("offline_")
        assert manager.pending_count == 1
        assert manager.total_pending_amount == 12
        assert storage.write_attempts == 1

    async def test_flush_survives_write_error(self, tmp_path, make_manager):
        storage = FullDiskStorage(tmp_path / "offline.json")
        store = FakeStore(fail=lambda payload: payload["amount"] == 1)
        manager = make_manager(store, storage)
        manager.add_pending_transaction(draft(amount=1))
        manager.add_pending_transaction(draft(amount=2))
        manager.set_online_status(True)

        await manager.sync_pending_transactions()

        assert len(store.calls) == 2
        assert [t.amount for t in manager.pending_transactions] == [1]
        assert manager.pending_transactions[0].sync_attempts == 1
        assert manager.sync_in_progress is False
        assert manager.last_sync_at is not None

    async def test_periodic_flush_keeps_running_after_write_error(self, tmp_path, make_manager):
        storage = FullDiskStorage(tmp_path / "offline.json")
        store = FakeStore(fail=lambda payload: True)
        manager = make_manager(store, storage, periodic_interval=0.01)
        manager.add_pending_transaction(draft())
        manager.set_online_status(True)

        manager.start()
        await wait_until(lambda: len(store.calls) >= 2)

        assert not manager._periodic_task.done()
