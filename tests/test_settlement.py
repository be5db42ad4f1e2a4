"""Post-confirmation bookkeeping: failures never fail the purchase, replays are no-ops, reconcile repairs."""

import threading
import time

from conftest import BUYER, InMemoryStore, raffle_row, sig
from settlement import ENTRY_FAILED, INCREMENT_FAILED, RECORDED, SettlementRecorder


def test_record_increments_and_appends(store, engine):
    result = SettlementRecorder(store, engine).record("r1", BUYER, 2, sig(1))
    assert result.ok
    assert result.value["status"] == RECORDED
    assert result.value["needs_reconcile"] is False
    assert store.raffles["r1"]["ticket_sold"] == 2
    assert store.list_entries("r1")[0]["quantity"] == 2


def test_same_signature_is_recorded_once(store, engine):
    recorder = SettlementRecorder(store, engine)
    recorder.record("r1", BUYER, 2, sig(1))
    replay = recorder.record("r1", BUYER, 2, sig(1))
    assert replay.ok
    assert store.raffles["r1"]["ticket_sold"] == 2
    assert len(store.entries) == 1


def test_increment_failure_still_succeeds_and_reconciles(store, engine):
    recorder = SettlementRecorder(store, engine)
    store.fail.add("increment_ticket_sold")
    result = recorder.record("r1", BUYER, 1, sig(2))
    assert result.ok
    assert result.value["status"] == INCREMENT_FAILED
    assert result.value["needs_reconcile"] is True
    assert result.warnings
    assert store.entries == []
    assert [p.signature for p in recorder.pending()] == [sig(2)]

    store.fail.clear()
    assert recorder.reconcile() == {"fixed": 1, "still_failing": 0}
    assert store.raffles["r1"]["ticket_sold"] == 1
    assert len(store.entries) == 1
    assert recorder.pending() == []


def test_entry_failure_reconcile_does_not_double_count(store, engine):
    recorder = SettlementRecorder(store, engine)
    store.fail.add("insert_entry")
    result = recorder.record("r1", BUYER, 3, sig(3))
    assert result.value["status"] == ENTRY_FAILED
    assert store.raffles["r1"]["ticket_sold"] == 3

    assert recorder.reconcile() == {"fixed": 0, "still_failing": 1}
    store.fail.clear()
    recorder.reconcile()
    assert store.raffles["r1"]["ticket_sold"] == 3
    assert store.entry_totals() == {"r1": 3}


def test_detect_mismatches(store, engine):
    recorder = SettlementRecorder(store, engine)
    store.insert_entry("r1", BUYER, 2)
    store.raffles["r1"]["ticket_sold"] = 3
    assert recorder.detect_mismatches() == [{"raffle_id": "r1", "ticket_sold": 3, "entry_total": 2}]
    store.raffles["r1"]["ticket_sold"] = 2
    assert recorder.detect_mismatches() == []


class SlowIncrementStore(InMemoryStore):
    def increment_ticket_sold(self, raffle_id, delta):
        time.sleep(0.2)
        super().increment_ticket_sold(raffle_id, delta)


def test_concurrent_confirmations_of_one_signature_write_once(engine):
    store = SlowIncrementStore([raffle_row("r1")])
    recorder = SettlementRecorder(store, engine)
    results = []

    def confirm():
        results.append(recorder.record("r1", BUYER, 1, sig(5)))

    threads = [threading.Thread(target=confirm) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 2
    assert all(r.ok for r in results)
    assert store.raffles["r1"]["ticket_sold"] == 1
    assert len(store.entries) == 1
    assert recorder.reconcile() == {"fixed": 0, "still_failing": 0}
