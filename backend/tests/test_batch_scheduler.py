import json
import threading

import pytest

from domain.models import GeocodeResult, Location, PlaceRecord
from services.batch_scheduler import BatchScheduler
from services.checkpoint import CheckpointStore


def _records(n):
    return [PlaceRecord(id=f"r{i}", name=f"Place {i}", location=Location()) for i in range(1, n + 1)]


def _resolver(calls, lock=None):
    def resolve(record):
        if lock:
            with lock:
                calls.append(record.id)
        else:
            calls.append(record.id)
        n = int(record.id[1:])
        return GeocodeResult(19.3 + n / 100000, -81.3 - n / 100000, 0.9, "fake")
    return resolve


class InterruptAt:
    def __init__(self, count):
        self.count = count

    def __call__(self, processed):
        if processed == self.count:
            raise KeyboardInterrupt


def test_resolves_every_record(tmp_path):
    calls = []
    lock = threading.Lock()
    scheduler = BatchScheduler(_resolver(calls, lock), workers=4, inter_request_delay=0)

    outcome = scheduler.run(_records(30))

    assert sorted(calls) == sorted(f"r{i}" for i in range(1, 31))
    assert list(outcome.results) == [f"r{i}" for i in range(1, 31)]
    assert outcome.processed == 30
    assert outcome.by_source == {"fake": 30}


def test_interrupt_then_resume_processes_only_the_rest(tmp_path):
    path = tmp_path / "checkpoint.json"
    records = _records(100)

    first_calls = []
    scheduler = BatchScheduler(
        _resolver(first_calls), workers=1, checkpoint_store=CheckpointStore(path),
        checkpoint_every=20, inter_request_delay=0, on_result=InterruptAt(40),
    )
    with pytest.raises(KeyboardInterrupt):
        scheduler.run(records)

    saved = json.loads(path.read_text())
    assert saved["processedIds"] == [f"r{i}" for i in range(1, 41)]
    checkpointed = dict(saved["results"])

    resumed_calls = []
    scheduler = BatchScheduler(
        _resolver(resumed_calls), workers=1, checkpoint_store=CheckpointStore(path),
        checkpoint_every=20, inter_request_delay=0,
    )
    outcome = scheduler.run(records)

    assert resumed_calls == [f"r{i}" for i in range(41, 101)]
    assert outcome.skipped == 40
    assert outcome.processed == 60
    assert len(outcome.results) == 100
    for rid, stored in checkpointed.items():
        assert outcome.results[rid] == GeocodeResult.from_dict(stored)
        assert outcome.results[rid].to_dict() == stored


def test_checkpoint_cadence_is_clamped(tmp_path):
    saves = []

    class RecordingStore(CheckpointStore):
        def save(self, state):
            saves.append(len(state.processed_ids))
            super().save(state)

    scheduler = BatchScheduler(
        _resolver([]), workers=1, checkpoint_store=RecordingStore(tmp_path / "c.json"),
        checkpoint_every=3, inter_request_delay=0,
    )
    assert scheduler.checkpoint_every == 10
    scheduler.run(_records(25))
    assert saves == [10, 20, 25]


def test_workers_clamped():
    assert BatchScheduler(lambda r: None, workers=0).workers == 1
    assert BatchScheduler(lambda r: None, workers=500).workers == 50


def test_worker_exception_uses_fallback_for_that_record_only():
    def resolve(record):
        if record.id == "r3":
            raise RuntimeError("boom")
        return GeocodeResult(19.3, -81.3, 0.9, "fake")

    def fallback(record):
        return GeocodeResult(19.29, -81.38, 0.3, "district-centroid")

    outcome = BatchScheduler(resolve, workers=2, inter_request_delay=0, fallback_fn=fallback).run(_records(5))

    assert outcome.results["r3"].source == "district-centroid"
    assert all(outcome.results[f"r{i}"].source == "fake" for i in (1, 2, 4, 5))


def test_failed_record_without_fallback_is_not_checkpointed(tmp_path):
    def resolve(record):
        if record.id == "r2":
            raise RuntimeError("boom")
        return GeocodeResult(19.3, -81.3, 0.9, "fake")

    store = CheckpointStore(tmp_path / "c.json")
    outcome = BatchScheduler(resolve, workers=1, checkpoint_store=store, inter_request_delay=0).run(_records(3))

    assert outcome.failed == ["r2"]
    assert "r2" not in store.load().processed_ids
