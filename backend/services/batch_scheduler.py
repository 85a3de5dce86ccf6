"""
Threaded batch resolution with checkpoint/resume.

Worker threads drain a shared FIFO of records and push ``(id, result, error)``
tuples onto a result queue. The calling thread is the only one that touches
the results map and the checkpoint file.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from domain.models import GeocodeResult, PlaceRecord
from services.checkpoint import CheckpointState, CheckpointStore

logger = logging.getLogger(__name__)

MIN_WORKERS, MAX_WORKERS = 1, 50
MIN_CHECKPOINT_EVERY, MAX_CHECKPOINT_EVERY = 10, 25
_STOP = object()


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


@dataclass
class BatchOutcome:
    results: Dict[str, GeocodeResult] = field(default_factory=dict)
    processed: int = 0
    skipped: int = 0
    failed: List[str] = field(default_factory=list)
    by_source: Dict[str, int] = field(default_factory=dict)


class BatchScheduler:
    def __init__(
        self,
        resolve_fn: Callable[[PlaceRecord], GeocodeResult],
        workers: Optional[int] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        checkpoint_every: Optional[int] = None,
        inter_request_delay: Optional[float] = None,
        fallback_fn: Optional[Callable[[PlaceRecord], GeocodeResult]] = None,
        on_result: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        join_timeout: float = 10.0,
    ):
        from settings import settings

        self.resolve_fn = resolve_fn
        self.fallback_fn = fallback_fn
        self.workers = _clamp(workers if workers is not None else settings.WORKERS, MIN_WORKERS, MAX_WORKERS)
        self.checkpoint_store = checkpoint_store
        self.checkpoint_every = _clamp(
            checkpoint_every if checkpoint_every is not None else settings.CHECKPOINT_EVERY,
            MIN_CHECKPOINT_EVERY,
            MAX_CHECKPOINT_EVERY,
        )
        self.inter_request_delay = (
            settings.INTER_REQUEST_DELAY_SEC if inter_request_delay is None else inter_request_delay
        )
        self.on_result = on_result
        self._sleep = sleep
        self.join_timeout = join_timeout

    def _worker(self, work_q: "queue.Queue", result_q: "queue.Queue", stop: threading.Event) -> None:
        while True:
            item = work_q.get()
            if item is _STOP or stop.is_set():
                return
            record: PlaceRecord = item
            try:
                result = self.resolve_fn(record)
                result_q.put((record.id, result, None))
            except Exception as exc:
                logger.exception("Resolution failed for %s (%s)", record.id, record.name)
                if self.fallback_fn is not None:
                    try:
                        result_q.put((record.id, self.fallback_fn(record), exc))
                    except Exception as fallback_exc:
                        result_q.put((record.id, None, fallback_exc))
                else:
                    result_q.put((record.id, None, exc))
            if self.inter_request_delay > 0:
                self._sleep(self.inter_request_delay)

    def _save(self, state: CheckpointState) -> None:
        if self.checkpoint_store is not None:
            self.checkpoint_store.save(state)
            logger.info("Checkpoint saved (%d processed)", len(state.processed_ids))

    def run(self, records: Sequence[PlaceRecord]) -> BatchOutcome:
        """
        Resolve every record not already in the checkpoint. Checkpointed
        results are returned as stored. On KeyboardInterrupt the workers are
        told to stop, a final checkpoint is written and the interrupt is
        re-raised.
        """
        state = self.checkpoint_store.load() if self.checkpoint_store else CheckpointState()
        done = set(state.processed_ids)
        pending = [r for r in records if r.id not in done]
        outcome = BatchOutcome(skipped=len(records) - len(pending))
        if outcome.skipped:
            logger.info("Resuming: skipping %d already processed records", outcome.skipped)

        work_q: "queue.Queue" = queue.Queue()
        result_q: "queue.Queue" = queue.Queue()
        stop = threading.Event()
        for record in pending:
            work_q.put(record)
        n_threads = min(self.workers, len(pending))
        for _ in range(n_threads):
            work_q.put(_STOP)
        threads = [
            threading.Thread(target=self._worker, args=(work_q, result_q, stop), name=f"resolver-{i}", daemon=True)
            for i in range(n_threads)
        ]
        for t in threads:
            t.start()

        by_source = Counter(state.stats)
        since_checkpoint = 0
        try:
            for _ in range(len(pending)):
                record_id, result, error = result_q.get()
                if result is None:
                    outcome.failed.append(record_id)
                    continue
                state.processed_ids.append(record_id)
                state.results[record_id] = result
                by_source[result.source] += 1
                state.stats = dict(by_source)
                outcome.processed += 1
                since_checkpoint += 1
                if since_checkpoint >= self.checkpoint_every:
                    self._save(state)
                    since_checkpoint = 0
                if self.on_result is not None:
                    self.on_result(len(state.processed_ids))
        except KeyboardInterrupt:
            logger.warning("Interrupted: stopping workers after %d records", len(state.processed_ids))
            stop.set()
            self._drain(work_q, n_threads)
            self._save(state)
            raise

        for t in threads:
            t.join(timeout=self.join_timeout)
        if since_checkpoint:
            self._save(state)

        outcome.results = {r.id: state.results[r.id] for r in records if r.id in state.results}
        outcome.by_source = dict(by_source)
        logger.info(
            "Batch done: %d processed, %d skipped, %d failed, by source %s",
            outcome.processed, outcome.skipped, len(outcome.failed), outcome.by_source,
        )
        return outcome

    @staticmethod
    def _drain(work_q: "queue.Queue", n_threads: int) -> None:
        while True:
            try:
                work_q.get_nowait()
            except queue.Empty:
                break
        for _ in range(n_threads):
            work_q.put(_STOP)
