"""Runtime coordinator for the threaded decode/reduce worker pool."""

import logging
import os
import queue
import threading
from typing import Callable, Iterator, List, Optional, Sequence

from config import MAX_WORKERS
from decoder import decode_frame
from errors import EmptyBatchError
from reducer import RadialAverageReducer

from pipeline.types import (
    Decoder,
    FrameBatch,
    FrameFailure,
    PartialResult,
    PipelineSummary,
    ReducerFactory,
)
from pipeline.workers import FrameWorker, WorkerItem

# Control marker posted by cancel() so a blocked consumer wakes up.
_CANCELLED = object()


class BatchRun:
    """One submitted batch: its units, its result channel and its progress.

    Results are consumed by a single thread through ``results()`` (blocking)
    or ``drain()`` (non-blocking). Nothing is delivered once the run has been
    cancelled.
    """

    def __init__(
        self,
        *,
        batch_id: int,
        batch: FrameBatch,
        pool_size: int,
        decode: Decoder,
        reducer_factory: ReducerFactory,
        on_delivered: Callable[[object], None],
    ):
        self.batch_id = batch_id
        self.frame_count = len(batch)
        self.pool_size = pool_size

        self._queue: queue.Queue = queue.Queue()
        self._cancel_event = threading.Event()
        self._on_delivered = on_delivered
        self._finished_units = 0
        self._settled = 0
        self._done = False

        self._workers = [
            FrameWorker(
                unit=unit,
                assignments=[(i, batch[i]) for i in range(unit, self.frame_count, pool_size)],
                result_queue=self._queue,
                cancel_event=self._cancel_event,
                decode=decode,
                reducer_factory=reducer_factory,
            )
            for unit in range(pool_size)
        ]
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        for worker in self._workers:
            thread = threading.Thread(
                target=worker.run,
                name=f"batch{self.batch_id}-unit{worker.unit}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def unit_for(self, index: int) -> int:
        """Execution unit that processes frame ``index`` (round-robin)."""
        if not 0 <= index < self.frame_count:
            raise IndexError(f"frame {index} is outside a batch of {self.frame_count}")
        return index % self.pool_size

    @property
    def settled(self) -> int:
        return self._settled

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_done(self) -> bool:
        return self._done

    def cancel(self) -> None:
        """Tear down the units and discard everything still in flight."""
        if self._done or self._cancel_event.is_set():
            return
        self._cancel_event.set()
        self._done = True
        # Abandon the channel; a unit stuck mid-frame finishes into the void.
        self._queue.put(_CANCELLED)
        logging.info(f"Cancelled batch {self.batch_id} after {self._settled}/{self.frame_count} frames")

    def results(self, timeout: Optional[float] = None) -> Iterator[object]:
        """Yield PartialResult/FrameFailure items until every unit is done."""
        while not self._done:
            item = self._queue.get(timeout=timeout)
            accepted = self._accept(item)
            if accepted is not None:
                yield accepted

    def drain(self) -> List[object]:
        """Return whatever results are ready without blocking."""
        items: List[object] = []
        while not self._done:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            accepted = self._accept(item)
            if accepted is not None:
                items.append(accepted)
        return items

    def _accept(self, item: WorkerItem):
        if self._cancel_event.is_set() or item is _CANCELLED:
            self._done = True
            return None

        if item is None:
            self._finished_units += 1
            if self._finished_units == self.pool_size:
                self._join_units()
            return None

        self._settled += 1
        self._on_delivered(item)
        return item

    def _join_units(self) -> None:
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        self._done = True
        logging.info(f"Batch {self.batch_id} finished: {self._settled}/{self.frame_count} frames settled")


class PipelineRuntime:
    """Owns the worker pool, the active batch and pipeline counters."""

    def __init__(
        self,
        *,
        decode: Decoder = decode_frame,
        reducer_factory: ReducerFactory = RadialAverageReducer.create,
        available_parallelism: Optional[int] = None,
        max_workers: Optional[int] = MAX_WORKERS,
    ):
        self.decode = decode
        self.reducer_factory = reducer_factory
        self.available_parallelism = available_parallelism or os.cpu_count() or 1
        self.max_workers = max_workers

        self._current: Optional[BatchRun] = None
        self._lock = threading.Lock()
        self._batch_counter = 0
        self._cancelled_batches = 0
        self._delivered_frames = 0
        self._failed_frames = 0

    @property
    def current(self) -> Optional[BatchRun]:
        return self._current

    def pool_size_for(self, frame_count: int) -> int:
        size = min(self.available_parallelism, frame_count)
        if self.max_workers is not None:
            size = min(size, self.max_workers)
        return max(1, size)

    def submit(self, batch: Sequence[bytes]) -> BatchRun:
        """Start a new batch, replacing and discarding any batch in flight."""
        batch = tuple(batch)
        if not batch:
            raise EmptyBatchError("no files submitted")

        self.cancel()

        with self._lock:
            self._batch_counter += 1
            batch_id = self._batch_counter

        run = BatchRun(
            batch_id=batch_id,
            batch=batch,
            pool_size=self.pool_size_for(len(batch)),
            decode=self.decode,
            reducer_factory=self.reducer_factory,
            on_delivered=self._on_delivered,
        )
        self._current = run
        logging.info(f"Submitted batch {batch_id}: {run.frame_count} frames on {run.pool_size} units")
        run.start()
        return run

    def cancel(self) -> None:
        run = self._current
        if run is not None and not run.is_done:
            run.cancel()
            with self._lock:
                self._cancelled_batches += 1
        self._current = None if run is None or run.is_cancelled else run

    def stop(self) -> PipelineSummary:
        """Cancel any batch in flight and return the current summary."""
        self.cancel()
        return self.get_summary()

    def get_summary(self) -> PipelineSummary:
        with self._lock:
            return PipelineSummary(
                submitted_batches=self._batch_counter,
                cancelled_batches=self._cancelled_batches,
                delivered_frames=self._delivered_frames,
                failed_frames=self._failed_frames,
            )

    def _on_delivered(self, item: object) -> None:
        with self._lock:
            if isinstance(item, PartialResult):
                self._delivered_frames += 1
            elif isinstance(item, FrameFailure):
                self._failed_frames += 1
