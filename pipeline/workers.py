"""Worker implementation for the batch decode/reduce pipeline."""

import logging
import queue
import threading
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from errors import DecodeError, PipelineError, ReductionError

from pipeline.types import Decoder, FrameFailure, PartialResult, ReducerFactory

WorkerItem = Optional[Union[PartialResult, FrameFailure]]


class FrameWorker:
    """One execution unit: decode then reduce each assigned frame in order."""

    def __init__(
        self,
        *,
        unit: int,
        assignments: Sequence[Tuple[int, bytes]],
        result_queue: "queue.Queue[WorkerItem]",
        cancel_event: threading.Event,
        decode: Decoder,
        reducer_factory: ReducerFactory,
    ):
        self.unit = unit
        self.assignments = list(assignments)
        self.result_queue = result_queue
        self.cancel_event = cancel_event
        self.decode = decode
        self.reducer_factory = reducer_factory

    def run(self) -> None:
        try:
            for index, data in self.assignments:
                # Frame boundary: the only point where a cancelled unit stops.
                if self.cancel_event.is_set():
                    break
                self.result_queue.put(self._process(index, data))
        finally:
            self.result_queue.put(None)

    def _process(self, index: int, data: bytes) -> Union[PartialResult, FrameFailure]:
        try:
            frame = self.decode(data)
        except Exception as exc:
            return self._failure(index, DecodeError, exc)

        handle = None
        try:
            handle = self.reducer_factory()
            handle.accumulate(frame)
            raw = np.asarray(handle.raw_values(), dtype=np.float64)
            # A non-finite row would poison the batch-wide min/max
            if not np.isfinite(raw).all():
                raise ValueError("reduction produced NaN or infinite values")
            scaled = bytes(handle.scaled_preview())
            return PartialResult(index=index, width=frame.width, raw=raw, scaled=scaled, unit=self.unit)
        except Exception as exc:
            return self._failure(index, ReductionError, exc)
        finally:
            if handle is not None:
                handle.release()
            release = getattr(frame, "release", None)
            if release is not None:
                release()

    def _failure(self, index: int, kind, exc: Exception) -> FrameFailure:
        if isinstance(exc, PipelineError):
            error = kind(exc.message, index=index)
        else:
            error = kind(str(exc) or type(exc).__name__, index=index)
        error.__cause__ = exc
        logging.warning(f"Unit {self.unit} skipped {error}")
        return FrameFailure(index=index, unit=self.unit, error=error)
