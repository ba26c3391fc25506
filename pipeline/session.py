"""Analysis session: the boundary the viewer and terminal app talk to.

Owns the active batch, its accumulation buffer and composite raster. Every
write into those goes through the thread consuming the batch stream.
"""

import logging
import os
import pathlib
from typing import Iterator, List, Optional, Sequence

from assembler import CompositeAssembler, Raster
from buffer import AccumulationBuffer
from config import MAX_WORKERS
from decoder import decode_frame
from errors import DegenerateRangeError, DimensionMismatchError, EmptyBatchError, PipelineError
from normalizer import normalize
from reducer import RadialAverageReducer
from renderer import render_single

from pipeline.runtime import BatchRun, PipelineRuntime
from pipeline.types import (
    BatchComplete,
    Decoder,
    FrameBatch,
    FrameFailure,
    NormalizationParams,
    PartialResult,
    PipelineSummary,
    ReducerFactory,
)


def read_handle(handle) -> bytes:
    """Bytes of one file handle: raw bytes, a path, or a readable object."""
    if isinstance(handle, (bytes, bytearray, memoryview)):
        return bytes(handle)
    if hasattr(handle, "read"):
        return bytes(handle.read())
    if isinstance(handle, (str, os.PathLike)):
        return pathlib.Path(handle).read_bytes()
    raise TypeError(f"cannot read frame bytes from {type(handle).__name__}")


class AnalysisSession:
    """Single-frame rendering and multi-frame composite analysis."""

    def __init__(
        self,
        *,
        decode: Decoder = decode_frame,
        reducer_factory: ReducerFactory = RadialAverageReducer.create,
        params: Optional[NormalizationParams] = None,
        available_parallelism: Optional[int] = None,
        max_workers: Optional[int] = MAX_WORKERS,
    ):
        self.decode = decode
        self.runtime = PipelineRuntime(
            decode=decode,
            reducer_factory=reducer_factory,
            available_parallelism=available_parallelism,
            max_workers=max_workers,
        )
        self.params = (params or NormalizationParams()).validated()

        self._run: Optional[BatchRun] = None
        self._buffer: Optional[AccumulationBuffer] = None
        self._assembler: Optional[CompositeAssembler] = None
        self._complete = False
        self._error: Optional[PipelineError] = None
        self.raster: Optional[Raster] = None

    @property
    def run(self) -> Optional[BatchRun]:
        return self._run

    @property
    def buffer(self) -> Optional[AccumulationBuffer]:
        return self._buffer

    @property
    def is_complete(self) -> bool:
        return self._complete

    @property
    def error(self) -> Optional[PipelineError]:
        """The failure that aborted the current batch, if any."""
        return self._error

    @property
    def summary(self) -> PipelineSummary:
        return self.runtime.get_summary()

    def render_single(self, handle) -> Raster:
        """Render one file directly; batch state is left untouched."""
        return render_single(read_handle(handle), self.decode)

    def start_batch(self, files: Sequence) -> BatchRun:
        """Replace the session with a new batch and start its units."""
        batch: FrameBatch = tuple(read_handle(f) for f in files)
        if not batch:
            raise EmptyBatchError("no files submitted")

        run = self.runtime.submit(batch)
        self._run = run
        self._buffer = AccumulationBuffer(len(batch))
        self._assembler = CompositeAssembler(len(batch), self.params.row_duplication)
        self._complete = False
        self._error = None
        self.raster = None
        return run

    def analyze_batch(self, files: Sequence) -> Iterator[object]:
        """Start a batch and return its event stream.

        The stream yields PartialResult and FrameFailure items in completion
        order, then a single BatchComplete. It stops silently if a newer
        batch supersedes it.
        """
        run = self.start_batch(files)
        return self._stream(run)

    def _stream(self, run: BatchRun) -> Iterator[object]:
        for item in run.results():
            if run is not self._run:
                return
            yield self._apply(item)
        if run is self._run and not run.is_cancelled:
            yield self._finish()

    def poll(self) -> List[object]:
        """Apply whatever results are ready, without blocking."""
        run = self._run
        if run is None or self._complete or self._error is not None:
            return []

        events = [self._apply(item) for item in run.drain()]
        if run.is_done and not run.is_cancelled:
            events.append(self._finish())
        return events

    def cancel(self) -> None:
        self.runtime.cancel()

    def set_normalization_params(self, params: NormalizationParams) -> Optional[Raster]:
        """Re-normalize the retained buffer under new parameters.

        Returns the new raster, or None while no completed buffer exists (the
        parameters then apply to the next final pass). On failure neither the
        raster nor the active parameters change.
        """
        params = params.validated()
        buffer = self._buffer
        if not self._complete or buffer is None or buffer.completed == 0:
            self.params = params
            return None

        raster = normalize(buffer, params)
        self.params = params
        self.raster = raster
        return raster

    def _apply(self, item):
        if isinstance(item, PartialResult):
            try:
                self._buffer.add(item)
                self.raster = self._assembler.on_partial_result(item)
            except DimensionMismatchError as exc:
                logging.error(f"Aborting batch: {exc}")
                self._error = exc
                self.runtime.cancel()
                raise
        elif isinstance(item, FrameFailure):
            self._buffer.mark_failed(item.index)
        return item

    def _finish(self) -> BatchComplete:
        buffer = self._buffer
        fallback_from = None

        if buffer.completed == 0:
            logging.error(f"No frame of {buffer.frame_count} could be decoded")
        else:
            try:
                raster, params = self._final_pass(buffer)
            except DegenerateRangeError as exc:
                logging.error(f"Final pass failed: {exc}")
                self._error = exc
                raise
            if params.transform != self.params.transform:
                fallback_from = self.params.transform
            self.params = params
            self.raster = raster

        self._complete = True
        return BatchComplete(
            frame_count=buffer.frame_count,
            completed=buffer.completed,
            failed=buffer.failed,
            raster=self.raster,
            transform=self.params.transform,
            fallback_from=fallback_from,
        )

    def _final_pass(self, buffer: AccumulationBuffer):
        try:
            return normalize(buffer, self.params), self.params
        except DegenerateRangeError as exc:
            # Linear is defined wherever logarithmic is not; other failures stand
            if self.params.transform != "logarithmic":
                raise
            logging.warning(f"{exc}; falling back to linear")
            linear = self.params._replace(transform="linear")
            return normalize(buffer, linear), linear
