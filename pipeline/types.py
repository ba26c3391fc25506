"""Data types used by the frame analysis pipeline."""

from typing import Callable, NamedTuple, Optional, Protocol, Tuple

import numpy as np

from config import DEFAULT_ROW_DUPLICATION, DEFAULT_TRANSFORM, TRANSFORMS
from errors import PipelineError


class Frame(Protocol):
    """What a decoder hands to the reducer and the single-frame renderer."""

    width: int
    height: int

    def write_rgba(self, dest) -> None: ...


class ReducerHandle(Protocol):
    """Running accumulator created once per frame by a reducer factory."""

    def accumulate(self, frame: Frame) -> None: ...

    def raw_values(self) -> np.ndarray: ...

    def scaled_preview(self) -> bytes: ...

    def write_final_rgba(self, dest) -> None: ...

    def release(self) -> None: ...


Decoder = Callable[[bytes], Frame]
ReducerFactory = Callable[[], ReducerHandle]
FrameBatch = Tuple[bytes, ...]


class PartialResult(NamedTuple):
    """One frame's reduction output, tagged with its batch index."""

    index: int
    width: int
    raw: np.ndarray       # float64, length width // 2
    scaled: bytes         # RGBA, length (width // 2) * 4
    unit: int = 0         # execution unit that produced it


class FrameFailure(NamedTuple):
    """A frame that could not be decoded or reduced; its row stays blank."""

    index: int
    unit: int
    error: PipelineError


class NormalizationParams(NamedTuple):
    """User-selectable mapping from accumulated statistics to display."""

    transform: str = DEFAULT_TRANSFORM
    row_duplication: int = DEFAULT_ROW_DUPLICATION

    def validated(self) -> "NormalizationParams":
        if self.transform not in TRANSFORMS:
            raise ValueError(f"transform must be one of {', '.join(TRANSFORMS)}")
        if int(self.row_duplication) != self.row_duplication or self.row_duplication < 1:
            raise ValueError("row_duplication must be an integer >= 1")
        return NormalizationParams(self.transform, int(self.row_duplication))


class PipelineSummary(NamedTuple):
    """Runtime counters exposed to the session and entry points."""

    submitted_batches: int
    cancelled_batches: int
    delivered_frames: int
    failed_frames: int


class BatchComplete(NamedTuple):
    """Completion signal at the end of a batch stream."""

    frame_count: int
    completed: int
    failed: int
    raster: Optional[object]   # assembler.Raster, None when nothing decoded
    transform: str = DEFAULT_TRANSFORM     # transform the final pass applied
    fallback_from: Optional[str] = None    # requested transform, when it could not be applied
