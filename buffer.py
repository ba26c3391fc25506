from typing import Optional

import numpy as np

from errors import DimensionMismatchError
from pipeline.types import PartialResult


class AccumulationBuffer:
    """Per-frame raw statistics laid out as one flat [frame][column] array.

    Geometry is fixed by the first result that arrives. Rows of failed frames
    stay unpopulated and are excluded from normalization.
    """

    def __init__(self, frame_count: int):
        if frame_count < 1:
            raise ValueError("frame_count must be positive")
        self.frame_count = frame_count
        self.width: Optional[int] = None
        self._values: Optional[np.ndarray] = None
        self._populated = np.zeros(frame_count, dtype=bool)
        self._failed = np.zeros(frame_count, dtype=bool)

    @property
    def columns(self) -> int:
        return 0 if self.width is None else self.width // 2

    def add(self, result: PartialResult) -> None:
        """Copy one frame's raw values into its row."""
        self._check_index(result.index)
        raw = np.asarray(result.raw, dtype=np.float64).reshape(-1)

        if self.width is None:
            if result.width // 2 < 1:
                raise DimensionMismatchError(f"frame width {result.width} leaves no columns", index=result.index)
            self.width = result.width
            self._values = np.zeros(self.columns * self.frame_count, dtype=np.float64)
        elif result.width != self.width:
            raise DimensionMismatchError(
                f"width {result.width} differs from the batch width {self.width}",
                index=result.index,
            )

        if raw.size != self.columns:
            raise DimensionMismatchError(
                f"{raw.size} raw values, expected {self.columns}",
                index=result.index,
            )

        start = result.index * self.columns
        self._values[start:start + self.columns] = raw
        self._populated[result.index] = True

    def mark_failed(self, index: int) -> None:
        self._check_index(index)
        self._failed[index] = True

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.frame_count:
            raise IndexError(f"frame {index} is outside a batch of {self.frame_count}")

    @property
    def completed(self) -> int:
        return int(self._populated.sum())

    @property
    def failed(self) -> int:
        return int(self._failed.sum())

    @property
    def settled(self) -> int:
        return int((self._populated | self._failed).sum())

    @property
    def is_complete(self) -> bool:
        """True once every frame has either delivered or failed."""
        return self.settled == self.frame_count

    def populated_mask(self) -> np.ndarray:
        return self._populated.copy()

    def values(self) -> np.ndarray:
        """Flat read-only view of the buffer (empty before the first result)."""
        if self._values is None:
            return np.zeros(0, dtype=np.float64)
        view = self._values.view()
        view.flags.writeable = False
        return view

    def rows(self) -> np.ndarray:
        """2-D read-only view shaped (frame_count, columns)."""
        return self.values().reshape(self.frame_count, self.columns)
