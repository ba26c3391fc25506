"""Composite raster assembly from per-frame previews."""

from typing import Optional

import numpy as np

from errors import DimensionMismatchError
from pipeline.types import PartialResult


class Raster:
    """RGBA pixel buffer with explicit geometry, rows top to bottom."""

    def __init__(self, width: int, height: int, pixels: Optional[np.ndarray] = None):
        if width < 1 or height < 1:
            raise ValueError(f"raster must be at least 1x1, got {width}x{height}")
        if pixels is None:
            pixels = np.zeros((height, width, 4), dtype=np.uint8)
        elif pixels.shape != (height, width, 4) or pixels.dtype != np.uint8:
            raise ValueError(f"pixels must be uint8 of shape ({height}, {width}, 4)")
        self.width = width
        self.height = height
        self.pixels = np.ascontiguousarray(pixels)

    @property
    def stride(self) -> int:
        return self.width * 4

    @property
    def data(self) -> memoryview:
        """Writable byte view, the destination handed to RGBA writers."""
        return memoryview(self.pixels).cast("B")

    def tobytes(self) -> bytes:
        return self.pixels.tobytes()

    def copy(self) -> "Raster":
        return Raster(self.width, self.height, self.pixels.copy())

    def __eq__(self, other) -> bool:
        if not isinstance(other, Raster):
            return NotImplemented
        return (self.width, self.height) == (other.width, other.height) and np.array_equal(
            self.pixels, other.pixels
        )

    def __repr__(self) -> str:
        return f"Raster(width={self.width}, height={self.height})"


class CompositeAssembler:
    """Places each arriving preview row into its row block of a shared raster.

    The raster is allocated on the first result, once the frame width is
    known, and keeps that geometry until the assembler is replaced.
    """

    def __init__(self, frame_count: int, row_duplication: int = 1):
        if frame_count < 1:
            raise ValueError("frame_count must be positive")
        if row_duplication < 1:
            raise ValueError("row_duplication must be >= 1")
        self.frame_count = frame_count
        self.row_duplication = row_duplication
        self.frame_width: Optional[int] = None
        self.raster: Optional[Raster] = None
        self.rows_written = 0

    def on_partial_result(self, result: PartialResult) -> Raster:
        if not 0 <= result.index < self.frame_count:
            raise IndexError(f"frame {result.index} is outside a batch of {self.frame_count}")

        if self.raster is None:
            self.frame_width = result.width
            self.raster = Raster(result.width // 2, self.frame_count * self.row_duplication)
        elif result.width != self.frame_width:
            raise DimensionMismatchError(
                f"width {result.width} differs from the batch width {self.frame_width}",
                index=result.index,
            )

        row = np.frombuffer(result.scaled, dtype=np.uint8)
        if row.size != self.raster.stride:
            raise DimensionMismatchError(
                f"preview holds {row.size} bytes, expected {self.raster.stride}",
                index=result.index,
            )

        top = result.index * self.row_duplication
        self.raster.pixels[top:top + self.row_duplication] = row.reshape(1, self.raster.width, 4)
        self.rows_written += 1
        return self.raster
