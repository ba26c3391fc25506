"""Radial diffraction profile reducer.

Interface contract:
- RadialAverageReducer.create() -> handle
- handle.accumulate(frame)
- handle.raw_values() -> np.ndarray[float64] of length width // 2
- handle.scaled_preview() -> bytes (RGBA, locally scaled)
- handle.write_final_rgba(dest)
- handle.release()

Behavior:
- width // 2 radial bins spanning radius * width / 2 pixels from the centre
- intensity_sample_count angles over [0, pi)
- Nearest-neighbour sampling, samples outside the frame or non-finite are skipped
- Mean per bin across every accumulated frame, empty bins read 0
"""

import functools
import math
from typing import Optional

import numpy as np

from config import INTENSITY_SAMPLE_COUNT, PLAN_CACHE_SIZE, RADIAL_RADIUS
from decoder import write_scaled_gray


class _SamplingPlan:
    """Precomputed pixel indices and bin assignments for one frame geometry.

    Plans are read-only once built, so units may share them.
    """

    def __init__(self, width: int, height: int, radius: float, intensity_sample_count: int):
        theta_sample_count = width // 2
        if theta_sample_count < 1:
            raise ValueError(f"frame width {width} is too narrow for a radial profile")

        self.width = width
        self.height = height
        self.bins = theta_sample_count

        angles = np.arange(intensity_sample_count) * (math.pi / intensity_sample_count)
        radii = np.arange(theta_sample_count) * (radius / theta_sample_count) * (width / 2.0)

        xs = np.rint(np.outer(np.cos(angles), radii)).astype(np.intp) + width // 2
        ys = np.rint(np.outer(np.sin(angles), radii)).astype(np.intp) + height // 2
        inside = (xs >= 0) & (xs < width) & (ys >= 0) & (ys < height)
        bin_grid = np.broadcast_to(np.arange(theta_sample_count), xs.shape)

        self.pixel_index = ys[inside] * width + xs[inside]
        self.bin_index = bin_grid[inside]
        for array in (self.pixel_index, self.bin_index):
            array.flags.writeable = False


@functools.lru_cache(maxsize=PLAN_CACHE_SIZE)
def _sampling_plan(width: int, height: int, radius: float, count: int) -> _SamplingPlan:
    return _SamplingPlan(width, height, radius, count)


class RadialAverageReducer:
    """Folds frames into an averaged radial intensity profile."""

    def __init__(
        self,
        radius: float = RADIAL_RADIUS,
        intensity_sample_count: int = INTENSITY_SAMPLE_COUNT,
    ):
        if radius < 0.0 or radius > math.sqrt(2):
            raise ValueError("radius must lie within [0, sqrt(2)]")
        if intensity_sample_count < 1:
            raise ValueError("intensity_sample_count must be positive")

        self.radius = float(radius)
        self.intensity_sample_count = int(intensity_sample_count)
        self._plan: Optional[_SamplingPlan] = None
        self._sums: Optional[np.ndarray] = None
        self._counts: Optional[np.ndarray] = None
        self.frames = 0

    @classmethod
    def create(cls, **kwargs) -> "RadialAverageReducer":
        return cls(**kwargs)

    def accumulate(self, frame) -> None:
        """Add one frame's samples to the running per-bin averages."""
        if self._plan is not None and (frame.width, frame.height) != (self._plan.width, self._plan.height):
            raise ValueError(
                f"frame is {frame.width}x{frame.height}, reducer holds "
                f"{self._plan.width}x{self._plan.height}"
            )

        plan = _sampling_plan(frame.width, frame.height, self.radius, self.intensity_sample_count)
        if self._plan is None:
            self._plan = plan
            self._sums = np.zeros(plan.bins, dtype=np.float64)
            self._counts = np.zeros(plan.bins, dtype=np.float64)

        samples = np.asarray(frame.pixels).reshape(-1)[plan.pixel_index].astype(np.float64)
        # Non-finite pixels are skipped like samples falling outside the frame
        valid = np.isfinite(samples)
        bins = plan.bin_index[valid]
        self._sums += np.bincount(bins, weights=samples[valid], minlength=plan.bins)
        self._counts += np.bincount(bins, minlength=plan.bins)
        self.frames += 1

    def raw_values(self) -> np.ndarray:
        if self._sums is None:
            return np.zeros(0, dtype=np.float64)
        out = np.zeros_like(self._sums)
        np.divide(self._sums, self._counts, out=out, where=self._counts > 0)
        return out

    def scaled_preview(self) -> bytes:
        values = self.raw_values()
        preview = bytearray(values.size * 4)
        write_scaled_gray(values, preview)
        return bytes(preview)

    def write_final_rgba(self, dest) -> None:
        write_scaled_gray(self.raw_values(), dest)

    def release(self) -> None:
        self._plan = None
        self._sums = None
        self._counts = None
        self.frames = 0
