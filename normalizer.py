"""Global normalization of accumulated statistics into the final raster.

Interface contract:
- normalize(buffer, params) -> Raster

Behavior:
- One min/max scan over the populated rows
- t = (v - min) / (max - min), then linear, circular or logarithmic mapping
- max == min maps every value to the transform's output at 0 (white)
- Logarithmic with min <= 0 raises DegenerateRangeError
- Intensity = 255 - rint(output * 255) on RGB, alpha 255, rows duplicated
- Rows of failed frames stay transparent
"""

from typing import Tuple

import numpy as np

from assembler import Raster
from buffer import AccumulationBuffer
from errors import DegenerateRangeError, IncompleteBufferError
from pipeline.types import NormalizationParams


def value_range(values: np.ndarray) -> Tuple[float, float]:
    """Minimum and maximum of the values, in a single pass."""
    flat = np.asarray(values, dtype=np.float64).reshape(-1)
    if flat.size == 0:
        raise IncompleteBufferError("no values to normalize")
    if not np.isfinite(flat).all():
        raise DegenerateRangeError("accumulated values contain NaN or infinity")
    return float(flat.min()), float(flat.max())


def apply_transform(values: np.ndarray, lo: float, hi: float, transform: str) -> np.ndarray:
    """Map values within [lo, hi] onto [0, 1] through the named transform."""
    values = np.asarray(values, dtype=np.float64)

    if transform == "logarithmic" and lo <= 0:
        raise DegenerateRangeError(f"logarithmic transform needs positive values, minimum is {lo:g}")
    if hi == lo:
        return np.zeros_like(values)

    if transform == "linear":
        return (values - lo) / (hi - lo)
    if transform == "circular":
        t = (values - lo) / (hi - lo)
        return np.sqrt(np.clip(1.0 - (t - 1.0) ** 2, 0.0, 1.0))
    if transform == "logarithmic":
        log_lo = np.log(lo)
        return (np.log(values) - log_lo) / (np.log(hi) - log_lo)
    raise ValueError(f"unknown transform {transform!r}")


def to_intensity(output: np.ndarray) -> np.ndarray:
    """Inverted 8-bit gray: large outputs render dark."""
    scaled = np.rint(np.clip(output, 0.0, 1.0) * 255.0)
    return (255 - scaled).astype(np.uint8)


def normalize(buffer: AccumulationBuffer, params: NormalizationParams) -> Raster:
    params = params.validated()
    if not buffer.is_complete:
        raise IncompleteBufferError(f"{buffer.settled} of {buffer.frame_count} frames settled")
    if buffer.completed == 0:
        raise IncompleteBufferError("no frame in the batch was decoded")

    populated = buffer.populated_mask()
    values = buffer.rows()[populated]
    lo, hi = value_range(values)

    gray = to_intensity(apply_transform(values, lo, hi, params.transform))

    pixels = np.zeros((buffer.frame_count, buffer.columns, 4), dtype=np.uint8)
    pixels[populated, :, 0] = gray
    pixels[populated, :, 1] = gray
    pixels[populated, :, 2] = gray
    pixels[populated, :, 3] = 255

    dup = params.row_duplication
    if dup > 1:
        pixels = np.repeat(pixels, dup, axis=0)
    return Raster(buffer.columns, buffer.frame_count * dup, pixels)
