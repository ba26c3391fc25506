"""Detector frame decoding and direct RGBA display.

Interface contract:
- decode_frame(data) -> DetectorFrame
- DetectorFrame.width / .height / .write_rgba(dest) / .release()

Any callable with the signature of ``decode_frame`` can be handed to the
pipeline instead. decode_frame reads CBF detector frames (see cbf.py) and
NumPy ``.npy`` payloads, told apart by their leading bytes.
"""

import io
from typing import Optional

import numpy as np

from cbf import is_cbf, read_cbf_pixels
from errors import DecodeError

_NUMERIC_KINDS = "biuf"


def pixel_view(dest) -> np.ndarray:
    """Return a writable (N, 4) uint8 view over an RGBA destination buffer."""
    view = memoryview(dest)
    if view.readonly:
        raise ValueError("RGBA destination buffer is read-only")
    flat = np.frombuffer(view.cast("B"), dtype=np.uint8)
    usable = (flat.size // 4) * 4
    return flat[:usable].reshape(-1, 4)


def write_scaled_gray(values: np.ndarray, dest) -> None:
    """Write values as inverted grayscale, scaled to their own min/max.

    Large values render dark. A flat input renders white. Writes at most as
    many pixels as the destination holds.
    """
    out = pixel_view(dest)
    flat = np.asarray(values).reshape(-1)
    n = min(flat.size, out.shape[0])
    if n == 0:
        return

    flat = flat[:n].astype(np.float64)
    lo = flat.min()
    hi = flat.max()
    if hi > lo:
        scaled = ((flat - lo) * (255.0 / (hi - lo))).astype(np.uint8)
    else:
        scaled = np.zeros(n, dtype=np.uint8)

    gray = 255 - scaled
    out[:n, 0] = gray
    out[:n, 1] = gray
    out[:n, 2] = gray
    out[:n, 3] = 255


class DetectorFrame:
    """One decoded detector image backed by a 2-D numpy array."""

    def __init__(self, pixels: np.ndarray):
        pixels = np.asarray(pixels)
        if pixels.ndim != 2:
            raise DecodeError(f"expected a 2-D frame, got {pixels.ndim}-D")
        if pixels.size == 0:
            raise DecodeError("frame has no pixels")
        if pixels.dtype.kind not in _NUMERIC_KINDS:
            raise DecodeError(f"unsupported pixel type {pixels.dtype}")
        self._pixels: Optional[np.ndarray] = pixels
        self.height, self.width = pixels.shape

    @property
    def pixels(self) -> np.ndarray:
        if self._pixels is None:
            raise RuntimeError("Frame has already been released")
        return self._pixels

    def write_rgba(self, dest) -> None:
        """Write the frame as inverted grayscale RGBA into ``dest``."""
        write_scaled_gray(self.pixels, dest)

    def release(self) -> None:
        self._pixels = None

    def __repr__(self) -> str:
        return f"DetectorFrame(width={self.width}, height={self.height})"


def decode_frame(data: bytes) -> DetectorFrame:
    """Decode a CBF or ``.npy`` payload into a DetectorFrame."""
    if is_cbf(data):
        return DetectorFrame(read_cbf_pixels(data))
    return decode_npy(data)


def decode_npy(data: bytes) -> DetectorFrame:
    """Decode a ``.npy`` payload into a DetectorFrame."""
    try:
        loaded = np.load(io.BytesIO(bytes(data)), allow_pickle=False)
    except (ValueError, OSError, EOFError) as exc:
        raise DecodeError(f"not a NumPy frame: {exc}") from exc

    if not isinstance(loaded, np.ndarray):
        # .npz archives load lazily as NpzFile
        close = getattr(loaded, "close", None)
        if close is not None:
            close()
        raise DecodeError("archives are not supported, expected a single .npy frame")

    return DetectorFrame(loaded)


def encode_frame(pixels: np.ndarray) -> bytes:
    """Serialize a 2-D array as ``.npy`` bytes readable by decode_frame."""
    stream = io.BytesIO()
    np.save(stream, np.asarray(pixels), allow_pickle=False)
    return stream.getvalue()
