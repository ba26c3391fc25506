import time
from typing import List, Optional

import numpy as np

from config import SIM_BACKGROUND, SIM_FRAME_FORMAT, SIM_FRAME_FORMATS, SIM_FRAME_SIZE, SIM_NUM_FRAMES
from cbf import write_cbf
from decoder import decode_frame, encode_frame


class Simulator:
    """Generates synthetic powder-diffraction detector frames.

    frame structure:
        square int32 image, flat background plus concentric Debye rings
        centred on the frame; ring radii drift slowly from frame to frame
        so a composite of many frames shows sloped bands.

    Frames are returned as .npy or byte-offset CBF bytes, both of which
    decode_frame reads.
    """

    def __init__(
        self,
        frame_size: int = SIM_FRAME_SIZE,
        background: int = SIM_BACKGROUND,
        ring_radii: Optional[List[float]] = None,
        seed: Optional[int] = None,
        frame_format: str = SIM_FRAME_FORMAT,
    ):
        if frame_size < 2:
            raise ValueError("frame_size must be at least 2")
        if frame_format not in SIM_FRAME_FORMATS:
            raise ValueError(f"frame_format must be one of {', '.join(SIM_FRAME_FORMATS)}")
        self.frame_format = frame_format
        self.frame_size = frame_size
        self.background = background
        self.ring_radii = ring_radii or [0.15, 0.32, 0.55, 0.8]
        self._rng = np.random.default_rng(seed)

        half = frame_size // 2
        axis = np.arange(frame_size) - half
        yy, xx = np.meshgrid(axis, axis, indexing="ij")
        # Radius as a fraction of half the frame width
        self._radius = np.hypot(xx, yy) / max(half, 1)

    def generate_pixels(self, frame_number: int, drift: float = 0.002) -> np.ndarray:
        """One frame's pixels as a 2-D int32 array."""
        image = np.full(self._radius.shape, float(self.background))
        for ring, r0 in enumerate(self.ring_radii):
            centre = r0 * (1.0 + drift * frame_number)
            width = 0.01 + 0.004 * ring
            amplitude = 4000.0 / (ring + 1)
            image += amplitude * np.exp(-0.5 * ((self._radius - centre) / width) ** 2)

        # Poisson counting noise, as on a photon-counting detector
        noisy = self._rng.poisson(image)
        return noisy.astype(np.int32)

    def generate_frame(self, frame_number: int) -> bytes:
        pixels = self.generate_pixels(frame_number)
        if self.frame_format == "cbf":
            return write_cbf(pixels)
        return encode_frame(pixels)

    def generate_batch(self, num_frames: int = SIM_NUM_FRAMES) -> List[bytes]:
        return [self.generate_frame(i) for i in range(num_frames)]


if __name__ == '__main__':
    sim = Simulator(frame_size=64, seed=0)
    start = time.time()
    frames = sim.generate_batch(4)
    elapsed = time.time() - start

    print(f"Generated {len(frames)} frames in {elapsed * 1000:.1f} ms")
    for i, data in enumerate(frames):
        pixels = decode_frame(data).pixels
        print(f"[{i}] {len(data)} bytes | min={pixels.min()} max={pixels.max()}")
