"""Direct rendering of a single detector frame."""

from assembler import Raster
from decoder import decode_frame
from pipeline.types import Decoder


def render_single(data: bytes, decode: Decoder = decode_frame) -> Raster:
    """Decode one frame and write it straight into a raster of its own size."""
    frame = decode(data)
    raster = Raster(frame.width, frame.height)
    try:
        frame.write_rgba(raster.data)
    finally:
        release = getattr(frame, "release", None)
        if release is not None:
            release()
    return raster
