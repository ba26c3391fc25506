import numpy as np
import pytest

from decoder import DetectorFrame, decode_frame, encode_frame, pixel_view
from errors import DecodeError
from renderer import render_single


def test_round_trip_keeps_dimensions():
    pixels = np.arange(15, dtype=np.uint16).reshape(3, 5)

    frame = decode_frame(encode_frame(pixels))

    assert (frame.width, frame.height) == (5, 3)
    np.testing.assert_array_equal(frame.pixels, pixels)


@pytest.mark.parametrize("payload", [b"", b"garbage", encode_frame(np.zeros((2, 2, 2)))])
def test_malformed_payloads_raise_decode_error(payload):
    with pytest.raises(DecodeError):
        decode_frame(payload)


def test_non_numeric_frames_are_rejected():
    with pytest.raises(DecodeError):
        DetectorFrame(np.array([["a", "b"]]))


def test_write_rgba_inverts_gray():
    frame = DetectorFrame(np.array([[0, 10]]))
    dest = bytearray(8)

    frame.write_rgba(dest)

    assert list(dest) == [255, 255, 255, 255, 0, 0, 0, 255]


def test_flat_frame_renders_white():
    frame = DetectorFrame(np.full((2, 2), 42))
    dest = bytearray(16)

    frame.write_rgba(dest)

    assert set(dest) == {255}


def test_read_only_destination_is_rejected():
    with pytest.raises(ValueError):
        pixel_view(bytes(8))


def test_released_frame_has_no_pixels():
    frame = DetectorFrame(np.ones((2, 2)))
    frame.release()
    with pytest.raises(RuntimeError):
        frame.pixels


def test_render_single_uses_frame_geometry():
    raster = render_single(encode_frame(np.arange(12).reshape(3, 4)))

    assert (raster.width, raster.height) == (4, 3)
    assert raster.stride == 16
    assert tuple(raster.pixels[0, 0]) == (255, 255, 255, 255)
    assert tuple(raster.pixels[2, 3]) == (0, 0, 0, 255)


def test_render_single_propagates_decode_error():
    with pytest.raises(DecodeError):
        render_single(b"nope")
