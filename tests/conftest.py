"""Shared fakes and helpers for the pipeline tests."""

import sys
import threading
from pathlib import Path

import numpy as np
import pytest

TESTS_DIR = Path(__file__).parent
PROJECT_DIR = TESTS_DIR.parent

# Flat layout: make the top-level modules importable from a plain checkout.
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

from decoder import decode_frame, encode_frame, write_scaled_gray  # noqa: E402
from pipeline.types import PartialResult  # noqa: E402


class RowReducer:
    """Uses the first half of a frame's top row as its statistic."""

    def __init__(self):
        self._raw = None

    @classmethod
    def create(cls):
        return cls()

    def accumulate(self, frame):
        self._raw = np.asarray(frame.pixels[0, : frame.width // 2], dtype=np.float64)

    def raw_values(self):
        return self._raw.copy()

    def scaled_preview(self):
        out = bytearray(self._raw.size * 4)
        write_scaled_gray(self._raw, out)
        return bytes(out)

    def write_final_rgba(self, dest):
        write_scaled_gray(self._raw, dest)

    def release(self):
        self._raw = None


class GatedDecoder:
    """decode_frame that parks on ``gate`` for any payload in ``blocked``."""

    def __init__(self, blocked=()):
        self.blocked = set(blocked)
        self.gate = threading.Event()
        self.parked = threading.Event()
        self.calls = []

    def __call__(self, data):
        self.calls.append(data)
        if data in self.blocked:
            self.parked.set()
            self.gate.wait(timeout=10)
        return decode_frame(data)


def frame_bytes(raw_row, height=2):
    """Encode a frame whose top row starts with ``raw_row`` (width = 2 * len)."""
    raw_row = np.asarray(raw_row, dtype=np.float64)
    pixels = np.zeros((height, 2 * raw_row.size), dtype=np.float64)
    pixels[0, : raw_row.size] = raw_row
    return encode_frame(pixels)


def partial_result(index, raw_row, unit=0):
    raw = np.asarray(raw_row, dtype=np.float64)
    scaled = bytearray(raw.size * 4)
    write_scaled_gray(raw, scaled)
    return PartialResult(index=index, width=2 * raw.size, raw=raw, scaled=bytes(scaled), unit=unit)


@pytest.fixture
def scenario_frames():
    return [
        frame_bytes([1, 2, 3, 4]),
        frame_bytes([5, 6, 7, 8]),
        frame_bytes([9, 10, 11, 12]),
    ]
