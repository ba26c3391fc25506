import io
import time

import numpy as np
import pytest

from conftest import GatedDecoder, RowReducer, frame_bytes

from decoder import encode_frame
from errors import DegenerateRangeError, DimensionMismatchError, EmptyBatchError
from pipeline.session import AnalysisSession, read_handle
from pipeline.types import BatchComplete, FrameFailure, NormalizationParams, PartialResult
from reducer import RadialAverageReducer
from simulator import Simulator


def _session(parallelism=2, **kwargs):
    return AnalysisSession(reducer_factory=RowReducer.create, available_parallelism=parallelism, **kwargs)


def test_scenario_batch_produces_final_composite(scenario_frames):
    session = _session()

    events = list(session.analyze_batch(scenario_frames))

    results = [e for e in events if isinstance(e, PartialResult)]
    assert sorted(r.index for r in results) == [0, 1, 2]
    complete = events[-1]
    assert isinstance(complete, BatchComplete)
    assert (complete.frame_count, complete.completed, complete.failed) == (3, 3, 0)

    raster = complete.raster
    assert raster is session.raster
    assert (raster.width, raster.height) == (4, 3)
    assert tuple(raster.pixels[0, 0]) == (255, 255, 255, 255)
    assert tuple(raster.pixels[2, 3]) == (0, 0, 0, 255)
    assert (complete.transform, complete.fallback_from) == ("linear", None)


def test_preview_is_visible_before_batch_completes(scenario_frames):
    session = _session(parallelism=1)
    stream = session.analyze_batch(scenario_frames)

    first = next(stream)

    assert isinstance(first, PartialResult)
    assert not session.is_complete
    assert (session.raster.width, session.raster.height) == (4, 3)
    assert np.all(session.raster.pixels[first.index, :, 3] == 255)
    list(stream)
    assert session.is_complete


def test_composite_dimensions_follow_row_duplication(scenario_frames):
    session = _session(params=NormalizationParams("linear", 3))

    complete = list(session.analyze_batch(scenario_frames))[-1]

    assert (complete.raster.width, complete.raster.height) == (4, 9)


def test_set_params_renormalizes_without_redecoding(scenario_frames):
    decoder = GatedDecoder()
    decoder.gate.set()
    session = _session(decode=decoder)
    list(session.analyze_batch(scenario_frames))
    calls = len(decoder.calls)

    circular = session.set_normalization_params(NormalizationParams("circular", 2))

    assert len(decoder.calls) == calls
    assert (circular.width, circular.height) == (4, 6)
    assert session.raster is circular
    assert session.params == NormalizationParams("circular", 2)

    again = session.set_normalization_params(NormalizationParams("circular", 2))
    assert again.tobytes() == circular.tobytes()


def test_logarithmic_with_non_positive_values_leaves_raster_unchanged():
    session = _session()
    list(session.analyze_batch([frame_bytes([0, 1, 2]), frame_bytes([3, 4, 5])]))
    before = session.raster.copy()

    with pytest.raises(DegenerateRangeError):
        session.set_normalization_params(NormalizationParams("logarithmic", 1))

    assert session.raster == before
    assert session.params.transform == "linear"


def test_initial_logarithmic_falls_back_to_linear_when_range_is_degenerate():
    session = _session(params=NormalizationParams("logarithmic", 1))

    complete = list(session.analyze_batch([frame_bytes([0, 1]), frame_bytes([2, 3])]))[-1]

    assert complete.raster is not None
    assert (complete.transform, complete.fallback_from) == ("linear", "logarithmic")
    assert session.params.transform == "linear"


def test_params_set_mid_batch_apply_to_final_pass(scenario_frames):
    session = _session(parallelism=1)
    stream = session.analyze_batch(scenario_frames)
    next(stream)

    assert session.set_normalization_params(NormalizationParams("linear", 2)) is None
    complete = list(stream)[-1]

    assert complete.raster.height == 6


def test_decode_failure_leaves_row_blank(scenario_frames):
    session = _session()
    batch = [scenario_frames[0], b"corrupt", scenario_frames[2]]

    events = list(session.analyze_batch(batch))

    failures = [e for e in events if isinstance(e, FrameFailure)]
    assert [f.index for f in failures] == [1]
    complete = events[-1]
    assert (complete.completed, complete.failed) == (2, 1)
    assert np.all(complete.raster.pixels[1] == 0)
    assert np.all(complete.raster.pixels[[0, 2], :, 3] == 255)


def test_batch_with_no_decodable_frame_completes_without_raster():
    session = _session()

    complete = list(session.analyze_batch([b"x", b"y"]))[-1]

    assert complete.raster is None
    assert session.set_normalization_params(NormalizationParams("circular", 1)) is None


def test_dimension_mismatch_aborts_batch():
    session = _session(parallelism=1)
    batch = [frame_bytes([1, 2, 3, 4]), frame_bytes([1, 2, 3]), frame_bytes([5, 6, 7, 8])]

    with pytest.raises(DimensionMismatchError) as info:
        list(session.analyze_batch(batch))

    assert info.value.index == 1
    assert session.run.is_cancelled
    assert not session.is_complete
    assert session.poll() == []


def test_empty_batch_is_rejected():
    session = _session()
    with pytest.raises(EmptyBatchError):
        session.analyze_batch([])
    assert session.runtime.current is None


def test_new_batch_supersedes_stream_in_flight():
    a_frames = [frame_bytes([100 + i, 1]) for i in range(5)]
    b_frames = [frame_bytes([200 + i, 1]) for i in range(3)]
    decoder = GatedDecoder(blocked={a_frames[2]})
    session = _session(parallelism=1, decode=decoder)

    stream_a = session.analyze_batch(a_frames)
    assert [next(stream_a).index, next(stream_a).index] == [0, 1]
    assert decoder.parked.wait(timeout=10)

    stream_b = session.analyze_batch(b_frames)
    decoder.gate.set()
    events_b = list(stream_b)

    assert list(stream_a) == []
    results_b = [e for e in events_b if isinstance(e, PartialResult)]
    assert sorted(r.index for r in results_b) == [0, 1, 2]
    assert all(r.raw[0] >= 200 for r in results_b)
    assert (session.raster.width, session.raster.height) == (2, 3)
    assert session.buffer.frame_count == 3


def test_poll_drives_batch_to_completion(scenario_frames):
    session = _session()
    session.start_batch(scenario_frames)

    events = []
    for _ in range(1000):
        events.extend(session.poll())
        if session.is_complete:
            break
        time.sleep(0.01)

    assert isinstance(events[-1], BatchComplete)
    assert sum(isinstance(e, PartialResult) for e in events) == 3
    assert session.poll() == []


def test_render_single_matches_frame_size():
    session = _session()
    pixels = np.arange(12, dtype=np.int32).reshape(3, 4)

    raster = session.render_single(encode_frame(pixels))

    assert (raster.width, raster.height) == (4, 3)
    assert tuple(raster.pixels[0, 0]) == (255, 255, 255, 255)
    assert tuple(raster.pixels[2, 3]) == (0, 0, 0, 255)
    assert session.raster is None


def test_read_handle_accepts_bytes_paths_and_streams(tmp_path):
    payload = frame_bytes([1, 2])
    path = tmp_path / "frame.npy"
    path.write_bytes(payload)

    assert read_handle(payload) == payload
    assert read_handle(bytearray(payload)) == payload
    assert read_handle(path) == payload
    assert read_handle(str(path)) == payload
    assert read_handle(io.BytesIO(payload)) == payload
    with pytest.raises(TypeError):
        read_handle(42)


def test_simulated_batch_with_radial_reducer():
    session = AnalysisSession(
        reducer_factory=lambda: RadialAverageReducer(intensity_sample_count=64),
        params=NormalizationParams("circular", 2),
        available_parallelism=3,
    )
    frames = Simulator(frame_size=32, seed=1).generate_batch(5)

    complete = list(session.analyze_batch(frames))[-1]

    assert (complete.completed, complete.failed) == (5, 0)
    assert (complete.raster.width, complete.raster.height) == (16, 10)
    assert np.all(complete.raster.pixels[..., 3] == 255)
    summary = session.summary
    assert summary.delivered_frames == 5


def test_frame_with_nan_is_skipped_without_losing_the_batch():
    session = _session()
    batch = [frame_bytes([1, 2, 3]), frame_bytes([float("nan"), 5, 6]), frame_bytes([7, 8, 9])]

    events = list(session.analyze_batch(batch))

    assert [e.index for e in events if isinstance(e, FrameFailure)] == [1]
    complete = events[-1]
    assert isinstance(complete, BatchComplete)
    assert (complete.completed, complete.failed) == (2, 1)
    assert np.all(complete.raster.pixels[1] == 0)
    assert tuple(complete.raster.pixels[2, 2]) == (0, 0, 0, 255)
    assert session.params.transform == "linear"
    assert session.error is None


def test_radial_reducer_ignores_nan_pixel():
    frames = []
    for i in range(3):
        pixels = np.full((16, 16), 10.0 + i)
        pixels[8, 8] = np.nan
        frames.append(encode_frame(pixels))
    session = AnalysisSession(
        reducer_factory=lambda: RadialAverageReducer(intensity_sample_count=16),
        available_parallelism=2,
    )

    complete = list(session.analyze_batch(frames))[-1]

    assert (complete.completed, complete.failed) == (3, 0)
    assert np.isfinite(session.buffer.values()).all()


def test_aborted_batch_is_not_polled_again():
    session = _session(parallelism=1)
    session.start_batch([frame_bytes([1, 2]), frame_bytes([1, 2, 3])])

    with pytest.raises(DimensionMismatchError):
        for _ in range(1000):
            session.poll()
            time.sleep(0.01)

    assert isinstance(session.error, DimensionMismatchError)
    assert session.poll() == []
    assert not session.is_complete
