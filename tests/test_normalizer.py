import numpy as np
import pytest

from conftest import partial_result

from buffer import AccumulationBuffer
from errors import DegenerateRangeError, IncompleteBufferError
from normalizer import apply_transform, normalize, to_intensity, value_range
from pipeline.types import NormalizationParams


def _filled_buffer(rows, failed=()):
    buffer = AccumulationBuffer(len(rows))
    for index, row in enumerate(rows):
        if index in failed:
            buffer.mark_failed(index)
        else:
            buffer.add(partial_result(index, row))
    return buffer


def test_linear_scenario_maps_extremes_to_white_and_black():
    buffer = _filled_buffer([[1, 2, 3, 4], [5, 6, 7, 8], [9, 10, 11, 12]])

    assert value_range(buffer.values()) == (1.0, 12.0)

    raster = normalize(buffer, NormalizationParams("linear", 1))
    assert (raster.width, raster.height) == (4, 3)
    assert tuple(raster.pixels[0, 0]) == (255, 255, 255, 255)
    assert tuple(raster.pixels[2, 3]) == (0, 0, 0, 255)
    # Intensity decreases monotonically along the flattened buffer
    gray = raster.pixels[..., 0].reshape(-1).astype(int)
    assert np.all(np.diff(gray) <= 0)


def test_normalize_is_idempotent():
    buffer = _filled_buffer([[3, 1, 4, 1], [5, 9, 2, 6]])
    params = NormalizationParams("circular", 3)

    first = normalize(buffer, params)
    second = normalize(buffer, params)

    assert first.tobytes() == second.tobytes()


def test_degenerate_range_renders_uniform_white():
    buffer = _filled_buffer([[7, 7, 7], [7, 7, 7]])

    for transform in ("linear", "circular", "logarithmic"):
        raster = normalize(buffer, NormalizationParams(transform, 1))
        assert np.all(raster.pixels[..., :3] == 255)
        assert np.all(raster.pixels[..., 3] == 255)


def test_row_duplication_replicates_each_logical_row():
    buffer = _filled_buffer([[1, 2], [3, 4], [5, 6]])

    raster = normalize(buffer, NormalizationParams("linear", 4))

    assert (raster.width, raster.height) == (2, 12)
    assert raster.stride == 8
    for logical in range(3):
        block = raster.pixels[logical * 4:(logical + 1) * 4]
        assert np.all(block == block[0])
    assert not np.array_equal(raster.pixels[0], raster.pixels[4])


def test_circular_transform_values():
    out = apply_transform(np.array([0.0, 1.0, 2.0]), 0.0, 2.0, "circular")
    np.testing.assert_allclose(out, [0.0, np.sqrt(0.75), 1.0])


def test_logarithmic_transform_values():
    out = apply_transform(np.array([1.0, 10.0, 100.0]), 1.0, 100.0, "logarithmic")
    np.testing.assert_allclose(out, [0.0, 0.5, 1.0])


def test_logarithmic_rejects_non_positive_minimum():
    buffer = _filled_buffer([[0, 1, 2], [3, 4, 5]])

    with pytest.raises(DegenerateRangeError):
        normalize(buffer, NormalizationParams("logarithmic", 1))


def test_to_intensity_inverts():
    assert list(to_intensity(np.array([0.0, 1.0, 0.2]))) == [255, 0, 204]


def test_failed_rows_stay_blank_and_are_excluded_from_range():
    buffer = _filled_buffer([[10, 20], [1000, 1000], [30, 40]], failed={1})

    raster = normalize(buffer, NormalizationParams("linear", 1))

    assert np.all(raster.pixels[1] == 0)
    assert tuple(raster.pixels[0, 0]) == (255, 255, 255, 255)
    assert tuple(raster.pixels[2, 1]) == (0, 0, 0, 255)


def test_normalize_requires_complete_buffer():
    buffer = AccumulationBuffer(2)
    buffer.add(partial_result(0, [1, 2]))

    with pytest.raises(IncompleteBufferError):
        normalize(buffer, NormalizationParams())


def test_normalize_requires_at_least_one_decoded_frame():
    buffer = AccumulationBuffer(2)
    buffer.mark_failed(0)
    buffer.mark_failed(1)

    with pytest.raises(IncompleteBufferError):
        normalize(buffer, NormalizationParams())


def test_invalid_params_are_rejected():
    buffer = _filled_buffer([[1, 2]])

    with pytest.raises(ValueError):
        normalize(buffer, NormalizationParams("gamma", 1))
    with pytest.raises(ValueError):
        normalize(buffer, NormalizationParams("linear", 0))
