"""Tests for sample kinds, reducers and pyramid downsampling."""

from __future__ import annotations

import numpy as np
import pytest

from terraprep.core.samples import (
    ConstantReducer,
    MaxReducer,
    MeanReducer,
    MinReducer,
    SampleKind,
    downsample,
    get_reducer,
)


class TestSampleKind:
    """Tests for the closed set of sample types."""

    @pytest.mark.parametrize(
        "kind, dtype, vips_format, width",
        [
            (SampleKind.UINT8, np.uint8, "uchar", 1),
            (SampleKind.INT16, np.int16, "short", 2),
            (SampleKind.FLOAT32, np.float32, "float", 4),
        ],
        ids=["uint8", "int16", "float32"],
    )
    def test_properties(self, kind, dtype, vips_format, width):
        assert kind.dtype == np.dtype(dtype)
        assert kind.vips_format == vips_format
        assert kind.byte_width == width
        assert kind.zero == 0

    def test_from_dtype(self):
        assert SampleKind.from_dtype("int16") is SampleKind.INT16
        with pytest.raises(ValueError):
            SampleKind.from_dtype(np.float64)

    @pytest.mark.parametrize(
        "kind, value",
        [
            (SampleKind.UINT8, -1),
            (SampleKind.UINT8, 256),
            (SampleKind.INT16, 40000),
            (SampleKind.INT16, 1.5),
            (SampleKind.INT16, float("nan")),
        ],
        ids=["uint8-negative", "uint8-large", "int16-large", "int16-fraction", "int16-nan"],
    )
    def test_cast_rejects_unrepresentable(self, kind, value):
        with pytest.raises(ValueError):
            kind.cast(value)

    def test_cast_float_accepts_nan(self):
        assert np.isnan(SampleKind.FLOAT32.cast(float("nan")))

    def test_cast_returns_numpy_scalar(self):
        value = SampleKind.INT16.cast(-1.0)
        assert value.dtype == np.int16
        assert value == -1

    def test_is_uniform(self):
        kind = SampleKind.INT16
        assert kind.is_uniform(np.full((4, 4), 7, dtype=np.int16))
        assert not kind.is_uniform(np.arange(16, dtype=np.int16).reshape(4, 4))

    def test_is_uniform_with_nan(self):
        kind = SampleKind.FLOAT32
        assert kind.is_uniform(np.full((3, 3), np.nan, dtype=np.float32))
        mixed = np.full((3, 3), np.nan, dtype=np.float32)
        mixed[1, 1] = 2.0
        assert not kind.is_uniform(mixed)

    def test_matches_treats_nan_as_equal(self):
        values = np.array([np.nan, 1.0, np.nan], dtype=np.float32)
        np.testing.assert_array_equal(
            SampleKind.FLOAT32.matches(values, np.float32(np.nan)), [True, False, True]
        )
        np.testing.assert_array_equal(
            SampleKind.INT16.matches(np.array([0, -1], dtype=np.int16), -1), [False, True]
        )


class TestReducers:
    """Tests for the 2x2 reducer strategies."""

    @pytest.fixture
    def quad(self):
        return tuple(np.array([[v]], dtype=np.int16) for v in (1, 2, 3, 5))

    def test_mean_truncates_integers(self, quad):
        assert MeanReducer().reduce(*quad)[0, 0] == 2
        negative = tuple(-q for q in quad)
        assert MeanReducer().reduce(*negative)[0, 0] == -2

    def test_mean_floats(self):
        quad = [np.array([[v]], dtype=np.float32) for v in (1.0, 2.0, 3.0, 5.0)]
        result = MeanReducer().reduce(*quad)
        assert result.dtype == np.float32
        assert result[0, 0] == pytest.approx(2.75)

    def test_mean_does_not_overflow(self):
        quad = [np.array([[250]], dtype=np.uint8)] * 4
        assert MeanReducer().reduce(*quad)[0, 0] == 250

    def test_min_max(self, quad):
        assert MinReducer().reduce(*quad)[0, 0] == 1
        assert MaxReducer().reduce(*quad)[0, 0] == 5

    def test_constant(self, quad):
        result = ConstantReducer(9).reduce(*quad)
        assert result[0, 0] == 9
        assert result.dtype == np.int16

    @pytest.mark.parametrize("name", ["mean", "min", "max", "zero"])
    def test_lookup_by_name(self, name):
        assert get_reducer(name).name == name

    def test_unknown_reducer(self):
        with pytest.raises(ValueError, match="median"):
            get_reducer("median")


class TestDownsample:
    """Tests for halving pyramid levels."""

    def test_grid_keeps_every_other_sample(self):
        level = np.arange(81, dtype=np.int16).reshape(9, 9)
        result = downsample(level, grid_registration=True)
        assert result.shape == (5, 5)
        np.testing.assert_array_equal(result, level[::2, ::2])
        assert result.flags["C_CONTIGUOUS"]

    def test_cell_reduces_blocks(self):
        level = np.arange(64, dtype=np.int16).reshape(8, 8)
        result = downsample(level, grid_registration=False, reducer=MaxReducer())
        assert result.shape == (4, 4)
        np.testing.assert_array_equal(result, level[1::2, 1::2])

    def test_cell_block_order(self):
        """Reducers receive top-left, bottom-left, top-right, bottom-right."""
        seen = []

        class Recorder(MinReducer):
            def reduce(self, top_left, bottom_left, top_right, bottom_right):
                seen.extend(int(a[0, 0]) for a in (top_left, bottom_left, top_right, bottom_right))
                return top_left

        level = np.array([[1, 2], [3, 4]], dtype=np.int16)
        downsample(level, grid_registration=False, reducer=Recorder())
        assert seen == [1, 3, 2, 4]

    def test_cell_requires_reducer(self):
        with pytest.raises(ValueError):
            downsample(np.zeros((4, 4), dtype=np.int16), grid_registration=False)
