"""Sample kinds and 2x2 reducers used to build cell-registered pyramids."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

import numpy as np


class SampleKind(Enum):
    """Numeric type of a dataset's samples, chosen once per dataset."""

    UINT8 = "uint8"
    INT16 = "int16"
    FLOAT32 = "float32"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @property
    def vips_format(self) -> str:
        """libvips band format name."""
        return _VIPS_FORMATS[self]

    @property
    def byte_width(self) -> int:
        return self.dtype.itemsize

    @property
    def zero(self):
        return self.dtype.type(0)

    @property
    def is_float(self) -> bool:
        return self is SampleKind.FLOAT32

    def cast(self, value) -> np.generic:
        """Convert a scalar (e.g. a CLI no-data value) to this kind."""
        if not self.is_float:
            info = np.iinfo(self.dtype)
            if not info.min <= value <= info.max or value != int(value):
                raise ValueError(f"{value!r} is not representable as {self.value}")
        return self.dtype.type(value)

    def is_uniform(self, values: np.ndarray) -> bool:
        """True if every sample has the same value."""
        if values.size == 0:
            return True
        lo = values.min()
        hi = values.max()
        if self.is_float and np.isnan(lo):
            return bool(np.all(np.isnan(values)))
        return bool(lo == hi)

    def matches(self, values: np.ndarray, sentinel) -> np.ndarray:
        """Elementwise ``values == sentinel``, treating NaN as equal to NaN."""
        if self.is_float and np.isnan(sentinel):
            return np.isnan(values)
        return values == sentinel

    @classmethod
    def from_dtype(cls, dtype) -> SampleKind:
        dtype = np.dtype(dtype)
        for kind in cls:
            if kind.dtype == dtype:
                return kind
        raise ValueError(f"unsupported sample dtype {dtype}")


_VIPS_FORMATS: dict[SampleKind, str] = {
    SampleKind.UINT8: "uchar",
    SampleKind.INT16: "short",
    SampleKind.FLOAT32: "float",
}


class Reducer(ABC):
    """Combines each 2x2 block of a cell-registered level into one sample.

    Arguments are the top-left, bottom-left, top-right and bottom-right
    samples of every block, as equally shaped arrays.
    """

    name: str = ""

    @abstractmethod
    def reduce(
        self,
        top_left: np.ndarray,
        bottom_left: np.ndarray,
        top_right: np.ndarray,
        bottom_right: np.ndarray,
    ) -> np.ndarray:
        """Return one sample per block, in the inputs' dtype."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class MeanReducer(Reducer):
    """Average of the block; integer kinds round toward zero."""

    name = "mean"

    def reduce(self, top_left, bottom_left, top_right, bottom_right):
        dtype = top_left.dtype
        if np.issubdtype(dtype, np.floating):
            total = (
                top_left.astype(np.float64)
                + bottom_left
                + top_right
                + bottom_right
            )
            return (total / 4).astype(dtype)
        total = (
            top_left.astype(np.int64)
            + bottom_left
            + top_right
            + bottom_right
        )
        return np.trunc(total / 4).astype(dtype)


class MinReducer(Reducer):
    name = "min"

    def reduce(self, top_left, bottom_left, top_right, bottom_right):
        return np.minimum(
            np.minimum(top_left, bottom_left), np.minimum(top_right, bottom_right)
        )


class MaxReducer(Reducer):
    name = "max"

    def reduce(self, top_left, bottom_left, top_right, bottom_right):
        return np.maximum(
            np.maximum(top_left, bottom_left), np.maximum(top_right, bottom_right)
        )


class ConstantReducer(Reducer):
    """Replaces every block with a fixed value (coarse levels left blank)."""

    name = "zero"

    def __init__(self, value=0) -> None:
        self.value = value

    def reduce(self, top_left, bottom_left, top_right, bottom_right):
        return np.full(top_left.shape, self.value, dtype=top_left.dtype)

    def __repr__(self) -> str:
        return f"ConstantReducer({self.value!r})"


REDUCERS: dict[str, type[Reducer]] = {
    MeanReducer.name: MeanReducer,
    MinReducer.name: MinReducer,
    MaxReducer.name: MaxReducer,
    ConstantReducer.name: ConstantReducer,
}


def get_reducer(name: str) -> Reducer:
    """Instantiate a reducer by name (``mean``, ``min``, ``max``, ``zero``)."""
    try:
        return REDUCERS[name]()
    except KeyError:
        raise ValueError(
            f"unknown reducer {name!r}, expected one of {sorted(REDUCERS)}"
        ) from None


def downsample(
    level: np.ndarray, grid_registration: bool, reducer: Reducer | None = None
) -> np.ndarray:
    """Halve a square pyramid level.

    Grid-registered levels keep every other sample (``(r - 1) // 2 + 1`` per
    side) so shared borders stay aligned; cell-registered levels pass each 2x2
    block through ``reducer`` (``r // 2`` per side).
    """
    if grid_registration:
        return np.ascontiguousarray(level[::2, ::2])
    if reducer is None:
        raise ValueError("cell-registered datasets need a reducer")
    half = level.shape[0] // 2
    block = level[: half * 2, : half * 2]
    return np.ascontiguousarray(
        reducer.reduce(
            block[0::2, 0::2],
            block[1::2, 0::2],
            block[0::2, 1::2],
            block[1::2, 1::2],
        )
    )
