"""Vector and voxel-grid helpers shared by the centerline extractors.

Positions are (x, y, z) integer tuples, vectors are numpy arrays in the
same (x, y, z) order. Volumes are indexed [z, y, x].
"""
import itertools
from typing import Tuple

import numpy as np

Position = Tuple[int, int, int]


def normalize(vector) -> np.ndarray:
    """Return a unit vector, or the input unchanged if its length is zero."""
    vector = np.asarray(vector, dtype=np.float64)
    length = np.linalg.norm(vector)
    if length == 0:
        return vector
    return vector / length


def sign(value: float) -> float:
    return -1.0 if value < 0 else 1.0


def round_half_away(values) -> np.ndarray:
    """Round to the nearest integer with halves rounded away from zero.

    numpy rounds halves to even, which would move sample points along a
    segment onto different voxels.
    """
    values = np.asarray(values, dtype=np.float64)
    return (np.sign(values) * np.floor(np.abs(values) + 0.5)).astype(np.int64)


def near_boundary(position, size, margin: int) -> bool:
    """True if any coordinate is closer than margin to a grid face."""
    return any(p < margin or p > s - margin for p, s in zip(position, size))


def voxel(volume: np.ndarray, position: Position):
    x, y, z = position
    return volume[z, y, x]


def _neighborhood_26():
    offsets = []
    for a, b, c in itertools.product((-1, 0, 1), repeat=3):
        if a == 0 and b == 0 and c == 0:
            continue
        offsets.append(((a, b, c), normalize((a, b, c))))
    return tuple(offsets)


# (offset, unit offset) pairs, x offset varying slowest
NEIGHBORHOOD_26 = _neighborhood_26()
