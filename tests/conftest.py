"""
Pytest fixtures for tube_centerlines tests.

Builds synthetic tube fields: straight axis-aligned tube segments whose
vector field points away from the nearest axis voxel, so |F| vanishes on
the axis and grows towards the tube wall.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from tube_centerlines.data_structures import TubeFields

GRID_SHAPE = (20, 20, 20)
TUBE_RADIUS = 2.0

# Axis along x at y = z = 10, x = 3..16
MAIN_AXIS = ((3, 10, 10), (16, 10, 10))
# Branch along y at x = z = 10, y = 11..16, joining the main axis at (10, 10, 10)
BRANCH_AXIS = ((10, 11, 10), (10, 16, 10))


def build_tube_fields(segments, shape=GRID_SHAPE, radius=TUBE_RADIUS):
    """
    Build fields for a set of straight tube segments.

    Args:
        segments: List of (start, end, confidence) with inclusive (x, y, z) end points
        shape: Grid shape (z, y, x)
        radius: Tube radius in voxels

    Returns:
        TubeFields: TDF equals the confidence on axis voxels and 0 elsewhere;
        inside a tube F = offset / radius, outside F is the unit offset.
    """
    zz, yy, xx = np.indices(shape, dtype=np.float64)
    coords = np.stack([xx, yy, zz], axis=-1)

    best_distance = np.full(shape, np.inf)
    best_offset = np.zeros(shape + (3,))
    tdf = np.zeros(shape, dtype=np.float32)

    for start, end, confidence in segments:
        a = np.array(start, dtype=np.float64)
        b = np.array(end, dtype=np.float64)
        ab = b - a
        t = np.clip(((coords - a) @ ab) / (ab @ ab), 0.0, 1.0)
        offset = coords - (a + t[..., None] * ab)
        distance = np.linalg.norm(offset, axis=-1)

        closer = distance < best_distance
        best_distance[closer] = distance[closer]
        best_offset[closer] = offset[closer]
        tdf[distance == 0] = confidence

    inside = best_distance <= radius
    scale = np.where(inside, radius, np.maximum(best_distance, 1e-12))
    vectors = best_offset / scale[..., None]
    radius_field = np.where(inside, radius, 0.0)

    return TubeFields(vectors[..., 0], vectors[..., 1], vectors[..., 2], tdf, radius_field)


@pytest.fixture
def straight_tube():
    """
    Single tube along x through the center of a 20^3 grid.

    Returns:
        TubeFields: Axis voxels (3..16, 10, 10) with TDF 0.9
    """
    return build_tube_fields([(MAIN_AXIS[0], MAIN_AXIS[1], 0.9)])


@pytest.fixture
def t_junction():
    """
    Main tube along x with a weaker branch along y meeting it at (10, 10, 10).

    Returns:
        TubeFields: Main axis with TDF 0.9, branch axis (10, 11..16, 10) with TDF 0.8
    """
    return build_tube_fields([
        (MAIN_AXIS[0], MAIN_AXIS[1], 0.9),
        (BRANCH_AXIS[0], BRANCH_AXIS[1], 0.8),
    ])


@pytest.fixture
def empty_fields():
    """Fields with zero TDF and zero vector field everywhere."""
    zeros = np.zeros(GRID_SHAPE, dtype=np.float32)
    return TubeFields(zeros, zeros, zeros, zeros, zeros)


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(12345)


def axis_voxels(start, end):
    """Inclusive list of (x, y, z) voxels on an axis-aligned segment."""
    start = np.array(start)
    end = np.array(end)
    steps = int(np.max(np.abs(end - start)))
    direction = (end - start) // max(steps, 1)
    return [tuple(int(v) for v in start + i * direction) for i in range(steps + 1)]
