from typing import NamedTuple

import numpy as np

from .data_structures import TubeFields
from .eigen import eigen_decomposition
from .geometry import Position

# Minimum distance from a grid face for direction queries
STENCIL_MARGIN = 2


class EigenFrame(NamedTuple):
    """Eigen analysis of the structure matrix at one voxel

    lambdas are sorted by ascending magnitude; e1 (the smallest) is the
    estimated tube direction, e2 and e3 span the cross-section.
    """
    lambdas: np.ndarray
    e1: np.ndarray
    e2: np.ndarray
    e3: np.ndarray


def gradient(fields: TubeFields, pos: Position, component: int,
             dimensions: int = 3) -> np.ndarray:
    """Central difference gradient of one normalized vector field component

    Args:
        fields: Input fields
        pos: (x, y, z) voxel, at least one voxel away from every face
        component: 0, 1 or 2 for Fx, Fy or Fz
        dimensions: Number of axes to differentiate along (x, then y, then z);
            the remaining entries are left at zero

    Returns:
        np.ndarray: (d/dx, d/dy, d/dz)
    """
    f = fields.normalized[component]
    x, y, z = pos
    grad = np.zeros(3)
    grad[0] = 0.5 * (float(f[z, y, x + 1]) - float(f[z, y, x - 1]))
    if dimensions > 1:
        grad[1] = 0.5 * (float(f[z, y + 1, x]) - float(f[z, y - 1, x]))
    if dimensions > 2:
        grad[2] = 0.5 * (float(f[z + 1, y, x]) - float(f[z - 1, y, x]))
    return grad


def structure_matrix(fields: TubeFields, pos: Position) -> np.ndarray:
    """Hessian-like symmetric matrix of the normalized vector field at pos

    Only the lower triangle of the Jacobian is differentiated; the upper
    triangle mirrors it so the matrix is symmetric.
    """
    fx = gradient(fields, pos, 0, 1)
    fy = gradient(fields, pos, 1, 2)
    fz = gradient(fields, pos, 2, 3)
    return np.array([
        [fx[0], fy[0], fz[0]],
        [fy[0], fy[1], fz[1]],
        [fz[0], fz[1], fz[2]],
    ])


def get_eigen_frame(fields: TubeFields, pos: Position) -> EigenFrame:
    lambdas, vectors = eigen_decomposition(structure_matrix(fields, pos))
    return EigenFrame(lambdas, vectors[:, 0], vectors[:, 1], vectors[:, 2])


def get_tube_direction(fields: TubeFields, pos: Position) -> np.ndarray:
    """Unit tube direction at pos (sign is arbitrary)"""
    return get_eigen_frame(fields, pos).e1
