"""Eigen decomposition of small symmetric matrices.

Householder reduction to tridiagonal form followed by the implicit QL
algorithm, as in the EISPACK routines tred2 and tql2 (via JAMA). The
structure matrices here are 3x3 and are decomposed once per visited voxel,
so the work is done on plain Python floats rather than through LAPACK.
Double precision is deliberate: the QL iteration converges against EPS = 2**-52.
"""
import math
from typing import List, Tuple

import numpy as np

EPS = 2.0 ** -52


def tred2(V: List[List[float]], d: List[float], e: List[float]) -> None:
    """Reduce V in place to tridiagonal form, accumulating the transformations

    Args:
        V: Symmetric matrix on input, orthogonal transformation on output
        d: Receives the diagonal
        e: Receives the subdiagonal in e[1:]
    """
    n = len(d)
    for j in range(n):
        d[j] = V[n - 1][j]

    for i in range(n - 1, 0, -1):
        scale = 0.0
        h = 0.0
        for k in range(i):
            scale += abs(d[k])
        if scale == 0.0:
            e[i] = d[i - 1]
            for j in range(i):
                d[j] = V[i - 1][j]
                V[i][j] = 0.0
                V[j][i] = 0.0
        else:
            # Generate Householder vector
            for k in range(i):
                d[k] /= scale
                h += d[k] * d[k]
            f = d[i - 1]
            g = math.sqrt(h)
            if f > 0:
                g = -g
            e[i] = scale * g
            h -= f * g
            d[i - 1] = f - g
            for j in range(i):
                e[j] = 0.0

            # Apply similarity transformation to remaining columns
            for j in range(i):
                f = d[j]
                V[j][i] = f
                g = e[j] + V[j][j] * f
                for k in range(j + 1, i):
                    g += V[k][j] * d[k]
                    e[k] += V[k][j] * f
                e[j] = g
            f = 0.0
            for j in range(i):
                e[j] /= h
                f += e[j] * d[j]
            hh = f / (h + h)
            for j in range(i):
                e[j] -= hh * d[j]
            for j in range(i):
                f = d[j]
                g = e[j]
                for k in range(j, i):
                    V[k][j] -= (f * e[k] + g * d[k])
                d[j] = V[i - 1][j]
                V[i][j] = 0.0
        d[i] = h

    # Accumulate transformations
    for i in range(n - 1):
        V[n - 1][i] = V[i][i]
        V[i][i] = 1.0
        h = d[i + 1]
        if h != 0.0:
            for k in range(i + 1):
                d[k] = V[k][i + 1] / h
            for j in range(i + 1):
                g = 0.0
                for k in range(i + 1):
                    g += V[k][i + 1] * V[k][j]
                for k in range(i + 1):
                    V[k][j] -= g * d[k]
        for k in range(i + 1):
            V[k][i + 1] = 0.0
    for j in range(n):
        d[j] = V[n - 1][j]
        V[n - 1][j] = 0.0
    V[n - 1][n - 1] = 1.0
    e[0] = 0.0


def tql2(V: List[List[float]], d: List[float], e: List[float]) -> None:
    """Diagonalize the tridiagonal matrix (d, e) in place, rotating V along"""
    n = len(d)
    for i in range(1, n):
        e[i - 1] = e[i]
    e[n - 1] = 0.0

    f = 0.0
    tst1 = 0.0
    for l in range(n):
        # Find small subdiagonal element
        tst1 = max(tst1, abs(d[l]) + abs(e[l]))
        m = l
        while m < n - 1:
            if abs(e[m]) <= EPS * tst1:
                break
            m += 1

        # If m == l, d[l] is already an eigenvalue, otherwise iterate
        if m > l:
            while True:
                # Compute implicit shift
                g = d[l]
                p = (d[l + 1] - g) / (2.0 * e[l])
                r = math.hypot(p, 1.0)
                if p < 0:
                    r = -r
                d[l] = e[l] / (p + r)
                d[l + 1] = e[l] * (p + r)
                dl1 = d[l + 1]
                h = g - d[l]
                for i in range(l + 2, n):
                    d[i] -= h
                f += h

                # Implicit QL transformation
                p = d[m]
                c = c2 = c3 = 1.0
                el1 = e[l + 1]
                s = s2 = 0.0
                for i in range(m - 1, l - 1, -1):
                    c3 = c2
                    c2 = c
                    s2 = s
                    g = c * e[i]
                    h = c * p
                    r = math.hypot(p, e[i])
                    e[i + 1] = s * r
                    s = e[i] / r
                    c = p / r
                    p = c * d[i] - s * g
                    d[i + 1] = h + s * (c * g + s * d[i])
                    for k in range(n):
                        h = V[k][i + 1]
                        V[k][i + 1] = s * V[k][i] + c * h
                        V[k][i] = c * V[k][i] - s * h
                p = -s * s2 * c3 * el1 * e[l] / dl1
                e[l] = s * p
                d[l] = c * p

                if not abs(e[l]) > EPS * tst1:
                    break
        d[l] += f
        e[l] = 0.0


def _sort_by_magnitude(V: List[List[float]], d: List[float]) -> None:
    """Selection sort of eigenvalues by ascending |d|, permuting columns of V"""
    n = len(d)
    for i in range(n - 1):
        k = i
        p = d[i]
        for j in range(i + 1, n):
            if abs(d[j]) < abs(p):
                k = j
                p = d[j]
        if k != i:
            d[k] = d[i]
            d[i] = p
            for j in range(n):
                V[j][i], V[j][k] = V[j][k], V[j][i]


def eigen_decomposition(A) -> Tuple[np.ndarray, np.ndarray]:
    """Eigenvalues and eigenvectors of a real symmetric matrix

    Args:
        A: Symmetric n x n matrix (symmetry is assumed, not checked)

    Returns:
        Tuple of (d, V): eigenvalues sorted by ascending magnitude and the
        orthonormal matrix whose column V[:, i] belongs to d[i]
    """
    V = [[float(value) for value in row] for row in np.asarray(A)]
    n = len(V)
    d = [0.0] * n
    e = [0.0] * n
    tred2(V, d, e)
    tql2(V, d, e)
    _sort_by_magnitude(V, d)
    return np.array(d), np.array(V)
