"""Two-view geometry: normalisation, homography, fundamental matrix, triangulation."""

from __future__ import annotations

import numpy as np


def _coords(points) -> np.ndarray:
    """An N x 2 array from keypoints with ``pt`` or from ``(x, y)`` pairs."""
    items = list(points)
    if items and hasattr(items[0], "pt"):
        items = [item.pt for item in items]
    return np.asarray(items, dtype=np.float64).reshape(-1, 2)


def _point(p) -> tuple[float, float]:
    if hasattr(p, "pt"):
        p = p.pt
    x, y = p
    return float(x), float(y)


def normalize(points) -> tuple[np.ndarray, np.ndarray]:
    """Centre the points and scale them to unit mean absolute deviation per axis.

    Returns the normalised N x 2 points and the 3 x 3 transform ``T`` that
    maps homogeneous input points to them.
    """
    coords = _coords(points)
    if len(coords) == 0:
        raise ValueError("cannot normalize an empty set of points")
    mean = coords.mean(axis=0)
    centred = coords - mean
    deviation = np.abs(centred).mean(axis=0)
    if np.any(deviation == 0):
        raise ValueError("points have no spread along one axis")
    scale = 1.0 / deviation
    normalized = centred * scale

    transform = np.eye(3)
    transform[0, 0] = scale[0]
    transform[1, 1] = scale[1]
    transform[0, 2] = -mean[0] * scale[0]
    transform[1, 2] = -mean[1] * scale[1]
    return normalized, transform


def compute_h21(points1, points2) -> np.ndarray:
    """Homography taking ``points1`` to ``points2`` by the direct linear transform."""
    p1 = _coords(points1)
    p2 = _coords(points2)
    if len(p1) != len(p2):
        raise ValueError("point sets must have the same length")
    rows = []
    for (u1, v1), (u2, v2) in zip(p1, p2):
        rows.append([0.0, 0.0, 0.0, -u1, -v1, -1.0, v2 * u1, v2 * v1, v2])
        rows.append([u1, v1, 1.0, 0.0, 0.0, 0.0, -u2 * u1, -u2 * v1, -u2])
    _, _, vt = np.linalg.svd(np.array(rows), full_matrices=True)
    return vt[8].reshape(3, 3)


def compute_f21(points1, points2) -> np.ndarray:
    """Rank-2 fundamental matrix with ``x2^T F x1 = 0`` by the eight-point method."""
    p1 = _coords(points1)
    p2 = _coords(points2)
    if len(p1) != len(p2):
        raise ValueError("point sets must have the same length")
    rows = [
        [u2 * u1, u2 * v1, u2, v2 * u1, v2 * v1, v2, u1, v1, 1.0]
        for (u1, v1), (u2, v2) in zip(p1, p2)
    ]
    _, _, vt = np.linalg.svd(np.array(rows), full_matrices=True)
    f_pre = vt[8].reshape(3, 3)

    u, w, vt = np.linalg.svd(f_pre)
    w[2] = 0.0
    return u @ np.diag(w) @ vt


def triangulate(point1, point2, projection1, projection2) -> np.ndarray:
    """3-D point seen at ``point1`` and ``point2`` through two 3 x 4 projections.

    A point at infinity gives non-finite coordinates.
    """
    x1, y1 = _point(point1)
    x2, y2 = _point(point2)
    p1 = np.asarray(projection1, dtype=np.float64).reshape(3, 4)
    p2 = np.asarray(projection2, dtype=np.float64).reshape(3, 4)
    a = np.vstack(
        [
            x1 * p1[2] - p1[0],
            y1 * p1[2] - p1[1],
            x2 * p2[2] - p2[0],
            y2 * p2[2] - p2[1],
        ]
    )
    _, _, vt = np.linalg.svd(a)
    homogeneous = vt[3]
    with np.errstate(divide="ignore", invalid="ignore"):
        return homogeneous[:3] / homogeneous[3]


def decompose_e(essential) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """The two rotations and the unit translation (up to sign) of an essential matrix."""
    u, _, vt = np.linalg.svd(np.asarray(essential, dtype=np.float64).reshape(3, 3))
    t = u[:, 2] / np.linalg.norm(u[:, 2])

    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    if np.linalg.det(r1) < 0:
        r1 = -r1
    r2 = u @ w.T @ vt
    if np.linalg.det(r2) < 0:
        r2 = -r2
    return r1, r2, t