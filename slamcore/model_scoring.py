"""Scoring of two-view motion models against matched keypoints."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from slamcore.two_view import triangulate

# Chi-square thresholds at 95% for one and two degrees of freedom.
CHI2_1DOF = 3.841
CHI2_2DOF = 5.991
# Rays closer than this cosine are treated as seeing a point at infinity.
MAX_COS_PARALLAX = 0.99998
# Rank in the sorted parallaxes used as the reconstruction's parallax.
PARALLAX_RANK = 50


@dataclass
class RTCheck:
    """Outcome of checking one rotation and translation hypothesis.

    ``points`` and ``good`` are indexed like the first view's keypoints;
    a point is None where no valid triangulation was found.
    """

    n_good: int
    points: list[Any]
    good: list[bool]
    parallax: float


def _coords(keys) -> np.ndarray:
    items = list(keys)
    if items and hasattr(items[0], "pt"):
        items = [item.pt for item in items]
    return np.asarray(items, dtype=np.float64).reshape(-1, 2)


def _pairs(matches) -> np.ndarray:
    return np.asarray(list(matches), dtype=np.intp).reshape(-1, 2)


def _matched(keys1, keys2, matches) -> tuple[np.ndarray, np.ndarray]:
    pairs = _pairs(matches)
    return _coords(keys1)[pairs[:, 0]], _coords(keys2)[pairs[:, 1]]


def _homogeneous(points: np.ndarray) -> np.ndarray:
    return np.column_stack([points, np.ones(len(points))])


def _transfer_error(h: np.ndarray, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    mapped = _homogeneous(src) @ h.T
    projected = mapped[:, :2] / mapped[:, 2:3]
    return ((dst - projected) ** 2).sum(axis=1)


def _score(chi1: np.ndarray, chi2: np.ndarray, threshold: float, credit: float):
    out1 = chi1 > threshold
    out2 = chi2 > threshold
    score = np.where(out1, 0.0, credit - chi1).sum() + np.where(out2, 0.0, credit - chi2).sum()
    inliers = ~(out1 | out2)
    return float(score), [bool(x) for x in inliers]


def check_homography(h21, h12, keys1, keys2, matches, sigma: float) -> tuple[float, list[bool]]:
    """Symmetric transfer score of a homography and the matches it explains.

    ``matches`` holds ``(index1, index2)`` pairs. Returns the score and one
    inlier flag per match.
    """
    h21 = np.asarray(h21, dtype=np.float64).reshape(3, 3)
    h12 = np.asarray(h12, dtype=np.float64).reshape(3, 3)
    p1, p2 = _matched(keys1, keys2, matches)
    inv_sigma2 = 1.0 / (sigma * sigma)
    with np.errstate(divide="ignore", invalid="ignore"):
        chi1 = _transfer_error(h12, p2, p1) * inv_sigma2
        chi2 = _transfer_error(h21, p1, p2) * inv_sigma2
    return _score(chi1, chi2, CHI2_2DOF, CHI2_2DOF)


def check_fundamental(f21, keys1, keys2, matches, sigma: float) -> tuple[float, list[bool]]:
    """Symmetric epipolar-distance score of a fundamental matrix.

    Returns the score and one inlier flag per ``(index1, index2)`` match.
    """
    f21 = np.asarray(f21, dtype=np.float64).reshape(3, 3)
    p1, p2 = _matched(keys1, keys2, matches)
    x1 = _homogeneous(p1)
    x2 = _homogeneous(p2)
    inv_sigma2 = 1.0 / (sigma * sigma)
    with np.errstate(divide="ignore", invalid="ignore"):
        line2 = x1 @ f21.T
        num2 = (line2 * x2).sum(axis=1)
        chi1 = num2 * num2 / (line2[:, 0] ** 2 + line2[:, 1] ** 2) * inv_sigma2
        line1 = x2 @ f21
        num1 = (line1 * x1).sum(axis=1)
        chi2 = num1 * num1 / (line1[:, 0] ** 2 + line1[:, 1] ** 2) * inv_sigma2
    return _score(chi1, chi2, CHI2_1DOF, CHI2_2DOF)


def check_rt(
    rotation,
    translation,
    keys1,
    keys2,
    matches,
    inliers: Sequence[bool],
    calibration,
    th2: float,
) -> RTCheck:
    """Triangulate the inlier matches under a motion hypothesis and count the good ones.

    A point is good when it lies in front of both cameras (unless it is
    almost at infinity) and reprojects within ``th2`` squared pixels in
    both views. The parallax is taken from the sorted parallaxes of the
    good points, in degrees.
    """
    r = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
    t = np.asarray(translation, dtype=np.float64).ravel()
    k = np.asarray(calibration, dtype=np.float64).reshape(3, 3)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]

    c1 = _coords(keys1)
    c2 = _coords(keys2)
    pairs = _pairs(matches)

    good = [False] * len(c1)
    points: list[Any] = [None] * len(c1)
    cos_parallaxes: list[float] = []

    p1 = np.hstack([k, np.zeros((3, 1))])
    p2 = k @ np.hstack([r, t[:, None]])
    o1 = np.zeros(3)
    o2 = -r.T @ t

    n_good = 0
    for (i1, i2), inlier in zip(pairs, inliers):
        if not inlier:
            continue
        kp1 = c1[i1]
        kp2 = c2[i2]
        point = triangulate(kp1, kp2, p1, p2)
        if not np.all(np.isfinite(point)):
            good[i1] = False
            continue

        normal1 = point - o1
        normal2 = point - o2
        cos_parallax = float(normal1 @ normal2 / (np.linalg.norm(normal1) * np.linalg.norm(normal2)))

        if point[2] <= 0 and cos_parallax < MAX_COS_PARALLAX:
            continue
        point2 = r @ point + t
        if point2[2] <= 0 and cos_parallax < MAX_COS_PARALLAX:
            continue

        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z1 = np.float64(1.0) / point[2]
            err1 = (fx * point[0] * inv_z1 + cx - kp1[0]) ** 2 + (fy * point[1] * inv_z1 + cy - kp1[1]) ** 2
            if err1 > th2:
                continue
            inv_z2 = np.float64(1.0) / point2[2]
            err2 = (fx * point2[0] * inv_z2 + cx - kp2[0]) ** 2 + (fy * point2[1] * inv_z2 + cy - kp2[1]) ** 2
            if err2 > th2:
                continue

        cos_parallaxes.append(cos_parallax)
        points[i1] = point
        n_good += 1
        if cos_parallax < MAX_COS_PARALLAX:
            good[i1] = True

    parallax = 0.0
    if n_good > 0:
        cos_parallaxes.sort()
        chosen = cos_parallaxes[min(PARALLAX_RANK, len(cos_parallaxes) - 1)]
        parallax = math.degrees(math.acos(max(-1.0, min(1.0, chosen))))

    return RTCheck(n_good=n_good, points=points, good=good, parallax=parallax)