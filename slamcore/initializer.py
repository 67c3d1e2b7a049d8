"""Monocular map initialisation from two views."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass
from typing import Any, Sequence

import numpy as np

from slamcore.model_scoring import check_fundamental, check_homography, check_rt
from slamcore.two_view import compute_f21, compute_h21, decompose_e, normalize

# Points drawn for each RANSAC hypothesis.
SAMPLE_SIZE = 8
# Above this share of the combined score the homography is preferred.
HOMOGRAPHY_RATIO = 0.40


@dataclass
class Reconstruction:
    """Relative motion of the second view and the points triangulated with it.

    ``points`` and ``triangulated`` are indexed like the reference keypoints.
    """

    rotation: np.ndarray
    translation: np.ndarray
    points: list[Any]
    triangulated: list[bool]


class Initializer:
    """Recovers motion and structure between a reference view and a current one.

    Keypoints are objects with ``pt`` or plain ``(x, y)`` pairs, already
    undistorted. A homography and a fundamental matrix are fitted by RANSAC
    and the better model is decomposed into a motion.
    """

    def __init__(self, reference_keys, calibration, sigma: float = 1.0, iterations: int = 200) -> None:
        if iterations < 1:
            raise ValueError("at least one RANSAC iteration is needed")
        self.reference_keys = list(reference_keys)
        self.calibration = np.array(calibration, dtype=np.float64).reshape(3, 3)
        self.sigma = float(sigma)
        self.sigma2 = self.sigma * self.sigma
        self.iterations = int(iterations)
        self._rng = random.Random(0)

        self.current_keys: list[Any] = []
        self.matches: list[tuple[int, int]] = []
        self.matched1: list[bool] = []
        self.sets: list[list[int]] = []

    def _sample(self, count: int) -> list[int]:
        available = list(range(count))
        chosen = []
        for _ in range(SAMPLE_SIZE):
            position = self._rng.randint(0, len(available) - 1)
            chosen.append(available[position])
            available[position] = available[-1]
            available.pop()
        return chosen

    def _require_state(self) -> None:
        if not self.sets:
            raise RuntimeError("initialize has not been called")

    def initialize(self, current_keys, matches12: Sequence[int]) -> Reconstruction | None:
        """Reconstruct from the current keypoints and the reference-to-current matches.

        ``matches12[i]`` is the index of the current keypoint matched to
        reference keypoint ``i``, or negative when unmatched. Returns None
        when no model gives a reliable reconstruction.
        """
        self.current_keys = list(current_keys)
        self.matches = [(i, int(m)) for i, m in enumerate(matches12) if m >= 0]
        self.matched1 = [m >= 0 for m in matches12]
        if len(self.matches) < SAMPLE_SIZE:
            raise ValueError(f"at least {SAMPLE_SIZE} matches are needed")

        self.sets = [self._sample(len(self.matches)) for _ in range(self.iterations)]

        inliers_h, score_h, h21 = self.find_homography()
        inliers_f, score_f, f21 = self.find_fundamental()

        total = score_h + score_f
        if not total > 0:
            return None
        if score_h / total > HOMOGRAPHY_RATIO:
            if h21 is None:
                return None
            return self.reconstruct_h(inliers_h, h21, 1.0, 50)
        if f21 is None:
            return None
        return self.reconstruct_f(inliers_f, f21, 1.0, 50)

    def _normalized(self):
        pn1, t1 = normalize(self.reference_keys)
        pn2, t2 = normalize(self.current_keys)
        return pn1, t1, pn2, t2

    def _sample_points(self, sample, pn1, pn2):
        first = [self.matches[idx][0] for idx in sample]
        second = [self.matches[idx][1] for idx in sample]
        return pn1[first], pn2[second]

    def find_homography(self) -> tuple[list[bool], float, np.ndarray | None]:
        """Best homography over the RANSAC sets: ``(inliers, score, h21)``."""
        self._require_state()
        pn1, t1, pn2, t2 = self._normalized()
        t2_inv = np.linalg.inv(t2)

        best_inliers = [False] * len(self.matches)
        best_score = 0.0
        best_h: np.ndarray | None = None
        for sample in self.sets:
            s1, s2 = self._sample_points(sample, pn1, pn2)
            h21 = t2_inv @ compute_h21(s1, s2) @ t1
            try:
                h12 = np.linalg.inv(h21)
            except np.linalg.LinAlgError:
                continue
            score, inliers = check_homography(
                h21, h12, self.reference_keys, self.current_keys, self.matches, self.sigma
            )
            if score > best_score:
                best_h = h21.copy()
                best_inliers = inliers
                best_score = score
        return best_inliers, best_score, best_h

    def find_fundamental(self) -> tuple[list[bool], float, np.ndarray | None]:
        """Best fundamental matrix over the RANSAC sets: ``(inliers, score, f21)``."""
        self._require_state()
        pn1, t1, pn2, t2 = self._normalized()
        t2_t = t2.T

        best_inliers = [False] * len(self.matches)
        best_score = 0.0
        best_f: np.ndarray | None = None
        for sample in self.sets:
            s1, s2 = self._sample_points(sample, pn1, pn2)
            f21 = t2_t @ compute_f21(s1, s2) @ t1
            score, inliers = check_fundamental(
                f21, self.reference_keys, self.current_keys, self.matches, self.sigma
            )
            if score > best_score:
                best_f = f21.copy()
                best_inliers = inliers
                best_score = score
        return best_inliers, best_score, best_f

    def _check(self, rotation, translation, inliers):
        return check_rt(
            rotation,
            translation,
            self.reference_keys,
            self.current_keys,
            self.matches,
            inliers,
            self.calibration,
            4.0 * self.sigma2,
        )

    def reconstruct_f(
        self, inliers, f21, min_parallax: float = 1.0, min_triangulated: int = 50
    ) -> Reconstruction | None:
        """Pick the one of the four motions of the essential matrix that triangulates best."""
        self._require_state()
        n = sum(1 for flag in inliers if flag)
        k = self.calibration
        e21 = k.T @ np.asarray(f21, dtype=np.float64).reshape(3, 3) @ k
        r1, r2, t = decompose_e(e21)

        hypotheses = [(r1, t), (r2, t), (r1, -t), (r2, -t)]
        checks = [self._check(r, tt, inliers) for r, tt in hypotheses]
        goods = [check.n_good for check in checks]
        max_good = max(goods)
        min_good = max(int(0.9 * n), min_triangulated)
        similar = sum(1 for g in goods if g > 0.7 * max_good)

        # Without a clear winner or enough points the initialisation is rejected.
        if max_good < min_good or similar > 1:
            return None

        best = goods.index(max_good)
        check = checks[best]
        if check.parallax > min_parallax:
            rotation, translation = hypotheses[best]
            return Reconstruction(rotation.copy(), translation.copy(), check.points, check.good)
        return None

    def reconstruct_h(
        self, inliers, h21, min_parallax: float = 1.0, min_triangulated: int = 50
    ) -> Reconstruction | None:
        """Decompose a homography into eight motions and keep a clear best one."""
        self._require_state()
        n = sum(1 for flag in inliers if flag)
        k = self.calibration
        a = np.linalg.inv(k) @ np.asarray(h21, dtype=np.float64).reshape(3, 3) @ k
        u, w, vt = np.linalg.svd(a)
        s = np.linalg.det(u) * np.linalg.det(vt)
        d1, d2, d3 = (float(x) for x in w)

        if d3 <= 0 or d1 / d2 < 1.00001 or d2 / d3 < 1.00001:
            return None

        aux1 = math.sqrt((d1 * d1 - d2 * d2) / (d1 * d1 - d3 * d3))
        aux3 = math.sqrt((d2 * d2 - d3 * d3) / (d1 * d1 - d3 * d3))
        x1 = [aux1, aux1, -aux1, -aux1]
        x3 = [aux3, -aux3, aux3, -aux3]
        root = math.sqrt((d1 * d1 - d2 * d2) * (d2 * d2 - d3 * d3))

        rotations: list[np.ndarray] = []
        translations: list[np.ndarray] = []

        # Case d' = d2.
        aux_stheta = root / ((d1 + d3) * d2)
        ctheta = (d2 * d2 + d1 * d3) / ((d1 + d3) * d2)
        stheta = [aux_stheta, -aux_stheta, -aux_stheta, aux_stheta]
        for i in range(4):
            rp = np.eye(3)
            rp[0, 0] = ctheta
            rp[0, 2] = -stheta[i]
            rp[2, 0] = stheta[i]
            rp[2, 2] = ctheta
            rotations.append(s * u @ rp @ vt)
            tp = np.array([x1[i], 0.0, -x3[i]]) * (d1 - d3)
            t = u @ tp
            translations.append(t / np.linalg.norm(t))

        # Case d' = -d2.
        aux_sphi = root / ((d1 - d3) * d2)
        cphi = (d1 * d3 - d2 * d2) / ((d1 - d3) * d2)
        sphi = [aux_sphi, -aux_sphi, -aux_sphi, aux_sphi]
        for i in range(4):
            rp = np.eye(3)
            rp[0, 0] = cphi
            rp[0, 2] = sphi[i]
            rp[1, 1] = -1.0
            rp[2, 0] = sphi[i]
            rp[2, 2] = -cphi
            rotations.append(s * u @ rp @ vt)
            tp = np.array([x1[i], 0.0, x3[i]]) * (d1 + d3)
            t = u @ tp
            translations.append(t / np.linalg.norm(t))

        best_good = 0
        second_good = 0
        best_index = -1
        best_parallax = -1.0
        best_check = None
        for index, (rotation, translation) in enumerate(zip(rotations, translations)):
            check = self._check(rotation, translation, inliers)
            if check.n_good > best_good:
                second_good = best_good
                best_good = check.n_good
                best_index = index
                best_parallax = check.parallax
                best_check = check
            elif check.n_good > second_good:
                second_good = check.n_good

        if (
            best_check is not None
            and second_good < 0.75 * best_good
            and best_parallax >= min_parallax
            and best_good > min_triangulated
            and best_good > 0.9 * n
        ):
            return Reconstruction(
                rotations[best_index].copy(),
                translations[best_index].copy(),
                best_check.points,
                best_check.good,
            )
        return None