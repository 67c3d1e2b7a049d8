"""3-D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading

import numpy as np


def descriptor_distance(a, b) -> int:
    """Hamming distance between two binary descriptors of packed bytes."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


class MapPoint:
    """A landmark with its observations, viewing direction and scale range.

    Keyframes are expected to expose ``id``, ``frame_id``, ``u_right``,
    ``descriptors``, ``keys_un`` (items with ``octave``), ``scale_factors``,
    ``n_scale_levels``, ``log_scale_factor``, ``camera_center()``,
    ``is_bad()``, ``erase_map_point_match(index)`` and
    ``replace_map_point_match(index, point)``.
    """

    _ids = itertools.count()
    global_lock = threading.Lock()

    def __init__(self, position, reference_keyframe, world_map) -> None:
        self._position = np.array(position, dtype=np.float32).reshape(3)
        self._normal = np.zeros(3, dtype=np.float32)
        self._descriptor: np.ndarray | None = None
        self._reference = reference_keyframe
        self._map = world_map
        self._observations: dict = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._features_lock = threading.RLock()
        self._pos_lock = threading.RLock()

        self.first_keyframe_id = reference_keyframe.id
        self.first_frame = reference_keyframe.frame_id
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.position_gba: np.ndarray | None = None

        with world_map.point_creation_lock:
            self.id = next(MapPoint._ids)

    def position(self) -> np.ndarray:
        with self._pos_lock:
            return self._position.copy()

    def set_position(self, position) -> None:
        with MapPoint.global_lock, self._pos_lock:
            self._position = np.array(position, dtype=np.float32).reshape(3)

    def normal(self) -> np.ndarray:
        with self._pos_lock:
            return self._normal.copy()

    def reference_keyframe(self):
        with self._features_lock:
            return self._reference

    def add_observation(self, keyframe, index: int) -> None:
        """Record that ``keyframe`` sees this point at feature ``index``."""
        with self._features_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe) -> None:
        """Forget an observation; a point left with two or fewer turns bad."""
        bad = False
        with self._features_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._reference is keyframe:
                    self._reference = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict:
        with self._features_lock:
            return dict(self._observations)

    def n_observations(self) -> int:
        with self._features_lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        """Mark the point bad and detach it from its keyframes and the map."""
        with self._features_lock, self._pos_lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replaced(self) -> MapPoint | None:
        with self._features_lock, self._pos_lock:
            return self._replaced

    def replace(self, other: MapPoint) -> None:
        """Merge this point into ``other`` and retire this one."""
        if other.id == self.id:
            return
        with self._features_lock, self._pos_lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)
        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._features_lock, self._pos_lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._features_lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._features_lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._features_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with least median distance to the rest."""
        with self._features_lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(kf.descriptors[index], dtype=np.uint8)
            for kf, index in observations.items()
            if not kf.is_bad()
        ]
        if not descriptors:
            return

        count = len(descriptors)
        distances = np.zeros((count, count), dtype=np.int64)
        for i, j in itertools.combinations(range(count), 2):
            d = descriptor_distance(descriptors[i], descriptors[j])
            distances[i, j] = distances[j, i] = d

        median_pos = int(0.5 * (count - 1))
        best_median = None
        best_index = 0
        for i, row in enumerate(distances):
            median = int(np.sort(row)[median_pos])
            if best_median is None or median < best_median:
                best_median = median
                best_index = i

        with self._features_lock:
            self._descriptor = descriptors[best_index].copy()

    def descriptor(self) -> np.ndarray | None:
        with self._features_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe) -> int:
        with self._features_lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe) -> bool:
        with self._features_lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance range."""
        with self._features_lock, self._pos_lock:
            if self._bad:
                return
            observations = dict(self._observations)
            reference = self._reference
            position = self._position.copy()
        if not observations or reference is None:
            return

        normal = np.zeros(3, dtype=np.float64)
        for keyframe in observations:
            ray = position - np.asarray(keyframe.camera_center(), dtype=np.float64).ravel()
            normal += ray / np.linalg.norm(ray)

        offset = position - np.asarray(reference.camera_center(), dtype=np.float64).ravel()
        dist = float(np.linalg.norm(offset))
        level = reference.keys_un[observations.get(reference, 0)].octave
        level_scale = reference.scale_factors[level]
        top_scale = reference.scale_factors[reference.n_scale_levels - 1]

        with self._pos_lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / top_scale
            self._normal = (normal / len(observations)).astype(np.float32)

    def min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, distance: float, frame) -> int:
        """Pyramid level at which the point should appear from ``distance``."""
        with self._pos_lock:
            ratio = self._max_distance / distance
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.n_scale_levels - 1))