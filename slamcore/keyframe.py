"""Keyframes: selected frames that anchor the map and the covisibility graph."""

from __future__ import annotations

import itertools
import math
import threading
from dataclasses import dataclass, field
from numbers import Integral
from typing import Any, Sequence

import numpy as np


@dataclass
class FrameData:
    """Everything a keyframe takes over from the frame it is created from.

    Keypoints are objects with ``pt`` (an ``(x, y)`` pair) and ``octave``.
    When ``grid`` is not given, one is built from the undistorted keypoints
    with ``grid_cols`` by ``grid_rows`` cells over the image bounds.
    """

    keys: Sequence[Any]
    calibration: Any
    pose: Any
    keys_un: Sequence[Any] | None = None
    id: int = 0
    timestamp: float = 0.0
    u_right: list[float] | None = None
    depth: list[float] | None = None
    descriptors: Any = None
    bf: float = 0.0
    baseline: float = 0.0
    th_depth: float = 0.0
    n_scale_levels: int = 8
    scale_factor: float = 1.2
    scale_factors: list[float] = field(default_factory=list)
    level_sigma2: list[float] = field(default_factory=list)
    inv_level_sigma2: list[float] = field(default_factory=list)
    min_x: float = 0.0
    min_y: float = 0.0
    max_x: float = 640.0
    max_y: float = 480.0
    grid_cols: int = 64
    grid_rows: int = 48
    grid: list[list[list[int]]] | None = None
    bow_vec: dict = field(default_factory=dict)
    feat_vec: dict = field(default_factory=dict)
    map_points: list[Any] | None = None

    def __post_init__(self) -> None:
        count = len(self.keys)
        if self.keys_un is None:
            self.keys_un = list(self.keys)
        if self.u_right is None:
            self.u_right = [-1.0] * count
        if self.depth is None:
            self.depth = [-1.0] * count
        if self.descriptors is None:
            self.descriptors = np.zeros((count, 32), dtype=np.uint8)
        if self.map_points is None:
            self.map_points = [None] * count
        if not self.scale_factors:
            self.scale_factors = [self.scale_factor**i for i in range(self.n_scale_levels)]
        if not self.level_sigma2:
            self.level_sigma2 = [s * s for s in self.scale_factors]
        if not self.inv_level_sigma2:
            self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]
        if self.grid is None:
            self.grid = self._build_grid()
        else:
            self.grid_cols = len(self.grid)
            self.grid_rows = len(self.grid[0]) if self.grid else 0

    @property
    def grid_width_inv(self) -> float:
        return self.grid_cols / (self.max_x - self.min_x)

    @property
    def grid_height_inv(self) -> float:
        return self.grid_rows / (self.max_y - self.min_y)

    def _build_grid(self) -> list[list[list[int]]]:
        grid: list[list[list[int]]] = [
            [[] for _ in range(self.grid_rows)] for _ in range(self.grid_cols)
        ]
        for index, key in enumerate(self.keys_un):
            x, y = key.pt
            cx = round((x - self.min_x) * self.grid_width_inv)
            cy = round((y - self.min_y) * self.grid_height_inv)
            if 0 <= cx < self.grid_cols and 0 <= cy < self.grid_rows:
                grid[cx][cy].append(index)
        return grid


class KeyFrame:
    """A keyframe with its pose, features, map-point matches and graph links."""

    _ids = itertools.count()

    def __init__(self, frame: FrameData, world_map, database) -> None:
        self.id = next(KeyFrame._ids)
        self.frame_id = frame.id
        self.timestamp = frame.timestamp

        self.grid_cols = frame.grid_cols
        self.grid_rows = frame.grid_rows
        self.grid_width_inv = frame.grid_width_inv
        self.grid_height_inv = frame.grid_height_inv
        self.grid = [[list(cell) for cell in column] for column in frame.grid]

        self.calibration = np.array(frame.calibration, dtype=np.float64).reshape(3, 3)
        self.fx = float(self.calibration[0, 0])
        self.fy = float(self.calibration[1, 1])
        self.cx = float(self.calibration[0, 2])
        self.cy = float(self.calibration[1, 2])
        self.invfx = 1.0 / self.fx
        self.invfy = 1.0 / self.fy
        self.bf = frame.bf
        self.baseline = frame.baseline
        self.half_baseline = frame.baseline / 2
        self.th_depth = frame.th_depth

        self.n_features = len(frame.keys)
        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.u_right = list(frame.u_right)
        self.depth = list(frame.depth)
        self.descriptors = np.array(frame.descriptors, copy=True)
        self.bow_vec = dict(frame.bow_vec)
        self.feat_vec = dict(frame.feat_vec)

        self.n_scale_levels = frame.n_scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = math.log(frame.scale_factor)
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)
        self.min_x, self.min_y = frame.min_x, frame.min_y
        self.max_x, self.max_y = frame.max_x, frame.max_y

        # Bookkeeping written by tracking, mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.tcp: np.ndarray | None = None

        self._map_points = list(frame.map_points)
        self._map = world_map
        self._database = database

        self._connected_weights: dict[KeyFrame, int] = {}
        self._ordered_connected: list[KeyFrame] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: set[KeyFrame] = set()
        self._loop_edges: set[KeyFrame] = set()
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self._tcw = np.eye(4)
        self._twc = np.eye(4)
        self._ow = np.zeros(3)
        self._cw = np.zeros(3)
        self.set_pose(frame.pose)

    def __repr__(self) -> str:
        return f"KeyFrame(id={self.id})"

    def compute_bow(self, vocabulary) -> None:
        """Fill the bag-of-words vectors unless they are already present.

        ``vocabulary.transform(descriptors, levels_up)`` must return the
        pair ``(bow_vec, feat_vec)``.
        """
        if not self.bow_vec or not self.feat_vec:
            self.bow_vec, self.feat_vec = vocabulary.transform(list(self.descriptors), 4)

    # Pose

    def set_pose(self, pose) -> None:
        """Set the world-to-camera transform and derive the camera centres."""
        tcw = np.array(pose, dtype=np.float64).reshape(4, 4)
        rwc = tcw[:3, :3].T
        ow = -rwc @ tcw[:3, 3]
        twc = np.eye(4)
        twc[:3, :3] = rwc
        twc[:3, 3] = ow
        cw = twc @ np.array([self.half_baseline, 0.0, 0.0, 1.0])
        with self._pose_lock:
            self._tcw = tcw
            self._twc = twc
            self._ow = ow
            self._cw = cw[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe: KeyFrame, weight: int) -> None:
        with self._connections_lock:
            if self._connected_weights.get(keyframe) == weight:
                return
            self._connected_weights[keyframe] = weight
        self.update_best_covisibles()

    @staticmethod
    def _ordered(weights: dict[KeyFrame, int]) -> tuple[list[KeyFrame], list[int]]:
        pairs = sorted(weights.items(), key=lambda kv: (kv[1], kv[0].id), reverse=True)
        return [kf for kf, _ in pairs], [w for _, w in pairs]

    def update_best_covisibles(self) -> None:
        """Reorder connected keyframes by decreasing weight."""
        with self._connections_lock:
            self._ordered_connected, self._ordered_weights = self._ordered(
                self._connected_weights
            )

    def connected_keyframes(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list[KeyFrame]:
        with self._connections_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n: int) -> list[KeyFrame]:
        with self._connections_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, weight: int) -> list[KeyFrame]:
        """Connected keyframes whose weight is at least ``weight``.

        As in the mapping thread this relies on, the result is empty when
        every connection reaches the weight.
        """
        with self._connections_lock:
            for position, w in enumerate(self._ordered_weights):
                if w < weight:
                    return list(self._ordered_connected[:position])
            return []

    def weight(self, keyframe: KeyFrame) -> int:
        with self._connections_lock:
            return self._connected_weights.get(keyframe, 0)

    # Map-point matches

    def add_map_point(self, point, index: int) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, index_or_point) -> None:
        """Drop a match, given either its feature index or the map point."""
        if isinstance(index_or_point, Integral):
            with self._features_lock:
                self._map_points[int(index_or_point)] = None
            return
        index = index_or_point.index_in_keyframe(self)
        if index >= 0:
            with self._features_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index: int, point) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def map_points(self) -> set:
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs: int) -> int:
        """Count good matches, seen by at least ``min_obs`` when positive."""
        with self._features_lock:
            points = [p for p in self._map_points if p is not None and not p.is_bad()]
        if min_obs > 0:
            return sum(1 for p in points if p.n_observations() >= min_obs)
        return len(points)

    def map_point_matches(self) -> list:
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, index: int):
        with self._features_lock:
            return self._map_points[index]

    def update_connections(self) -> None:
        """Rebuild covisibility links from the map points shared with others."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1

        if not counter:
            return

        threshold = 15
        n_max = 0
        kf_max: KeyFrame | None = None
        selected: dict[KeyFrame, int] = {}
        for keyframe, count in counter.items():
            if count > n_max:
                n_max = count
                kf_max = keyframe
            if count >= threshold:
                selected[keyframe] = count
                keyframe.add_connection(self, count)

        if not selected and kf_max is not None:
            selected[kf_max] = n_max
            kf_max.add_connection(self, n_max)

        ordered, weights = self._ordered(selected)
        with self._connections_lock:
            self._connected_weights = counter
            self._ordered_connected = ordered
            self._ordered_weights = weights
            if self._first_connection and self.id != 0:
                self._parent = ordered[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree

    def add_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children.add(keyframe)

    def erase_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children.discard(keyframe)

    def change_parent(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._parent = keyframe
        keyframe.add_child(self)

    def children(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._children)

    def parent(self) -> KeyFrame | None:
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe: KeyFrame) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges.add(keyframe)

    def loop_edges(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._loop_edges)

    # Removal

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasure again and carry out one that was deferred."""
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove this keyframe from the graph, the tree, the map and the database."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connected_weights)

        for keyframe in connected:
            keyframe.erase_connection(self)

        for point in self.map_point_matches():
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connected_weights = {}
            self._ordered_connected = []
            self._ordered_weights = []

            candidates: set[KeyFrame] = set()
            if self._parent is not None:
                candidates.add(self._parent)

            # Hand each child to the candidate parent it shares most with.
            while self._children:
                best_weight = -1
                best_child: KeyFrame | None = None
                best_parent: KeyFrame | None = None
                candidate_ids = {c.id for c in candidates}
                for child in self._children:
                    if child.is_bad():
                        continue
                    for neighbour in child.covisible_keyframes():
                        if neighbour.id in candidate_ids:
                            w = child.weight(neighbour)
                            if w > best_weight:
                                best_weight = w
                                best_child = child
                                best_parent = neighbour
                if best_child is None:
                    break
                best_child.change_parent(best_parent)
                candidates.add(best_child)
                self._children.discard(best_child)

            if self._parent is not None:
                for child in self._children:
                    child.change_parent(self._parent)
                self._parent.erase_child(self)
                self.tcp = self.pose() @ self._parent.pose_inverse()
            self._bad = True

        self._map.erase_keyframe(self)
        if self._database is not None:
            self._database.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    def erase_connection(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            if keyframe not in self._connected_weights:
                return
            del self._connected_weights[keyframe]
        self.update_best_covisibles()

    # Geometry

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted keypoints within ``r`` of ``(x, y)`` on each axis."""
        min_cx = max(0, math.floor((x - self.min_x - r) * self.grid_width_inv))
        if min_cx >= self.grid_cols:
            return []
        max_cx = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_width_inv))
        if max_cx < 0:
            return []
        min_cy = max(0, math.floor((y - self.min_y - r) * self.grid_height_inv))
        if min_cy >= self.grid_rows:
            return []
        max_cy = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_height_inv))
        if max_cy < 0:
            return []

        found = []
        for column in self.grid[min_cx : max_cx + 1]:
            for cell in column[min_cy : max_cy + 1]:
                for index in cell:
                    kx, ky = self.keys_un[index].pt
                    if abs(kx - x) < r and abs(ky - y) < r:
                        found.append(index)
        return found

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, index: int) -> np.ndarray | None:
        """World position of feature ``index`` from its depth, or None without one."""
        z = self.depth[index]
        if z <= 0:
            return None
        u, v = self.keys[index].pt
        camera_point = np.array(
            [(u - self.cx) * z * self.invfx, (v - self.cy) * z * self.invfy, z]
        )
        with self._pose_lock:
            return self._twc[:3, :3] @ camera_point + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int = 2) -> float:
        """Depth at position ``(n - 1) // q`` of the sorted depths of matched points."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(
            float(row @ np.asarray(p.position(), dtype=np.float64)) + zcw
            for p in points
            if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]