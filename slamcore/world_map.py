"""The global map: the set of keyframes and map points built so far."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Iterable

log = logging.getLogger(__name__)


class WorldMap:
    """Thread-safe container of keyframes and map points.

    Insertion order is kept so that listings and saved files are stable.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        # Guards id assignment when points are created from several threads.
        self.point_creation_lock = threading.Lock()
        # Held while a thread rewrites poses and positions across the map.
        self.update_lock = threading.RLock()
        self._keyframes: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_points: list[Any] = []
        self._max_keyframe_id = 0
        self._big_change_index = 0
        self.keyframe_origins: list[Any] = []

    def add_keyframe(self, keyframe) -> None:
        """Insert a keyframe and track the largest keyframe id seen."""
        with self._lock:
            self._keyframes[keyframe] = None
            if keyframe.id > self._max_keyframe_id:
                self._max_keyframe_id = keyframe.id

    def add_map_point(self, point) -> None:
        with self._lock:
            self._map_points[point] = None

    def erase_map_point(self, point) -> None:
        with self._lock:
            self._map_points.pop(point, None)

    def erase_keyframe(self, keyframe) -> None:
        with self._lock:
            self._keyframes.pop(keyframe, None)

    def set_reference_map_points(self, points: Iterable[Any]) -> None:
        with self._lock:
            self._reference_points = list(points)

    def inform_new_big_change(self) -> None:
        """Record that a loop closure or global adjustment changed the map."""
        with self._lock:
            self._big_change_index += 1

    def last_big_change_index(self) -> int:
        with self._lock:
            return self._big_change_index

    def all_keyframes(self) -> list:
        with self._lock:
            return list(self._keyframes)

    def all_map_points(self) -> list:
        with self._lock:
            return list(self._map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self._keyframes)

    def reference_map_points(self) -> list:
        with self._lock:
            return list(self._reference_points)

    def max_keyframe_id(self) -> int:
        with self._lock:
            return self._max_keyframe_id

    def clear(self) -> None:
        """Drop every keyframe and map point."""
        with self._lock:
            self._map_points.clear()
            self._keyframes.clear()
            self._max_keyframe_id = 0
            self._reference_points = []
            self.keyframe_origins = []

    def save(self, path) -> bool:
        """Write the map points as OBJ vertices, one ``v x y z`` line each."""
        points = self.all_map_points()
        log.info("Saving map points to %s", path)
        log.info("  writing %d map points", len(points))
        with Path(path).open("w", encoding="ascii") as out:
            for point in points:
                x, y, z = (float(c) for c in point.position())
                out.write(f"v {x:g} {y:g} {z:g}\n")
        return True

    def save_with_timestamps(self, path) -> bool:
        """Write each point followed by the timestamps of its observers."""
        log.info("Saving map points to %s", path)
        return self._write_with_timestamps(path)

    def save_with_pose(self, path) -> bool:
        """Write each point with the timestamps of the keyframes seeing it."""
        log.info("Saving map points along with keyframe pose to %s", path)
        return self._write_with_timestamps(path)

    def _write_with_timestamps(self, path) -> bool:
        points = self.all_map_points()
        log.info("  writing %d map points", len(points))
        with Path(path).open("w", encoding="ascii") as out:
            for point in points:
                x, y, z = (float(c) for c in point.position())
                fields = [f"{x:.6f}", f"{y:.6f}", f"{z:.6f}"]
                fields.extend(
                    f"{float(kf.timestamp):.6f}" for kf in point.observations()
                )
                out.write(" ".join(fields) + "\n")
        return True