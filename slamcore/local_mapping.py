"""The local mapping thread: turns new keyframes into map structure."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable

from slamcore import culling

log = logging.getLogger(__name__)

_IDLE_SLEEP = 0.003


class LocalMapping:
    """Consumes keyframes from tracking, maintains the local map and hands
    processed keyframes to loop closing.

    Optional collaborators can be attached as attributes:

    * ``vocabulary``: used to compute bags of words of incoming keyframes;
    * ``triangulator(mapper, keyframe)``: creates new points and returns them;
    * ``fuser(mapper, keyframe)``: fuses duplicated points with neighbours;
    * ``bundle_adjuster(keyframe, should_abort, world_map)``: local adjustment,
      run when the map holds more than two keyframes.
    """

    def __init__(self, world_map, monocular: bool) -> None:
        self._map = world_map
        self.monocular = bool(monocular)
        self.loop_closer = None
        self.tracker = None
        self.vocabulary = None
        self.triangulator: Callable | None = None
        self.fuser: Callable | None = None
        self.bundle_adjuster: Callable | None = None

        self._queue: deque = deque()
        self._queue_lock = threading.Lock()
        self._recent_points: list = []
        self.current_keyframe = None

        self._abort_ba = False

        self._reset_lock = threading.Lock()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False

        self._accept_lock = threading.Lock()
        self._accept_keyframes = True

    def set_loop_closer(self, loop_closer) -> None:
        self.loop_closer = loop_closer

    def set_tracker(self, tracker) -> None:
        self.tracker = tracker

    @property
    def abort_ba(self) -> bool:
        """Whether a running local bundle adjustment has been asked to stop."""
        return self._abort_ba

    @property
    def recent_map_points(self) -> list:
        """Points created recently that are still being checked."""
        return list(self._recent_points)

    # Main loop

    def run(self) -> None:
        """Process keyframes until a finish is requested."""
        with self._finish_lock:
            self._finished = False

        while True:
            # Tracking sees that local mapping is busy.
            self.set_accept_keyframes(False)

            if self.check_new_keyframes():
                keyframe = self.process_new_keyframe()
                self.map_point_culling()

                if self.triangulator is not None:
                    self._recent_points.extend(self.triangulator(self, keyframe) or ())

                if not self.check_new_keyframes() and self.fuser is not None:
                    self.fuser(self, keyframe)

                self._abort_ba = False

                if not self.check_new_keyframes() and not self.stop_requested():
                    if self.bundle_adjuster is not None and self._map.keyframes_in_map() > 2:
                        self.bundle_adjuster(keyframe, lambda: self._abort_ba, self._map)
                    self.keyframe_culling()

                if self.loop_closer is not None:
                    self.loop_closer.insert_keyframe(keyframe)
            elif self.stop():
                # Safe place to stop.
                while self.is_stopped() and not self._check_finish():
                    time.sleep(_IDLE_SLEEP)
                if self._check_finish():
                    break

            self.reset_if_requested()
            self.set_accept_keyframes(True)

            if self._check_finish():
                break
            time.sleep(_IDLE_SLEEP)

        self._set_finish()

    # Keyframe queue

    def insert_keyframe(self, keyframe) -> None:
        with self._queue_lock:
            self._queue.append(keyframe)
            self._abort_ba = True

    def keyframes_in_queue(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def process_new_keyframe(self):
        """Take the next queued keyframe, attach its points and add it to the map."""
        with self._queue_lock:
            if not self._queue:
                raise LookupError("no keyframe waiting to be processed")
            keyframe = self._queue.popleft()
        self.current_keyframe = keyframe

        if self.vocabulary is not None:
            keyframe.compute_bow(self.vocabulary)

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self._recent_points.append(point)

        keyframe.update_connections()
        self._map.add_keyframe(keyframe)
        return keyframe

    def _require_current(self):
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed yet")
        return self.current_keyframe

    def map_point_culling(self) -> None:
        """Cull the recently added points against the current keyframe."""
        keyframe = self._require_current()
        self._recent_points = culling.map_point_culling(
            self._recent_points, keyframe.id, self.monocular
        )

    def keyframe_culling(self) -> list:
        """Cull redundant keyframes covisible with the current one."""
        keyframe = self._require_current()
        return culling.keyframe_culling(keyframe, self.monocular)

    # Stop, reset and finish

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._queue_lock:
            self._abort_ba = True

    def request_reset(self) -> None:
        """Ask the running loop to reset and wait until it has."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(_IDLE_SLEEP)

    def reset_if_requested(self) -> None:
        with self._reset_lock:
            if self._reset_requested:
                with self._queue_lock:
                    self._queue.clear()
                self._recent_points = []
                self._reset_requested = False

    def stop(self) -> bool:
        """Stop if a stop was requested and stopping is allowed."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                log.info("Local Mapping STOP")
                return True
            return False

    def release(self) -> None:
        """Resume after a stop, dropping keyframes queued meanwhile."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._queue_lock:
                self._queue.clear()
            log.info("Local Mapping RELEASE")

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails once already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self._abort_ba = True

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def _check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def _set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
        with self._stop_lock:
            self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished