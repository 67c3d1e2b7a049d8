"""Renders the last processed frame with tracking overlays and a status line."""

from __future__ import annotations

import threading
from enum import IntEnum

import numpy as np
from PIL import Image, ImageDraw, ImageFont

# Colours are RGB.
MAP_COLOR = (0, 255, 0)
VO_COLOR = (0, 0, 255)
TEXT_COLOR = (255, 255, 255)
MARK_RADIUS = 5
DOT_RADIUS = 2


class TrackingState(IntEnum):
    SYSTEM_NOT_READY = -1
    NO_IMAGES_YET = 0
    NOT_INITIALIZED = 1
    OK = 2
    LOST = 3


def _as_rgb(image) -> np.ndarray:
    array = np.asarray(image, dtype=np.uint8)
    if array.ndim == 2:
        return np.stack([array] * 3, axis=-1)
    if array.ndim == 3 and array.shape[2] == 1:
        return np.repeat(array, 3, axis=2)
    return array[:, :, :3].copy()


class FrameDrawer:
    """Keeps a copy of the tracker's last frame and draws it on request.

    The tracker passed to :meth:`update` must expose ``image``,
    ``current_frame`` (with ``keys``, ``map_points`` and ``outliers``),
    ``initial_frame`` (with ``keys``), ``ini_matches``, ``only_tracking``
    and ``last_processed_state``. Keypoints carry ``pt`` as ``(x, y)``.
    """

    def __init__(self, world_map) -> None:
        self._map = world_map
        self._lock = threading.Lock()
        self._state = TrackingState.SYSTEM_NOT_READY
        self._image = np.zeros((480, 640, 3), dtype=np.uint8)
        self._current_keys: list = []
        self._ini_keys: list = []
        self._ini_matches: list[int] = []
        self._vo: list[bool] = []
        self._in_map: list[bool] = []
        self._only_tracking = False
        self.tracked = 0
        self.tracked_vo = 0

    @property
    def state(self) -> TrackingState:
        with self._lock:
            return self._state

    def update(self, tracker) -> None:
        """Copy what is needed for drawing out of the tracker."""
        with self._lock:
            self._image = np.array(tracker.image, dtype=np.uint8, copy=True)
            frame = tracker.current_frame
            self._current_keys = list(frame.keys)
            count = len(self._current_keys)
            self._vo = [False] * count
            self._in_map = [False] * count
            self._only_tracking = bool(tracker.only_tracking)

            state = TrackingState(tracker.last_processed_state)
            if state == TrackingState.NOT_INITIALIZED:
                self._ini_keys = list(tracker.initial_frame.keys)
                self._ini_matches = list(tracker.ini_matches)
            elif state == TrackingState.OK:
                for i, (point, outlier) in enumerate(zip(frame.map_points, frame.outliers)):
                    if point is None or outlier:
                        continue
                    if point.n_observations() > 0:
                        self._in_map[i] = True
                    else:
                        self._vo[i] = True
            self._state = state

    def draw_frame(self) -> np.ndarray:
        """Return an RGB image of the last frame with overlays and status text."""
        with self._lock:
            state = self._state
            if self._state == TrackingState.SYSTEM_NOT_READY:
                self._state = TrackingState.NO_IMAGES_YET
            image = self._image.copy()
            current_keys: list = []
            ini_keys: list = []
            matches: list[int] = []
            vo: list[bool] = []
            in_map: list[bool] = []
            if self._state == TrackingState.NOT_INITIALIZED:
                current_keys = list(self._current_keys)
                ini_keys = list(self._ini_keys)
                matches = list(self._ini_matches)
            elif self._state == TrackingState.OK:
                current_keys = list(self._current_keys)
                vo = list(self._vo)
                in_map = list(self._in_map)
            elif self._state == TrackingState.LOST:
                current_keys = list(self._current_keys)

        canvas = Image.fromarray(_as_rgb(image), "RGB")
        draw = ImageDraw.Draw(canvas)

        if state == TrackingState.NOT_INITIALIZED:
            for i, match in enumerate(matches):
                if match >= 0:
                    start = tuple(ini_keys[i].pt)
                    end = tuple(current_keys[match].pt)
                    draw.line([start, end], fill=MAP_COLOR)
        elif state == TrackingState.OK:
            self.tracked = 0
            self.tracked_vo = 0
            for key, is_vo, is_map in zip(current_keys, vo, in_map):
                if not (is_vo or is_map):
                    continue
                x, y = key.pt
                color = MAP_COLOR if is_map else VO_COLOR
                draw.rectangle(
                    [x - MARK_RADIUS, y - MARK_RADIUS, x + MARK_RADIUS, y + MARK_RADIUS],
                    outline=color,
                )
                draw.ellipse(
                    [x - DOT_RADIUS, y - DOT_RADIUS, x + DOT_RADIUS, y + DOT_RADIUS],
                    fill=color,
                )
                if is_map:
                    self.tracked += 1
                else:
                    self.tracked_vo += 1

        return self._with_text(canvas, state)

    def text_info(self, state) -> str:
        """The status line shown under the frame for ``state``."""
        state = TrackingState(state)
        if state == TrackingState.NO_IMAGES_YET:
            return " WAITING FOR IMAGES"
        if state == TrackingState.NOT_INITIALIZED:
            return " TRYING TO INITIALIZE "
        if state == TrackingState.OK:
            mode = "LOCALIZATION | " if self._only_tracking else "SLAM MODE |  "
            text = (
                f"{mode}KFs: {self._map.keyframes_in_map()}, "
                f"MPs: {self._map.map_points_in_map()}, Matches: {self.tracked}"
            )
            if self.tracked_vo > 0:
                text += f", + VO matches: {self.tracked_vo}"
            return text
        if state == TrackingState.LOST:
            return " TRACK LOST. TRYING TO RELOCALIZE "
        return " LOADING ORB VOCABULARY. PLEASE WAIT..."

    def _with_text(self, canvas: Image.Image, state) -> np.ndarray:
        text = self.text_info(state)
        font = ImageFont.load_default()
        _, _, _, bottom = ImageDraw.Draw(canvas).textbbox((0, 0), text, font=font)
        width, height = canvas.size
        out = Image.new("RGB", (width, height + bottom + 10))
        out.paste(canvas, (0, 0))
        ImageDraw.Draw(out).text((5, height + 5), text, fill=TEXT_COLOR, font=font)
        return np.asarray(out)