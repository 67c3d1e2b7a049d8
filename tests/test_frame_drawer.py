from collections import namedtuple
from types import SimpleNamespace

import numpy as np
import pytest

from slamcore.frame_drawer import MAP_COLOR, VO_COLOR, FrameDrawer, TrackingState
from slamcore.world_map import WorldMap

Key = namedtuple("Key", "pt octave")


class StubPoint:
    def __init__(self, n_obs):
        self._n_obs = n_obs

    def n_observations(self):
        return self._n_obs


def make_tracker(state, image, keys, map_points=None, outliers=None,
                 ini_keys=(), ini_matches=(), only_tracking=False):
    count = len(keys)
    frame = SimpleNamespace(
        keys=keys,
        map_points=map_points if map_points is not None else [None] * count,
        outliers=outliers if outliers is not None else [False] * count,
    )
    return SimpleNamespace(
        image=image,
        current_frame=frame,
        initial_frame=SimpleNamespace(keys=list(ini_keys)),
        ini_matches=list(ini_matches),
        only_tracking=only_tracking,
        last_processed_state=state,
    )


@pytest.fixture
def drawer():
    return FrameDrawer(WorldMap())


def test_first_draw_shows_loading_and_moves_to_waiting(drawer):
    assert drawer.state == TrackingState.SYSTEM_NOT_READY
    out = drawer.draw_frame()
    assert out.shape[1] == 640
    assert out.shape[0] > 480
    assert out.shape[2] == 3
    assert out[480:].max() == 255
    assert drawer.state == TrackingState.NO_IMAGES_YET


def test_fixed_status_lines(drawer):
    assert drawer.text_info(TrackingState.NO_IMAGES_YET) == " WAITING FOR IMAGES"
    assert drawer.text_info(TrackingState.NOT_INITIALIZED) == " TRYING TO INITIALIZE "
    assert drawer.text_info(TrackingState.LOST) == " TRACK LOST. TRYING TO RELOCALIZE "
    assert (
        drawer.text_info(TrackingState.SYSTEM_NOT_READY)
        == " LOADING ORB VOCABULARY. PLEASE WAIT..."
    )


def test_ok_status_reports_map_counts():
    world = WorldMap()
    world.add_keyframe(SimpleNamespace(id=3))
    drawer = FrameDrawer(world)
    text = drawer.text_info(TrackingState.OK)
    assert text.startswith("SLAM MODE |  ")
    assert "KFs: 1, MPs: 0" in text
    assert "VO" not in text


def test_tracking_overlay_marks_map_and_vo_points(drawer):
    image = np.zeros((480, 640), dtype=np.uint8)
    keys = [Key((100, 100), 0), Key((200, 200), 0), Key((300, 300), 0)]
    points = [StubPoint(2), StubPoint(0), StubPoint(2)]
    outliers = [False, False, True]
    drawer.update(make_tracker(TrackingState.OK, image, keys, points, outliers))
    out = drawer.draw_frame()

    assert drawer.tracked == 1
    assert drawer.tracked_vo == 1
    assert tuple(out[100, 100]) == MAP_COLOR
    assert tuple(out[200, 200]) == VO_COLOR
    assert tuple(out[300, 300]) == (0, 0, 0)
    assert drawer.text_info(TrackingState.OK).endswith(", + VO matches: 1")


def test_localization_mode_label(drawer):
    image = np.zeros((480, 640), dtype=np.uint8)
    drawer.update(make_tracker(TrackingState.OK, image, [], only_tracking=True))
    drawer.draw_frame()
    assert drawer.text_info(TrackingState.OK).startswith("LOCALIZATION | ")


def test_initialization_draws_match_lines(drawer):
    image = np.zeros((480, 640), dtype=np.uint8)
    drawer.update(
        make_tracker(
            TrackingState.NOT_INITIALIZED,
            image,
            [Key((50, 10), 0)],
            ini_keys=[Key((10, 10), 0)],
            ini_matches=[0],
        )
    )
    out = drawer.draw_frame()
    assert tuple(out[10, 30]) == MAP_COLOR
    assert tuple(out[100, 30]) == (0, 0, 0)


def test_gray_image_becomes_colour_and_lost_draws_nothing(drawer):
    image = np.full((120, 160), 100, dtype=np.uint8)
    drawer.update(make_tracker(TrackingState.LOST, image, [Key((20, 20), 0)]))
    out = drawer.draw_frame()
    assert out.shape[1] == 160
    assert out.shape[0] > 120
    assert np.array_equal(out[:120], np.stack([image] * 3, axis=-1))
    assert drawer.state == TrackingState.LOST


def test_update_rejects_unknown_state(drawer):
    image = np.zeros((10, 10), dtype=np.uint8)
    with pytest.raises(ValueError):
        drawer.update(make_tracker(42, image, []))