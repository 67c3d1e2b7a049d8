from dataclasses import dataclass

import numpy as np
import pytest

from slamcore.keyframe import FrameData, KeyFrame
from slamcore.map_point import MapPoint
from slamcore.world_map import WorldMap

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


@dataclass
class KeyPoint:
    pt: tuple
    octave: int = 0


class RecordingDatabase:
    def __init__(self):
        self.erased = []

    def erase(self, keyframe):
        self.erased.append(keyframe)


def make_keyframe(world_map, n=20, pose=None, points=None, depth=None, database=None):
    keys = points if points is not None else [KeyPoint((10.0 + 5 * i, 20.0)) for i in range(n)]
    frame = FrameData(
        keys=keys,
        calibration=K,
        pose=np.eye(4) if pose is None else pose,
        depth=depth,
        baseline=0.1,
    )
    kf = KeyFrame(frame, world_map, database)
    world_map.add_keyframe(kf)
    return kf


def share_points(world_map, kf_a, kf_b, count):
    created = []
    for i in range(count):
        mp = MapPoint([0.0, 0.0, 1.0 + i], kf_a, world_map)
        mp.add_observation(kf_a, i)
        mp.add_observation(kf_b, i)
        kf_a.add_map_point(mp, i)
        kf_b.add_map_point(mp, i)
        world_map.add_map_point(mp)
        created.append(mp)
    return created


def test_pose_and_centres_are_consistent():
    world_map = WorldMap()
    angle = 0.3
    pose = np.eye(4)
    pose[:3, :3] = [
        [np.cos(angle), -np.sin(angle), 0.0],
        [np.sin(angle), np.cos(angle), 0.0],
        [0.0, 0.0, 1.0],
    ]
    pose[:3, 3] = [1.0, 2.0, 3.0]
    kf = make_keyframe(world_map, pose=pose)
    assert np.allclose(kf.pose(), pose)
    assert np.allclose(kf.pose_inverse() @ kf.pose(), np.eye(4))
    assert np.allclose(kf.camera_center(), -pose[:3, :3].T @ pose[:3, 3])
    assert np.allclose(kf.rotation(), pose[:3, :3])
    assert np.allclose(kf.translation(), pose[:3, 3])
    expected_stereo = kf.pose_inverse() @ np.array([0.05, 0.0, 0.0, 1.0])
    assert np.allclose(kf.stereo_center(), expected_stereo[:3])


def test_connections_are_ordered_by_weight():
    world_map = WorldMap()
    kf = make_keyframe(world_map)
    a, b, c = (make_keyframe(world_map) for _ in range(3))
    kf.add_connection(a, 10)
    kf.add_connection(b, 30)
    kf.add_connection(c, 20)
    assert kf.covisible_keyframes() == [b, c, a]
    assert kf.best_covisibility_keyframes(2) == [b, c]
    assert kf.best_covisibility_keyframes(10) == [b, c, a]
    assert kf.connected_keyframes() == {a, b, c}
    assert kf.weight(c) == 20
    assert kf.weight(kf) == 0


def test_covisibles_by_weight():
    world_map = WorldMap()
    kf = make_keyframe(world_map)
    a, b, c = (make_keyframe(world_map) for _ in range(3))
    kf.add_connection(a, 10)
    kf.add_connection(b, 30)
    kf.add_connection(c, 20)
    assert kf.covisibles_by_weight(15) == [b, c]
    assert kf.covisibles_by_weight(20) == [b, c]
    # Every connection reaches the weight: nothing below it to stop at.
    assert kf.covisibles_by_weight(5) == []


def test_erase_connection_reorders():
    world_map = WorldMap()
    kf = make_keyframe(world_map)
    a, b = make_keyframe(world_map), make_keyframe(world_map)
    kf.add_connection(a, 10)
    kf.add_connection(b, 30)
    kf.erase_connection(b)
    assert kf.covisible_keyframes() == [a]
    assert kf.weight(b) == 0


def test_features_in_area_finds_nearby_keys():
    world_map = WorldMap()
    keys = [KeyPoint((100.0, 100.0)), KeyPoint((105.0, 100.0)), KeyPoint((300.0, 300.0))]
    kf = make_keyframe(world_map, points=keys)
    assert sorted(kf.features_in_area(101.0, 100.0, 10.0)) == [0, 1]
    assert kf.features_in_area(300.0, 300.0, 2.0) == [2]
    assert kf.features_in_area(2000.0, 100.0, 5.0) == []


def test_is_in_image_bounds():
    world_map = WorldMap()
    kf = make_keyframe(world_map)
    assert kf.is_in_image(0.0, 0.0)
    assert kf.is_in_image(639.0, 479.0)
    assert not kf.is_in_image(640.0, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo():
    world_map = WorldMap()
    keys = [KeyPoint((320.0, 240.0)), KeyPoint((100.0, 100.0))]
    kf = make_keyframe(world_map, points=keys, depth=[2.0, -1.0])
    assert np.allclose(kf.unproject_stereo(0), [0.0, 0.0, 2.0])
    assert kf.unproject_stereo(1) is None


def test_update_connections_links_both_ways_and_sets_parent():
    world_map = WorldMap()
    kf_a = make_keyframe(world_map)
    kf_b = make_keyframe(world_map)
    share_points(world_map, kf_a, kf_b, 16)
    kf_b.update_connections()
    assert kf_b.weight(kf_a) == 16
    assert kf_a.weight(kf_b) == 16
    assert kf_b.parent() is kf_a
    assert kf_a.has_child(kf_b)


def test_update_connections_keeps_best_when_below_threshold():
    world_map = WorldMap()
    kf_a = make_keyframe(world_map)
    kf_b = make_keyframe(world_map)
    share_points(world_map, kf_a, kf_b, 3)
    kf_b.update_connections()
    assert kf_b.covisible_keyframes() == [kf_a]
    assert kf_a.weight(kf_b) == 3


def test_map_point_queries_and_erase():
    world_map = WorldMap()
    kf_a = make_keyframe(world_map)
    kf_b = make_keyframe(world_map)
    points = share_points(world_map, kf_a, kf_b, 4)
    assert kf_a.map_points() == set(points)
    assert kf_a.tracked_map_points(0) == 4
    assert kf_a.tracked_map_points(3) == 0
    assert kf_a.tracked_map_points(2) == 4
    kf_a.erase_map_point_match(points[1])
    assert kf_a.map_point(1) is None
    kf_a.erase_map_point_match(2)
    assert kf_a.map_point(2) is None
    matches = kf_a.map_point_matches()
    assert matches[0] is points[0] and matches[3] is points[3]
    kf_a.replace_map_point_match(2, points[0])
    assert kf_a.map_point(2) is points[0]


def test_scene_median_depth():
    world_map = WorldMap()
    kf = make_keyframe(world_map, n=5)
    for i, z in enumerate([3.0, 1.0, 2.0]):
        kf.add_map_point(MapPoint([0.0, 0.0, z], kf, world_map), i)
    assert kf.compute_scene_median_depth(2) == pytest.approx(2.0)
    assert kf.compute_scene_median_depth(1) == pytest.approx(3.0)


def test_scene_median_depth_without_points_raises():
    world_map = WorldMap()
    kf = make_keyframe(world_map)
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_set_bad_flag_reparents_children_and_leaves_map():
    world_map = WorldMap()
    database = RecordingDatabase()
    root = make_keyframe(world_map)
    mid = make_keyframe(world_map, database=database)
    child = make_keyframe(world_map)
    orphan = make_keyframe(world_map)
    mid.change_parent(root)
    child.change_parent(mid)
    orphan.change_parent(mid)
    child.add_connection(root, 20)
    root.add_connection(child, 20)
    mid.add_connection(root, 5)
    root.add_connection(mid, 5)

    mid.set_bad_flag()

    assert mid.is_bad()
    assert mid not in world_map.all_keyframes()
    assert database.erased == [mid]
    assert child.parent() is root
    assert orphan.parent() is root
    assert not root.has_child(mid)
    assert root.children() == {child, orphan}
    assert root.weight(mid) == 0
    assert mid.covisible_keyframes() == []


def test_first_keyframe_is_never_erased():
    world_map = WorldMap()
    kf = make_keyframe(world_map)
    kf.id = 0
    kf.set_bad_flag()
    assert not kf.is_bad()
    assert kf in world_map.all_keyframes()


def test_not_erase_defers_until_set_erase():
    world_map = WorldMap()
    root = make_keyframe(world_map)
    kf = make_keyframe(world_map)
    kf.change_parent(root)
    kf.set_not_erase()
    kf.set_bad_flag()
    assert not kf.is_bad()
    kf.set_erase()
    assert kf.is_bad()
    assert kf not in world_map.all_keyframes()


def test_loop_edge_blocks_erasure():
    world_map = WorldMap()
    root = make_keyframe(world_map)
    kf = make_keyframe(world_map)
    other = make_keyframe(world_map)
    kf.change_parent(root)
    kf.add_loop_edge(other)
    assert kf.loop_edges() == {other}
    kf.set_bad_flag()
    kf.set_erase()
    assert not kf.is_bad()


def test_compute_bow_only_when_empty():
    class Vocabulary:
        def __init__(self):
            self.calls = []

        def transform(self, descriptors, levels_up):
            self.calls.append((len(descriptors), levels_up))
            return {7: 0.5}, {1: [0]}

    world_map = WorldMap()
    kf = make_keyframe(world_map, n=3)
    vocabulary = Vocabulary()
    kf.compute_bow(vocabulary)
    kf.compute_bow(vocabulary)
    assert vocabulary.calls == [(3, 4)]
    assert kf.bow_vec == {7: 0.5}
    assert kf.feat_vec == {1: [0]}


def test_keyframe_ids_increase():
    world_map = WorldMap()
    first = make_keyframe(world_map)
    second = make_keyframe(world_map)
    assert second.id > first.id
    assert world_map.max_keyframe_id() == second.id