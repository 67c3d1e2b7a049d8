import threading

import pytest

from slamcore.world_map import WorldMap


class FakeKeyFrame:
    def __init__(self, kf_id, timestamp=0.0):
        self.id = kf_id
        self.timestamp = timestamp


class FakePoint:
    def __init__(self, position, observers=()):
        self._position = position
        self._observers = {kf: 0 for kf in observers}

    def position(self):
        return list(self._position)

    def observations(self):
        return dict(self._observers)


def test_add_keyframes_tracks_count_and_max_id():
    world = WorldMap()
    kfs = [FakeKeyFrame(i) for i in (3, 7, 5)]
    for kf in kfs:
        world.add_keyframe(kf)
    assert world.keyframes_in_map() == len(kfs)
    assert world.max_keyframe_id() == 7
    assert world.all_keyframes() == kfs


def test_erase_keyframe_keeps_max_id():
    world = WorldMap()
    a, b = FakeKeyFrame(1), FakeKeyFrame(4)
    world.add_keyframe(a)
    world.add_keyframe(b)
    world.erase_keyframe(b)
    assert world.all_keyframes() == [a]
    assert world.max_keyframe_id() == b.id


def test_adding_same_keyframe_twice_counts_once():
    world = WorldMap()
    kf = FakeKeyFrame(2)
    world.add_keyframe(kf)
    world.add_keyframe(kf)
    assert world.keyframes_in_map() == 1


def test_map_points_add_and_erase():
    world = WorldMap()
    p, q = FakePoint((0, 0, 0)), FakePoint((1, 1, 1))
    world.add_map_point(p)
    world.add_map_point(q)
    world.erase_map_point(p)
    world.erase_map_point(p)
    assert world.all_map_points() == [q]
    assert world.map_points_in_map() == 1


def test_reference_points_are_copied():
    world = WorldMap()
    refs = [FakePoint((0, 0, 0))]
    world.set_reference_map_points(refs)
    refs.append(FakePoint((1, 0, 0)))
    assert len(world.reference_map_points()) == 1


def test_big_change_index_increments():
    world = WorldMap()
    before = world.last_big_change_index()
    world.inform_new_big_change()
    world.inform_new_big_change()
    assert world.last_big_change_index() == before + 2


def test_clear_empties_everything():
    world = WorldMap()
    kf = FakeKeyFrame(9)
    world.add_keyframe(kf)
    world.add_map_point(FakePoint((0, 0, 0)))
    world.set_reference_map_points([FakePoint((1, 1, 1))])
    world.keyframe_origins.append(kf)
    world.clear()
    assert world.keyframes_in_map() == 0
    assert world.map_points_in_map() == 0
    assert world.max_keyframe_id() == 0
    assert world.reference_map_points() == []
    assert world.keyframe_origins == []


def test_save_writes_obj_vertices(tmp_path):
    world = WorldMap()
    world.add_map_point(FakePoint((1.0, 2.0, 3.0)))
    world.add_map_point(FakePoint((0.5, -1.0, 4.0)))
    path = tmp_path / "points.obj"
    assert world.save(path) is True
    lines = path.read_text().splitlines()
    assert lines[0] == "v 1 2 3"
    assert len(lines) == 2
    assert all(line.startswith("v ") for line in lines)


def test_save_with_timestamps_appends_observer_times(tmp_path):
    world = WorldMap()
    observers = [FakeKeyFrame(0, 0.5), FakeKeyFrame(1, 1.25)]
    world.add_map_point(FakePoint((1.0, 2.0, 3.0), observers))
    path = tmp_path / "points.txt"
    assert world.save_with_timestamps(path) is True
    fields = path.read_text().splitlines()[0].split(" ")
    assert [float(f) for f in fields] == [1.0, 2.0, 3.0, 0.5, 1.25]
    assert all(len(f.split(".")[1]) == 6 for f in fields)


def test_save_with_pose_matches_timestamp_format(tmp_path):
    world = WorldMap()
    world.add_map_point(FakePoint((1.0, 2.0, 3.0), [FakeKeyFrame(0, 2.0)]))
    a, b = tmp_path / "a.txt", tmp_path / "b.txt"
    world.save_with_pose(a)
    world.save_with_timestamps(b)
    assert a.read_text() == b.read_text()


def test_locks_are_usable():
    world = WorldMap()
    with world.point_creation_lock:
        assert world.point_creation_lock.locked()
    with world.update_lock:
        world.add_map_point(FakePoint((0, 0, 0)))
    assert world.map_points_in_map() == 1
    assert isinstance(world.update_lock, type(threading.RLock()))