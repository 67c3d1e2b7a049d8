"""Removal of map points and keyframes that add little to the map."""

from __future__ import annotations

from typing import Iterable

# A keyframe is redundant when most of its points are seen by this many others.
REDUNDANT_OBSERVERS = 3
# Fraction of a keyframe's points that must be redundant for it to be culled.
REDUNDANT_FRACTION = 0.9
# Lowest found/visible ratio a recently created point may have.
MIN_FOUND_RATIO = 0.25


def map_point_culling(points: Iterable, current_keyframe_id: int, monocular: bool) -> list:
    """Check recently created map points and return those still on probation.

    A point is set bad when it is rarely found where it should be visible, or
    when two keyframes after its creation it is seen by too few keyframes.
    Points three or more keyframes old leave the list without being culled.
    """
    min_observations = 2 if monocular else 3
    kept = []
    for point in points:
        age = current_keyframe_id - point.first_keyframe_id
        if point.is_bad():
            continue
        if point.found_ratio() < MIN_FOUND_RATIO:
            point.set_bad_flag()
        elif age >= 2 and point.n_observations() <= min_observations:
            point.set_bad_flag()
        elif age >= 3:
            continue
        else:
            kept.append(point)
    return kept


def is_redundant_keyframe(keyframe, monocular: bool) -> bool:
    """Whether 90% of the points ``keyframe`` sees are seen by three other
    keyframes at the same or a finer scale.

    With stereo or depth data only close points, those with a valid depth
    not beyond the keyframe's depth threshold, are considered.
    """
    threshold = REDUNDANT_OBSERVERS
    redundant = 0
    considered = 0
    for index, point in enumerate(keyframe.map_point_matches()):
        if point is None or point.is_bad():
            continue
        if not monocular:
            depth = keyframe.depth[index]
            if depth > keyframe.th_depth or depth < 0:
                continue
        considered += 1
        if point.n_observations() <= threshold:
            continue
        level = keyframe.keys_un[index].octave
        count = 0
        for other, other_index in point.observations().items():
            if other is keyframe:
                continue
            if other.keys_un[other_index].octave <= level + 1:
                count += 1
                if count >= threshold:
                    break
        if count >= threshold:
            redundant += 1
    return redundant > REDUNDANT_FRACTION * considered


def keyframe_culling(keyframe, monocular: bool) -> list:
    """Set bad the redundant keyframes covisible with ``keyframe``.

    Returns the keyframes found redundant, in covisibility order. The first
    keyframe of the map is never culled; a keyframe protected from erasure
    is only marked for deferred removal by its own ``set_bad_flag``.
    """
    culled = []
    for neighbour in keyframe.covisible_keyframes():
        if neighbour.id == 0:
            continue
        if is_redundant_keyframe(neighbour, monocular):
            neighbour.set_bad_flag()
            culled.append(neighbour)
    return culled