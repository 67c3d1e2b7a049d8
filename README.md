# slamcore

Core data structures and geometry for feature-based visual SLAM. It is
written in Python on top of numpy, and uses Pillow for drawing.

## What is in it

- `slamcore.world_map.WorldMap` holds the keyframes and map points and
  keeps their insertion order. It counts "big changes" and tracks the
  largest keyframe id. It writes the point cloud to a file in one of two
  forms:
  - `save(path)` writes Wavefront OBJ vertices, one `v x y z` line per
    point.
  - `save_with_timestamps(path)` and `save_with_pose(path)` write each
    point's coordinates, then the timestamps of the keyframes that observe
    it. Both write the same format.
- `slamcore.map_point.MapPoint` is a 3-D landmark. It tracks which
  keyframes observe it, its visible and found counters, and its mean
  viewing normal. It also keeps the distance range over which it is
  scale-invariant (`min_distance_invariance`, `max_distance_invariance`,
  `predict_scale`) and its most distinctive binary descriptor.
  `replace` merges one point into another.
  `descriptor_distance(a, b)` is the Hamming distance between packed-byte
  descriptors.
- `slamcore.keyframe.FrameData` carries what a keyframe takes over from
  its frame. Unset fields get defaults, and a grid index is built from the
  keypoints.
- `slamcore.keyframe.KeyFrame` holds:
  - its pose, camera centre and stereo centre;
  - its map-point matches;
  - the covisibility graph (`update_connections`,
    `best_covisibility_keyframes`, `covisibles_by_weight`);
  - the spanning tree and loop edges;
  - deferred erasure (`set_not_erase`, `set_erase`, `set_bad_flag`);
  - `features_in_area`, `unproject_stereo` and
    `compute_scene_median_depth`.
- `slamcore.keyframe_database.KeyFrameDatabase` is an inverted index from
  bag-of-words entries to keyframes. `detect_loop_candidates` and
  `detect_relocalization_candidates` score candidates and accumulate the
  scores over covisible neighbours. The vocabulary object you pass in must
  provide `score(bow_a, bow_b)`.
- `slamcore.frame_drawer.FrameDrawer` and `TrackingState` copy the state
  of a tracker and return an RGB numpy image. The image shows the tracked
  features, or the initialisation matches, with a status line appended
  below (`text_info`).
- `slamcore.local_mapping.LocalMapping` is a keyframe-queue worker that
  you run in its own thread (`run`). It:
  - attaches map points to incoming keyframes;
  - culls recent map points and redundant keyframes;
  - hands processed keyframes to `loop_closer.insert_keyframe` when a loop
    closer is set;
  - handles stop, release, reset and finish requests.

  You can attach three optional callables: `triangulator`, `fuser` and
  `bundle_adjuster`. The culling rules are also available as plain
  functions in `slamcore.culling` (`map_point_culling`,
  `is_redundant_keyframe`, `keyframe_culling`).
- `slamcore.new_points` contains:
  - `skew_symmetric`;
  - `compute_f12`, the fundamental matrix between two keyframes;
  - `triangulate_match`, which triangulates one match with the parallax,
    depth, reprojection and scale-consistency checks.
- Monocular initialisation from two views is split over three modules:
  - `slamcore.two_view` has `normalize`, `compute_h21`, `compute_f21`,
    `triangulate` and `decompose_e`.
  - `slamcore.model_scoring` has `check_homography`, `check_fundamental`
    and `check_rt`, which returns an `RTCheck`.
  - `slamcore.initializer.Initializer` fits a homography and a fundamental
    matrix by seeded RANSAC and picks the better model. It then recovers
    the motion and the points as a `Reconstruction`, or returns `None`.

## Installation

```
pip install .
```

Tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## Example

```python
import numpy as np
from slamcore.two_view import triangulate

k = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
p1 = k @ np.hstack([np.eye(3), np.zeros((3, 1))])
p2 = k @ np.hstack([np.eye(3), np.array([[-0.1], [0.0], [0.0]])])

point = triangulate((370.0, 215.0), (345.0, 215.0), p1, p2)
# point is close to [0.2, -0.1, 2.0]
```

## What it does not do

The package does not:

- extract features or descriptors from images;
- load or build a visual vocabulary;
- run bundle adjustment or pose-graph optimisation;
- detect or correct loops;
- display anything in a window.

You supply these as objects and callables with the attributes each class
documents. For example, `LocalMapping` runs bundle adjustment only through
the `bundle_adjuster` you attach. There is no command-line program: the
package is a library you import.