"""Map, keyframe, local mapping and two-view geometry building blocks for visual SLAM."""

__version__ = "0.1.0"