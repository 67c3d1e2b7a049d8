"""Triangulation of new map points between two keyframes."""

from __future__ import annotations

import math

import numpy as np

# Chi-square thresholds at 95% for two and three degrees of freedom.
CHI2_MONO = 5.991
CHI2_STEREO = 7.8
# Rays closer than this cosine carry too little parallax to triangulate.
MAX_COS_PARALLAX = 0.9998


def skew_symmetric(v) -> np.ndarray:
    """The matrix ``[v]x`` with ``[v]x @ w == cross(v, w)``."""
    x, y, z = np.asarray(v, dtype=np.float64).ravel()
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def compute_f12(keyframe1, keyframe2) -> np.ndarray:
    """Fundamental matrix mapping pixels of ``keyframe2`` to epipolar lines in ``keyframe1``."""
    r1w = np.asarray(keyframe1.rotation(), dtype=np.float64)
    t1w = np.asarray(keyframe1.translation(), dtype=np.float64).ravel()
    r2w = np.asarray(keyframe2.rotation(), dtype=np.float64)
    t2w = np.asarray(keyframe2.translation(), dtype=np.float64).ravel()

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(keyframe1.calibration, dtype=np.float64).reshape(3, 3)
    k2 = np.asarray(keyframe2.calibration, dtype=np.float64).reshape(3, 3)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


def _normalized_ray(keyframe, key) -> np.ndarray:
    x, y = key.pt
    return np.array([(x - keyframe.cx) * keyframe.invfx, (y - keyframe.cy) * keyframe.invfy, 1.0])


def _reprojection_ok(keyframe, rcw, tcw, point, key, u_right, stereo, bf) -> bool:
    camera = rcw @ point + tcw
    invz = 1.0 / camera[2]
    u = keyframe.fx * camera[0] * invz + keyframe.cx
    v = keyframe.fy * camera[1] * invz + keyframe.cy
    kx, ky = key.pt
    err_x = u - kx
    err_y = v - ky
    sigma2 = keyframe.level_sigma2[key.octave]
    if not stereo:
        return err_x * err_x + err_y * err_y <= CHI2_MONO * sigma2
    err_r = (u - bf * invz) - u_right
    return err_x * err_x + err_y * err_y + err_r * err_r <= CHI2_STEREO * sigma2


def triangulate_match(keyframe1, keyframe2, index1: int, index2: int) -> np.ndarray | None:
    """World position of the point seen at ``index1`` in ``keyframe1`` and ``index2``
    in ``keyframe2``, or None when the match fails a check.

    The point is triangulated linearly when the rays have enough parallax,
    otherwise taken from stereo depth when that gives a better-conditioned
    estimate. It must lie in front of both cameras, reproject within the
    chi-square bounds of its pyramid level and agree with the scale of both
    observations. ``keyframe1`` is the keyframe being processed; its stereo
    baseline times focal length is used for both stereo checks.
    """
    rcw1 = np.asarray(keyframe1.rotation(), dtype=np.float64)
    tcw1 = np.asarray(keyframe1.translation(), dtype=np.float64).ravel()
    rcw2 = np.asarray(keyframe2.rotation(), dtype=np.float64)
    tcw2 = np.asarray(keyframe2.translation(), dtype=np.float64).ravel()
    rwc1 = rcw1.T
    rwc2 = rcw2.T
    pose1 = np.hstack([rcw1, tcw1[:, None]])
    pose2 = np.hstack([rcw2, tcw2[:, None]])

    key1 = keyframe1.keys_un[index1]
    key2 = keyframe2.keys_un[index2]
    u_right1 = keyframe1.u_right[index1]
    u_right2 = keyframe2.u_right[index2]
    stereo1 = u_right1 >= 0
    stereo2 = u_right2 >= 0

    xn1 = _normalized_ray(keyframe1, key1)
    xn2 = _normalized_ray(keyframe2, key2)
    ray1 = rwc1 @ xn1
    ray2 = rwc2 @ xn2
    cos_rays = float(ray1 @ ray2 / (np.linalg.norm(ray1) * np.linalg.norm(ray2)))

    cos_stereo1 = cos_stereo2 = cos_rays + 1
    if stereo1:
        cos_stereo1 = math.cos(2 * math.atan2(keyframe1.baseline / 2, keyframe1.depth[index1]))
    elif stereo2:
        cos_stereo2 = math.cos(2 * math.atan2(keyframe2.baseline / 2, keyframe2.depth[index2]))
    cos_stereo = min(cos_stereo1, cos_stereo2)

    if cos_rays < cos_stereo and cos_rays > 0 and (stereo1 or stereo2 or cos_rays < MAX_COS_PARALLAX):
        a = np.vstack(
            [
                xn1[0] * pose1[2] - pose1[0],
                xn1[1] * pose1[2] - pose1[1],
                xn2[0] * pose2[2] - pose2[0],
                xn2[1] * pose2[2] - pose2[1],
            ]
        )
        _, _, vt = np.linalg.svd(a)
        homogeneous = vt[3]
        if homogeneous[3] == 0:
            return None
        point = homogeneous[:3] / homogeneous[3]
    elif stereo1 and cos_stereo1 < cos_stereo2:
        point = keyframe1.unproject_stereo(index1)
    elif stereo2 and cos_stereo2 < cos_stereo1:
        point = keyframe2.unproject_stereo(index2)
    else:
        return None
    if point is None:
        return None
    point = np.asarray(point, dtype=np.float64).ravel()

    if rcw1[2] @ point + tcw1[2] <= 0:
        return None
    if rcw2[2] @ point + tcw2[2] <= 0:
        return None

    if not _reprojection_ok(keyframe1, rcw1, tcw1, point, key1, u_right1, stereo1, keyframe1.bf):
        return None
    if not _reprojection_ok(keyframe2, rcw2, tcw2, point, key2, u_right2, stereo2, keyframe1.bf):
        return None

    dist1 = float(np.linalg.norm(point - np.asarray(keyframe1.camera_center(), dtype=np.float64)))
    dist2 = float(np.linalg.norm(point - np.asarray(keyframe2.camera_center(), dtype=np.float64)))
    if dist1 == 0 or dist2 == 0:
        return None

    ratio_factor = 1.5 * keyframe1.scale_factor
    ratio_dist = dist2 / dist1
    ratio_octave = keyframe1.scale_factors[key1.octave] / keyframe2.scale_factors[key2.octave]
    if ratio_dist * ratio_factor < ratio_octave or ratio_dist > ratio_octave * ratio_factor:
        return None

    return point