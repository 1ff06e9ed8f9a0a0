"""
3D point triangulation from two or more posed views.

All solvers work on undistorted normalized image coordinates, so projection
matrices are plain [R | t] world-to-camera transforms.
"""

from __future__ import annotations

import itertools
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from seqsfm.sfm_inc.data_structures import Intrinsic, Pose


def triangulate_two_view(
    pose1: Pose,
    pose2: Pose,
    pts1: np.ndarray,
    pts2: np.ndarray,
) -> np.ndarray:
    """
    Triangulate matched normalized points from two views.

    Args:
        pose1: World-to-camera pose of the first view.
        pose2: World-to-camera pose of the second view.
        pts1: Normalized points in the first view (N, 2).
        pts2: Normalized points in the second view (N, 2).

    Returns:
        Triangulated points (N, 3) in world coordinates.
    """
    if len(pts1) == 0:
        return np.zeros((0, 3))

    P1 = np.hstack([pose1.R, pose1.t.reshape(3, 1)])
    P2 = np.hstack([pose2.R, pose2.t.reshape(3, 1)])
    points_4d = cv2.triangulatePoints(
        P1, P2, np.asarray(pts1, dtype=np.float64).T, np.asarray(pts2, dtype=np.float64).T
    )
    w = points_4d[3]
    w = np.where(np.abs(w) < 1e-12, 1e-12, w)
    return (points_4d[:3] / w).T


def triangulate_dlt(poses: Sequence[Pose], pts: np.ndarray) -> np.ndarray:
    """
    Linear multi-view triangulation of one point.

    Args:
        poses: World-to-camera poses of the observing views.
        pts: Normalized observations (M, 2), one row per pose.

    Returns:
        The 3D point (3,) minimizing the algebraic error.
    """
    A = np.zeros((2 * len(poses), 4))
    for i, (pose, (x, y)) in enumerate(zip(poses, pts)):
        P = np.hstack([pose.R, pose.t.reshape(3, 1)])
        A[2 * i] = x * P[2] - P[0]
        A[2 * i + 1] = y * P[2] - P[1]
    _, _, Vt = np.linalg.svd(A)
    X = Vt[-1]
    if abs(X[3]) < 1e-12:
        return X[:3] * 1e12
    return X[:3] / X[3]


def check_cheirality(X: np.ndarray, poses: Sequence[Pose]) -> bool:
    """True if the point lies in front of every camera."""
    return all(float(pose.depth(X)) > 0.0 for pose in poses)


def ray_angle_deg(center1: np.ndarray, center2: np.ndarray, X: np.ndarray) -> float:
    """Angle in degrees between the rays from two camera centers to X."""
    r1 = X - center1
    r2 = X - center2
    denom = np.linalg.norm(r1) * np.linalg.norm(r2)
    if denom < 1e-12:
        return 0.0
    cos = np.clip(np.dot(r1, r2) / denom, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos)))


def max_ray_angle_deg(X: np.ndarray, centers: Sequence[np.ndarray]) -> float:
    """Largest ray angle over all pairs of camera centers."""
    best = 0.0
    for c1, c2 in itertools.combinations(centers, 2):
        best = max(best, ray_angle_deg(c1, c2, X))
    return best


def reprojection_errors(
    X: np.ndarray,
    poses: Sequence[Pose],
    intrinsics: Sequence[Intrinsic],
    pixels: np.ndarray,
) -> np.ndarray:
    """Reprojection error in pixels of X in every observing view (M,)."""
    errors = np.empty(len(poses))
    for i, (pose, intrinsic) in enumerate(zip(poses, intrinsics)):
        x_cam = pose.transform(X)
        if x_cam[2] <= 0:
            errors[i] = np.inf
            continue
        errors[i] = float(intrinsic.residuals(x_cam[None, :], pixels[i][None, :])[0])
    return errors


def triangulate_robust(
    poses: Sequence[Pose],
    intrinsics: Sequence[Intrinsic],
    pixels: np.ndarray,
    normalized: np.ndarray,
    threshold: float,
    min_inliers: int = 2,
    max_iterations: int = 50,
    rng: Optional[np.random.Generator] = None,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    RANSAC multi-view triangulation of one track.

    Minimal samples are view pairs. With two views the DLT solution is
    returned directly if it reprojects within the threshold.

    Args:
        poses: World-to-camera poses of the observing views.
        intrinsics: Intrinsics of the observing views.
        pixels: Pixel observations (M, 2).
        normalized: Normalized observations (M, 2).
        threshold: Inlier reprojection threshold in pixels.
        min_inliers: Minimum number of inlier views.
        max_iterations: Maximum number of sampled pairs.
        rng: Random generator used when there are more pairs than iterations.

    Returns:
        Tuple of (X, inlier_mask) or None if no model has enough inliers.
    """
    n_views = len(poses)
    if n_views < 2:
        return None

    pairs = list(itertools.combinations(range(n_views), 2))
    if len(pairs) > max_iterations:
        if rng is None:
            rng = np.random.default_rng(0)
        chosen = rng.choice(len(pairs), size=max_iterations, replace=False)
        pairs = [pairs[i] for i in chosen]

    best_mask: Optional[np.ndarray] = None
    best_error = np.inf
    for i, j in pairs:
        X = triangulate_dlt([poses[i], poses[j]], normalized[[i, j]])
        errors = reprojection_errors(X, poses, intrinsics, pixels)
        mask = errors < threshold
        n_inliers = int(mask.sum())
        if n_inliers < 2:
            continue
        error = float(np.sum(errors[mask]))
        if best_mask is None or n_inliers > best_mask.sum() or (
            n_inliers == best_mask.sum() and error < best_error
        ):
            best_mask, best_error = mask, error
        if n_inliers == n_views:
            break

    if best_mask is None or best_mask.sum() < min_inliers:
        return None

    idx = np.flatnonzero(best_mask)
    X = triangulate_dlt([poses[i] for i in idx], normalized[idx])
    errors = reprojection_errors(X, poses, intrinsics, pixels)
    mask = errors < threshold
    if mask.sum() < min_inliers:
        return None
    return X, mask


def triangulate_matched_points(
    intrinsic1: Intrinsic,
    pose1: Pose,
    intrinsic2: Intrinsic,
    pose2: Pose,
    pixels1: np.ndarray,
    pixels2: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Triangulate matched pixels from two views and measure reprojection errors.

    Returns:
        Tuple of (points_3d, reprojection_errors) where the errors are the
        worse of the two views per point (N,).
    """
    if len(pixels1) == 0:
        return np.zeros((0, 3)), np.zeros(0)
    n1 = intrinsic1.normalize(pixels1)
    n2 = intrinsic2.normalize(pixels2)
    points_3d = triangulate_two_view(pose1, pose2, n1, n2)
    errors = _two_view_errors(intrinsic1, pose1, intrinsic2, pose2, pixels1, pixels2, points_3d)
    return points_3d, errors


def _two_view_errors(
    intrinsic1: Intrinsic,
    pose1: Pose,
    intrinsic2: Intrinsic,
    pose2: Pose,
    pixels1: np.ndarray,
    pixels2: np.ndarray,
    points_3d: np.ndarray,
) -> np.ndarray:
    cam1 = pose1.transform(points_3d)
    cam2 = pose2.transform(points_3d)
    errors = np.maximum(
        intrinsic1.residuals(cam1, pixels1),
        intrinsic2.residuals(cam2, pixels2),
    )
    behind = (cam1[:, 2] <= 0) | (cam2[:, 2] <= 0)
    errors[behind] = np.inf
    return errors


def ray_angles_two_view(pose1: Pose, pose2: Pose, points_3d: np.ndarray) -> np.ndarray:
    """Triangulation angle in degrees of every point (N,) for two views."""
    r1 = points_3d - pose1.center()
    r2 = points_3d - pose2.center()
    cos = np.sum(r1 * r2, axis=1) / np.maximum(
        np.linalg.norm(r1, axis=1) * np.linalg.norm(r2, axis=1), 1e-12
    )
    return np.degrees(np.arccos(np.clip(cos, -1.0, 1.0)))


__all__: List[str] = [
    "triangulate_two_view",
    "triangulate_dlt",
    "check_cheirality",
    "ray_angle_deg",
    "max_ray_angle_deg",
    "reprojection_errors",
    "triangulate_robust",
    "triangulate_matched_points",
    "ray_angles_two_view",
]
