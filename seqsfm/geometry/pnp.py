"""
Perspective-n-Point pose estimation and camera resection.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np
from scipy.linalg import rq
from scipy.optimize import least_squares

from seqsfm.sfm_inc.data_structures import Intrinsic, Pose

logger = logging.getLogger(__name__)


def estimate_camera_pose_pnp(
    intrinsic: Intrinsic,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    threshold: float = 4.0,
    confidence: float = 0.999,
    iterations: int = 1000,
) -> Optional[Tuple[Pose, np.ndarray]]:
    """
    Estimate camera pose from 3D-2D correspondences using PnP RANSAC.

    Args:
        intrinsic: Known calibration of the camera.
        points_3d: 3D points in world coordinates (N, 3).
        points_2d: Corresponding 2D points in pixel coordinates (N, 2).
        threshold: RANSAC reprojection threshold in pixels.
        confidence: RANSAC confidence.
        iterations: Maximum number of RANSAC iterations.

    Returns:
        Tuple of (pose, inlier_mask) or None if RANSAC failed. The pose is
        refined with Levenberg-Marquardt on the inliers.
    """
    if len(points_3d) < 4:
        return None

    obj = np.ascontiguousarray(points_3d, dtype=np.float64).reshape(-1, 1, 3)
    img = np.ascontiguousarray(points_2d, dtype=np.float64).reshape(-1, 1, 2)
    K = intrinsic.K
    dist = intrinsic.dist_coeffs

    success, rvec, tvec, inliers = cv2.solvePnPRansac(
        obj,
        img,
        K,
        dist,
        flags=cv2.SOLVEPNP_SQPNP,
        reprojectionError=threshold,
        confidence=confidence,
        iterationsCount=iterations,
    )
    if not success or inliers is None or len(inliers) < 4:
        return None

    idx = inliers.ravel()
    rvec, tvec = cv2.solvePnPRefineLM(obj[idx], img[idx], K, dist, rvec, tvec)

    pose = Pose.from_rvec(rvec, tvec)
    inlier_mask = np.zeros(len(points_3d), dtype=bool)
    inlier_mask[idx] = True

    logger.debug(
        "PnP pose: center %s, %d/%d inliers",
        np.round(pose.center(), 3),
        int(inlier_mask.sum()),
        len(points_3d),
    )
    return pose, inlier_mask


def _normalize_hartley(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Similarity moving the centroid to 0 and the mean distance to sqrt(dim)."""
    dim = points.shape[1]
    mean = np.mean(points, axis=0)
    dist = np.mean(np.linalg.norm(points - mean, axis=1))
    scale = np.sqrt(dim) / dist if dist > 1e-12 else 1.0
    T = np.eye(dim + 1)
    T[:dim, :dim] *= scale
    T[:dim, dim] = -scale * mean
    homogeneous = np.hstack([points, np.ones((len(points), 1))])
    return (T @ homogeneous.T).T, T


def estimate_projection_matrix_dlt(points_3d: np.ndarray, points_2d: np.ndarray) -> np.ndarray:
    """
    Direct linear transform estimate of a 3x4 camera matrix (needs >= 6 points).

    Raises:
        ValueError: If fewer than 6 correspondences are provided.
    """
    if len(points_3d) < 6:
        raise ValueError(f"Need at least 6 correspondences, got {len(points_3d)}")

    X, T3 = _normalize_hartley(np.asarray(points_3d, dtype=np.float64))
    x, T2 = _normalize_hartley(np.asarray(points_2d, dtype=np.float64))

    A = np.zeros((2 * len(X), 12))
    for i, (Xi, xi) in enumerate(zip(X, x)):
        A[2 * i, 4:8] = -xi[2] * Xi
        A[2 * i, 8:12] = xi[1] * Xi
        A[2 * i + 1, 0:4] = xi[2] * Xi
        A[2 * i + 1, 8:12] = -xi[0] * Xi

    _, _, Vt = np.linalg.svd(A)
    P_norm = Vt[-1].reshape(3, 4)
    P = np.linalg.inv(T2) @ P_norm @ T3
    # Fix the projective sign so that depths are positive in front of the camera.
    if np.linalg.det(P[:, :3]) < 0:
        P = -P
    return P


def decompose_projection_matrix(P: np.ndarray) -> Tuple[np.ndarray, Pose]:
    """
    Split a camera matrix into calibration and pose, P ~ K [R | t].

    Returns:
        Tuple of (K, pose) with K[2, 2] == 1 and a positive diagonal.
    """
    P = np.asarray(P, dtype=np.float64)
    if np.linalg.det(P[:, :3]) < 0:
        P = -P
    K, R = rq(P[:, :3])
    D = np.diag(np.sign(np.diag(K)))
    K = K @ D
    R = D @ R
    scale = K[2, 2]
    K = K / scale
    t = np.linalg.solve(K, P[:, 3]) / scale
    return K, Pose(R, t)


def _projection_errors(P: np.ndarray, points_3d: np.ndarray, points_2d: np.ndarray) -> np.ndarray:
    homogeneous = np.hstack([points_3d, np.ones((len(points_3d), 1))])
    proj = homogeneous @ P.T
    z = proj[:, 2]
    behind = z <= 1e-12
    z = np.where(behind, 1.0, z)
    errors = np.linalg.norm(proj[:, :2] / z[:, None] - points_2d, axis=1)
    errors[behind] = np.inf
    return errors


def estimate_camera_dlt_ransac(
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    threshold: float,
    max_iterations: int = 1000,
    confidence: float = 0.999,
    rng: Optional[np.random.Generator] = None,
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """
    RANSAC over 6-point DLT camera matrices, for views with unknown calibration.

    Returns:
        Tuple of (P, inlier_mask) refit on all inliers, or None.
    """
    n = len(points_3d)
    if n < 6:
        return None
    if rng is None:
        rng = np.random.default_rng(0)

    points_3d = np.asarray(points_3d, dtype=np.float64)
    points_2d = np.asarray(points_2d, dtype=np.float64)
    spread = np.linalg.svd(points_3d - points_3d.mean(axis=0), compute_uv=False)
    if spread[0] < 1e-12 or spread[-1] / spread[0] < 1e-6:
        # Coplanar points do not constrain the 11 DLT parameters.
        return None

    best_mask: Optional[np.ndarray] = None
    n_iterations = max_iterations
    iteration = 0
    while iteration < n_iterations:
        iteration += 1
        sample = rng.choice(n, size=6, replace=False)
        try:
            P = estimate_projection_matrix_dlt(points_3d[sample], points_2d[sample])
        except np.linalg.LinAlgError:
            continue
        mask = _projection_errors(P, points_3d, points_2d) < threshold
        if best_mask is None or mask.sum() > best_mask.sum():
            best_mask = mask
            inlier_ratio = mask.sum() / n
            if inlier_ratio >= 1.0:
                break
            denom = np.log(max(1.0 - inlier_ratio**6, 1e-12))
            n_iterations = min(max_iterations, int(np.ceil(np.log(1.0 - confidence) / denom)))

    if best_mask is None or best_mask.sum() < 6:
        return None

    P = estimate_projection_matrix_dlt(points_3d[best_mask], points_2d[best_mask])
    mask = _projection_errors(P, points_3d, points_2d) < threshold
    if mask.sum() < 6:
        return None
    return P, mask


def refine_pose_and_focal(
    intrinsic: Intrinsic,
    pose: Pose,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> Tuple[Intrinsic, Pose]:
    """Jointly refine pose and focal length on inlier correspondences."""
    x0 = np.concatenate([pose.rvec(), pose.t, [intrinsic.focal]])

    def residuals(params: np.ndarray) -> np.ndarray:
        candidate_pose = Pose.from_rvec(params[:3], params[3:6])
        candidate = Intrinsic(
            intrinsic.intrinsic_id,
            intrinsic.width,
            intrinsic.height,
            focal=params[6],
            cx=intrinsic.cx,
            cy=intrinsic.cy,
            k1=intrinsic.k1,
            k2=intrinsic.k2,
        )
        cam = candidate_pose.transform(points_3d)
        cam[:, 2] = np.maximum(cam[:, 2], 1e-9)
        return (candidate.project(cam) - points_2d).ravel()

    result = least_squares(residuals, x0, method="trf", loss="soft_l1", x_scale="jac")
    refined = Intrinsic(
        intrinsic.intrinsic_id,
        intrinsic.width,
        intrinsic.height,
        focal=float(result.x[6]),
        cx=intrinsic.cx,
        cy=intrinsic.cy,
        k1=intrinsic.k1,
        k2=intrinsic.k2,
        serial_number=intrinsic.serial_number,
        locked=intrinsic.locked,
    )
    return refined, Pose.from_rvec(result.x[:3], result.x[3:6])


def is_degenerate_configuration(points_2d: np.ndarray, min_ratio: float = 1e-3) -> bool:
    """True if image points are (nearly) collinear or coincident."""
    if len(points_2d) < 3:
        return True
    centered = points_2d - points_2d.mean(axis=0)
    s = np.linalg.svd(centered, compute_uv=False)
    return s[0] < 1e-9 or s[-1] / s[0] < min_ratio


__all__ = [
    "estimate_camera_pose_pnp",
    "estimate_projection_matrix_dlt",
    "decompose_projection_matrix",
    "estimate_camera_dlt_ransac",
    "refine_pose_and_focal",
    "is_degenerate_configuration",
]
