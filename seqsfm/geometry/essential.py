"""
Relative pose estimation between two calibrated views.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from seqsfm.geometry.triangulation import triangulate_two_view
from seqsfm.sfm_inc.data_structures import Pose

logger = logging.getLogger(__name__)


@dataclass
class RelativePose:
    """Pose of the second camera relative to the first, unit baseline."""

    R: np.ndarray
    t: np.ndarray
    # Correspondences consistent with the pose and in front of both cameras.
    inlier_mask: np.ndarray
    source: str = "essential"

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inlier_mask))


def _candidate_poses(
    pts1: np.ndarray,
    pts2: np.ndarray,
    threshold: float,
    confidence: float,
) -> List[Tuple[np.ndarray, np.ndarray, str]]:
    """Motion hypotheses from the essential matrix and from a homography."""
    candidates: List[Tuple[np.ndarray, np.ndarray, str]] = []

    E, _ = cv2.findEssentialMat(
        pts1,
        pts2,
        cameraMatrix=np.eye(3),
        method=cv2.RANSAC,
        prob=confidence,
        threshold=threshold,
    )
    if E is not None and E.shape[0] >= 3:
        # OpenCV may stack several solutions vertically.
        for k in range(E.shape[0] // 3):
            R1, R2, t = cv2.decomposeEssentialMat(E[3 * k: 3 * k + 3])
            for R in (R1, R2):
                for sign in (1.0, -1.0):
                    candidates.append((R, sign * t.ravel(), "essential"))

    # Planar scenes make the essential matrix ambiguous; the homography
    # decomposition provides the physically meaningful alternatives.
    H, _ = cv2.findHomography(pts1, pts2, cv2.RANSAC, threshold)
    if H is not None:
        _, Rs, ts, _ = cv2.decomposeHomographyMat(H, np.eye(3))
        for R, t in zip(Rs, ts):
            norm = np.linalg.norm(t)
            if norm > 1e-9:
                candidates.append((R, t.ravel() / norm, "homography"))

    return candidates


def _score_candidate(
    R: np.ndarray,
    t: np.ndarray,
    pts1: np.ndarray,
    pts2: np.ndarray,
    threshold: float,
) -> Tuple[np.ndarray, float]:
    """Mask of points in front of both cameras that reproject within threshold."""
    pose1 = Pose.identity()
    pose2 = Pose(R, t)
    X = triangulate_two_view(pose1, pose2, pts1, pts2)
    cam1 = pose1.transform(X)
    cam2 = pose2.transform(X)
    in_front = (cam1[:, 2] > 0) & (cam2[:, 2] > 0)
    safe_z1 = np.where(in_front, cam1[:, 2], 1.0)[:, None]
    safe_z2 = np.where(in_front, cam2[:, 2], 1.0)[:, None]
    err1 = np.linalg.norm(cam1[:, :2] / safe_z1 - pts1, axis=1)
    err2 = np.linalg.norm(cam2[:, :2] / safe_z2 - pts2, axis=1)
    mask = in_front & (err1 < threshold) & (err2 < threshold)
    residual = float(np.sum(err1[mask] + err2[mask]))
    return mask, residual


def estimate_relative_pose(
    pts1: np.ndarray,
    pts2: np.ndarray,
    threshold: float,
    confidence: float = 0.999,
    min_inliers: int = 8,
) -> Optional[RelativePose]:
    """
    Robustly estimate the relative pose between two calibrated views.

    Args:
        pts1: Normalized points in the first image (N, 2).
        pts2: Normalized points in the second image (N, 2).
        threshold: Inlier threshold in normalized image units.
        confidence: RANSAC confidence level.
        min_inliers: Minimum number of valid correspondences.

    Returns:
        RelativePose with a unit-norm translation, such that a point X in the
        first camera frame maps to ``R @ X + t`` in the second, or None.
    """
    pts1 = np.ascontiguousarray(pts1, dtype=np.float64)
    pts2 = np.ascontiguousarray(pts2, dtype=np.float64)
    if len(pts1) < max(min_inliers, 5):
        return None

    best: Optional[RelativePose] = None
    best_residual = np.inf
    for R, t, source in _candidate_poses(pts1, pts2, threshold, confidence):
        mask, residual = _score_candidate(R, t, pts1, pts2, threshold)
        n_inliers = int(mask.sum())
        if best is None or n_inliers > best.num_inliers or (
            n_inliers == best.num_inliers and residual < best_residual
        ):
            best = RelativePose(R=np.asarray(R, dtype=np.float64), t=np.asarray(t, dtype=np.float64), inlier_mask=mask, source=source)
            best_residual = residual

    if best is None or best.num_inliers < min_inliers:
        logger.debug("Relative pose estimation failed (%s inliers)", None if best is None else best.num_inliers)
        return None
    return best


__all__ = ["RelativePose", "estimate_relative_pose"]
