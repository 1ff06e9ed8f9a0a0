"""
Comparison of a reconstruction with a ground-truth scene.

The reconstruction is defined up to a similarity, so it is first aligned to
the ground truth: the rotation is averaged over the per-view rotation
differences, and scale and translation are fitted on the camera centers.
Errors are then measured per view.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from seqsfm.sfm_inc.data_structures import Pose, SfMData

logger = logging.getLogger(__name__)


def rotation_angle_deg(R: np.ndarray) -> float:
    """Angle in degrees of a rotation matrix."""
    cos = (np.trace(R) - 1.0) / 2.0
    return float(np.degrees(np.arccos(np.clip(cos, -1.0, 1.0))))


def project_to_rotation(M: np.ndarray) -> np.ndarray:
    """Closest rotation matrix (Frobenius norm) to a 3x3 matrix."""
    U, _, Vt = np.linalg.svd(M)
    D = np.diag([1.0, 1.0, np.sign(np.linalg.det(U @ Vt))])
    return U @ D @ Vt


@dataclass
class Similarity:
    """x_gt = scale * R @ x + t"""

    scale: float = 1.0
    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def apply(self, points: np.ndarray) -> np.ndarray:
        points = np.asarray(points, dtype=np.float64)
        return self.scale * points @ self.R.T + self.t

    def apply_to_pose(self, pose: Pose) -> Pose:
        """Express a world-to-camera pose in the target frame."""
        R = pose.R @ self.R.T
        center = self.apply(pose.center()[None, :])[0]
        return Pose(R, -R @ center)


def estimate_similarity(estimated: Dict[int, Pose], ground_truth: Dict[int, Pose]) -> Similarity:
    """
    Similarity mapping the estimated frame onto the ground-truth frame.

    Args:
        estimated: World-to-camera poses of the reconstruction, per view.
        ground_truth: World-to-camera ground-truth poses, per view.

    Returns:
        The fitted Similarity over the views present in both.

    Raises:
        ValueError: If fewer than two views are common.
    """
    common = sorted(set(estimated) & set(ground_truth))
    if len(common) < 2:
        raise ValueError("At least two common views are needed to align a reconstruction")

    # R_est_i = R_gt_i @ R_s for every view.
    M = sum(ground_truth[v].R.T @ estimated[v].R for v in common)
    R = project_to_rotation(M)

    c_est = np.array([estimated[v].center() for v in common])
    c_gt = np.array([ground_truth[v].center() for v in common])
    mean_est = c_est.mean(axis=0)
    mean_gt = c_gt.mean(axis=0)
    rotated = (c_est - mean_est) @ R.T
    denom = float(np.sum(rotated * rotated))
    scale = float(np.sum(rotated * (c_gt - mean_gt)) / denom) if denom > 1e-12 else 1.0
    t = mean_gt - scale * R @ mean_est
    return Similarity(scale, R, t)


@dataclass
class EvaluationResult:
    num_views: int
    num_common_views: int
    similarity: Similarity
    rotation_errors_deg: Dict[int, float] = field(default_factory=dict)
    center_errors: Dict[int, float] = field(default_factory=dict)

    @property
    def max_rotation_error_deg(self) -> float:
        return max(self.rotation_errors_deg.values(), default=0.0)

    @property
    def max_center_error(self) -> float:
        return max(self.center_errors.values(), default=0.0)

    def to_dict(self) -> dict:
        rot = np.array(list(self.rotation_errors_deg.values()))
        ctr = np.array(list(self.center_errors.values()))
        return {
            "num_views": self.num_views,
            "num_common_views": self.num_common_views,
            "scale": self.similarity.scale,
            "rotation_error_mean": float(rot.mean()) if rot.size else 0.0,
            "rotation_error_median": float(np.median(rot)) if rot.size else 0.0,
            "rotation_error_max": self.max_rotation_error_deg,
            "center_error_mean": float(ctr.mean()) if ctr.size else 0.0,
            "center_error_median": float(np.median(ctr)) if ctr.size else 0.0,
            "center_error_max": self.max_center_error,
            "rotation_errors_deg": {str(k): v for k, v in self.rotation_errors_deg.items()},
            "center_errors": {str(k): v for k, v in self.center_errors.items()},
        }


def _view_poses(sfm_data: SfMData) -> Dict[int, Pose]:
    return {v: sfm_data.get_pose(sfm_data.views[v]) for v in sfm_data.get_valid_views()}


def evaluate_reconstruction(
    sfm_data: SfMData,
    ground_truth: Optional[SfMData] = None,
    ground_truth_poses: Optional[Dict[int, Pose]] = None,
) -> EvaluationResult:
    """
    Align a reconstruction to ground truth and measure per-view pose errors.

    Args:
        sfm_data: Reconstructed scene.
        ground_truth: Scene holding the reference poses of the same view ids.
        ground_truth_poses: Reference poses per view id, overriding the poses of
            `ground_truth` when given. At least one of the two is required.

    Returns:
        EvaluationResult with rotation errors (degrees) and camera center
        errors (ground-truth units) of every common view.

    Raises:
        ValueError: If neither `ground_truth` nor `ground_truth_poses` is given.
    """
    if ground_truth is None and ground_truth_poses is None:
        raise ValueError("evaluate_reconstruction needs ground_truth or ground_truth_poses")
    estimated = _view_poses(sfm_data)
    reference = ground_truth_poses if ground_truth_poses is not None else _view_poses(ground_truth)
    similarity = estimate_similarity(estimated, reference)

    result = EvaluationResult(
        num_views=len(ground_truth.views if ground_truth is not None else sfm_data.views),
        num_common_views=len(set(estimated) & set(reference)),
        similarity=similarity,
    )
    for view_id in sorted(set(estimated) & set(reference)):
        aligned = similarity.apply_to_pose(estimated[view_id])
        gt = reference[view_id]
        result.rotation_errors_deg[view_id] = rotation_angle_deg(aligned.R @ gt.R.T)
        result.center_errors[view_id] = float(np.linalg.norm(aligned.center() - gt.center()))

    logger.info(
        "Evaluated %d/%d views: max rotation error %.3f deg, max center error %.4f",
        result.num_common_views,
        result.num_views,
        result.max_rotation_error_deg,
        result.max_center_error,
    )
    return result


__all__ = [
    "rotation_angle_deg",
    "project_to_rotation",
    "Similarity",
    "estimate_similarity",
    "EvaluationResult",
    "evaluate_reconstruction",
]
