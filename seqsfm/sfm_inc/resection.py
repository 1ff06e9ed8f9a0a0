"""
Resection of new views from the existing 3D structure.

Resection runs in two steps so that a batch of views can be processed in
parallel: `compute_resection` only reads the scene and returns a
`ResectionData` record, and `apply_resection` merges one record into the
scene. The scene must not be mutated while `resect_views` is running.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from seqsfm.geometry.pnp import (
    decompose_projection_matrix,
    estimate_camera_dlt_ransac,
    estimate_camera_pose_pnp,
    is_degenerate_configuration,
    refine_pose_and_focal,
)
from seqsfm.sfm_inc.config import SequentialSfMConfig, ThresholdPolicy
from seqsfm.sfm_inc.data_structures import Intrinsic, Pose, SfMData
from seqsfm.sfm_inc.report import ReconstructionReport
from seqsfm.sfm_inc.tracks import FeaturesPerView, TracksMap, TracksPerView, make_observation

logger = logging.getLogger(__name__)

# Consistency factor between the median absolute deviation and a Gaussian sigma.
MAD_TO_SIGMA = 1.4826


@dataclass
class ResectionData:
    """Everything produced by one resection attempt; never stored in the scene."""

    view_id: int
    track_ids: List[int] = field(default_factory=list)
    feature_ids: List[int] = field(default_factory=list)
    points_2d: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    points_3d: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    pose: Optional[Pose] = None
    # Estimated calibration when the view's intrinsic was unknown.
    intrinsic: Optional[Intrinsic] = None
    is_new_intrinsic: bool = False
    inliers: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=bool))
    threshold: float = 0.0

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inliers))


def collect_correspondences(
    sfm_data: SfMData,
    view_id: int,
    features: FeaturesPerView,
    tracks: TracksMap,
    tracks_per_view: TracksPerView,
) -> ResectionData:
    """2D-3D correspondences between a view and the existing landmarks."""
    data = ResectionData(view_id=view_id)
    points_2d, points_3d = [], []
    for track_id in tracks_per_view.get(view_id, []):
        landmark = sfm_data.structure.get(track_id)
        if landmark is None:
            continue
        track = tracks[track_id]
        feature_id = track.observations[view_id]
        data.track_ids.append(track_id)
        data.feature_ids.append(feature_id)
        points_2d.append(make_observation(features, view_id, track.desc_type, feature_id).x)
        points_3d.append(landmark.X)
    if points_2d:
        data.points_2d = np.array(points_2d, dtype=np.float64)
        data.points_3d = np.array(points_3d, dtype=np.float64)
    return data


def _residuals(intrinsic: Intrinsic, pose: Pose, points_3d: np.ndarray, points_2d: np.ndarray) -> np.ndarray:
    cam = pose.transform(points_3d)
    errors = np.full(len(points_3d), np.inf)
    front = cam[:, 2] > 0
    if np.any(front):
        errors[front] = intrinsic.residuals(cam[front], points_2d[front])
    return errors


def _select_threshold(residuals: np.ndarray, inliers: np.ndarray, config: SequentialSfMConfig) -> float:
    if config.threshold_policy == ThresholdPolicy.FIXED or not np.any(inliers):
        return config.resection_threshold
    scale = MAD_TO_SIGMA * float(np.median(residuals[inliers]))
    return float(np.clip(3.0 * scale, config.min_adaptive_threshold, config.resection_threshold))


def _find_mergeable_intrinsic(sfm_data: SfMData, estimate: Intrinsic, tolerance: float) -> Optional[Intrinsic]:
    """An initialized intrinsic of the same device that matches the estimate."""
    if not estimate.serial_number:
        return None
    for intrinsic in sfm_data.intrinsics.values():
        if (
            intrinsic.is_initialized()
            and intrinsic.serial_number == estimate.serial_number
            and intrinsic.width == estimate.width
            and intrinsic.height == estimate.height
            and abs(intrinsic.focal - estimate.focal) <= tolerance * estimate.focal
        ):
            return intrinsic
    return None


def _estimate_with_known_intrinsic(
    data: ResectionData,
    intrinsic: Intrinsic,
    config: SequentialSfMConfig,
) -> Optional[Tuple[Pose, np.ndarray]]:
    return estimate_camera_pose_pnp(
        intrinsic,
        data.points_3d,
        data.points_2d,
        threshold=config.resection_threshold,
        iterations=config.ransac_iterations,
    )


def _estimate_with_unknown_intrinsic(
    data: ResectionData,
    intrinsic: Intrinsic,
    config: SequentialSfMConfig,
    rng: np.random.Generator,
) -> Optional[Tuple[Intrinsic, Pose, np.ndarray]]:
    result = estimate_camera_dlt_ransac(
        data.points_3d,
        data.points_2d,
        threshold=config.resection_threshold,
        max_iterations=config.ransac_iterations,
        rng=rng,
    )
    if result is None:
        return None
    P, inliers = result
    K, pose = decompose_projection_matrix(P)
    focal = 0.5 * (K[0, 0] + K[1, 1])
    if not np.isfinite(focal) or focal <= 0:
        return None
    estimate = Intrinsic(
        intrinsic.intrinsic_id,
        intrinsic.width,
        intrinsic.height,
        focal=float(focal),
        cx=intrinsic.cx,
        cy=intrinsic.cy,
        serial_number=intrinsic.serial_number,
    )
    estimate, pose = refine_pose_and_focal(estimate, pose, data.points_3d[inliers], data.points_2d[inliers])
    if estimate.focal <= 0:
        return None
    return estimate, pose, inliers


def compute_resection(
    sfm_data: SfMData,
    view_id: int,
    features: FeaturesPerView,
    tracks: TracksMap,
    tracks_per_view: TracksPerView,
    config: SequentialSfMConfig,
    rng: Optional[np.random.Generator] = None,
) -> Optional[ResectionData]:
    """
    Estimate the pose (and calibration, if unknown) of one view.

    Args:
        sfm_data: Scene, only read.
        view_id: View to resect.
        features: Feature positions per view.
        tracks: All tracks.
        tracks_per_view: Tracks visible in each view.
        config: Engine configuration.
        rng: Random generator for the DLT RANSAC.

    Returns:
        ResectionData with the pose and inliers, or None if the view must be
        deferred (too few correspondences or inliers, or a degenerate
        configuration).
    """
    if rng is None:
        rng = np.random.default_rng(config.random_seed + view_id)

    data = collect_correspondences(sfm_data, view_id, features, tracks, tracks_per_view)
    n_corr = len(data.track_ids)
    if n_corr < config.min_points_per_pose:
        logger.debug("View %d: %d 2D-3D correspondences, need %d", view_id, n_corr, config.min_points_per_pose)
        return None

    intrinsic = sfm_data.get_intrinsic(view_id)
    if intrinsic is None:
        return None

    if intrinsic.is_initialized():
        result = _estimate_with_known_intrinsic(data, intrinsic, config)
        if result is None:
            logger.debug("View %d: PnP RANSAC failed", view_id)
            return None
        pose, inliers = result
        used_intrinsic = intrinsic
    else:
        estimated = _estimate_with_unknown_intrinsic(data, intrinsic, config, rng)
        if estimated is None:
            logger.debug("View %d: camera matrix RANSAC failed", view_id)
            return None
        used_intrinsic, pose, inliers = estimated
        existing = _find_mergeable_intrinsic(sfm_data, used_intrinsic, config.intrinsic_merge_tolerance)
        if existing is not None:
            data.intrinsic = existing
            data.is_new_intrinsic = False
        else:
            data.intrinsic = used_intrinsic
            data.is_new_intrinsic = True

    residuals = _residuals(used_intrinsic, pose, data.points_3d, data.points_2d)
    data.threshold = _select_threshold(residuals, inliers, config)
    inliers = residuals < data.threshold

    if inliers.sum() < config.min_resection_inliers:
        logger.debug("View %d: %d inliers, need %d", view_id, int(inliers.sum()), config.min_resection_inliers)
        return None
    if is_degenerate_configuration(data.points_2d[inliers]):
        logger.debug("View %d: degenerate inlier configuration", view_id)
        return None

    data.pose = pose
    data.inliers = inliers
    logger.debug(
        "View %d resected: %d/%d inliers, threshold %.2f px",
        view_id,
        data.num_inliers,
        n_corr,
        data.threshold,
    )
    return data


def resect_views(
    sfm_data: SfMData,
    view_ids: List[int],
    features: FeaturesPerView,
    tracks: TracksMap,
    tracks_per_view: TracksPerView,
    config: SequentialSfMConfig,
) -> Dict[int, Optional[ResectionData]]:
    """Resect a batch of views on worker threads against the current scene."""

    def run(view_id: int) -> Optional[ResectionData]:
        rng = np.random.default_rng([config.random_seed, view_id])
        return compute_resection(sfm_data, view_id, features, tracks, tracks_per_view, config, rng)

    if config.num_threads == 1 or len(view_ids) == 1:
        return {view_id: run(view_id) for view_id in view_ids}

    with ThreadPoolExecutor(max_workers=config.num_threads) as executor:
        results = list(executor.map(run, view_ids))
    return dict(zip(view_ids, results))


def apply_resection(
    sfm_data: SfMData,
    data: ResectionData,
    features: FeaturesPerView,
    tracks: TracksMap,
    report: ReconstructionReport,
) -> int:
    """
    Merge a successful resection into the scene.

    Sets the pose, installs or links the estimated intrinsic and adds the
    view's inlier observations to their landmarks.

    Returns:
        Number of observations added.
    """
    view = sfm_data.views[data.view_id]

    if data.intrinsic is not None:
        current = sfm_data.intrinsics.get(view.intrinsic_id)
        if data.is_new_intrinsic:
            if current is not None and current.is_initialized():
                # Another view sharing this intrinsic was merged first.
                logger.debug("View %d: intrinsic %d already estimated", view.view_id, view.intrinsic_id)
            else:
                data.intrinsic.intrinsic_id = view.intrinsic_id
                sfm_data.intrinsics[view.intrinsic_id] = data.intrinsic
                report.new_intrinsics.append(view.intrinsic_id)
                logger.info("View %d: new intrinsic %d, focal %.1f", view.view_id, view.intrinsic_id, data.intrinsic.focal)
        else:
            view.intrinsic_id = data.intrinsic.intrinsic_id
            logger.info("View %d: linked to existing intrinsic %d", view.view_id, view.intrinsic_id)

    sfm_data.set_pose(view, data.pose)

    n_added = 0
    for track_id, is_inlier in zip(data.track_ids, data.inliers):
        if not is_inlier:
            continue
        landmark = sfm_data.structure.get(track_id)
        if landmark is None or data.view_id in landmark.observations:
            continue
        track = tracks[track_id]
        landmark.observations[data.view_id] = make_observation(
            features, data.view_id, track.desc_type, track.observations[data.view_id]
        )
        n_added += 1

    report.resected_views.append(data.view_id)
    report.resection_thresholds[data.view_id] = data.threshold
    report.observations_added += n_added
    return n_added


__all__ = [
    "ResectionData",
    "collect_correspondences",
    "compute_resection",
    "resect_views",
    "apply_resection",
]
