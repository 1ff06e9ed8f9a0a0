"""
Selection and two-view reconstruction of the seed image pair.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from seqsfm.geometry.essential import RelativePose, estimate_relative_pose
from seqsfm.geometry.triangulation import ray_angles_two_view, triangulate_matched_points
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import Landmark, Pose, SfMData
from seqsfm.sfm_inc.errors import InvalidInputError, NoInitialPairError
from seqsfm.sfm_inc.report import ReconstructionReport
from seqsfm.sfm_inc.tracks import (
    FeatureColors,
    FeaturesPerView,
    TracksMap,
    TracksPerView,
    get_common_tracks,
    get_feature_color,
    make_observation,
)

logger = logging.getLogger(__name__)

# Median angles above this value do not improve the pair score further.
MAX_SCORED_ANGLE = 30.0


@dataclass
class InitialPairCandidate:
    view_ids: Tuple[int, int]
    relative_pose: RelativePose
    # Tracks with a valid triangulation and their 3D positions.
    track_ids: List[int]
    points_3d: np.ndarray
    median_angle: float
    score: float


def get_initial_pair_candidates(
    sfm_data: SfMData,
    tracks_per_view: TracksPerView,
    config: SequentialSfMConfig,
) -> List[Tuple[int, int]]:
    """
    Pairs of calibrated views sharing enough tracks to seed a reconstruction.

    A user-supplied pair is returned as the only candidate.
    """
    if config.initial_pair is not None:
        view_a, view_b = config.initial_pair
        if view_a not in sfm_data.views or view_b not in sfm_data.views:
            raise InvalidInputError(f"Initial pair ({view_a}, {view_b}) references unknown views")
        return [(view_a, view_b)]

    calibrated = sorted(
        view_id
        for view_id in tracks_per_view
        if (intrinsic := sfm_data.get_intrinsic(view_id)) is not None and intrinsic.is_initialized()
    )
    candidates = []
    for view_a, view_b in itertools.combinations(calibrated, 2):
        n_common = len(get_common_tracks(tracks_per_view, (view_a, view_b)))
        if n_common >= config.min_points_per_pose:
            candidates.append((view_a, view_b))
    return candidates


def evaluate_initial_pair(
    sfm_data: SfMData,
    features: FeaturesPerView,
    tracks: TracksMap,
    tracks_per_view: TracksPerView,
    pair: Tuple[int, int],
    config: SequentialSfMConfig,
) -> Optional[InitialPairCandidate]:
    """
    Estimate the relative pose of a pair and triangulate its common tracks.

    Returns:
        The scored candidate, or None if the pair cannot seed a reconstruction
        (uncalibrated views, too few valid points or too small a baseline).
    """
    view_a, view_b = pair
    intrinsic_a = sfm_data.get_intrinsic(view_a)
    intrinsic_b = sfm_data.get_intrinsic(view_b)
    if intrinsic_a is None or intrinsic_b is None:
        return None
    if not (intrinsic_a.is_initialized() and intrinsic_b.is_initialized()):
        logger.debug("Pair (%d, %d) skipped: unknown intrinsics", view_a, view_b)
        return None

    track_ids = sorted(get_common_tracks(tracks_per_view, pair))
    if len(track_ids) < config.min_points_per_pose:
        logger.debug("Pair (%d, %d) skipped: %d common tracks", view_a, view_b, len(track_ids))
        return None

    pixels_a = np.array([make_observation(features, view_a, tracks[t].desc_type, tracks[t].observations[view_a]).x for t in track_ids])
    pixels_b = np.array([make_observation(features, view_b, tracks[t].desc_type, tracks[t].observations[view_b]).x for t in track_ids])

    mean_focal = 0.5 * (intrinsic_a.focal + intrinsic_b.focal)
    relative_pose = estimate_relative_pose(
        intrinsic_a.normalize(pixels_a),
        intrinsic_b.normalize(pixels_b),
        threshold=config.relative_pose_threshold / mean_focal,
        min_inliers=config.min_points_per_pose,
    )
    if relative_pose is None:
        logger.debug("Pair (%d, %d): relative pose estimation failed", view_a, view_b)
        return None

    pose_a = Pose.identity()
    pose_b = Pose(relative_pose.R, relative_pose.t)
    points_3d, errors = triangulate_matched_points(intrinsic_a, pose_a, intrinsic_b, pose_b, pixels_a, pixels_b)
    angles = ray_angles_two_view(pose_a, pose_b, points_3d)
    valid = (
        relative_pose.inlier_mask
        & (errors < config.relative_pose_threshold)
        & (angles >= config.min_angle_for_triangulation)
    )
    n_valid = int(valid.sum())
    if n_valid < config.min_points_per_pose:
        logger.debug("Pair (%d, %d): only %d valid points", view_a, view_b, n_valid)
        return None

    median_angle = float(np.median(angles[valid]))
    if median_angle < config.min_angle_initial_pair:
        logger.debug("Pair (%d, %d): median angle %.2f too small", view_a, view_b, median_angle)
        return None

    return InitialPairCandidate(
        view_ids=(view_a, view_b),
        relative_pose=relative_pose,
        track_ids=[t for t, ok in zip(track_ids, valid) if ok],
        points_3d=points_3d[valid],
        median_angle=median_angle,
        score=n_valid * min(median_angle, MAX_SCORED_ANGLE),
    )


def make_initial_pair_3d(
    sfm_data: SfMData,
    features: FeaturesPerView,
    tracks: TracksMap,
    candidate: InitialPairCandidate,
    colors: Optional[FeatureColors] = None,
) -> None:
    """Write the seed poses and landmarks into the scene."""
    view_a, view_b = candidate.view_ids
    sfm_data.set_pose(sfm_data.views[view_a], Pose.identity())
    sfm_data.set_pose(sfm_data.views[view_b], Pose(candidate.relative_pose.R, candidate.relative_pose.t))

    for track_id, X in zip(candidate.track_ids, candidate.points_3d):
        track = tracks[track_id]
        observations = {
            view_id: make_observation(features, view_id, track.desc_type, track.observations[view_id])
            for view_id in (view_a, view_b)
        }
        sfm_data.structure[track_id] = Landmark(
            X=X,
            observations=observations,
            color=get_feature_color(colors, view_a, track.desc_type, track.observations[view_a]),
            desc_type=track.desc_type,
        )


def create_initial_reconstruction(
    sfm_data: SfMData,
    features: FeaturesPerView,
    tracks: TracksMap,
    tracks_per_view: TracksPerView,
    config: SequentialSfMConfig,
    report: ReconstructionReport,
    colors: Optional[FeatureColors] = None,
) -> Tuple[int, int]:
    """
    Try the candidate pairs by descending score and seed the reconstruction.

    Returns:
        The seed pair of view ids.

    Raises:
        NoInitialPairError: If no candidate yields a valid two-view structure.
    """
    pairs = get_initial_pair_candidates(sfm_data, tracks_per_view, config)
    report.initial_pair_candidates = len(pairs)
    logger.info("Evaluating %d initial pair candidates", len(pairs))

    scored = []
    for pair in pairs:
        candidate = evaluate_initial_pair(sfm_data, features, tracks, tracks_per_view, pair, config)
        if candidate is not None:
            scored.append(candidate)
    scored.sort(key=lambda c: (-c.score, c.view_ids))

    for candidate in scored:
        if len(candidate.track_ids) == 0:
            continue
        make_initial_pair_3d(sfm_data, features, tracks, candidate, colors)
        report.initial_pair = candidate.view_ids
        logger.info(
            "Initial pair (%d, %d): %d points, median angle %.2f deg (%s model)",
            candidate.view_ids[0],
            candidate.view_ids[1],
            len(candidate.track_ids),
            candidate.median_angle,
            candidate.relative_pose.source,
        )
        return candidate.view_ids

    raise NoInitialPairError(
        f"No initial pair found among {len(pairs)} candidate pairs"
    )


__all__ = [
    "InitialPairCandidate",
    "get_initial_pair_candidates",
    "evaluate_initial_pair",
    "make_initial_pair_3d",
    "create_initial_reconstruction",
]
