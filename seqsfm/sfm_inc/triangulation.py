"""
Triangulation of tracks seen by newly reconstructed views.

Tracks that already are landmarks are extended with the observations of the
new views that agree with the current 3D position. Other tracks are
triangulated robustly from all their reconstructed views and accepted only if
the point is in front of every contributing view and at least one pair of
rays forms a large enough angle. Rejected tracks stay candidates for a later
iteration.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from seqsfm.geometry.triangulation import check_cheirality, max_ray_angle_deg, triangulate_robust
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import Landmark, SfMData
from seqsfm.sfm_inc.report import ReconstructionReport
from seqsfm.sfm_inc.tracks import (
    FeatureColors,
    FeaturesPerView,
    Track,
    TracksMap,
    TracksPerView,
    get_feature_color,
    get_tracks_in_views,
    make_observation,
)

logger = logging.getLogger(__name__)


@dataclass
class TriangulationResult:
    track_id: int
    # None when an existing landmark is extended.
    X: Optional[np.ndarray]
    view_ids: List[int]

    @property
    def is_new(self) -> bool:
        return self.X is not None


def get_tracks_to_triangulate(
    sfm_data: SfMData,
    tracks: TracksMap,
    tracks_per_view: TracksPerView,
    previous_views: Set[int],
    new_views: Set[int],
    min_observations: int = 2,
) -> Dict[int, Set[int]]:
    """
    Tracks seen by at least one new view and enough reconstructed views.

    Returns:
        Mapping from track id to the reconstructed views observing it.
    """
    reconstructed = previous_views | new_views
    result: Dict[int, Set[int]] = {}
    for track_id in sorted(get_tracks_in_views(tracks_per_view, new_views)):
        view_ids = {v for v in tracks[track_id].observations if v in reconstructed}
        if len(view_ids) >= min_observations:
            result[track_id] = view_ids
    return result


def _extend_landmark(
    sfm_data: SfMData,
    features: FeaturesPerView,
    track_id: int,
    track: Track,
    view_ids: Set[int],
    config: SequentialSfMConfig,
) -> Optional[TriangulationResult]:
    landmark = sfm_data.structure[track_id]
    added = []
    for view_id in sorted(view_ids - set(landmark.observations)):
        view = sfm_data.views[view_id]
        x_cam = sfm_data.get_pose(view).transform(landmark.X)
        if x_cam[2] <= 0:
            continue
        pixel = make_observation(features, view_id, track.desc_type, track.observations[view_id]).x
        error = sfm_data.intrinsics[view.intrinsic_id].residuals(x_cam[None, :], pixel[None, :])[0]
        if error < config.triangulation_threshold:
            added.append(view_id)
    if not added:
        return None
    return TriangulationResult(track_id, None, added)


def triangulate_track(
    sfm_data: SfMData,
    features: FeaturesPerView,
    track_id: int,
    track: Track,
    view_ids: Set[int],
    config: SequentialSfMConfig,
    rng: Optional[np.random.Generator] = None,
) -> Optional[TriangulationResult]:
    """Triangulate (or extend) one track from its reconstructed views."""
    if track_id in sfm_data.structure:
        return _extend_landmark(sfm_data, features, track_id, track, view_ids, config)

    views = sorted(view_ids)
    poses = [sfm_data.get_pose(sfm_data.views[v]) for v in views]
    intrinsics = [sfm_data.intrinsics[sfm_data.views[v].intrinsic_id] for v in views]
    pixels = np.array([
        make_observation(features, v, track.desc_type, track.observations[v]).x for v in views
    ])
    normalized = np.vstack([intr.normalize(px[None, :]) for intr, px in zip(intrinsics, pixels)])

    result = triangulate_robust(
        poses,
        intrinsics,
        pixels,
        normalized,
        threshold=config.triangulation_threshold,
        min_inliers=config.min_nb_observations_for_triangulation,
        rng=rng,
    )
    if result is None:
        return None
    X, mask = result
    idx = np.flatnonzero(mask)
    inlier_poses = [poses[i] for i in idx]
    if not check_cheirality(X, inlier_poses):
        return None
    if max_ray_angle_deg(X, [p.center() for p in inlier_poses]) < config.min_angle_for_triangulation:
        return None
    return TriangulationResult(track_id, X, [views[i] for i in idx])


def _chunks(items: List, n_chunks: int) -> List[List]:
    n_chunks = max(1, min(n_chunks, len(items)))
    size = int(np.ceil(len(items) / n_chunks))
    return [items[i: i + size] for i in range(0, len(items), size)]


def triangulate(
    sfm_data: SfMData,
    features: FeaturesPerView,
    tracks: TracksMap,
    tracks_per_view: TracksPerView,
    previous_views: Set[int],
    new_views: Set[int],
    config: SequentialSfMConfig,
    report: ReconstructionReport,
    colors: Optional[FeatureColors] = None,
) -> Tuple[int, int]:
    """
    Triangulate the tracks made observable by `new_views`.

    Track chunks are processed on worker threads without touching the scene;
    the results are merged afterwards. Landmark ids are track ids.

    Returns:
        Tuple of (new landmarks, extended landmarks).
    """
    to_triangulate = get_tracks_to_triangulate(
        sfm_data,
        tracks,
        tracks_per_view,
        previous_views,
        new_views,
        config.min_nb_observations_for_triangulation,
    )
    if not to_triangulate:
        return 0, 0

    def run(chunk: List[Tuple[int, Set[int]]]) -> List[TriangulationResult]:
        rng = np.random.default_rng([config.random_seed, chunk[0][0]])
        results = []
        for track_id, view_ids in chunk:
            result = triangulate_track(sfm_data, features, track_id, tracks[track_id], view_ids, config, rng)
            if result is not None:
                results.append(result)
        return results

    chunks = _chunks(sorted(to_triangulate.items()), config.num_threads)
    if len(chunks) == 1:
        chunk_results = [run(chunks[0])]
    else:
        with ThreadPoolExecutor(max_workers=config.num_threads) as executor:
            chunk_results = list(executor.map(run, chunks))

    n_new = 0
    n_extended = 0
    n_observations = 0
    for results in chunk_results:
        for result in results:
            track = tracks[result.track_id]
            observations = {
                v: make_observation(features, v, track.desc_type, track.observations[v])
                for v in result.view_ids
            }
            if result.is_new:
                first_view = result.view_ids[0]
                sfm_data.structure[result.track_id] = Landmark(
                    X=result.X,
                    observations=observations,
                    color=get_feature_color(colors, first_view, track.desc_type, track.observations[first_view]),
                    desc_type=track.desc_type,
                )
                n_new += 1
            else:
                sfm_data.structure[result.track_id].observations.update(observations)
                n_extended += 1
            n_observations += len(observations)

    report.points_triangulated += n_new
    report.observations_added += n_observations
    logger.info(
        "Triangulation: %d candidate tracks, %d new landmarks, %d extended",
        len(to_triangulate),
        n_new,
        n_extended,
    )
    return n_new, n_extended


__all__ = [
    "TriangulationResult",
    "get_tracks_to_triangulate",
    "triangulate_track",
    "triangulate",
]
