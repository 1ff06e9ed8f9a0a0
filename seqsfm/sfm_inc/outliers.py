"""
Removal of badly reprojected observations and weakly triangulated landmarks.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

import numpy as np

from seqsfm.geometry.triangulation import max_ray_angle_deg
from seqsfm.sfm_inc.data_structures import Landmark, SfMData

logger = logging.getLogger(__name__)


def observation_residuals(sfm_data: SfMData, landmark: Landmark) -> Dict[int, float]:
    """Reprojection error (pixels) of each observation of a landmark; inf if behind."""
    residuals = {}
    for view_id, observation in landmark.observations.items():
        view = sfm_data.views[view_id]
        x_cam = sfm_data.get_pose(view).transform(landmark.X)
        if x_cam[2] <= 0:
            residuals[view_id] = np.inf
            continue
        intrinsic = sfm_data.intrinsics[view.intrinsic_id]
        residuals[view_id] = float(intrinsic.residuals(x_cam[None, :], observation.x[None, :])[0])
    return residuals


def compute_residuals(sfm_data: SfMData) -> np.ndarray:
    """All observation reprojection errors of the scene (pixels), as a 1D array."""
    values: List[float] = []
    for landmark in sfm_data.structure.values():
        values.extend(observation_residuals(sfm_data, landmark).values())
    return np.array(values, dtype=np.float64)


def landmark_max_angle(sfm_data: SfMData, landmark: Landmark) -> float:
    """Largest angle (degrees) between two observation rays of a landmark."""
    centers = [sfm_data.get_pose(sfm_data.views[v]).center() for v in landmark.observations]
    return max_ray_angle_deg(landmark.X, centers)


def remove_outliers(
    sfm_data: SfMData,
    precision: float = 4.0,
    min_angle: float = 2.0,
    min_observations: int = 2,
) -> int:
    """
    Remove outlier observations, then landmarks that became unreliable.

    Args:
        sfm_data: Scene, modified in place.
        precision: Maximum reprojection error (pixels) of an observation.
            Observations behind their camera are always removed.
        min_angle: Minimum largest pairwise ray angle (degrees) of a landmark.
        min_observations: Minimum number of observations of a landmark.

    Returns:
        Number of removed observations plus removed landmarks. A second call
        with the same arguments returns 0.
    """
    n_observations = 0
    for landmark in sfm_data.structure.values():
        residuals = observation_residuals(sfm_data, landmark)
        for view_id, residual in residuals.items():
            if not residual <= precision:
                del landmark.observations[view_id]
                n_observations += 1

    to_remove = [
        landmark_id
        for landmark_id, landmark in sfm_data.structure.items()
        if len(landmark.observations) < min_observations
        or landmark_max_angle(sfm_data, landmark) < min_angle
    ]
    for landmark_id in to_remove:
        del sfm_data.structure[landmark_id]

    if n_observations or to_remove:
        logger.info(
            "Outlier removal: %d observations and %d landmarks removed, %d landmarks left",
            n_observations,
            len(to_remove),
            len(sfm_data.structure),
        )
    return n_observations + len(to_remove)


def residual_statistics(sfm_data: SfMData) -> Tuple[float, float, float]:
    """Mean, median and max reprojection error of the scene (pixels)."""
    residuals = compute_residuals(sfm_data)
    if residuals.size == 0:
        return 0.0, 0.0, 0.0
    return float(np.mean(residuals)), float(np.median(residuals)), float(np.max(residuals))


__all__ = [
    "observation_residuals",
    "compute_residuals",
    "landmark_max_angle",
    "remove_outliers",
    "residual_statistics",
]
