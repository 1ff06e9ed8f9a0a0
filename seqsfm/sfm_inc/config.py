"""Configuration for the sequential reconstruction engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional, Tuple


class ThresholdPolicy(str, Enum):
    """How the resection inlier threshold is chosen."""

    FIXED = "fixed"
    ADAPTIVE = "adaptive"


@dataclass
class SequentialSfMConfig:
    """Configuration for the sequential SfM pipeline.

    Modify the default values here for experimentation. The CLI exposes the
    most common ones as flags.
    """

    # Initialization
    initial_pair: Optional[Tuple[int, int]] = None
    """User-supplied seed pair of view ids; automatic selection when None"""

    min_angle_initial_pair: float = 5.0
    """Minimum median triangulation angle (degrees) for a seed pair"""

    relative_pose_threshold: float = 4.0
    """Epipolar / reprojection threshold in pixels for the seed pair"""

    # Tracks
    min_input_track_length: int = 2
    """Tracks shorter than this are dropped when fusing matches"""

    min_track_length: int = 2
    """Minimum track length considered when seeding and scoring views"""

    # Resection
    min_points_per_pose: int = 30
    """Minimum number of 2D-3D correspondences to attempt a resection"""

    min_resection_inliers: int = 15
    """Minimum number of RANSAC inliers for a resection to be accepted"""

    threshold_policy: ThresholdPolicy = ThresholdPolicy.ADAPTIVE
    """Resection inlier threshold policy: fixed or adaptive"""

    resection_threshold: float = 4.0
    """Resection threshold in pixels (upper bound for the adaptive policy)"""

    min_adaptive_threshold: float = 0.5
    """Lower bound in pixels for the adaptive resection threshold"""

    intrinsic_merge_tolerance: float = 0.01
    """Relative focal tolerance for merging an estimated intrinsic into an existing one"""

    ransac_iterations: int = 1000
    """Maximum number of RANSAC iterations for the numpy estimators"""

    # Triangulation
    min_nb_observations_for_triangulation: int = 2
    """Minimum number of reconstructed views observing a track to triangulate it"""

    min_angle_for_triangulation: float = 3.0
    """Minimum ray angle (degrees) for a newly triangulated landmark"""

    triangulation_threshold: float = 4.0
    """Reprojection threshold in pixels for triangulation inliers"""

    # Outliers
    max_reprojection_error: float = 4.0
    """Observations with a larger residual (pixels) are removed after refinement"""

    min_angle_for_landmark: float = 2.0
    """Landmarks whose maximum ray angle (degrees) is smaller are removed"""

    outlier_rebundle_threshold: int = 50
    """Bundle adjustment is repeated while more outliers than this are removed"""

    max_ba_rounds: int = 3
    """Maximum bundle adjustment / outlier removal rounds per iteration"""

    # Next best view
    pyramid_base: int = 2
    """Branching factor of the spatial repartition pyramid"""

    pyramid_depth: int = 5
    """Number of levels of the spatial repartition pyramid"""

    unknown_intrinsic_penalty: float = 0.5
    """Score multiplier for candidate views whose intrinsic is unknown"""

    nbv_score_ratio: float = 0.7
    """Views scoring at least this fraction of the best one join the batch"""

    max_views_per_batch: int = 10
    """Maximum number of views resected in one iteration"""

    # Bundle adjustment
    use_local_ba: bool = True
    """Use local bundle adjustment between periodic global ones"""

    local_ba_graph_distance: int = 1
    """Covisibility graph distance of poses refined by local bundle adjustment"""

    local_ba_min_shared_landmarks: int = 1
    """Minimum number of shared landmarks for a covisibility edge"""

    global_ba_period: int = 5
    """Run a global bundle adjustment every N iterations"""

    refine_intrinsics: bool = False
    """Refine intrinsics during intermediate global bundle adjustments"""

    refine_intrinsics_final: bool = True
    """Refine intrinsics during the final global bundle adjustment"""

    lock_first_pose: bool = True
    """Hold the first seed pose constant during bundle adjustment"""

    ba_loss: str = "soft_l1"
    """Robust loss passed to scipy.optimize.least_squares"""

    ba_max_nfev: int = 100
    """Maximum number of function evaluations per bundle adjustment"""

    # Execution
    num_threads: int = 4
    """Worker threads for resection and triangulation"""

    random_seed: int = 0
    """Seed for RANSAC sampling"""

    def validate(self) -> None:
        """Raise ValueError on inconsistent settings."""
        if self.min_input_track_length < 2 or self.min_track_length < 2:
            raise ValueError("Track lengths must be at least 2")
        if self.min_nb_observations_for_triangulation < 2:
            raise ValueError("Triangulation needs at least 2 observations")
        if self.min_resection_inliers > self.min_points_per_pose:
            raise ValueError("min_resection_inliers cannot exceed min_points_per_pose")
        if self.pyramid_base < 2 or self.pyramid_depth < 1:
            raise ValueError("Pyramid needs base >= 2 and depth >= 1")
        if not 0.0 < self.nbv_score_ratio <= 1.0:
            raise ValueError("nbv_score_ratio must be in (0, 1]")
        if self.max_views_per_batch < 1 or self.num_threads < 1:
            raise ValueError("max_views_per_batch and num_threads must be positive")
        if self.global_ba_period < 1 or self.max_ba_rounds < 1:
            raise ValueError("global_ba_period and max_ba_rounds must be positive")
        if self.initial_pair is not None and self.initial_pair[0] == self.initial_pair[1]:
            raise ValueError("The initial pair needs two distinct views")
        self.threshold_policy = ThresholdPolicy(self.threshold_policy)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["threshold_policy"] = ThresholdPolicy(self.threshold_policy).value
        return d


__all__ = ["ThresholdPolicy", "SequentialSfMConfig"]
