"""
Incremental (sequential) Structure-from-Motion pipeline.

The engine grows a reconstruction from a seed image pair: at each iteration it
picks a batch of well-connected views, resects them, triangulates the tracks
they make observable, refines the scene with bundle adjustment and prunes
outliers. Views that cannot be resected are deferred until the reconstruction
grows; the run stops when no remaining view can be added.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set, Tuple

from seqsfm.ba.bundle_adjustment import BundleAdjuster
from seqsfm.ba.local_ba import BundleAdjustmentOrchestrator
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import SfMData
from seqsfm.sfm_inc.errors import InvalidInputError, ReconstructionError
from seqsfm.sfm_inc.initial_pair import create_initial_reconstruction
from seqsfm.sfm_inc.next_best_view import find_next_best_views
from seqsfm.sfm_inc.outliers import compute_residuals, remove_outliers
from seqsfm.sfm_inc.pyramid import PyramidScorer
from seqsfm.sfm_inc.report import IterationRecord, ReconstructionReport, ReconstructionState
from seqsfm.sfm_inc.resection import apply_resection, resect_views
from seqsfm.sfm_inc.tracks import (
    FeatureColors,
    FeaturesPerView,
    PairwiseMatches,
    TracksMap,
    TracksPerView,
    build_tracks,
)
from seqsfm.sfm_inc.triangulation import triangulate

logger = logging.getLogger(__name__)


class ReconstructionEngine(ABC):
    """Common interface of reconstruction engines working on an SfMData scene."""

    def __init__(self, sfm_data: SfMData, report: Optional[ReconstructionReport] = None) -> None:
        self.sfm_data = sfm_data
        self.report = report if report is not None else ReconstructionReport()

    @abstractmethod
    def process(self) -> bool:
        """Run the reconstruction; return True on success."""

    def get_sfm_data(self) -> SfMData:
        return self.sfm_data


class SequentialReconstructionEngine(ReconstructionEngine):
    """
    Incremental reconstruction engine.

    Args:
        sfm_data: Scene with views and intrinsics (and optionally rigs), without
            poses. It is modified in place.
        features: Feature positions per view and descriptor type.
        matches: Pairwise feature correspondences.
        config: Engine configuration; defaults when None.
        report: Run report to fill; a new one is created when None.
        colors: Optional feature colors used to color the landmarks.
        adjuster: Bundle adjustment solver; a ScipyBundleAdjuster when None.
    """

    def __init__(
        self,
        sfm_data: SfMData,
        features: FeaturesPerView,
        matches: PairwiseMatches,
        config: Optional[SequentialSfMConfig] = None,
        report: Optional[ReconstructionReport] = None,
        colors: Optional[FeatureColors] = None,
        adjuster: Optional[BundleAdjuster] = None,
    ) -> None:
        super().__init__(sfm_data, report)
        self.features = features
        self.matches = matches
        self.config = config if config is not None else SequentialSfMConfig()
        self.colors = colors
        self.tracks: TracksMap = {}
        self.tracks_per_view: TracksPerView = {}
        self.scorer = PyramidScorer(self.config.pyramid_base, self.config.pyramid_depth)
        self.ba = BundleAdjustmentOrchestrator(self.config, adjuster)

    # -- states ---------------------------------------------------------

    def process(self) -> bool:
        start = time.perf_counter()
        try:
            self.config.validate()
            self._initialize()
            self._make_seed()
            self._iterate()
            self._converge()
        except ReconstructionError as exc:
            self.report.state = ReconstructionState.FAILED
            self.report.failure_reason = str(exc)
            logger.error("Reconstruction failed: %s", exc)
            return False
        finally:
            self.report.unreconstructed_views = sorted(
                set(self.sfm_data.views) - self.sfm_data.get_valid_views()
            )
            self.report.duration_s = time.perf_counter() - start

        self.report.state = ReconstructionState.DONE
        logger.info(
            "Reconstruction done: %d/%d views, %d landmarks, rmse %.3f px, %.1f s",
            len(self.sfm_data.get_valid_views()),
            len(self.sfm_data.views),
            len(self.sfm_data.structure),
            self.report.final_rmse,
            self.report.duration_s,
        )
        return True

    def _initialize(self) -> None:
        """Validate the input, fuse matches into tracks and set up view scoring."""
        self.report.state = ReconstructionState.INIT
        if self.sfm_data.get_poses():
            raise InvalidInputError("The input scene already has poses")
        for view in self.sfm_data.views.values():
            if view.is_part_of_rig() and view.rig_id not in self.sfm_data.get_rigs():
                raise InvalidInputError(f"View {view.view_id} references unknown rig {view.rig_id}")

        self.tracks, self.tracks_per_view = build_tracks(
            self.matches,
            min_track_length=self.config.min_input_track_length,
            known_views=set(self.sfm_data.views),
            report=self.report,
        )
        for view_id, track_ids in self.tracks_per_view.items():
            for track_id in track_ids:
                feature_id = self.tracks[track_id].observations[view_id]
                per_type = self.features.get(view_id, {}).get(self.tracks[track_id].desc_type)
                if per_type is None or feature_id >= len(per_type):
                    raise InvalidInputError(
                        f"Track {track_id} references missing feature {feature_id} of view {view_id}"
                    )

        self.scorer.initialize(self.sfm_data, self.features, self.tracks, self._scoring_tracks_per_view())

    def _scoring_tracks_per_view(self) -> TracksPerView:
        """Tracks long enough to be used for seeding and view scoring."""
        min_length = self.config.min_track_length
        return {
            view_id: [t for t in track_ids if len(self.tracks[t]) >= min_length]
            for view_id, track_ids in self.tracks_per_view.items()
        }

    def _make_seed(self) -> None:
        view_a, view_b = create_initial_reconstruction(
            self.sfm_data,
            self.features,
            self.tracks,
            self._scoring_tracks_per_view(),
            self.config,
            self.report,
            self.colors,
        )
        self.report.resected_views.extend([view_a, view_b])
        self.report.points_triangulated += len(self.sfm_data.structure)
        self.report.state = ReconstructionState.SEED_SELECTED

        if self.config.lock_first_pose:
            self.ba.lock_pose(self.sfm_data.views[view_a].pose_id)
        self.ba.run_global(self.sfm_data, self.report)
        self.report.outliers_removed += self._remove_outliers()

    def _iterate(self) -> None:
        """Add views until every remaining one has failed since the last success."""
        self.report.state = ReconstructionState.ITERATING
        scoring_tracks_per_view = self._scoring_tracks_per_view()
        deferred: Set[int] = set()
        iteration = 0

        while True:
            remaining = self._remaining_views() - deferred
            batch = find_next_best_views(
                self.sfm_data, sorted(remaining), scoring_tracks_per_view, self.scorer, self.config
            )
            if not batch:
                logger.info("No more views to resect (%d deferred)", len(deferred))
                break

            # Resection works on a frozen snapshot; the scene is only written below.
            snapshot = self.sfm_data.copy()
            results = resect_views(
                snapshot, batch, self.features, self.tracks, self.tracks_per_view, self.config
            )
            resected = [view_id for view_id in batch if results[view_id] is not None]
            failed = [view_id for view_id in batch if results[view_id] is None]
            for view_id in failed:
                self.report.record_failed_resection(view_id)

            if not resected:
                deferred.update(failed)
                logger.info("Resection failed for views %s, deferring them", failed)
                continue

            # The scene grew: every remaining view is a candidate again.
            deferred.clear()
            iteration += 1
            record = self._grow(iteration, batch, resected, failed, results)
            self.report.iterations.append(record)
            logger.info(
                "Iteration %d: resected %s, %d/%d views reconstructed, %d landmarks",
                iteration,
                resected,
                len(self.sfm_data.get_valid_views()),
                len(self.sfm_data.views),
                len(self.sfm_data.structure),
            )

    def _grow(
        self,
        iteration: int,
        batch: List[int],
        resected: List[int],
        failed: List[int],
        results: Dict,
    ) -> IterationRecord:
        """Merge the resected views, triangulate, refine and prune."""
        previous_views = self.sfm_data.get_valid_views()
        for view_id in resected:
            apply_resection(self.sfm_data, results[view_id], self.features, self.tracks, self.report)

        n_new, n_extended = triangulate(
            self.sfm_data,
            self.features,
            self.tracks,
            self.tracks_per_view,
            previous_views,
            set(resected),
            self.config,
            self.report,
            self.colors,
        )

        record = IterationRecord(
            index=iteration,
            candidates=list(batch),
            resected=list(resected),
            failed=list(failed),
            new_landmarks=n_new,
            extended_landmarks=n_extended,
            ba_mode="global" if self.ba.is_global_iteration(iteration) else "local",
        )
        for _ in range(self.config.max_ba_rounds):
            record.ba_converged = self.ba.run(self.sfm_data, resected, iteration, self.report) and record.ba_converged
            removed = self._remove_outliers()
            record.outliers_removed += removed
            if removed <= self.config.outlier_rebundle_threshold:
                break
        self.report.outliers_removed += record.outliers_removed
        return record

    def _converge(self) -> None:
        self.report.state = ReconstructionState.CONVERGING
        self.ba.run_global(self.sfm_data, self.report, refine_intrinsics=self.config.refine_intrinsics_final)
        self.report.outliers_removed += self._remove_outliers()
        self.report.set_residual_histogram(compute_residuals(self.sfm_data))

    # -- helpers --------------------------------------------------------

    def _remaining_views(self) -> Set[int]:
        return set(self.sfm_data.views) - self.sfm_data.get_valid_views()

    def _remove_outliers(self) -> int:
        return remove_outliers(
            self.sfm_data,
            precision=self.config.max_reprojection_error,
            min_angle=self.config.min_angle_for_landmark,
            min_observations=2,
        )


def run_incremental_sfm(
    sfm_data: SfMData,
    features: FeaturesPerView,
    matches: PairwiseMatches,
    config: Optional[SequentialSfMConfig] = None,
    colors: Optional[FeatureColors] = None,
) -> Tuple[SfMData, ReconstructionReport]:
    """
    Run the sequential engine on a scene.

    Returns:
        Tuple of (sfm_data, report). Check `report.state` for success.
    """
    engine = SequentialReconstructionEngine(sfm_data, features, matches, config, colors=colors)
    engine.process()
    return engine.get_sfm_data(), engine.report


__all__ = [
    "ReconstructionEngine",
    "SequentialReconstructionEngine",
    "run_incremental_sfm",
]
