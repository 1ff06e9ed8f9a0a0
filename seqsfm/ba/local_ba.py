"""
Choice of the bundle adjustment problem after each reconstruction step.

Global adjustment refines every pose and landmark. Local adjustment only
frees the poses close to the newly added views in the covisibility graph and
the landmarks they observe; the rest of the scene contributes fixed
constraints.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Set

import networkx as nx

from seqsfm.ba.bundle_adjustment import (
    BundleAdjuster,
    BundleAdjustmentProblem,
    ScipyBundleAdjuster,
    apply_bundle_adjustment_result,
)
from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import SfMData
from seqsfm.sfm_inc.report import ReconstructionReport

logger = logging.getLogger(__name__)


def build_covisibility_graph(sfm_data: SfMData, min_shared_landmarks: int = 1) -> nx.Graph:
    """
    Graph over reconstructed views; an edge joins two views sharing landmarks.

    Edge attribute "weight" holds the number of shared landmarks.
    """
    valid_views = sfm_data.get_valid_views()
    graph = nx.Graph()
    graph.add_nodes_from(valid_views)

    shared = {}
    for landmark in sfm_data.structure.values():
        views = sorted(v for v in landmark.observations if v in valid_views)
        for i, view_a in enumerate(views):
            for view_b in views[i + 1:]:
                shared[(view_a, view_b)] = shared.get((view_a, view_b), 0) + 1

    for (view_a, view_b), count in shared.items():
        if count >= min_shared_landmarks:
            graph.add_edge(view_a, view_b, weight=count)
    return graph


def make_global_problem(
    sfm_data: SfMData,
    refine_intrinsics: bool = False,
    fixed_pose_ids: Optional[Set[int]] = None,
) -> BundleAdjustmentProblem:
    """All poses and landmarks free, except `fixed_pose_ids` and locked intrinsics."""
    fixed_pose_ids = fixed_pose_ids or set()
    valid_views = sfm_data.get_valid_views()
    landmark_ids = set(sfm_data.structure)

    free_intrinsic_ids: Set[int] = set()
    if refine_intrinsics:
        free_intrinsic_ids = {
            i for i in sfm_data.get_reconstructed_intrinsics() if not sfm_data.intrinsics[i].locked
        }

    return BundleAdjustmentProblem(
        landmark_ids=landmark_ids,
        free_pose_ids={sfm_data.views[v].pose_id for v in valid_views} - fixed_pose_ids,
        free_intrinsic_ids=free_intrinsic_ids,
        free_landmark_ids=landmark_ids,
    )


def make_local_problem(
    sfm_data: SfMData,
    new_view_ids: Iterable[int],
    graph_distance: int = 1,
    min_shared_landmarks: int = 1,
    fixed_pose_ids: Optional[Set[int]] = None,
) -> Optional[BundleAdjustmentProblem]:
    """
    Problem restricted to the neighbourhood of the new views.

    Args:
        sfm_data: Scene with the new views already posed.
        new_view_ids: Views added in the current iteration.
        graph_distance: Views up to this many covisibility edges away from a
            new view have their pose refined.
        min_shared_landmarks: Minimum shared landmarks for a covisibility edge.
        fixed_pose_ids: Poses that are never refined.

    Returns:
        The local problem, or None when every reconstructed view is within the
        distance (the caller should run a global adjustment instead).
    """
    fixed_pose_ids = fixed_pose_ids or set()
    graph = build_covisibility_graph(sfm_data, min_shared_landmarks)

    local_views: Set[int] = set()
    for view_id in new_view_ids:
        if view_id not in graph:
            continue
        lengths = nx.single_source_shortest_path_length(graph, view_id, cutoff=graph_distance)
        local_views.update(lengths)

    if local_views >= set(graph.nodes):
        return None

    free_landmark_ids = {
        landmark_id
        for landmark_id, landmark in sfm_data.structure.items()
        if any(v in local_views for v in landmark.observations)
    }
    free_pose_ids = {sfm_data.views[v].pose_id for v in local_views}
    return BundleAdjustmentProblem(
        landmark_ids=free_landmark_ids,
        free_pose_ids=free_pose_ids - fixed_pose_ids,
        free_landmark_ids=free_landmark_ids,
    )


class BundleAdjustmentOrchestrator:
    """Runs local or global adjustments following the configured cadence."""

    def __init__(self, config: SequentialSfMConfig, adjuster: Optional[BundleAdjuster] = None) -> None:
        self.config = config
        self.adjuster = adjuster or ScipyBundleAdjuster(loss=config.ba_loss, max_nfev=config.ba_max_nfev)
        self.fixed_pose_ids: Set[int] = set()

    def lock_pose(self, pose_id: int) -> None:
        """Hold a pose constant in every later adjustment (gauge fixing)."""
        self.fixed_pose_ids.add(pose_id)

    def is_global_iteration(self, iteration: int) -> bool:
        if not self.config.use_local_ba:
            return True
        return self.config.global_ba_period > 0 and iteration % self.config.global_ba_period == 0

    def run_global(
        self,
        sfm_data: SfMData,
        report: ReconstructionReport,
        refine_intrinsics: Optional[bool] = None,
    ) -> bool:
        if refine_intrinsics is None:
            refine_intrinsics = self.config.refine_intrinsics
        problem = make_global_problem(sfm_data, refine_intrinsics, self.fixed_pose_ids)
        return self._run(sfm_data, problem, report, "global")

    def run_local(self, sfm_data: SfMData, new_view_ids: Iterable[int], report: ReconstructionReport) -> bool:
        problem = make_local_problem(
            sfm_data,
            new_view_ids,
            self.config.local_ba_graph_distance,
            self.config.local_ba_min_shared_landmarks,
            self.fixed_pose_ids,
        )
        if problem is None:
            logger.debug("Local neighbourhood covers the whole scene, running global bundle adjustment")
            return self.run_global(sfm_data, report)
        return self._run(sfm_data, problem, report, "local")

    def run(
        self,
        sfm_data: SfMData,
        new_view_ids: Iterable[int],
        iteration: int,
        report: ReconstructionReport,
    ) -> bool:
        """Adjustment after `iteration`: global on the cadence, local otherwise."""
        if self.is_global_iteration(iteration):
            return self.run_global(sfm_data, report)
        return self.run_local(sfm_data, new_view_ids, report)

    def _run(
        self,
        sfm_data: SfMData,
        problem: BundleAdjustmentProblem,
        report: ReconstructionReport,
        mode: str,
    ) -> bool:
        logger.debug("%s bundle adjustment over %d free blocks", mode.capitalize(), problem.num_free_blocks())
        result = self.adjuster.adjust(sfm_data, problem)
        report.ba_runs += 1
        if not result.converged:
            report.ba_failures += 1
            message = f"{mode} bundle adjustment did not converge ({result.message}); keeping previous values"
            report.warn(message)
            logger.warning(message)
            return False
        if result.truncated:
            message = (
                f"{mode} bundle adjustment stopped after {result.nfev} evaluations; "
                f"applying partial refinement (cost {result.initial_cost:.4g} -> {result.final_cost:.4g})"
            )
            report.warn(message)
            logger.warning(message)

        apply_bundle_adjustment_result(sfm_data, result)
        logger.info(
            "%s bundle adjustment: %d poses, %d landmarks, rmse %.3f -> %.3f px (%d evaluations)",
            mode.capitalize(),
            len(problem.free_pose_ids),
            len(problem.free_landmark_ids),
            result.initial_rmse,
            result.final_rmse,
            result.nfev,
        )
        return True


__all__ = [
    "build_covisibility_graph",
    "make_global_problem",
    "make_local_problem",
    "BundleAdjustmentOrchestrator",
]
