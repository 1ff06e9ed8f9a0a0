"""
Ranking of the views that can be resected next.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List

from seqsfm.sfm_inc.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import SfMData
from seqsfm.sfm_inc.pyramid import PyramidScorer
from seqsfm.sfm_inc.tracks import TracksPerView

logger = logging.getLogger(__name__)


@dataclass
class ViewConnectionScore:
    view_id: int
    # Tracks of the view that are already landmarks.
    num_connected_tracks: int
    score: float
    has_known_intrinsic: bool


def find_connected_views(
    sfm_data: SfMData,
    remaining_view_ids: Iterable[int],
    tracks_per_view: TracksPerView,
    scorer: PyramidScorer,
    config: SequentialSfMConfig,
) -> List[ViewConnectionScore]:
    """
    Score every remaining view connected to the current reconstruction.

    Returns:
        Scores sorted best first (score, then number of tracks, then view id).
        Views without any connected track are left out.
    """
    scores = []
    for view_id in remaining_view_ids:
        view = sfm_data.views.get(view_id)
        if view is None or view.intrinsic_id not in sfm_data.intrinsics:
            continue
        connected = [t for t in tracks_per_view.get(view_id, []) if t in sfm_data.structure]
        if not connected:
            continue
        known = sfm_data.intrinsics[view.intrinsic_id].is_initialized()
        score = float(scorer.score(view_id, connected))
        if not known:
            score *= config.unknown_intrinsic_penalty
        scores.append(ViewConnectionScore(view_id, len(connected), score, known))

    scores.sort(key=lambda s: (-s.score, -s.num_connected_tracks, s.view_id))
    return scores


def find_next_best_views(
    sfm_data: SfMData,
    remaining_view_ids: Iterable[int],
    tracks_per_view: TracksPerView,
    scorer: PyramidScorer,
    config: SequentialSfMConfig,
) -> List[int]:
    """
    Batch of views to resect in the next iteration.

    The batch holds the best view and every other view scoring at least
    `nbv_score_ratio` of it, up to `max_views_per_batch`. An empty list means
    that no remaining view is connected to the reconstruction.
    """
    scores = find_connected_views(sfm_data, remaining_view_ids, tracks_per_view, scorer, config)
    if not scores:
        return []

    best = scores[0].score
    batch = [s.view_id for s in scores if s.score >= config.nbv_score_ratio * best]
    batch = batch[: config.max_views_per_batch]
    logger.debug(
        "Next best views %s (best score %.0f of %d)",
        batch,
        best,
        scorer.max_score(),
    )
    return batch


__all__ = ["ViewConnectionScore", "find_connected_views", "find_next_best_views"]
