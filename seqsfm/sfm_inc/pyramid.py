"""
Spatial repartition scoring of views for next-best-view selection.

Each image is covered by a pyramid of regular grids: level ``l`` (0 being the
coarsest) splits both axes into ``base ** (l + 1)`` cells. The score of a set
of tracks in a view counts the distinct cells covered at each level, weighted
by ``base ** l`` so that finer levels contribute more. Clustered features
therefore score lower than the same number of features spread over the image.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

import numpy as np

from seqsfm.sfm_inc.data_structures import SfMData
from seqsfm.sfm_inc.tracks import FeaturesPerView, TracksMap, TracksPerView

logger = logging.getLogger(__name__)


class PyramidScorer:
    def __init__(self, base: int = 2, depth: int = 5) -> None:
        self.base = base
        self.depth = depth
        self.cells_per_axis = [base ** (level + 1) for level in range(depth)]
        self.weights = [base**level for level in range(depth)]
        # Index of the first cell of each level in the combined indexing.
        self.level_offsets = np.cumsum([0] + [n * n for n in self.cells_per_axis[:-1]])
        # view id -> track id -> (depth,) combined cell indices
        self._cells: Dict[int, Dict[int, np.ndarray]] = {}

    def max_score(self) -> int:
        """Score of a view whose every cell at every level is covered."""
        return int(sum(n * n * w for n, w in zip(self.cells_per_axis, self.weights)))

    def cell_indices(self, x: float, y: float, width: int, height: int) -> np.ndarray:
        """Combined cell index of a pixel position at every level."""
        indices = np.empty(self.depth, dtype=np.int64)
        for level, n in enumerate(self.cells_per_axis):
            cx = min(int(np.floor(max(x, 0.0) * n / width)), n - 1)
            cy = min(int(np.floor(max(y, 0.0) * n / height)), n - 1)
            indices[level] = self.level_offsets[level] + cx + cy * n
        return indices

    def initialize(
        self,
        sfm_data: SfMData,
        features: FeaturesPerView,
        tracks: TracksMap,
        tracks_per_view: TracksPerView,
    ) -> None:
        """Precompute the pyramid cells of every (view, track) observation."""
        self._cells = {}
        for view_id, track_ids in tracks_per_view.items():
            view = sfm_data.views.get(view_id)
            intrinsic = sfm_data.intrinsics.get(view.intrinsic_id) if view is not None else None
            if intrinsic is None:
                continue
            per_track: Dict[int, np.ndarray] = {}
            for track_id in track_ids:
                track = tracks[track_id]
                x, y = features[view_id][track.desc_type][track.observations[view_id]][:2]
                per_track[track_id] = self.cell_indices(float(x), float(y), intrinsic.width, intrinsic.height)
            self._cells[view_id] = per_track
        logger.debug("Pyramid scoring initialized for %d views", len(self._cells))

    def score(self, view_id: int, track_ids: Iterable[int]) -> int:
        """Weighted count of distinct cells covered by the tracks in the view."""
        per_track = self._cells.get(view_id, {})
        covered: List[set] = [set() for _ in range(self.depth)]
        for track_id in track_ids:
            cells = per_track.get(track_id)
            if cells is None:
                continue
            for level in range(self.depth):
                covered[level].add(int(cells[level]))
        return int(sum(len(c) * w for c, w in zip(covered, self.weights)))


__all__ = ["PyramidScorer"]
