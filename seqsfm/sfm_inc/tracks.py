"""
Fusion of pairwise feature matches into multi-view tracks.

A track is a connected component of the graph whose nodes are
(view, descriptor type, feature index) triplets and whose edges are the
pairwise correspondences. Components that contain two features of the same
view are ambiguous and discarded.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from seqsfm.sfm_inc.data_structures import Observation
from seqsfm.sfm_inc.errors import InvalidInputError
from seqsfm.sfm_inc.report import ReconstructionReport

logger = logging.getLogger(__name__)

# (view_a, view_b) -> descriptor type -> (N, 2) array of feature index pairs.
PairwiseMatches = Dict[Tuple[int, int], Dict[str, np.ndarray]]
# view -> descriptor type -> (N, 2+) array of x, y[, scale[, orientation]].
FeaturesPerView = Dict[int, Dict[str, np.ndarray]]
# view -> descriptor type -> (N, 3) uint8 RGB colors, optional.
FeatureColors = Dict[int, Dict[str, np.ndarray]]

NodeKey = Tuple[int, str, int]


@dataclass
class Track:
    """Observations of one putative scene point: view id -> feature index."""

    desc_type: str
    observations: Dict[int, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.observations)


TracksMap = Dict[int, Track]
TracksPerView = Dict[int, List[int]]


def _pair_edges(
    view_a: int,
    view_b: int,
    desc_type: str,
    pairs: np.ndarray,
) -> List[Tuple[NodeKey, NodeKey]]:
    pairs = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
    return [
        ((view_a, desc_type, int(fa)), (view_b, desc_type, int(fb)))
        for fa, fb in pairs
    ]


def build_tracks(
    matches: PairwiseMatches,
    min_track_length: int = 2,
    known_views: Optional[Set[int]] = None,
    report: Optional[ReconstructionReport] = None,
) -> Tuple[TracksMap, TracksPerView]:
    """
    Fuse pairwise matches into tracks.

    Args:
        matches: Pairwise correspondences per ordered view pair and descriptor type.
        min_track_length: Tracks with fewer observations are dropped.
        known_views: If given, a match referencing another view is rejected.
        report: Optional run report updated with track statistics.

    Returns:
        Tuple of (tracks, tracks_per_view). Track ids are dense, starting at 0,
        in the order of their smallest (view, descriptor type, feature) node.

    Raises:
        InvalidInputError: If a pair references an unknown view.
    """
    edges: List[Tuple[NodeKey, NodeKey]] = []
    for (view_a, view_b), per_type in matches.items():
        if known_views is not None and (view_a not in known_views or view_b not in known_views):
            raise InvalidInputError(f"Matches reference unknown view pair ({view_a}, {view_b})")
        if view_a == view_b:
            logger.info("Ignoring matches of view %d with itself", view_a)
            continue
        for desc_type, pairs in per_type.items():
            edges.extend(_pair_edges(view_a, view_b, desc_type, pairs))

    if not edges:
        logger.warning("No correspondences to fuse into tracks")
        return {}, {}

    nodes = sorted({node for edge in edges for node in edge})
    node_index = {node: i for i, node in enumerate(nodes)}
    rows = np.array([node_index[a] for a, _ in edges], dtype=np.int64)
    cols = np.array([node_index[b] for _, b in edges], dtype=np.int64)
    graph = coo_matrix((np.ones(len(edges), dtype=np.int8), (rows, cols)), shape=(len(nodes), len(nodes)))
    _, labels = connected_components(graph, directed=False)

    components: Dict[int, List[NodeKey]] = defaultdict(list)
    for node, label in zip(nodes, labels):
        components[int(label)].append(node)

    tracks: TracksMap = {}
    tracks_per_view: TracksPerView = defaultdict(list)
    n_conflicting = 0
    n_short = 0
    # Components are visited in the order of their first (smallest) node.
    for label in sorted(components, key=lambda lbl: components[lbl][0]):
        members = components[label]
        view_ids = [view_id for view_id, _, _ in members]
        if len(set(view_ids)) != len(view_ids):
            n_conflicting += 1
            continue
        if len(members) < min_track_length:
            n_short += 1
            continue
        track_id = len(tracks)
        tracks[track_id] = Track(
            desc_type=members[0][1],
            observations={view_id: feat_id for view_id, _, feat_id in members},
        )
        for view_id in view_ids:
            tracks_per_view[view_id].append(track_id)

    logger.info(
        "Fused %d pairs into %d tracks (%d conflicting and %d short tracks discarded)",
        len(matches),
        len(tracks),
        n_conflicting,
        n_short,
    )
    if report is not None:
        report.num_tracks = len(tracks)
        report.num_conflicting_tracks = n_conflicting
        report.num_short_tracks = n_short
        report.track_length_histogram = track_length_histogram(tracks)

    return tracks, dict(tracks_per_view)


def get_common_tracks(tracks_per_view: TracksPerView, view_ids: Iterable[int]) -> Set[int]:
    """Tracks visible in all the given views."""
    view_ids = list(view_ids)
    if not view_ids:
        return set()
    common = set(tracks_per_view.get(view_ids[0], []))
    for view_id in view_ids[1:]:
        common &= set(tracks_per_view.get(view_id, []))
    return common


def get_tracks_in_views(tracks_per_view: TracksPerView, view_ids: Iterable[int]) -> Set[int]:
    """Tracks visible in at least one of the given views."""
    result: Set[int] = set()
    for view_id in view_ids:
        result.update(tracks_per_view.get(view_id, []))
    return result


def track_length_histogram(tracks: TracksMap) -> Dict[int, int]:
    return dict(sorted(Counter(len(track) for track in tracks.values()).items()))


def get_feature(
    features: FeaturesPerView,
    view_id: int,
    desc_type: str,
    feature_id: int,
) -> np.ndarray:
    """Row of the feature array: x, y and optional scale / orientation."""
    try:
        return np.asarray(features[view_id][desc_type][feature_id], dtype=np.float64)
    except (KeyError, IndexError) as e:
        raise InvalidInputError(
            f"Feature {feature_id} ({desc_type}) of view {view_id} is not available"
        ) from e


def make_observation(
    features: FeaturesPerView,
    view_id: int,
    desc_type: str,
    feature_id: int,
) -> Observation:
    row = get_feature(features, view_id, desc_type, feature_id)
    scale = float(row[2]) if row.shape[0] > 2 else 0.0
    return Observation(row[:2], feature_id, scale)


def get_feature_color(
    colors: Optional[FeatureColors],
    view_id: int,
    desc_type: str,
    feature_id: int,
) -> np.ndarray:
    """RGB color of a feature, gray when no colors were provided."""
    try:
        return np.asarray(colors[view_id][desc_type][feature_id], dtype=np.uint8)
    except (KeyError, IndexError, TypeError):
        return np.full(3, 128, dtype=np.uint8)


__all__ = [
    "PairwiseMatches",
    "FeaturesPerView",
    "Track",
    "TracksMap",
    "TracksPerView",
    "build_tracks",
    "get_common_tracks",
    "get_tracks_in_views",
    "track_length_histogram",
    "get_feature",
    "make_observation",
    "get_feature_color",
    "FeatureColors",
]
