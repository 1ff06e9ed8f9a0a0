"""
Run report of a reconstruction.

The report is created by the caller (or the engine) and passed explicitly to
every phase, which appends counters and per-iteration records. It is plain
data: exporting it to JSON or HTML is left to the caller.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np


class ReconstructionState(str, Enum):
    INIT = "init"
    SEED_SELECTED = "seed_selected"
    ITERATING = "iterating"
    CONVERGING = "converging"
    DONE = "done"
    FAILED = "failed"


@dataclass
class IterationRecord:
    """What happened during one productive iteration of the main loop."""

    index: int
    candidates: List[int]
    resected: List[int]
    failed: List[int]
    new_landmarks: int = 0
    extended_landmarks: int = 0
    outliers_removed: int = 0
    ba_mode: str = "local"
    ba_converged: bool = True


@dataclass
class ReconstructionReport:
    state: ReconstructionState = ReconstructionState.INIT
    failure_reason: str = ""

    # Tracks
    num_tracks: int = 0
    num_conflicting_tracks: int = 0
    num_short_tracks: int = 0
    track_length_histogram: Dict[int, int] = field(default_factory=dict)

    # Seed
    initial_pair: Optional[Tuple[int, int]] = None
    initial_pair_candidates: int = 0

    # Views
    resected_views: List[int] = field(default_factory=list)
    failed_resections: Dict[int, int] = field(default_factory=dict)
    unreconstructed_views: List[int] = field(default_factory=list)
    resection_thresholds: Dict[int, float] = field(default_factory=dict)
    new_intrinsics: List[int] = field(default_factory=list)

    # Structure
    points_triangulated: int = 0
    observations_added: int = 0
    outliers_removed: int = 0

    # Refinement
    ba_runs: int = 0
    ba_failures: int = 0
    warnings: List[str] = field(default_factory=list)
    residual_histogram: Dict[str, List[float]] = field(default_factory=dict)
    final_rmse: float = 0.0

    iterations: List[IterationRecord] = field(default_factory=list)
    duration_s: float = 0.0

    def record_failed_resection(self, view_id: int) -> None:
        self.failed_resections[view_id] = self.failed_resections.get(view_id, 0) + 1

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def set_residual_histogram(self, residuals: np.ndarray, bins: int = 10) -> None:
        """Store a histogram of reprojection residuals (pixels)."""
        if residuals.size == 0:
            self.residual_histogram = {}
            self.final_rmse = 0.0
            return
        upper = max(float(np.max(residuals)), 1e-9)
        counts, edges = np.histogram(residuals, bins=bins, range=(0.0, upper))
        self.residual_histogram = {
            "counts": counts.astype(float).tolist(),
            "edges": edges.tolist(),
        }
        self.final_rmse = float(np.sqrt(np.mean(residuals**2)))

    def to_dict(self) -> dict:
        d = asdict(self)
        d["state"] = self.state.value
        d["track_length_histogram"] = {str(k): v for k, v in self.track_length_histogram.items()}
        d["failed_resections"] = {str(k): v for k, v in self.failed_resections.items()}
        d["resection_thresholds"] = {str(k): v for k, v in self.resection_thresholds.items()}
        return d

    def save_json(self, output_path: str) -> None:
        with open(output_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


__all__ = ["ReconstructionState", "IterationRecord", "ReconstructionReport"]
