"""
Command-line interface for the sequential SfM pipeline.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from seqsfm.io.scene_io import (
    load_feature_colors_npz,
    load_ground_truth_npz,
    load_problem_npz,
    save_scene_npz,
)
from seqsfm.sfm_inc.config import SequentialSfMConfig, ThresholdPolicy
from seqsfm.sfm_inc.errors import InvalidInputError
from seqsfm.sfm_inc.evaluation import evaluate_reconstruction
from seqsfm.sfm_inc.incremental_sfm import SequentialReconstructionEngine
from seqsfm.sfm_inc.report import ReconstructionState
from seqsfm.viz.plotly_viz import plot_sfm_reconstruct

logger = logging.getLogger("seqsfm")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Incremental Structure-from-Motion from precomputed features and matches"
    )
    parser.add_argument(
        "--input",
        type=str,
        required=True,
        help="Path to the problem file (.npz with views, intrinsics, features and matches)",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory for the scene, report and visualization (default: output)",
    )
    parser.add_argument(
        "--initial-pair",
        type=int,
        nargs=2,
        default=None,
        metavar=("VIEW_A", "VIEW_B"),
        help="Seed the reconstruction with this pair of view ids instead of selecting one",
    )
    parser.add_argument(
        "--no-local-ba",
        action="store_true",
        help="Run a global bundle adjustment after every iteration",
    )
    parser.add_argument(
        "--threshold-policy",
        type=str,
        default=ThresholdPolicy.ADAPTIVE.value,
        choices=[p.value for p in ThresholdPolicy],
        help="Resection inlier threshold policy (default: adaptive)",
    )
    parser.add_argument(
        "--num-threads",
        type=int,
        default=4,
        help="Worker threads for resection and triangulation (default: 4)",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Generate HTML visualization of the reconstruction",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point for the SfM pipeline.

    Usage:
        seqsfm --input problem.npz --output-dir out/ [--initial-pair 0 1]

    Returns:
        0 on success, 1 if the reconstruction failed.
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(name)s] %(levelname)s: %(message)s",
    )

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    config = SequentialSfMConfig(
        initial_pair=tuple(args.initial_pair) if args.initial_pair else None,
        use_local_ba=not args.no_local_ba,
        threshold_policy=ThresholdPolicy(args.threshold_policy),
        num_threads=args.num_threads,
    )

    logger.info("Loading problem from %s", args.input)
    try:
        sfm_data, features, matches = load_problem_npz(args.input)
    except (OSError, InvalidInputError) as exc:
        logger.error("Cannot load %s: %s", args.input, exc)
        return 1
    colors = load_feature_colors_npz(args.input)
    ground_truth = load_ground_truth_npz(args.input)

    engine = SequentialReconstructionEngine(sfm_data, features, matches, config, colors=colors)
    success = engine.process()
    report = engine.report

    report_path = output_dir / "report.json"
    report.save_json(str(report_path))
    logger.info("Report saved to %s", report_path)

    if not success or report.state != ReconstructionState.DONE:
        logger.error("Reconstruction failed: %s", report.failure_reason)
        return 1

    scene_path = output_dir / "scene.npz"
    save_scene_npz(str(scene_path), sfm_data)

    if ground_truth is not None:
        evaluation = evaluate_reconstruction(sfm_data, ground_truth_poses=ground_truth)
        evaluation_path = output_dir / "evaluation.json"
        with open(evaluation_path, "w") as f:
            json.dump(evaluation.to_dict(), f, indent=2)
        logger.info("Evaluation saved to %s", evaluation_path)

    if args.visualize:
        fig = plot_sfm_reconstruct(sfm_data, report)
        viz_path = output_dir / "reconstruction.html"
        fig.write_html(str(viz_path))
        logger.info("Visualization saved to %s", viz_path)

    logger.info(
        "Pipeline completed: %d/%d views reconstructed, unreconstructed %s",
        len(sfm_data.get_valid_views()),
        len(sfm_data.views),
        report.unreconstructed_views,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
