"""
Scene and problem I/O utilities based on .npz archives.

A problem archive holds everything the reconstruction engine needs: views,
intrinsics, rigs, per-view features and pairwise matches, optionally feature
colors and ground-truth poses. Per-view arrays are stored under keys of the
form ``features:<view>:<desc_type>`` and ``matches:<view_a>:<view_b>:<desc_type>``.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

import numpy as np

from seqsfm.sfm_inc.data_structures import UNDEFINED_ID, Intrinsic, Pose, Rig, SfMData, View
from seqsfm.sfm_inc.errors import InvalidInputError
from seqsfm.sfm_inc.tracks import FeatureColors, FeaturesPerView, PairwiseMatches

logger = logging.getLogger(__name__)

FEATURES_PREFIX = "features"
MATCHES_PREFIX = "matches"
COLORS_PREFIX = "colors"


def save_problem_npz(
    output_path: str,
    sfm_data: SfMData,
    features: FeaturesPerView,
    matches: PairwiseMatches,
    colors: Optional[FeatureColors] = None,
    ground_truth_poses: Optional[Dict[int, Pose]] = None,
) -> None:
    """
    Serialize a reconstruction problem to a .npz file.

    Args:
        output_path: Path where the problem will be saved (.npz file).
        sfm_data: Scene with views, intrinsics and rigs (poses are ignored).
        features: Feature positions per view and descriptor type.
        matches: Pairwise feature correspondences.
        colors: Optional per-feature RGB colors.
        ground_truth_poses: Optional reference world-to-camera poses per view.
    """
    views = [sfm_data.views[v] for v in sorted(sfm_data.views)]
    intrinsics = [sfm_data.intrinsics[i] for i in sorted(sfm_data.intrinsics)]
    rigs = [sfm_data.get_rigs()[r] for r in sorted(sfm_data.get_rigs())]

    arrays: Dict[str, np.ndarray] = {
        "view_ids": np.array([v.view_id for v in views], dtype=np.int64),
        "view_intrinsic_ids": np.array([v.intrinsic_id for v in views], dtype=np.int64),
        "view_pose_ids": np.array([v.pose_id for v in views], dtype=np.int64),
        "view_rig_ids": np.array([v.rig_id for v in views], dtype=np.int64),
        "view_sub_pose_ids": np.array([v.sub_pose_id for v in views], dtype=np.int64),
        "view_image_paths": np.array([v.image_path for v in views], dtype=str),
        "intrinsic_ids": np.array([i.intrinsic_id for i in intrinsics], dtype=np.int64),
        "intrinsic_sizes": np.array([[i.width, i.height] for i in intrinsics], dtype=np.int64).reshape(-1, 2),
        # focal, cx, cy, k1, k2
        "intrinsic_params": np.array(
            [[i.focal, i.cx, i.cy, i.k1, i.k2] for i in intrinsics], dtype=np.float64
        ).reshape(-1, 5),
        "intrinsic_serials": np.array([i.serial_number for i in intrinsics], dtype=str),
        "intrinsic_locked": np.array([i.locked for i in intrinsics], dtype=bool),
        "rig_ids": np.array([r.rig_id for r in rigs], dtype=np.int64),
        "rig_num_sub_poses": np.array([len(r.sub_poses) for r in rigs], dtype=np.int64),
    }

    for view_id, per_type in features.items():
        for desc_type, feats in per_type.items():
            arrays[f"{FEATURES_PREFIX}:{view_id}:{desc_type}"] = np.asarray(feats, dtype=np.float64)
    for (view_a, view_b), per_type in matches.items():
        for desc_type, pairs in per_type.items():
            arrays[f"{MATCHES_PREFIX}:{view_a}:{view_b}:{desc_type}"] = np.asarray(pairs, dtype=np.int64).reshape(-1, 2)
    if colors is not None:
        for view_id, per_type in colors.items():
            for desc_type, rgb in per_type.items():
                arrays[f"{COLORS_PREFIX}:{view_id}:{desc_type}"] = np.asarray(rgb, dtype=np.uint8)

    if ground_truth_poses is not None:
        gt_ids = sorted(ground_truth_poses)
        arrays["gt_view_ids"] = np.array(gt_ids, dtype=np.int64)
        arrays["gt_Rs"] = np.array([ground_truth_poses[v].R for v in gt_ids]).reshape(-1, 3, 3)
        arrays["gt_ts"] = np.array([ground_truth_poses[v].t for v in gt_ids]).reshape(-1, 3)

    np.savez(output_path, **arrays)
    logger.info("Saved problem with %d views and %d match pairs to %s", len(views), len(matches), output_path)


def _parse_key(key: str, n_ids: int) -> Tuple[Tuple[int, ...], str]:
    parts = key.split(":", n_ids + 1)
    if len(parts) != n_ids + 2:
        raise InvalidInputError(f"Malformed problem key '{key}'")
    try:
        ids = tuple(int(p) for p in parts[1: n_ids + 1])
    except ValueError as exc:
        raise InvalidInputError(f"Malformed problem key '{key}'") from exc
    return ids, parts[-1]


def load_problem_npz(input_path: str) -> Tuple[SfMData, FeaturesPerView, PairwiseMatches]:
    """
    Load a reconstruction problem from a .npz file.

    Args:
        input_path: Path to the .npz file written by `save_problem_npz`.

    Returns:
        Tuple of (sfm_data, features, matches) where:
        - sfm_data: Scene with views, intrinsics and rigs, without poses.
        - features: Feature positions per view and descriptor type.
        - matches: Pairwise correspondences per view pair and descriptor type.

    Raises:
        InvalidInputError: If a required array is missing or a key is malformed.
    """
    with np.load(input_path, allow_pickle=False) as data:
        required = ("view_ids", "view_intrinsic_ids", "intrinsic_ids", "intrinsic_sizes", "intrinsic_params")
        missing = [k for k in required if k not in data.files]
        if missing:
            raise InvalidInputError(f"{input_path} is missing arrays {missing}")

        sfm_data = SfMData()
        n_views = len(data["view_ids"])
        pose_ids = data["view_pose_ids"] if "view_pose_ids" in data.files else data["view_ids"]
        rig_ids = data["view_rig_ids"] if "view_rig_ids" in data.files else np.full(n_views, UNDEFINED_ID)
        sub_pose_ids = data["view_sub_pose_ids"] if "view_sub_pose_ids" in data.files else np.full(n_views, UNDEFINED_ID)
        paths = data["view_image_paths"] if "view_image_paths" in data.files else np.full(n_views, "")
        for i in range(n_views):
            sfm_data.add_view(View(
                view_id=int(data["view_ids"][i]),
                intrinsic_id=int(data["view_intrinsic_ids"][i]),
                pose_id=int(pose_ids[i]),
                rig_id=int(rig_ids[i]),
                sub_pose_id=int(sub_pose_ids[i]),
                image_path=str(paths[i]),
            ))

        n_intrinsics = len(data["intrinsic_ids"])
        serials = data["intrinsic_serials"] if "intrinsic_serials" in data.files else np.full(n_intrinsics, "")
        locked = data["intrinsic_locked"] if "intrinsic_locked" in data.files else np.zeros(n_intrinsics, dtype=bool)
        for i in range(n_intrinsics):
            width, height = data["intrinsic_sizes"][i]
            focal, cx, cy, k1, k2 = data["intrinsic_params"][i]
            sfm_data.add_intrinsic(Intrinsic(
                intrinsic_id=int(data["intrinsic_ids"][i]),
                width=int(width),
                height=int(height),
                focal=float(focal),
                cx=float(cx),
                cy=float(cy),
                k1=float(k1),
                k2=float(k2),
                serial_number=str(serials[i]),
                locked=bool(locked[i]),
            ))

        if "rig_ids" in data.files:
            for rig_id, n_sub_poses in zip(data["rig_ids"], data["rig_num_sub_poses"]):
                sfm_data.add_rig(Rig.with_sub_poses(int(rig_id), int(n_sub_poses)))

        features: FeaturesPerView = {}
        matches: PairwiseMatches = {}
        for key in data.files:
            if key.startswith(FEATURES_PREFIX + ":"):
                (view_id,), desc_type = _parse_key(key, 1)
                features.setdefault(view_id, {})[desc_type] = data[key]
            elif key.startswith(MATCHES_PREFIX + ":"):
                (view_a, view_b), desc_type = _parse_key(key, 2)
                matches.setdefault((view_a, view_b), {})[desc_type] = data[key]

    logger.info(
        "Loaded problem with %d views, %d intrinsics and %d match pairs from %s",
        len(sfm_data.views),
        len(sfm_data.intrinsics),
        len(matches),
        input_path,
    )
    return sfm_data, features, matches


def load_feature_colors_npz(input_path: str) -> Optional[FeatureColors]:
    """Per-feature colors stored in a problem archive, or None."""
    colors: FeatureColors = {}
    with np.load(input_path, allow_pickle=False) as data:
        for key in data.files:
            if key.startswith(COLORS_PREFIX + ":"):
                (view_id,), desc_type = _parse_key(key, 1)
                colors.setdefault(view_id, {})[desc_type] = data[key]
    return colors or None


def load_ground_truth_npz(input_path: str) -> Optional[Dict[int, Pose]]:
    """Ground-truth poses stored in a problem archive, or None."""
    with np.load(input_path, allow_pickle=False) as data:
        if "gt_view_ids" not in data.files:
            return None
        return {
            int(view_id): Pose(R, t)
            for view_id, R, t in zip(data["gt_view_ids"], data["gt_Rs"], data["gt_ts"])
        }


def save_scene_npz(output_path: str, sfm_data: SfMData) -> None:
    """
    Serialize a reconstructed scene to a .npz file.

    Args:
        output_path: Path where the scene data will be saved (.npz file).
        sfm_data: Reconstructed scene. Only reconstructed views are written,
            with their effective (rig-composed) poses.
    """
    view_ids = sorted(sfm_data.get_valid_views())
    n_cameras = len(view_ids)
    camera_Rs = np.zeros((n_cameras, 3, 3))
    camera_ts = np.zeros((n_cameras, 3))
    camera_Ks = np.zeros((n_cameras, 3, 3))
    camera_dist = np.zeros((n_cameras, 2))

    for i, view_id in enumerate(view_ids):
        view = sfm_data.views[view_id]
        pose = sfm_data.get_pose(view)
        intrinsic = sfm_data.intrinsics[view.intrinsic_id]
        camera_Rs[i] = pose.R
        camera_ts[i] = pose.t
        camera_Ks[i] = intrinsic.K
        camera_dist[i] = (intrinsic.k1, intrinsic.k2)

    landmark_ids = sorted(sfm_data.structure)
    points_xyz = np.zeros((len(landmark_ids), 3))
    points_colors = np.zeros((len(landmark_ids), 3), dtype=np.uint8)
    obs_view_ids, obs_point_ids, obs_uvs = [], [], []

    for i, landmark_id in enumerate(landmark_ids):
        landmark = sfm_data.structure[landmark_id]
        points_xyz[i] = landmark.X
        points_colors[i] = landmark.color
        for view_id, observation in sorted(landmark.observations.items()):
            obs_view_ids.append(view_id)
            obs_point_ids.append(landmark_id)
            obs_uvs.append(observation.x)

    np.savez(
        output_path,
        camera_view_ids=np.array(view_ids, dtype=np.int64),
        camera_Rs=camera_Rs,
        camera_ts=camera_ts,
        camera_Ks=camera_Ks,
        camera_dist=camera_dist,
        point_ids=np.array(landmark_ids, dtype=np.int64),
        points_xyz=points_xyz,
        points_colors=points_colors,
        obs_view_ids=np.array(obs_view_ids, dtype=np.int64),
        obs_point_ids=np.array(obs_point_ids, dtype=np.int64),
        obs_uvs=np.array(obs_uvs, dtype=np.float64).reshape(-1, 2),
    )
    logger.info("Saved scene with %d cameras and %d points to %s", n_cameras, len(landmark_ids), output_path)


__all__ = [
    "save_problem_npz",
    "load_problem_npz",
    "load_feature_colors_npz",
    "load_ground_truth_npz",
    "save_scene_npz",
]
