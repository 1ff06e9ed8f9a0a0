"""
Bundle adjustment for refining camera poses, intrinsics and 3D points.

The solver is exposed through the small `BundleAdjuster` interface: it
receives a problem description (which parameter blocks are free, which
landmarks contribute residuals) and returns refined values plus a convergence
flag. It never writes into the scene; `apply_bundle_adjustment_result` does.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from seqsfm.sfm_inc.data_structures import Pose, SfMData

logger = logging.getLogger(__name__)

POSE_SIZE = 6  # rvec (3) + t (3)
INTRINSIC_SIZE = 3  # focal, k1, k2
POINT_SIZE = 3


@dataclass
class BundleAdjustmentProblem:
    """
    Parameter blocks to refine.

    Residuals come from every observation of `landmark_ids` made by a
    reconstructed view. Poses, intrinsics and landmarks that are involved but
    not listed as free are held constant.
    """

    landmark_ids: Set[int]
    free_pose_ids: Set[int] = field(default_factory=set)
    free_intrinsic_ids: Set[int] = field(default_factory=set)
    free_landmark_ids: Set[int] = field(default_factory=set)

    def num_free_blocks(self) -> int:
        return len(self.free_pose_ids) + len(self.free_intrinsic_ids) + len(self.free_landmark_ids)


@dataclass
class BundleAdjustmentResult:
    converged: bool
    # Stopped at the evaluation limit with a lower cost; values are still applied.
    truncated: bool = False
    initial_cost: float = 0.0
    final_cost: float = 0.0
    initial_rmse: float = 0.0
    final_rmse: float = 0.0
    nfev: int = 0
    message: str = ""
    poses: Dict[int, Pose] = field(default_factory=dict)
    # intrinsic id -> (focal, k1, k2)
    intrinsics: Dict[int, Tuple[float, float, float]] = field(default_factory=dict)
    points: Dict[int, np.ndarray] = field(default_factory=dict)


class BundleAdjuster(ABC):
    """Nonlinear least-squares refinement of a bundle adjustment problem."""

    @abstractmethod
    def adjust(self, sfm_data: SfMData, problem: BundleAdjustmentProblem) -> BundleAdjustmentResult:
        ...


def rotate_rodrigues(rvecs: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Rotate points (M, 3) by rotation vectors (M, 3) with Rodrigues' formula."""
    theta = np.linalg.norm(rvecs, axis=1, keepdims=True)
    small = theta < 1e-12
    safe_theta = np.where(small, 1.0, theta)
    k = rvecs / safe_theta
    cos = np.cos(theta)
    sin = np.sin(theta)
    dot = np.sum(k * points, axis=1, keepdims=True)
    rotated = points * cos + np.cross(k, points) * sin + k * dot * (1.0 - cos)
    first_order = points + np.cross(rvecs, points)
    return np.where(small, first_order, rotated)


def pack_parameters(sfm_data: SfMData, problem: BundleAdjustmentProblem) -> Tuple[np.ndarray, Dict]:
    """
    Pack the free parameter blocks into a 1D vector and index the observations.

    Args:
        sfm_data: Scene holding the current values.
        problem: Free blocks and contributing landmarks.

    Returns:
        Tuple of (params, meta) where:
        - params: 1D array of free parameters (poses, then intrinsics, then points).
        - meta: Dictionary with the constant values, the slices of the free
          blocks and the flattened observation arrays:
            - meta["pose_ids"], meta["pose_values"], meta["pose_slice"][pose_id]
            - meta["intrinsic_ids"], meta["intrinsic_values"], meta["intrinsic_slice"][intrinsic_id]
            - meta["point_ids"], meta["point_values"], meta["point_slice"][landmark_id]
            - meta["obs_*"]: per-observation indices, sub-poses and pixels
    """
    valid_views = sfm_data.get_valid_views()
    obs_pose, obs_intrinsic, obs_point, obs_sub_R, obs_sub_t, obs_x = [], [], [], [], [], []
    pose_index: Dict[int, int] = {}
    intrinsic_index: Dict[int, int] = {}
    point_index: Dict[int, int] = {}

    for landmark_id in sorted(problem.landmark_ids):
        landmark = sfm_data.structure.get(landmark_id)
        if landmark is None:
            continue
        for view_id, observation in landmark.observations.items():
            if view_id not in valid_views:
                continue
            view = sfm_data.views[view_id]
            if view.is_part_of_rig():
                sub_pose = sfm_data.get_rigs()[view.rig_id].get_sub_pose(view.sub_pose_id).pose
            else:
                sub_pose = Pose.identity()
            obs_pose.append(pose_index.setdefault(view.pose_id, len(pose_index)))
            obs_intrinsic.append(intrinsic_index.setdefault(view.intrinsic_id, len(intrinsic_index)))
            obs_point.append(point_index.setdefault(landmark_id, len(point_index)))
            obs_sub_R.append(sub_pose.R)
            obs_sub_t.append(sub_pose.t)
            obs_x.append(observation.x)

    poses = sfm_data.get_poses()
    pose_ids = sorted(pose_index, key=pose_index.get)
    intrinsic_ids = sorted(intrinsic_index, key=intrinsic_index.get)
    point_ids = sorted(point_index, key=point_index.get)

    pose_values = np.array([np.concatenate([poses[p].rvec(), poses[p].t]) for p in pose_ids]).reshape(-1, POSE_SIZE)
    intrinsic_values = np.array([
        [sfm_data.intrinsics[i].focal, sfm_data.intrinsics[i].k1, sfm_data.intrinsics[i].k2,
         sfm_data.intrinsics[i].cx, sfm_data.intrinsics[i].cy]
        for i in intrinsic_ids
    ]).reshape(-1, 5)
    point_values = np.array([sfm_data.structure[p].X for p in point_ids]).reshape(-1, POINT_SIZE)

    meta: Dict = {
        "pose_ids": pose_ids,
        "intrinsic_ids": intrinsic_ids,
        "point_ids": point_ids,
        "pose_values": pose_values,
        "intrinsic_values": intrinsic_values,
        "point_values": point_values,
        "pose_slice": {},
        "intrinsic_slice": {},
        "point_slice": {},
        "obs_pose": np.array(obs_pose, dtype=np.int64),
        "obs_intrinsic": np.array(obs_intrinsic, dtype=np.int64),
        "obs_point": np.array(obs_point, dtype=np.int64),
        "obs_sub_R": np.array(obs_sub_R).reshape(-1, 3, 3),
        "obs_sub_t": np.array(obs_sub_t).reshape(-1, 3),
        "obs_x": np.array(obs_x).reshape(-1, 2),
    }

    param_list = []
    free_pose_idx, free_intrinsic_idx, free_point_idx = [], [], []
    for i, pose_id in enumerate(pose_ids):
        if pose_id in problem.free_pose_ids:
            start = len(param_list)
            param_list.extend(pose_values[i])
            meta["pose_slice"][pose_id] = slice(start, len(param_list))
            free_pose_idx.append(i)
    for i, intrinsic_id in enumerate(intrinsic_ids):
        if intrinsic_id in problem.free_intrinsic_ids:
            start = len(param_list)
            param_list.extend(intrinsic_values[i, :INTRINSIC_SIZE])
            meta["intrinsic_slice"][intrinsic_id] = slice(start, len(param_list))
            free_intrinsic_idx.append(i)
    for i, point_id in enumerate(point_ids):
        if point_id in problem.free_landmark_ids:
            start = len(param_list)
            param_list.extend(point_values[i])
            meta["point_slice"][point_id] = slice(start, len(param_list))
            free_point_idx.append(i)

    meta["free_pose_idx"] = np.array(free_pose_idx, dtype=np.int64)
    meta["free_intrinsic_idx"] = np.array(free_intrinsic_idx, dtype=np.int64)
    meta["free_point_idx"] = np.array(free_point_idx, dtype=np.int64)
    meta["n_pose_params"] = len(free_pose_idx) * POSE_SIZE
    meta["n_intrinsic_params"] = len(free_intrinsic_idx) * INTRINSIC_SIZE

    params = np.array(param_list, dtype=np.float64)
    return params, meta


def unpack_parameters(params: np.ndarray, meta: Dict) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Full per-block values (poses, intrinsics, points) with the free ones from `params`."""
    n_pose = meta["n_pose_params"]
    n_intrinsic = meta["n_intrinsic_params"]

    poses = meta["pose_values"].copy()
    if len(meta["free_pose_idx"]):
        poses[meta["free_pose_idx"]] = params[:n_pose].reshape(-1, POSE_SIZE)

    intrinsics = meta["intrinsic_values"].copy()
    if len(meta["free_intrinsic_idx"]):
        intrinsics[meta["free_intrinsic_idx"], :INTRINSIC_SIZE] = params[n_pose: n_pose + n_intrinsic].reshape(-1, INTRINSIC_SIZE)

    points = meta["point_values"].copy()
    if len(meta["free_point_idx"]):
        points[meta["free_point_idx"]] = params[n_pose + n_intrinsic:].reshape(-1, POINT_SIZE)

    return poses, intrinsics, points


def reprojection_residuals(params: np.ndarray, meta: Dict) -> np.ndarray:
    """
    Compute reprojection residuals for all observations.

    Returns:
        1D array of residuals (2 per observation: [du, dv]).
    """
    poses, intrinsics, points = unpack_parameters(params, meta)

    pose = poses[meta["obs_pose"]]
    X = rotate_rodrigues(pose[:, :3], points[meta["obs_point"]]) + pose[:, 3:]
    X = np.einsum("mij,mj->mi", meta["obs_sub_R"], X) + meta["obs_sub_t"]

    intr = intrinsics[meta["obs_intrinsic"]]
    z = np.where(np.abs(X[:, 2]) < 1e-12, 1e-12, X[:, 2])
    xy = X[:, :2] / z[:, None]
    r2 = np.sum(xy * xy, axis=1)
    radial = 1.0 + intr[:, 1] * r2 + intr[:, 2] * r2 * r2
    projected = xy * (intr[:, 0] * radial)[:, None] + intr[:, 3:5]

    return (projected - meta["obs_x"]).ravel()


def jacobian_sparsity(meta: Dict, n_params: int) -> lil_matrix:
    """Sparsity pattern: each residual depends on one pose, intrinsic and point."""
    n_obs = len(meta["obs_x"])
    A = lil_matrix((2 * n_obs, n_params), dtype=int)
    obs = np.arange(n_obs)

    def mark(block_of_obs: np.ndarray, free_idx: np.ndarray, offset: int, size: int) -> None:
        if len(free_idx) == 0:
            return
        slot = np.full(int(block_of_obs.max(initial=0)) + 1, -1, dtype=np.int64)
        slot[free_idx] = np.arange(len(free_idx))
        obs_slot = slot[block_of_obs]
        has_free = obs_slot >= 0
        rows = obs[has_free]
        cols0 = offset + size * obs_slot[has_free]
        for k in range(size):
            A[2 * rows, cols0 + k] = 1
            A[2 * rows + 1, cols0 + k] = 1

    mark(meta["obs_pose"], meta["free_pose_idx"], 0, POSE_SIZE)
    mark(meta["obs_intrinsic"], meta["free_intrinsic_idx"], meta["n_pose_params"], INTRINSIC_SIZE)
    mark(
        meta["obs_point"],
        meta["free_point_idx"],
        meta["n_pose_params"] + meta["n_intrinsic_params"],
        POINT_SIZE,
    )
    return A


def _rmse(residuals: np.ndarray) -> float:
    if residuals.size == 0:
        return 0.0
    per_obs = residuals.reshape(-1, 2)
    return float(np.sqrt(np.mean(np.sum(per_obs * per_obs, axis=1))))


class ScipyBundleAdjuster(BundleAdjuster):
    """Bundle adjustment with scipy.optimize.least_squares (trf, sparse Jacobian)."""

    def __init__(self, loss: str = "soft_l1", max_nfev: int = 100, f_scale: float = 1.0, verbose: int = 0) -> None:
        self.loss = loss
        self.max_nfev = max_nfev
        self.f_scale = f_scale
        self.verbose = verbose

    def adjust(self, sfm_data: SfMData, problem: BundleAdjustmentProblem) -> BundleAdjustmentResult:
        params, meta = pack_parameters(sfm_data, problem)
        residuals0 = reprojection_residuals(params, meta)
        initial_rmse = _rmse(residuals0)

        if params.size == 0 or residuals0.size == 0:
            return BundleAdjustmentResult(
                converged=True,
                initial_rmse=initial_rmse,
                final_rmse=initial_rmse,
                message="nothing to refine",
            )

        logger.debug(
            "Starting bundle adjustment with %d poses, %d intrinsics, %d points free, "
            "%d observations, %d parameters",
            len(meta["free_pose_idx"]),
            len(meta["free_intrinsic_idx"]),
            len(meta["free_point_idx"]),
            len(meta["obs_x"]),
            params.size,
        )

        result = least_squares(
            reprojection_residuals,
            params,
            args=(meta,),
            jac_sparsity=jacobian_sparsity(meta, params.size),
            method="trf",
            loss=self.loss,
            f_scale=self.f_scale,
            x_scale="jac",
            verbose=self.verbose,
            max_nfev=self.max_nfev,
        )

        initial_cost = float(0.5 * np.sum(residuals0**2))
        final_cost = float(0.5 * np.sum(result.fun**2))
        finite = bool(np.all(np.isfinite(result.x))) and bool(np.isfinite(final_cost))
        # status 0: stopped at max_nfev. Still usable when the cost went down.
        truncated = finite and not result.success and result.status == 0 and final_cost < initial_cost
        converged = finite and (bool(result.success) or truncated)
        out = BundleAdjustmentResult(
            converged=converged,
            truncated=truncated,
            initial_cost=initial_cost,
            final_cost=final_cost,
            initial_rmse=initial_rmse,
            final_rmse=_rmse(result.fun),
            nfev=int(result.nfev),
            message=str(result.message),
        )
        if not converged:
            return out

        poses, intrinsics, points = unpack_parameters(result.x, meta)
        for i in meta["free_pose_idx"]:
            out.poses[meta["pose_ids"][i]] = Pose.from_rvec(poses[i, :3], poses[i, 3:])
        for i in meta["free_intrinsic_idx"]:
            focal, k1, k2 = intrinsics[i, :INTRINSIC_SIZE]
            out.intrinsics[meta["intrinsic_ids"][i]] = (float(focal), float(k1), float(k2))
        for i in meta["free_point_idx"]:
            out.points[meta["point_ids"][i]] = points[i].copy()
        return out


def apply_bundle_adjustment_result(sfm_data: SfMData, result: BundleAdjustmentResult) -> None:
    """Write refined values into the scene."""
    for pose_id, pose in result.poses.items():
        sfm_data.set_absolute_pose(pose_id, pose)
    for intrinsic_id, (focal, k1, k2) in result.intrinsics.items():
        intrinsic = sfm_data.intrinsics[intrinsic_id]
        intrinsic.focal, intrinsic.k1, intrinsic.k2 = focal, k1, k2
    for landmark_id, X in result.points.items():
        sfm_data.structure[landmark_id].X = X


def run_bundle_adjustment(
    sfm_data: SfMData,
    problem: Optional[BundleAdjustmentProblem] = None,
    adjuster: Optional[BundleAdjuster] = None,
) -> BundleAdjustmentResult:
    """
    Refine a scene in place; values are kept unchanged if the solver fails
    or stops at the evaluation limit without lowering the cost.

    Without a problem, every pose and landmark is free and intrinsics are held
    constant.
    """
    if problem is None:
        landmark_ids = set(sfm_data.structure)
        problem = BundleAdjustmentProblem(
            landmark_ids=landmark_ids,
            free_pose_ids={sfm_data.views[v].pose_id for v in sfm_data.get_valid_views()},
            free_landmark_ids=landmark_ids,
        )
    if adjuster is None:
        adjuster = ScipyBundleAdjuster()
    result = adjuster.adjust(sfm_data, problem)
    if result.converged:
        apply_bundle_adjustment_result(sfm_data, result)
    return result


__all__ = [
    "BundleAdjustmentProblem",
    "BundleAdjustmentResult",
    "BundleAdjuster",
    "ScipyBundleAdjuster",
    "rotate_rodrigues",
    "pack_parameters",
    "unpack_parameters",
    "reprojection_residuals",
    "jacobian_sparsity",
    "apply_bundle_adjustment_result",
    "run_bundle_adjustment",
]
