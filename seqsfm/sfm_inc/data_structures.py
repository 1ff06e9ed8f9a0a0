"""
Shared core data structures for the SfM pipeline.

Every cross-reference is an integer identifier into one of the arenas owned
by `SfMData` (views, intrinsics, poses, rigs, landmarks). These containers are
used across:
- track building and incremental SfM
- bundle adjustment
- evaluation, I/O and visualization
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set

import cv2
import numpy as np

# Reserved identifier meaning "not defined".
UNDEFINED_ID = 2**32 - 1


@dataclass
class Pose:
    """
    Rigid transform from world to camera coordinates.

    A world point X maps to camera coordinates as ``R @ X + t``.
    """

    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_rvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> "Pose":
        """Build a pose from a Rodrigues rotation vector and a translation."""
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(R, tvec)

    def rvec(self) -> np.ndarray:
        rvec, _ = cv2.Rodrigues(self.R)
        return rvec.ravel()

    def center(self) -> np.ndarray:
        """Camera center in world coordinates: C = -R^T t."""
        return -self.R.T @ self.t

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Map world points (N, 3) or (3,) into camera coordinates."""
        points = np.asarray(points, dtype=np.float64)
        return points @ self.R.T + self.t

    def depth(self, points: np.ndarray) -> np.ndarray:
        """Z coordinate of world points in this camera frame."""
        return self.transform(points)[..., 2]

    def compose(self, other: "Pose") -> "Pose":
        """Return ``self ∘ other``: apply `other` first, then `self`."""
        return Pose(self.R @ other.R, self.R @ other.t + self.t)

    def inverse(self) -> "Pose":
        return Pose(self.R.T, -self.R.T @ self.t)

    def copy(self) -> "Pose":
        return Pose(self.R.copy(), self.t.copy())


class SubPoseStatus(Enum):
    UNINITIALIZED = 0
    ESTIMATED = 1
    CONSTANT = 2


@dataclass
class RigSubPose:
    """Pose of one rig camera relative to the rig frame."""

    pose: Pose = field(default_factory=Pose.identity)
    status: SubPoseStatus = SubPoseStatus.UNINITIALIZED


@dataclass
class Rig:
    """A rigid assembly of cameras sharing one rig-level pose."""

    rig_id: int
    sub_poses: List[RigSubPose] = field(default_factory=list)

    @classmethod
    def with_sub_poses(cls, rig_id: int, n_sub_poses: int) -> "Rig":
        return cls(rig_id, [RigSubPose() for _ in range(n_sub_poses)])

    def get_sub_pose(self, sub_pose_id: int) -> RigSubPose:
        return self.sub_poses[sub_pose_id]

    def is_initialized(self) -> bool:
        return all(sp.status != SubPoseStatus.UNINITIALIZED for sp in self.sub_poses)

    def reset(self) -> None:
        for sub_pose in self.sub_poses:
            if sub_pose.status == SubPoseStatus.ESTIMATED:
                sub_pose.status = SubPoseStatus.UNINITIALIZED


@dataclass
class Intrinsic:
    """
    Pinhole camera with a two-coefficient radial distortion model.

    A non-positive focal length means the calibration is unknown and must be
    estimated during resection.
    """

    intrinsic_id: int
    width: int
    height: int
    focal: float = -1.0
    cx: Optional[float] = None
    cy: Optional[float] = None
    k1: float = 0.0
    k2: float = 0.0
    # Device identifier; estimated intrinsics are merged only within a device.
    serial_number: str = ""
    # Locked intrinsics are never refined by bundle adjustment.
    locked: bool = False

    def __post_init__(self) -> None:
        if self.cx is None:
            self.cx = self.width / 2.0
        if self.cy is None:
            self.cy = self.height / 2.0

    def is_initialized(self) -> bool:
        return self.focal > 0

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [
                [self.focal, 0.0, self.cx],
                [0.0, self.focal, self.cy],
                [0.0, 0.0, 1.0],
            ],
            dtype=np.float64,
        )

    @property
    def dist_coeffs(self) -> np.ndarray:
        # OpenCV ordering (k1, k2, p1, p2); tangential terms are unused.
        return np.array([self.k1, self.k2, 0.0, 0.0], dtype=np.float64)

    def has_distortion(self) -> bool:
        return self.k1 != 0.0 or self.k2 != 0.0

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        """Project camera-frame points (N, 3) to pixels (N, 2)."""
        points_cam = np.atleast_2d(np.asarray(points_cam, dtype=np.float64))
        xy = points_cam[:, :2] / points_cam[:, 2:3]
        r2 = np.sum(xy * xy, axis=1, keepdims=True)
        radial = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
        return xy * radial * self.focal + np.array([self.cx, self.cy])

    def normalize(self, pixels: np.ndarray) -> np.ndarray:
        """Undistorted normalized image coordinates (N, 2) of pixels (N, 2)."""
        pixels = np.atleast_2d(np.asarray(pixels, dtype=np.float64))
        if not self.has_distortion():
            return (pixels - np.array([self.cx, self.cy])) / self.focal
        undistorted = cv2.undistortPoints(pixels.reshape(-1, 1, 2), self.K, self.dist_coeffs)
        return undistorted.reshape(-1, 2)

    def residuals(self, points_cam: np.ndarray, pixels: np.ndarray) -> np.ndarray:
        """Per-point reprojection error in pixels."""
        return np.linalg.norm(self.project(points_cam) - np.atleast_2d(pixels), axis=1)


@dataclass
class View:
    """One image of the scene and its identifier linkage."""

    view_id: int
    intrinsic_id: int = UNDEFINED_ID
    pose_id: int = UNDEFINED_ID
    rig_id: int = UNDEFINED_ID
    sub_pose_id: int = UNDEFINED_ID
    image_path: str = ""

    def __post_init__(self) -> None:
        if self.pose_id == UNDEFINED_ID and not self.is_part_of_rig():
            self.pose_id = self.view_id

    def is_part_of_rig(self) -> bool:
        return self.rig_id != UNDEFINED_ID


@dataclass
class Observation:
    """
    A 2D observation of a landmark in a particular view.

    `x` is a (2,) numpy array in pixel coordinates.
    """

    x: np.ndarray
    feature_id: int
    scale: float = 0.0

    def __post_init__(self) -> None:
        self.x = np.asarray(self.x, dtype=np.float64).reshape(2)


@dataclass
class Landmark:
    """A triangulated 3D point with at most one observation per view."""

    X: np.ndarray
    observations: Dict[int, Observation] = field(default_factory=dict)
    # RGB color (3,) uint8 when the caller provides feature colors.
    color: np.ndarray = field(default_factory=lambda: np.full(3, 128, dtype=np.uint8))
    desc_type: str = ""

    def __post_init__(self) -> None:
        self.X = np.asarray(self.X, dtype=np.float64).reshape(3)


class SfMData:
    """
    Global container for views, intrinsics, poses, rigs and landmarks.

    This is the main structure passed between incremental SfM, bundle
    adjustment, evaluation and visualization code. Poses and rigs are private
    so that rig composition always goes through `get_pose` / `set_pose`.
    """

    def __init__(self) -> None:
        self.views: Dict[int, View] = {}
        self.intrinsics: Dict[int, Intrinsic] = {}
        self.structure: Dict[int, Landmark] = {}
        self._poses: Dict[int, Pose] = {}
        self._rigs: Dict[int, Rig] = {}

    # -- arenas ---------------------------------------------------------

    def get_poses(self) -> Dict[int, Pose]:
        return self._poses

    def get_rigs(self) -> Dict[int, Rig]:
        return self._rigs

    def get_landmarks(self) -> Dict[int, Landmark]:
        return self.structure

    def add_view(self, view: View) -> None:
        self.views[view.view_id] = view

    def add_intrinsic(self, intrinsic: Intrinsic) -> None:
        self.intrinsics[intrinsic.intrinsic_id] = intrinsic

    def add_rig(self, rig: Rig) -> None:
        self._rigs[rig.rig_id] = rig

    def get_intrinsic(self, view_id: int) -> Optional[Intrinsic]:
        return self.intrinsics.get(self.views[view_id].intrinsic_id)

    # -- poses ----------------------------------------------------------

    def exists_pose(self, view: View) -> bool:
        return view.pose_id in self._poses

    def _get_rig_sub_pose(self, view: View) -> RigSubPose:
        return self._rigs[view.rig_id].get_sub_pose(view.sub_pose_id)

    def get_pose(self, view: View) -> Pose:
        """Effective world-to-camera pose of a view (rig-composed if needed)."""
        pose = self._poses[view.pose_id]
        if not view.is_part_of_rig():
            return pose
        return self._get_rig_sub_pose(view).pose.compose(pose)

    def set_pose(self, view: View, pose: Pose) -> None:
        """
        Set the effective pose of a view.

        For a rig view, the rig pose or the sub-pose is derived from whichever
        of the two is already known. When neither is known, the view defines
        the rig frame and its sub-pose becomes the identity.
        """
        if not view.is_part_of_rig():
            self._poses[view.pose_id] = pose
            return

        sub_pose = self._get_rig_sub_pose(view)
        known_rig_pose = view.pose_id in self._poses
        if sub_pose.status != SubPoseStatus.UNINITIALIZED:
            self._poses[view.pose_id] = sub_pose.pose.inverse().compose(pose)
        elif known_rig_pose:
            sub_pose.pose = pose.compose(self._poses[view.pose_id].inverse())
            sub_pose.status = SubPoseStatus.ESTIMATED
        else:
            self._poses[view.pose_id] = pose
            sub_pose.pose = Pose.identity()
            sub_pose.status = SubPoseStatus.ESTIMATED

    def set_absolute_pose(self, pose_id: int, pose: Pose) -> None:
        self._poses[pose_id] = pose

    def erase_pose(self, pose_id: int) -> None:
        if pose_id not in self._poses:
            raise KeyError(f"Can't erase unknown pose {pose_id}")
        del self._poses[pose_id]

    def reset_rigs(self) -> None:
        for rig in self._rigs.values():
            rig.reset()

    # -- reconstruction state -------------------------------------------

    def is_pose_and_intrinsic_defined(self, view_id: int) -> bool:
        view = self.views.get(view_id)
        if view is None:
            return False
        if view.intrinsic_id == UNDEFINED_ID or view.pose_id == UNDEFINED_ID:
            return False
        if view.is_part_of_rig():
            rig = self._rigs.get(view.rig_id)
            if rig is None or rig.get_sub_pose(view.sub_pose_id).status == SubPoseStatus.UNINITIALIZED:
                return False
        intrinsic = self.intrinsics.get(view.intrinsic_id)
        return (
            intrinsic is not None
            and intrinsic.is_initialized()
            and view.pose_id in self._poses
        )

    def get_valid_views(self) -> Set[int]:
        """Identifiers of reconstructed views."""
        return {v for v in self.views if self.is_pose_and_intrinsic_defined(v)}

    def get_reconstructed_intrinsics(self) -> Set[int]:
        return {self.views[v].intrinsic_id for v in self.get_valid_views()}

    def check_consistency(self) -> List[str]:
        """Return human-readable violations of the scene invariants."""
        errors = []
        valid = self.get_valid_views()
        for view in self.views.values():
            if view.intrinsic_id != UNDEFINED_ID and view.intrinsic_id not in self.intrinsics:
                errors.append(f"view {view.view_id} references missing intrinsic {view.intrinsic_id}")
        for landmark_id, landmark in self.structure.items():
            for view_id in landmark.observations:
                if view_id not in valid:
                    errors.append(f"landmark {landmark_id} observed by unreconstructed view {view_id}")
        return errors

    # -- copies ---------------------------------------------------------

    def copy(self) -> "SfMData":
        """Deep snapshot, safe to read from worker threads."""
        return copy.deepcopy(self)

    def combine(self, other: "SfMData") -> None:
        """Merge another scene into this one; `other` wins on id collisions."""
        self.views.update(other.views)
        self.intrinsics.update(other.intrinsics)
        self.structure.update(other.structure)
        self._poses.update(other._poses)
        self._rigs.update(other._rigs)

    def __repr__(self) -> str:
        return (
            f"SfMData(views={len(self.views)}, intrinsics={len(self.intrinsics)}, "
            f"poses={len(self._poses)}, landmarks={len(self.structure)})"
        )


__all__ = [
    "UNDEFINED_ID",
    "Pose",
    "SubPoseStatus",
    "RigSubPose",
    "Rig",
    "Intrinsic",
    "View",
    "Observation",
    "Landmark",
    "SfMData",
]
