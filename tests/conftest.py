"""
Synthetic scenes for the reconstruction tests.

Cameras observe known 3D points with exact (optionally noisy) projections.
Feature `i` of every view is the projection of point `i`, so track and
landmark positions can be compared to ground truth directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np
import pytest

from seqsfm.sfm_inc.data_structures import Intrinsic, Landmark, Observation, Pose, SfMData, View

FOCAL = 800.0
WIDTH = 640
HEIGHT = 480


@dataclass
class SyntheticScene:
    sfm_data: SfMData
    features: Dict[int, Dict[str, np.ndarray]]
    matches: Dict[Tuple[int, int], Dict[str, np.ndarray]]
    points: np.ndarray
    poses: Dict[int, Pose]
    colors: Dict[int, Dict[str, np.ndarray]] = field(default_factory=dict)


def look_pose(center: Sequence[float], yaw_deg: float = 0.0, pitch_deg: float = 0.0) -> Pose:
    """World-to-camera pose of a camera at `center` looking roughly along +Z."""
    rvec = np.radians([pitch_deg, yaw_deg, 0.0])
    R, _ = cv2.Rodrigues(rvec)
    center = np.asarray(center, dtype=np.float64)
    return Pose(R, -R @ center)


def make_intrinsic(intrinsic_id: int = 0, focal: float = FOCAL, serial: str = "cam0") -> Intrinsic:
    return Intrinsic(intrinsic_id, WIDTH, HEIGHT, focal=focal, serial_number=serial)


def project(intrinsic: Intrinsic, pose: Pose, points: np.ndarray) -> np.ndarray:
    return intrinsic.project(pose.transform(points))


def make_scene(
    points: np.ndarray,
    poses: Sequence[Pose],
    noise: float = 0.0,
    seed: int = 0,
    unknown_focal_views: Iterable[int] = (),
) -> SyntheticScene:
    """Scene where every view observes every point and all view pairs are matched."""
    rng = np.random.default_rng(seed)
    unknown = set(unknown_focal_views)
    sfm_data = SfMData()
    sfm_data.add_intrinsic(make_intrinsic(0))
    features = {}
    colors = {}
    gt = make_intrinsic(0)
    for view_id, pose in enumerate(poses):
        intrinsic_id = 0
        if view_id in unknown:
            intrinsic_id = 100 + view_id
            sfm_data.add_intrinsic(Intrinsic(intrinsic_id, WIDTH, HEIGHT, focal=-1.0))
        sfm_data.add_view(View(view_id, intrinsic_id=intrinsic_id))
        pixels = project(gt, pose, points)
        if noise > 0:
            pixels = pixels + rng.normal(scale=noise, size=pixels.shape)
        features[view_id] = {"sift": pixels}
        colors[view_id] = {"sift": np.tile(np.array([200, 50, 10], dtype=np.uint8), (len(points), 1))}

    ids = np.arange(len(points))
    matches = {}
    for a in range(len(poses)):
        for b in range(a + 1, len(poses)):
            matches[(a, b)] = {"sift": np.stack([ids, ids], axis=1)}

    return SyntheticScene(
        sfm_data=sfm_data,
        features=features,
        matches=matches,
        points=points,
        poses={i: p for i, p in enumerate(poses)},
        colors=colors,
    )


def make_partial_scene(
    points: np.ndarray,
    poses: Sequence[Pose],
    observers: List[Sequence[int]],
) -> SyntheticScene:
    """Like `make_scene`, but point i is only matched between the views in `observers[i]`."""
    scene = make_scene(points, poses)
    scene.matches = {}
    for a in range(len(poses)):
        for b in range(a + 1, len(poses)):
            ids = np.array([i for i, views in enumerate(observers) if a in views and b in views], dtype=np.int64)
            if len(ids):
                scene.matches[(a, b)] = {"sift": np.stack([ids, ids], axis=1)}
    return scene


def make_posed_scene(
    points: np.ndarray,
    poses: Sequence[Pose],
    observers: Optional[List[Sequence[int]]] = None,
) -> SfMData:
    """Reconstructed scene at ground truth; `observers[i]` lists the views seeing point i."""
    intrinsic = make_intrinsic(0)
    sfm_data = SfMData()
    sfm_data.add_intrinsic(intrinsic)
    for view_id, pose in enumerate(poses):
        view = View(view_id, intrinsic_id=0)
        sfm_data.add_view(view)
        sfm_data.set_pose(view, pose)
    for i, X in enumerate(points):
        views = observers[i] if observers is not None else range(len(poses))
        observations = {
            v: Observation(project(intrinsic, poses[v], X[None, :])[0], feature_id=i) for v in views
        }
        sfm_data.structure[i] = Landmark(X=X, observations=observations, desc_type="sift")
    return sfm_data


def planar_points() -> np.ndarray:
    """50 points on the plane Z = 4 spread on both sides of the optical axis."""
    xs = np.linspace(-1.0, 1.5, 10)
    ys = np.linspace(-0.8, 0.8, 5)
    grid = np.array([[x, y, 4.0] for y in ys for x in xs])
    return grid


def box_points(n: int = 120, seed: int = 1) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return np.column_stack([
        rng.uniform(-1.5, 2.5, n),
        rng.uniform(-1.0, 1.0, n),
        rng.uniform(4.0, 7.0, n),
    ])


@pytest.fixture
def planar_three_view_scene() -> SyntheticScene:
    poses = [
        look_pose([0.0, 0.0, 0.0]),
        look_pose([1.0, 0.0, 0.0]),
        look_pose([0.5, 0.4, -0.3], yaw_deg=3.0),
    ]
    return make_scene(planar_points(), poses)


@pytest.fixture
def six_view_scene() -> SyntheticScene:
    poses = [look_pose([0.4 * i, 0.05 * (i % 2), 0.0], yaw_deg=-2.0 * i) for i in range(6)]
    return make_scene(box_points(), poses, noise=0.3, seed=3)


@pytest.fixture
def posed_chain_scene() -> Tuple[SfMData, List[Pose]]:
    """Five posed views where landmarks are only shared by consecutive views."""
    poses = [look_pose([0.5 * i, 0.0, 0.0]) for i in range(5)]
    points = box_points(n=40, seed=5)
    observers = [(i % 4, i % 4 + 1) for i in range(len(points))]
    return make_posed_scene(points, poses, observers), poses
