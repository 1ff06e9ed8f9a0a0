import numpy as np

from seqsfm.geometry.essential import estimate_relative_pose
from seqsfm.geometry.pnp import (
    decompose_projection_matrix,
    estimate_camera_dlt_ransac,
    estimate_camera_pose_pnp,
    is_degenerate_configuration,
)
from seqsfm.geometry.triangulation import (
    check_cheirality,
    max_ray_angle_deg,
    triangulate_dlt,
    triangulate_robust,
)
from seqsfm.sfm_inc.evaluation import rotation_angle_deg

from conftest import box_points, look_pose, make_intrinsic, planar_points, project


def _angle_between(a, b):
    cos = np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b))
    return np.degrees(np.arccos(np.clip(cos, -1.0, 1.0)))


def test_relative_pose_general_scene():
    intrinsic = make_intrinsic()
    pose1 = look_pose([0.0, 0.0, 0.0])
    pose2 = look_pose([1.0, 0.2, 0.1], yaw_deg=-4.0)
    points = box_points()

    n1 = intrinsic.normalize(project(intrinsic, pose1, points))
    n2 = intrinsic.normalize(project(intrinsic, pose2, points))
    relative = estimate_relative_pose(n1, n2, threshold=1.0 / 800.0)

    assert relative is not None
    assert relative.num_inliers >= 0.95 * len(points)
    assert rotation_angle_deg(relative.R @ pose2.R.T) < 0.5
    assert _angle_between(relative.t, pose2.t) < 1.0
    np.testing.assert_allclose(np.linalg.norm(relative.t), 1.0)


def test_relative_pose_planar_scene():
    intrinsic = make_intrinsic()
    pose1 = look_pose([0.0, 0.0, 0.0])
    pose2 = look_pose([1.0, 0.0, 0.0])
    points = planar_points()

    n1 = intrinsic.normalize(project(intrinsic, pose1, points))
    n2 = intrinsic.normalize(project(intrinsic, pose2, points))
    relative = estimate_relative_pose(n1, n2, threshold=4.0 / 800.0)

    assert relative is not None
    assert relative.num_inliers == len(points)
    assert rotation_angle_deg(relative.R) < 1.0
    assert _angle_between(relative.t, [-1.0, 0.0, 0.0]) < 1.0


def test_relative_pose_needs_enough_points():
    n = np.zeros((4, 2))
    assert estimate_relative_pose(n, n, threshold=0.01) is None


def test_triangulate_dlt_and_invariants():
    poses = [look_pose([0.0, 0.0, 0.0]), look_pose([1.0, 0.0, 0.0]), look_pose([0.0, 1.0, 0.0])]
    X = np.array([0.3, -0.2, 5.0])
    normalized = np.array([p.transform(X)[:2] / p.transform(X)[2] for p in poses])

    estimate = triangulate_dlt(poses, normalized)
    np.testing.assert_allclose(estimate, X, atol=1e-9)
    assert check_cheirality(estimate, poses)
    assert not check_cheirality(np.array([0.0, 0.0, -5.0]), poses)
    assert max_ray_angle_deg(X, [p.center() for p in poses]) > 10.0


def test_triangulate_robust_rejects_outlier_view():
    intrinsic = make_intrinsic()
    poses = [look_pose([0.5 * i, 0.0, 0.0]) for i in range(4)]
    X = np.array([0.5, 0.1, 5.0])
    pixels = np.array([project(intrinsic, p, X[None, :])[0] for p in poses])
    pixels[3] += [40.0, -25.0]
    normalized = intrinsic.normalize(pixels)

    result = triangulate_robust(poses, [intrinsic] * 4, pixels, normalized, threshold=2.0)

    assert result is not None
    estimate, mask = result
    np.testing.assert_array_equal(mask, [True, True, True, False])
    np.testing.assert_allclose(estimate, X, atol=1e-6)


def test_pnp_recovers_pose():
    intrinsic = make_intrinsic()
    pose = look_pose([0.4, -0.2, 0.3], yaw_deg=6.0, pitch_deg=-3.0)
    points = box_points(n=60)
    pixels = project(intrinsic, pose, points)
    pixels[:5] += 50.0

    result = estimate_camera_pose_pnp(intrinsic, points, pixels, threshold=2.0)

    assert result is not None
    estimate, inliers = result
    assert not inliers[:5].any()
    assert inliers[5:].all()
    assert rotation_angle_deg(estimate.R @ pose.R.T) < 0.1
    np.testing.assert_allclose(estimate.center(), pose.center(), atol=1e-3)


def test_dlt_camera_recovers_focal():
    intrinsic = make_intrinsic(focal=650.0)
    pose = look_pose([0.2, 0.1, -0.5], yaw_deg=4.0)
    points = box_points(n=60)
    pixels = project(intrinsic, pose, points)

    result = estimate_camera_dlt_ransac(points, pixels, threshold=1.0, rng=np.random.default_rng(0))

    assert result is not None
    P, mask = result
    assert mask.all()
    K, estimate = decompose_projection_matrix(P)
    np.testing.assert_allclose(K[0, 0], 650.0, rtol=1e-3)
    np.testing.assert_allclose(estimate.center(), pose.center(), atol=1e-3)


def test_dlt_camera_rejects_coplanar_points():
    intrinsic = make_intrinsic()
    points = planar_points()
    pixels = project(intrinsic, look_pose([0.0, 0.0, 0.0]), points)
    assert estimate_camera_dlt_ransac(points, pixels, threshold=1.0) is None


def test_degenerate_configuration():
    collinear = np.column_stack([np.arange(10.0), 2.0 * np.arange(10.0)])
    assert is_degenerate_configuration(collinear)
    spread = np.random.default_rng(0).uniform(0, 100, size=(10, 2))
    assert not is_degenerate_configuration(spread)
