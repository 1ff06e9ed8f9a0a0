import numpy as np
import pytest

from seqsfm.sfm_inc.data_structures import SfMData, View
from seqsfm.sfm_inc.evaluation import (
    Similarity,
    estimate_similarity,
    evaluate_reconstruction,
    project_to_rotation,
    rotation_angle_deg,
)

from conftest import look_pose, make_intrinsic


def _ground_truth_poses(collinear=False):
    if collinear:
        return {i: look_pose([0.5 * i, 0.0, 0.0], yaw_deg=-2.0 * i) for i in range(5)}
    return {i: look_pose([0.5 * i, 0.2 * (i % 2), 0.1 * i], yaw_deg=-2.0 * i) for i in range(5)}


def _known_similarity():
    R = look_pose([0.0, 0.0, 0.0], yaw_deg=40.0, pitch_deg=-15.0).R
    return Similarity(scale=2.5, R=R, t=np.array([1.0, -2.0, 3.0]))


def _scene_with_poses(poses):
    sfm_data = SfMData()
    sfm_data.add_intrinsic(make_intrinsic(0))
    for view_id, pose in poses.items():
        view = View(view_id, intrinsic_id=0)
        sfm_data.add_view(view)
        sfm_data.set_pose(view, pose)
    return sfm_data


def test_rotation_helpers():
    R = look_pose([0.0, 0.0, 0.0], yaw_deg=30.0).R
    assert rotation_angle_deg(R) == pytest.approx(30.0)
    assert rotation_angle_deg(np.eye(3)) == 0.0
    np.testing.assert_allclose(project_to_rotation(3.0 * R), R, atol=1e-12)


def test_similarity_maps_pose_centers():
    similarity = _known_similarity()
    pose = look_pose([1.0, 2.0, 3.0], yaw_deg=10.0)
    mapped = similarity.apply_to_pose(pose)
    np.testing.assert_allclose(mapped.center(), similarity.apply(pose.center()[None, :])[0])
    np.testing.assert_allclose(mapped.R @ similarity.R, pose.R, atol=1e-12)


@pytest.mark.parametrize("collinear", [False, True])
def test_known_similarity_is_recovered(collinear):
    ground_truth = _ground_truth_poses(collinear)
    similarity = _known_similarity()
    estimated = {v: similarity.apply_to_pose(p) for v, p in ground_truth.items()}

    fitted = estimate_similarity(estimated, ground_truth)

    assert fitted.scale == pytest.approx(1.0 / similarity.scale)
    np.testing.assert_allclose(fitted.R, similarity.R.T, atol=1e-9)
    for v, pose in estimated.items():
        np.testing.assert_allclose(
            fitted.apply(pose.center()[None, :])[0], ground_truth[v].center(), atol=1e-9
        )


def test_evaluation_errors_are_zero_up_to_similarity():
    ground_truth = _ground_truth_poses()
    similarity = _known_similarity()
    sfm_data = _scene_with_poses({v: similarity.apply_to_pose(p) for v, p in ground_truth.items()})

    result = evaluate_reconstruction(sfm_data, _scene_with_poses(ground_truth))

    assert result.num_common_views == 5
    assert result.max_rotation_error_deg < 1e-6
    assert result.max_center_error < 1e-9
    summary = result.to_dict()
    assert summary["num_views"] == 5
    assert set(summary["center_errors"]) == {"0", "1", "2", "3", "4"}


def test_perturbed_view_is_reported():
    ground_truth = _ground_truth_poses()
    estimated = dict(ground_truth)
    estimated[4] = look_pose([2.0 + 0.05, 0.0, 0.4], yaw_deg=-8.0 + 1.0)

    result = evaluate_reconstruction(_scene_with_poses(estimated), _scene_with_poses(ground_truth))

    assert max(result.rotation_errors_deg, key=result.rotation_errors_deg.get) == 4
    assert result.max_rotation_error_deg > 0.5


def test_alignment_needs_two_views():
    poses = _ground_truth_poses()
    with pytest.raises(ValueError):
        estimate_similarity({0: poses[0]}, poses)


def test_evaluation_from_reference_poses_only():
    ground_truth = _ground_truth_poses()
    similarity = _known_similarity()
    sfm_data = _scene_with_poses({v: similarity.apply_to_pose(p) for v, p in ground_truth.items() if v != 4})
    sfm_data.add_view(View(4, intrinsic_id=0))

    result = evaluate_reconstruction(sfm_data, ground_truth_poses=ground_truth)

    assert result.num_views == 5
    assert result.num_common_views == 4
    assert result.max_center_error < 1e-9


def test_evaluation_needs_a_reference():
    sfm_data = _scene_with_poses(_ground_truth_poses())
    with pytest.raises(ValueError):
        evaluate_reconstruction(sfm_data)
