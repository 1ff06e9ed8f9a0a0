import numpy as np
import pytest

from seqsfm.sfm_inc.config import SequentialSfMConfig, ThresholdPolicy
from seqsfm.sfm_inc.data_structures import Landmark
from seqsfm.sfm_inc.errors import InvalidInputError, NoInitialPairError
from seqsfm.sfm_inc.evaluation import rotation_angle_deg
from seqsfm.sfm_inc.initial_pair import (
    create_initial_reconstruction,
    evaluate_initial_pair,
    get_initial_pair_candidates,
)
from seqsfm.sfm_inc.report import ReconstructionReport
from seqsfm.sfm_inc.resection import apply_resection, compute_resection, resect_views
from seqsfm.sfm_inc.tracks import build_tracks, make_observation

from conftest import box_points, look_pose, make_scene, planar_points


def _partially_reconstructed(scene, posed_views, n_landmarks=None):
    """Pose `posed_views` at ground truth and make the first tracks landmarks."""
    tracks, tracks_per_view = build_tracks(scene.matches)
    for view_id in posed_views:
        scene.sfm_data.set_pose(scene.sfm_data.views[view_id], scene.poses[view_id])
    track_ids = sorted(tracks)[:n_landmarks]
    for track_id in track_ids:
        track = tracks[track_id]
        point_id = track.observations[posed_views[0]]
        scene.sfm_data.structure[track_id] = Landmark(
            X=scene.points[point_id],
            observations={
                v: make_observation(scene.features, v, "sift", track.observations[v]) for v in posed_views
            },
            desc_type="sift",
        )
    return tracks, tracks_per_view


def _three_view_box_scene(**kwargs):
    poses = [
        look_pose([0.0, 0.0, 0.0]),
        look_pose([1.0, 0.0, 0.0]),
        look_pose([0.4, 0.3, -0.2], yaw_deg=5.0),
    ]
    return make_scene(box_points(n=80), poses, **kwargs)


def test_resection_with_known_intrinsic():
    scene = _three_view_box_scene(noise=0.2, seed=2)
    tracks, tracks_per_view = _partially_reconstructed(scene, [0, 1])
    config = SequentialSfMConfig()

    data = compute_resection(scene.sfm_data, 2, scene.features, tracks, tracks_per_view, config)

    assert data is not None
    assert data.num_inliers >= 70
    assert data.intrinsic is None
    assert config.min_adaptive_threshold <= data.threshold <= config.resection_threshold
    assert rotation_angle_deg(data.pose.R @ scene.poses[2].R.T) < 0.2
    np.testing.assert_allclose(data.pose.center(), scene.poses[2].center(), atol=0.02)

    report = ReconstructionReport()
    added = apply_resection(scene.sfm_data, data, scene.features, tracks, report)
    assert added == data.num_inliers
    assert 2 in scene.sfm_data.get_valid_views()
    assert report.resected_views == [2]
    assert scene.sfm_data.check_consistency() == []


def test_fixed_threshold_policy():
    scene = _three_view_box_scene()
    tracks, tracks_per_view = _partially_reconstructed(scene, [0, 1])
    config = SequentialSfMConfig(threshold_policy=ThresholdPolicy.FIXED, resection_threshold=3.0)

    data = compute_resection(scene.sfm_data, 2, scene.features, tracks, tracks_per_view, config)
    assert data is not None
    assert data.threshold == 3.0


def test_resection_needs_enough_correspondences():
    scene = _three_view_box_scene()
    tracks, tracks_per_view = _partially_reconstructed(scene, [0, 1], n_landmarks=20)

    data = compute_resection(scene.sfm_data, 2, scene.features, tracks, tracks_per_view, SequentialSfMConfig())
    assert data is None


def test_resection_with_unknown_intrinsic():
    scene = _three_view_box_scene(unknown_focal_views=[2])
    tracks, tracks_per_view = _partially_reconstructed(scene, [0, 1])
    config = SequentialSfMConfig()

    data = compute_resection(scene.sfm_data, 2, scene.features, tracks, tracks_per_view, config)

    assert data is not None
    assert data.is_new_intrinsic
    np.testing.assert_allclose(data.intrinsic.focal, 800.0, rtol=1e-2)
    np.testing.assert_allclose(data.pose.center(), scene.poses[2].center(), atol=0.02)

    apply_resection(scene.sfm_data, data, scene.features, tracks, ReconstructionReport())
    view = scene.sfm_data.views[2]
    assert scene.sfm_data.intrinsics[view.intrinsic_id].is_initialized()
    assert view.intrinsic_id == 102
    assert 2 in scene.sfm_data.get_valid_views()


def test_estimated_intrinsic_merges_with_same_device():
    scene = _three_view_box_scene(unknown_focal_views=[2])
    scene.sfm_data.intrinsics[102].serial_number = "cam0"
    tracks, tracks_per_view = _partially_reconstructed(scene, [0, 1])

    data = compute_resection(scene.sfm_data, 2, scene.features, tracks, tracks_per_view, SequentialSfMConfig())

    assert data is not None
    assert not data.is_new_intrinsic
    apply_resection(scene.sfm_data, data, scene.features, tracks, ReconstructionReport())
    assert scene.sfm_data.views[2].intrinsic_id == 0


def test_parallel_resection_does_not_touch_scene():
    scene = _three_view_box_scene()
    tracks, tracks_per_view = _partially_reconstructed(scene, [0, 1])
    config = SequentialSfMConfig(num_threads=2)

    results = resect_views(scene.sfm_data, [2], scene.features, tracks, tracks_per_view, config)

    assert results[2] is not None
    assert 2 not in scene.sfm_data.get_valid_views()


def test_initial_pair_evaluation_on_plane(planar_three_view_scene):
    scene = planar_three_view_scene
    tracks, tracks_per_view = build_tracks(scene.matches)
    config = SequentialSfMConfig()

    candidate = evaluate_initial_pair(scene.sfm_data, scene.features, tracks, tracks_per_view, (0, 1), config)

    assert candidate is not None
    assert len(candidate.track_ids) == 50
    assert candidate.median_angle >= config.min_angle_initial_pair
    np.testing.assert_allclose(candidate.points_3d[:, 2], 4.0, rtol=1e-2)


def test_initial_pair_rejects_small_baseline():
    poses = [look_pose([0.0, 0.0, 0.0]), look_pose([0.05, 0.0, 0.0])]
    scene = make_scene(box_points(), poses)
    tracks, tracks_per_view = build_tracks(scene.matches)

    candidate = evaluate_initial_pair(
        scene.sfm_data, scene.features, tracks, tracks_per_view, (0, 1), SequentialSfMConfig()
    )
    assert candidate is None


def test_user_initial_pair_must_exist(planar_three_view_scene):
    scene = planar_three_view_scene
    _, tracks_per_view = build_tracks(scene.matches)
    with pytest.raises(InvalidInputError):
        get_initial_pair_candidates(scene.sfm_data, tracks_per_view, SequentialSfMConfig(initial_pair=(0, 9)))


def test_no_initial_pair_with_few_correspondences():
    poses = [look_pose([0.0, 0.0, 0.0]), look_pose([1.0, 0.0, 0.0])]
    scene = make_scene(box_points(n=5), poses)
    tracks, tracks_per_view = build_tracks(scene.matches)
    report = ReconstructionReport()

    with pytest.raises(NoInitialPairError):
        create_initial_reconstruction(
            scene.sfm_data, scene.features, tracks, tracks_per_view, SequentialSfMConfig(), report
        )
    assert report.initial_pair is None
    assert scene.sfm_data.get_poses() == {}
