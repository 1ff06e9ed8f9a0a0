import numpy as np
import pytest

from seqsfm.sfm_inc.errors import InvalidInputError
from seqsfm.sfm_inc.report import ReconstructionReport
from seqsfm.sfm_inc.tracks import (
    build_tracks,
    get_common_tracks,
    get_feature_color,
    make_observation,
    track_length_histogram,
)


def test_tracks_are_transitive():
    matches = {
        (0, 1): {"sift": np.array([[0, 5]])},
        (1, 2): {"sift": np.array([[5, 7]])},
    }
    tracks, tracks_per_view = build_tracks(matches)

    assert len(tracks) == 1
    assert tracks[0].observations == {0: 0, 1: 5, 2: 7}
    assert tracks_per_view == {0: [0], 1: [0], 2: [0]}


def test_each_feature_belongs_to_one_track():
    matches = {
        (0, 1): {"sift": np.array([[0, 0], [1, 1], [2, 2]])},
        (1, 2): {"sift": np.array([[0, 3], [1, 4]])},
        (0, 2): {"sift": np.array([[2, 5]])},
    }
    tracks, _ = build_tracks(matches)

    seen = set()
    for track in tracks.values():
        for view_id, feat_id in track.observations.items():
            assert (view_id, feat_id) not in seen
            seen.add((view_id, feat_id))
        assert len(set(track.observations)) == len(track)
    assert len(tracks) == 3


def test_track_with_duplicate_view_is_dropped():
    matches = {
        # Feature 0 of view 1 matches two features of view 0.
        (0, 1): {"sift": np.array([[0, 0], [1, 0], [2, 2]])},
    }
    report = ReconstructionReport()
    tracks, tracks_per_view = build_tracks(matches, report=report)

    assert len(tracks) == 1
    assert tracks[0].observations == {0: 2, 1: 2}
    assert report.num_conflicting_tracks == 1
    assert report.num_tracks == 1


def test_short_tracks_are_dropped():
    matches = {
        (0, 1): {"sift": np.array([[0, 0], [1, 1]])},
        (1, 2): {"sift": np.array([[0, 0]])},
    }
    tracks, _ = build_tracks(matches, min_track_length=3)

    assert len(tracks) == 1
    assert len(tracks[0]) == 3


def test_descriptor_types_do_not_mix():
    matches = {
        (0, 1): {"sift": np.array([[0, 0]]), "akaze": np.array([[0, 0]])},
    }
    tracks, _ = build_tracks(matches)

    assert sorted(t.desc_type for t in tracks.values()) == ["akaze", "sift"]


def test_unknown_view_is_rejected():
    matches = {(0, 9): {"sift": np.array([[0, 0]])}}
    with pytest.raises(InvalidInputError):
        build_tracks(matches, known_views={0, 1})


def test_self_matches_are_ignored():
    matches = {
        (0, 0): {"sift": np.array([[0, 1]])},
        (0, 1): {"sift": np.array([[0, 0]])},
    }
    tracks, _ = build_tracks(matches)
    assert len(tracks) == 1


def test_common_tracks_and_histogram():
    matches = {
        (0, 1): {"sift": np.array([[0, 0], [1, 1]])},
        (1, 2): {"sift": np.array([[0, 0]])},
    }
    tracks, tracks_per_view = build_tracks(matches)

    assert len(get_common_tracks(tracks_per_view, [0, 1])) == 2
    assert len(get_common_tracks(tracks_per_view, [0, 1, 2])) == 1
    assert track_length_histogram(tracks) == {2: 1, 3: 1}


def test_observation_and_color_lookup():
    features = {0: {"sift": np.array([[10.0, 20.0, 1.5]])}}
    obs = make_observation(features, 0, "sift", 0)
    np.testing.assert_allclose(obs.x, [10.0, 20.0])
    assert obs.scale == 1.5

    with pytest.raises(InvalidInputError):
        make_observation(features, 0, "sift", 3)

    np.testing.assert_array_equal(get_feature_color(None, 0, "sift", 0), [128, 128, 128])
