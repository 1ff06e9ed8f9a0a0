import json

import numpy as np
import pytest

from seqsfm.sfm_inc.config import SequentialSfMConfig, ThresholdPolicy
from seqsfm.sfm_inc.report import IterationRecord, ReconstructionReport, ReconstructionState


def test_default_config_is_valid():
    config = SequentialSfMConfig()
    config.validate()
    assert config.threshold_policy == ThresholdPolicy.ADAPTIVE
    assert config.to_dict()["threshold_policy"] == "adaptive"


@pytest.mark.parametrize(
    "overrides",
    [
        {"min_input_track_length": 1},
        {"min_resection_inliers": 40, "min_points_per_pose": 30},
        {"pyramid_base": 1},
        {"nbv_score_ratio": 0.0},
        {"num_threads": 0},
        {"global_ba_period": 0},
        {"initial_pair": (3, 3)},
    ],
)
def test_invalid_config(overrides):
    with pytest.raises(ValueError):
        SequentialSfMConfig(**overrides).validate()


def test_threshold_policy_from_string():
    config = SequentialSfMConfig(threshold_policy="fixed")
    config.validate()
    assert config.threshold_policy is ThresholdPolicy.FIXED


def test_report_serialization(tmp_path):
    report = ReconstructionReport()
    report.state = ReconstructionState.DONE
    report.initial_pair = (0, 1)
    report.track_length_histogram = {2: 10, 3: 4}
    report.record_failed_resection(5)
    report.record_failed_resection(5)
    report.resection_thresholds[2] = 1.5
    report.iterations.append(IterationRecord(1, candidates=[2, 5], resected=[2], failed=[5]))
    report.warn("bundle adjustment did not converge")
    report.set_residual_histogram(np.array([0.1, 0.2, 0.5, 1.0]), bins=4)

    path = tmp_path / "report.json"
    report.save_json(str(path))
    with open(path) as f:
        data = json.load(f)

    assert data["state"] == "done"
    assert data["initial_pair"] == [0, 1]
    assert data["failed_resections"] == {"5": 2}
    assert data["track_length_histogram"] == {"2": 10, "3": 4}
    assert data["iterations"][0]["failed"] == [5]
    assert sum(data["residual_histogram"]["counts"]) == 4
    assert data["final_rmse"] == pytest.approx(np.sqrt(np.mean(np.square([0.1, 0.2, 0.5, 1.0]))))


def test_empty_residual_histogram():
    report = ReconstructionReport()
    report.set_residual_histogram(np.array([]))
    assert report.residual_histogram == {}
    assert report.final_rmse == 0.0
