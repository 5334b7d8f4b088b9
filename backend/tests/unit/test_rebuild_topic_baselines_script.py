"""Tests for rebuild_topic_baselines script behavior."""

import argparse
from unittest.mock import MagicMock, patch

import pytest

from scripts import rebuild_topic_baselines as script
from trendwatch.domain.trend_scoring.models import BaselineStats


def _args(**overrides) -> argparse.Namespace:
    defaults = {
        "topic": [],
        "dry_run": False,
        "output": None,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


def _parser(args):
    parser = MagicMock()
    parser.parse_args.return_value = args
    return parser


@patch("scripts.rebuild_topic_baselines._save_json")
@patch("scripts.rebuild_topic_baselines.BaselineEstimator")
@patch("scripts.rebuild_topic_baselines.load_detection_config")
@patch("scripts.rebuild_topic_baselines.init_db")
@patch("scripts.rebuild_topic_baselines.SessionLocal")
@patch("scripts.rebuild_topic_baselines._build_parser")
def test_dry_run_rolls_back_and_writes_report(
    mock_build_parser,
    mock_session_local,
    mock_init_db,
    mock_load_config,
    mock_estimator_cls,
    mock_save_json,
):
    mock_build_parser.return_value = _parser(
        _args(topic=["Senate Vote"], dry_run=True, output="/tmp/baseline_report.json")
    )
    db = MagicMock()
    mock_session_local.return_value = db
    mock_load_config.return_value = MagicMock(min_baseline_hours=24)
    estimator = MagicMock()
    estimator.rebuild_baseline.return_value = BaselineStats(data_points=48, mean_hourly=2.5, std_dev=1.2)
    mock_estimator_cls.return_value = estimator

    script.main()

    estimator.rebuild_baseline.assert_called_once()
    assert estimator.rebuild_baseline.call_args.args[0] == "senate_vote"
    db.rollback.assert_called_once()
    db.commit.assert_not_called()
    db.close.assert_called_once()

    path, payload = mock_save_json.call_args.args
    assert path == "/tmp/baseline_report.json"
    assert payload["dry_run"] is True
    assert payload["topics"] == [{
        "topic_key": "senate_vote",
        "data_points": 48,
        "mean_hourly": 2.5,
        "std_dev": 1.2,
        "established": True,
    }]


@patch("scripts.rebuild_topic_baselines._save_json")
@patch("scripts.rebuild_topic_baselines.BaselineEstimator")
@patch("scripts.rebuild_topic_baselines.load_detection_config")
@patch("scripts.rebuild_topic_baselines.init_db")
@patch("scripts.rebuild_topic_baselines.SessionLocal")
@patch("scripts.rebuild_topic_baselines._build_parser")
def test_live_run_commits_without_report(
    mock_build_parser,
    mock_session_local,
    mock_init_db,
    mock_load_config,
    mock_estimator_cls,
    mock_save_json,
):
    mock_build_parser.return_value = _parser(_args(topic=["port strike", "county budget"]))
    db = MagicMock()
    mock_session_local.return_value = db
    mock_load_config.return_value = MagicMock(min_baseline_hours=24)
    estimator = MagicMock()
    estimator.rebuild_baseline.return_value = BaselineStats()
    mock_estimator_cls.return_value = estimator

    script.main()

    keys = [call.args[0] for call in estimator.rebuild_baseline.call_args_list]
    assert keys == ["port_strike", "county_budget"]
    db.commit.assert_called_once()
    db.rollback.assert_not_called()
    mock_save_json.assert_not_called()


@patch("scripts.rebuild_topic_baselines.BaselineEstimator")
@patch("scripts.rebuild_topic_baselines.load_detection_config")
@patch("scripts.rebuild_topic_baselines.init_db")
@patch("scripts.rebuild_topic_baselines.SessionLocal")
@patch("scripts.rebuild_topic_baselines._build_parser")
def test_failure_rolls_back_and_closes(
    mock_build_parser,
    mock_session_local,
    mock_init_db,
    mock_load_config,
    mock_estimator_cls,
):
    mock_build_parser.return_value = _parser(_args(topic=["port strike"]))
    db = MagicMock()
    mock_session_local.return_value = db
    mock_load_config.return_value = MagicMock(min_baseline_hours=24)
    mock_estimator_cls.return_value.rebuild_baseline.side_effect = RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        script.main()

    db.rollback.assert_called_once()
    db.commit.assert_not_called()
    db.close.assert_called_once()


def test_parser_accepts_repeated_topics():
    args = script._build_parser().parse_args(["--topic", "a b", "--topic", "c d", "--dry-run"])

    assert args.topic == ["a b", "c d"]
    assert args.dry_run is True
    assert args.output is None
