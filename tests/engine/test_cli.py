"""End-to-end checks of the command line wiring."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import polars as pl
import pytest

from hooplatent.engine import cli
from hooplatent.engine.schemas import OUTCOME_CLASSES

SMALL_CONFIG = """
encoder:
  hidden_dims: [8]
  batch_size: 4
  num_negatives: 2
  max_epochs: 2
  seed: 3
outcome_model:
  hidden_dims: [8]
simulation:
  iterations: 1000
  seed: 1
"""


@pytest.fixture()
def workspace(tmp_path: Path) -> dict[str, Path]:
    config = tmp_path / "engine.yaml"
    config.write_text(SMALL_CONFIG)
    return {
        "config": config,
        "storage": tmp_path / "posteriors.sqlite3",
        "data": tmp_path / "data",
        "root": tmp_path,
    }


def _run(workspace: dict[str, Path], capsys, *argv: str) -> str:
    cli.main(
        [
            *argv,
            "--config",
            str(workspace["config"]),
            "--storage",
            str(workspace["storage"]),
            "--data-dir",
            str(workspace["data"]),
            "--log-level",
            "WARNING",
        ]
    )
    return capsys.readouterr().out


def _games_csv(path: Path) -> Path:
    rng = np.random.default_rng(5)
    rows: dict[str, list] = {
        "game_id": ["g2", "g1"],
        "home_team_id": ["UNC", "DUKE"],
        "away_team_id": ["DUKE", "UNC"],
        "game_date": ["2024-11-20", "2024-11-12"],
        "home_score": [70, 81],
        "away_score": [75, 77],
    }
    for side in ("home", "away"):
        for name in OUTCOME_CLASSES:
            rows[f"{side}_{name}"] = [int(value) for value in rng.integers(1, 30, size=2)]
    pl.DataFrame(rows).write_csv(path)
    return path


def _features_csv(path: Path, count: int = 12) -> Path:
    rng = np.random.default_rng(6)
    rows: dict[str, list] = {"game_id": [f"p{index}" for index in range(count)]}
    for index in range(5):
        rows[f"feature_{index}"] = rng.normal(size=count).tolist()
    for name in OUTCOME_CLASSES:
        rows[name] = [int(value) for value in rng.integers(1, 20, size=count)]
    pl.DataFrame(rows).write_csv(path)
    return path


def test_validate_config_reports_errors(tmp_path: Path, capsys) -> None:
    config = tmp_path / "bad.yaml"
    config.write_text("simulation:\n  iterations: 0\n")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["validate-config", "--config", str(config)])
    assert excinfo.value.code == 1
    output = capsys.readouterr().out
    assert "Configuration invalid:" in output
    assert "- simulation.iterations must be greater than zero" in output


def test_validate_config_warnings_as_errors(tmp_path: Path, capsys) -> None:
    config = tmp_path / "noisy.yaml"
    config.write_text("simulation:\n  iterations: 200\n")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["validate-config", "--config", str(config), "--warnings-as-errors"])
    assert excinfo.value.code == 2
    assert "Warnings:" in capsys.readouterr().out


def test_pretrain_process_predict(workspace: dict[str, Path], capsys) -> None:
    features = _features_csv(workspace["root"] / "features.csv")
    summary = json.loads(_run(workspace, capsys, "pretrain", "--features", str(features)))
    assert summary["samples_used"] == 12
    assert (workspace["data"] / cli.ENCODER_FILENAME).exists()

    games = _games_csv(workspace["root"] / "games.csv")
    report = json.loads(_run(workspace, capsys, "process", "--games", str(games)))
    assert report["processed"] == 2
    assert report["failed"] == 0
    assert (workspace["data"] / cli.OUTCOME_MODEL_FILENAME).exists()

    again = json.loads(_run(workspace, capsys, "process", "--games", str(games)))
    assert again["processed"] == 0
    assert again["skipped"] == 2

    posterior = json.loads(_run(workspace, capsys, "posterior", "DUKE", "--history", "5"))
    assert posterior["team_id"] == "DUKE"
    assert posterior["games_processed"] == 2
    assert len(posterior["history"]) == 2

    prediction = json.loads(
        _run(
            workspace,
            capsys,
            "predict",
            "DUKE",
            "UNC",
            "--odds",
            json.dumps({"homeMoneyline": 10_000, "awayMoneyline": 10_000}),
        )
    )
    assert prediction["home_team"] == "DUKE"
    assert set(prediction["home_distribution"]) == set(OUTCOME_CLASSES)
    total = (
        prediction["home_win_probability"]
        + prediction["away_win_probability"]
        + prediction["tie_probability"]
    )
    assert total == pytest.approx(1.0)
    assert prediction["opportunities"]


def test_unknown_posterior(workspace: dict[str, Path], capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        _run(workspace, capsys, "posterior", "NOBODY")
    assert excinfo.value.code == 1
    assert "No posterior stored for NOBODY" in capsys.readouterr().out


def test_labels_from_counts() -> None:
    frame = pl.DataFrame(
        {
            "game_id": ["g1"],
            "home_team_id": ["A"],
            "away_team_id": ["B"],
            "game_date": ["2024-11-12"],
            "neutral_site": [True],
            **{f"home_{name}": [2] for name in OUTCOME_CLASSES},
            **{f"away_{name}": [0] for name in OUTCOME_CLASSES},
        }
    )
    (label,) = cli.labels_from_frame(frame)
    assert label.transition_probs_home == pytest.approx((0.125,) * 8)
    assert label.transition_probs_away == pytest.approx((0.125,) * 8)
    assert label.context.neutral_site is True
    assert label.point_differential is None


def test_feature_matrix_rejects_wide_columns() -> None:
    frame = pl.DataFrame({"feature_0": [1.0], "feature_90": [2.0]})
    with pytest.raises(ValueError):
        cli.feature_matrix(frame)
