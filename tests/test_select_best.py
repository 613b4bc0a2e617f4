"""End-to-end tests for the select_best CLI."""

import csv
import json
import logging

import numpy as np
import pytest
from PIL import Image

import select_best
from pipeline_robustness import DEFAULT_STAGES


@pytest.fixture(autouse=True)
def close_stage_handlers():
    yield
    for stage in DEFAULT_STAGES:
        stage_logger = logging.getLogger(f"burstpick.{stage}")
        for handler in list(stage_logger.handlers):
            handler.close()
            stage_logger.removeHandler(handler)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "personalization:\n"
        f"  profile_path: {tmp_path / 'profile' / 'personalization.json'}\n"
        "export:\n"
        f"  dir: {tmp_path / 'export'}\n"
        "logging:\n"
        f"  dir: {tmp_path / 'logs'}\n"
        "  max_days: 30\n"
    )
    return path


@pytest.fixture
def burst(tmp_path):
    burst_dir = tmp_path / "burst_0001"
    burst_dir.mkdir()
    Image.new("RGB", (64, 64), (128, 128, 128)).save(burst_dir / "frame_000.png")
    yy, xx = np.indices((64, 64))
    board = ((yy + xx) % 2 * 255).astype(np.uint8)
    Image.fromarray(np.stack([board] * 3, axis=-1)).save(burst_dir / "frame_001.png")
    return burst_dir


class TestMain:
    def test_scores_and_prints(self, burst, config_path, capsys):
        bundles = select_best.main([burst], config_path=config_path, show_progress=False)
        assert len(bundles) == 1
        assert bundles[0].selected_index == 1
        out = capsys.readouterr().out
        assert "2 frames" in out
        assert "★ [1]" in out

    def test_feedback_persists_profile(self, burst, config_path, tmp_path):
        select_best.main([burst], config_path=config_path, feedback="positive", show_progress=False)
        data = json.loads((tmp_path / "profile" / "personalization.json").read_text())
        assert data["total_ratings"] == 1

    def test_feedback_out_of_range_frame(self, burst, config_path, tmp_path):
        select_best.main([burst], config_path=config_path, feedback="negative",
                         feedback_frame=9, show_progress=False)
        assert not (tmp_path / "profile" / "personalization.json").exists()

    def test_export(self, burst, config_path, tmp_path):
        select_best.main([burst], config_path=config_path, export=True, show_progress=False)
        with open(tmp_path / "export" / "train.csv", newline="") as f:
            rows = list(csv.DictReader(f))
        assert [r["score"] for r in rows] == ["0.3", "0.9"]
        assert len(list((tmp_path / "export").glob("*.jpg"))) == 2

    def test_missing_burst_skipped(self, config_path, tmp_path):
        assert select_best.main([tmp_path / "missing"], config_path=config_path,
                                show_progress=False) == []

    def test_explain(self, burst, config_path, capsys):
        select_best.main([burst], config_path=config_path, explain=True, show_progress=False)
        assert "Base Score:" in capsys.readouterr().out


class TestCli:
    def test_reset_only(self, config_path, tmp_path):
        assert select_best.cli(["--reset", "--config", str(config_path)]) == 0
        data = json.loads((tmp_path / "profile" / "personalization.json").read_text())
        assert data["total_ratings"] == 0

    def test_burst_run(self, burst, config_path):
        assert select_best.cli([str(burst), "-c", str(config_path)]) == 0

    def test_no_arguments_is_usage_error(self):
        with pytest.raises(SystemExit) as exc_info:
            select_best.cli([])
        assert exc_info.value.code == 2
