"""Tests for training-sample export of rated frames."""

import csv
import json

import numpy as np
import pytest
from PIL import Image

from config_loader import ExportConfig
from feedback_export import (
    CSV_FIELDS,
    FeedbackExporter,
    FeedbackSample,
    RatingReason,
    samples_from_selection,
)
from frame_models import FrameBundle, SessionMetadata


@pytest.fixture
def exporter(tmp_path):
    return FeedbackExporter(ExportConfig(export_dir=tmp_path / "export"))


@pytest.fixture
def scored_bundle(item_factory):
    session = SessionMetadata(
        device_model="Pixel 9", os_version="15", used_multi_cam=False,
        available_lenses=(), capture_mode="burst", app_version="2.0",
    )
    bundle = FrameBundle([item_factory(iso=200.0), item_factory(), item_factory()], session=session)
    bundle.select(1)
    bundle.finalize()
    return bundle


def read_rows(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


class TestSamples:
    def test_from_item(self, item_factory):
        sample = FeedbackSample.from_item(item_factory(iso=800.0), 1.4, device="cam",
                                          reason=RatingReason.BLURRY, feedback="shaky")
        assert sample.score == 1.0
        assert sample.iso == 800
        assert sample.relpath == f"{sample.id}.jpg"
        assert (sample.width, sample.height) == (64, 64)
        row = sample.to_row()
        assert list(row) == CSV_FIELDS
        assert row["reason"] == "blurry"
        assert row["feedback"] == "shaky"
        assert row["ts"] == "2025-01-01T12:00:00"

    def test_to_dict(self, item_factory):
        data = FeedbackSample.from_item(item_factory(), 0.5).to_dict()
        assert data["meta"]["device"] == "unknown"
        assert data["reason_code"] is None

    def test_selection_scores(self, scored_bundle):
        samples = samples_from_selection(scored_bundle)
        assert [s.score for s in samples] == [0.3, 0.9, 0.3]
        assert all(s.device == "Pixel 9" for s in samples)
        assert samples[0].iso == 200
        assert len({s.id for s in samples}) == 3

    def test_unselected_bundle_exports_nothing(self, item_factory):
        assert samples_from_selection(FrameBundle([item_factory()])) == []

    def test_reason_display(self):
        assert RatingReason.WRONG_SUBJECT.display_name == "Wrong Subject"


class TestExporter:
    def test_export_writes_csv_and_manifest(self, exporter, scored_bundle):
        samples = samples_from_selection(scored_bundle)
        assert exporter.export(samples) == 3

        rows = read_rows(exporter.csv_path)
        assert [r["score"] for r in rows] == ["0.3", "0.9", "0.3"]
        manifest = json.loads(exporter.manifest_path.read_text())
        assert manifest["count"] == 3
        assert [s["id"] for s in manifest["samples"]] == [s.id for s in samples]

    def test_header_written_once(self, exporter, scored_bundle):
        exporter.export(samples_from_selection(scored_bundle))
        exporter.export(samples_from_selection(scored_bundle))
        lines = exporter.csv_path.read_text().splitlines()
        assert lines[0] == ",".join(CSV_FIELDS)
        assert len(lines) == 7
        assert exporter.load_manifest()[-1]["score"] == 0.3

    def test_duplicate_ids_skipped(self, exporter, scored_bundle):
        samples = samples_from_selection(scored_bundle)
        exporter.export(samples)
        assert exporter.export(samples) == 0
        assert len(read_rows(exporter.csv_path)) == 3

    def test_corrupt_manifest_treated_as_empty(self, exporter):
        exporter.config.export_dir.mkdir(parents=True)
        exporter.manifest_path.write_text("[broken")
        assert exporter.load_manifest() == []

    def test_thumbnail_resized(self, exporter, item_factory):
        item = item_factory(np.zeros((600, 1000, 3), dtype=np.uint8))
        path = exporter.save_thumbnail(item, "thumb.jpg")
        with Image.open(path) as img:
            assert img.format == "JPEG"
            assert img.size == (384, 230)

    def test_small_thumbnail_kept(self, exporter, item_factory):
        path = exporter.save_thumbnail(item_factory(), "small.jpg")
        with Image.open(path) as img:
            assert img.size == (64, 64)

    def test_unusable_pixels_skip_thumbnail(self, exporter, item_factory):
        item = item_factory(np.zeros((0, 0, 3), dtype=np.uint8))
        assert exporter.save_thumbnail(item, "none.jpg") is None

    def test_export_selection(self, exporter, scored_bundle):
        samples = exporter.export_selection(scored_bundle)
        for sample in samples:
            assert (exporter.config.export_dir / sample.relpath).exists()
        assert len(read_rows(exporter.csv_path)) == 3

    def test_export_selection_without_images(self, exporter, scored_bundle):
        exporter.export_selection(scored_bundle, device="override", save_images=False)
        assert not list(exporter.config.export_dir.glob("*.jpg"))
        assert {r["device"] for r in read_rows(exporter.csv_path)} == {"override"}

    def test_clear(self, exporter, scored_bundle):
        exporter.export_selection(scored_bundle)
        exporter.clear()
        assert list(exporter.config.export_dir.iterdir()) == []
