#!/usr/bin/env python3
"""
BurstPick - Feedback Sample Export

Writes rated frames as image-quality training samples:
- train.csv: one row per rating (appended)
- manifest.json: full sample list with export metadata
- <id>.jpg: 384px-wide thumbnails
"""

import csv
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import numpy as np
from PIL import Image

from config_loader import ExportConfig
from frame_models import FrameBundle, FrameBundleItem, image_to_array
from pipeline_robustness import AtomicFileWriter, InvalidImageBuffer

logger = logging.getLogger("burstpick.main")

CSV_FIELDS = [
    "id", "relpath", "score", "device", "iso", "shutter_ms", "mean_luma",
    "width", "height", "ts", "reason", "feedback",
]

SELECTED_SCORE = 0.9
REJECTED_SCORE = 0.3
THUMBNAIL_WIDTH = 384


class RatingReason(Enum):
    """Why a user rated a frame down."""
    TOO_DARK = "too_dark"
    BLURRY = "blurry"
    NOISY = "noisy"
    WRONG_SUBJECT = "wrong_subject"
    POOR_COMPOSITION = "poor_composition"
    OVEREXPOSED = "overexposed"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass
class FeedbackSample:
    """One rated frame in training-export form."""
    relpath: str
    score: float
    device: str
    iso: Optional[int]
    shutter_ms: Optional[float]
    mean_luma: float
    width: int
    height: int
    timestamp: datetime = field(default_factory=datetime.now)
    reason_code: Optional[RatingReason] = None
    user_feedback: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_item(
        cls,
        item: FrameBundleItem,
        score: float,
        device: str = "unknown",
        relpath: Optional[str] = None,
        reason: Optional[RatingReason] = None,
        feedback: Optional[str] = None
    ) -> "FeedbackSample":
        meta = item.metadata
        sample_id = str(uuid.uuid4())
        return cls(
            id=sample_id,
            relpath=relpath or f"{sample_id}.jpg",
            score=max(0.0, min(1.0, score)),
            device=device,
            iso=int(meta.iso) if meta.iso else None,
            shutter_ms=meta.shutter_ms or None,
            mean_luma=meta.mean_luma,
            width=item.image.width or meta.width,
            height=item.image.height or meta.height,
            timestamp=meta.timestamp,
            reason_code=reason,
            user_feedback=feedback,
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "relpath": self.relpath,
            "score": round(self.score, 4),
            "device": self.device,
            "iso": self.iso if self.iso is not None else 0,
            "shutter_ms": self.shutter_ms if self.shutter_ms is not None else 0,
            "mean_luma": round(self.mean_luma, 4),
            "width": self.width,
            "height": self.height,
            "ts": self.timestamp.isoformat(),
            "reason": self.reason_code.value if self.reason_code else "",
            "feedback": self.user_feedback or "",
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "relpath": self.relpath,
            "score": self.score,
            "meta": {
                "device": self.device,
                "iso": self.iso,
                "shutter_ms": self.shutter_ms,
                "mean_luma": self.mean_luma,
                "width": self.width,
                "height": self.height,
                "timestamp": self.timestamp.isoformat(),
            },
            "reason_code": self.reason_code.value if self.reason_code else None,
            "user_feedback": self.user_feedback,
        }


def samples_from_selection(
    bundle: FrameBundle,
    device: Optional[str] = None
) -> list[FeedbackSample]:
    """Rate the selected frame 0.9 and every other frame 0.3."""
    if bundle.selected_index is None:
        logger.warning("Bundle has no selected frame, nothing to export")
        return []

    device = device or bundle.session.device_model
    return [
        FeedbackSample.from_item(
            item,
            SELECTED_SCORE if item.is_selected else REJECTED_SCORE,
            device=device,
        )
        for item in bundle
    ]


class FeedbackExporter:
    """Appends feedback samples to the export directory."""

    def __init__(self, config: Optional[ExportConfig] = None):
        self.config = config or ExportConfig()
        self.writer = AtomicFileWriter()

    @property
    def csv_path(self) -> Path:
        return self.config.export_dir / self.config.csv_name

    @property
    def manifest_path(self) -> Path:
        return self.config.export_dir / self.config.manifest_name

    def load_manifest(self) -> list[dict]:
        """Load exported samples from the manifest; [] if missing or unreadable."""
        if not self.manifest_path.exists():
            return []
        try:
            with open(self.manifest_path, encoding="utf-8") as f:
                return json.load(f).get("samples", [])
        except (OSError, ValueError, AttributeError) as e:
            logger.error(f"Failed to load feedback manifest: {e}")
            return []

    def _append_csv(self, samples: list[FeedbackSample]) -> None:
        self.config.export_dir.mkdir(parents=True, exist_ok=True)
        write_header = not self.csv_path.exists()
        with open(self.csv_path, "a", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
            if write_header:
                writer.writeheader()
            for sample in samples:
                writer.writerow(sample.to_row())

    def _save_manifest(self, samples: list[dict]) -> None:
        manifest = {
            "version": "1.0",
            "updated": datetime.now().isoformat(),
            "count": len(samples),
            "samples": samples,
        }
        self.writer.atomic_json_write(self.manifest_path, manifest)

    def save_thumbnail(self, item: FrameBundleItem, relpath: str) -> Optional[Path]:
        """Save a 384px-wide JPEG of the frame; None if the pixels are unusable."""
        try:
            with item.image.lease() as pixels:
                arr = image_to_array(pixels)
        except InvalidImageBuffer as e:
            logger.warning(f"Skipping thumbnail {relpath}: {e}")
            return None

        img = Image.fromarray((arr * 255.0).round().astype(np.uint8)).convert("RGB")
        if img.width > THUMBNAIL_WIDTH:
            height = max(1, round(img.height * THUMBNAIL_WIDTH / img.width))
            img = img.resize((THUMBNAIL_WIDTH, height), Image.Resampling.LANCZOS)

        path = self.config.export_dir / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        img.save(path, "JPEG", quality=60)
        return path

    def export(self, samples: list[FeedbackSample]) -> int:
        """
        Append samples to train.csv and the manifest.

        Samples whose id is already in the manifest are skipped.

        Returns:
            Number of new samples written.
        """
        existing = self.load_manifest()
        existing_ids = {s.get("id") for s in existing}
        new_samples = [s for s in samples if s.id not in existing_ids]

        if not new_samples:
            logger.info("No new feedback samples to export")
            return 0

        self._append_csv(new_samples)
        self._save_manifest(existing + [s.to_dict() for s in new_samples])

        logger.info(f"Exported {len(new_samples)} feedback samples to {self.config.export_dir}")
        return len(new_samples)

    def export_selection(
        self,
        bundle: FrameBundle,
        device: Optional[str] = None,
        save_images: bool = True
    ) -> list[FeedbackSample]:
        """Export the selected/rejected ratings of a scored bundle."""
        samples = samples_from_selection(bundle, device)
        if save_images:
            for item, sample in zip(bundle, samples):
                self.save_thumbnail(item, sample.relpath)
        self.export(samples)
        return samples

    def clear(self) -> None:
        """Remove exported CSV, manifest and thumbnails."""
        if not self.config.export_dir.exists():
            return
        for path in self.config.export_dir.iterdir():
            if path.is_file() and (path.suffix in (".jpg", ".csv", ".json")):
                path.unlink()
        logger.info(f"Cleared feedback export in {self.config.export_dir}")
