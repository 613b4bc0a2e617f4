#!/usr/bin/env python3
"""
BurstPick - Burst Loading

Builds frame bundle items from a directory of captured frames:
- Image integrity checks (corrupt or unsupported files are skipped)
- Capture metadata from EXIF (ISO, exposure time, aperture, EV, focal length)
- Optional depth maps (<stem>_depth.npy) and portrait mattes (<stem>_matte.npy/.png)
- Optional session.json describing the capture session
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Tuple

import numpy as np
from PIL import Image

from depth_assessor import DepthAssessor
from frame_models import (
    FrameBundleItem,
    FrameMetadata,
    Lens,
    PixelBuffer,
    SessionMetadata,
    mean_luminance,
)

logger = logging.getLogger("burstpick.main")

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".tif", ".tiff"}
ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP", "TIFF", "MPO"}
AUXILIARY_SUFFIXES = ("_depth", "_matte")

# EXIF tag ids
EXIF_IFD = 0x8769
TAG_EXPOSURE_TIME = 33434
TAG_FNUMBER = 33437
TAG_ISO = 34855
TAG_DATETIME_ORIGINAL = 36867
TAG_EXPOSURE_BIAS = 37380
TAG_FLASH = 37385
TAG_FOCAL_LENGTH_35MM = 41989
TAG_LENS_MODEL = 42036


def _rational(value: Any) -> Optional[float]:
    """EXIF rationals arrive as IFDRational, tuples or plain numbers."""
    if value is None:
        return None
    try:
        if isinstance(value, tuple) and len(value) == 2:
            return float(value[0]) / float(value[1]) if value[1] else None
        return float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None


class BurstLoader:
    """Loads one burst directory into FrameBundleItems."""

    def __init__(
        self,
        max_frames: Optional[int] = None,
        depth_assessor: Optional[DepthAssessor] = None
    ):
        self.max_frames = max_frames
        self.depth_assessor = depth_assessor or DepthAssessor()

    def check_file_integrity(self, filepath: Path) -> Tuple[bool, Optional[Image.Image], str]:
        """Verify image can be opened and is a supported format."""
        try:
            img = Image.open(filepath)
            img.verify()
            # verify() invalidates the image; reopen to read pixels
            img = Image.open(filepath)
            img.load()

            if img.format not in ALLOWED_FORMATS:
                return False, None, f"Invalid format: {img.format}"

            return True, img, ""
        except Exception as e:
            return False, None, f"Corrupted file: {e}"

    def find_frames(self, burst_dir: Path) -> list[Path]:
        frames = sorted(
            p for p in Path(burst_dir).iterdir()
            if p.is_file()
            and p.suffix.lower() in IMAGE_EXTENSIONS
            and not p.stem.endswith(AUXILIARY_SUFFIXES)
        )
        if self.max_frames is not None:
            frames = frames[:self.max_frames]
        return frames

    # =========================================================================
    # METADATA
    # =========================================================================

    def read_exif(self, img: Image.Image) -> dict[int, Any]:
        """Flatten base IFD and Exif sub-IFD tags into one dict."""
        tags: dict[int, Any] = {}
        try:
            exif = img.getexif()
        except Exception as e:
            logger.debug(f"No EXIF: {e}")
            return tags

        tags.update(exif.items())
        try:
            tags.update(exif.get_ifd(EXIF_IFD).items())
        except (KeyError, AttributeError):
            pass
        return tags

    def infer_lens(self, tags: dict[int, Any], filename: str = "") -> Lens:
        """Lens from EXIF lens model or 35mm focal length, else from the filename."""
        model = str(tags.get(TAG_LENS_MODEL, "")).lower()
        if "ultra" in model:
            return Lens.ULTRA_WIDE
        if "tele" in model:
            return Lens.TELE

        focal_35 = _rational(tags.get(TAG_FOCAL_LENGTH_35MM))
        if focal_35:
            if focal_35 < 20:
                return Lens.ULTRA_WIDE
            if focal_35 > 50:
                return Lens.TELE
            return Lens.WIDE

        name = filename.lower()
        if "ultra" in name:
            return Lens.ULTRA_WIDE
        if "tele" in name:
            return Lens.TELE
        if "wide" in name:
            return Lens.WIDE
        return Lens.UNKNOWN

    def build_metadata(
        self,
        img: Image.Image,
        pixels: np.ndarray,
        filepath: Path,
        depth: Optional[np.ndarray]
    ) -> FrameMetadata:
        tags = self.read_exif(img)
        lens = self.infer_lens(tags, filepath.stem)
        depth_quality = self.depth_assessor.assess_quality(depth) if depth is not None else 0.0

        if not tags:
            base = FrameMetadata.fallback(lens, pixels)
            return FrameMetadata(
                lens=base.lens,
                exposure_bias=base.exposure_bias,
                iso=base.iso,
                shutter_ms=base.shutter_ms,
                mean_luma=base.mean_luma,
                motion_score=base.motion_score,
                has_depth=depth is not None,
                depth_quality=depth_quality,
                width=img.width,
                height=img.height,
            )

        # ISOSpeedRatings may be a sequence of values
        raw_iso = tags.get(TAG_ISO)
        if isinstance(raw_iso, (tuple, list)):
            raw_iso = raw_iso[0] if raw_iso else None
        iso = _rational(raw_iso) or 400.0
        exposure_time = _rational(tags.get(TAG_EXPOSURE_TIME))
        shutter_ms = exposure_time * 1000.0 if exposure_time else 16.67

        timestamp = datetime.now()
        raw_ts = tags.get(TAG_DATETIME_ORIGINAL)
        if raw_ts:
            try:
                timestamp = datetime.strptime(str(raw_ts).strip("\x00"), "%Y:%m:%d %H:%M:%S")
            except ValueError:
                pass

        flash = tags.get(TAG_FLASH)
        return FrameMetadata(
            lens=lens,
            exposure_bias=_rational(tags.get(TAG_EXPOSURE_BIAS)) or 0.0,
            iso=iso,
            shutter_ms=shutter_ms,
            mean_luma=mean_luminance(pixels),
            motion_score=FrameMetadata.estimate_motion_score(shutter_ms, iso),
            has_depth=depth is not None,
            depth_quality=depth_quality,
            timestamp=timestamp,
            aperture=_rational(tags.get(TAG_FNUMBER)),
            orientation="landscape" if img.width >= img.height else "portrait",
            flash_mode="on" if isinstance(flash, int) and flash & 1 else "off",
            width=img.width,
            height=img.height,
        )

    # =========================================================================
    # AUXILIARY DATA
    # =========================================================================

    def load_depth(self, filepath: Path) -> Optional[np.ndarray]:
        depth_path = filepath.with_name(f"{filepath.stem}_depth.npy")
        if not depth_path.exists():
            return None
        try:
            depth = np.load(depth_path, allow_pickle=False)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable depth map {depth_path.name}: {e}")
            return None
        return depth.astype(np.float32)

    def load_matte(self, filepath: Path) -> Optional[np.ndarray]:
        npy_path = filepath.with_name(f"{filepath.stem}_matte.npy")
        png_path = filepath.with_name(f"{filepath.stem}_matte.png")
        try:
            if npy_path.exists():
                return np.load(npy_path, allow_pickle=False)
            if png_path.exists():
                with Image.open(png_path) as img:
                    return np.asarray(img.convert("L")).copy()
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable matte for {filepath.name}: {e}")
        return None

    def load_session(self, burst_dir: Path) -> SessionMetadata:
        session_path = Path(burst_dir) / "session.json"
        if not session_path.exists():
            return SessionMetadata.fallback()

        try:
            with open(session_path, encoding="utf-8") as f:
                data = json.load(f)
            fallback = SessionMetadata.fallback()
            return SessionMetadata(
                device_model=data.get("device_model", fallback.device_model),
                os_version=data.get("os_version", fallback.os_version),
                used_multi_cam=bool(data.get("used_multi_cam", False)),
                available_lenses=tuple(Lens.parse(v) for v in data.get("available_lenses", ["wide"])),
                capture_mode=data.get("capture_mode", fallback.capture_mode),
                app_version=data.get("app_version", fallback.app_version),
            )
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Invalid session.json in {burst_dir}: {e}")
            return SessionMetadata.fallback()

    # =========================================================================
    # MAIN
    # =========================================================================

    def load_item(self, filepath: Path) -> Optional[FrameBundleItem]:
        ok, img, reason = self.check_file_integrity(filepath)
        if not ok:
            logger.warning(f"⚠️ Skipping {filepath.name}: {reason}")
            return None

        pixels = np.asarray(img.convert("RGB")).copy()
        depth = self.load_depth(filepath)
        matte = self.load_matte(filepath)
        metadata = self.build_metadata(img, pixels, filepath, depth)
        img.close()

        return FrameBundleItem(
            image=PixelBuffer(pixels),
            metadata=metadata,
            depth=depth,
            matte=matte,
        )

    def load(self, burst_dir: Path) -> Tuple[list[FrameBundleItem], SessionMetadata]:
        """
        Load every readable frame in a burst directory.

        Returns:
            Tuple of (items in filename order, session metadata).
        """
        burst_dir = Path(burst_dir)
        if not burst_dir.is_dir():
            raise NotADirectoryError(f"Burst directory not found: {burst_dir}")

        items = []
        for filepath in self.find_frames(burst_dir):
            item = self.load_item(filepath)
            if item is not None:
                items.append(item)

        logger.info(f"Loaded {len(items)} frames from {burst_dir}")
        return items, self.load_session(burst_dir)
