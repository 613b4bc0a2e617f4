#!/usr/bin/env python3
"""
BurstPick - Frame Data Model

Capture-side data carried through scoring and selection:
- Lens and per-frame capture metadata
- Pixel buffers with scoped read-only leases
- Frame bundle arena (index-addressed, finalized after selection)
- Scene hints and session metadata
"""

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional, Tuple

import numpy as np
from PIL import Image

from pipeline_robustness import BundleFinalizedError, InvalidImageBuffer

logger = logging.getLogger("burstpick")


def _clamp(value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
    if not math.isfinite(value):
        return min_val
    return max(min_val, min(max_val, value))


# =============================================================================
# PIXEL BUFFERS
# =============================================================================

def _raw_pixels(image: Any) -> np.ndarray:
    """Unwrap an image to its raw H×W or H×W×3 array without converting dtype."""
    if isinstance(image, PixelBuffer):
        image = image.data

    if isinstance(image, Image.Image):
        try:
            if image.mode not in ("L", "RGB"):
                image = image.convert("RGB")
            arr = np.asarray(image)
        except (OSError, ValueError) as e:
            raise InvalidImageBuffer(f"Cannot decode image: {e}") from e
    elif isinstance(image, np.ndarray):
        arr = image
    else:
        raise InvalidImageBuffer(f"Unsupported image type: {type(image).__name__}")

    if arr.size == 0 or arr.ndim not in (2, 3):
        raise InvalidImageBuffer(f"Unsupported image shape: {arr.shape}")

    if arr.ndim == 3:
        channels = arr.shape[2]
        if channels == 4:
            arr = arr[:, :, :3]
        elif channels == 1:
            arr = arr[:, :, 0]
        elif channels != 3:
            raise InvalidImageBuffer(f"Unsupported channel count: {channels}")
    return arr


def sample_stride(height: int, width: int, sample_budget: int) -> int:
    """Stride that keeps the longer side at most sample_budget pixels."""
    return max(1, math.ceil(max(height, width) / max(1, sample_budget)))


def image_size(image: Any) -> Tuple[int, int]:
    """
    (width, height) of a supported image, read without converting pixels.

    Raises:
        InvalidImageBuffer: If the input is empty or has an unsupported layout.
    """
    if isinstance(image, Image.Image):
        if image.width == 0 or image.height == 0:
            raise InvalidImageBuffer(f"Unsupported image size: {image.size}")
        return int(image.width), int(image.height)
    arr = _raw_pixels(image)
    return int(arr.shape[1]), int(arr.shape[0])


def image_to_array(image: Any, sample_budget: Optional[int] = None) -> np.ndarray:
    """
    Convert a supported image to a float32 array in [0, 1].

    Accepts H×W (grayscale), H×W×3 or H×W×4 arrays (uint8 or float),
    PIL images, and PixelBuffer contents. Alpha is dropped.

    Args:
        image: Image to convert.
        sample_budget: If set, stride-sample the raw pixels so the longer
            side is at most this many pixels before any conversion.

    Raises:
        InvalidImageBuffer: If the input is empty or has an unsupported layout.
    """
    arr = _raw_pixels(image)
    if sample_budget is not None:
        stride = sample_stride(arr.shape[0], arr.shape[1], sample_budget)
        arr = arr[::stride, ::stride]

    if arr.dtype == np.uint8:
        out = arr.astype(np.float32) / 255.0
    elif np.issubdtype(arr.dtype, np.integer):
        out = arr.astype(np.float32) / float(np.iinfo(arr.dtype).max)
    elif np.issubdtype(arr.dtype, np.floating) or arr.dtype == np.bool_:
        out = arr.astype(np.float32)
    else:
        raise InvalidImageBuffer(f"Unsupported pixel dtype: {arr.dtype}")

    out = np.nan_to_num(out, nan=0.0, posinf=0.0, neginf=0.0)
    return np.clip(out, 0.0, 1.0)


def mean_luminance(image: Any, sample_budget: int = 64) -> float:
    """Mean BT.709 luminance of a downsampled image; 0.5 if unreadable."""
    try:
        sample = image_to_array(image, sample_budget=sample_budget)
    except InvalidImageBuffer:
        return 0.5

    if sample.ndim == 3:
        luma = 0.2126 * sample[:, :, 0] + 0.7152 * sample[:, :, 1] + 0.0722 * sample[:, :, 2]
    else:
        luma = sample
    return _clamp(float(luma.mean()))


class PixelBuffer:
    """
    Image pixels shared between the capture side and scoring workers.

    Access goes through lease(), which holds an exclusive lock and marks the
    array read-only for the duration of the scope.
    """

    def __init__(self, data: np.ndarray):
        self._data = data
        self._lock = threading.Lock()

    @property
    def data(self) -> np.ndarray:
        return self._data

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._data.shape

    @property
    def width(self) -> int:
        return int(self._data.shape[1]) if self._data.ndim >= 2 else 0

    @property
    def height(self) -> int:
        return int(self._data.shape[0]) if self._data.ndim >= 1 else 0

    @property
    def is_leased(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def lease(self) -> Iterator[np.ndarray]:
        """Exclusive read-only access to the pixels for the scope of the block."""
        with self._lock:
            was_writeable = self._data.flags.writeable
            if was_writeable:
                self._data.flags.writeable = False
            try:
                yield self._data
            finally:
                if was_writeable:
                    self._data.flags.writeable = True

    def replace(self, data: np.ndarray) -> None:
        """Swap in new pixels; blocks while a lease is held."""
        with self._lock:
            self._data = data

    @classmethod
    def wrap(cls, image: Any) -> "PixelBuffer":
        if isinstance(image, PixelBuffer):
            return image
        if isinstance(image, Image.Image):
            return cls(np.asarray(image.convert("RGB")).copy())
        return cls(np.asarray(image))


# =============================================================================
# LENS & METADATA
# =============================================================================

class Lens(Enum):
    """Camera lens used for a capture."""
    WIDE = "wide"
    ULTRA_WIDE = "ultraWide"
    TELE = "tele"
    UNKNOWN = "unknown"

    @property
    def display_name(self) -> str:
        return {
            Lens.WIDE: "Wide",
            Lens.ULTRA_WIDE: "Ultra Wide",
            Lens.TELE: "Telephoto",
            Lens.UNKNOWN: "Unknown",
        }[self]

    @property
    def focal_length_equivalent(self) -> float:
        return {
            Lens.ULTRA_WIDE: 13.0,
            Lens.WIDE: 26.0,
            Lens.TELE: 77.0,
            Lens.UNKNOWN: 26.0,
        }[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> "Lens":
        """Lenient lookup by value or name; unknown strings map to UNKNOWN."""
        if not value:
            return cls.UNKNOWN
        key = value.strip().replace("-", "_").replace(" ", "_").lower()
        for lens in cls:
            if key in (lens.value.lower(), lens.name.lower()):
                return lens
        return cls.UNKNOWN


@dataclass(frozen=True)
class FrameMetadata:
    """Per-frame capture metadata. Normalized fields are clamped to [0, 1]."""
    lens: Lens
    exposure_bias: float
    iso: float
    shutter_ms: float
    mean_luma: float
    motion_score: float
    has_depth: bool = False
    depth_quality: float = 0.0
    white_balance_rg: Optional[Tuple[float, float]] = None
    timestamp: datetime = field(default_factory=datetime.now)
    aperture: Optional[float] = None
    focus_distance: Optional[float] = None
    orientation: str = "portrait"
    flash_mode: str = "off"
    width: int = 4032
    height: int = 3024

    def __post_init__(self):
        object.__setattr__(self, "mean_luma", _clamp(float(self.mean_luma)))
        object.__setattr__(self, "motion_score", _clamp(float(self.motion_score)))
        object.__setattr__(self, "depth_quality", _clamp(float(self.depth_quality)))

    @property
    def is_low_light(self) -> bool:
        return self.mean_luma < 0.3 or self.iso > 1600

    @property
    def has_motion_blur(self) -> bool:
        return self.motion_score > 0.6

    @property
    def is_portrait_suitable(self) -> bool:
        return self.has_depth and self.depth_quality > 0.5 and self.lens != Lens.ULTRA_WIDE

    @property
    def exposure_time_seconds(self) -> float:
        return self.shutter_ms / 1000.0

    @property
    def is_telephoto(self) -> bool:
        return self.lens == Lens.TELE

    @property
    def is_ultra_wide(self) -> bool:
        return self.lens == Lens.ULTRA_WIDE

    @staticmethod
    def estimate_motion_score(shutter_ms: float, iso: float) -> float:
        """Motion blur risk from exposure time (100 ms saturates) and high ISO."""
        exposure_score = min(shutter_ms / 100.0, 1.0)
        iso_score = 0.3 if iso > 1600 else 0.0
        return _clamp(exposure_score + iso_score)

    @classmethod
    def fallback(cls, lens: Lens = Lens.WIDE, image: Any = None) -> "FrameMetadata":
        """Metadata for frames captured without camera settings (1/60 s at ISO 400)."""
        width, height = 4032, 3024
        if image is not None:
            try:
                width, height = image_size(image)
            except InvalidImageBuffer as e:
                logger.debug(f"Fallback metadata without image size: {e}")

        return cls(
            lens=lens,
            exposure_bias=0.0,
            iso=400.0,
            shutter_ms=16.67,
            mean_luma=mean_luminance(image) if image is not None else 0.5,
            motion_score=0.2,
            has_depth=False,
            depth_quality=0.0,
            width=width,
            height=height,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "lens": self.lens.value,
            "exposure_bias": self.exposure_bias,
            "iso": self.iso,
            "shutter_ms": self.shutter_ms,
            "white_balance_rg": list(self.white_balance_rg) if self.white_balance_rg else None,
            "mean_luma": round(self.mean_luma, 4),
            "motion_score": round(self.motion_score, 4),
            "has_depth": self.has_depth,
            "depth_quality": round(self.depth_quality, 4),
            "timestamp": self.timestamp.isoformat(),
            "aperture": self.aperture,
            "focus_distance": self.focus_distance,
            "orientation": self.orientation,
            "flash_mode": self.flash_mode,
            "width": self.width,
            "height": self.height,
        }

    def __str__(self) -> str:
        depth = f"{self.depth_quality:.2f}" if self.has_depth else "none"
        return (
            f"FrameMetadata(lens={self.lens.display_name}, ev={self.exposure_bias:+.1f}, "
            f"iso={int(self.iso)}, shutter={self.shutter_ms:.2f}ms, "
            f"luma={self.mean_luma:.2f}, motion={self.motion_score:.2f}, depth={depth})"
        )


# =============================================================================
# SCENE & SESSION
# =============================================================================

class SceneType(Enum):
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"
    MACRO = "macro"
    LOW_LIGHT = "lowLight"
    ACTION = "action"
    GENERAL = "general"

    @property
    def display_name(self) -> str:
        return self.name.replace("_", " ").title()


@dataclass(frozen=True)
class SceneHints:
    """Scene analysis derived from a burst."""
    low_light: bool = False
    wants_portrait: bool = False
    wants_hdr: bool = False
    faces_detected: int = 0
    scene_type: SceneType = SceneType.GENERAL
    confidence: float = 0.8

    def __post_init__(self):
        object.__setattr__(self, "faces_detected", max(0, int(self.faces_detected)))
        object.__setattr__(self, "confidence", _clamp(float(self.confidence)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "low_light": self.low_light,
            "wants_portrait": self.wants_portrait,
            "wants_hdr": self.wants_hdr,
            "faces_detected": self.faces_detected,
            "scene_type": self.scene_type.value,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class SessionMetadata:
    """Capture session information."""
    device_model: str
    os_version: str
    used_multi_cam: bool
    available_lenses: Tuple[Lens, ...]
    capture_mode: str
    app_version: str

    @classmethod
    def fallback(cls) -> "SessionMetadata":
        return cls(
            device_model="unknown",
            os_version="unknown",
            used_multi_cam=False,
            available_lenses=(Lens.WIDE,),
            capture_mode="burst",
            app_version="1.0.0",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_model": self.device_model,
            "os_version": self.os_version,
            "used_multi_cam": self.used_multi_cam,
            "available_lenses": [lens.value for lens in self.available_lenses],
            "capture_mode": self.capture_mode,
            "app_version": self.app_version,
        }


# =============================================================================
# BUNDLE
# =============================================================================

@dataclass
class FrameBundleItem:
    """One captured frame with optional depth and portrait matte."""
    image: PixelBuffer
    metadata: FrameMetadata
    depth: Optional[np.ndarray] = None
    matte: Optional[np.ndarray] = None
    quality_score: float = 0.0
    is_selected: bool = False

    def __post_init__(self):
        if not isinstance(self.image, PixelBuffer):
            self.image = PixelBuffer.wrap(self.image)

    @property
    def has_depth(self) -> bool:
        return self.depth is not None and self.depth.size > 0

    @classmethod
    def from_image(
        cls,
        image: Any,
        lens: Lens = Lens.WIDE,
        depth: Optional[np.ndarray] = None,
        matte: Optional[np.ndarray] = None
    ) -> "FrameBundleItem":
        """Build an item with fallback metadata computed from the pixels."""
        buffer = PixelBuffer.wrap(image)
        return cls(
            image=buffer,
            metadata=FrameMetadata.fallback(lens, buffer),
            depth=depth,
            matte=matte,
        )


class FrameBundle:
    """
    Frames from one burst, addressed by index.

    The item count is fixed at construction. Scores and the selection flag
    change only through set_quality_score() and select(); after finalize()
    both raise BundleFinalizedError.
    """

    def __init__(
        self,
        items: list[FrameBundleItem],
        scene_hints: Optional[SceneHints] = None,
        session: Optional[SessionMetadata] = None,
        capture_duration: float = 0.0,
        capture_start_time: Optional[datetime] = None
    ):
        self._items = tuple(items)
        self.scene_hints = scene_hints or SceneHints()
        self.session = session or SessionMetadata.fallback()
        self.capture_duration = capture_duration
        self.capture_start_time = capture_start_time or datetime.now()
        self._finalized = False
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> FrameBundleItem:
        return self._items[index]

    def __iter__(self) -> Iterator[FrameBundleItem]:
        return iter(self._items)

    @property
    def items(self) -> Tuple[FrameBundleItem, ...]:
        return self._items

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def _check_mutable(self, index: int) -> None:
        if self._finalized:
            raise BundleFinalizedError(f"Bundle is finalized; cannot modify frame {index}")
        if not 0 <= index < len(self._items):
            raise IndexError(f"Frame index {index} out of range (0..{len(self._items) - 1})")

    def set_quality_score(self, index: int, score: float) -> None:
        with self._lock:
            self._check_mutable(index)
            self._items[index].quality_score = _clamp(float(score))

    def select(self, index: int) -> None:
        """Mark one frame as selected and clear every other flag."""
        with self._lock:
            self._check_mutable(index)
            for i, item in enumerate(self._items):
                item.is_selected = (i == index)

    def finalize(self) -> None:
        with self._lock:
            self._finalized = True

    # -------------------------------------------------------------------------
    # Derived views
    # -------------------------------------------------------------------------

    @property
    def frame_count(self) -> int:
        return len(self._items)

    @property
    def lens_count(self) -> int:
        return len({item.metadata.lens for item in self._items})

    @property
    def has_depth_data(self) -> bool:
        return any(item.has_depth for item in self._items)

    @property
    def has_portrait_matte(self) -> bool:
        return any(item.matte is not None for item in self._items)

    @property
    def selected_index(self) -> Optional[int]:
        for i, item in enumerate(self._items):
            if item.is_selected:
                return i
        return None

    @property
    def selected_item(self) -> Optional[FrameBundleItem]:
        index = self.selected_index
        return self._items[index] if index is not None else None

    @property
    def average_quality(self) -> float:
        if not self._items:
            return 0.0
        return sum(item.quality_score for item in self._items) / len(self._items)

    def frames_by_lens(self) -> dict[Lens, list[FrameBundleItem]]:
        grouped: dict[Lens, list[FrameBundleItem]] = {}
        for item in self._items:
            grouped.setdefault(item.metadata.lens, []).append(item)
        return grouped

    def hdr_candidates(self) -> list[FrameBundleItem]:
        """Exposure-bracketed frames (at least ±0.3 EV)."""
        return [item for item in self._items if abs(item.metadata.exposure_bias) > 0.3]

    def portrait_candidates(self) -> list[FrameBundleItem]:
        return [item for item in self._items if item.metadata.is_portrait_suitable]

    def sharpest_frame(self) -> Optional[FrameBundleItem]:
        """Frame with the lowest motion score (first wins ties)."""
        if not self._items:
            return None
        return min(self._items, key=lambda item: item.metadata.motion_score)

    def low_light_frames(self) -> list[FrameBundleItem]:
        return [item for item in self._items if item.metadata.is_low_light]

    def export_metadata(self) -> dict[str, Any]:
        return {
            "frame_count": self.frame_count,
            "lens_count": self.lens_count,
            "has_depth_data": self.has_depth_data,
            "has_portrait_matte": self.has_portrait_matte,
            "capture_duration": self.capture_duration,
            "capture_start_time": self.capture_start_time.isoformat(),
            "average_quality": round(self.average_quality, 4),
            "selected_index": self.selected_index,
            "scene_hints": self.scene_hints.to_dict(),
            "session": self.session.to_dict(),
            "frames": [
                {
                    "index": i,
                    "lens": item.metadata.lens.value,
                    "quality_score": round(item.quality_score, 4),
                    "is_selected": item.is_selected,
                    "has_depth": item.has_depth,
                    "has_matte": item.matte is not None,
                    "metadata": item.metadata.to_dict(),
                }
                for i, item in enumerate(self._items)
            ],
        }
