#!/usr/bin/env python3
"""
BurstPick - Depth Quality Assessment

Estimates how usable a depth map is for portrait-aware scoring, and
produces normalized 8-bit depth masks for downstream consumers.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import cv2
import numpy as np

from config_loader import DepthConfig
from pipeline_robustness import LowDepthQuality, NoDepthData

logger = logging.getLogger("burstpick.depth")


@dataclass
class DepthResult:
    """Outcome of processing one depth map."""
    quality: float
    normalized: np.ndarray            # uint8, invalid pixels = 0
    ai_mask: np.ndarray               # uint8, smoothed for lower-quality maps
    matte: Optional[np.ndarray] = None
    valid_ratio: float = 0.0
    normalized_variance: float = 0.0
    stats: dict = field(default_factory=dict)

    @property
    def is_portrait_suitable(self) -> bool:
        return self.quality > 0.5 and self.matte is not None

    @property
    def is_ai_suitable(self) -> bool:
        return self.quality > 0.3

    @property
    def is_high_quality(self) -> bool:
        return self.quality > 0.7


class DepthAssessor:
    """Scores and normalizes depth maps (float metres, non-positive = invalid)."""

    def __init__(self, config: DepthConfig = None):
        self.config = config or DepthConfig()

    def _clamp(self, value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
        return max(min_val, min(max_val, value))

    @staticmethod
    def _valid_mask(depth: np.ndarray) -> np.ndarray:
        return np.isfinite(depth) & (depth > 0)

    def _measure(self, depth: np.ndarray) -> tuple[float, float, float]:
        """Return (quality, valid_ratio, normalized_variance) from a strided sample."""
        if depth is None or depth.size == 0:
            return 0.0, 0.0, 0.0

        stride = max(1, self.config.stride)
        sample = np.asarray(depth, dtype=np.float64)
        sample = sample[::stride, ::stride] if sample.ndim >= 2 else sample[::stride]

        valid = self._valid_mask(sample)
        n_valid = int(valid.sum())
        if n_valid == 0:
            return 0.0, 0.0, 0.0

        values = sample[valid]
        valid_ratio = n_valid / sample.size
        variance = float(values.var())
        normalized_variance = self._clamp(variance / self.config.variance_scale)

        quality = (
            self.config.valid_weight * valid_ratio
            + self.config.variance_weight * normalized_variance
        )
        return self._clamp(quality), valid_ratio, normalized_variance

    def assess_quality(self, depth: Optional[np.ndarray]) -> float:
        """
        Depth quality in [0, 1].

        Combines the fraction of valid samples with the depth variance
        (flat maps carry little subject separation). Returns 0 when no
        sample is valid.
        """
        quality, _, _ = self._measure(depth)
        return quality

    def normalize(self, depth: np.ndarray) -> np.ndarray:
        """
        Min-max normalize valid depth to uint8 [0, 255].

        Invalid pixels map to 0. When every valid pixel has the same depth,
        they all map to 0 as well.
        """
        depth = np.asarray(depth, dtype=np.float64)
        out = np.zeros(depth.shape, dtype=np.uint8)
        valid = self._valid_mask(depth)
        if not valid.any():
            return out

        values = depth[valid]
        d_min, d_max = float(values.min()), float(values.max())
        depth_range = d_max - d_min
        if depth_range <= 0:
            return out

        out[valid] = ((values - d_min) / depth_range * 255.0).astype(np.uint8)
        return out

    def process(self, depth: Optional[np.ndarray], matte: Optional[np.ndarray] = None) -> DepthResult:
        """
        Assess and normalize a depth map.

        Raises:
            NoDepthData: If depth is missing or empty.
            LowDepthQuality: If quality is below config.min_quality.
        """
        if depth is None or np.asarray(depth).size == 0:
            raise NoDepthData("No depth data available")

        depth = np.asarray(depth)
        if depth.ndim == 3 and depth.shape[2] == 1:
            depth = depth[:, :, 0]

        quality, valid_ratio, normalized_variance = self._measure(depth)
        if quality < self.config.min_quality:
            raise LowDepthQuality(quality, self.config.min_quality)

        normalized = self.normalize(depth)
        ai_mask = self._create_ai_mask(normalized, quality)

        logger.debug(
            f"Depth processed: quality={quality:.3f} valid={valid_ratio:.2f} "
            f"var={normalized_variance:.2f}"
        )

        return DepthResult(
            quality=quality,
            normalized=normalized,
            ai_mask=ai_mask,
            matte=matte,
            valid_ratio=valid_ratio,
            normalized_variance=normalized_variance,
            stats={
                "quality": quality,
                "width": float(depth.shape[1]) if depth.ndim >= 2 else float(depth.shape[0]),
                "height": float(depth.shape[0]) if depth.ndim >= 2 else 1.0,
            },
        )

    def _create_ai_mask(self, normalized: np.ndarray, quality: float) -> np.ndarray:
        if quality > self.config.smoothing_threshold or normalized.ndim != 2:
            return normalized.copy()
        # Radius-2 Gaussian smoothing for noisier maps
        return cv2.GaussianBlur(normalized, (5, 5), 2.0)

    def subject_mask(self, result: DepthResult, focus_subject: bool = True) -> np.ndarray:
        """Binary mask (0/255) thresholding the AI mask at 30% or 70% of the range."""
        threshold = 0.3 if focus_subject else 0.7
        mask = result.ai_mask.astype(np.float32) / 255.0 > threshold
        return mask.astype(np.uint8) * 255
