#!/usr/bin/env python3
"""
BurstPick - Pixel Feature Extraction

Deterministic, cheap image statistics used by the heuristic quality score
and the personalization bias:
- Exposure (mean BT.709 luminance)
- Contrast (luminance spread)
- Saturation (mean chroma ratio)
- Sharpness (Laplacian magnitude)
- Noise (local luminance variance)

All work happens on a strided sample at most `sample_budget` pixels on the
longer side, so cost is independent of capture resolution.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any

import cv2
import numpy as np

from config_loader import FeatureConfig
from frame_models import PixelBuffer, image_to_array, sample_stride
from pipeline_robustness import InvalidImageBuffer

logger = logging.getLogger("burstpick.features")

# BT.709 luma coefficients
LUMA_R, LUMA_G, LUMA_B = 0.2126, 0.7152, 0.0722


@dataclass(frozen=True)
class ImageFeatures:
    """Normalized image statistics, each in [0, 1]."""
    exposure: float
    sharpness: float
    contrast: float
    saturation: float
    noise: float

    @classmethod
    def neutral(cls) -> "ImageFeatures":
        return cls(exposure=0.5, sharpness=0.5, contrast=0.5, saturation=0.5, noise=0.5)

    def as_dict(self) -> dict[str, float]:
        return {
            "exposure": self.exposure,
            "sharpness": self.sharpness,
            "contrast": self.contrast,
            "saturation": self.saturation,
            "noise": self.noise,
        }


class FeatureExtractor:
    """Computes ImageFeatures from arrays, PIL images, or pixel buffers."""

    def __init__(self, config: FeatureConfig = None):
        self.config = config or FeatureConfig()

    def _clamp(self, value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
        """Clamp value to range; NaN/inf become min_val."""
        if not math.isfinite(value):
            return min_val
        return max(min_val, min(max_val, value))

    def extract(self, image: Any) -> ImageFeatures:
        """
        Extract features from an image.

        Args:
            image: numpy array (H×W, H×W×3, H×W×4; uint8 or float in [0, 1]),
                PIL Image, or PixelBuffer (leased for the duration of the call).

        Returns:
            ImageFeatures; all 0.5 when the input is empty, undecodable, or
            rejected by OpenCV.
        """
        try:
            return self.extract_strict(image)
        except InvalidImageBuffer as e:
            logger.debug(f"Feature extraction fell back to neutral: {e}")
            return ImageFeatures.neutral()

    def extract_strict(self, image: Any) -> ImageFeatures:
        """
        Like extract(), but raises InvalidImageBuffer instead of returning
        neutral features.

        Only the strided sample is converted to float, never the full frame.
        """
        budget = self.config.sample_budget
        if isinstance(image, PixelBuffer):
            with image.lease() as pixels:
                return self._extract_array(image_to_array(pixels, sample_budget=budget))
        return self._extract_array(image_to_array(image, sample_budget=budget))

    # =========================================================================
    # SAMPLING
    # =========================================================================

    def _sample(self, arr: np.ndarray) -> np.ndarray:
        """Strided downsample so the longer side has at most sample_budget pixels."""
        stride = sample_stride(arr.shape[0], arr.shape[1], self.config.sample_budget)
        return np.ascontiguousarray(arr[::stride, ::stride])

    def _luma(self, sample: np.ndarray) -> np.ndarray:
        if sample.ndim == 2:
            return sample.astype(np.float32)
        return (
            LUMA_R * sample[:, :, 0]
            + LUMA_G * sample[:, :, 1]
            + LUMA_B * sample[:, :, 2]
        ).astype(np.float32)

    def _extract_array(self, arr: np.ndarray) -> ImageFeatures:
        sample = self._sample(arr)
        luma = self._luma(sample)

        try:
            return ImageFeatures(
                exposure=self.calculate_exposure(luma),
                sharpness=self.calculate_sharpness(luma),
                contrast=self.calculate_contrast(luma),
                saturation=self.calculate_saturation(sample),
                noise=self.calculate_noise(luma),
            )
        except cv2.error as e:
            raise InvalidImageBuffer(f"OpenCV rejected sample {sample.shape}: {e}") from e

    # =========================================================================
    # FEATURES
    # =========================================================================

    def calculate_exposure(self, luma: np.ndarray) -> float:
        return self._clamp(float(luma.mean()))

    def calculate_contrast(self, luma: np.ndarray) -> float:
        return self._clamp(float(luma.std()) * self.config.contrast_scale)

    def calculate_saturation(self, sample: np.ndarray) -> float:
        """Mean of (max - min) / max per pixel; 0.5 for single-channel images."""
        if sample.ndim != 3:
            return 0.5

        cmax = sample.max(axis=2)
        cmin = sample.min(axis=2)
        sat = np.zeros_like(cmax, dtype=np.float32)
        nonzero = cmax > 0
        sat[nonzero] = (cmax[nonzero] - cmin[nonzero]) / cmax[nonzero]
        return self._clamp(float(sat.mean()))

    def calculate_sharpness(self, luma: np.ndarray) -> float:
        """Mean absolute 4-neighbour Laplacian over interior samples."""
        if luma.shape[0] < 3 or luma.shape[1] < 3:
            return 0.5

        laplacian = cv2.Laplacian(luma.astype(np.float64), cv2.CV_64F, ksize=1)
        interior = np.abs(laplacian[1:-1, 1:-1])
        return self._clamp(float(interior.mean()) / self.config.sharpness_scale)

    def calculate_noise(self, luma: np.ndarray) -> float:
        """Mean local variance over noise_window × noise_window windows."""
        window = self.config.noise_window
        if luma.shape[0] < window or luma.shape[1] < window:
            return 0.5

        luma64 = luma.astype(np.float64)
        mean = cv2.blur(luma64, (window, window))
        mean_sq = cv2.blur(luma64 * luma64, (window, window))
        variance = np.maximum(mean_sq - mean * mean, 0.0)

        # Only windows that fit entirely inside the sample
        r = window // 2
        valid = variance[r:variance.shape[0] - r, r:variance.shape[1] - r]
        return self._clamp(float(valid.mean()) / self.config.noise_scale)
