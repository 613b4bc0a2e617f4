#!/usr/bin/env python3
"""
BurstPick - Quality Scoring

Produces a baseline quality score per frame:
- ML predictor score when one is injected and returns a valid value
- Heuristic fallback from pixel features otherwise
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import cv2
import numpy as np

from config_loader import QualityConfig
from feature_extractor import FeatureExtractor, ImageFeatures
from frame_models import PixelBuffer
from pipeline_robustness import (
    GracefulDegradation,
    InvalidImageBuffer,
    PredictorError,
    PredictorUnavailable,
)

logger = logging.getLogger("burstpick.scoring")


class QualityPredictor(Protocol):
    """Learned image quality model returning a score in [0, 1]."""

    def predict(self, image: Any) -> float:
        ...


@dataclass
class QualityScores:
    """Baseline score with its provenance and component breakdown."""
    baseline: float = 0.5
    source: str = "fallback"  # "ml", "fallback" or "neutral"
    features: ImageFeatures = field(default_factory=ImageFeatures.neutral)

    # Sub-scores for debugging
    ml_score: Optional[float] = None
    sharpness: float = 0.0
    exposure_quality: float = 0.0
    noise_quality: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "baseline": round(self.baseline, 4),
            "source": self.source,
            "ml_score": self.ml_score,
            "sharpness": round(self.sharpness, 4),
            "exposure_quality": round(self.exposure_quality, 4),
            "noise_quality": round(self.noise_quality, 4),
            "features": self.features.as_dict(),
        }


class QualityScorer:
    """Fuses an optional ML predictor with a feature-based fallback."""

    def __init__(
        self,
        config: QualityConfig = None,
        predictor: Optional[QualityPredictor] = None,
        extractor: Optional[FeatureExtractor] = None,
        degradation: Optional[GracefulDegradation] = None
    ):
        self.config = config or QualityConfig()
        self.predictor = predictor
        self.extractor = extractor or FeatureExtractor()
        self.degradation = degradation or GracefulDegradation()

        self._lock = threading.Lock()
        self.ml_count = 0
        self.fallback_count = 0

    def _clamp(self, value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
        """Clamp value to range."""
        return max(min_val, min(max_val, value))

    @property
    def fallback_weights(self) -> tuple[float, float, float]:
        """(sharpness, exposure, noise) weights normalized to sum 1."""
        w = self.config.weights
        total = w.sharpness + w.exposure + w.noise
        if total <= 0:
            return 0.4, 0.4, 0.2
        return w.sharpness / total, w.exposure / total, w.noise / total

    # =========================================================================
    # HEURISTIC FALLBACK
    # =========================================================================

    def exposure_quality(self, exposure: float) -> float:
        """1 at mid-grey, falling linearly to 0 at pure black or white."""
        return self._clamp(1.0 - 2.0 * abs(exposure - 0.5))

    def noise_quality(self, noise: float) -> float:
        return self._clamp(1.0 - noise)

    def fallback_score(self, features: ImageFeatures) -> float:
        w_sharp, w_exp, w_noise = self.fallback_weights
        score = (
            w_sharp * features.sharpness
            + w_exp * self.exposure_quality(features.exposure)
            + w_noise * self.noise_quality(features.noise)
        )
        return self._clamp(score)

    # =========================================================================
    # ML PREDICTOR
    # =========================================================================

    def _predict(self, pixels: Any) -> Optional[float]:
        """Predictor score if valid, else None (failure logged and counted)."""
        if self.predictor is None:
            return None

        try:
            value = float(self.predictor.predict(pixels))
        except PredictorUnavailable as e:
            logger.debug(f"Predictor unavailable, using fallback: {e}")
            self.degradation.record(e, "scoring")
            return None
        except PredictorError as e:
            logger.warning(f"Predictor failed, using fallback: {e}")
            self.degradation.record(e, "scoring")
            return None
        except Exception as e:
            logger.error(f"Unexpected predictor error: {e}")
            self.degradation.record(e, "scoring")
            return None

        if not math.isfinite(value) or not 0.0 <= value <= 1.0:
            logger.warning(f"Predictor returned invalid score {value}, using fallback")
            self.degradation.record(PredictorError(f"Invalid score: {value}"), "scoring")
            return None

        return value

    # =========================================================================
    # MAIN SCORING
    # =========================================================================

    def score(self, image: Any, features: Optional[ImageFeatures] = None) -> QualityScores:
        """
        Score one frame.

        Args:
            image: Array, PIL image or PixelBuffer (leased for the call).
            features: Precomputed features; extracted from the image if None.

        Returns:
            QualityScores. Baseline is 0.5 when extraction fails and no ML
            score is available.
        """
        if isinstance(image, PixelBuffer):
            with image.lease() as pixels:
                return self._score_pixels(pixels, features)
        return self._score_pixels(image, features)

    def _score_pixels(self, pixels: Any, features: Optional[ImageFeatures]) -> QualityScores:
        extracted = True
        if features is None:
            try:
                features = self.extractor.extract_strict(pixels)
            except InvalidImageBuffer as e:
                logger.warning(f"Feature extraction failed: {e}")
                self.degradation.record(e, "features")
                features = ImageFeatures.neutral()
                extracted = False
            except (ValueError, np.linalg.LinAlgError, cv2.error) as e:
                logger.error(f"Feature extraction error: {e}")
                self.degradation.record(e, "features")
                features = ImageFeatures.neutral()
                extracted = False

        ml_score = self._predict(pixels)

        scores = QualityScores(
            features=features,
            ml_score=ml_score,
            sharpness=features.sharpness,
            exposure_quality=self.exposure_quality(features.exposure),
            noise_quality=self.noise_quality(features.noise),
        )

        if ml_score is not None:
            scores.baseline = ml_score
            scores.source = "ml"
        elif extracted:
            scores.baseline = self.fallback_score(features)
            scores.source = "fallback"
        else:
            scores.baseline = self.config.neutral_score
            scores.source = "neutral"

        with self._lock:
            if scores.source == "ml":
                self.ml_count += 1
            else:
                self.fallback_count += 1

        return scores

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {"ml": self.ml_count, "fallback": self.fallback_count}
