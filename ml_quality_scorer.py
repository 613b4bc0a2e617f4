#!/usr/bin/env python3
"""
ML-Based Quality Predictor using Aesthetic Predictor V2.5

Aesthetic Predictor V2.5 is trained on SigLIP embeddings and scores images
on a 1-10 scale. Scores are mapped to [0, 1] for fusion with the heuristic
fallback in quality_scorer.py.

torch and aesthetic-predictor-v2-5 are optional (the `ml` extra). Without
them the predictor raises PredictorUnavailable and scoring falls back to
pixel features.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import numpy as np
from PIL import Image

from frame_models import PixelBuffer, image_to_array
from pipeline_robustness import InvalidImageBuffer, PredictorError, PredictorUnavailable

logger = logging.getLogger("burstpick.scoring")


@dataclass
class MLQualityScore:
    """
    Quality assessment result from the aesthetic model.

    Attributes:
        normalized: Score mapped to [0, 1]
        raw_aesthetic: Original V2.5 score (1-10 scale)
        quality_tier: premium/standard/acceptable/low
    """
    normalized: float = 0.0
    raw_aesthetic: float = 1.0
    quality_tier: str = "low"
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "normalized": self.normalized,
            "raw_aesthetic": self.raw_aesthetic,
            "quality_tier": self.quality_tier,
            "details": self.details
        }


@dataclass
class MLQualityConfig:
    """Configuration for the aesthetic predictor."""
    # None = auto (cuda, then mps, then cpu)
    device: Optional[str] = None
    low_cpu_mem_usage: bool = True


class MLQualityScorer:
    """
    Aesthetic Predictor V2.5 adapter implementing predict(image) -> [0, 1].

    The model is loaded on first use. A failed load is remembered so later
    calls raise PredictorUnavailable immediately instead of retrying.
    """

    def __init__(self, config: Optional[MLQualityConfig] = None):
        self.config = config or MLQualityConfig()

        self._model = None
        self._processor = None
        self._load_error: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _ensure_loaded(self) -> None:
        """Lazy load Aesthetic Predictor V2.5 (SigLIP-based)."""
        if self._model is not None:
            return
        if self._load_error is not None:
            raise PredictorUnavailable(self._load_error)

        try:
            from aesthetic_predictor_v2_5 import convert_v2_5_from_siglip
            import torch

            model, processor = convert_v2_5_from_siglip(
                low_cpu_mem_usage=self.config.low_cpu_mem_usage,
                trust_remote_code=True
            )

            device = self.config.device
            if device is None:
                if torch.cuda.is_available():
                    device = "cuda"
                elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
                    device = "mps"
                else:
                    device = "cpu"
            model = model.to(device)

            model.eval()
            self._model, self._processor = model, processor
            logger.info(f"Loaded Aesthetic Predictor V2.5 on {device}")

        except Exception as e:
            self._load_error = f"Aesthetic Predictor V2.5 unavailable: {e}"
            logger.error(self._load_error)
            raise PredictorUnavailable(self._load_error) from e

    def _to_pil(self, image: Any) -> Image.Image:
        if isinstance(image, Image.Image):
            return image.convert("RGB")
        try:
            arr = image_to_array(image)
        except InvalidImageBuffer as e:
            raise PredictorError(f"Cannot prepare image for predictor: {e}") from e
        pil = Image.fromarray((arr * 255.0).round().astype(np.uint8))
        return pil.convert("RGB")

    def _score_aesthetic_v25(self, image: Image.Image) -> Tuple[float, float]:
        """
        Score aesthetic quality using Aesthetic Predictor V2.5.

        Returns:
            Tuple of (normalized_score 0-1, raw_score 1-10)
        """
        import torch

        pixel_values = self._processor(images=image, return_tensors="pt").pixel_values

        device = next(self._model.parameters()).device
        pixel_values = pixel_values.to(device)

        with torch.no_grad():
            raw_score = self._model(pixel_values).logits.squeeze().item()

        raw_score = max(1.0, min(10.0, raw_score))
        normalized = (raw_score - 1.0) / 9.0

        return normalized, raw_score

    def score(self, image: Any) -> MLQualityScore:
        """
        Score one image.

        Raises:
            PredictorUnavailable: If the model cannot be loaded.
            PredictorError: If inference fails.
        """
        if isinstance(image, PixelBuffer):
            with image.lease() as pixels:
                pil = self._to_pil(pixels)
        else:
            pil = self._to_pil(image)

        with self._lock:
            self._ensure_loaded()
            try:
                normalized, raw = self._score_aesthetic_v25(pil)
            except Exception as e:
                raise PredictorError(f"Aesthetic inference failed: {e}") from e

        return MLQualityScore(
            normalized=normalized,
            raw_aesthetic=raw,
            quality_tier=get_quality_tier(raw, normalized=False),
            details={"width": pil.width, "height": pil.height},
        )

    def predict(self, image: Any) -> float:
        """Normalized aesthetic score in [0, 1]."""
        return self.score(image).normalized


def get_quality_tier(score: float, normalized: bool = True) -> str:
    """
    Get quality tier for an aesthetic score.

    Aesthetic Predictor V2.5 Scale (1-10):
    - 6.5-10: Premium
    - 5.5-6.5: Standard
    - 4.0-5.5: Acceptable
    - <4.0: Low

    Args:
        score: Normalized [0, 1] score, or raw 1-10 score if normalized=False

    Returns:
        Quality tier string: "premium", "standard", "acceptable", or "low"
    """
    raw = 1.0 + 9.0 * score if normalized else score
    if raw >= 6.5:
        return "premium"
    elif raw >= 5.5:
        return "standard"
    elif raw >= 4.0:
        return "acceptable"
    else:
        return "low"
