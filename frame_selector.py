#!/usr/bin/env python3
"""
BurstPick - Frame Selection

Public entry points of the selection core:
- score_and_select(): score every frame of a burst in parallel, pick the best
- record_feedback(): feed a user rating back into personalization
- explain(): human-readable scoring breakdown for one frame
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence, Union

from config_loader import SelectorConfig
from depth_assessor import DepthAssessor
from feature_extractor import ImageFeatures
from frame_models import FrameBundle, FrameBundleItem, SceneHints, SessionMetadata
from personalization_engine import BiasContext, FeedbackEvent, PersonalizationEngine
from pipeline_robustness import (
    BundleFinalizedError,
    GracefulDegradation,
    LowDepthQuality,
    NoDepthData,
)
from quality_scorer import QualityScorer, QualityScores
from scene_analyzer import SceneAnalyzer

logger = logging.getLogger("burstpick.selector")


@dataclass
class FrameScore:
    """Scoring result for one frame of a bundle."""
    index: int
    baseline: float
    final: float
    source: str
    features: ImageFeatures = field(default_factory=ImageFeatures.neutral)
    context: BiasContext = field(default_factory=BiasContext)
    elapsed_ms: float = 0.0

    @property
    def adjustment(self) -> float:
        return self.final - self.baseline


@dataclass
class ScoringExplanation:
    """Why a frame received its score."""
    baseline: float
    personalized_score: float
    source: str
    components: dict[str, Optional[float]]
    factors: list[str]
    personalization_enabled: bool

    @property
    def adjustment(self) -> float:
        return self.personalized_score - self.baseline

    @property
    def breakdown(self) -> str:
        parts = [
            f"{name.replace('_', ' ').title()}: {value * 100:.0f}%"
            for name, value in self.components.items()
            if value is not None
        ]
        text = f"Base Score: {self.baseline * 100:.1f}% [{self.source}] ({', '.join(parts)})"

        if not self.personalization_enabled:
            text += "\nPersonalization: Disabled"
        elif abs(self.adjustment) > 0.01:
            sign = "+" if self.adjustment > 0 else ""
            text += f"\nPersonalization: {sign}{self.adjustment * 100:.1f}%"
            text += f"\nFinal Score: {self.personalized_score * 100:.1f}%"
        else:
            text += "\nPersonalization: No adjustment needed"
        return text


class FrameSelector:
    """
    Scores bundles and routes feedback to the personalization engine.

    All collaborators are injected; defaults are built from their own
    default configs.
    """

    def __init__(
        self,
        scorer: Optional[QualityScorer] = None,
        engine: Optional[PersonalizationEngine] = None,
        depth_assessor: Optional[DepthAssessor] = None,
        scene_analyzer: Optional[SceneAnalyzer] = None,
        config: Optional[SelectorConfig] = None,
        degradation: Optional[GracefulDegradation] = None
    ):
        self.config = config or SelectorConfig()
        self.degradation = degradation or GracefulDegradation()
        self.scorer = scorer or QualityScorer(degradation=self.degradation)
        self.engine = engine or PersonalizationEngine()
        self.depth_assessor = depth_assessor or DepthAssessor()
        self.scene_analyzer = scene_analyzer or SceneAnalyzer()

        self.last_scores: list[FrameScore] = []

    # =========================================================================
    # BUNDLE CONSTRUCTION
    # =========================================================================

    def build_bundle(
        self,
        items: Sequence[FrameBundleItem],
        session: Optional[SessionMetadata] = None,
        capture_duration: float = 0.0,
        capture_start_time: Optional[datetime] = None
    ) -> FrameBundle:
        """Analyze the scene and wrap items in a bundle."""
        hints = self.scene_analyzer.analyze(items)
        return FrameBundle(
            items=list(items),
            scene_hints=hints,
            session=session,
            capture_duration=capture_duration,
            capture_start_time=capture_start_time,
        )

    # =========================================================================
    # PER-FRAME SCORING
    # =========================================================================

    def _depth_quality(self, item: FrameBundleItem, index: Optional[int] = None) -> Optional[float]:
        """Measured depth quality, or None to fall back to metadata / 2D only."""
        if not item.has_depth:
            return None
        try:
            return self.depth_assessor.process(item.depth, item.matte).quality
        except (NoDepthData, LowDepthQuality) as e:
            logger.debug(f"Frame {index}: depth unusable ({e}), scoring 2D only")
            self.degradation.record(e, "depth", frame_index=index)
            return None

    def _context(
        self,
        item: FrameBundleItem,
        hints: Optional[SceneHints],
        index: Optional[int] = None
    ) -> BiasContext:
        return BiasContext.from_item(item, hints, self._depth_quality(item, index))

    def _base_scores(self, item: FrameBundleItem) -> QualityScores:
        with item.image.lease() as pixels:
            return self.scorer.score(pixels)

    def score_item(
        self,
        item: FrameBundleItem,
        hints: Optional[SceneHints] = None,
        index: int = 0
    ) -> FrameScore:
        """Score one frame: features, baseline, depth signal, personalization."""
        start = time.perf_counter()

        scores = self._base_scores(item)
        context = self._context(item, hints, index)
        final = self.engine.apply_bias(scores.baseline, scores.features, context)

        elapsed_ms = (time.perf_counter() - start) * 1000
        if elapsed_ms > self.config.frame_budget_ms:
            logger.debug(
                f"Frame {index} took {elapsed_ms:.1f}ms "
                f"(budget {self.config.frame_budget_ms:.0f}ms)"
            )

        return FrameScore(
            index=index,
            baseline=scores.baseline,
            final=final,
            source=scores.source,
            features=scores.features,
            context=context,
            elapsed_ms=elapsed_ms,
        )

    # =========================================================================
    # SELECTION
    # =========================================================================

    def score_and_select(self, bundle: FrameBundle) -> FrameBundle:
        """
        Score every frame, select the best and finalize the bundle.

        Frames are scored on a thread pool; selection happens only after
        all of them finish. Ties go to the earliest frame. An empty bundle
        is returned unchanged.

        Raises:
            BundleFinalizedError: If the bundle was already finalized.
        """
        if len(bundle) == 0:
            logger.warning("Empty bundle, nothing to select")
            return bundle
        if bundle.is_finalized:
            raise BundleFinalizedError("Bundle already scored and finalized")

        hints = bundle.scene_hints
        results: dict[int, FrameScore] = {}
        workers = max(1, min(self.config.max_workers, len(bundle)))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="burstpick-score") as executor:
            futures = {
                executor.submit(self.score_item, item, hints, index): index
                for index, item in enumerate(bundle)
            }

            for future in as_completed(futures):
                index = futures[future]
                try:
                    results[index] = future.result()
                except Exception as e:
                    logger.error(f"Scoring failed for frame {index}: {e}")
                    self.degradation.record(e, "selector", frame_index=index)
                    neutral = self.scorer.config.neutral_score
                    results[index] = FrameScore(
                        index=index, baseline=neutral, final=neutral, source="neutral"
                    )

        for index in range(len(bundle)):
            bundle.set_quality_score(index, results[index].final)

        best_index = 0
        for index in range(1, len(bundle)):
            if bundle[index].quality_score > bundle[best_index].quality_score:
                best_index = index

        bundle.select(best_index)
        bundle.finalize()

        self.last_scores = [results[i] for i in range(len(bundle))]
        logger.info(
            f"Selected frame {best_index}/{len(bundle)} "
            f"(score={bundle[best_index].quality_score:.3f}, "
            f"avg={bundle.average_quality:.3f})"
        )
        return bundle

    # =========================================================================
    # FEEDBACK
    # =========================================================================

    def record_feedback(
        self,
        bundle: FrameBundle,
        index: int,
        signal: Union[bool, float]
    ) -> bool:
        """Record a rating for one frame of a scored bundle."""
        return self.record_feedback_for_item(bundle[index], signal, bundle.scene_hints)

    def record_feedback_for_item(
        self,
        item: FrameBundleItem,
        signal: Union[bool, float],
        hints: Optional[SceneHints] = None
    ) -> bool:
        """
        Record a rating for a frame.

        The prediction is the frame's current quality_score, so the update
        is driven by how far the shown score was from the rating.

        Returns:
            False if personalization is disabled.
        """
        features = self.scorer.extractor.extract(item.image)
        event = FeedbackEvent.from_features(
            features=features,
            context=self._context(item, hints),
            feedback=signal,
            prediction=item.quality_score,
        )
        return self.engine.update(event)

    # =========================================================================
    # EXPLANATION
    # =========================================================================

    def explain(self, item: FrameBundleItem, hints: Optional[SceneHints] = None) -> ScoringExplanation:
        hints = hints or SceneHints()
        scores = self._base_scores(item)
        context = self._context(item, hints)
        final = self.engine.apply_bias(scores.baseline, scores.features, context)
        profile = self.engine.snapshot()

        return ScoringExplanation(
            baseline=scores.baseline,
            personalized_score=final,
            source=scores.source,
            components={
                "ml_score": scores.ml_score,
                "sharpness": scores.sharpness,
                "exposure_quality": scores.exposure_quality,
                "noise_quality": scores.noise_quality,
            },
            factors=self._scoring_factors(item, hints, profile.enabled and not profile.is_neutral),
            personalization_enabled=profile.enabled,
        )

    def _scoring_factors(self, item: FrameBundleItem, hints: SceneHints, personalized: bool) -> list[str]:
        factors = []
        meta = item.metadata

        if meta.motion_score < 0.3:
            factors.append("Sharp image")
        elif meta.motion_score > 0.7:
            factors.append("Motion blur detected")

        if meta.is_low_light:
            factors.append("Low light conditions")

        if meta.has_depth and meta.depth_quality > 0.5:
            factors.append("Good depth data")

        factors.append(f"Captured with {meta.lens.display_name} lens")
        factors.append(f"Scene type: {hints.scene_type.display_name}")

        if personalized:
            factors.append("Personalized for your preferences")

        return factors
