#!/usr/bin/env python3
"""
BurstPick - Scene Analysis

Derives SceneHints (lighting, portrait/HDR intent, scene type) from the
capture metadata of a burst.
"""

import logging
from typing import Any, Callable, Optional, Sequence

from frame_models import FrameBundleItem, Lens, SceneHints, SceneType

logger = logging.getLogger("burstpick.scene")

FaceCounter = Callable[[Any], int]


class SceneAnalyzer:
    """
    Rule-based scene classifier.

    An optional face counter (image -> int) can be injected; when present
    its results fill faces_detected and raise confidence.
    """

    LOW_LIGHT_LUMA = 0.3
    LOW_LIGHT_ISO = 1600
    PORTRAIT_DEPTH_QUALITY = 0.5
    HDR_EV_RANGE = 0.5
    ACTION_MOTION = 0.7

    def __init__(self, face_counter: Optional[FaceCounter] = None):
        self.face_counter = face_counter

    def analyze(self, items: Sequence[FrameBundleItem]) -> SceneHints:
        if not items:
            return SceneHints()

        metas = [item.metadata for item in items]
        count = len(metas)

        avg_luma = sum(m.mean_luma for m in metas) / count
        avg_iso = sum(m.iso for m in metas) / count
        low_light = avg_luma < self.LOW_LIGHT_LUMA or avg_iso > self.LOW_LIGHT_ISO

        has_depth_frames = any(item.has_depth or item.metadata.has_depth for item in items)
        has_good_depth = any(m.depth_quality > self.PORTRAIT_DEPTH_QUALITY for m in metas)
        wants_portrait = has_depth_frames and has_good_depth

        biases = [m.exposure_bias for m in metas]
        wants_hdr = (max(biases) - min(biases)) > self.HDR_EV_RANGE

        if low_light:
            scene_type = SceneType.LOW_LIGHT
        elif wants_portrait:
            scene_type = SceneType.PORTRAIT
        elif any(m.lens == Lens.ULTRA_WIDE for m in metas):
            scene_type = SceneType.LANDSCAPE
        elif any(m.motion_score > self.ACTION_MOTION for m in metas):
            scene_type = SceneType.ACTION
        else:
            scene_type = SceneType.GENERAL

        faces = 0
        confidence = 0.8
        if self.face_counter is not None:
            faces = self._count_faces(items)
            confidence = 0.9

        hints = SceneHints(
            low_light=low_light,
            wants_portrait=wants_portrait,
            wants_hdr=wants_hdr,
            faces_detected=faces,
            scene_type=scene_type,
            confidence=confidence,
        )
        logger.debug(f"Scene: {scene_type.value} low_light={low_light} "
                     f"portrait={wants_portrait} hdr={wants_hdr} faces={faces}")
        return hints

    def _count_faces(self, items: Sequence[FrameBundleItem]) -> int:
        """Maximum face count over the burst; counter failures count as 0."""
        best = 0
        for index, item in enumerate(items):
            try:
                with item.image.lease() as pixels:
                    best = max(best, int(self.face_counter(pixels)))
            except Exception as e:
                logger.warning(f"Face counter failed on frame {index}: {e}")
        return best
