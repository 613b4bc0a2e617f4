#!/usr/bin/env python3
"""
BurstPick - Personalization Engine

Online, bounded preference learning from user feedback:
- apply_bias(): nudge a baseline quality score toward learned preferences
- update(): error-driven weight update from one feedback event

The profile is guarded by a read/write lock. Saves run on a single-worker
executor, submitted while the write lock is held, so they are serialized
in update order.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union

from config_loader import PersonalizationConfig
from feature_extractor import ImageFeatures
from frame_models import FrameBundleItem, FrameMetadata, Lens, SceneHints
from personalization_store import (
    FEATURE_NAMES,
    InMemoryProfileStore,
    PersonalizationProfile,
    ProfileStore,
)
from pipeline_robustness import PersistenceLoadFailed, ReadWriteLock

logger = logging.getLogger("burstpick.personalization")

ChangeCallback = Callable[[PersonalizationProfile], None]


def _clamp(value: float, min_val: float = 0.0, max_val: float = 1.0) -> float:
    return max(min_val, min(max_val, value))


# =============================================================================
# EVENTS & CONTEXT
# =============================================================================

def hdr_signal(metadata: FrameMetadata) -> float:
    """HDR potential from luminance extremes, low light and ISO."""
    high_contrast = metadata.mean_luma < 0.3 or metadata.mean_luma > 0.7
    if high_contrast and not metadata.is_low_light:
        return 0.8
    if high_contrast or metadata.iso > 800:
        return 0.5
    return 0.2


@dataclass(frozen=True)
class BiasContext:
    """Non-pixel signals that feed the portrait, HDR and lens affinities."""
    depth_signal: float = 0.0
    hdr_signal: float = 0.2
    lens: Lens = Lens.UNKNOWN

    def __post_init__(self):
        object.__setattr__(self, "depth_signal", _clamp(float(self.depth_signal)))
        object.__setattr__(self, "hdr_signal", _clamp(float(self.hdr_signal)))

    @classmethod
    def from_item(
        cls,
        item: FrameBundleItem,
        hints: Optional[SceneHints] = None,
        depth_quality: Optional[float] = None
    ) -> "BiasContext":
        """
        Build context for one frame.

        Args:
            item: Frame to describe.
            hints: Scene hints; an HDR scene lifts bracketed frames to the
                high HDR signal.
            depth_quality: Measured depth quality, overriding metadata.
        """
        meta = item.metadata
        if depth_quality is not None:
            depth = depth_quality
        elif item.has_depth or meta.has_depth:
            depth = meta.depth_quality
        else:
            depth = 0.0

        hdr = hdr_signal(meta)
        if hints is not None and hints.wants_hdr and abs(meta.exposure_bias) > 0.3:
            hdr = max(hdr, 0.8)

        return cls(depth_signal=depth, hdr_signal=hdr, lens=meta.lens)


@dataclass(frozen=True)
class FeedbackEvent:
    """One user rating of a scored frame."""
    features: ImageFeatures
    context: BiasContext
    feedback: float            # 1.0 = liked, 0.0 = disliked
    prediction: float          # Score shown to the user
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_features(
        cls,
        features: ImageFeatures,
        context: BiasContext,
        feedback: Union[bool, float],
        prediction: float
    ) -> "FeedbackEvent":
        if isinstance(feedback, bool):
            value = 1.0 if feedback else 0.0
        else:
            value = _clamp(float(feedback))
        return cls(
            features=features,
            context=context,
            feedback=value,
            prediction=_clamp(float(prediction)),
        )

    @property
    def is_positive(self) -> bool:
        return self.feedback >= 0.5


# =============================================================================
# STATE & STATISTICS
# =============================================================================

class EngineState(Enum):
    NEUTRAL = "neutral"
    LEARNING = "learning"


@dataclass(frozen=True)
class PersonalizationStatistics:
    """Read-only view of the profile for display and debugging."""
    profile: PersonalizationProfile
    total_ratings: int
    enabled: bool
    preference_strength: float
    is_neutral: bool
    learning_rate: float

    @property
    def summary(self) -> str:
        if not self.enabled:
            return "Personalization disabled"
        if self.is_neutral:
            return f"Learning your preferences ({self.total_ratings} ratings)"
        strength = int(self.preference_strength * 100)
        return f"{strength}% personalized ({self.total_ratings} ratings)"

    @property
    def detailed_summary(self) -> str:
        return (
            f"Personalization: {'Enabled' if self.enabled else 'Disabled'}\n"
            f"Total ratings: {self.total_ratings}\n"
            f"Preference strength: {self.preference_strength * 100:.1f}%\n"
            f"Learning rate: {self.learning_rate:.4f}\n"
            f"Profile: {self.profile.summary}"
        )


# =============================================================================
# ENGINE
# =============================================================================

class PersonalizationEngine:
    """
    Learns per-user preferences and biases quality scores with them.

    Args:
        store: Profile persistence; in-memory if None.
        config: Learning parameters.
        on_change: Optional callback receiving a profile snapshot after
            every write.
    """

    FEATURE_COUNT = len(FEATURE_NAMES)

    def __init__(
        self,
        store: Optional[ProfileStore] = None,
        config: Optional[PersonalizationConfig] = None,
        on_change: Optional[ChangeCallback] = None
    ):
        self.config = config or PersonalizationConfig()
        self.store = store if store is not None else InMemoryProfileStore()

        self._lock = ReadWriteLock()
        self._profile = self._load_profile()

        self._callbacks: list[ChangeCallback] = []
        if on_change is not None:
            self._callbacks.append(on_change)
        self._callbacks_lock = threading.Lock()

        self._save_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="burstpick-save")
        self._pending: list[Future] = []
        self._pending_lock = threading.Lock()
        self._closed = False

    def _load_profile(self) -> PersonalizationProfile:
        try:
            profile = self.store.load()
        except PersistenceLoadFailed as e:
            logger.warning(f"⚠️ {e}; starting from a neutral profile")
            return PersonalizationProfile()

        if profile is None:
            logger.debug("No stored profile, starting neutral")
            return PersonalizationProfile()

        logger.info(f"Loaded personalization profile ({profile.total_ratings} ratings)")
        return profile

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def on_change(self, callback: ChangeCallback) -> None:
        with self._callbacks_lock:
            self._callbacks.append(callback)

    def _notify(self, snapshot: PersonalizationProfile) -> None:
        with self._callbacks_lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(snapshot.copy())
            except Exception as e:
                logger.error(f"Profile change callback failed: {e}")

    def snapshot(self) -> PersonalizationProfile:
        with self._lock.read_locked():
            return self._profile.copy()

    @property
    def state(self) -> EngineState:
        with self._lock.read_locked():
            return EngineState.NEUTRAL if self._profile.is_neutral else EngineState.LEARNING

    @property
    def is_enabled(self) -> bool:
        with self._lock.read_locked():
            return self._profile.enabled

    def learning_rate(self) -> float:
        with self._lock.read_locked():
            return self._learning_rate(self._profile.total_ratings)

    def _learning_rate(self, total_ratings: int) -> float:
        steps = total_ratings // max(1, self.config.decay_interval)
        return self.config.base_learning_rate * (self.config.decay_factor ** steps)

    def statistics(self) -> PersonalizationStatistics:
        with self._lock.read_locked():
            profile = self._profile.copy()
        return PersonalizationStatistics(
            profile=profile,
            total_ratings=profile.total_ratings,
            enabled=profile.enabled,
            preference_strength=profile.preference_strength,
            is_neutral=profile.is_neutral,
            learning_rate=self._learning_rate(profile.total_ratings),
        )

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def apply_bias(self, base: float, features: ImageFeatures, context: BiasContext) -> float:
        """
        Bias a baseline score toward learned preferences.

        Returns base unchanged when personalization is disabled or no
        ratings have been recorded; otherwise a value in [0, 1] at most
        max_bias away from base.
        """
        with self._lock.read_locked():
            profile = self._profile
            if not profile.enabled or profile.total_ratings == 0:
                return base

            raw = 0.0
            for name in FEATURE_NAMES:
                raw += profile.get(name) * (getattr(features, name) - 0.5) * 2.0
            raw += profile.portrait * (context.depth_signal - 0.5) * 2.0
            raw += profile.hdr * (context.hdr_signal - 0.5) * 2.0
            raw += self._lens_affinity(profile, context.lens)

        max_bias = self.config.max_bias
        bias = _clamp(raw * self.config.bias_strength / self.FEATURE_COUNT, -max_bias, max_bias)
        return _clamp(base + bias)

    @staticmethod
    def _lens_affinity(profile: PersonalizationProfile, lens: Lens) -> float:
        if lens == Lens.TELE:
            return profile.tele
        if lens == Lens.ULTRA_WIDE:
            return profile.ultra_wide
        return 0.0

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def update(self, event: FeedbackEvent) -> bool:
        """
        Apply one feedback event.

        Returns:
            False if personalization is disabled (event ignored).
        """
        bound = self.config.weight_bound
        with self._lock.write_locked():
            profile = self._profile
            if not profile.enabled:
                logger.debug("Personalization disabled, feedback ignored")
                return False

            lr = self._learning_rate(profile.total_ratings)
            error = event.feedback - event.prediction

            for name in FEATURE_NAMES:
                signal = (getattr(event.features, name) - 0.5) * 2.0
                profile.set(name, profile.get(name) + lr * error * signal, bound)

            ctx = event.context
            profile.set("portrait", profile.portrait + lr * error * (ctx.depth_signal - 0.5) * 2.0, bound)
            profile.set("hdr", profile.hdr + lr * error * (ctx.hdr_signal - 0.5) * 2.0, bound)
            if ctx.lens == Lens.TELE:
                profile.set("tele", profile.tele + lr * error, bound)
            elif ctx.lens == Lens.ULTRA_WIDE:
                profile.set("ultra_wide", profile.ultra_wide + lr * error, bound)

            profile.total_ratings += 1
            profile.last_updated = datetime.now()

            snapshot = self._commit_locked()

        logger.debug(
            f"Profile updated: error={error:+.3f} lr={lr:.4f} "
            f"strength={snapshot.preference_strength:.3f}"
        )
        self._notify(snapshot)
        return True

    def reset(self) -> None:
        """Forget all preferences and re-enable personalization."""
        with self._lock.write_locked():
            self._profile.clear_weights()
            self._profile.total_ratings = 0
            self._profile.enabled = True
            self._profile.last_updated = datetime.now()
            snapshot = self._commit_locked()
        logger.info("Personalization profile reset")
        self._notify(snapshot)

    def set_enabled(self, enabled: bool) -> None:
        with self._lock.write_locked():
            if self._profile.enabled == enabled:
                return
            self._profile.enabled = enabled
            snapshot = self._commit_locked()
        logger.info(f"Personalization {'enabled' if enabled else 'disabled'}")
        self._notify(snapshot)

    def update_preference(self, name: str, value: float) -> None:
        """
        Manually set one weight or affinity (clamped to the weight bound).

        Raises:
            KeyError: If name is not a known preference.
        """
        with self._lock.write_locked():
            self._profile.set(name, value, self.config.weight_bound)
            self._profile.last_updated = datetime.now()
            snapshot = self._commit_locked()
        self._notify(snapshot)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _commit_locked(self) -> PersonalizationProfile:
        """Snapshot the profile and queue a save. Caller holds the write lock."""
        snapshot = self._profile.copy()
        if self._closed:
            logger.warning("Engine closed, profile change not persisted")
            return snapshot

        future = self._save_executor.submit(self._save, snapshot)
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return snapshot

    def _save(self, profile: PersonalizationProfile) -> bool:
        try:
            self.store.save(profile)
            return True
        except Exception as e:
            logger.error(f"Failed to save personalization profile: {e}")
            return False

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued save has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        with self._lock.write_locked():
            self._closed = True
        self.flush()
        self._save_executor.shutdown(wait=True)

    def __enter__(self) -> "PersonalizationEngine":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
