"""Tests for bounded online preference learning."""

import threading
from unittest.mock import Mock

import pytest

from conftest import features
from config_loader import PersonalizationConfig
from frame_models import Lens, SceneHints
from personalization_engine import (
    BiasContext,
    EngineState,
    FeedbackEvent,
    PersonalizationEngine,
    hdr_signal,
)
from personalization_store import (
    PREFERENCE_NAMES,
    InMemoryProfileStore,
    JsonProfileStore,
    PersonalizationProfile,
)
from pipeline_robustness import PersistenceLoadFailed

MID = BiasContext(depth_signal=0.5, hdr_signal=0.5, lens=Lens.WIDE)


def event(feedback=1.0, prediction=0.5, context=MID, **feature_values):
    return FeedbackEvent.from_features(features(**feature_values), context, feedback, prediction)


def saturated_profile(total_ratings=5) -> PersonalizationProfile:
    profile = PersonalizationProfile(total_ratings=total_ratings)
    for name in PREFERENCE_NAMES:
        profile.set(name, 1.0)
    return profile


class TestApplyBias:
    def test_neutral_profile_is_identity(self, engine):
        assert engine.apply_bias(0.42, features(sharpness=1.0), MID) == 0.42

    def test_disabled_is_identity(self, engine_factory):
        eng = engine_factory(saturated_profile())
        eng.set_enabled(False)
        assert eng.apply_bias(0.42, features(sharpness=1.0), MID) == 0.42

    def test_single_weight(self, engine_factory):
        eng = engine_factory(PersonalizationProfile(sharpness=1.0, total_ratings=1))
        assert eng.apply_bias(0.5, features(sharpness=1.0), MID) == pytest.approx(0.53)
        assert eng.apply_bias(0.5, features(sharpness=0.0), MID) == pytest.approx(0.47)

    def test_bias_capped(self, engine_factory):
        eng = engine_factory(saturated_profile())
        all_high = features(exposure=1.0, sharpness=1.0, contrast=1.0, saturation=1.0, noise=1.0)
        ctx = BiasContext(depth_signal=1.0, hdr_signal=1.0, lens=Lens.TELE)
        assert eng.apply_bias(0.5, all_high, ctx) == pytest.approx(0.65)
        assert eng.apply_bias(0.95, all_high, ctx) == 1.0

    def test_lens_affinity(self, engine_factory):
        eng = engine_factory(PersonalizationProfile(ultra_wide=-1.0, total_ratings=1))
        ultra = BiasContext(depth_signal=0.5, hdr_signal=0.5, lens=Lens.ULTRA_WIDE)
        assert eng.apply_bias(0.5, features(), ultra) == pytest.approx(0.47)
        assert eng.apply_bias(0.5, features(), MID) == pytest.approx(0.5)

    @pytest.mark.parametrize("base", [0.0, 0.1, 0.5, 0.9, 1.0])
    def test_result_bounded(self, engine_factory, base):
        eng = engine_factory(saturated_profile())
        for value in (0.0, 1.0):
            f = features(exposure=value, sharpness=value, contrast=value, saturation=value, noise=value)
            ctx = BiasContext(depth_signal=value, hdr_signal=value, lens=Lens.TELE)
            result = eng.apply_bias(base, f, ctx)
            assert 0.0 <= result <= 1.0
            assert abs(result - base) <= 0.15 + 1e-9


class TestLearningRate:
    @pytest.mark.parametrize("ratings,expected", [(0, 0.1), (9, 0.1), (10, 0.095), (25, 0.09025)])
    def test_decay_schedule(self, engine_factory, ratings, expected):
        eng = engine_factory(PersonalizationProfile(total_ratings=ratings))
        assert eng.learning_rate() == pytest.approx(expected)

    def test_non_increasing(self, engine):
        rates = []
        for _ in range(60):
            rates.append(engine.learning_rate())
            engine.update(event())
        assert all(b <= a for a, b in zip(rates, rates[1:]))


class TestUpdate:
    def test_error_driven_step(self, engine):
        assert engine.update(event(feedback=1.0, prediction=0.5, sharpness=1.0))
        profile = engine.snapshot()
        assert profile.sharpness == pytest.approx(0.05)
        assert profile.exposure == 0.0
        assert profile.portrait == 0.0
        assert profile.total_ratings == 1
        assert profile.last_updated is not None

    def test_negative_feedback_moves_down(self, engine):
        engine.update(event(feedback=0.0, prediction=0.5, sharpness=1.0))
        assert engine.snapshot().sharpness == pytest.approx(-0.05)

    def test_lens_affinities(self, engine):
        tele = BiasContext(depth_signal=0.5, hdr_signal=0.5, lens=Lens.TELE)
        engine.update(event(context=tele))
        profile = engine.snapshot()
        assert profile.tele == pytest.approx(0.05)
        assert profile.ultra_wide == 0.0

    def test_context_affinities(self, engine):
        ctx = BiasContext(depth_signal=1.0, hdr_signal=0.0, lens=Lens.WIDE)
        engine.update(event(feedback=1.0, prediction=0.0, context=ctx))
        profile = engine.snapshot()
        assert profile.portrait == pytest.approx(0.1)
        assert profile.hdr == pytest.approx(-0.1)

    def test_disabled_ignores_feedback(self, engine):
        engine.set_enabled(False)
        assert engine.update(event(sharpness=1.0)) is False
        assert engine.snapshot().total_ratings == 0

    def test_extreme_feedback_never_exceeds_bound(self, engine):
        for _ in range(500):
            engine.update(event(feedback=1.0, prediction=0.0, sharpness=1.0, noise=0.0))
            profile = engine.snapshot()
            assert -1.0 <= profile.sharpness <= 1.0
            assert -1.0 <= profile.noise <= 1.0
        assert profile.sharpness == pytest.approx(1.0)
        assert profile.noise == pytest.approx(-1.0)

    def test_fifty_positive_events_prefer_similar_frames(self, engine):
        liked = dict(exposure=0.6, sharpness=0.9, contrast=0.7, saturation=0.6, noise=0.2)
        opposite = dict(exposure=0.4, sharpness=0.1, contrast=0.3, saturation=0.4, noise=0.8)
        for _ in range(50):
            engine.update(event(feedback=1.0, prediction=0.5, **liked))

        similar_score = engine.apply_bias(0.5, features(**liked), MID)
        dissimilar_score = engine.apply_bias(0.5, features(**opposite), MID)
        assert similar_score > 0.5 > dissimilar_score
        assert engine.state == EngineState.LEARNING

    def test_fifty_liked_sharp_bright_frames(self, engine):
        for _ in range(50):
            engine.update(event(feedback=1.0, prediction=0.5, sharpness=0.9, exposure=0.8, noise=0.7))

        similar = engine.apply_bias(0.5, features(sharpness=0.9, exposure=0.8, noise=0.7), MID)
        dissimilar = engine.apply_bias(0.5, features(sharpness=0.1), MID)
        assert similar > dissimilar
        assert engine.snapshot().total_ratings == 50

    def test_concurrent_updates_and_reads(self, engine):
        def writer():
            for _ in range(25):
                engine.update(event(sharpness=0.8))

        def reader():
            for _ in range(100):
                assert 0.0 <= engine.apply_bias(0.5, features(sharpness=0.8), MID) <= 1.0

        threads = [threading.Thread(target=writer) for _ in range(4)]
        threads += [threading.Thread(target=reader) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert engine.snapshot().total_ratings == 100


class TestProfileControl:
    def test_initial_state(self, engine):
        assert engine.state == EngineState.NEUTRAL
        assert engine.is_enabled

    def test_reset(self, engine):
        engine.update(event(sharpness=1.0))
        engine.set_enabled(False)
        engine.reset()
        profile = engine.snapshot()
        assert profile.total_ratings == 0
        assert profile.is_neutral
        assert profile.enabled

    def test_update_preference(self, engine):
        engine.update_preference("sharpness", 5.0)
        assert engine.snapshot().sharpness == 1.0
        assert engine.state == EngineState.LEARNING
        with pytest.raises(KeyError):
            engine.update_preference("vibes", 0.5)

    def test_snapshot_is_a_copy(self, engine):
        snap = engine.snapshot()
        snap.sharpness = 0.9
        assert engine.snapshot().sharpness == 0.0

    def test_statistics(self, engine):
        stats = engine.statistics()
        assert stats.summary == "Learning your preferences (0 ratings)"
        engine.update_preference("sharpness", 0.9)
        assert "personalized" in engine.statistics().summary
        engine.set_enabled(False)
        assert engine.statistics().summary == "Personalization disabled"
        assert "Learning rate: 0.1000" in engine.statistics().detailed_summary


class TestCallbacksAndPersistence:
    def test_on_change_receives_snapshot(self, memory_store):
        callback = Mock()
        with PersonalizationEngine(store=memory_store, on_change=callback) as eng:
            eng.update(event(sharpness=1.0))
        callback.assert_called_once()
        profile = callback.call_args[0][0]
        assert isinstance(profile, PersonalizationProfile)
        assert profile.total_ratings == 1

    def test_failing_callback_does_not_break_update(self, engine):
        engine.on_change(Mock(side_effect=RuntimeError("ui gone")))
        assert engine.update(event())
        assert engine.snapshot().total_ratings == 1

    def test_saves_are_flushed(self, engine, memory_store):
        for _ in range(3):
            engine.update(event(sharpness=1.0))
        engine.flush()
        assert memory_store.save_count == 3
        assert memory_store.load().total_ratings == 3

    def test_loads_existing_profile(self, engine_factory):
        eng = engine_factory(PersonalizationProfile(sharpness=0.4, total_ratings=12))
        assert eng.snapshot().sharpness == 0.4
        assert eng.learning_rate() == pytest.approx(0.095)

    def test_load_failure_starts_neutral(self):
        store = Mock()
        store.load.side_effect = PersistenceLoadFailed("corrupt")
        with PersonalizationEngine(store=store) as eng:
            assert eng.snapshot().is_neutral
            assert eng.snapshot().total_ratings == 0

    def test_save_failure_is_logged(self):
        store = InMemoryProfileStore()
        store.save = Mock(side_effect=OSError("disk full"))
        with PersonalizationEngine(store=store) as eng:
            assert eng.update(event())
            eng.flush()
            assert eng.snapshot().total_ratings == 1

    def test_json_store_survives_restart(self, tmp_path):
        path = tmp_path / "profile" / "personalization.json"
        config = PersonalizationConfig(profile_path=path)
        with PersonalizationEngine(store=JsonProfileStore(path), config=config) as eng:
            eng.update(event(sharpness=1.0))
        with PersonalizationEngine(store=JsonProfileStore(path), config=config) as eng:
            profile = eng.snapshot()
        assert profile.total_ratings == 1
        assert profile.sharpness == pytest.approx(0.05)

    def test_changes_after_close_not_persisted(self, memory_store):
        eng = PersonalizationEngine(store=memory_store)
        eng.close()
        eng.update(event())
        assert memory_store.save_count == 0


class TestSignals:
    @pytest.mark.parametrize("luma,iso,expected", [
        (0.8, 100, 0.8),
        (0.2, 100, 0.5),
        (0.5, 1000, 0.5),
        (0.5, 100, 0.2),
    ])
    def test_hdr_signal(self, metadata_factory, luma, iso, expected):
        assert hdr_signal(metadata_factory(mean_luma=luma, iso=iso)) == expected

    def test_context_without_depth(self, item_factory):
        ctx = BiasContext.from_item(item_factory(depth_quality=0.9))
        assert ctx.depth_signal == 0.0
        assert ctx.lens == Lens.WIDE

    def test_context_from_metadata_depth(self, item_factory):
        ctx = BiasContext.from_item(item_factory(has_depth=True, depth_quality=0.7))
        assert ctx.depth_signal == pytest.approx(0.7)

    def test_measured_depth_overrides_metadata(self, item_factory):
        ctx = BiasContext.from_item(item_factory(has_depth=True, depth_quality=0.7), depth_quality=0.2)
        assert ctx.depth_signal == pytest.approx(0.2)

    def test_hdr_scene_lifts_bracketed_frames(self, item_factory):
        item = item_factory(exposure_bias=-1.0)
        assert BiasContext.from_item(item).hdr_signal == 0.2
        assert BiasContext.from_item(item, SceneHints(wants_hdr=True)).hdr_signal == 0.8

    def test_feedback_event_from_bool(self):
        assert event(feedback=True).feedback == 1.0
        assert not event(feedback=False).is_positive
        assert event(feedback=3.0).feedback == 1.0
