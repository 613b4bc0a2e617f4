"""Shared fixtures for BurstPick tests."""

from datetime import datetime

import numpy as np
import pytest

from feature_extractor import ImageFeatures
from frame_models import FrameBundleItem, FrameMetadata, Lens, PixelBuffer
from personalization_engine import PersonalizationEngine
from personalization_store import InMemoryProfileStore, PersonalizationProfile


def checkerboard(size: int = 64) -> np.ndarray:
    """Per-pixel 0/255 checkerboard (maximal detail), RGB uint8."""
    yy, xx = np.indices((size, size))
    board = ((yy + xx) % 2 * 255).astype(np.uint8)
    return np.stack([board] * 3, axis=-1)


def flat_gray(size: int = 64, value: int = 128) -> np.ndarray:
    return np.full((size, size, 3), value, dtype=np.uint8)


def make_metadata(**overrides) -> FrameMetadata:
    fields = dict(
        lens=Lens.WIDE,
        exposure_bias=0.0,
        iso=100.0,
        shutter_ms=10.0,
        mean_luma=0.5,
        motion_score=0.1,
        has_depth=False,
        depth_quality=0.0,
        timestamp=datetime(2025, 1, 1, 12, 0, 0),
    )
    fields.update(overrides)
    return FrameMetadata(**fields)


def make_item(pixels=None, depth=None, matte=None, **meta_overrides) -> FrameBundleItem:
    if pixels is None:
        pixels = flat_gray()
    return FrameBundleItem(
        image=PixelBuffer(pixels),
        metadata=make_metadata(**meta_overrides),
        depth=depth,
        matte=matte,
    )


def features(**overrides) -> ImageFeatures:
    values = ImageFeatures.neutral().as_dict()
    values.update(overrides)
    return ImageFeatures(**values)


class ConstantPredictor:
    """Predictor returning a fixed score."""

    def __init__(self, value: float = 0.5):
        self.value = value
        self.calls = 0

    def predict(self, image) -> float:
        self.calls += 1
        return self.value


@pytest.fixture
def sharp_image():
    return checkerboard()


@pytest.fixture
def flat_image():
    return flat_gray()


@pytest.fixture
def item_factory():
    return make_item


@pytest.fixture
def metadata_factory():
    return make_metadata


@pytest.fixture
def features_factory():
    return features


@pytest.fixture
def memory_store():
    return InMemoryProfileStore()


@pytest.fixture
def engine(memory_store):
    eng = PersonalizationEngine(store=memory_store)
    yield eng
    eng.close()


@pytest.fixture
def engine_factory():
    """Build engines from a seeded profile; closes them at teardown."""
    created = []

    def _make(profile: PersonalizationProfile = None, **kwargs):
        store = kwargs.pop("store", None) or InMemoryProfileStore(profile)
        eng = PersonalizationEngine(store=store, **kwargs)
        created.append(eng)
        return eng

    yield _make
    for eng in created:
        eng.close()
