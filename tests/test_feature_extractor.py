"""Tests for pixel feature extraction."""

import time

import cv2
import numpy as np
import pytest
from PIL import Image

import feature_extractor
from config_loader import FeatureConfig
from feature_extractor import FeatureExtractor, ImageFeatures
from frame_models import PixelBuffer
from pipeline_robustness import InvalidImageBuffer


@pytest.fixture
def extractor():
    return FeatureExtractor()


def _in_unit_range(features: ImageFeatures) -> bool:
    return all(0.0 <= v <= 1.0 for v in features.as_dict().values())


class TestFlatImages:
    def test_flat_gray(self, extractor, flat_image):
        f = extractor.extract(flat_image)
        assert f.exposure == pytest.approx(128 / 255, abs=1e-3)
        assert f.contrast == pytest.approx(0.0, abs=1e-6)
        assert f.saturation == pytest.approx(0.0, abs=1e-6)
        assert f.sharpness == pytest.approx(0.0, abs=1e-6)
        assert f.noise == pytest.approx(0.0, abs=1e-6)

    def test_black_image(self, extractor):
        f = extractor.extract(np.zeros((32, 32, 3), dtype=np.uint8))
        assert f.exposure == 0.0
        assert f.saturation == 0.0

    def test_pure_red_is_fully_saturated(self, extractor):
        img = np.zeros((32, 32, 3), dtype=np.uint8)
        img[:, :, 0] = 255
        f = extractor.extract(img)
        assert f.saturation == pytest.approx(1.0)
        assert f.exposure == pytest.approx(0.2126, abs=1e-3)


class TestDetail:
    def test_checkerboard_is_sharp_and_noisy(self, extractor, sharp_image):
        f = extractor.extract(sharp_image)
        assert f.sharpness == pytest.approx(1.0)
        assert f.noise == pytest.approx(1.0)
        assert f.contrast == pytest.approx(1.0)
        assert f.exposure == pytest.approx(0.5, abs=1e-3)

    def test_sharp_beats_blurred(self, extractor, sharp_image):
        blurred = cv2.GaussianBlur(sharp_image, (9, 9), 3.0)
        assert extractor.extract(sharp_image).sharpness > extractor.extract(blurred).sharpness

    def test_random_noise_registers(self, extractor):
        rng = np.random.default_rng(0)
        base = np.full((64, 64), 0.5, dtype=np.float32)
        noisy = np.clip(base + rng.normal(0, 0.1, base.shape), 0, 1).astype(np.float32)
        assert extractor.extract(noisy).noise > extractor.extract(base).noise

    def test_float32_grayscale_checkerboard(self, extractor, sharp_image):
        luma = sharp_image[:, :, 0].astype(np.float32) / 255.0
        f = extractor.extract_strict(luma)
        assert f.sharpness == pytest.approx(1.0)
        assert f.noise == pytest.approx(1.0)


class TestInputs:
    def test_float_matches_uint8(self, extractor, sharp_image):
        a = extractor.extract(sharp_image)
        b = extractor.extract(sharp_image.astype(np.float32) / 255.0)
        for key, value in a.as_dict().items():
            assert b.as_dict()[key] == pytest.approx(value, abs=1e-4)

    def test_grayscale_saturation_is_neutral(self, extractor):
        f = extractor.extract(np.full((32, 32), 100, dtype=np.uint8))
        assert f.saturation == 0.5

    def test_rgba_alpha_dropped(self, extractor, flat_image):
        rgba = np.concatenate([flat_image, np.zeros((64, 64, 1), dtype=np.uint8)], axis=2)
        assert extractor.extract(rgba) == extractor.extract(flat_image)

    def test_pil_image(self, extractor, sharp_image):
        f = extractor.extract(Image.fromarray(sharp_image))
        assert f.sharpness == pytest.approx(1.0)

    def test_pixel_buffer_released_after_extract(self, extractor, flat_image):
        buffer = PixelBuffer(flat_image)
        extractor.extract(buffer)
        assert not buffer.is_leased
        assert buffer.data.flags.writeable

    def test_nan_pixels_stay_finite(self, extractor):
        img = np.full((32, 32, 3), np.nan, dtype=np.float32)
        f = extractor.extract(img)
        assert _in_unit_range(f)


class TestDegenerateInputs:
    def test_empty_array_is_neutral(self, extractor):
        assert extractor.extract(np.zeros((0, 0, 3), dtype=np.uint8)) == ImageFeatures.neutral()

    def test_unsupported_type_is_neutral(self, extractor):
        assert extractor.extract("not an image") == ImageFeatures.neutral()

    def test_strict_raises(self, extractor):
        with pytest.raises(InvalidImageBuffer):
            extractor.extract_strict(np.zeros((4, 4, 5), dtype=np.uint8))

    def test_tiny_image_neutral_detail(self, extractor):
        f = extractor.extract(np.zeros((2, 2, 3), dtype=np.uint8))
        assert f.sharpness == 0.5
        assert f.noise == 0.5

    def test_small_image_noise_neutral(self, extractor):
        f = extractor.extract(np.zeros((5, 5, 3), dtype=np.uint8))
        assert f.sharpness == 0.0
        assert f.noise == 0.5

    def test_opencv_failure_is_neutral(self, extractor, sharp_image, monkeypatch):
        def reject(*args, **kwargs):
            raise cv2.error("unsupported format")

        monkeypatch.setattr(feature_extractor.cv2, "Laplacian", reject)
        assert extractor.extract(sharp_image) == ImageFeatures.neutral()
        with pytest.raises(InvalidImageBuffer):
            extractor.extract_strict(sharp_image)


class TestSampling:
    def test_sample_respects_budget(self, extractor):
        sample = extractor._sample(np.zeros((1000, 1500, 3), dtype=np.float32))
        assert max(sample.shape[:2]) <= 64

    def test_custom_budget(self):
        extractor = FeatureExtractor(FeatureConfig(sample_budget=16))
        sample = extractor._sample(np.zeros((100, 100), dtype=np.float32))
        assert sample.shape == (15, 15)

    @pytest.mark.parametrize("seed", [1, 2, 3, 4])
    def test_random_images_in_range(self, extractor, seed):
        rng = np.random.default_rng(seed)
        img = rng.integers(0, 256, size=(97, 131, 3), dtype=np.uint8)
        assert _in_unit_range(extractor.extract(img))


class TestFullResolution:
    @pytest.fixture(scope="class")
    def twelve_megapixel(self):
        rng = np.random.default_rng(12)
        return rng.integers(0, 256, size=(3024, 4032, 3), dtype=np.uint8)

    def test_only_sample_is_converted(self, extractor, twelve_megapixel, monkeypatch):
        converted = []
        real = feature_extractor.image_to_array

        def spy(image, sample_budget=None):
            out = real(image, sample_budget=sample_budget)
            converted.append(out.shape)
            return out

        monkeypatch.setattr(feature_extractor, "image_to_array", spy)
        extractor.extract(twelve_megapixel)
        assert converted == [(48, 64, 3)]

    def test_matches_presampled_frame(self, extractor, twelve_megapixel):
        presampled = np.ascontiguousarray(twelve_megapixel[::63, ::63])
        assert extractor.extract(twelve_megapixel) == extractor.extract(presampled)

    def test_extraction_cost_independent_of_resolution(self, extractor, twelve_megapixel):
        timings = []
        for _ in range(3):
            start = time.perf_counter()
            extractor.extract(twelve_megapixel)
            timings.append(time.perf_counter() - start)
        assert min(timings) < 0.05

    def test_pixel_buffer_frame(self, extractor, twelve_megapixel):
        buffer = PixelBuffer(twelve_megapixel)
        assert _in_unit_range(extractor.extract(buffer))
        assert not buffer.is_leased
