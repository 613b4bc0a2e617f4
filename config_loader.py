#!/usr/bin/env python3
"""
BurstPick - Configuration Loader

Loads configuration from config.yaml with environment variable overrides.
Provides type-safe access to configuration values.
"""

import os
import re
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger("burstpick")


@dataclass
class FeatureConfig:
    """Pixel feature extraction configuration."""
    sample_budget: int = 64        # Max samples along the longer side
    contrast_scale: float = 4.0    # std(luma) multiplier
    sharpness_scale: float = 0.4   # Laplacian magnitude normalizer
    noise_scale: float = 0.015     # Local variance normalizer
    noise_window: int = 7


@dataclass
class DepthConfig:
    """Depth quality assessment configuration."""
    stride: int = 8
    variance_scale: float = 100.0
    valid_weight: float = 0.6
    variance_weight: float = 0.4
    min_quality: float = 0.1
    smoothing_threshold: float = 0.7  # AI mask is blurred at or below this


@dataclass
class FallbackWeights:
    """Heuristic fallback weights (normalized to sum 1 on use)."""
    sharpness: float = 0.4
    exposure: float = 0.4
    noise: float = 0.2


@dataclass
class QualityConfig:
    """Quality scoring configuration."""
    neutral_score: float = 0.5
    weights: FallbackWeights = field(default_factory=FallbackWeights)


@dataclass
class PersonalizationConfig:
    """Online preference learning configuration."""
    base_learning_rate: float = 0.1
    decay_factor: float = 0.95
    decay_interval: int = 10
    bias_strength: float = 0.15
    max_bias: float = 0.15
    weight_bound: float = 1.0
    profile_path: Path = Path("./profile/personalization.json")


@dataclass
class SelectorConfig:
    """Frame selector configuration."""
    max_workers: int = 4
    frame_budget_ms: float = 50.0


@dataclass
class ExportConfig:
    """Feedback export configuration."""
    export_dir: Path = Path("./feedback_export")
    csv_name: str = "train.csv"
    manifest_name: str = "manifest.json"


class ConfigLoader:
    """
    Load configuration from YAML with environment variable overrides.

    Environment variables use the format: BURSTPICK_<SECTION>_<KEY>
    Examples:
        BURSTPICK_FEATURES_SAMPLE_BUDGET=128
        BURSTPICK_PERSONALIZATION_MAX_BIAS=0.1
        BURSTPICK_SELECTOR_MAX_WORKERS=8
    """

    ENV_PREFIX = "BURSTPICK_"

    def __init__(self, config_path: Path = None):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to config.yaml file. Defaults to ./config.yaml
        """
        self.config_path = Path(config_path) if config_path else Path("./config.yaml")
        self.raw_config: dict = {}
        self._load()

    def _load(self) -> None:
        """Load configuration from YAML file."""
        if self.config_path.exists():
            with open(self.config_path) as f:
                self.raw_config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {self.config_path}")
        else:
            logger.warning(f"Config file not found: {self.config_path}, using defaults")
            self.raw_config = {}

        self._apply_env_overrides()
        self.raw_config = self._expand_env_vars(self.raw_config)

    def _apply_env_overrides(self) -> None:
        """Override configuration values from BURSTPICK_* environment variables."""
        for key, value in os.environ.items():
            if not key.startswith(self.ENV_PREFIX):
                continue

            # BURSTPICK_SECTION_KEY -> section.key
            parts = key[len(self.ENV_PREFIX):].lower().split("_")
            if len(parts) < 2:
                continue

            section = parts[0]
            config_key = "_".join(parts[1:])
            typed_value = self._parse_value(value)

            if section not in self.raw_config or self.raw_config[section] is None:
                self.raw_config[section] = {}

            if isinstance(self.raw_config[section], dict):
                self.raw_config[section][config_key] = typed_value
                logger.debug(f"Config override: {section}.{config_key} = {typed_value}")

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate Python type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def _expand_env_vars(self, obj: Any) -> Any:
        """Expand ${VAR} references in configuration values."""
        if isinstance(obj, str):
            for var_name in re.findall(r'\$\{([^}]+)\}', obj):
                obj = obj.replace(f"${{{var_name}}}", os.environ.get(var_name, ""))
            return obj
        elif isinstance(obj, dict):
            return {k: self._expand_env_vars(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._expand_env_vars(item) for item in obj]
        return obj

    def get(self, path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Args:
            path: Dot-separated path (e.g., 'depth.stride')
            default: Default value if path not found

        Returns:
            Configuration value or default

        Examples:
            config.get('features.sample_budget')  # 64
            config.get('quality.weights.sharpness')  # 0.4
        """
        value = self.raw_config
        for part in path.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def _section(self, name: str) -> dict:
        section = self.raw_config.get(name) or {}
        return section if isinstance(section, dict) else {}

    def get_feature_config(self) -> FeatureConfig:
        """Get feature extraction configuration as dataclass."""
        features = self._section("features")
        defaults = FeatureConfig()

        return FeatureConfig(
            sample_budget=int(features.get("sample_budget", defaults.sample_budget)),
            contrast_scale=float(features.get("contrast_scale", defaults.contrast_scale)),
            sharpness_scale=float(features.get("sharpness_scale", defaults.sharpness_scale)),
            noise_scale=float(features.get("noise_scale", defaults.noise_scale)),
            noise_window=int(features.get("noise_window", defaults.noise_window)),
        )

    def get_depth_config(self) -> DepthConfig:
        """Get depth assessment configuration as dataclass."""
        depth = self._section("depth")
        defaults = DepthConfig()

        return DepthConfig(
            stride=int(depth.get("stride", defaults.stride)),
            variance_scale=float(depth.get("variance_scale", defaults.variance_scale)),
            valid_weight=float(depth.get("valid_weight", defaults.valid_weight)),
            variance_weight=float(depth.get("variance_weight", defaults.variance_weight)),
            min_quality=float(depth.get("min_quality", defaults.min_quality)),
            smoothing_threshold=float(
                depth.get("smoothing_threshold", defaults.smoothing_threshold)
            ),
        )

    def get_quality_config(self) -> QualityConfig:
        """Get quality scoring configuration as dataclass."""
        quality = self._section("quality")
        weights_dict = quality.get("weights") or {}

        return QualityConfig(
            neutral_score=float(quality.get("neutral_score", 0.5)),
            weights=FallbackWeights(
                sharpness=float(weights_dict.get("sharpness", 0.4)),
                exposure=float(weights_dict.get("exposure", 0.4)),
                noise=float(weights_dict.get("noise", 0.2)),
            )
        )

    def get_personalization_config(self) -> PersonalizationConfig:
        """Get personalization configuration as dataclass."""
        pers = self._section("personalization")
        defaults = PersonalizationConfig()

        return PersonalizationConfig(
            base_learning_rate=float(pers.get("base_learning_rate", defaults.base_learning_rate)),
            decay_factor=float(pers.get("decay_factor", defaults.decay_factor)),
            decay_interval=int(pers.get("decay_interval", defaults.decay_interval)),
            bias_strength=float(pers.get("bias_strength", defaults.bias_strength)),
            max_bias=float(pers.get("max_bias", defaults.max_bias)),
            weight_bound=float(pers.get("weight_bound", defaults.weight_bound)),
            profile_path=Path(pers.get("profile_path", defaults.profile_path)),
        )

    def get_selector_config(self) -> SelectorConfig:
        """Get frame selector configuration as dataclass."""
        selector = self._section("selector")

        return SelectorConfig(
            max_workers=int(selector.get("max_workers", 4)),
            frame_budget_ms=float(selector.get("frame_budget_ms", 50.0)),
        )

    def get_export_config(self) -> ExportConfig:
        """Get feedback export configuration as dataclass."""
        export = self._section("export")
        defaults = ExportConfig()

        return ExportConfig(
            export_dir=Path(export.get("dir", defaults.export_dir)),
            csv_name=export.get("csv_name", defaults.csv_name),
            manifest_name=export.get("manifest_name", defaults.manifest_name),
        )

    def get_logging_config(self) -> dict:
        """Get logging configuration."""
        return self.raw_config.get("logging") or {
            "dir": "./logs",
            "max_days": 30,
        }


# Global config instance (lazy loaded, CLI only)
_config: Optional[ConfigLoader] = None


def get_config() -> ConfigLoader:
    """Get global configuration instance."""
    global _config
    if _config is None:
        _config = ConfigLoader()
    return _config


def reload_config(config_path: Path = None) -> ConfigLoader:
    """Reload configuration from file."""
    global _config
    _config = ConfigLoader(config_path)
    return _config


if __name__ == "__main__":
    import json

    config = ConfigLoader()

    print("Configuration loaded successfully!\n")
    print(f"Sample budget: {config.get('features.sample_budget')}")
    print(f"Depth stride: {config.get('depth.stride')}")
    print(f"Max bias: {config.get('personalization.max_bias')}")

    print("\n--- Full Raw Config ---")
    print(json.dumps(config.raw_config, indent=2, default=str))
