#!/usr/bin/env python3
"""
BurstPick - Personalization Profile & Persistence

The learned preference profile and the stores that keep it between runs:
- JsonProfileStore: local JSON file, atomic writes, schema migration
- InMemoryProfileStore: process-local store for tests and ephemeral use
"""

import copy
import json
import logging
import threading
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Protocol

from pipeline_robustness import AtomicFileWriter, PersistenceLoadFailed

logger = logging.getLogger("burstpick.personalization")

SCHEMA_VERSION = 1

FEATURE_NAMES = ("exposure", "sharpness", "contrast", "saturation", "noise")
AFFINITY_NAMES = ("portrait", "hdr", "tele", "ultra_wide")
PREFERENCE_NAMES = FEATURE_NAMES + AFFINITY_NAMES

# Weights below this magnitude count as no preference
NEUTRAL_THRESHOLD = 0.05


@dataclass
class PersonalizationProfile:
    """
    Learned user preferences.

    Feature weights and affinities live in [-1, 1]; 0 means no preference.
    """
    exposure: float = 0.0
    sharpness: float = 0.0
    contrast: float = 0.0
    saturation: float = 0.0
    noise: float = 0.0
    portrait: float = 0.0
    hdr: float = 0.0
    tele: float = 0.0
    ultra_wide: float = 0.0
    total_ratings: int = 0
    last_updated: Optional[datetime] = None
    enabled: bool = True
    version: int = SCHEMA_VERSION

    def get(self, name: str) -> float:
        if name not in PREFERENCE_NAMES:
            raise KeyError(f"Unknown preference: {name}")
        return getattr(self, name)

    def set(self, name: str, value: float, bound: float = 1.0) -> None:
        if name not in PREFERENCE_NAMES:
            raise KeyError(f"Unknown preference: {name}")
        setattr(self, name, max(-bound, min(bound, float(value))))

    def copy(self) -> "PersonalizationProfile":
        return copy.copy(self)

    def clear_weights(self) -> None:
        for name in PREFERENCE_NAMES:
            setattr(self, name, 0.0)

    @property
    def weights(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in PREFERENCE_NAMES}

    @property
    def is_neutral(self) -> bool:
        return all(abs(v) < NEUTRAL_THRESHOLD for v in self.weights.values())

    @property
    def preference_strength(self) -> float:
        """Mean absolute weight, 0 (no preference) to 1."""
        values = self.weights.values()
        return min(1.0, sum(abs(v) for v in values) / len(PREFERENCE_NAMES))

    @property
    def summary(self) -> str:
        parts = []
        if abs(self.sharpness) > 0.1:
            parts.append("Prefers sharp" if self.sharpness > 0 else "Tolerates soft")
        if abs(self.exposure) > 0.1:
            parts.append("Bright" if self.exposure > 0 else "Moody")
        if abs(self.contrast) > 0.1:
            parts.append("Punchy" if self.contrast > 0 else "Flat")
        if abs(self.saturation) > 0.1:
            parts.append("Vivid" if self.saturation > 0 else "Muted")
        if abs(self.noise) > 0.1:
            parts.append("Grain tolerant" if self.noise > 0 else "Clean")
        if abs(self.portrait) > 0.1:
            parts.append("Likes portraits" if self.portrait > 0 else "Avoids portraits")
        if abs(self.hdr) > 0.1:
            parts.append("Likes HDR" if self.hdr > 0 else "Natural range")
        if abs(self.tele) > 0.1:
            parts.append("Likes telephoto" if self.tele > 0 else "Avoids telephoto")
        if abs(self.ultra_wide) > 0.1:
            parts.append("Likes ultra wide" if self.ultra_wide > 0 else "Avoids ultra wide")
        return ", ".join(parts) if parts else "No strong preferences"

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], bound: float = 1.0) -> "PersonalizationProfile":
        """Build a profile from stored data, migrating older layouts."""
        data = migrate_profile_data(data)
        profile = cls()
        for name in PREFERENCE_NAMES:
            if name in data and data[name] is not None:
                profile.set(name, float(data[name]), bound)
        profile.total_ratings = max(0, int(data.get("total_ratings", 0)))
        profile.enabled = bool(data.get("enabled", True))
        last = data.get("last_updated")
        profile.last_updated = datetime.fromisoformat(last) if last else None
        profile.version = SCHEMA_VERSION
        return profile


# Legacy layout: camelCase keys, noise stored as tolerance in [0, 1]
_LEGACY_KEYS = {
    "sharpnessWeight": "sharpness",
    "exposureWeight": "exposure",
    "portraitAffinity": "portrait",
    "hdrAffinity": "hdr",
    "teleAffinity": "tele",
    "ultraWideAffinity": "ultra_wide",
    "totalRatings": "total_ratings",
    "lastUpdated": "last_updated",
    "isEnabled": "enabled",
}


def migrate_profile_data(data: dict[str, Any]) -> dict[str, Any]:
    """
    Upgrade stored profile data to the current schema version.

    Legacy camelCase keys are migrated whenever they are present, whatever
    the stored version says. Current keys win over legacy ones.
    """
    if not isinstance(data, dict):
        raise ValueError(f"Profile data must be an object, got {type(data).__name__}")

    version = int(data.get("version", 0))
    if version > SCHEMA_VERSION:
        raise ValueError(f"Profile schema version {version} is newer than supported {SCHEMA_VERSION}")

    legacy = [key for key in data if key in _LEGACY_KEYS or key == "noiseTolerance"]
    if version == 0 or legacy:
        if version > 0:
            logger.warning(f"Profile tagged version {version} has legacy keys {sorted(legacy)}; migrating")
        migrated = {key: value for key, value in data.items() if key not in legacy}
        for key in legacy:
            if key == "noiseTolerance":
                migrated.setdefault("noise", (float(data[key]) - 0.5) * 2.0)
            else:
                migrated.setdefault(_LEGACY_KEYS[key], data[key])
        migrated["version"] = SCHEMA_VERSION
        logger.info(f"Migrated personalization profile from schema {version} to {SCHEMA_VERSION}")
        data = migrated

    return data


# =============================================================================
# STORES
# =============================================================================

class ProfileStore(Protocol):
    """Persistence boundary for the personalization profile."""

    def load(self) -> Optional[PersonalizationProfile]:
        ...

    def save(self, profile: PersonalizationProfile) -> None:
        ...

    def clear(self) -> None:
        ...


class JsonProfileStore:
    """
    Profile stored as a JSON file.

    Writes go through AtomicFileWriter so a crash mid-save leaves the
    previous file intact.
    """

    def __init__(self, path: Path, weight_bound: float = 1.0):
        self.path = Path(path)
        self.weight_bound = weight_bound
        self.writer = AtomicFileWriter()

    def load(self) -> Optional[PersonalizationProfile]:
        """
        Load the stored profile.

        Returns:
            The profile, or None if nothing has been saved yet.

        Raises:
            PersistenceLoadFailed: If the file exists but cannot be decoded.
        """
        if not self.path.exists():
            return None

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            profile = PersonalizationProfile.from_dict(data, self.weight_bound)
        except (OSError, ValueError, TypeError) as e:
            raise PersistenceLoadFailed(f"Cannot load profile from {self.path}: {e}") from e

        logger.debug(f"Loaded profile from {self.path} ({profile.total_ratings} ratings)")
        return profile

    def save(self, profile: PersonalizationProfile) -> None:
        self.writer.atomic_json_write(self.path, profile.to_dict())
        logger.debug(f"Saved profile to {self.path}")

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Cleared profile at {self.path}")


class InMemoryProfileStore:
    """Keeps the profile in memory; counts saves for inspection."""

    def __init__(self, profile: Optional[PersonalizationProfile] = None):
        self._lock = threading.Lock()
        self._profile = profile.copy() if profile else None
        self.save_count = 0

    def load(self) -> Optional[PersonalizationProfile]:
        with self._lock:
            return self._profile.copy() if self._profile else None

    def save(self, profile: PersonalizationProfile) -> None:
        with self._lock:
            self._profile = profile.copy()
            self.save_count += 1

    def clear(self) -> None:
        with self._lock:
            self._profile = None
