#!/usr/bin/env python3
"""
BurstPick - Robustness & Recovery Module

Shared infrastructure for the frame selection core:
- Error taxonomy (every error here is recoverable locally)
- Error categorization and structured error records
- Read/write lock for shared profile state
- Atomic file operations
- Structured logging
- Graceful degradation tracking
"""

import json
import logging
import os
import tempfile
import threading
import traceback
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, IO, Iterator, Optional

logger = logging.getLogger("burstpick")

# =============================================================================
# ERROR TAXONOMY
# =============================================================================


class BurstPickError(Exception):
    """Base class for all errors raised by the frame selection core."""


class NoDepthData(BurstPickError):
    """No depth buffer was supplied, or the buffer is empty."""


class LowDepthQuality(BurstPickError):
    """Depth buffer exists but its quality is below the usable threshold."""

    def __init__(self, quality: float, threshold: float):
        super().__init__(f"Depth quality {quality:.3f} below threshold {threshold:.3f}")
        self.quality = quality
        self.threshold = threshold


class PredictorError(BurstPickError):
    """The ML quality predictor failed to produce a score."""


class PredictorUnavailable(PredictorError):
    """The ML quality predictor is not installed or could not be loaded."""


class InvalidImageBuffer(BurstPickError):
    """Image buffer is empty, corrupt, or has an unsupported layout."""


class PersistenceLoadFailed(BurstPickError):
    """Stored personalization profile could not be read or decoded."""


class BundleFinalizedError(BurstPickError):
    """A frame bundle was mutated after selection finished."""


# =============================================================================
# ERROR CATEGORIES
# =============================================================================

class ErrorCategory(Enum):
    """Classification of errors by severity and recoverability."""
    FATAL = "fatal"           # Cannot continue
    RECOVERABLE = "recoverable"  # Degrade and continue
    WARNING = "warning"       # Non-critical, log and continue


@dataclass
class PipelineError:
    """Structured error representation."""
    category: ErrorCategory
    message: str
    stage: str
    frame_index: Optional[int] = None
    error_type: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    traceback_str: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "stage": self.stage,
            "frame_index": self.frame_index,
            "error_type": self.error_type,
            "timestamp": self.timestamp,
            "traceback": self.traceback_str
        }

    @classmethod
    def from_exception(
        cls,
        e: Exception,
        stage: str,
        category: ErrorCategory = ErrorCategory.RECOVERABLE,
        frame_index: Optional[int] = None
    ) -> "PipelineError":
        return cls(
            category=category,
            message=str(e),
            stage=stage,
            frame_index=frame_index,
            error_type=type(e).__name__,
            traceback_str=traceback.format_exc()
        )


# =============================================================================
# READ/WRITE LOCK
# =============================================================================

class ReadWriteLock:
    """
    Many-reader / single-writer lock.

    Readers share access; a writer waits for active readers to drain and
    blocks new readers while it is waiting, so updates are not starved by a
    steady stream of scoring calls.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


# =============================================================================
# ATOMIC FILE OPERATIONS
# =============================================================================

class AtomicFileWriter:
    """
    Provides atomic file write operations.

    Uses temp file + atomic rename pattern to prevent corruption
    if the process crashes during write.
    """

    @contextmanager
    def atomic_write(
        self,
        target: Path,
        mode: str = "w",
        encoding: str = "utf-8"
    ) -> Iterator[IO]:
        """
        Context manager for atomic file writes.

        Writes to a temp file, then atomically renames to target
        on successful completion.

        Args:
            target: Target file path.
            mode: File mode ('w' for text, 'wb' for binary).
            encoding: Text encoding (ignored for binary mode).

        Yields:
            File-like object to write to.
        """
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        # Temp file in the same directory so the rename stays on one filesystem
        fd, temp_path = tempfile.mkstemp(
            dir=target.parent,
            prefix=f".{target.name}.",
            suffix=".tmp"
        )
        temp_path = Path(temp_path)

        if "b" in mode:
            f = os.fdopen(fd, mode)
        else:
            f = os.fdopen(fd, mode, encoding=encoding)

        try:
            yield f
            f.flush()
            os.fsync(f.fileno())
            f.close()
            os.replace(temp_path, target)
        except BaseException:
            if not f.closed:
                f.close()
            if temp_path.exists():
                temp_path.unlink()
            raise

    def atomic_json_write(self, target: Path, data: Any, indent: int = 2) -> None:
        """Atomically write JSON data to a file."""
        with self.atomic_write(target) as f:
            json.dump(data, f, indent=indent, default=str)


# =============================================================================
# STRUCTURED LOGGING
# =============================================================================

DEFAULT_STAGES = [
    "features", "depth", "scoring", "personalization", "scene", "selector", "main",
]


def setup_structured_logging(
    logs_dir: Path = Path("./logs"),
    max_days: int = 30,
    stages: Optional[list[str]] = None
) -> dict[str, logging.Logger]:
    """
    Create structured logging with separate files per stage.

    Args:
        logs_dir: Directory for log files.
        max_days: Number of days to keep logs.
        stages: List of stages to create loggers for.

    Returns:
        Dictionary mapping stage names to loggers.
    """
    if stages is None:
        stages = DEFAULT_STAGES

    logs_dir = Path(logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    _rotate_logs(logs_dir, max_days)

    loggers = {}
    timestamp = datetime.now().strftime("%Y%m%d")

    for stage in stages:
        stage_logger = logging.getLogger(f"burstpick.{stage}")
        stage_logger.setLevel(logging.DEBUG)
        stage_logger.handlers.clear()

        log_file = logs_dir / f"{stage}_{timestamp}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)

        # JSON formatter for machine parsing
        json_formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"stage": "' + stage + '", "message": "%(message)s"}'
        )
        file_handler.setFormatter(json_formatter)

        stage_logger.addHandler(file_handler)
        loggers[stage] = stage_logger

    return loggers


def _rotate_logs(logs_dir: Path, max_days: int) -> None:
    """Remove log files older than max_days."""
    cutoff = datetime.now() - timedelta(days=max_days)

    for log_file in logs_dir.glob("*.log"):
        # Format: stage_YYYYMMDD.log
        date_str = log_file.stem.rsplit("_", 1)[-1]
        try:
            file_date = datetime.strptime(date_str, "%Y%m%d")
        except ValueError:
            continue

        if file_date < cutoff:
            log_file.unlink()
            logger.debug(f"Rotated old log: {log_file}")


# =============================================================================
# GRACEFUL DEGRADATION
# =============================================================================

class GracefulDegradation:
    """
    Records recoverable failures while a bundle is being scored.

    Nothing in the selection core aborts on these; this only keeps count
    so callers can see how much of a run fell back to defaults. Only the
    most recent `max_errors` entries are retained; counts cover every
    failure since the last clear().
    """

    def __init__(self, max_errors: int = 100):
        self._lock = threading.Lock()
        self.errors: deque = deque(maxlen=max_errors)
        self.stage_counts: Counter = Counter()
        self.type_counts: Counter = Counter()

    def record(
        self,
        e: Exception,
        stage: str,
        frame_index: Optional[int] = None,
        category: ErrorCategory = ErrorCategory.RECOVERABLE
    ) -> PipelineError:
        """Record a recoverable failure for a stage."""
        error = PipelineError.from_exception(e, stage, category, frame_index)
        with self._lock:
            self.errors.append(error)
            self.stage_counts[stage] += 1
            self.type_counts[error.error_type] += 1
        logger.debug(f"Degraded [{stage}] frame={frame_index}: {error.error_type}: {e}")
        return error

    def failures_for(self, stage: str) -> int:
        with self._lock:
            return self.stage_counts.get(stage, 0)

    def has_failures(self) -> bool:
        with self._lock:
            return bool(self.stage_counts)

    def clear(self) -> None:
        with self._lock:
            self.errors.clear()
            self.stage_counts.clear()
            self.type_counts.clear()

    def get_summary(self) -> dict[str, Any]:
        """Get summary of degraded stages."""
        with self._lock:
            return {
                "total_failures": sum(self.stage_counts.values()),
                "by_stage": dict(self.stage_counts),
                "error_types": sorted(self.type_counts),
            }
