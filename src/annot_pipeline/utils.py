"""Utility functions for annot-pipeline."""

import hashlib
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator, Optional, TextIO

from tqdm import tqdm

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Configure logging for the pipeline.

    Calling this more than once replaces the handlers installed earlier
    instead of stacking new ones.

    Args:
        level: Logging level string.
        log_file: Optional path to log file.

    Returns:
        Configured logger.
    """
    logger = logging.getLogger("annot_pipeline")
    logger.setLevel(getattr(logging, level.upper()))

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    for handler in list(logger.handlers):
        if getattr(handler, "_annot_pipeline", False):
            logger.removeHandler(handler)
            handler.close()

    # Console handler
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._annot_pipeline = True
    logger.addHandler(console)

    # File handler
    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(formatter)
        fh._annot_pipeline = True
        logger.addHandler(fh)

    return logger


def canonicalize(sequence: str) -> str:
    """Normalize a sequence for hashing: no whitespace, upper case, no trailing stop."""
    return "".join(sequence.split()).upper().rstrip("*")


def fingerprint(sequence: str) -> str:
    """SHA-256 hex digest of the canonicalized sequence."""
    return hashlib.sha256(canonicalize(sequence).encode("ascii")).hexdigest()


def progress_bar(iterable=None, desc: str = "", total: Optional[int] = None, enabled: bool = True):
    """Wrap an iterable (or a manual counter) with a progress bar."""
    return tqdm(iterable, desc=desc, total=total, unit="tasks", disable=not enabled, leave=False)


@contextmanager
def atomic_write(path: Path | str, mode: str = "w") -> Iterator[TextIO]:
    """Write to a temporary sibling file and move it into place on success.

    On error the temporary file is removed and the target is left untouched.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, mode) as handle:
            yield handle
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class PersistentResultStore:
    """File-based store for lookup results shared across runs.

    Opt-in only: within a run the in-memory ResultCache is authoritative,
    this store just warms it up.
    """

    def __init__(self, cache_dir: str, ttl_days: int = 30, enabled: bool = True):
        self.cache_dir = Path(cache_dir)
        self.ttl = timedelta(days=ttl_days)
        self.enabled = enabled
        if self.enabled:
            self.cache_dir.mkdir(parents=True, exist_ok=True)

    def _key_to_path(self, key: str) -> Path:
        """Convert a fingerprint to a file path, sharded by prefix."""
        return self.cache_dir / key[:2] / f"{key}.json"

    def get(self, key: str) -> Optional[Any]:
        """Retrieve a stored result.

        Args:
            key: Fingerprint of the looked-up sequence.

        Returns:
            Stored data or None if miss/expired.
        """
        if not self.enabled:
            return None

        path = self._key_to_path(key)
        if not path.exists():
            return None

        try:
            with open(path, "r") as f:
                cached = json.load(f)

            # Check expiration
            cached_time = datetime.fromisoformat(cached["timestamp"])
            if datetime.now() - cached_time > self.ttl:
                path.unlink(missing_ok=True)
                return None

            return cached["data"]
        except (json.JSONDecodeError, KeyError, ValueError):
            path.unlink(missing_ok=True)
            return None

    def set(self, key: str, data: Any):
        """Store a result.

        Args:
            key: Fingerprint.
            data: Data to store (must be JSON-serializable).
        """
        if not self.enabled:
            return

        path = self._key_to_path(key)
        entry = {
            "timestamp": datetime.now().isoformat(),
            "key": key,
            "data": data,
        }
        with atomic_write(path) as f:
            json.dump(entry, f)

    def clear(self):
        """Remove all stored results."""
        if self.cache_dir.exists():
            for f in self.cache_dir.glob("*/*.json"):
                f.unlink()
