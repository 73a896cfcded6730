"""
Result cache - remembers what the vision model extracted for a file's content.

Keyed by the SHA256 of the raw file bytes so identical scans are never paid
for twice. Persisted as a JSON object mapping hex digest -> extracted fields:

    {
      "9f86d0...": {
        "company_name": "Acme Inc",
        "invoice_number": "INV-42",
        "invoice_date": "04/09/2025"
      }
    }

The whole file is rewritten after every new entry. Load and save failures are
logged and ignored; the in-memory mapping stays authoritative for the run.
"""

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Optional, Union

from vision_providers import REQUIRED_KEYS, ExtractionResult

logger = logging.getLogger("invoice_processor.cache")

CACHE_FILENAME = ".invoice_cache.json"


def hash_bytes(data: bytes) -> str:
    """SHA256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


class ResultCache:
    """Persistent content hash -> ExtractionResult mapping (write-through)."""

    def __init__(self, cache_path: Union[str, Path]):
        self.cache_path = Path(cache_path)
        self._lock = threading.Lock()
        self._entries = self._load()

    def _load(self) -> dict:
        """Load the cache from JSON. Anything unreadable counts as empty."""
        if not self.cache_path.exists():
            return {}
        try:
            with open(self.cache_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.warning(f"Could not load result cache {self.cache_path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring result cache {self.cache_path}: not a JSON object")
            return {}

        entries = {
            key: value for key, value in data.items()
            if isinstance(value, dict) and all(k in value for k in REQUIRED_KEYS)
        }
        skipped = len(data) - len(entries)
        if skipped:
            logger.warning(f"Skipped {skipped} malformed entries in {self.cache_path}")
        logger.info(f"Loaded {len(entries)} cached results from {self.cache_path}")
        return entries

    def _save(self, entries: dict) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.cache_path, 'w', encoding='utf-8') as f:
                json.dump(entries, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.warning(f"Could not save result cache to {self.cache_path}: {e}")

    def lookup(self, file_hash: str) -> Optional[ExtractionResult]:
        with self._lock:
            entry = self._entries.get(file_hash)
        if entry is None:
            return None
        return ExtractionResult.from_dict(entry)

    def store(self, file_hash: str, result: ExtractionResult) -> None:
        """Add or overwrite an entry and persist the whole mapping.

        Degraded results are never cached.
        """
        if result.degraded:
            logger.debug(f"Not caching degraded result for {file_hash[:12]}")
            return
        with self._lock:
            self._entries[file_hash] = result.to_dict()
            # Saved under the lock so concurrent stores cannot interleave writes
            self._save(self._entries)
        logger.debug(f"Cached result for {file_hash[:12]}")

    def __contains__(self, file_hash: str) -> bool:
        with self._lock:
            return file_hash in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
