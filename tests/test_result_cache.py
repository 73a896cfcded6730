"""
Tests for the persistent result cache.
"""

import json
from pathlib import Path

from result_cache import ResultCache, hash_bytes
from vision_providers import ExtractionResult


def test_hash_bytes_is_sha256():
    assert hash_bytes(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestResultCache:
    """Tests for ResultCache."""

    def test_missing_file_loads_empty(self, temp_dir: Path):
        cache = ResultCache(temp_dir / "cache.json")
        assert len(cache) == 0
        assert cache.lookup("deadbeef") is None

    def test_store_writes_through(self, temp_dir: Path):
        cache_path = temp_dir / "cache.json"
        cache = ResultCache(cache_path)
        cache.store("abc123", ExtractionResult("Acme", "INV-1", "01/02/2024"))

        saved = json.loads(cache_path.read_text())
        assert saved == {
            "abc123": {
                "company_name": "Acme",
                "invoice_number": "INV-1",
                "invoice_date": "01/02/2024",
            }
        }

    def test_survives_restart(self, temp_dir: Path):
        cache_path = temp_dir / "cache.json"
        ResultCache(cache_path).store("abc123", ExtractionResult("Acme", "INV-1", "01/02/2024"))

        reloaded = ResultCache(cache_path)
        result = reloaded.lookup("abc123")

        assert "abc123" in reloaded
        assert result == ExtractionResult("Acme", "INV-1", "01/02/2024")
        assert not result.degraded

    def test_store_overwrites(self, temp_dir: Path):
        cache = ResultCache(temp_dir / "cache.json")
        cache.store("abc123", ExtractionResult("Acme", "INV-1", "01/02/2024"))
        cache.store("abc123", ExtractionResult("Globex", "77", "03/04/2024"))

        assert len(cache) == 1
        assert cache.lookup("abc123").company_name == "Globex"

    def test_degraded_results_not_stored(self, temp_dir: Path):
        cache_path = temp_dir / "cache.json"
        cache = ResultCache(cache_path)
        cache.store("abc123", ExtractionResult.sentinel("network error after retries"))

        assert "abc123" not in cache
        assert not cache_path.exists()

    def test_corrupt_file_loads_empty(self, temp_dir: Path):
        cache_path = temp_dir / "cache.json"
        cache_path.write_text("{not json")

        cache = ResultCache(cache_path)
        assert len(cache) == 0

        # Next store replaces the corrupt file
        cache.store("abc123", ExtractionResult("Acme", "INV-1", "01/02/2024"))
        assert "abc123" in json.loads(cache_path.read_text())

    def test_non_object_file_loads_empty(self, temp_dir: Path):
        cache_path = temp_dir / "cache.json"
        cache_path.write_text('["a", "b"]')
        assert len(ResultCache(cache_path)) == 0

    def test_malformed_entries_skipped(self, temp_dir: Path):
        cache_path = temp_dir / "cache.json"
        cache_path.write_text(json.dumps({
            "good": {"company_name": "Acme", "invoice_number": "1", "invoice_date": "01/02/2024"},
            "bad": {"company_name": "Acme"},
            "worse": "string",
        }))

        cache = ResultCache(cache_path)
        assert len(cache) == 1
        assert "good" in cache

    def test_save_failure_keeps_memory(self, temp_dir: Path):
        # Parent "directory" is a file, so saving fails
        blocker = temp_dir / "blocker"
        blocker.write_text("")
        cache = ResultCache(blocker / "cache.json")

        cache.store("abc123", ExtractionResult("Acme", "INV-1", "01/02/2024"))

        assert cache.lookup("abc123").company_name == "Acme"
