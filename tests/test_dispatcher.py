"""
Tests for FileDispatcher: gating, caching, renaming and quarantine.
"""

import shutil
from datetime import date
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from invoice_processor import (
    ConversionError,
    FileDispatcher,
    ProcessorState,
    convert_pdf_to_jpg,
)
from result_cache import ResultCache, hash_bytes
from conftest import FakeVisionProvider, make_image


@pytest.fixture
def cache(output_dir: Path) -> ResultCache:
    return ResultCache(output_dir / ".invoice_cache.json")


@pytest.fixture
def dispatcher(watch_config, fake_provider, cache) -> FileDispatcher:
    return FileDispatcher(watch_config, fake_provider, cache, ProcessorState())


def fake_pdftoppm(cmd, **kwargs):
    """Stand-in for subprocess.run that renders a JPEG where pdftoppm would."""
    make_image(Path(f"{cmd[-1]}.jpg"), color="navy")
    return MagicMock(returncode=0, stderr="")


class TestProcessImage:
    """Happy path for image files."""

    def test_renames_and_moves(self, dispatcher, fake_provider, sample_jpg, output_dir):
        result = dispatcher.process_file(sample_jpg)

        destination = output_dir / "2025-04-09_Acme_Inc_INV-42.jpg"
        assert result["success"]
        assert result["outcome"] == "renamed"
        assert result["destination"] == str(destination)
        assert destination.exists()
        assert not sample_jpg.exists()
        assert fake_provider.calls[0][1] == "image/jpeg"

    def test_png_mime_type(self, dispatcher, fake_provider, sample_png):
        dispatcher.process_file(sample_png)
        assert fake_provider.calls[0][1] == "image/png"

    def test_result_cached_by_content(self, dispatcher, cache, sample_jpg):
        file_hash = hash_bytes(sample_jpg.read_bytes())
        dispatcher.process_file(sample_jpg)

        assert file_hash in cache
        assert cache.lookup(file_hash).document_id == "INV-42"

    def test_identical_content_analyzed_once(self, dispatcher, fake_provider, sample_jpg, watch_dir, output_dir):
        duplicate = watch_dir / "scan_copy.jpg"
        shutil.copyfile(sample_jpg, duplicate)

        first = dispatcher.process_file(sample_jpg)
        second = dispatcher.process_file(duplicate)

        assert len(fake_provider.calls) == 1
        assert second["cache_hit"]
        assert Path(first["destination"]).name == Path(second["destination"]).name
        assert not duplicate.exists()

    def test_history_recorded(self, dispatcher, sample_jpg):
        dispatcher.process_file(sample_jpg)

        processed = dispatcher.state.processed
        assert len(processed) == 1
        assert processed[0]["file"] == "scan_001.jpg"
        assert processed[0]["outcome"] == "renamed"


class TestGates:
    """Files that are skipped without analysis."""

    def test_blocked_file_left_in_place(self, dispatcher, fake_provider, watch_dir):
        blocked = make_image(watch_dir / "Bank_Statement_Jan.jpg")

        result = dispatcher.process_file(blocked)

        assert result["outcome"] == "blocked"
        assert blocked.exists()
        assert fake_provider.calls == []

    def test_previously_failed_skipped(self, dispatcher, fake_provider, watch_dir):
        failed = make_image(watch_dir / "FAILED_scan.jpg")

        result = dispatcher.process_file(failed)

        assert result["outcome"] == "previously_failed"
        assert failed.exists()
        assert fake_provider.calls == []

    def test_missing_file(self, dispatcher, watch_dir):
        result = dispatcher.process_file(watch_dir / "gone.jpg")
        assert result == {"success": False, "outcome": "missing"}


class TestFailures:
    """Degraded analysis and quarantine."""

    def test_null_field_quarantined(self, watch_config, cache, sample_jpg, output_dir):
        provider = FakeVisionProvider([{"company_name": "Acme", "invoice_number": None, "invoice_date": "04/09/2025"}])
        dispatcher = FileDispatcher(watch_config, provider, cache, ProcessorState())

        result = dispatcher.process_file(sample_jpg)

        assert result["outcome"] == "quarantined"
        assert (output_dir / "FAILED_scan_001.jpg").exists()
        assert not sample_jpg.exists()
        assert len(cache) == 0

    def test_unreadable_image_quarantined_without_call(self, dispatcher, fake_provider, watch_dir, output_dir):
        bogus = watch_dir / "scan_bad.jpg"
        bogus.write_bytes(b"definitely not a jpeg")

        result = dispatcher.process_file(bogus)

        assert result["outcome"] == "quarantined"
        assert (output_dir / "FAILED_scan_bad.jpg").read_bytes() == b"definitely not a jpeg"
        assert fake_provider.calls == []
        assert dispatcher.state.processed[0]["error"]

    def test_network_failure_files_as_unknown(self, watch_config, cache, sample_jpg, output_dir):
        provider = FakeVisionProvider([TimeoutError("timed out")])
        dispatcher = FileDispatcher(watch_config, provider, cache, ProcessorState())

        result = dispatcher.process_file(sample_jpg)

        expected = f"{date.today().strftime('%Y-%m-%d')}_Unknown_Unknown.jpg"
        assert result["success"]
        assert Path(result["destination"]).name == expected
        assert result["result"].degraded
        assert len(provider.calls) == 3
        assert len(cache) == 0
        assert dispatcher.state.processed[0]["outcome"] == "degraded"

    def test_quarantine_copy_failure_leaves_original(self, dispatcher, watch_dir, output_dir):
        bogus = watch_dir / "scan_bad.jpg"
        bogus.write_bytes(b"not an image")
        shutil.rmtree(output_dir)

        result = dispatcher.process_file(bogus)

        assert result["outcome"] == "failed"
        assert result["destination"] is None
        assert bogus.exists()

    def test_destination_collision_overwrites(self, dispatcher, sample_jpg, output_dir):
        existing = output_dir / "2025-04-09_Acme_Inc_INV-42.jpg"
        existing.write_bytes(b"older copy")

        dispatcher.process_file(sample_jpg)

        assert existing.read_bytes() != b"older copy"


class TestPdf:
    """PDF files are analyzed through a rendered first page."""

    @patch("invoice_processor.subprocess.run", side_effect=fake_pdftoppm)
    @patch("invoice_processor.shutil.which", return_value="/usr/bin/pdftoppm")
    def test_pdf_renamed_with_pdf_extension(self, mock_which, mock_run, dispatcher, fake_provider,
                                            cache, watch_dir, output_dir):
        pdf = watch_dir / "scan_003.pdf"
        pdf.write_bytes(b"%PDF-1.4 fake invoice")

        result = dispatcher.process_file(pdf)

        assert result["success"]
        assert (output_dir / "2025-04-09_Acme_Inc_INV-42.pdf").read_bytes() == b"%PDF-1.4 fake invoice"
        assert not pdf.exists()
        # The rendered page is analyzed; the PDF bytes are hashed
        assert fake_provider.calls[0][1] == "image/jpeg"
        assert fake_provider.calls[0][0] != b"%PDF-1.4 fake invoice"
        assert hash_bytes(b"%PDF-1.4 fake invoice") in cache

        cmd = mock_run.call_args.args[0]
        assert cmd[:9] == ["pdftoppm", "-jpeg", "-r", "300", "-f", "1", "-l", "1", "-singlefile"]

    @patch("invoice_processor.shutil.which", return_value=None)
    def test_missing_converter_quarantines(self, mock_which, dispatcher, fake_provider, watch_dir, output_dir):
        pdf = watch_dir / "scan_004.pdf"
        pdf.write_bytes(b"%PDF-1.4")

        result = dispatcher.process_file(pdf)

        assert result["outcome"] == "quarantined"
        assert (output_dir / "FAILED_scan_004.pdf").exists()
        assert fake_provider.calls == []

    @patch("invoice_processor.subprocess.run", return_value=MagicMock(returncode=1, stderr="Syntax Error"))
    @patch("invoice_processor.shutil.which", return_value="/usr/bin/pdftoppm")
    def test_converter_error(self, mock_which, mock_run, temp_dir):
        with pytest.raises(ConversionError, match="Syntax Error"):
            convert_pdf_to_jpg(temp_dir / "broken.pdf", temp_dir)

    @patch("invoice_processor.subprocess.run", return_value=MagicMock(returncode=0, stderr=""))
    @patch("invoice_processor.shutil.which", return_value="/usr/bin/pdftoppm")
    def test_converter_no_output(self, mock_which, mock_run, temp_dir):
        with pytest.raises(ConversionError, match="no image"):
            convert_pdf_to_jpg(temp_dir / "empty.pdf", temp_dir)
