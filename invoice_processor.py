#!/usr/bin/env python3
"""
Invoice Processor - Automatically rename scanned invoices using a vision LLM

This script watches a scan folder and automatically:
1. Sends each new image (or the first page of a PDF) to a vision model
2. Extracts the vendor name, invoice number and invoice date
3. Moves the file to the output folder as YYYY-MM-DD_Vendor_Number.ext

Files that cannot be processed are copied to the output folder with a
FAILED_ prefix. Results are cached by file content, so re-scanning the same
document never costs a second API call.

Usage:
    python invoice_processor.py --watch ./scans --output ./invoices

Or drain the folder once (no watching):
    python invoice_processor.py --watch ./scans --output ./invoices --once
"""

import os
import re
import sys
import queue
import shutil
import logging
import argparse
import tempfile
import threading
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import yaml
from dotenv import load_dotenv
from PIL import Image, UnidentifiedImageError
from watchdog.events import FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

from result_cache import CACHE_FILENAME, ResultCache, hash_bytes
from vision_providers import (
    DEFAULT_MODEL,
    UNKNOWN,
    CostLedger,
    ExtractionResult,
    VisionProvider,
    get_provider,
)

# Load environment variables from .env file (if it exists and is accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    pass


# ==============================================================================
# CONFIGURATION LOADING
# ==============================================================================

def load_config() -> dict:
    """Load configuration from config.yaml, with fallbacks to environment variables."""
    config = {
        "paths": {
            "watch_folder": os.getenv("WATCH_FOLDER", str(Path.home() / "Documents" / "Invoices" / "Scans")),
            "output_folder": os.getenv("OUTPUT_FOLDER", str(Path.home() / "Documents" / "Invoices" / "Processed")),
        },
        "blocked_terms": os.getenv("BLOCKED_TERMS", ""),
        "model": os.getenv("OPENAI_MODEL", DEFAULT_MODEL),
        "poll_interval": 5,
        "settle_delay": 0.5,
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "dir": os.getenv("LOG_DIR", str(Path.home() / "Documents" / "Invoices" / "logs")),
        },
    }

    # Try to load from config.yaml
    config_paths = [
        Path(__file__).parent / "config.local.yaml",  # Local overrides first
        Path(__file__).parent / "config.yaml",
    ]

    for config_path in config_paths:
        if config_path.exists():
            try:
                with open(config_path, 'r') as f:
                    yaml_config = yaml.safe_load(f) or {}

                if "paths" in yaml_config:
                    for key, value in yaml_config["paths"].items():
                        if value:
                            config["paths"][key] = os.path.expanduser(value)

                for key in ("blocked_terms", "model", "poll_interval", "settle_delay"):
                    if key in yaml_config:
                        config[key] = yaml_config[key]
                if "logging" in yaml_config:
                    config["logging"].update(yaml_config["logging"])

                break  # Use first found config
            except (yaml.YAMLError, OSError) as e:
                print(f"Warning: Could not load {config_path}: {e}")

    return config


# Load global config
CONFIG = load_config()


# ==============================================================================
# LOGGING CONFIGURATION
# ==============================================================================

def setup_logging() -> logging.Logger:
    """Configure the console logger based on environment variables."""
    log_level = os.getenv("LOG_LEVEL", CONFIG["logging"]["level"]).upper()

    logger = logging.getLogger("invoice_processor")
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Prevent duplicate handlers on reimport
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)
    console_format = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    return logger


def add_file_handler(log_dir: Union[str, Path]) -> Path:
    """Log this run to its own timestamped file in log_dir."""
    log_path = Path(log_dir).expanduser()
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / f"invoice_processor_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_format = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    )
    file_handler.setFormatter(file_format)
    logger.addHandler(file_handler)
    logger.info(f"Log file: {log_file}")
    return log_file


# Initialize logger
logger = setup_logging()

# Allow large 300 dpi scans while still guarding against decompression bombs
Image.MAX_IMAGE_PIXELS = 200_000_000


# ==============================================================================
# CONSTANTS
# ==============================================================================

SUPPORTED_FORMATS = {'.png', '.jpg', '.jpeg', '.pdf'}
FAILED_PREFIX = "FAILED_"
PDF_RESOLUTION = 300  # dpi
PDF_CONVERSION_TIMEOUT = 120  # seconds
EVENT_POLL_INTERVAL = 1.0  # seconds between filesystem snapshots for events
MAX_PROCESSED_HISTORY = 200

STRICT_DATE_FORMAT = "%m/%d/%Y"
FALLBACK_DATE_FORMATS = (
    "%Y-%m-%d",
    "%m-%d-%Y",
    "%m/%d/%y",
    "%Y/%m/%d",
    "%d.%m.%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%Y%m%d",
)


class ProcessingError(Exception):
    """A file could not be processed and should be quarantined."""
    pass


class ConversionError(ProcessingError):
    """The PDF converter failed or produced no image."""
    pass


class ConfigurationError(ValueError):
    """The processor was asked to run with incomplete settings."""
    pass


# ==============================================================================
# WATCH CONFIGURATION
# ==============================================================================

def parse_blocked_terms(value: Union[str, Iterable[str], None]) -> frozenset:
    """Normalize blocked terms (comma-separated string or list) to lowercase."""
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(term.strip().lower() for term in value if term and term.strip())


@dataclass(frozen=True)
class WatchConfig:
    """Per-run configuration. A new configuration needs a new processor."""
    watch_folder: Path
    output_folder: Path
    blocked_terms: frozenset = frozenset()
    api_key: Optional[str] = field(default=None, repr=False)
    model: str = DEFAULT_MODEL
    poll_interval: float = 5.0
    settle_delay: float = 0.5
    cache_path: Optional[Path] = None

    @classmethod
    def from_values(
        cls,
        watch_folder: Union[str, Path],
        output_folder: Union[str, Path],
        api_key: Optional[str] = None,
        blocked_terms: Union[str, Iterable[str], None] = None,
        **kwargs,
    ) -> "WatchConfig":
        return cls(
            watch_folder=Path(watch_folder).expanduser(),
            output_folder=Path(output_folder).expanduser(),
            blocked_terms=parse_blocked_terms(blocked_terms),
            api_key=api_key or None,
            **kwargs,
        )

    @property
    def resolved_cache_path(self) -> Path:
        return Path(self.cache_path) if self.cache_path else self.output_folder / CACHE_FILENAME


def is_blocked(filename: str, blocked_terms: Iterable[str]) -> bool:
    """Case-insensitive substring match of any blocked term against filename."""
    name = filename.lower()
    return any(term in name for term in blocked_terms)


def is_candidate(path: Path) -> bool:
    """Visible file with a supported extension."""
    return not path.name.startswith(".") and path.suffix.lower() in SUPPORTED_FORMATS


# ==============================================================================
# FILENAME GENERATION
# ==============================================================================

def parse_document_date(value) -> date:
    """Parse a document date: MM/DD/YYYY, then common formats, then today.

    Never raises.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value or "").strip()
    try:
        return datetime.strptime(text, STRICT_DATE_FORMAT).date()
    except ValueError:
        pass

    for fmt in FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass

    if text:
        logger.warning(f"Could not parse date '{text}', using today's date")
    return date.today()


def sanitize_company_name(company_name: Optional[str]) -> str:
    """Keep letters, digits and spaces; collapse whitespace to underscores."""
    cleaned = re.sub(r'[^0-9A-Za-z\s]', '', company_name or '').strip()
    cleaned = re.sub(r'\s+', '_', cleaned)
    return cleaned or UNKNOWN


def sanitize_document_id(document_id: Optional[str]) -> str:
    """Replace path separators so the id cannot escape the output folder."""
    cleaned = str(document_id or '').strip()
    for char in ('/', '\\', ':'):
        cleaned = cleaned.replace(char, '-')
    return cleaned or UNKNOWN


def generate_filename(company_name: str, document_id: str, document_date, extension: str) -> str:
    """Build the destination filename.

    Format: YYYY-MM-DD_Company_DocumentId.ext
    Example: 2025-04-09_Acme_Inc_INV-42.jpg

    Deterministic for identical inputs. Different source files with the same
    extracted fields map to the same name.
    """
    parsed_date = parse_document_date(document_date)
    company = sanitize_company_name(company_name)
    doc_id = sanitize_document_id(document_id)
    return f"{parsed_date.strftime('%Y-%m-%d')}_{company}_{doc_id}{extension}"


# ==============================================================================
# DOCUMENT CONVERSION
# ==============================================================================

def convert_pdf_to_jpg(pdf_path: Path, output_dir: Path) -> Path:
    """Render the first page of a PDF to a JPEG with pdftoppm.

    Returns the path of the rendered image inside output_dir.

    Raises:
        ConversionError: pdftoppm is missing, fails, or produces no image
    """
    if shutil.which("pdftoppm") is None:
        raise ConversionError("pdftoppm not found (install poppler-utils)")

    output_base = Path(output_dir) / Path(pdf_path).stem
    cmd = [
        "pdftoppm", "-jpeg",
        "-r", str(PDF_RESOLUTION),
        "-f", "1", "-l", "1",
        "-singlefile",
        str(pdf_path),
        str(output_base),
    ]

    logger.info(f"Converting PDF to JPG: {pdf_path}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=PDF_CONVERSION_TIMEOUT
        )
    except subprocess.TimeoutExpired as e:
        raise ConversionError(f"pdftoppm timed out after {PDF_CONVERSION_TIMEOUT}s") from e

    if result.returncode != 0:
        raise ConversionError(f"pdftoppm exited with {result.returncode}: {result.stderr.strip()}")

    output_path = Path(f"{output_base}.jpg")
    if not output_path.exists():
        raise ConversionError(f"pdftoppm produced no image for {Path(pdf_path).name}")
    return output_path


def detect_image_mime(image_path: Path) -> str:
    """Verify the file is a readable image and return its MIME type.

    Raises:
        ProcessingError: The file is not a readable image
    """
    try:
        with Image.open(image_path) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise ProcessingError(f"Not a readable image: {Path(image_path).name}: {e}") from e
    return Image.MIME.get(image_format, "image/jpeg")


# ==============================================================================
# SHARED RUN STATE
# ==============================================================================

class ProcessorState:
    """Run state shared by the watcher threads and the control panel.

    All access goes through the lock so status queries from another thread
    always see a consistent queue and history.
    """

    def __init__(self, ledger: Optional[CostLedger] = None, max_processed: int = MAX_PROCESSED_HISTORY):
        self._lock = threading.Lock()
        self._running = False
        self._status = "Ready"
        self._current_file: Optional[str] = None
        self._queue: list[str] = []
        self._processed: deque = deque(maxlen=max_processed)
        self.ledger = ledger or CostLedger()

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    def set_running(self, running: bool) -> None:
        with self._lock:
            self._running = running

    @property
    def status(self) -> str:
        with self._lock:
            return self._status

    def set_status(self, status: str) -> None:
        with self._lock:
            self._status = status

    def set_current_file(self, name: Optional[str]) -> None:
        with self._lock:
            self._current_file = name

    def enqueue(self, path: str) -> bool:
        """Add a path to the pending queue. False if it is already queued."""
        with self._lock:
            if path in self._queue:
                return False
            self._queue.append(path)
            return True

    def dequeue(self, path: str) -> None:
        with self._lock:
            if path in self._queue:
                self._queue.remove(path)

    def record(self, file_name: str, outcome: str, destination: Optional[str] = None,
               error: Optional[str] = None) -> None:
        """Append a finished file to the processed history."""
        with self._lock:
            self._processed.append({
                "file": file_name,
                "outcome": outcome,
                "destination": destination,
                "error": error,
                "processed_at": datetime.now().isoformat(timespec="seconds"),
            })

    @property
    def queue(self) -> list:
        with self._lock:
            return list(self._queue)

    @property
    def processed(self) -> list:
        with self._lock:
            return list(self._processed)

    def snapshot(self) -> dict:
        with self._lock:
            snapshot = {
                "running": self._running,
                "status": self._status,
                "current_file": self._current_file,
                "queue": list(self._queue),
                "processed": list(self._processed),
            }
        snapshot.update(self.ledger.snapshot())
        return snapshot


# ==============================================================================
# FILE DISPATCHER
# ==============================================================================

class FileDispatcher:
    """Runs a single file through the pipeline.

    Gates (readable, not FAILED_, not blocked) -> cache lookup -> analysis ->
    validation -> rename/move into the output folder, or quarantine as
    FAILED_<name> on any failure.
    """

    def __init__(self, config: WatchConfig, provider: VisionProvider, cache: ResultCache,
                 state: ProcessorState):
        self.config = config
        self.provider = provider
        self.cache = cache
        self.state = state

    def process_file(self, file_path: Union[str, Path]) -> dict:
        """Process one file. Never raises; returns a summary dict."""
        path = Path(file_path)
        logger.info(f"Processing file: {path}")

        # Skip if file doesn't exist or isn't readable
        if not path.is_file() or not os.access(path, os.R_OK):
            logger.info(f"File does not exist or is not readable: {path}")
            return {"success": False, "outcome": "missing"}

        if path.name.startswith(FAILED_PREFIX):
            logger.info(f"Skipping previously failed file: {path}")
            return {"success": False, "outcome": "previously_failed"}

        if is_blocked(path.name, self.config.blocked_terms):
            logger.info(f"Skipping blocked file: {path}")
            return {"success": False, "outcome": "blocked"}

        self.state.set_current_file(path.name)
        try:
            return self._process(path)
        except Exception as e:
            if isinstance(e, FileNotFoundError) and not path.exists():
                # Consumed by an overlapping discovery between the gate and the read
                logger.info(f"File disappeared while processing: {path}")
                return {"success": False, "outcome": "missing"}
            logger.error(f"Failed to process file {path}: {e}", exc_info=True)
            failed_path = self._quarantine(path)
            outcome = "quarantined" if failed_path else "failed"
            self.state.record(path.name, outcome, str(failed_path) if failed_path else None, str(e))
            return {
                "success": False,
                "outcome": outcome,
                "destination": str(failed_path) if failed_path else None,
                "error": str(e),
            }
        finally:
            self.state.set_current_file(None)

    def _process(self, path: Path) -> dict:
        file_bytes = path.read_bytes()
        file_hash = hash_bytes(file_bytes)

        result = self.cache.lookup(file_hash)
        cache_hit = result is not None
        if cache_hit:
            logger.info(f"Cache hit for {path.name} ({file_hash[:12]}), skipping analysis")
        else:
            result = self._analyze(path, file_bytes)

        if not result.is_complete:
            raise ProcessingError("Missing required fields in vision response")

        if result.degraded:
            logger.warning(f"Analysis degraded for {path.name} ({result.reason}); filing with placeholder values")
        elif not cache_hit:
            self.cache.store(file_hash, result)

        new_filename = generate_filename(
            result.company_name,
            result.document_id,
            result.document_date,
            path.suffix,
        )
        destination = self._move_file(path, new_filename)

        ledger = self.state.ledger.snapshot()
        logger.info(
            f"Successfully processed {path.name} -> {destination.name} "
            f"(company_name={result.company_name}, invoice_number={result.document_id}, "
            f"invoice_date={result.document_date}; total cost ${ledger['total_cost']:.4f})"
        )
        self.state.record(path.name, "degraded" if result.degraded else "renamed", str(destination))
        return {
            "success": True,
            "outcome": "renamed",
            "destination": str(destination),
            "result": result,
            "cache_hit": cache_hit,
        }

    def _analyze(self, path: Path, file_bytes: bytes) -> ExtractionResult:
        if path.suffix.lower() == ".pdf":
            with tempfile.TemporaryDirectory(prefix="invoice_pdf_") as tmp_dir:
                image_path = convert_pdf_to_jpg(path, Path(tmp_dir))
                mime_type = detect_image_mime(image_path)
                image_bytes = image_path.read_bytes()
        else:
            mime_type = detect_image_mime(path)
            image_bytes = file_bytes
        return self.provider.extract(image_bytes, mime_type)

    def _move_file(self, source: Path, new_filename: str) -> Path:
        """Copy then delete, so moves across devices work."""
        destination = self.config.output_folder / new_filename
        if destination.exists() and os.path.samefile(source, destination):
            # Output folder overlaps the watch folder and this file is already filed
            logger.info(f"Already filed under its final name: {destination}")
            return destination
        if destination.exists():
            logger.warning(f"Destination already exists and will be overwritten: {destination}")

        logger.info(f"Moving file to: {destination}")
        try:
            shutil.copy2(source, destination)
            source.unlink()
        except OSError as e:
            if not source.exists():
                raise
            raise ProcessingError(f"Could not move {source.name} to {destination}: {e}") from e
        return destination

    def _quarantine(self, path: Path) -> Optional[Path]:
        """Copy a failed file to FAILED_<name> in the output folder.

        The original is removed only once the copy exists.
        """
        failed_path = self.config.output_folder / f"{FAILED_PREFIX}{path.name}"
        try:
            shutil.copy2(path, failed_path)
            logger.info(f"Moved failed file to: {failed_path}")
        except OSError as e:
            logger.error(f"Failed to move failed file {path}: {e}")
            return None

        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Could not remove {path} after quarantine: {e}")
        return failed_path


# ==============================================================================
# FOLDER WATCHER
# ==============================================================================

def _file_mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except OSError:
        return None


class _WatchEventHandler(FileSystemEventHandler):
    """Forwards filesystem notifications to the watcher's inbound queue."""

    def __init__(self, watcher: "FolderWatcher"):
        super().__init__()
        self.watcher = watcher

    def on_created(self, event):
        if not event.is_directory:
            self.watcher.submit(os.fsdecode(event.src_path), source="event")

    def on_modified(self, event):
        if not event.is_directory:
            self.watcher.submit(os.fsdecode(event.src_path), source="event")

    def on_moved(self, event):
        if not event.is_directory:
            self.watcher.submit(os.fsdecode(event.dest_path), source="event")


class FolderWatcher:
    """Discovers files in the watch folder and feeds them to one dispatcher.

    Two discovery paths (a periodic directory poll and watchdog filesystem
    events) push into a single queue consumed by a single worker thread.
    A file is not dispatched again while its path and modification time are
    unchanged since it was last dispatched.

    Lifecycle: ready -> running -> stopped. Stopped watchers are not reused.
    """

    def __init__(self, config: WatchConfig, dispatcher: FileDispatcher, state: ProcessorState,
                 observer_factory: Callable = PollingObserver):
        self.config = config
        self.dispatcher = dispatcher
        self.state = state
        self._observer_factory = observer_factory

        self._lock = threading.Lock()
        self._lifecycle = "ready"
        self._stop_event = threading.Event()
        self._inbox: queue.Queue = queue.Queue()
        self._seen: dict[str, float] = {}
        self._seen_lock = threading.Lock()

        self._observer = None
        self._poll_thread: Optional[threading.Thread] = None
        self._worker_thread: Optional[threading.Thread] = None

    @property
    def lifecycle(self) -> str:
        with self._lock:
            return self._lifecycle

    def list_current_files(self) -> list[Path]:
        try:
            return [p for p in self.config.watch_folder.iterdir() if p.is_file()]
        except OSError as e:
            logger.error(f"Could not list {self.config.watch_folder}: {e}")
            return []

    def start(self) -> None:
        with self._lock:
            if self._lifecycle != "ready":
                raise RuntimeError(f"Cannot start a watcher that is {self._lifecycle}")
            self._lifecycle = "running"
            self.state.set_running(True)

        logger.info(f"Starting to watch {self.config.watch_folder}")
        self.drain_existing()

        with self._lock:
            if self._stop_event.is_set():
                self._lifecycle = "stopped"
                return

            self._worker_thread = threading.Thread(
                target=self._dispatch_loop, name="invoice-dispatch", daemon=True
            )
            self._worker_thread.start()

            self._poll_thread = threading.Thread(
                target=self._poll_loop, name="invoice-poll", daemon=True
            )
            self._poll_thread.start()

            logger.info("Starting listener...")
            self._observer = self._observer_factory(timeout=EVENT_POLL_INTERVAL)
            self._observer.schedule(_WatchEventHandler(self), str(self.config.watch_folder), recursive=False)
            self._observer.start()
            logger.info("Listener started successfully")

    def stop(self) -> None:
        """Stop discovery. A file already being analyzed finishes first."""
        with self._lock:
            self.state.set_running(False)
            self._stop_event.set()
            self._lifecycle = "stopped"
            observer, poll_thread, worker_thread = self._observer, self._poll_thread, self._worker_thread

        if observer is not None:
            observer.stop()
            observer.join()
        if poll_thread is not None:
            poll_thread.join()
        if worker_thread is not None:
            self._inbox.put(None)
            worker_thread.join()
        logger.info("Watcher stopped")

    def drain_existing(self) -> list[dict]:
        """Synchronously process every eligible file currently in the folder."""
        logger.info(f"Processing existing files in {self.config.watch_folder}")
        files = self.list_current_files()
        logger.info(f"Found {len(files)} existing files")

        results = []
        for file_path in files:
            if self._stop_event.is_set():
                break
            if not is_candidate(file_path):
                logger.info(f"Skipping unsupported file: {file_path}")
                continue
            result = self._dispatch(file_path, source="startup")
            if result is not None:
                results.append(result)
        return results

    def submit(self, file_path: Union[str, Path], source: str = "poll") -> bool:
        """Queue a discovered path for dispatch. Returns True if queued."""
        path = Path(file_path)
        if self._stop_event.is_set() or not is_candidate(path):
            return False
        if self._is_unchanged(path, _file_mtime(path)):
            return False
        if not self.state.enqueue(str(path)):
            return False
        logger.debug(f"Queued {path.name} ({source})")
        self._inbox.put((str(path), source))
        return True

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            ledger = self.state.ledger.snapshot()
            logger.info(f"Watcher is active - Last check: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
            logger.info(f"Total queries: {ledger['total_queries']}, Total cost: ${ledger['total_cost']:.4f}")

            current_files = self.list_current_files()
            logger.info(f"Current files in watch folder: {', '.join(p.name for p in current_files)}")
            for file_path in current_files:
                self.submit(file_path, source="poll")

            self._stop_event.wait(self.config.poll_interval)

    def _dispatch_loop(self) -> None:
        while True:
            item = self._inbox.get()
            if item is None:
                break
            path, source = item
            if self._stop_event.is_set():
                self.state.dequeue(path)
                continue

            # Give the scanner time to finish writing the file
            time.sleep(self.config.settle_delay)
            try:
                self._dispatch(Path(path), source)
            finally:
                self.state.dequeue(path)

    def _dispatch(self, path: Path, source: str) -> Optional[dict]:
        key = str(path)
        mtime = _file_mtime(path)
        if self._is_unchanged(path, mtime):
            logger.debug(f"Already dispatched {path.name}, ignoring {source} discovery")
            return None

        logger.info(f"Found file to process ({source}): {path}")
        result = self.dispatcher.process_file(path)

        # Only files left in place (blocked, failed copy, ...) need remembering
        with self._seen_lock:
            if mtime is not None and path.exists():
                self._seen[key] = mtime
            else:
                self._seen.pop(key, None)
        return result

    def _is_unchanged(self, path: Path, mtime: Optional[float]) -> bool:
        """True if path was dispatched before and has not been modified since."""
        if mtime is None:
            return False
        with self._seen_lock:
            return self._seen.get(str(path)) == mtime


# ==============================================================================
# PROCESSOR
# ==============================================================================

class InvoiceProcessor:
    """One configured run: cache, provider, dispatcher and watcher."""

    def __init__(self, config: WatchConfig, provider: Optional[VisionProvider] = None,
                 cache: Optional[ResultCache] = None, observer_factory: Callable = PollingObserver):
        self.config = config
        config.watch_folder.mkdir(parents=True, exist_ok=True)
        config.output_folder.mkdir(parents=True, exist_ok=True)

        self.state = ProcessorState()
        if provider is None:
            provider = get_provider("openai", api_key=config.api_key, model=config.model,
                                    ledger=self.state.ledger)
        else:
            self.state.ledger = provider.ledger
        self.provider = provider
        self.cache = cache or ResultCache(config.resolved_cache_path)
        self.dispatcher = FileDispatcher(config, self.provider, self.cache, self.state)
        self.watcher = FolderWatcher(config, self.dispatcher, self.state, observer_factory)

        logger.info("Invoice Processor initialized")
        logger.info(f"Watching folder: {config.watch_folder}")
        logger.info(f"Output folder: {config.output_folder}")
        if config.blocked_terms:
            logger.info(f"Blocked terms: {', '.join(sorted(config.blocked_terms))}")

    def start(self) -> None:
        self.watcher.start()

    def stop(self) -> None:
        self.watcher.stop()

    def process_existing_files(self) -> list[dict]:
        return self.watcher.drain_existing()

    def process_file(self, file_path: Union[str, Path]) -> dict:
        return self.dispatcher.process_file(file_path)


# ==============================================================================
# CONTROL PANEL BOUNDARY
# ==============================================================================

API_KEY_MASK = "********"


class ProcessorController:
    """Configure/start/stop/status surface driven by the control panels.

    Holds the pending settings and at most one running processor. Starting
    always builds a fresh processor from the current settings.
    """

    def __init__(self, processor_factory: Callable[[WatchConfig], InvoiceProcessor] = InvoiceProcessor):
        self._factory = processor_factory
        self._lock = threading.Lock()
        self._settings = {
            "watch_folder": "",
            "output_folder": "",
            "api_key": "",
            "blocked_terms": "",
            "model": "",
        }
        self._processor: Optional[InvoiceProcessor] = None
        self._start_thread: Optional[threading.Thread] = None
        self._state = ProcessorState()

    def configure(self, watch_folder: Optional[str] = None, output_folder: Optional[str] = None,
                  api_key: Optional[str] = None, blocked_terms=None,
                  model: Optional[str] = None) -> dict:
        """Update settings for the next start. None leaves a value unchanged."""
        updates = {
            "watch_folder": watch_folder,
            "output_folder": output_folder,
            "api_key": api_key,
            "blocked_terms": blocked_terms,
            "model": model,
        }
        with self._lock:
            for key, value in updates.items():
                if value is None:
                    continue
                if key == "blocked_terms" and not isinstance(value, str):
                    value = ", ".join(value)
                self._settings[key] = value.strip() if isinstance(value, str) else value
        return {"success": True, "message": "Settings updated"}

    def _validate(self) -> None:
        if not self._settings["watch_folder"]:
            raise ConfigurationError("Please select a scan folder")
        if not self._settings["output_folder"]:
            raise ConfigurationError("Please select an organized folder")
        if not self._settings["api_key"]:
            raise ConfigurationError("Please enter your OpenAI API key")

    @property
    def running(self) -> bool:
        return self._state.running

    def start(self) -> dict:
        with self._lock:
            if self._state.running:
                return {"success": False, "message": "Already running"}
            try:
                self._validate()
                config = WatchConfig.from_values(
                    self._settings["watch_folder"],
                    self._settings["output_folder"],
                    api_key=self._settings["api_key"],
                    blocked_terms=self._settings["blocked_terms"],
                    model=self._settings["model"] or CONFIG["model"],
                    poll_interval=float(CONFIG["poll_interval"]),
                    settle_delay=float(CONFIG["settle_delay"]),
                )
                processor = self._factory(config)
            except (ConfigurationError, OSError) as e:
                logger.error(f"Could not start processor: {e}")
                self._state.set_status(f"Error: {e}")
                return {"success": False, "message": str(e)}

            self._processor = processor
            self._state = processor.state
            self._state.set_running(True)
            self._state.set_status("Examining documents...")
            self._start_thread = threading.Thread(
                target=self._run, args=(processor,), name="invoice-start", daemon=True
            )
            self._start_thread.start()
        return {"success": True, "message": "Started examining documents"}

    def _run(self, processor: InvoiceProcessor) -> None:
        try:
            processor.start()
        except Exception as e:
            if processor.watcher.lifecycle == "stopped" and not processor.state.running:
                logger.info("Processor was stopped before it started")
                return
            logger.error(f"Processor failed to start: {e}", exc_info=True)
            processor.state.set_status(f"Error: {e}")
            processor.stop()

    def stop(self) -> dict:
        with self._lock:
            processor, start_thread = self._processor, self._start_thread
            if processor is None or not self._state.running:
                return {"success": False, "message": "Not currently running"}
            self._processor = None
            self._start_thread = None

        processor.stop()
        if start_thread is not None:
            start_thread.join()
        processor.state.set_status("Stopped")
        return {"success": True, "message": "Stopped examining documents"}

    def status(self) -> dict:
        with self._lock:
            settings = dict(self._settings)
            state = self._state
        snapshot = state.snapshot()
        snapshot.update({
            "watch_folder": settings["watch_folder"],
            "output_folder": settings["output_folder"],
            "api_key": API_KEY_MASK if settings["api_key"] else "",
            "blocked_terms": settings["blocked_terms"],
            "model": settings["model"] or CONFIG["model"],
        })
        return snapshot


# ==============================================================================
# CLI
# ==============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Rename scanned invoices using a vision LLM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Files are renamed to YYYY-MM-DD_Company_InvoiceNumber.ext and moved to the
output folder. Unprocessable files are copied there as FAILED_<name>.

Examples:
  # Watch a scan folder
  python invoice_processor.py --watch ./scans --output ./invoices

  # Skip statements and receipts
  python invoice_processor.py --watch ./scans --output ./invoices --blocked "statement, receipt"

  # Process everything once and exit
  python invoice_processor.py --watch ./scans --output ./invoices --once

Requires OPENAI_API_KEY (environment, .env, or saved control panel settings).
"""
    )
    parser.add_argument("--watch", default=CONFIG["paths"]["watch_folder"],
                        help="Folder to watch for new scans")
    parser.add_argument("--output", default=CONFIG["paths"]["output_folder"],
                        help="Folder for renamed files")
    parser.add_argument("--blocked", default=CONFIG["blocked_terms"],
                        help="Comma-separated filename terms to skip")
    parser.add_argument("--model", default=CONFIG["model"],
                        help=f"Vision model (default: {DEFAULT_MODEL})")
    parser.add_argument("--log-dir", default=CONFIG["logging"]["dir"],
                        help="Folder for per-run log files (empty to disable)")
    parser.add_argument("--once", action="store_true",
                        help="Process existing files once and exit")
    args = parser.parse_args()

    if args.log_dir:
        add_file_handler(args.log_dir)

    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        from settings import get_settings
        api_key = get_settings().get("openai_api_key")
    if not api_key:
        logger.error("No OpenAI API key configured. Set OPENAI_API_KEY or save one in the control panel.")
        sys.exit(1)

    config = WatchConfig.from_values(
        args.watch,
        args.output,
        api_key=api_key,
        blocked_terms=args.blocked,
        model=args.model,
        poll_interval=float(CONFIG["poll_interval"]),
        settle_delay=float(CONFIG["settle_delay"]),
    )
    processor = InvoiceProcessor(config)

    if args.once:
        results = processor.process_existing_files()
        renamed = sum(1 for r in results if r.get("success"))
        ledger = processor.state.ledger.snapshot()
        print(f"\n{'='*50}")
        print(f"✅ Renamed {renamed}/{len(results)} files")
        print(f"💰 {ledger['total_queries']} queries, ${ledger['total_cost']:.4f}")
        return

    processor.start()
    print(f"\n👁️  Watching folder: {config.watch_folder}")
    print(f"📤 Output folder: {config.output_folder}")
    print("Press Ctrl+C to stop\n")

    try:
        while processor.state.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\n\n👋 Stopping watcher...")
    finally:
        processor.stop()


if __name__ == "__main__":
    main()
