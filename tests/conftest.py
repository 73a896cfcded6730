"""
Pytest configuration and shared fixtures for Invoice Processor tests.
"""

import json
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from invoice_processor import WatchConfig
from vision_providers import RateLimiter, VisionProvider, VisionResponse


class FakeVisionProvider(VisionProvider):
    """Vision provider that replays canned replies instead of calling an API.

    Each reply is a dict (sent back as JSON), a raw string, or an exception
    to raise from the request. The last reply repeats once the list runs out.
    """

    name = "fake"
    display_name = "Fake Vision"

    def __init__(self, replies=None, available=True, **kwargs):
        kwargs.setdefault("rate_limiter", RateLimiter(0.0))
        kwargs.setdefault("sleep", self._record_sleep)
        super().__init__(**kwargs)
        self.replies = list(replies or [])
        self.available = available
        self.calls = []
        self.sleeps = []

    def _record_sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def is_available(self) -> bool:
        return self.available

    def _request(self, image_bytes: bytes, mime_type: str) -> VisionResponse:
        self.calls.append((image_bytes, mime_type))
        index = min(len(self.calls), len(self.replies)) - 1
        reply = self.replies[index] if self.replies else None
        if isinstance(reply, BaseException):
            raise reply
        content = reply if isinstance(reply, str) or reply is None else json.dumps(reply)
        return VisionResponse(content=content, prompt_tokens=100, completion_tokens=20)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def watch_dir(temp_dir: Path) -> Path:
    """Create a temporary scan folder."""
    watch = temp_dir / "scans"
    watch.mkdir()
    return watch


@pytest.fixture
def output_dir(temp_dir: Path) -> Path:
    """Create a temporary organized folder."""
    output = temp_dir / "processed"
    output.mkdir()
    return output


@pytest.fixture
def watch_config(watch_dir: Path, output_dir: Path) -> WatchConfig:
    """Config with no settle delay and a short poll interval."""
    return WatchConfig.from_values(
        watch_dir,
        output_dir,
        api_key="sk-test",
        blocked_terms="statement, Receipt",
        poll_interval=0.1,
        settle_delay=0.0,
    )


@pytest.fixture
def invoice_reply() -> dict:
    """A complete reply as the vision model returns it."""
    return {
        "company_name": "Acme, Inc.",
        "invoice_number": "INV-42",
        "invoice_date": "04/09/2025",
    }


@pytest.fixture
def fake_provider(invoice_reply: dict) -> FakeVisionProvider:
    return FakeVisionProvider([invoice_reply])


def wait_for(condition, timeout: float = 5.0) -> bool:
    """Poll condition until it is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.05)
    return condition()


def make_image(path: Path, color: str = "white", size=(100, 100)) -> Path:
    """Write a small real image; the format follows the extension."""
    from PIL import Image

    img = Image.new('RGB', size, color=color)
    img.save(path)
    return path


@pytest.fixture
def sample_jpg(watch_dir: Path) -> Path:
    """Create a minimal scanned invoice image."""
    return make_image(watch_dir / "scan_001.jpg")


@pytest.fixture
def sample_png(watch_dir: Path) -> Path:
    return make_image(watch_dir / "scan_002.png", color="lightgray")


@pytest.fixture(autouse=True)
def reset_env_vars():
    """Reset environment variables before each test."""
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def memory_keyring():
    """Replace the OS keychain with a dict for the duration of a test."""
    import keyring
    from keyring.errors import PasswordDeleteError

    store = {}

    def get_password(service, key):
        return store.get((service, key))

    def set_password(service, key, value):
        store[(service, key)] = value

    def delete_password(service, key):
        if (service, key) not in store:
            raise PasswordDeleteError(key)
        del store[(service, key)]

    with patch.object(keyring, "get_password", get_password), \
            patch.object(keyring, "set_password", set_password), \
            patch.object(keyring, "delete_password", delete_password):
        yield store


@pytest.fixture
def isolated_settings(temp_dir: Path, memory_keyring):
    """Fresh global Settings stored under a temporary config directory."""
    import settings

    os.environ["INVOICE_PROCESSOR_CONFIG_DIR"] = str(temp_dir / "config")
    for key in ("WATCH_FOLDER", "OUTPUT_FOLDER", "BLOCKED_TERMS", "OPENAI_API_KEY", "OPENAI_MODEL"):
        os.environ.pop(key, None)
    yield settings.reload_settings()
    settings._settings = None
