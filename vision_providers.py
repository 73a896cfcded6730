#!/usr/bin/env python3
"""
Vision Provider Module - Extract invoice fields from document images.

Sends a document image to a vision-capable LLM and turns its free-form reply
into a structured ExtractionResult (company name, invoice number, invoice date).

Every outbound call goes through:
- a process-wide rate limiter (minimum interval between calls)
- retry with exponential backoff on connection-level failures only
- a cost ledger fed from the token usage reported by the API

Analysis never raises: network exhaustion, API errors and unparseable replies
all degrade to a sentinel result ("Unknown", "Unknown", today's date) that is
tagged as degraded so callers can tell it apart from a real extraction.

Usage:
    from vision_providers import get_provider

    provider = get_provider("openai", api_key="sk-...")
    result = provider.extract(image_bytes, "image/jpeg")
    if result.degraded:
        print(result.reason)
"""

import base64
import json
import logging
import os
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional

import openai
from dotenv import load_dotenv
from openai import OpenAI

# Load environment variables from .env file (if it exists and is accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    pass

logger = logging.getLogger("invoice_processor.vision")


# ==============================================================================
# CONSTANTS
# ==============================================================================

DEFAULT_MODEL = "gpt-4o"
REQUEST_TIMEOUT = 30.0  # seconds per API call
RATE_LIMIT = 1.0  # minimum seconds between API calls
MAX_ATTEMPTS = 3
INITIAL_RETRY_DELAY = 2.0  # doubles after every failed attempt

# OpenAI API pricing (USD)
PRICING = {
    "input": 0.01,     # per 1K prompt tokens
    "output": 0.03,    # per 1K completion tokens
    "image": 0.00765,  # per image
}

REQUIRED_KEYS = ("company_name", "invoice_number", "invoice_date")
UNKNOWN = "Unknown"
DATE_FORMAT = "%m/%d/%Y"

EXTRACTION_PROMPT = """Extract from invoice image:
1. Company Name (vendor at top of the invoice)
2. Invoice Number (from "Invoice #" field)
3. Invoice Date (from "Invoice Date" field, MM/DD/YYYY)

Return JSON:
{
  "company_name": "Example Company Inc",
  "invoice_number": "12345",
  "invoice_date": "04/09/2025"
}"""

# Matches a JSON object, allowing one level of nested braces
JSON_OBJECT_PATTERN = re.compile(r"\{(?:[^{}]|(?:\{[^{}]*\}))*\}")

# Connection-level failures worth retrying. APITimeoutError subclasses
# APIConnectionError.
RETRYABLE_EXCEPTIONS = (
    openai.APIConnectionError,
    ConnectionError,
    TimeoutError,
)


# ==============================================================================
# RESULT TYPES
# ==============================================================================

@dataclass(frozen=True)
class ExtractionResult:
    """Fields extracted from a document.

    Attributes:
        company_name: Vendor/company that issued the document
        document_id: Invoice or document number
        document_date: Date as returned by the model, usually MM/DD/YYYY
        degraded: True when this is the sentinel substituted for a failed analysis
        reason: Why the analysis degraded (None for real extractions)
    """
    company_name: Optional[str]
    document_id: Optional[str]
    document_date: Optional[str]
    degraded: bool = False
    reason: Optional[str] = None

    @classmethod
    def sentinel(cls, reason: str) -> "ExtractionResult":
        """Placeholder used when analysis cannot produce real data."""
        return cls(
            company_name=UNKNOWN,
            document_id=UNKNOWN,
            document_date=date.today().strftime(DATE_FORMAT),
            degraded=True,
            reason=reason,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractionResult":
        """Build a result from the wire/cache format."""
        return cls(
            company_name=_as_text(data.get("company_name")),
            document_id=_as_text(data.get("invoice_number")),
            document_date=_as_text(data.get("invoice_date")),
        )

    @property
    def is_complete(self) -> bool:
        return None not in (self.company_name, self.document_id, self.document_date)

    def to_dict(self) -> dict:
        """Export in the wire/cache format."""
        return {
            "company_name": self.company_name,
            "invoice_number": self.document_id,
            "invoice_date": self.document_date,
        }


@dataclass
class VisionResponse:
    """Raw reply from a vision API call."""
    content: Optional[str]
    prompt_tokens: int = 0
    completion_tokens: int = 0
    raw: Any = None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip()


# ==============================================================================
# COST LEDGER
# ==============================================================================

class CostLedger:
    """Running count of queries and money spent. Purely observational."""

    def __init__(self):
        self._lock = threading.Lock()
        self.total_queries = 0
        self.total_cost = 0.0

    def record(self, prompt_tokens: int = 0, completion_tokens: int = 0) -> float:
        """Add one query to the ledger and return its cost."""
        prompt_cost = (prompt_tokens / 1000.0) * PRICING["input"]
        completion_cost = (completion_tokens / 1000.0) * PRICING["output"]
        image_cost = PRICING["image"]
        query_cost = prompt_cost + completion_cost + image_cost

        with self._lock:
            self.total_queries += 1
            self.total_cost += query_cost
            total = self.total_cost

        logger.info(
            f"API Cost: ${query_cost:.4f} (Input: ${prompt_cost:.4f}, "
            f"Output: ${completion_cost:.4f}, Image: ${image_cost:.4f})"
        )
        logger.info(f"Total API Cost so far: ${total:.4f}")
        return query_cost

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "total_queries": self.total_queries,
                "total_cost": round(self.total_cost, 4),
            }


# ==============================================================================
# RATE LIMITING AND RETRY
# ==============================================================================

class RateLimiter:
    """Enforce a minimum interval between outbound calls.

    Callers are serialized: a second caller waits for the first to finish
    its sleep before computing its own.
    """

    def __init__(
        self,
        min_interval: float = RATE_LIMIT,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.min_interval = min_interval
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._last_call: Optional[float] = None

    def wait(self) -> float:
        """Block until the next call is allowed. Returns seconds slept."""
        with self._lock:
            sleep_time = 0.0
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                sleep_time = max(0.0, self.min_interval - elapsed)
            if sleep_time > 0:
                logger.info(f"Rate limiting: sleeping for {sleep_time:.2f} seconds")
                self._sleep(sleep_time)
            self._last_call = self._clock()
            return sleep_time


# Shared by every provider in the process unless one is passed explicitly
_shared_rate_limiter = RateLimiter()


def is_connection_error(exc: BaseException) -> bool:
    """True for failures a fresh attempt might fix (refused, reset, timeout)."""
    return isinstance(exc, RETRYABLE_EXCEPTIONS)


def call_with_retry(
    func: Callable[[], Any],
    is_retryable: Callable[[BaseException], bool] = is_connection_error,
    max_attempts: int = MAX_ATTEMPTS,
    initial_delay: float = INITIAL_RETRY_DELAY,
    sleep: Optional[Callable[[float], None]] = None,
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
) -> Any:
    """Call func, retrying retryable errors with exponential backoff.

    Delays double after every failed attempt (2, 4, 8, ... with the defaults).
    Non-retryable errors propagate immediately; after the last attempt the
    final retryable error is re-raised.

    Args:
        func: Zero-argument callable performing one attempt
        is_retryable: Decides whether an exception is worth another attempt
        max_attempts: Total attempts, including the first
        initial_delay: Seconds to wait after the first failure
        sleep: Sleep function (defaults to time.sleep)
        on_retry: Called as on_retry(exc, failed_attempt, delay) before waiting
    """
    sleep = sleep or time.sleep
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return func()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts:
                raise
            if on_retry:
                on_retry(exc, attempt, delay)
            sleep(delay)
            delay *= 2


# ==============================================================================
# RESPONSE PARSING
# ==============================================================================

def parse_json_response(response_text: Optional[str]) -> Optional[Any]:
    """Parse JSON from a model reply that may wrap it in prose or code fences.

    First looks for a brace-delimited object anywhere in the text; only when
    none is found is the whole text parsed as JSON.
    """
    if not response_text or not response_text.strip():
        return None

    json_match = JSON_OBJECT_PATTERN.search(response_text)
    try:
        if json_match:
            logger.debug(f"Extracted JSON: {json_match.group()}")
            return json.loads(json_match.group())
        logger.debug("No JSON structure found, trying to parse entire content")
        return json.loads(response_text)
    except json.JSONDecodeError:
        return None


def parse_extraction_response(content: Optional[str]) -> ExtractionResult:
    """Turn a model reply into an ExtractionResult, degrading on any failure."""
    if not content:
        logger.error("No content in vision model response")
        return ExtractionResult.sentinel("empty response")

    data = parse_json_response(content)
    if data is None:
        logger.error("Failed to parse JSON from vision model response")
        logger.error(f"Response content was: {content}")
        return ExtractionResult.sentinel("unparseable response")

    if not isinstance(data, dict) or not all(key in data for key in REQUIRED_KEYS):
        logger.error(f"Invalid JSON structure in response: {data!r}")
        return ExtractionResult.sentinel("missing required keys")

    result = ExtractionResult.from_dict(data)
    logger.info(
        f"Extracted data: company_name={result.company_name}, "
        f"invoice_number={result.document_id}, invoice_date={result.document_date}"
    )
    return result


# ==============================================================================
# BASE PROVIDER CLASS
# ==============================================================================

class VisionProvider(ABC):
    """Abstract base class for vision providers."""

    name: str = "base"
    display_name: str = "Base Provider"
    requires_api_key: bool = True

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        ledger: Optional[CostLedger] = None,
        max_attempts: int = MAX_ATTEMPTS,
        initial_delay: float = INITIAL_RETRY_DELAY,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.rate_limiter = rate_limiter or _shared_rate_limiter
        self.ledger = ledger or CostLedger()
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self._sleep = sleep or time.sleep

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured and available."""
        pass

    @abstractmethod
    def _request(self, image_bytes: bytes, mime_type: str) -> VisionResponse:
        """Perform a single API call. May raise connection errors."""
        pass

    def get_extraction_prompt(self) -> str:
        return EXTRACTION_PROMPT

    def analyze(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> Optional[VisionResponse]:
        """Send an image to the model, retrying connection failures.

        Returns None once every attempt has failed at the connection level.
        Other errors propagate.
        """
        attempt_number = [1]

        def attempt() -> VisionResponse:
            self.rate_limiter.wait()
            logger.info(
                f"Sending request to {self.display_name} "
                f"(attempt {attempt_number[0]}/{self.max_attempts})..."
            )
            return self._request(image_bytes, mime_type)

        def log_retry(exc: BaseException, failed_attempt: int, delay: float) -> None:
            attempt_number[0] = failed_attempt + 1
            logger.warning(
                f"Network error: {exc}. Retrying in {delay:g} seconds... "
                f"(attempt {failed_attempt + 1}/{self.max_attempts})"
            )

        try:
            response = call_with_retry(
                attempt,
                max_attempts=self.max_attempts,
                initial_delay=self.initial_delay,
                sleep=self._sleep,
                on_retry=log_retry,
            )
        except Exception as e:
            if not is_connection_error(e):
                raise
            logger.error(f"Network error after {self.max_attempts} attempts: {e}")
            return None

        logger.info(f"Received response from {self.display_name}")
        logger.debug(f"Raw response content: {response.raw!r}")
        self.ledger.record(response.prompt_tokens, response.completion_tokens)
        return response

    def extract(self, image_bytes: bytes, mime_type: str = "image/jpeg") -> ExtractionResult:
        """Analyze an image and parse the reply. Never raises."""
        if not self.is_available():
            logger.error(f"{self.display_name} is not configured (missing API key?)")
            return ExtractionResult.sentinel("provider not configured")

        logger.info(f"Analyzing image with {self.display_name}")
        try:
            response = self.analyze(image_bytes, mime_type)
        except Exception as e:
            logger.error(f"Vision analysis failed: {type(e).__name__}: {e}", exc_info=True)
            return ExtractionResult.sentinel(f"{type(e).__name__}: {e}")

        if response is None:
            return ExtractionResult.sentinel("network error after retries")
        return parse_extraction_response(response.content)


# ==============================================================================
# OPENAI PROVIDER
# ==============================================================================

class OpenAIVisionProvider(VisionProvider):
    """OpenAI GPT-4o vision provider."""

    name = "openai"
    display_name = "OpenAI Vision API"
    requires_api_key = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = REQUEST_TIMEOUT,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self.timeout = timeout
        self._client: Optional[OpenAI] = None

    def is_available(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            # SDK retries disabled; call_with_retry owns the retry policy
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    def _request(self, image_bytes: bytes, mime_type: str) -> VisionResponse:
        image_data = base64.b64encode(image_bytes).decode("ascii")

        response = self.client.chat.completions.create(
            model=self.model,
            max_tokens=500,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.get_extraction_prompt()},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{image_data}"},
                        },
                    ],
                }
            ],
        )

        content = response.choices[0].message.content if response.choices else None
        usage = response.usage
        return VisionResponse(
            content=content,
            prompt_tokens=(usage.prompt_tokens or 0) if usage else 0,
            completion_tokens=(usage.completion_tokens or 0) if usage else 0,
            raw=response,
        )


# ==============================================================================
# PROVIDER REGISTRY
# ==============================================================================

PROVIDERS = {
    "openai": OpenAIVisionProvider,
}


def get_provider(name: Optional[str] = None, **kwargs) -> VisionProvider:
    """
    Get a vision provider instance.

    Args:
        name: Provider name. If None, uses the VISION_PROVIDER env var (default "openai").
        **kwargs: Provider-specific configuration options.

    Raises:
        ValueError: If the specified provider is not found.
    """
    if name is None:
        name = os.getenv("VISION_PROVIDER", "openai").lower() or "openai"

    if name not in PROVIDERS:
        available = ", ".join(PROVIDERS.keys())
        raise ValueError(f"Unknown provider '{name}'. Available: {available}")

    return PROVIDERS[name](**kwargs)
