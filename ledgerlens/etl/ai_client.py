"""
AI Extraction Client - turns a statement text blob into raw model output.

Builds the parsing prompt, calls the Gemini completion API with a
per-attempt timeout, and retries failed calls with exponential backoff
through tenacity.
Provider errors are collapsed into a few operator-facing classes; invalid
credentials fail fast, everything else is retried up to the cap.

Only the first AI_MAX_INPUT_CHARS characters of a statement are sent.
Transactions past that point are not extracted.
"""
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from typing import Callable, NamedTuple, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .config import Config
from .errors import ExtractionFailure, FailureKind
from .schema import CATEGORIES

POLL_INTERVAL = 0.1

SYSTEM_PREFIX = (
    "You are a financial data analyst specializing in parsing bank statements. "
    "Extract transaction data accurately and format it as requested."
)

EXAMPLE_OUTPUT = """[
  {
    "date": "2024-01-15",
    "amount": -45.67,
    "description": "STARBUCKS COFFEE #123",
    "category": "Food & Dining",
    "transactionType": "debit",
    "merchant": "Starbucks"
  }
]"""


def build_parsing_prompt(statement_text: str, max_chars: int = Config.AI_MAX_INPUT_CHARS) -> str:
    """Assemble the full prompt: role, schema, truncated statement, output rules, example."""
    truncated = statement_text[:max_chars]
    ellipsis = "..." if len(statement_text) > max_chars else ""
    categories = ", ".join(c for c in CATEGORIES if c != "Other")

    return f"""{SYSTEM_PREFIX}

Please analyze this bank statement text and extract all transactions. For each transaction, provide the following information in JSON format:

Required fields:
- date: Transaction date (YYYY-MM-DD format)
- amount: Transaction amount (negative for debits/expenses, positive for credits/income)
- description: Transaction description
- category: One of these categories: {categories}
- transactionType: "debit" or "credit"

Optional fields:
- merchant: Merchant name if identifiable
- reference: Check number or reference number if present

Bank statement text:
{truncated} {ellipsis}

Please respond with a JSON array of transaction objects. If no transactions are found, return an empty array.
Only include actual transaction data, not headers, balances, or summary information.

Example format:
{EXAMPLE_OUTPUT}
"""


# ─────────────────────────────────────────────────────────────
# Provider error classification
# ─────────────────────────────────────────────────────────────

class ProviderTimeoutError(Exception):
    """The provider did not answer within the per-attempt timeout."""


class ProviderErrorClass(NamedTuple):
    label: str
    message: str
    retryable: bool


RATE_LIMITED = "rate_limited"
INVALID_CREDENTIALS = "invalid_credentials"
UPSTREAM_UNAVAILABLE = "upstream_unavailable"
UNKNOWN = "unknown"

_CREDENTIAL_MARKERS = ("api key not valid", "api_key_invalid", "invalid api key", "unauthenticated")


def classify_provider_error(error: BaseException) -> ProviderErrorClass:
    """Map a provider exception onto one of four operator-facing classes."""
    if isinstance(error, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return _rate_limited()
    if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
        return _invalid_credentials()
    if isinstance(error, (google_exceptions.ServerError, ProviderTimeoutError,
                          ConnectionError, TimeoutError)):
        return _upstream_unavailable()

    status = getattr(error, "code", None)
    if not isinstance(status, int):
        status = getattr(error, "status_code", None)
    if isinstance(status, int):
        if status == 429:
            return _rate_limited()
        if status in (401, 403):
            return _invalid_credentials()
        if status >= 500:
            return _upstream_unavailable()

    text = str(error).lower()
    if any(marker in text for marker in _CREDENTIAL_MARKERS):
        return _invalid_credentials()

    message = str(error) or "Unknown error occurred during AI processing"
    return ProviderErrorClass(UNKNOWN, message, True)


def _rate_limited():
    return ProviderErrorClass(RATE_LIMITED, "Rate limit exceeded. Please try again later.", True)


def _invalid_credentials():
    return ProviderErrorClass(
        INVALID_CREDENTIALS, "Invalid API key. Please check your Gemini API configuration.", False
    )


def _upstream_unavailable():
    return ProviderErrorClass(
        UPSTREAM_UNAVAILABLE, "Gemini service is temporarily unavailable. Please try again later.", True
    )


def _is_retryable(error: BaseException) -> bool:
    # Cancellation and other ingestion failures end the retry loop
    if isinstance(error, ExtractionFailure):
        return False
    return classify_provider_error(error).retryable


# ─────────────────────────────────────────────────────────────
# Provider
# ─────────────────────────────────────────────────────────────

class GeminiProvider:
    """Thin wrapper over google-generativeai tuned for reproducible structured output."""

    def __init__(self, api_key: str, model_name: str = Config.GEMINI_MODEL,
                 timeout: float = Config.AI_REQUEST_TIMEOUT):
        genai.configure(api_key=api_key)
        self.model_name = model_name
        self.timeout = timeout
        self.model = genai.GenerativeModel(
            model_name,
            generation_config=genai.types.GenerationConfig(
                temperature=0.1,  # Low temperature for consistent results
                max_output_tokens=2000,
                top_k=1,
                top_p=0.1,
            ),
        )
        logging.info(f"Initialized Gemini provider: {model_name}")

    def complete(self, prompt: str) -> str:
        response = self.model.generate_content(
            prompt,
            request_options={"timeout": self.timeout},
        )
        return response.text


class AIExtractionClient:
    """
    Text blob -> raw model output, with bounded retries.

    Usage:
        client = AIExtractionClient()
        raw = client.extract(statement_text)
    """

    def __init__(self, provider=None,
                 max_retries: int = Config.AI_MAX_RETRIES,
                 base_delay: float = Config.AI_RETRY_BASE_DELAY,
                 timeout: float = Config.AI_REQUEST_TIMEOUT,
                 max_input_chars: int = Config.AI_MAX_INPUT_CHARS,
                 api_key: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.provider = provider
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout
        self.max_input_chars = max_input_chars
        self.api_key = api_key or Config.GEMINI_API_KEY
        self._sleep = sleep

    def extract(self, text_blob: str, cancel_event: Optional[threading.Event] = None) -> str:
        if len(text_blob) > self.max_input_chars:
            logging.warning(
                f"Statement text is {len(text_blob)} chars; only the first "
                f"{self.max_input_chars} are sent for AI parsing"
            )
        prompt = build_parsing_prompt(text_blob, self.max_input_chars)
        provider = self._get_provider()

        attempts = 0
        try:
            for attempt in self._retrying(cancel_event):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._check_cancelled(cancel_event)
                    return self._attempt(provider, prompt, attempts, cancel_event)
        except ExtractionFailure:
            raise
        except Exception as e:
            error_class = classify_provider_error(e)
            raise ExtractionFailure(
                FailureKind.PROVIDER_UNAVAILABLE,
                f"AI parsing failed after {attempts} attempt(s): {error_class.message}",
                detail=error_class.message,
                details={"attempts": attempts, "errorClass": error_class.label},
            ) from e

    def _retrying(self, cancel_event: Optional[threading.Event]) -> Retrying:
        # wait_exponential gives base_delay * 2 ** (attempt - 1)
        return Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2),
            retry=retry_if_exception(_is_retryable),
            sleep=lambda delay: self._wait(delay, cancel_event),
            reraise=True,
        )

    def _attempt(self, provider, prompt: str, attempt: int,
                 cancel_event: Optional[threading.Event]) -> str:
        try:
            return self._call_provider(provider, prompt, cancel_event)
        except ExtractionFailure:
            raise
        except Exception as e:
            error_class = classify_provider_error(e)
            logging.error(
                f"AI parsing attempt {attempt}/{self.max_retries} failed "
                f"[{error_class.label}]: {error_class.message}"
            )
            raise

    def _get_provider(self):
        if self.provider is None:
            if not self.api_key:
                error_class = _invalid_credentials()
                raise ExtractionFailure(
                    FailureKind.PROVIDER_UNAVAILABLE,
                    "AI parsing is not configured: GEMINI_API_KEY is missing.",
                    detail=error_class.message,
                    details={"attempts": 0, "errorClass": error_class.label},
                )
            self.provider = GeminiProvider(self.api_key, timeout=self.timeout)
        return self.provider

    def _call_provider(self, provider, prompt: str, cancel_event: Optional[threading.Event]) -> str:
        """Run one completion with a caller-side deadline; abandon it on cancel or timeout."""
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(provider.complete, prompt)
        try:
            deadline = time.monotonic() + self.timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProviderTimeoutError(f"No response within {self.timeout}s")
                done, _ = wait_futures([future], timeout=min(remaining, POLL_INTERVAL))
                if done:
                    return future.result()
                self._check_cancelled(cancel_event)
        finally:
            # Never block on an abandoned call
            executor.shutdown(wait=False)

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            self._sleep(delay)
        elif cancel_event.wait(delay):
            self._check_cancelled(cancel_event)

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise ExtractionFailure(FailureKind.CANCELLED, "The upload was cancelled.")
