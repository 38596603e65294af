import threading

import pytest
from google.api_core import exceptions as google_exceptions

from ledgerlens.etl import ai_client as ai_module
from ledgerlens.etl.ai_client import (
    AIExtractionClient, ProviderTimeoutError, build_parsing_prompt, classify_provider_error,
    INVALID_CREDENTIALS, RATE_LIMITED, UNKNOWN, UPSTREAM_UNAVAILABLE,
)
from ledgerlens.etl.config import Config
from ledgerlens.etl.errors import ExtractionFailure, FailureKind

from conftest import STARBUCKS_RESPONSE, FakeProvider, make_client


def test_returns_first_successful_response():
    client, provider = make_client(STARBUCKS_RESPONSE)
    assert client.extract("01/15 STARBUCKS COFFEE #123 -45.67") == STARBUCKS_RESPONSE
    assert provider.calls == 1


def test_gives_up_after_max_retries_with_exponential_backoff():
    delays = []
    client, provider = make_client(
        google_exceptions.ServiceUnavailable("backend down"),
        max_retries=3, base_delay=1, sleep=delays.append,
    )

    with pytest.raises(ExtractionFailure) as exc:
        client.extract("statement text")

    assert provider.calls == 3
    assert delays == [1, 2]
    assert exc.value.kind == FailureKind.PROVIDER_UNAVAILABLE
    assert exc.value.details == {"attempts": 3, "errorClass": UPSTREAM_UNAVAILABLE}
    assert "after 3 attempt(s)" in exc.value.message


def test_recovers_after_transient_failure():
    delays = []
    client, provider = make_client(
        google_exceptions.ResourceExhausted("quota"), "[]",
        base_delay=0.5, sleep=delays.append,
    )
    assert client.extract("statement text") == "[]"
    assert provider.calls == 2
    assert delays == [0.5]


def test_invalid_credentials_fail_fast():
    delays = []
    client, provider = make_client(
        google_exceptions.Unauthenticated("bad key"),
        max_retries=3, sleep=delays.append,
    )

    with pytest.raises(ExtractionFailure) as exc:
        client.extract("statement text")

    assert provider.calls == 1
    assert delays == []
    assert exc.value.details["errorClass"] == INVALID_CREDENTIALS


def test_backoff_doubles_between_attempts():
    delays = []
    client, provider = make_client(
        google_exceptions.InternalServerError("boom"),
        max_retries=4, base_delay=1.5, sleep=delays.append,
    )
    with pytest.raises(ExtractionFailure):
        client.extract("statement text")
    assert provider.calls == 4
    assert delays == [1.5, 3.0, 6.0]


def test_max_retries_must_be_positive():
    with pytest.raises(ValueError):
        AIExtractionClient(provider=FakeProvider("[]"), max_retries=0)


def test_only_the_first_chars_are_sent():
    client, provider = make_client("[]", max_input_chars=50)
    client.extract("A" * 60 + "TAIL")

    prompt = provider.prompts[0]
    assert "A" * 50 + " ..." in prompt
    assert "A" * 51 not in prompt
    assert "TAIL" not in prompt


def test_prompt_lists_categories_and_schema():
    prompt = build_parsing_prompt("01/15 STARBUCKS -45.67")
    assert "01/15 STARBUCKS -45.67" in prompt
    assert "Food & Dining" in prompt
    assert "transactionType" in prompt
    assert "YYYY-MM-DD" in prompt
    assert "..." not in prompt.split("Bank statement text:")[1].split("Please respond")[0]


def test_missing_api_key(monkeypatch):
    monkeypatch.setattr(Config, "GEMINI_API_KEY", None)
    client = AIExtractionClient(api_key=None)

    with pytest.raises(ExtractionFailure) as exc:
        client.extract("statement text")

    assert exc.value.kind == FailureKind.PROVIDER_UNAVAILABLE
    assert exc.value.details["attempts"] == 0


def test_cancelled_before_first_attempt():
    client, provider = make_client("[]")
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(ExtractionFailure) as exc:
        client.extract("statement text", cancel_event=cancel)

    assert exc.value.kind == FailureKind.CANCELLED
    assert provider.calls == 0


def test_cancelled_during_backoff():
    cancel = threading.Event()

    class CancellingProvider(FakeProvider):
        def complete(self, prompt):
            cancel.set()
            return super().complete(prompt)

    provider = CancellingProvider(google_exceptions.ServiceUnavailable("down"))
    client = AIExtractionClient(provider=provider, max_retries=3, base_delay=10, timeout=5)

    with pytest.raises(ExtractionFailure) as exc:
        client.extract("statement text", cancel_event=cancel)

    assert exc.value.kind == FailureKind.CANCELLED
    assert provider.calls == 1


def test_slow_provider_times_out(monkeypatch):
    monkeypatch.setattr(ai_module, "POLL_INTERVAL", 0.01)
    release = threading.Event()

    class SlowProvider:
        calls = 0

        def complete(self, prompt):
            SlowProvider.calls += 1
            release.wait(5)
            return "[]"

    client = AIExtractionClient(provider=SlowProvider(), max_retries=2, base_delay=0,
                                timeout=0.05, sleep=lambda _: None)
    try:
        with pytest.raises(ExtractionFailure) as exc:
            client.extract("statement text")
    finally:
        release.set()

    assert SlowProvider.calls >= 1
    assert exc.value.details == {"attempts": 2, "errorClass": UPSTREAM_UNAVAILABLE}


class _StatusError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


@pytest.mark.parametrize("error,label,retryable", [
    (google_exceptions.ResourceExhausted("quota exceeded"), RATE_LIMITED, True),
    (google_exceptions.TooManyRequests("slow down"), RATE_LIMITED, True),
    (google_exceptions.Unauthenticated("no"), INVALID_CREDENTIALS, False),
    (google_exceptions.PermissionDenied("no"), INVALID_CREDENTIALS, False),
    (google_exceptions.InternalServerError("boom"), UPSTREAM_UNAVAILABLE, True),
    (google_exceptions.ServiceUnavailable("down"), UPSTREAM_UNAVAILABLE, True),
    (ProviderTimeoutError("late"), UPSTREAM_UNAVAILABLE, True),
    (ConnectionError("reset"), UPSTREAM_UNAVAILABLE, True),
    (_StatusError(429), RATE_LIMITED, True),
    (_StatusError(403), INVALID_CREDENTIALS, False),
    (_StatusError(502), UPSTREAM_UNAVAILABLE, True),
    (ValueError("API key not valid. Please pass a valid API key."), INVALID_CREDENTIALS, False),
    (RuntimeError("something odd"), UNKNOWN, True),
])
def test_classify_provider_error(error, label, retryable):
    result = classify_provider_error(error)
    assert result.label == label
    assert result.retryable is retryable
    assert result.message
