import threading
import time

import pytest

from manjaro_errors import ManjaroError, PollCancelled, TransientBackendError
from poller import CancelToken, poll_until_valid


def _feed(*bodies):
    """fetch() returning each body in turn; exceptions are raised."""
    queue = list(bodies)
    calls = []

    def fetch():
        calls.append(1)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return fetch, calls


def test_returns_parsed_value_after_invalid_responses():
    fetch, calls = _feed("bad", "bad", "bad", "GOOD")
    result = poll_until_valid(fetch, lambda b: b == "GOOD", str.lower, interval=0)
    assert result == "good"
    assert len(calls) == 4


def test_request_errors_count_as_invalid():
    fetch, calls = _feed(ManjaroError("reset"), "GOOD")
    assert poll_until_valid(fetch, lambda b: b == "GOOD", len, interval=0) == 4
    assert len(calls) == 2


def test_max_attempts_raises_transient_error():
    fetch, calls = _feed(*["bad"] * 10)
    with pytest.raises(TransientBackendError):
        poll_until_valid(fetch, lambda b: False, str, interval=0, max_attempts=5)
    assert len(calls) == 5


def test_cancelled_token_stops_before_first_fetch():
    token = CancelToken()
    token.cancel()
    fetch, calls = _feed("GOOD")
    with pytest.raises(PollCancelled):
        poll_until_valid(fetch, lambda b: True, str, cancel=token)
    assert calls == []


def test_cancel_interrupts_wait():
    token = CancelToken()
    timer = threading.Timer(0.05, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(PollCancelled):
            poll_until_valid(lambda: "bad", lambda b: False, str, interval=30, cancel=token)
    finally:
        timer.cancel()
    assert time.monotonic() - started < 5


def test_cancel_token_wait():
    token = CancelToken()
    assert token.wait(0) is False
    assert token.cancelled is False
    token.cancel()
    assert token.wait(10) is True
    assert token.cancelled is True
    with pytest.raises(PollCancelled):
        token.raise_if_cancelled("read")
