"""
Retry-until-valid reads against the Manjaro backend.

Under load the backend hands back truncated pages or bounces valid sessions
to the login form. Reads therefore retry forever on a fixed interval until
the response has the expected shape. Only the caller's CancelToken (or an
operator-set max_attempts) ends the loop early.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from manjaro_errors import ManjaroError, PollCancelled, TransientBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative stop signal shared by a migration run and everything it blocks on."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True early if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)

    def raise_if_cancelled(self, label: str = "operation") -> None:
        if self._event.is_set():
            raise PollCancelled(f"{label} cancelled")


def poll_until_valid(
    fetch: Callable[[], str],
    is_valid: Callable[[str], bool],
    parse: Callable[[str], T],
    interval: float = 0.5,
    cancel: CancelToken | None = None,
    max_attempts: int | None = None,
    label: str = "read",
) -> T:
    """
    fetch -> validate -> parse, retrying on an invalid body or a transport error.

    Raises PollCancelled when `cancel` fires (checked before every attempt and
    during the wait), TransientBackendError once `max_attempts` is used up.
    """
    attempt = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled(label)
        attempt += 1
        try:
            body = fetch()
        except ManjaroError as e:
            logger.info("%s: request failed (%s), retrying", label, e.message)
            body = None

        if body is not None and is_valid(body):
            if attempt > 1:
                logger.info("%s: valid response after %d attempts", label, attempt)
            return parse(body)

        if body is not None:
            logger.info("%s: invalid response (len=%d), retrying", label, len(body))
        if attempt % 10 == 0:
            logger.warning("%s: still retrying after %d attempts", label, attempt)

        if max_attempts is not None and attempt >= max_attempts:
            raise TransientBackendError(f"{label}: no valid response after {attempt} attempts")

        if cancel is not None:
            if cancel.wait(interval):
                raise PollCancelled(f"{label} cancelled")
        elif interval > 0:
            time.sleep(interval)
