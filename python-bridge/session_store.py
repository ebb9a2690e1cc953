"""
Cookie jar for the Manjaro seller session.

Cookies are keyed by name only (no domain/path/expiry bookkeeping): the
backend's own session timeout is the only expiry authority. The curl_cffi
session is created with discard_cookies=True so this store is the single
source of cookies on every request.
"""

import json
import logging
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, cookies: Mapping[str, str] | None = None):
        self._cookies: dict[str, str] = dict(cookies or {})

    def __len__(self) -> int:
        return len(self._cookies)

    def __contains__(self, name: object) -> bool:
        return name in self._cookies

    def get(self, name: str) -> str | None:
        return self._cookies.get(name)

    def absorb(self, cookies: Mapping[str, str] | None) -> None:
        """Merge response cookies by name. Last write wins."""
        if not cookies:
            return
        for name, value in cookies.items():
            self._cookies[name] = value

    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self._cookies.items())

    def attach(self, headers: dict) -> dict:
        """Inject the full current cookie set into an outgoing header dict."""
        if self._cookies:
            headers["Cookie"] = self.cookie_header()
        else:
            headers.pop("Cookie", None)
        return headers

    def snapshot(self) -> dict[str, str]:
        return dict(self._cookies)

    def restore(self, snapshot: Mapping[str, str]) -> None:
        self._cookies = {str(k): str(v) for k, v in snapshot.items()}

    def clear(self) -> None:
        self._cookies.clear()

    # ─── Durable snapshot ────────────────────────────────────────────────

    def save(self, path: Path) -> None:
        path = Path(path)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.snapshot(), ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info("Saved %d cookies to %s", len(self._cookies), path)

    def load(self, path: Path) -> bool:
        """Restore from a snapshot file. A missing file means "not authenticated"."""
        path = Path(path)
        if not path.exists():
            logger.info("No cookie snapshot at %s", path)
            return False
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            logger.warning("Cookie snapshot %s is not an object, ignoring", path)
            return False
        self.restore(data)
        logger.info("Loaded cookies from %s: %s", path, sorted(self._cookies))
        return True
