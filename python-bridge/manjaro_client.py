"""
Manjaro Supply seller-centre client: a curl_cffi session driving the human
login / goods-publishing form flow (there is no API).

The selector/marker rules in this module are the de-facto protocol: the backend
answers in HTML or loose JSON-in-text with no schema. Each endpoint has one
classifier or parser function below so those rules live in one place.
"""

import enum
import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlencode

from bs4 import BeautifulSoup
from curl_cffi import CurlMime, requests

from bridge_settings import Settings
from listing_models import ShippingTemplate, SpecInfo, SpecValue, TargetCategory
from manjaro_errors import (
    AuthenticationFailed,
    AuthStateError,
    ChallengeRejected,
    ManjaroError,
    PollCancelled,
    ProtocolError,
)
from poller import CancelToken, poll_until_valid
from session_store import SessionStore

logger = logging.getLogger(__name__)

# Impersonate Chrome for the TLS fingerprint; keep UA and Client Hints aligned.
IMPOSTOR = "chrome"
CHROME_VERSION = "136"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    f"AppleWebKit/537.36 (KHTML, like Gecko) Chrome/{CHROME_VERSION}.0.0.0 Safari/537.36"
)
SEC_CH_UA = f'"Chromium";v="{CHROME_VERSION}", "Google Chrome";v="{CHROME_VERSION}", "Not.A/Brand";v="24"'

PAGE_TIMEOUT = 30
UPLOAD_TIMEOUT = 60

# Minimum body sizes below which a read page is known to be truncated.
MIN_TRANSPORT_PAGE_LEN = 1000
MIN_SPEC_PAGE_LEN = 10000


class AuthState(enum.Enum):
    UNAUTHENTICATED = 0
    PAGE_FETCHED = 1
    CHALLENGE_FETCHED = 2
    CHALLENGE_VERIFIED = 3
    LOGGED_IN = 4


# A captcha may be re-fetched (refresh) or re-checked before login.
_CHALLENGE_FETCHABLE = (AuthState.PAGE_FETCHED, AuthState.CHALLENGE_FETCHED, AuthState.CHALLENGE_VERIFIED)
_CHALLENGE_CHECKABLE = (AuthState.CHALLENGE_FETCHED, AuthState.CHALLENGE_VERIFIED)


@dataclass(frozen=True)
class AuthTokens:
    form_token: str  # formhash
    challenge_token: str  # nchash


def _build_headers(
    referer: str | None = None,
    origin: str | None = None,
    ajax: bool = False,
) -> dict:
    """Request headers matching a desktop Chrome browser on the seller centre."""
    headers = {
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Ch-Ua": SEC_CH_UA,
        "Sec-Ch-Ua-Mobile": "?0",
        "Sec-Ch-Ua-Platform": '"Windows"',
        "User-Agent": USER_AGENT,
    }
    if referer:
        headers["Referer"] = referer
    if origin:
        headers["Origin"] = origin
    if ajax:
        headers["Accept"] = "application/json, text/javascript, */*; q=0.01"
        headers["X-Requested-With"] = "XMLHttpRequest"
    return headers


# ─── Response classifiers / parsers (one per endpoint) ──────────────────────


def _input_value(soup: BeautifulSoup, name: str) -> str | None:
    tag = soup.select_one(f'input[name="{name}"]')
    return tag.get("value") if tag is not None else None


def extract_login_tokens(html_text: str) -> AuthTokens:
    """Pull the hidden formhash / nchash inputs out of the seller login page."""
    soup = BeautifulSoup(html_text, "html.parser")
    formhash = _input_value(soup, "formhash")
    nchash = _input_value(soup, "nchash")
    if not formhash or not nchash:
        raise ProtocolError(
            f"Login page is missing anti-automation tokens "
            f"(formhash={'yes' if formhash else 'no'}, nchash={'yes' if nchash else 'no'})"
        )
    return AuthTokens(form_token=formhash, challenge_token=nchash)


def classify_challenge_response(body: str) -> bool:
    """
    Captcha pre-check answer. The backend is inconsistent (true / 1 / {"x":"1"}),
    so any of those markers counts as accepted. Known to be loose.
    """
    return "true" in body.lower() or '"1"' in body or body.strip() == "1"


def classify_login_response(status_code: int, location: str, body: str) -> bool:
    if status_code == 302 and ("seller_center" in location or "seller" in location):
        return True
    return "登录成功" in body or "seller_center" in body


def is_logged_in_page(status_code: int, body: str) -> bool:
    return status_code == 200 and "seller_login" not in body


def is_valid_transport_page(body: str) -> bool:
    return len(body) >= MIN_TRANSPORT_PAGE_LEN and "data-param" in body


def is_valid_spec_page(body: str) -> bool:
    return len(body) >= MIN_SPEC_PAGE_LEN and "spec_group_dl" in body


_JS_PAIR_RE = re.compile(r"(\w+):'([^']*)'")


def parse_transport_templates(body: str) -> list[ShippingTemplate]:
    """Shipping templates are <a data-param="{id:'1',name:'x',trans_type:'y'}"> links."""
    templates = []
    for link in BeautifulSoup(body, "html.parser").select("a[data-param]"):
        normalized = _JS_PAIR_RE.sub(r'"\1":"\2"', link.get("data-param") or "")
        try:
            data = json.loads(normalized)
        except (json.JSONDecodeError, ValueError):
            continue
        if not isinstance(data, dict):
            continue
        templates.append(
            ShippingTemplate(
                id=str(data.get("id", "")),
                name=str(data.get("name", "")),
                trans_type=str(data.get("trans_type", "")),
            )
        )
    return templates


_SPEC_ID_RE = re.compile(r"id:(\d+)")
_SPEC_VALUE_NAME_RE = re.compile(r"sp_val\[\d+\]\[(\d+)\]")


def parse_category_specs(body: str) -> list[SpecInfo]:
    """Attribute schema from the add_step_two page, in page order."""
    specs = []
    for group in BeautifulSoup(body, "html.parser").select('dl[nctype="spec_group_dl"]'):
        spec_tag = group.select_one('input[nctype="spec_name"]')
        if spec_tag is None:
            continue
        spec_name = spec_tag.get("value") or ""
        m = _SPEC_ID_RE.search(spec_tag.get("data-param") or "")
        spec_id = m.group(1) if m else ""

        values = []
        for box in group.select("input[type]"):
            if box.get("type", "").lower() != "checkbox":
                continue
            vm = _SPEC_VALUE_NAME_RE.search(box.get("name") or "")
            value_name = box.get("value") or ""
            if vm and value_name:
                values.append(SpecValue(value_id=vm.group(1), value_name=value_name))

        if spec_name:
            specs.append(SpecInfo(spec_id, spec_name, tuple(values)))
    return specs


_CLASS_DATA_PATTERNS = (
    re.compile(r"var\s+class_data\s*=\s*(\[.*?\]);", re.DOTALL),
    re.compile(r"class_data\s*=\s*(\[.*?\]);", re.DOTALL),
)


def _class_data_json(body: str) -> list | None:
    for pattern in _CLASS_DATA_PATTERNS:
        m = pattern.search(body)
        if not m:
            continue
        try:
            data = json.loads(m.group(1))
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(data, list):
            return data
    return None


def is_valid_category_page(body: str) -> bool:
    return "class_data" in body and _class_data_json(body) is not None


def parse_class_data(body: str) -> list[TargetCategory]:
    """Flatten the nested class_data tree into categories with ' > ' joined paths."""
    categories: list[TargetCategory] = []

    def walk(nodes: list, parent_path: str) -> None:
        for node in nodes:
            if not isinstance(node, dict):
                continue
            cat_id = str(node.get("gc_id") or "")
            name = str(node.get("gc_name") or "")
            if not cat_id or not name:
                continue
            full_path = f"{parent_path} > {name}" if parent_path else name
            categories.append(TargetCategory(cat_id, name, full_path))
            child = node.get("child")
            if isinstance(child, list):
                walk(child, full_path)

    walk(_class_data_json(body) or [], "")
    return categories


def parse_added_spec_value(body: str) -> str | None:
    """ajax_add_spec answers with a bare id or a JSON object carrying one."""
    text = body.strip()
    if text.isdigit():
        return text
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    for key in ("value_id", "spv_id", "id"):
        if data.get(key) not in (None, ""):
            return str(data[key])
    return None


def parse_uploaded_image_name(body: str) -> str | None:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        return None
    if isinstance(data, dict) and data.get("name"):
        return str(data["name"])
    return None


# ─── Client ──────────────────────────────────────────────────────────────────


class ManjaroClient:
    """
    One authenticated seller session: cookie store, login state machine, and
    every read/write the migration needs. Not thread-safe; one run owns it.
    """

    def __init__(
        self,
        settings: Settings,
        session: requests.Session | None = None,
        store: SessionStore | None = None,
    ):
        self.settings = settings
        self.base_url = settings.base_url
        self.site_root = self.base_url.rsplit("/", 1)[0]
        self.session = session or requests.Session(impersonate=IMPOSTOR, discard_cookies=True)
        self.store = store or SessionStore()
        self.state = AuthState.UNAUTHENTICATED
        self.tokens: AuthTokens | None = None
        self.last_login_body: str | None = None

    def url(self, query: str) -> str:
        return f"{self.base_url}/index.php?{query}"

    # ── transport ──

    def _request(self, method: str, url: str, headers: dict | None = None, **kwargs):
        headers = self.store.attach(dict(headers or _build_headers()))
        kwargs.setdefault("timeout", PAGE_TIMEOUT)
        kwargs.setdefault("allow_redirects", False)
        try:
            resp = self.session.request(method, url, headers=headers, **kwargs)
        except requests.errors.RequestsError as e:
            raise ManjaroError(str(e), code="REQUEST_FAILED")
        self.store.absorb(resp.cookies)
        return resp

    def get_page(self, url: str, **kwargs):
        return self._request("GET", url, **kwargs)

    def save_diagnostic(self, name: str, content: str) -> Path | None:
        """Keep a raw response around for post-mortem; never fails the caller."""
        path = self.settings.diagnostics_dir / name
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write diagnostic %s: %s", path, e)
            return None
        logger.info("Response saved to %s", path)
        return path

    # ── login state machine ──

    def _require_state(self, allowed: tuple[AuthState, ...], step: str) -> None:
        if self.state not in allowed or self.tokens is None:
            names = "/".join(s.name for s in allowed)
            raise AuthStateError(f"{step} requires state {names}, current state is {self.state.name}")

    def reset(self) -> None:
        self.store.clear()
        self.tokens = None
        self.state = AuthState.UNAUTHENTICATED

    def fetch_login_page(self) -> AuthTokens:
        """GET the seller login page and extract formhash / nchash."""
        # Any previous tokens die with the page they came from.
        self.tokens = None
        self.state = AuthState.UNAUTHENTICATED
        resp = self.get_page(self.url("act=seller_login"))
        if resp.status_code != 200:
            raise ManjaroError(
                f"Login page returned HTTP {resp.status_code}",
                resp.status_code,
                code="HTTP_ERROR",
            )
        self.tokens = extract_login_tokens(resp.text)
        self.state = AuthState.PAGE_FETCHED
        logger.info("Login page fetched (PHPSESSID %s)", "set" if "PHPSESSID" in self.store else "missing")
        return self.tokens

    def fetch_challenge(self) -> Path:
        """Download the captcha image for the current nchash; returns the saved file path."""
        self._require_state(_CHALLENGE_FETCHABLE, "fetch_challenge")
        qs = urlencode({"act": "seccode", "op": "makecode", "nchash": self.tokens.challenge_token})
        resp = self.get_page(
            f"{self.base_url}/index.php?{qs}",
            headers=_build_headers(referer=self.url("act=seller_login")),
        )
        if resp.status_code != 200 or not resp.content:
            raise ManjaroError(
                f"Captcha download failed (HTTP {resp.status_code})",
                resp.status_code,
                code="CAPTCHA_UNAVAILABLE",
            )
        path = self.settings.captcha_file
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(resp.content)
        self.state = AuthState.CHALLENGE_FETCHED
        logger.info("Captcha saved to %s (%d bytes)", path, len(resp.content))
        return path

    def verify_challenge(self, answer: str) -> None:
        self._require_state(_CHALLENGE_CHECKABLE, "verify_challenge")
        qs = urlencode({
            "act": "seccode",
            "op": "check",
            "nchash": self.tokens.challenge_token,
            "captcha": answer,
        })
        resp = self.get_page(
            f"{self.base_url}/index.php?{qs}",
            headers=_build_headers(referer=self.url("act=seller_login"), ajax=True),
        )
        logger.info("Captcha check response: %s", resp.text[:200])
        if not classify_challenge_response(resp.text):
            raise ChallengeRejected("Captcha answer rejected", resp.status_code)
        self.state = AuthState.CHALLENGE_VERIFIED

    def login(self, username: str, password: str, answer: str) -> None:
        self._require_state((AuthState.CHALLENGE_VERIFIED,), "login")
        form = {
            "formhash": self.tokens.form_token,
            "nchash": self.tokens.challenge_token,
            "form_submit": "ok",
            "seller_name": username,
            "password": password,
            "captcha": answer,
        }
        headers = _build_headers(referer=self.url("act=seller_login"), origin=self.site_root)
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        resp = self._request("POST", self.url("act=seller_login&op=login"), headers=headers, data=form)

        location = resp.headers.get("location") or ""
        body = resp.text or ""
        logger.info("Login response: HTTP %s, Location=%r", resp.status_code, location)
        if classify_login_response(resp.status_code, location, body):
            self.state = AuthState.LOGGED_IN
            self.last_login_body = None
            self.store.save(self.settings.cookie_file)
            logger.info("Logged in as %s", username)
            return

        self.last_login_body = body
        self.save_diagnostic("manjaro_login_response.html", body)
        self.tokens = None
        self.state = AuthState.UNAUTHENTICATED
        raise AuthenticationFailed("Login rejected by seller centre", body=body, status_code=resp.status_code)

    def restore_from_snapshot(self) -> bool:
        """Load persisted cookies. Does not prove the session is still alive."""
        if not self.store.load(self.settings.cookie_file):
            return False
        self.state = AuthState.LOGGED_IN
        return True

    def check_login_valid(self) -> bool:
        """Single probe of the seller centre."""
        try:
            resp = self.get_page(self.url("act=seller_center"))
        except ManjaroError as e:
            logger.info("Login probe failed: %s", e.message)
            return False
        return is_logged_in_page(resp.status_code, resp.text or "")

    def check_login_valid_blocking(self, cancel: CancelToken | None = None) -> bool:
        """
        Probe until the seller centre answers without bouncing to the login page.
        The backend randomly redirects valid sessions under load, so a single
        failed probe proves nothing.
        """
        retries = 0
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled("login check")
            if self.check_login_valid():
                if retries:
                    logger.info("Login valid (after %d retries)", retries)
                return True
            retries += 1
            if retries % 10 == 0:
                logger.info("Login check still retrying... %d attempts", retries)
            if cancel is not None:
                if cancel.wait(self.settings.login_check_interval):
                    raise PollCancelled("login check cancelled")
            else:
                time.sleep(self.settings.login_check_interval)

    # ── resilient reads ──

    def _read_text(self, url: str) -> str:
        return self.get_page(url).text or ""

    def get_transport_list(self, cancel: CancelToken | None = None) -> list[ShippingTemplate]:
        templates = poll_until_valid(
            fetch=lambda: self._read_text(self.url("act=store_transport&type=select")),
            is_valid=is_valid_transport_page,
            parse=parse_transport_templates,
            interval=self.settings.poll_interval,
            cancel=cancel,
            max_attempts=self.settings.max_poll_attempts,
            label="shipping templates",
        )
        logger.info("Got %d shipping templates", len(templates))
        return templates

    def get_category_specs(self, cate_id: str, cancel: CancelToken | None = None) -> list[SpecInfo]:
        qs = urlencode({"act": "store_goods_add", "op": "add_step_two", "class_id": cate_id, "t_id": ""})
        specs = poll_until_valid(
            fetch=lambda: self._read_text(f"{self.base_url}/index.php?{qs}"),
            is_valid=is_valid_spec_page,
            parse=parse_category_specs,
            interval=self.settings.poll_interval,
            cancel=cancel,
            max_attempts=self.settings.max_poll_attempts,
            label=f"category {cate_id} specs",
        )
        for spec in specs:
            logger.info("  - %s (ID: %s): %d values", spec.attribute_name, spec.attribute_id, len(spec.existing_values))
        return specs

    def get_all_categories(self, cancel: CancelToken | None = None) -> list[TargetCategory]:
        categories = poll_until_valid(
            fetch=lambda: self._read_text(self.url("act=store_goods_add&op=index")),
            is_valid=is_valid_category_page,
            parse=parse_class_data,
            interval=self.settings.poll_interval,
            cancel=cancel,
            max_attempts=self.settings.max_poll_attempts,
            label="category catalog",
        )
        logger.info("Got %d categories from backend", len(categories))
        return categories

    # ── writes ──

    def download_image(self, image_url: str) -> bytes | None:
        """Fetch a source image through the shared session. None on any failure."""
        try:
            resp = self.session.request(
                "GET",
                image_url,
                headers=_build_headers(),
                timeout=PAGE_TIMEOUT,
                allow_redirects=True,
            )
        except requests.errors.RequestsError as e:
            logger.warning("Image download failed: %s - %s", image_url, e)
            return None
        if resp.status_code != 200 or not resp.content:
            logger.warning("Image download failed: %s - HTTP %s", image_url, resp.status_code)
            return None
        return resp.content

    def upload_image(self, image_bytes: bytes, filename: str = "image.jpg") -> str | None:
        """
        POST one image to the goods image uploader; returns the stored image
        name the goods form references, or None if the server refused it.
        """
        url = self.url("act=store_goods_add&op=image_upload&upload_type=uploadedfile")
        headers = _build_headers(
            referer=self.url("act=store_goods_add&op=add_step_two"),
            origin=self.site_root,
            ajax=True,
        )
        mime = CurlMime()
        mime.addpart(name="name", data=b"goods_image")
        mime.addpart(name="goods_image", filename=filename, content_type="image/jpeg", data=image_bytes)
        try:
            resp = self._request("POST", url, headers=headers, multipart=mime, timeout=UPLOAD_TIMEOUT)
        except ManjaroError as e:
            logger.warning("Image upload failed: %s", e.message)
            return None
        finally:
            mime.close()

        name = parse_uploaded_image_name(resp.text or "")
        if name is None:
            logger.warning("Image upload rejected: %s", (resp.text or "")[:300])
        return name

    def add_spec_value(self, cate_id: str, spec_id: str, value_name: str) -> str | None:
        """Create a new value for a category attribute; returns its id."""
        qs = urlencode({
            "act": "store_goods_add",
            "op": "ajax_add_spec",
            "gc_id": cate_id,
            "sp_id": spec_id,
            "name": value_name,
        })
        headers = _build_headers(
            referer=self.url(f"act=store_goods_add&op=add_step_two&class_id={cate_id}"),
            ajax=True,
        )
        try:
            resp = self.get_page(f"{self.base_url}/index.php?{qs}", headers=headers)
        except ManjaroError as e:
            logger.warning("Adding spec value %r failed: %s", value_name, e.message)
            return None
        logger.info("Add spec value response: %s", (resp.text or "")[:200])
        return parse_added_spec_value(resp.text or "")

    def post_goods_form(self, body: bytes, boundary: str):
        """POST the prebuilt goods multipart body; redirects are not followed."""
        headers = _build_headers(
            referer=self.url("act=store_goods_add&op=add_step_two"),
            origin=self.site_root,
        )
        headers["Content-Type"] = f"multipart/form-data; boundary={boundary}"
        return self._request(
            "POST",
            self.url("act=store_goods_add&op=save_goods"),
            headers=headers,
            data=body,
            timeout=UPLOAD_TIMEOUT,
        )
