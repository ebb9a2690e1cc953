#!/usr/bin/env python3
"""
Manjaro Migrator Bridge
Local HTTP server driving the Lazada -> Manjaro Supply migration: seller
login (captcha), category catalog, background migration runs and the local
product record.
"""

import base64
import logging
from typing import Optional

import uvicorn
from fastapi import Body, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bridge_settings import Settings, load_settings
from category_matcher import CategoryCatalog, CategoryMatcher
from listing_extractor import HttpPageFetcher, LazadaListingExtractor
from manjaro_client import AuthState, ManjaroClient
from manjaro_errors import (
    AuthenticationFailed,
    AuthStateError,
    ChallengeRejected,
    ManjaroError,
    RunAlreadyActive,
)
from migration import ListingUploader, MigrationRunner
from product_store import ProductStore

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Manjaro Migrator Bridge",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost",
        "http://127.0.0.1",
        "app://.",
        "file://",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ERROR_STATUS = {
    AuthStateError: 409,
    ChallengeRejected: 401,
    AuthenticationFailed: 401,
    RunAlreadyActive: 409,
}


class Bridge:
    """Everything one bridge process shares between requests: one seller session, one run."""

    def __init__(self, settings: Settings, session=None, fetcher=None, extractor=None, rng=None):
        self.settings = settings
        self._session = session
        self.client = ManjaroClient(settings, session=session)
        self.catalog = CategoryCatalog.load(settings.categories_file)
        self.matcher = CategoryMatcher(
            self.catalog,
            api_key=settings.qwen_api_key,
            api_url=settings.qwen_api_url,
            model=settings.qwen_model,
        )
        self.store = ProductStore(settings.db_path)
        self.uploader = ListingUploader(self.client, self.matcher, settings, rng=rng)
        self.runner = MigrationRunner(
            self.uploader,
            fetcher or HttpPageFetcher(),
            extractor or LazadaListingExtractor(),
            self.store,
            pacing_delay=settings.pacing_delay,
        )

    def new_client(self) -> ManjaroClient:
        """Fresh session for a new login attempt; the uploader follows it."""
        self.client = ManjaroClient(self.settings, session=self._session)
        self.uploader.client = self.client
        return self.client

    def ensure_logged_in(self) -> bool:
        if self.client.state is AuthState.LOGGED_IN:
            return True
        return self.client.restore_from_snapshot()


def _bridge() -> Bridge:
    bridge = getattr(app.state, "bridge", None)
    if bridge is None:
        bridge = Bridge(load_settings())
        app.state.bridge = bridge
    return bridge


def _error_response(code: str, message: str, status_code: int = 500) -> JSONResponse:
    """Structured error for the UI: { ok: false, code, message }"""
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "code": code, "message": message},
    )


def _manjaro_error(e: ManjaroError) -> JSONResponse:
    status = _ERROR_STATUS.get(type(e)) or e.status_code or 500
    if status < 400:
        status = 502
    return _error_response(e.code, e.message, status)


@app.get("/health")
def health():
    """Health check for the UI to verify the bridge is running."""
    return {"ok": True, "service": "manjaro-migrator-bridge"}


# ─── Login ───────────────────────────────────────────────────────────────────


@app.get("/captcha")
def captcha():
    """Start a new login: fresh session, login page tokens, captcha image as a data URL."""
    bridge = _bridge()
    if bridge.runner.running:
        return _error_response(RunAlreadyActive.code, "cannot log in again while a run is active", 409)
    client = bridge.new_client()
    try:
        client.fetch_login_page()
        path = client.fetch_challenge()
    except ManjaroError as e:
        return _manjaro_error(e)
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return {"ok": True, "captchaBase64": f"data:image/png;base64,{encoded}"}


@app.post("/login")
def login(body: dict = Body(...)):
    """
    Body: { "username": "...", "password": "...", "captcha": "abcd" }
    The captcha is pre-checked before the credentials are posted.
    """
    username = (body.get("username") or "").strip()
    password = body.get("password") or ""
    answer = (body.get("captcha") or "").strip()
    if not username or not password or not answer:
        return _error_response("INVALID_BODY", "username, password and captcha required", 400)

    client = _bridge().client
    try:
        client.verify_challenge(answer)
        client.login(username, password, answer)
    except ManjaroError as e:
        return _manjaro_error(e)
    return {"ok": True, "loggedIn": True}


@app.get("/login/status")
def login_status():
    """
    Restores the saved session if needed, then probes the seller centre once.
    While a run is active the session belongs to the run thread, so the last
    known state is reported without a probe.
    """
    bridge = _bridge()
    if bridge.runner.running:
        return {"ok": True, "loggedIn": bridge.client.state is AuthState.LOGGED_IN}
    logged_in = bridge.ensure_logged_in() and bridge.client.check_login_valid()
    return {"ok": True, "loggedIn": logged_in}


# ─── Settings ────────────────────────────────────────────────────────────────


@app.get("/settings")
def get_settings():
    matcher = _bridge().matcher
    return {"ok": True, "data": {"qwenKey": matcher.api_key, "qwenModel": matcher.model}}


@app.post("/settings")
def save_settings(body: dict = Body(...)):
    """Body: { "qwenKey": "...", "qwenModel": "qwen-turbo" }. Applies to the running process only."""
    matcher = _bridge().matcher
    if "qwenKey" in body:
        matcher.api_key = (body.get("qwenKey") or "").strip()
    if body.get("qwenModel"):
        matcher.model = str(body["qwenModel"]).strip()
    logger.info("Settings updated (LLM key %s)", "set" if matcher.api_key else "cleared")
    return {"ok": True, "data": {"qwenKey": matcher.api_key, "qwenModel": matcher.model}}


# ─── Categories ──────────────────────────────────────────────────────────────


@app.post("/categories/sync")
def sync_categories():
    """Pull the full category tree from the seller centre and persist it as the catalog."""
    bridge = _bridge()
    if bridge.runner.running:
        return _error_response(RunAlreadyActive.code, "cannot sync categories while a run is active", 409)
    if not bridge.ensure_logged_in():
        return _error_response("NOT_LOGGED_IN", "log in to the seller centre first", 401)
    try:
        categories = bridge.client.get_all_categories()
    except ManjaroError as e:
        return _manjaro_error(e)
    if not categories:
        return _error_response("EMPTY_CATALOG", "seller centre returned no categories", 502)
    bridge.catalog.replace(categories)
    bridge.catalog.save(bridge.settings.categories_file)
    return {"ok": True, "count": len(bridge.catalog)}


@app.get("/categories/count")
def category_count():
    return {"ok": True, "count": len(_bridge().catalog)}


# ─── Migration task ──────────────────────────────────────────────────────────


@app.post("/task/start")
def start_task(body: dict = Body(...)):
    """
    Body: { "urls": ["https://www.lazada.com.ph/products/...", ...] }
    Non-Lazada and non-http entries are ignored.
    """
    raw = body.get("urls")
    if not isinstance(raw, list):
        return _error_response("INVALID_BODY", "urls must be a list", 400)
    urls = [u.strip() for u in raw if isinstance(u, str) and u.strip().startswith("http") and "lazada" in u]
    if not urls:
        return _error_response("NO_URLS", "no valid Lazada links found", 400)

    bridge = _bridge()
    if not bridge.runner.running and not bridge.ensure_logged_in():
        return _error_response("NOT_LOGGED_IN", "log in to the seller centre first", 401)
    try:
        bridge.runner.start(urls)
    except RunAlreadyActive as e:
        return _manjaro_error(e)
    return {"ok": True, "total": len(urls)}


@app.post("/task/stop")
def stop_task():
    return {"ok": True, "stopped": _bridge().runner.stop()}


@app.get("/task/progress")
def task_progress():
    return {"ok": True, "data": _bridge().runner.progress().to_dict()}


# ─── Local product record ────────────────────────────────────────────────────


@app.get("/products")
def list_products(limit: int = Query(100, ge=1, le=1000)):
    products = _bridge().store.list(limit)
    return {"ok": True, "data": products, "total": len(products)}


@app.get("/products/stats")
def product_stats():
    return {"ok": True, "data": _bridge().store.stats()}


@app.delete("/products")
def clear_products():
    bridge = _bridge()
    if bridge.runner.running:
        return _error_response(RunAlreadyActive.code, "cannot clear products while a run is active", 409)
    return {"ok": True, "deleted": bridge.store.delete_all()}


def main(settings: Optional[Settings] = None) -> None:
    settings = settings or load_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.state.bridge = Bridge(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level)


if __name__ == "__main__":
    main()
