"""
Source side of the migration: fetch a Lazada product page and turn it into a
ProductRecord.

Both halves sit behind small protocols so the runner can be driven by any
fetcher (rendering proxy, saved HTML) or extractor.
"""

import json
import logging
import re
from typing import Protocol

from bs4 import BeautifulSoup
from curl_cffi import requests

from listing_models import ProductRecord
from manjaro_errors import FetchError

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 30
TITLE_SUFFIX = " | Lazada PH"

_IMAGE_RE = re.compile(r"//[a-z0-9-]+\.slatic\.net/p/[a-f0-9]+\.jpg")
_SKU_ID_RE = re.compile(r"_p_sku[=:](\d+)")
_PACKING_RE = re.compile(r"Package include[s]?[:\s]*(.+?)(?:\n|$)", re.IGNORECASE)
_LD_JSON_RE = re.compile(
    r'<script[^>]*type="application/ld\+json"[^>]*>(.*?)</script>',
    re.DOTALL,
)


class PageFetcher(Protocol):
    def fetch(self, url: str) -> str: ...


class ListingExtractor(Protocol):
    def extract(self, html: str, url: str) -> ProductRecord: ...


class HttpPageFetcher:
    """Plain GET with a Chrome TLS fingerprint. Non-200 and transport errors raise FetchError."""

    def __init__(self, session: requests.Session | None = None, timeout: int = FETCH_TIMEOUT):
        self.session = session or requests.Session(impersonate="chrome")
        self.timeout = timeout

    def fetch(self, url: str) -> str:
        headers = {
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        try:
            resp = self.session.get(url, headers=headers, timeout=self.timeout, allow_redirects=True)
        except requests.errors.RequestsError as e:
            raise FetchError(f"fetching {url} failed: {e}")
        if resp.status_code != 200:
            raise FetchError(f"fetching {url} returned HTTP {resp.status_code}", resp.status_code)
        return resp.text


# ─── Embedded JSON helpers ───────────────────────────────────────────────────


def extract_json_object(html: str, marker: str) -> str | None:
    """Balanced {...} that follows `marker` in a script blob, string-literal aware."""
    start = html.find(marker)
    if start == -1:
        return None
    i = html.find("{", start + len(marker))
    if i == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for j in range(i, len(html)):
        c = html[j]
        if escaped:
            escaped = False
        elif c == "\\":
            escaped = True
        elif c == '"':
            in_string = not in_string
        elif not in_string:
            if c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    return html[i:j + 1]
    return None


def extract_sku_specifications(html: str, sku_id: str | None) -> dict[str, str]:
    """
    Property name -> value name for the SKU the page is showing, resolved
    through skuBase.properties and the SKU's "pid:vid;pid:vid" propPath.
    """
    if not sku_id:
        return {}
    raw = extract_json_object(html, '"skuBase":')
    if raw is None:
        return {}
    try:
        sku_base = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return {}

    props: dict[str, tuple[str, dict[str, str]]] = {}
    for prop in sku_base.get("properties") or []:
        values = {str(v.get("vid")): str(v.get("name")) for v in prop.get("values") or []}
        props[str(prop.get("pid"))] = (str(prop.get("name")), values)

    specs: dict[str, str] = {}
    for sku in sku_base.get("skus") or []:
        if str(sku.get("skuId")) != sku_id:
            continue
        for pair in (sku.get("propPath") or "").split(";"):
            pid, _, vid = pair.partition(":")
            if pid in props and vid in props[pid][1]:
                specs[props[pid][0]] = props[pid][1][vid]
        break
    return specs


def _ld_product(html: str) -> dict | None:
    for raw in _LD_JSON_RE.findall(html):
        try:
            ld = json.loads(raw.strip())
        except (json.JSONDecodeError, ValueError):
            continue
        for entry in ld if isinstance(ld, list) else [ld]:
            if isinstance(entry, dict) and entry.get("@type") == "Product":
                return entry
    return None


def _text(soup: BeautifulSoup, selector: str) -> str | None:
    el = soup.select_one(selector)
    return el.get_text(" ", strip=True) if el is not None else None


# ─── Extractor ───────────────────────────────────────────────────────────────


class LazadaListingExtractor:
    """
    Lazada PDP -> ProductRecord. DOM selectors first; the schema.org Product
    JSON-LD block fills whatever the DOM did not yield.
    """

    def extract(self, html: str, url: str) -> ProductRecord:
        soup = BeautifulSoup(html, "html.parser")
        ld = _ld_product(html) or {}

        title = _text(soup, "h1.pdp-mod-product-badge-title") or _text(soup, "title") or ld.get("name")
        if title:
            title = title.replace(TITLE_SUFFIX, "").strip() or None

        offers = ld.get("offers") if isinstance(ld.get("offers"), dict) else {}
        price = _text(soup, ".pdp-v2-product-price-content-salePrice-amount")
        if price is None and offers.get("price") not in (None, ""):
            price = str(offers["price"])
        original_price = _text(soup, ".pdp-v2-product-price-content-originalPrice-amount")

        key_attrs: dict[str, str] = {}
        for item in soup.select(".key-li"):
            key = _text(item, ".key-title")
            value = _text(item, ".key-value")
            if key is not None and value is not None:
                key_attrs[key] = value

        dimensions = None
        length, width, height = (key_attrs.get(k, "") for k in ("Length", "Width", "Height"))
        if length or width or height:
            dimensions = f"{length} x {width} x {height}"

        images = list(dict.fromkeys("https:" + m for m in _IMAGE_RE.findall(html)))
        if not images:
            ld_images = ld.get("image") or []
            images = [ld_images] if isinstance(ld_images, str) else [i for i in ld_images if isinstance(i, str)]

        description = packing_list = None
        desc_el = (
            soup.select_one(".pdp-product-desc")
            or soup.select_one(".detail-content")
            or soup.select_one("#module_product_detail")
        )
        if desc_el is not None:
            description = desc_el.get_text(" ", strip=True)
            m = _PACKING_RE.search(desc_el.get_text("\n", strip=True))
            if m:
                packing_list = m.group(1).strip()
        elif ld.get("description"):
            description = str(ld["description"])

        sku_match = _SKU_ID_RE.search(html)
        sku_specs = extract_sku_specifications(html, sku_match.group(1) if sku_match else None)

        crumbs = soup.select(".breadcrumb_item_anchor span")
        category_label = crumbs[-1].get_text(strip=True) if crumbs else None

        record = ProductRecord(
            url=url,
            title=title,
            price_text=price,
            original_price_text=original_price,
            images=tuple(images),
            source_category_label=category_label,
            attributes={**key_attrs, **sku_specs},
            description_text=description,
            packing_list_text=packing_list,
            dimensions_text=dimensions,
            weight_text=key_attrs.get("Weight"),
        )
        logger.info(
            "Extracted %r: price=%s, %d images, category=%s",
            (title or "")[:50], price, len(images), category_label,
        )
        return record
