"""
Goods publishing form (store_goods_add / save_goods).

The seller-centre handler silently drops submissions that differ from what
the browser form sends, so field names, field order and the empty file
parts are reproduced exactly and the multipart body is assembled by hand.
"""

import logging
import random
import re
import uuid
from collections.abc import Mapping

from listing_models import (
    AttributeAssignment,
    ProductRecord,
    ShippingTemplate,
    SubmissionResult,
    TargetCategory,
)
from manjaro_errors import ManjaroError, SubmissionRejected

logger = logging.getLogger(__name__)

WAREHOUSE = "JIT"
COLOR_SPEC_ID = "1"
DEFAULT_STOCK = "100"
DESCRIPTION_MAX_CHARS = 500
DEFAULT_MATERIAL = "Plastic"
DEFAULT_COMMODITY = "General"

IMAGE_SLOTS = (
    "image_path",
    "image_size_path",
    "image_scene_path",
    "image_detail_path",
    "image_detail_path_1",
)

# Empty <input type=file> parts the browser emits right after these fields.
FILE_PLACEHOLDERS = {
    "image_path": "goods_image",
    "image_size_path": "goods_image_1",
    "image_scene_path": "goods_image_2",
    "image_detail_path": "goods_image_3",
    "image_detail_path_1": "goods_image_4",
    "video_path": "goods_video_4",
    "g_body": "add_album",
}

REDIRECT_STATUSES = (301, 302, 303, 307, 308)

_COMMONID_RE = re.compile(r"commonid=(\d+)")
_COMMONID_INPUT_RE = re.compile(r'name="commonid"\s+value="(\d+)"')


# ─── Field value helpers ─────────────────────────────────────────────────────


def parse_price(price_text: str | None) -> str:
    """Keep digits and dots only: '₱1,299.00' -> '1299.00'. Nothing left -> '0'."""
    if not price_text:
        return "0"
    return re.sub(r"[^0-9.]", "", price_text) or "0"


def _is_zero(amount: str) -> bool:
    try:
        return float(amount) == 0
    except ValueError:
        return True


def parse_weight(weight_text: str | None) -> str:
    """Kilograms as text. Grams are converted only when the unit has 'g' but not 'kg'."""
    if not weight_text:
        return "1"
    number = re.sub(r"[^0-9.]", "", weight_text)
    if not number:
        return "1"
    lowered = weight_text.lower()
    if "g" in lowered and "kg" not in lowered:
        try:
            return str(float(number) / 1000)
        except ValueError:
            return "1"
    return number


def parse_dimensions(dimensions_text: str | None) -> tuple[str, str, str]:
    """'30 x 20 x 5 cm' -> ('30', '20', '5'); missing parts default to 10."""
    if not dimensions_text:
        return ("10", "10", "10")
    cleaned = re.sub(r"[^0-9.x×X ]", "", dimensions_text).strip()
    parts = [p.strip() for p in re.split(r"[xX× ]+", cleaned)]
    dims = [parts[i] if i < len(parts) and parts[i] else "10" for i in range(3)]
    return (dims[0], dims[1], dims[2])


def _lookup(attributes: Mapping[str, str], key: str) -> str | None:
    for name, value in attributes.items():
        if name.lower() == key and value:
            return value
    return None


def sample_image_slots(images: list[str], rng: random.Random) -> list[str]:
    """Five slots drawn with replacement, as the browser form's script does."""
    return [rng.choice(images) for _ in IMAGE_SLOTS]


def build_description(record: ProductRecord, images: list[str], image_cdn_prefix: str) -> str:
    body = (record.description_text or "")[:DESCRIPTION_MAX_CHARS]
    for name in images:
        body += f'<img src="{image_cdn_prefix}{name}@!product-1280" />'
    return body


def build_sku_key(assignments: list[AttributeAssignment]) -> str:
    return "i_" + "".join(a.value_id for a in assignments) + "_" + WAREHOUSE


# ─── Form assembly ───────────────────────────────────────────────────────────


def build_goods_fields(
    record: ProductRecord,
    category: TargetCategory | None,
    images: list[str],
    transport: ShippingTemplate | None,
    assignments: list[AttributeAssignment],
    rng: random.Random,
    ref_url: str,
    image_cdn_prefix: str,
) -> list[tuple[str, str]]:
    """Ordered (name, value) pairs exactly as the add_step_two form posts them."""
    if not images:
        raise ValueError("cannot build goods form without uploaded images")
    if category is None or not category.id:
        raise ValueError("cannot build goods form without a resolved category")
    if transport is None or not transport.id:
        raise ValueError("cannot build goods form without a shipping template id")

    price = parse_price(record.price_text)
    market_price = parse_price(record.original_price_text)
    if _is_zero(market_price):
        market_price = price

    fields: list[tuple[str, str]] = [
        ("form_submit", "ok"),
        ("commonid", ""),
        ("type_id", "1"),
        ("ref_url", ref_url),
        ("cate_id", category.id),
        ("cate_name", category.full_path_label),
        ("g_name", record.title or ""),
        ("g_price", price),
        ("g_marketprice", market_price),
        ("g_costprice", "0.00"),
        ("g_discount", ""),
    ]

    for a in assignments:
        fields.append((f"sp_name[{a.attribute_id}]", a.attribute_name))
        fields.append((f"sp_val[{a.attribute_id}][{a.value_id}]", a.value_name))

    sku = build_sku_key(assignments)
    color_value_id = next((a.value_id for a in assignments if a.attribute_id == COLOR_SPEC_ID), "")
    fields.append(("warehouse[]", WAREHOUSE))
    fields += [
        (f"spec[{sku}][goods_id]", ""),
        (f"spec[{sku}][color]", color_value_id),
        (f"spec[{sku}][country_id]", WAREHOUSE),
        (f"spec[{sku}][color]", color_value_id),
    ]
    for a in assignments:
        fields.append((f"spec[{sku}][sp_value][{a.value_id}]", a.value_name))
    fields += [
        (f"spec[{sku}][marketprice]", market_price),
        (f"spec[{sku}][price]", price),
        (f"spec[{sku}][stock]", DEFAULT_STOCK),
        (f"spec[{sku}][alarm]", "0"),
        (f"spec[{sku}][sku]", ""),
        (f"spec[{sku}][barcode]", ""),
        ("g_storage", DEFAULT_STOCK),
        ("g_alarm", ""),
        ("g_serial", ""),
        ("g_barcode", ""),
    ]

    fields += list(zip(IMAGE_SLOTS, sample_image_slots(images, rng)))
    fields.append(("video_path", ""))

    length, width, height = parse_dimensions(record.dimensions_text)
    fields += [
        ("b_name", ""),
        ("b_id", ""),
        ("search_brand_keyword", ""),
        ("material", _lookup(record.attributes, "material") or DEFAULT_MATERIAL),
        ("commodity", record.source_category_label or DEFAULT_COMMODITY),
        ("length", length),
        ("width", width),
        ("height", height),
        ("weight", parse_weight(record.weight_text)),
        ("package_num[]", "1"),
        ("package_name[]", record.packing_list_text if record.packing_list_text is not None else "1"),
        ("g_body", build_description(record, images, image_cdn_prefix)),
        ("jumpMenu", "0"),
        ("m_body", ""),
        ("plate_top", "请选择"),
        ("plate_bottom", "请选择"),
        ("region", ""),
        ("province_id", ""),
        ("city_id", ""),
        ("area_id", ""),
        ("freight", "1"),
        ("transport_id", transport.id),
        ("transport_title", transport.name),
        ("express_type", transport.trans_type),
        ("g_vat", "0"),
        ("sgcate_id[]", "0"),
        ("g_state", "1"),
        ("approve_dispatch_time", "48"),
        ("g_commend", "1"),
        ("sup_id", "0"),
    ]
    return fields


def new_boundary() -> str:
    return "----WebKitFormBoundary" + uuid.uuid4().hex[:16]


def encode_multipart(fields: list[tuple[str, str]], boundary: str) -> bytes:
    """Browser-identical multipart body, placeholder file parts included."""
    chunks = []
    for name, value in fields:
        chunks.append(
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
            f"{value}\r\n"
        )
        placeholder = FILE_PLACEHOLDERS.get(name)
        if placeholder:
            chunks.append(
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{placeholder}"; filename=""\r\n'
                "Content-Type: application/octet-stream\r\n\r\n\r\n"
            )
    chunks.append(f"--{boundary}--\r\n")
    return "".join(chunks).encode("utf-8")


# ─── Response handling ───────────────────────────────────────────────────────


def extract_created_id(text: str) -> str | None:
    m = _COMMONID_RE.search(text) or _COMMONID_INPUT_RE.search(text)
    return m.group(1) if m else None


def classify_submission_response(status_code: int, location: str, body: str) -> SubmissionResult:
    """
    redirect to ...commonid=N  -> created N
    200 without Location       -> accepted (id scanned from the body if present)
    anything else              -> created only if the body embeds a commonid
    """
    if status_code in REDIRECT_STATUSES and "commonid=" in location:
        return SubmissionResult.ok(extract_created_id(location))
    if status_code == 200 and not location:
        return SubmissionResult.ok(extract_created_id(body))
    created = extract_created_id(body)
    if created:
        return SubmissionResult.ok(created)
    return SubmissionResult.failed(f"save_goods answered HTTP {status_code} without a goods id")


def _post_and_classify(client, body: bytes, boundary: str) -> SubmissionResult:
    resp = client.post_goods_form(body, boundary)
    location = resp.headers.get("location") or ""
    text = resp.text or ""
    logger.info("save_goods: HTTP %s, Location=%r", resp.status_code, location)

    result = classify_submission_response(resp.status_code, location, text)
    if result.success:
        return result

    if resp.status_code in REDIRECT_STATUSES and location:
        target = location if location.startswith("http") else f"{client.base_url}/{location.lstrip('/')}"
        text = client.get_page(target).text or ""
        created = extract_created_id(text)
        if created:
            return SubmissionResult.ok(created)

    raise SubmissionRejected(result.error_message or "goods submission rejected", body=text, status_code=resp.status_code)


def submit_goods(
    client,
    record: ProductRecord,
    category: TargetCategory | None,
    images: list[str],
    transport: ShippingTemplate | None,
    assignments: list[AttributeAssignment],
    rng: random.Random | None = None,
) -> SubmissionResult:
    """Build, post and classify one goods submission through the client's session."""
    fields = build_goods_fields(
        record,
        category,
        images,
        transport,
        assignments,
        rng=rng or random.Random(),
        ref_url=client.url("act=store_goods_add&op=index"),
        image_cdn_prefix=client.settings.image_cdn_prefix,
    )
    boundary = new_boundary()
    body = encode_multipart(fields, boundary)
    try:
        result = _post_and_classify(client, body, boundary)
    except SubmissionRejected as e:
        client.save_diagnostic("manjaro_response.html", e.body)
        logger.warning("Goods submission rejected: %s", e.message)
        return SubmissionResult.failed(e.message)
    except ManjaroError as e:
        logger.warning("Goods submission failed: %s", e.message)
        return SubmissionResult.failed(e.message)
    logger.info("Goods submitted, commonid=%s", result.created_id)
    return result
