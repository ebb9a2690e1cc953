"""
Source image preparation: download, normalise with Pillow, upload to the
goods image store.

The goods uploader only accepts plain JPEGs reliably, so every image is
re-encoded as RGB JPEG with EXIF / ICC metadata dropped before upload.
"""

import io
import logging
from collections.abc import Iterable

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_IMAGES = 10
JPEG_QUALITY = 95


def normalize_image(image_bytes: bytes) -> bytes:
    """
    Re-encode an image as metadata-free RGB JPEG.

    Args:
        image_bytes: Raw JPEG/PNG/WebP bytes as downloaded.

    Returns:
        JPEG bytes (quality=95), or the input unchanged if Pillow cannot decode it.
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        logger.info("Image not decodable (%s), uploading as-is", e)
        return image_bytes

    # Handles RGBA, palette, CMYK, etc.
    if img.mode != "RGB":
        img = img.convert("RGB")

    img.info.clear()

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


def split_image_urls(images: Iterable[str] | str | None) -> list[str]:
    """Image list as stored (comma separated) or already split; blanks dropped."""
    if not images:
        return []
    if isinstance(images, str):
        images = images.split(",")
    return [u.strip() for u in images if u and u.strip()]


def download_and_upload_images(client, image_urls: Iterable[str] | str | None, limit: int = MAX_IMAGES) -> list[str]:
    """
    Push up to `limit` source images through the client; returns the stored
    image names in source order. Failed downloads and uploads are skipped.
    """
    uploaded = []
    for i, url in enumerate(split_image_urls(image_urls)[:limit], start=1):
        raw = client.download_image(url)
        if raw is None:
            continue
        name = client.upload_image(normalize_image(raw), filename=f"image_{i}.jpg")
        if name:
            logger.info("Image uploaded: %s", name)
            uploaded.append(name)
    logger.info("Uploaded %d images", len(uploaded))
    return uploaded
