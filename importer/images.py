import re
from concurrent.futures import ThreadPoolExecutor
from logging import getLogger
from typing import Any, Optional, Sequence

from django.conf import settings

from grocer.logging import GrocerLogger
from grocer.models import ProductImage

logger = getLogger(__name__)
structured_logger = GrocerLogger.get_logger(__name__)

URL_SEPARATORS = re.compile(r"[\r\n,]+")


def clean_url(url: str) -> str:
    """
    Strip the debris spreadsheet cells leave around URLs: trailing commas,
    surrounding whitespace and embedded line breaks.
    """
    url = url.strip().rstrip(",").strip()
    return url.replace("\r", "").replace("\n", "")


def parse_image_urls(value: Any) -> list[str]:
    """
    Accept any of the shapes an image column arrives in: a list of strings, a
    single string holding newline- or comma-separated URLs, or a list mixing
    strings with other values (which are ignored).
    """
    if value is None:
        return []

    if isinstance(value, str):
        return URL_SEPARATORS.split(value)

    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str)]

    logger.warning("Ignoring image URLs of unexpected type %s", type(value).__name__)
    return []


def clean_image_urls(value: Any) -> list[str]:
    """
    Parse and normalize image URLs, dropping empties and repeats while keeping
    input order.
    """
    urls = []
    for url in parse_image_urls(value):
        url = clean_url(url)
        if url and url not in urls:
            urls.append(url)
    return urls


def fetch_and_store_images(
    gateway, product_id, urls: Sequence[str], max_workers: Optional[int] = None
) -> tuple[list[ProductImage], list[Optional[Exception]]]:
    """
    Download every URL into owned storage for the given product.

    Downloads run at most ``max_workers`` (default IMPORT_IMAGE_WORKERS) at a
    time so a single foreign host is never flooded.

    Returns the unsaved ProductImage instances in input order, the first one
    marked primary, and a list parallel to ``urls`` holding None or the
    exception raised for that URL. One failed image never fails the others.
    """
    if not urls:
        return [], []

    max_workers = max_workers or settings.IMPORT_IMAGE_WORKERS

    def fetch(url):
        return gateway.download_and_upload(url, product_id)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(fetch, url) for url in urls]

    images = []
    errors: list[Optional[Exception]] = []
    for url, future in zip(urls, futures):
        exc = future.exception()
        if exc is not None:
            structured_logger.warning(
                "Unable to import product image.",
                event_code="import_image_failed",
                reason=str(exc),
                reason_code="image_fetch_failed",
                product_id=str(product_id),
                url=url,
            )
            errors.append(exc)
            continue

        images.append(
            ProductImage(
                product_id=product_id,
                image_url=future.result(),
                source_url=url,
                is_primary=not images,
            )
        )
        errors.append(None)

    return images, errors


def partition_images(
    existing: Sequence[ProductImage], incoming: Sequence[str]
) -> tuple[dict[str, ProductImage], list[ProductImage], list[str]]:
    """
    Compare a product's current images with the URLs an import row asks for.

    An existing image matches an incoming URL when the URL is either the
    stored copy or the foreign address it was originally fetched from, so
    re-importing the same spreadsheet never downloads anything twice.

    Returns ``(kept, retired, added)``: a mapping of incoming URL to the
    existing image it matched, the existing images no URL asks for, and the
    URLs which still have to be fetched.
    """
    kept = {}
    for url in incoming:
        for image in existing:
            if url in (image.image_url, image.source_url):
                kept[url] = image
                break

    kept_ids = {image.pk for image in kept.values()}
    retired = [image for image in existing if image.pk not in kept_ids]
    added = [url for url in incoming if url not in kept]
    return kept, retired, added
