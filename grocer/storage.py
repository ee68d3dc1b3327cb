import ipaddress
import mimetypes
import os
import re
import socket
import time
import uuid
from logging import getLogger
from tempfile import NamedTemporaryFile
from urllib.parse import unquote, urljoin, urlparse

import requests
from django.conf import settings
from django.core.files import File
from django.core.files.storage import storages
from django.utils.functional import LazyObject
from PIL import Image

from grocer.exceptions import InvalidUpload, StorageError
from importer.exceptions import ImageImportFailure

logger = getLogger(__name__)


class LazyProductStorage(LazyObject):
    def _setup(self):
        self._wrapped = storages["products"]


class LazyOrderStorage(LazyObject):
    def _setup(self):
        self._wrapped = storages["orders"]


class LazyPromotionStorage(LazyObject):
    def _setup(self):
        self._wrapped = storages["promotions"]


# We use a LazyObject so the value isn't evaluated when the code is loaded,
# which is needed to override the setting during tests

PRODUCT_STORAGE = LazyProductStorage()

ORDER_STORAGE = LazyOrderStorage()

PROMOTION_STORAGE = LazyPromotionStorage()

UNSAFE_FILENAME_CHARACTERS = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(filename):
    name = UNSAFE_FILENAME_CHARACTERS.sub("_", os.path.basename(filename or ""))
    name = name.lstrip(".")[:100]
    return name or "file"


def validate_external_url(url):
    """
    Refuse URLs which could make the server fetch something it shouldn't:
    anything that isn't http(s), and hosts that resolve to loopback, private,
    link-local or otherwise non-public addresses.
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ImageImportFailure(f"Unsupported URL scheme in {url!r}")

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        raise ImageImportFailure(f"No host in {url!r}")

    if settings.STORAGE_ALLOW_PRIVATE_IMAGE_HOSTS:
        return

    if hostname == "localhost" or hostname.endswith(".localhost"):
        raise ImageImportFailure(f"Refusing to download from {hostname}")

    try:
        address_info = socket.getaddrinfo(hostname, parsed.port or None)
    except (socket.gaierror, ValueError) as exc:
        raise ImageImportFailure(f"Unable to resolve {hostname}") from exc

    for *_, sockaddr in address_info:
        address = ipaddress.ip_address(sockaddr[0].split("%", 1)[0])
        if not address.is_global or address.is_multicast:
            raise ImageImportFailure(
                f"Refusing to download from {hostname}: {address} is not public"
            )


def verify_image(image_file):
    with Image.open(image_file) as image:
        image.verify()


def _relative_name(storage, url):
    if not url:
        return None

    base = storage.url("").split("?", 1)[0]
    if not base.endswith("/"):
        base += "/"

    path = url.split("?", 1)[0].split("#", 1)[0]
    if not path.startswith(base):
        return None

    return unquote(path[len(base) :]) or None


class ObjectStorageGateway:
    """
    Uploads, copies and deletes blobs in the owned storages.

    Product images, order snapshots and promotion images each live in their
    own Django storage, so an object's namespace can be told from its URL
    prefix. Every method raises on failure; deleting a missing object is not a
    failure.
    """

    def __init__(
        self,
        product_storage=None,
        order_storage=None,
        promotion_storage=None,
        timeout=None,
    ):
        self.product_storage = (
            PRODUCT_STORAGE if product_storage is None else product_storage
        )
        self.order_storage = ORDER_STORAGE if order_storage is None else order_storage
        self.promotion_storage = (
            PROMOTION_STORAGE if promotion_storage is None else promotion_storage
        )
        self.timeout = settings.IMAGE_DOWNLOAD_TIMEOUT if timeout is None else timeout

    def upload_product_image(self, stream, filename, content_type):
        return self._upload(self.product_storage, stream, filename, content_type)

    def upload_promotion_image(self, stream, filename, content_type):
        return self._upload(self.promotion_storage, stream, filename, content_type)

    def _upload(self, storage, stream, filename, content_type):
        if not (content_type or "").startswith("image/"):
            raise InvalidUpload(
                f"Refusing to store {filename!r} with content type {content_type!r}"
            )

        name = f"{int(time.time())}_{sanitize_filename(filename)}"
        try:
            saved_name = storage.save(name, File(stream, name=name))
        except Exception as exc:
            logger.exception("Unable to store upload %s as %s", filename, name)
            raise StorageError(f"Unable to store {filename!r}") from exc

        return storage.url(saved_name)

    def _get_following_redirects(self, url):
        """
        Request ``url`` without letting requests follow redirects itself, so
        every hop is checked before we connect to it.
        """
        for _ in range(settings.IMAGE_DOWNLOAD_MAX_REDIRECTS + 1):
            validate_external_url(url)
            resp = requests.get(
                url, stream=True, timeout=self.timeout, allow_redirects=False
            )
            if not resp.is_redirect:
                return resp

            location = resp.headers.get("Location", "")
            resp.close()
            url = urljoin(url, location)

        raise ImageImportFailure(f"Too many redirects downloading {url}")

    def download_and_upload(self, foreign_url, product_id):
        """
        Download an image from a foreign host and store it in the product
        namespace under a name keyed by the product. Returns the owned URL.
        """
        max_bytes = settings.IMAGE_DOWNLOAD_MAX_BYTES

        try:
            # We'll download the remote file to a temporary file and only
            # upload it once the download has completed and looks like an image
            with (
                NamedTemporaryFile(mode="x+b") as temp_file,
                self._get_following_redirects(foreign_url) as resp,
            ):
                resp.raise_for_status()
                if resp.status_code != 200:
                    raise ImageImportFailure(
                        f"Unexpected HTTP {resp.status_code} for {foreign_url}"
                    )

                content_type = (
                    resp.headers.get("Content-Type", "")
                    .split(";", 1)[0]
                    .strip()
                    .lower()
                )
                if not content_type.startswith("image/"):
                    raise ImageImportFailure(
                        f"{foreign_url} returned {content_type or 'no'} "
                        "content type instead of an image"
                    )

                size = 0
                for chunk in resp.iter_content(chunk_size=256 * 1024):
                    size += len(chunk)
                    if size > max_bytes:
                        raise ImageImportFailure(
                            f"{foreign_url} is larger than {max_bytes} bytes"
                        )
                    temp_file.write(chunk)

                temp_file.flush()
                temp_file.seek(0)
                verify_image(temp_file)
                temp_file.seek(0)

                extension = mimetypes.guess_extension(content_type) or ".jpg"
                if extension == ".jpe":
                    extension = ".jpg"
                name = f"{product_id}_{uuid.uuid4().hex[:8]}{extension}"
                saved_name = self.product_storage.save(name, File(temp_file, name=name))
        except ImageImportFailure:
            raise
        except Exception as exc:
            logger.exception(
                "Unable to download %s for product %s", foreign_url, product_id
            )
            raise ImageImportFailure(
                f"Unable to download {foreign_url} for product {product_id}"
            ) from exc

        return self.product_storage.url(saved_name)

    def copy_to_order_storage(self, source_url, order_id, product_id):
        """
        Copy a product image into the order namespace so the order keeps its
        picture whatever later happens to the catalog.
        """
        source_name = self.object_path(source_url)
        if source_name is None:
            raise StorageError(f"{source_url} is not a product image")

        target_name = f"{order_id}/{product_id}_{os.path.basename(source_name)}"
        try:
            with self.product_storage.open(source_name, "rb") as source:
                saved_name = self.order_storage.save(target_name, source)
        except Exception as exc:
            logger.exception(
                "Unable to copy %s to order storage for order %s",
                source_name,
                order_id,
            )
            raise StorageError(f"Unable to copy {source_url}") from exc

        return self.order_storage.url(saved_name)

    def delete(self, object_path):
        if not object_path:
            raise StorageError("No object path given")

        try:
            self.product_storage.delete(object_path)
        except FileNotFoundError:
            logger.debug("%s was already absent from storage", object_path)
        except Exception as exc:
            logger.exception("Unable to delete %s from storage", object_path)
            raise StorageError(f"Unable to delete {object_path}") from exc

    def object_path(self, url):
        """
        Return the product storage name for an owned product image URL, or None
        for foreign URLs and order snapshots.
        """
        return _relative_name(self.product_storage, url)

    def is_product_url(self, url):
        return self.object_path(url) is not None

    def is_order_url(self, url):
        return _relative_name(self.order_storage, url) is not None
