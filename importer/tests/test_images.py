import uuid
from unittest import mock

from django.test import SimpleTestCase

from grocer.models import ProductImage
from importer.exceptions import ImageImportFailure
from importer.images import (
    clean_image_urls,
    clean_url,
    fetch_and_store_images,
    partition_images,
)

URLS = ["https://a.test/1.png", "https://a.test/2.png"]


class CleanImageUrlsTests(SimpleTestCase):
    def test_clean_url(self):
        self.assertEqual(
            clean_url("  https://example.com/a.png,\n"), "https://example.com/a.png"
        )
        self.assertEqual(
            clean_url("https://example.com/\r\nb.png"), "https://example.com/b.png"
        )

    def test_string_values(self):
        self.assertEqual(
            clean_image_urls("https://a.test/1.png\nhttps://a.test/2.png,"),
            ["https://a.test/1.png", "https://a.test/2.png"],
        )
        self.assertEqual(
            clean_image_urls("https://a.test/1.png, https://a.test/2.png"),
            ["https://a.test/1.png", "https://a.test/2.png"],
        )

    def test_lists_drop_blanks_repeats_and_non_strings(self):
        self.assertEqual(
            clean_image_urls(
                ["https://a.test/1.png ", "", 7, None, "https://a.test/1.png"]
            ),
            ["https://a.test/1.png"],
        )

    def test_missing_values(self):
        self.assertEqual(clean_image_urls(None), [])
        self.assertEqual(clean_image_urls(""), [])
        self.assertEqual(clean_image_urls({"url": "x"}), [])


class FetchAndStoreImagesTests(SimpleTestCase):
    def setUp(self):
        self.product_id = uuid.uuid4()
        self.gateway = mock.Mock()

    def test_stores_every_url(self):
        self.gateway.download_and_upload.side_effect = (
            lambda url, product_id: "/media/products/" + url.rsplit("/", 1)[-1]
        )

        images, errors = fetch_and_store_images(
            self.gateway, self.product_id, URLS
        )

        self.assertEqual(
            [image.image_url for image in images],
            ["/media/products/1.png", "/media/products/2.png"],
        )
        self.assertEqual(
            [image.source_url for image in images],
            ["https://a.test/1.png", "https://a.test/2.png"],
        )
        self.assertEqual([image.is_primary for image in images], [True, False])
        self.assertTrue(all(image.product_id == self.product_id for image in images))
        self.assertEqual(errors, [None, None])

    def test_failures_are_isolated(self):
        failure = ImageImportFailure("boom")

        def download(url, product_id):
            if url.endswith("1.png"):
                raise failure
            return "/media/products/2.png"

        self.gateway.download_and_upload.side_effect = download

        images, errors = fetch_and_store_images(
            self.gateway, self.product_id, URLS
        )

        self.assertEqual(len(images), 1)
        self.assertTrue(images[0].is_primary)
        self.assertEqual(errors, [failure, None])

    def test_no_urls(self):
        self.assertEqual(
            fetch_and_store_images(self.gateway, self.product_id, []), ([], [])
        )
        self.gateway.download_and_upload.assert_not_called()


class PartitionImagesTests(SimpleTestCase):
    def test_partition(self):
        stored = ProductImage(
            image_url="/media/products/a.png", source_url="https://a.test/a.png"
        )
        uploaded = ProductImage(image_url="/media/products/b.png")
        stale = ProductImage(image_url="/media/products/c.png")

        kept, retired, added = partition_images(
            [stored, uploaded, stale],
            ["https://a.test/a.png", "/media/products/b.png", "https://a.test/d.png"],
        )

        self.assertEqual(
            kept,
            {"https://a.test/a.png": stored, "/media/products/b.png": uploaded},
        )
        self.assertEqual(retired, [stale])
        self.assertEqual(added, ["https://a.test/d.png"])

    def test_empty_request_retires_everything(self):
        image = ProductImage(image_url="/media/products/a.png")

        self.assertEqual(partition_images([image], []), ({}, [image], []))
