from unittest.mock import patch

from django.core.files.base import ContentFile
from django.test import TestCase

from grocer.storage import ORDER_STORAGE, PRODUCT_STORAGE
from grocer.tasks import restore_order_stock, snapshot_order_images

from .utils import (
    create_order,
    create_order_item,
    create_product,
    create_tenant,
    create_tenant_product,
    image_bytes,
)


class SnapshotOrderImagesTests(TestCase):
    def setUp(self):
        self.product = create_product()
        name = PRODUCT_STORAGE.save(
            f"{self.product.pk}_snapshot.png", ContentFile(image_bytes())
        )
        self.addCleanup(PRODUCT_STORAGE.delete, name)
        self.product_url = PRODUCT_STORAGE.url(name)
        self.order = create_order()

    def test_copies_product_images_into_order_storage(self):
        item = create_order_item(
            order=self.order, product=self.product, image_url=self.product_url
        )

        snapshot_order_images(str(self.order.pk))

        item.refresh_from_db()
        self.assertTrue(item.image_url.startswith("/media/orders/"))
        name = item.image_url[len("/media/orders/") :]
        self.addCleanup(ORDER_STORAGE.delete, name)
        self.assertTrue(ORDER_STORAGE.exists(name))
        self.assertTrue(name.startswith(f"{self.order.pk}/{self.product.pk}_"))

        # The copy outlives the catalog image
        PRODUCT_STORAGE.delete(self.product_url[len("/media/products/") :])
        self.assertTrue(ORDER_STORAGE.exists(name))

    def test_leaves_foreign_and_copied_urls_alone(self):
        foreign = create_order_item(
            order=self.order, image_url="https://cdn.example.com/apple.png"
        )
        copied = create_order_item(
            order=self.order, image_url=f"/media/orders/{self.order.pk}/x.png"
        )
        blank = create_order_item(order=self.order)

        with patch("grocer.tasks.ObjectStorageGateway.copy_to_order_storage") as copy:
            snapshot_order_images(str(self.order.pk))

        copy.assert_not_called()
        for item, url in (
            (foreign, "https://cdn.example.com/apple.png"),
            (copied, f"/media/orders/{self.order.pk}/x.png"),
            (blank, ""),
        ):
            item.refresh_from_db()
            self.assertEqual(item.image_url, url)


class RestoreOrderStockTests(TestCase):
    def test_restores_every_line(self):
        tenant = create_tenant()
        carried = create_tenant_product(tenant=tenant, stock_quantity=1)
        dropped = create_product(stock_quantity=0)
        order = create_order(tenant=tenant)
        create_order_item(order=order, product=carried.product, quantity=2)
        create_order_item(order=order, product=dropped, quantity=3)

        restore_order_stock(str(order.pk))

        carried.refresh_from_db()
        dropped.refresh_from_db()
        self.assertEqual(carried.stock_quantity, 3)
        self.assertEqual(dropped.stock_quantity, 3)

    def test_other_tenants_stock_is_untouched(self):
        product = create_product()
        elsewhere = create_tenant_product(product=product, stock_quantity=1)
        order = create_order(tenant=create_tenant())
        create_order_item(order=order, product=product, quantity=2)

        restore_order_stock(str(order.pk))

        elsewhere.refresh_from_db()
        product.refresh_from_db()
        self.assertEqual(elsewhere.stock_quantity, 1)
        self.assertEqual(product.stock_quantity, 2)

    def test_missing_order(self):
        with self.assertLogs("grocer.tasks", level="WARNING"):
            restore_order_stock("00000000-0000-0000-0000-000000000000")
