import datetime
import re
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.test import TestCase

from grocer.exceptions import CategoryInUse
from grocer.models import (
    ALLOWED_TRANSITIONS,
    OrderStatus,
    Product,
    TenantProduct,
    generate_order_number,
    is_valid_transition,
    promotion_active,
)

from .utils import (
    create_category,
    create_order,
    create_product,
    create_product_image,
    create_subcategory,
    create_tenant,
    create_tenant_product,
)


class SoftDeleteTests(TestCase):
    def test_managers_split_live_and_deleted_rows(self):
        live = create_product(sku="LIVE")
        gone = create_product(sku="GONE")
        gone.soft_delete(deleted_by="admin")

        self.assertQuerySetEqual(Product.objects.all(), [live])
        self.assertEqual(Product.all_objects.count(), 2)
        self.assertQuerySetEqual(Product.all_objects.deleted(), [gone])

        gone.refresh_from_db()
        self.assertTrue(gone.is_deleted)
        self.assertEqual(gone.deleted_by, "admin")

    def test_queryset_soft_delete_is_a_single_update_of_live_rows(self):
        first = create_product(sku="A")
        second = create_product(sku="B")
        second.soft_delete(deleted_by="admin")
        deleted_at = Product.all_objects.get(pk=second.pk).deleted_at

        count = Product.all_objects.filter(pk__in=[first.pk, second.pk]).soft_delete(
            "import"
        )

        self.assertEqual(count, 1)
        second.refresh_from_db()
        self.assertEqual(second.deleted_at, deleted_at)
        self.assertEqual(second.deleted_by, "admin")

    def test_restore(self):
        product = create_product()
        product.soft_delete(deleted_by="admin")

        product.restore()

        product.refresh_from_db()
        self.assertIsNone(product.deleted_at)
        self.assertEqual(product.deleted_by, "")
        self.assertIn(product, Product.objects.all())

    def test_category_in_use_cannot_be_deleted(self):
        category = create_category()
        create_product(category=category)

        with self.assertRaises(CategoryInUse):
            category.soft_delete(deleted_by="admin")

    def test_category_with_live_subcategory_cannot_be_deleted(self):
        category = create_category()
        create_subcategory(category=category)

        with self.assertRaises(CategoryInUse):
            category.soft_delete()

    def test_category_only_referenced_by_deleted_products_can_be_deleted(self):
        category = create_category()
        create_product(category=category).soft_delete()

        category.soft_delete(deleted_by="admin")

        category.refresh_from_db()
        self.assertTrue(category.is_deleted)


class ProductConstraintTests(TestCase):
    def test_sku_is_unique_among_live_products(self):
        create_product(sku="DUP")

        with self.assertRaises(IntegrityError), transaction.atomic():
            create_product(sku="DUP")

    def test_deleted_products_release_their_sku(self):
        create_product(sku="DUP").soft_delete()

        create_product(sku="DUP")

        self.assertEqual(Product.all_objects.filter(sku="DUP").count(), 2)

    def test_barcode_is_unique_among_live_products_when_set(self):
        create_product(barcode=None)
        create_product(barcode=None)
        create_product(barcode="5000000000001")

        with self.assertRaises(IntegrityError), transaction.atomic():
            create_product(barcode="5000000000001")

    def test_prices_must_be_positive(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            create_product(cost_price=Decimal("0"))

        with self.assertRaises(IntegrityError), transaction.atomic():
            create_product(retail_price=Decimal("-1.00"))

    def test_promotion_window_must_be_ordered(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            create_product(
                promotion_price=Decimal("1.00"),
                promotion_start=datetime.date(2024, 5, 2),
                promotion_end=datetime.date(2024, 5, 1),
            )

        create_product(
            promotion_price=Decimal("1.00"),
            promotion_start=datetime.date(2024, 5, 1),
            promotion_end=datetime.date(2024, 5, 1),
        )


class ProductPriceTests(TestCase):
    def test_promotion_active(self):
        start, end = datetime.date(2024, 5, 1), datetime.date(2024, 5, 31)
        price = Decimal("1.00")

        self.assertTrue(promotion_active(price, start, end, datetime.date(2024, 5, 1)))
        self.assertTrue(promotion_active(price, start, end, datetime.date(2024, 5, 31)))
        self.assertFalse(promotion_active(price, start, end, datetime.date(2024, 6, 1)))
        self.assertFalse(promotion_active(None, start, end, datetime.date(2024, 5, 2)))
        self.assertTrue(promotion_active(price, None, None, datetime.date(2030, 1, 1)))

    def test_current_price(self):
        product = create_product(
            retail_price=Decimal("2.00"),
            promotion_price=Decimal("1.50"),
            promotion_start=datetime.date(2024, 5, 1),
            promotion_end=datetime.date(2024, 5, 31),
        )

        in_promotion, after = datetime.date(2024, 5, 10), datetime.date(2024, 6, 10)
        self.assertEqual(product.current_price(in_promotion), Decimal("1.50"))
        self.assertEqual(product.current_price(after), Decimal("2.00"))

    def test_primary_image_ignores_deleted_images(self):
        product = create_product()
        primary = create_product_image(product=product, is_primary=True)
        other = create_product_image(product=product)

        self.assertEqual(product.primary_image, primary)

        primary.soft_delete(deleted_by="import")
        self.assertEqual(product.primary_image, other)


class TenantProductTests(TestCase):
    def test_one_live_overlay_per_tenant_and_product(self):
        overlay = create_tenant_product()

        with self.assertRaises(IntegrityError), transaction.atomic():
            TenantProduct.objects.create(
                tenant=overlay.tenant, product=overlay.product
            )

        overlay.soft_delete(deleted_by="admin")
        TenantProduct.objects.create(tenant=overlay.tenant, product=overlay.product)

    def test_defaults(self):
        overlay = TenantProduct.objects.create(
            tenant=create_tenant(), product=create_product()
        )
        self.assertEqual(overlay.reorder_level, 5)
        self.assertTrue(overlay.is_available)
        self.assertIsNone(overlay.retail_price_override)


class OrderTests(TestCase):
    def test_order_number(self):
        order = create_order()

        self.assertRegex(order.order_number, r"^ORD\d{14}[0-9A-F]{8}$")
        self.assertTrue(
            order.order_number.endswith(order.pk.hex[:8].upper()),
        )

    def test_generate_order_number_format(self):
        number = generate_order_number("abcdef12-0000-0000-0000-000000000000")
        self.assertTrue(re.fullmatch(r"ORD\d{14}ABCDEF12", number))

    def test_transition_table(self):
        self.assertTrue(is_valid_transition("pending", "confirmed"))
        self.assertTrue(is_valid_transition("out_for_delivery", "cancelled"))
        self.assertFalse(is_valid_transition("pending", "delivered"))
        self.assertFalse(is_valid_transition("delivered", "pending"))
        self.assertFalse(is_valid_transition("cancelled", "pending"))
        self.assertFalse(is_valid_transition("pending", "bogus"))

        for status in OrderStatus.values:
            self.assertIn(status, ALLOWED_TRANSITIONS)

        for status in ("delivered", "cancelled"):
            self.assertEqual(ALLOWED_TRANSITIONS[status], ())

    def test_every_live_status_can_be_cancelled(self):
        for status in OrderStatus.values:
            if status in ("delivered", "cancelled"):
                continue
            order = create_order(status=status)
            self.assertTrue(order.can_transition_to(OrderStatus.CANCELLED))
