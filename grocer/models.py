from __future__ import annotations

import datetime
import uuid
from decimal import Decimal
from logging import getLogger
from typing import Optional

from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from grocer.exceptions import CategoryInUse

logger = getLogger(__name__)


class SoftDeleteQuerySet(models.QuerySet):
    def live(self):
        return self.filter(deleted_at__isnull=True)

    def deleted(self):
        return self.filter(deleted_at__isnull=False)

    def soft_delete(self, deleted_by=""):
        """
        Mark every row in the queryset as deleted with a single UPDATE and
        return the number of rows changed. Rows which are already deleted keep
        their original deletion instant.
        """
        return self.filter(deleted_at__isnull=True).update(
            deleted_at=timezone.now(), deleted_by=deleted_by
        )

    def restore(self):
        return self.filter(deleted_at__isnull=False).update(
            deleted_at=None, deleted_by=""
        )


class LiveManager(models.Manager.from_queryset(SoftDeleteQuerySet)):
    def get_queryset(self):
        return super().get_queryset().live()


class SoftDeleteModel(models.Model):
    """
    Base class for rows whose deletion can be undone.

    ``objects`` only sees the live set while ``all_objects`` also returns
    soft-deleted rows.
    """

    deleted_at = models.DateTimeField(blank=True, null=True, db_index=True)
    deleted_by = models.CharField(max_length=100, blank=True, default="")

    objects = LiveManager()
    all_objects = SoftDeleteQuerySet.as_manager()

    class Meta:
        abstract = True

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def soft_delete(self, deleted_by="", save=True):
        self.deleted_at = timezone.now()
        self.deleted_by = deleted_by
        if save:
            self.save(update_fields=["deleted_at", "deleted_by", "updated_at"])

    def restore(self, save=True):
        self.deleted_at = None
        self.deleted_by = ""
        if save:
            self.save(update_fields=["deleted_at", "deleted_by", "updated_at"])


class Category(SoftDeleteModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "categories"

    def __str__(self):
        return self.name

    def soft_delete(self, deleted_by="", save=True):
        if self.products.exists() or self.subcategories.exists():
            raise CategoryInUse(
                f"Category '{self.name}' is still referenced by live products "
                "or subcategories",
                category_id=str(self.pk),
            )
        super().soft_delete(deleted_by=deleted_by, save=save)


class Subcategory(SoftDeleteModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    category = models.ForeignKey(
        Category, on_delete=models.PROTECT, related_name="subcategories"
    )
    name = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "subcategories"

    def __str__(self):
        return f"{self.category}: {self.name}"


class Tenant(SoftDeleteModel):
    """A franchise store which serves deliveries within its radius"""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255, unique=True)
    slug = models.SlugField(max_length=255, unique=True)
    address = models.TextField(blank=True)
    latitude = models.FloatField()
    longitude = models.FloatField()
    delivery_radius = models.FloatField(
        default=5, help_text="Delivery radius in kilometres"
    )
    delivery_fee = models.DecimalField(
        max_digits=8, decimal_places=2, default=Decimal("4.99")
    )
    free_delivery_min = models.DecimalField(
        max_digits=8, decimal_places=2, default=Decimal("50.00")
    )
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name


class ProductStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    INACTIVE = "inactive", "Inactive"
    DISCONTINUED = "discontinued", "Discontinued"


class Product(SoftDeleteModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sku = models.CharField(max_length=64)
    item_name = models.CharField(max_length=255)
    short_description = models.TextField(blank=True)
    long_description = models.TextField(blank=True)

    cost_price = models.DecimalField(max_digits=10, decimal_places=2)
    retail_price = models.DecimalField(max_digits=10, decimal_places=2)
    promotion_price = models.DecimalField(
        max_digits=10, decimal_places=2, blank=True, null=True
    )
    promotion_start = models.DateField(blank=True, null=True)
    promotion_end = models.DateField(blank=True, null=True)
    gross_margin = models.DecimalField(
        max_digits=6, decimal_places=2, default=Decimal("0")
    )
    staff_discount = models.DecimalField(
        max_digits=6, decimal_places=2, default=Decimal("0")
    )
    tax_rate = models.DecimalField(max_digits=6, decimal_places=2, default=Decimal("0"))

    batch_number = models.CharField(max_length=100, blank=True)
    barcode = models.CharField(max_length=64, blank=True, null=True)
    stock_quantity = models.IntegerField(default=0)
    reorder_level = models.IntegerField(default=0)
    shelf_location = models.CharField(max_length=100, blank=True)
    weight_volume = models.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0")
    )
    unit_of_measure = models.CharField(max_length=50, blank=True)
    expiry_date = models.DateField(blank=True, null=True)

    category = models.ForeignKey(
        Category, on_delete=models.PROTECT, related_name="products"
    )
    subcategory = models.ForeignKey(
        Subcategory,
        on_delete=models.SET_NULL,
        related_name="products",
        blank=True,
        null=True,
    )

    brand = models.CharField(max_length=255, blank=True)
    supplier = models.CharField(max_length=255, blank=True)
    country_of_origin = models.CharField(max_length=100, blank=True)
    is_gluten_free = models.BooleanField(default=False)
    is_vegetarian = models.BooleanField(default=False)
    is_vegan = models.BooleanField(default=False)
    is_age_restricted = models.BooleanField(default=False)
    minimum_age = models.PositiveSmallIntegerField(blank=True, null=True)
    allergen_info = models.TextField(blank=True)
    storage_type = models.CharField(max_length=50, blank=True)
    is_own_brand = models.BooleanField(default=False)
    online_visible = models.BooleanField(default=True)
    status = models.CharField(
        max_length=20, choices=ProductStatus.choices, default=ProductStatus.ACTIVE
    )
    pack_size = models.CharField(max_length=50, blank=True)
    notes = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["item_name"]
        constraints = [
            models.UniqueConstraint(
                fields=["sku"],
                condition=Q(deleted_at__isnull=True),
                name="unique_live_product_sku",
            ),
            models.UniqueConstraint(
                fields=["barcode"],
                condition=Q(deleted_at__isnull=True, barcode__isnull=False),
                name="unique_live_product_barcode",
            ),
            models.CheckConstraint(
                condition=Q(cost_price__gt=0), name="product_cost_price_positive"
            ),
            models.CheckConstraint(
                condition=Q(retail_price__gt=0), name="product_retail_price_positive"
            ),
            models.CheckConstraint(
                condition=Q(promotion_start__isnull=True)
                | Q(promotion_end__isnull=True)
                | Q(promotion_start__lte=F("promotion_end")),
                name="product_promotion_window_ordered",
            ),
        ]

    def __str__(self):
        return f"{self.sku} {self.item_name}"

    def is_promotion_active(self, on: Optional[datetime.date] = None) -> bool:
        return promotion_active(
            self.promotion_price, self.promotion_start, self.promotion_end, on
        )

    def current_price(self, on: Optional[datetime.date] = None) -> Decimal:
        if self.is_promotion_active(on):
            return self.promotion_price
        return self.retail_price

    @property
    def primary_image(self) -> Optional["ProductImage"]:
        return self.images.order_by("-is_primary", "created_at").first()


def promotion_active(price, start, end, on=None):
    """
    A promotion applies when it has a price and ``on`` (default today) falls
    inside its window. Open-ended windows are allowed on either side.
    """
    if price is None:
        return False
    on = on or timezone.localdate()
    if start and on < start:
        return False
    if end and on > end:
        return False
    return True


class ProductImage(SoftDeleteModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(
        Product, on_delete=models.CASCADE, related_name="images"
    )
    image_url = models.CharField(max_length=2048)
    source_url = models.CharField(
        max_length=2048,
        blank=True,
        help_text="Foreign URL the image was downloaded from, if any",
    )
    is_primary = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-is_primary", "created_at"]

    def __str__(self):
        return self.image_url


class TenantProduct(SoftDeleteModel):
    """
    The per-tenant overlay of a Product: local stock, availability and
    optional price overrides.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    tenant = models.ForeignKey(
        Tenant, on_delete=models.CASCADE, related_name="tenant_products"
    )
    product = models.ForeignKey(
        Product, on_delete=models.CASCADE, related_name="tenant_products"
    )
    retail_price_override = models.DecimalField(
        max_digits=10, decimal_places=2, blank=True, null=True
    )
    promotion_price_override = models.DecimalField(
        max_digits=10, decimal_places=2, blank=True, null=True
    )
    promotion_start_override = models.DateField(blank=True, null=True)
    promotion_end_override = models.DateField(blank=True, null=True)
    stock_quantity = models.IntegerField(default=0)
    reorder_level = models.IntegerField(default=5)
    shelf_location = models.CharField(max_length=100, blank=True)
    is_available = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["tenant", "product"],
                condition=Q(deleted_at__isnull=True),
                name="unique_live_tenant_product",
            ),
        ]

    def __str__(self):
        return f"{self.tenant_id}:{self.product_id}"


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    PREPARING = "preparing", "Preparing"
    READY = "ready", "Ready"
    OUT_FOR_DELIVERY = "out_for_delivery", "Out for delivery"
    DELIVERED = "delivered", "Delivered"
    CANCELLED = "cancelled", "Cancelled"


ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING.value: (
        OrderStatus.CONFIRMED.value,
        OrderStatus.CANCELLED.value,
    ),
    OrderStatus.CONFIRMED.value: (
        OrderStatus.PREPARING.value,
        OrderStatus.CANCELLED.value,
    ),
    OrderStatus.PREPARING.value: (
        OrderStatus.READY.value,
        OrderStatus.CANCELLED.value,
    ),
    OrderStatus.READY.value: (
        OrderStatus.OUT_FOR_DELIVERY.value,
        OrderStatus.CANCELLED.value,
    ),
    OrderStatus.OUT_FOR_DELIVERY.value: (
        OrderStatus.DELIVERED.value,
        OrderStatus.CANCELLED.value,
    ),
    OrderStatus.DELIVERED.value: (),
    OrderStatus.CANCELLED.value: (),
}


def is_valid_transition(current, requested):
    return requested in ALLOWED_TRANSITIONS.get(current, ())


def generate_order_number(order_id):
    return "ORD{}{}".format(
        timezone.now().strftime("%Y%m%d%H%M%S"), str(order_id).replace("-", "")[:8]
    ).upper()


class Order(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders"
    )
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.SET_NULL,
        related_name="orders",
        blank=True,
        null=True,
    )
    order_number = models.CharField(max_length=32, unique=True)
    status = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
        db_index=True,
    )
    subtotal = models.DecimalField(max_digits=10, decimal_places=2)
    delivery_fee = models.DecimalField(
        max_digits=8, decimal_places=2, default=Decimal("0")
    )
    total = models.DecimalField(max_digits=10, decimal_places=2)
    delivery_address = models.TextField()
    payment_method = models.CharField(max_length=50, blank=True)
    customer_latitude = models.FloatField(blank=True, null=True)
    customer_longitude = models.FloatField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return self.order_number

    def save(self, *args, **kwargs):
        if not self.order_number:
            self.order_number = generate_order_number(self.id)
        super().save(*args, **kwargs)

    def allowed_transitions(self):
        return ALLOWED_TRANSITIONS.get(self.status, ())

    def can_transition_to(self, status):
        return is_valid_transition(self.status, status)


class OrderItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(
        Product, on_delete=models.PROTECT, related_name="order_items"
    )
    product_name = models.CharField(max_length=255)
    product_sku = models.CharField(max_length=64)
    image_url = models.CharField(
        max_length=2048,
        blank=True,
        help_text="Image URL frozen when the order was placed",
    )
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.DecimalField(max_digits=10, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]

    def __str__(self):
        return f"{self.quantity} x {self.product_name}"

    @property
    def line_total(self):
        return self.price * self.quantity
