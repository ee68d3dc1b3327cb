"""
Tenant views of the master catalog.

A TenantProduct row overlays a Product for one tenant: local stock, shelf
location, availability and optional price overrides. Customers only see
overlays which are available and whose product is live. The tenant portal
also sees products an administrator has delisted, flagged as such, and any
tenant edit to one of them puts it back in the catalog.
"""

from logging import getLogger
from typing import Any, Optional

from django.db import transaction
from django.db.models import Prefetch

from .exceptions import InvalidPromotionWindow, ProductNotDeleted
from .logging import GrocerLogger
from .models import ProductImage, TenantProduct, promotion_active

logger = getLogger(__name__)
structured_logger = GrocerLogger.get_logger(__name__)

STOCK_FIELDS = ("stock_quantity", "reorder_level", "shelf_location", "is_available")
PRICING_FIELDS = (
    "retail_price_override",
    "promotion_price_override",
    "promotion_start_override",
    "promotion_end_override",
)


def _coalesce(value, fallback):
    return fallback if value is None else value


def _overlays(tenant):
    return (
        TenantProduct.objects.filter(tenant=tenant)
        .select_related("product", "product__category")
        .prefetch_related(
            Prefetch("product__images", queryset=ProductImage.objects.all())
        )
        .order_by("product__item_name")
    )


def project(overlay: TenantProduct) -> dict[str, Any]:
    """
    Merge an overlay with its master product into the shape clients list.
    """
    product = overlay.product
    # Prefetched images keep the model ordering, primary first
    images = list(product.images.all())

    return {
        "id": product.pk,
        "overlay_id": overlay.pk,
        "sku": product.sku,
        "item_name": product.item_name,
        "short_description": product.short_description,
        "category_id": product.category_id,
        "subcategory_id": product.subcategory_id,
        "brand": product.brand,
        "status": product.status,
        "unit_of_measure": product.unit_of_measure,
        "retail_price": product.retail_price,
        "promotion_price": product.promotion_price,
        "franchise_price": _coalesce(
            overlay.retail_price_override, product.retail_price
        ),
        "franchise_promo_price": _coalesce(
            overlay.promotion_price_override, product.promotion_price
        ),
        "franchise_stock": overlay.stock_quantity,
        "shelf_location": overlay.shelf_location,
        "is_available": overlay.is_available,
        "image_url": images[0].image_url if images else None,
        "image_urls": [image.image_url for image in images],
    }


def list_tenant_catalog(tenant, category_id=None) -> list[dict[str, Any]]:
    """What a customer browsing ``tenant`` sees."""
    overlays = _overlays(tenant).filter(
        is_available=True, product__deleted_at__isnull=True
    )
    if category_id:
        overlays = overlays.filter(product__category_id=category_id)
    return [project(overlay) for overlay in overlays]


def list_portal_products(tenant) -> list[dict[str, Any]]:
    """
    Every live overlay of ``tenant``, including those whose product an
    administrator has soft-deleted.
    """
    products = []
    for overlay in _overlays(tenant):
        item = project(overlay)
        item["delisted_by_admin"] = overlay.product.deleted_at is not None
        products.append(item)
    return products


def effective_price(overlay: TenantProduct, on=None):
    """
    The unit price a customer of the overlay's tenant pays on ``on``
    (default today).
    """
    product = overlay.product

    promotion_price = _coalesce(
        overlay.promotion_price_override, product.promotion_price
    )
    start = _coalesce(overlay.promotion_start_override, product.promotion_start)
    end = _coalesce(overlay.promotion_end_override, product.promotion_end)

    if promotion_active(promotion_price, start, end, on):
        return promotion_price
    return _coalesce(overlay.retail_price_override, product.retail_price)


def _restore_master(overlay: TenantProduct, actor: Optional[str]) -> bool:
    product = overlay.product
    if product.deleted_at is None:
        return False

    product.restore()
    structured_logger.info(
        "Tenant edit restored a delisted product.",
        event_code="tenant_product_restored",
        tenant=overlay.tenant,
        product=product,
        actor=actor,
    )
    return True


def _apply(overlay, allowed, changes):
    unknown = set(changes) - set(allowed)
    if unknown:
        raise ValueError(f"Unexpected overlay fields: {', '.join(sorted(unknown))}")

    for name, value in changes.items():
        setattr(overlay, name, value)


def update_overlay_stock(overlay: TenantProduct, actor=None, **changes) -> bool:
    """
    Apply a tenant's stock edit. Returns whether the master product had to be
    restored along the way.
    """
    _apply(overlay, STOCK_FIELDS, changes)

    with transaction.atomic():
        if changes:
            overlay.save(update_fields=[*changes, "updated_at"])
        return _restore_master(overlay, actor)


def update_overlay_pricing(overlay: TenantProduct, actor=None, **changes) -> bool:
    """
    Apply a tenant's price overrides. Returns whether the master product had
    to be restored along the way.
    """
    _apply(overlay, PRICING_FIELDS, changes)

    start, end = overlay.promotion_start_override, overlay.promotion_end_override
    if start and end and start > end:
        raise InvalidPromotionWindow(
            "Promotion end must not be before promotion start",
            promotion_start=start.isoformat(),
            promotion_end=end.isoformat(),
        )

    with transaction.atomic():
        if changes:
            overlay.save(update_fields=[*changes, "updated_at"])
        return _restore_master(overlay, actor)


def restore_product(overlay: TenantProduct, actor=None):
    if overlay.product.deleted_at is None:
        raise ProductNotDeleted(
            "Product is not deleted", product_id=str(overlay.product_id)
        )
    _restore_master(overlay, actor)
    return overlay.product


def delete_overlay(overlay: TenantProduct, actor):
    """Soft-delete the overlay only; the master product is untouched."""
    overlay.soft_delete(deleted_by=actor)
    structured_logger.info(
        "Tenant product removed.",
        event_code="tenant_product_deleted",
        tenant=overlay.tenant,
        product=overlay.product,
        actor=actor,
    )


def assign_product(tenant, product, **values) -> tuple[TenantProduct, bool]:
    """
    Make ``product`` available to ``tenant``, restoring a previously removed
    overlay rather than creating a second one. Returns ``(overlay, created)``.
    """
    _apply(TenantProduct(), STOCK_FIELDS + PRICING_FIELDS, values)

    with transaction.atomic():
        pair = {"tenant": tenant, "product": product}
        overlay = (
            TenantProduct.objects.select_for_update().filter(**pair).first()
            or TenantProduct.all_objects.deleted()
            .filter(**pair)
            .order_by("-deleted_at")
            .first()
        )

        if overlay is None:
            overlay = TenantProduct.objects.create(
                tenant=tenant, product=product, **values
            )
            created = True
        else:
            for name, value in values.items():
                setattr(overlay, name, value)
            if overlay.deleted_at is not None:
                overlay.deleted_at = None
                overlay.deleted_by = ""
            overlay.save()
            created = False

    logger.info(
        "%s product %s for tenant %s",
        "Assigned" if created else "Re-assigned",
        product.sku,
        tenant.name,
    )
    return overlay, created
