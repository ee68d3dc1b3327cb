"""
Order placement and the order status lifecycle.
"""

from collections import defaultdict
from decimal import Decimal
from functools import partial
from logging import getLogger

from django.db import transaction
from django.db.models import F

from .exceptions import (
    InsufficientStock,
    InvalidOrder,
    InvalidStatusTransition,
    ProductUnavailable,
)
from .logging import GrocerLogger
from .models import Order, OrderItem, OrderStatus, TenantProduct, is_valid_transition
from .overlay import effective_price
from .routing import select_serving_tenant, validate_coordinates
from .tasks import restore_order_stock, snapshot_order_images

logger = getLogger(__name__)
structured_logger = GrocerLogger.get_logger(__name__)


def change_order_status(order: Order, status, actor=None) -> Order:
    """
    Move ``order`` to ``status`` if the transition table allows it.

    Cancelling schedules a stock restore once the status change has
    committed. The restore is best effort: a failure there never undoes the
    cancellation.
    """
    with transaction.atomic():
        order = Order.objects.select_for_update().get(pk=order.pk)

        if not is_valid_transition(order.status, status):
            structured_logger.warning(
                "Rejected order status change.",
                event_code="order_status_rejected",
                reason=f"{order.status} -> {status} is not allowed",
                reason_code="invalid_status_transition",
                order=order,
                actor=actor,
            )
            raise InvalidStatusTransition(
                order.status, status, order.allowed_transitions()
            )

        previous = order.status
        order.status = status
        order.save(update_fields=["status", "updated_at"])

        if status == OrderStatus.CANCELLED:
            transaction.on_commit(partial(restore_order_stock.delay, str(order.pk)))

    structured_logger.info(
        "Order status changed.",
        event_code="order_status_changed",
        order=order,
        previous_status=previous,
        actor=actor,
    )
    return order


def _quantities(items):
    quantities = defaultdict(int)

    for item in items:
        product_id, quantity = item["product_id"], item["quantity"]
        if not isinstance(quantity, int) or quantity < 1:
            raise InvalidOrder(
                "Quantities must be positive whole numbers",
                product_id=str(product_id),
            )
        quantities[str(product_id)] += quantity

    if not quantities:
        raise InvalidOrder("An order needs at least one item")

    return quantities


def place_order(
    customer,
    items,
    delivery_address,
    latitude,
    longitude,
    payment_method="",
) -> Order:
    """
    Place an order with the nearest tenant delivering to the customer.

    ``items`` is a sequence of ``{"product_id": ..., "quantity": ...}``
    mappings. Prices come from the serving tenant's overlay and its stock is
    decremented under a row lock. Product name, SKU and primary image are
    frozen on each line; the images are copied into order storage after the
    order commits.
    """
    latitude, longitude = validate_coordinates(latitude, longitude)
    quantities = _quantities(items)
    tenant = select_serving_tenant(latitude, longitude).tenant

    with transaction.atomic():
        overlays = {
            str(overlay.product_id): overlay
            for overlay in TenantProduct.objects.select_for_update(of=("self",))
            .select_related("product")
            .filter(
                tenant=tenant,
                product_id__in=list(quantities),
                is_available=True,
                product__deleted_at__isnull=True,
            )
        }

        lines = []
        subtotal = Decimal("0")
        for product_id, quantity in quantities.items():
            overlay = overlays.get(product_id)
            if overlay is None:
                raise ProductUnavailable(
                    f"{tenant.name} does not sell this product",
                    product_id=product_id,
                )
            if overlay.stock_quantity < quantity:
                raise InsufficientStock(
                    f"Only {overlay.stock_quantity} of "
                    f"{overlay.product.item_name} left",
                    product_id=product_id,
                    requested=quantity,
                    available=overlay.stock_quantity,
                )

            price = effective_price(overlay)
            subtotal += price * quantity
            lines.append((overlay, quantity, price))

        delivery_fee = (
            tenant.delivery_fee if subtotal < tenant.free_delivery_min else Decimal("0")
        )

        order = Order.objects.create(
            customer=customer,
            tenant=tenant,
            status=OrderStatus.PENDING,
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            total=subtotal + delivery_fee,
            delivery_address=delivery_address,
            payment_method=payment_method,
            customer_latitude=latitude,
            customer_longitude=longitude,
        )

        order_items = []
        for overlay, quantity, price in lines:
            TenantProduct.objects.filter(pk=overlay.pk).update(
                stock_quantity=F("stock_quantity") - quantity
            )

            product = overlay.product
            primary_image = product.primary_image
            order_items.append(
                OrderItem(
                    order=order,
                    product=product,
                    product_name=product.item_name,
                    product_sku=product.sku,
                    image_url=primary_image.image_url if primary_image else "",
                    quantity=quantity,
                    price=price,
                )
            )
        OrderItem.objects.bulk_create(order_items)

        transaction.on_commit(partial(snapshot_order_images.delay, str(order.pk)))

    structured_logger.info(
        "Order placed.",
        event_code="order_placed",
        order=order,
        user=customer,
        items=len(order_items),
        total=str(order.total),
    )
    return order
