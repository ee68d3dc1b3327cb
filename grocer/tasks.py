from logging import getLogger

from django.db import DatabaseError
from django.db.models import F

from .celery import app as celery_app
from .exceptions import StorageError
from .logging import GrocerLogger
from .models import Order, OrderItem, Product, TenantProduct
from .storage import ObjectStorageGateway

logger = getLogger(__name__)
structured_logger = GrocerLogger.get_logger(__name__)


@celery_app.task(ignore_result=True)
def restore_order_stock(order_id):
    """
    Put the stock of a cancelled order back on the shelves.

    Each line is added back to the overlay of the tenant which served the
    order, or to the master product when the tenant no longer carries it.
    Lines are restored independently so one failure doesn't strand the rest.
    """
    try:
        order = Order.objects.select_related("tenant").get(pk=order_id)
    except Order.DoesNotExist:
        logger.warning("Order %s vanished before its stock could be restored", order_id)
        return

    restored = 0
    for item in order.items.all():
        try:
            updated = 0
            if order.tenant_id:
                updated = TenantProduct.objects.filter(
                    tenant_id=order.tenant_id, product_id=item.product_id
                ).update(stock_quantity=F("stock_quantity") + item.quantity)
            if not updated:
                Product.all_objects.filter(pk=item.product_id).update(
                    stock_quantity=F("stock_quantity") + item.quantity
                )
        except DatabaseError as exc:
            structured_logger.exception(
                "Unable to restore stock for a cancelled order line.",
                event_code="order_stock_restore_failed",
                reason=str(exc),
                reason_code="database_error",
                order=order,
                product_id=str(item.product_id),
                quantity=item.quantity,
            )
        else:
            restored += 1

    structured_logger.info(
        "Restored stock for cancelled order.",
        event_code="order_stock_restored",
        order=order,
        lines=restored,
    )


@celery_app.task(
    bind=True,
    autoretry_for=(StorageError,),
    retry_backoff=5,
    retry_kwargs={"max_retries": 5, "countdown": 5},
    ignore_result=True,
)
def snapshot_order_images(self, order_id):
    """
    Copy the product images frozen on an order into the order namespace and
    point the order lines at the copies, so later catalog changes never
    change what a past order looks like.
    """
    gateway = ObjectStorageGateway()

    items = OrderItem.objects.filter(order_id=order_id).exclude(image_url="")
    for item in items:
        if not gateway.is_product_url(item.image_url):
            # Already copied by an earlier attempt
            continue

        url = gateway.copy_to_order_storage(
            item.image_url, item.order_id, item.product_id
        )
        OrderItem.objects.filter(pk=item.pk).update(image_url=url)
        logger.debug("Order line %s now shows %s", item.pk, url)
