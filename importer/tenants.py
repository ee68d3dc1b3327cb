from collections import defaultdict
from logging import getLogger

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone
from more_itertools import chunked

from grocer.models import ProductStatus, TenantProduct

from .utils import parse_uuid

logger = getLogger(__name__)

IMPORT_ACTOR = "import"


class TenantReconciler:
    """
    Brings the tenant overlays of imported products in line with the tenants
    each row names.

    Rows naming no tenants are never passed in: a row without tenant
    information leaves its product's overlays alone, which is different from
    asking for none.
    """

    def __init__(self, tenants_by_id, tenants_by_name, batch_size=None):
        self.tenants_by_id = tenants_by_id
        self.tenants_by_name = tenants_by_name
        self.batch_size = batch_size or settings.IMPORT_BATCH_SIZE

    def desired_tenants(self, row):
        desired = set()

        for value in row.tenant_ids:
            tenant_id = parse_uuid(value)
            if tenant_id is None:
                logger.warning("Ignoring malformed tenant id %r", value)
            elif tenant_id not in self.tenants_by_id:
                logger.warning("Ignoring unknown tenant id %s", tenant_id)
            else:
                desired.add(tenant_id)

        for name in row.tenant_name_list:
            tenant = self.tenants_by_name.get(name)
            if tenant is None:
                logger.warning("Ignoring unknown tenant name %r", name)
            else:
                desired.add(tenant.pk)

        return desired

    def load_overlays(self, product_ids):
        live = defaultdict(dict)
        deleted = defaultdict(dict)

        for overlay in TenantProduct.all_objects.filter(product_id__in=product_ids):
            if overlay.deleted_at is None:
                live[overlay.product_id][overlay.tenant_id] = overlay
            else:
                current = deleted[overlay.product_id].get(overlay.tenant_id)
                # Restore the most recently deleted row if there are several
                if current is None or current.deleted_at < overlay.deleted_at:
                    deleted[overlay.product_id][overlay.tenant_id] = overlay

        return live, deleted

    def reconcile(self, entries):
        """
        Reconcile overlays for ``entries``, a sequence of (product, row)
        pairs. Returns the ids of products whose overlays changed.
        """
        changed = set()
        if not entries:
            return changed

        live, deleted = self.load_overlays({product.pk for product, _ in entries})
        to_create = []

        for product, row in entries:
            desired = self.desired_tenants(row)
            existing = live[product.pk]
            values = {
                "stock_quantity": row.stock_quantity,
                "reorder_level": row.reorder_level,
                "is_available": row.status == ProductStatus.ACTIVE,
            }

            for tenant_id in set(existing) - desired:
                overlay = existing.pop(tenant_id)
                if overlay in to_create:
                    # Queued for creation by an earlier row for the same product
                    to_create.remove(overlay)
                    continue
                if not self._save(overlay, deleted_by=IMPORT_ACTOR):
                    continue
                changed.add(product.pk)

            for tenant_id in sorted(desired - set(existing), key=str):
                overlay = deleted[product.pk].pop(tenant_id, None)
                if overlay is not None:
                    for name, value in values.items():
                        setattr(overlay, name, value)
                    if not self._save(overlay, restore=True):
                        continue
                else:
                    overlay = TenantProduct(
                        tenant_id=tenant_id, product_id=product.pk, **values
                    )
                    to_create.append(overlay)
                    existing[tenant_id] = overlay
                    continue
                existing[tenant_id] = overlay
                changed.add(product.pk)

        return changed | self._create(to_create)

    def _save(self, overlay, deleted_by=None, restore=False):
        if restore:
            overlay.deleted_at = None
            overlay.deleted_by = ""
        else:
            overlay.deleted_at = timezone.now()
            overlay.deleted_by = deleted_by

        try:
            with transaction.atomic():
                overlay.save(
                    update_fields=[
                        "deleted_at",
                        "deleted_by",
                        "stock_quantity",
                        "reorder_level",
                        "is_available",
                        "updated_at",
                    ]
                )
        except DatabaseError:
            logger.exception(
                "Unable to %s tenant association %s",
                "restore" if restore else "remove",
                overlay.pk,
            )
            return False
        return True

    def _create(self, overlays):
        """
        Insert new overlays in batches; a failing batch is retried one row at
        a time. Returns the ids of products which gained an association.
        """
        created_products = set()
        for batch in chunked(overlays, self.batch_size):
            try:
                with transaction.atomic():
                    TenantProduct.objects.bulk_create(batch)
                created_products.update(overlay.product_id for overlay in batch)
            except DatabaseError:
                logger.warning(
                    "Bulk insert of %d tenant associations failed; retrying "
                    "individually",
                    len(batch),
                )
                for overlay in batch:
                    try:
                        with transaction.atomic():
                            overlay.save(force_insert=True)
                    except DatabaseError:
                        logger.exception(
                            "Unable to associate product %s with tenant %s",
                            overlay.product_id,
                            overlay.tenant_id,
                        )
                    else:
                        created_products.add(overlay.product_id)
        return created_products
