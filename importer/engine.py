"""
Bulk product import.

An import runs in five phases:

A. Preload everything rows are resolved against: categories, subcategories,
   tenants, the products the rows name and their images.
B. Process rows on a bounded thread pool. Workers only build unsaved model
   instances and fetch images into storage; they never touch the database,
   so every query below runs on the job's own connection.
C. Write: create products, reconcile tenant overlays, save updated products
   and finally apply image changes. A failing step is logged and the job
   carries on with the next one.
D. When requested, soft-delete every live product the import did not mention.
E. Complete the job.
"""

import copy
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Optional

from django.conf import settings
from django.db import DatabaseError, connections, transaction
from django.utils import timezone
from more_itertools import chunked

from grocer.exceptions import StorageError
from grocer.logging import GrocerLogger
from grocer.models import (
    Category,
    OrderItem,
    Product,
    ProductImage,
    ProductStatus,
    Subcategory,
    Tenant,
)
from grocer.storage import ObjectStorageGateway

from .exceptions import InvalidJobTransition, RowValidationError
from .images import clean_image_urls, fetch_and_store_images, partition_images
from .jobs import Job, JobStatus
from .jobs import registry as default_registry
from .schemas import ImportRow
from .sku import SkuGenerator
from .tenants import IMPORT_ACTOR, TenantReconciler
from .utils import parse_date, parse_uuid, to_money

logger = getLogger(__name__)
structured_logger = GrocerLogger.get_logger(__name__)

#: Product attributes compared to decide whether an update changed anything
TRACKED_FIELDS = (
    "sku",
    "item_name",
    "short_description",
    "long_description",
    "cost_price",
    "retail_price",
    "promotion_price",
    "promotion_start",
    "promotion_end",
    "gross_margin",
    "staff_discount",
    "tax_rate",
    "batch_number",
    "barcode",
    "stock_quantity",
    "reorder_level",
    "shelf_location",
    "weight_volume",
    "unit_of_measure",
    "expiry_date",
    "category_id",
    "subcategory_id",
    "brand",
    "supplier",
    "country_of_origin",
    "is_gluten_free",
    "is_vegetarian",
    "is_vegan",
    "is_age_restricted",
    "minimum_age",
    "allergen_info",
    "storage_type",
    "is_own_brand",
    "online_visible",
    "status",
    "pack_size",
    "notes",
)

UPDATE_FIELDS = [Product._meta.get_field(name).name for name in TRACKED_FIELDS] + [
    "deleted_at",
    "deleted_by",
    "updated_at",
]

# Rows are reported the way spreadsheet users count them: the header is row 1
HEADER_ROWS = 1

ROW_PROGRESS_CEILING = 85
CREATED_PROGRESS = 87
UPDATED_PROGRESS = 89
IMAGES_PROGRESS = 90


@dataclass
class RowResult:
    index: int
    row: ImportRow
    product: Optional[Product] = None
    is_new: bool = False
    restored: bool = False
    fields_changed: bool = False
    images_changed: bool = False
    skipped: bool = False
    new_images: list[ProductImage] = field(default_factory=list)
    retired_images: list[ProductImage] = field(default_factory=list)
    #: (image id, is_primary) for kept images whose primary flag flips
    primary_changes: list[tuple[uuid.UUID, bool]] = field(default_factory=list)

    @property
    def row_number(self):
        return self.index + HEADER_ROWS + 1

    @property
    def label(self):
        return self.row.item_name or self.row.sku

    @property
    def changed(self):
        return self.restored or self.fields_changed or self.images_changed


def row_values(row: ImportRow, category_id, subcategory_ids) -> dict[str, Any]:
    """
    Map an import row onto Product attributes, normalizing as it goes.
    """
    subcategory_id = parse_uuid(row.subcategory_id)
    if subcategory_id not in subcategory_ids:
        subcategory_id = None

    return {
        "item_name": row.item_name.strip(),
        "short_description": row.short_description,
        "long_description": row.long_description,
        "cost_price": to_money(row.cost_price),
        "retail_price": to_money(row.retail_price),
        "promotion_price": to_money(row.promotion_price),
        "promotion_start": parse_date(row.promotion_start),
        "promotion_end": parse_date(row.promotion_end),
        "gross_margin": to_money(row.gross_margin),
        "staff_discount": to_money(row.staff_discount),
        "tax_rate": to_money(row.tax_rate),
        "batch_number": row.batch_number,
        "barcode": (row.barcode or "").strip() or None,
        "stock_quantity": row.stock_quantity,
        "reorder_level": row.reorder_level,
        "shelf_location": row.shelf_location,
        "weight_volume": to_money(row.weight_volume),
        "unit_of_measure": row.unit_of_measure,
        "expiry_date": parse_date(row.expiry_date),
        "category_id": category_id,
        "subcategory_id": subcategory_id,
        "brand": row.brand,
        "supplier": row.supplier,
        "country_of_origin": row.country_of_origin,
        "is_gluten_free": row.is_gluten_free,
        "is_vegetarian": row.is_vegetarian,
        "is_vegan": row.is_vegan,
        "is_age_restricted": row.is_age_restricted,
        "minimum_age": row.minimum_age,
        "allergen_info": row.allergen_info,
        "storage_type": row.storage_type,
        "is_own_brand": row.is_own_brand,
        "online_visible": row.online_visible,
        "status": row.status,
        "pack_size": row.pack_size,
        "notes": row.notes,
    }


def validate_values(values: dict[str, Any]) -> dict[str, str]:
    errors = {}

    if not values["item_name"]:
        errors["item_name"] = "item name is required"

    for name in ("cost_price", "retail_price"):
        if values[name] is None or values[name] <= 0:
            errors[name] = "must be greater than zero"

    start, end = values["promotion_start"], values["promotion_end"]
    if start and end and start > end:
        errors["promotion_end"] = "promotion end must not be before promotion start"

    if values["minimum_age"] is not None and values["minimum_age"] < 0:
        errors["minimum_age"] = "must not be negative"

    if values["status"] not in ProductStatus.values:
        errors["status"] = f"unknown status {values['status']!r}"

    return errors


class ImportEngine:
    def __init__(
        self,
        job_id,
        rows,
        delete_missing=False,
        gateway: Optional[ObjectStorageGateway] = None,
        registry=None,
    ):
        self.job_id = job_id
        self.rows = [
            row if isinstance(row, ImportRow) else ImportRow.model_validate(row)
            for row in rows
        ]
        self.delete_missing = delete_missing
        self.gateway = gateway or ObjectStorageGateway()
        self.registry = registry or default_registry
        self.batch_size = settings.IMPORT_BATCH_SIZE

        self.categories: dict[uuid.UUID, Category] = {}
        self.subcategory_ids: set[uuid.UUID] = set()
        self.tenants_by_id: dict[uuid.UUID, Tenant] = {}
        self.tenants_by_name: dict[str, Tenant] = {}
        self.products_by_id: dict[uuid.UUID, Product] = {}
        self.products_by_sku: dict[str, Product] = {}
        self.images_by_product: dict[uuid.UUID, list[ProductImage]] = {}
        self.sku_generator: Optional[SkuGenerator] = None

        self.imported_ids: set[uuid.UUID] = set()
        self.created_ids: set[uuid.UUID] = set()
        # Products counted under "updated"; each product is counted once
        self.updated_ids: set[uuid.UUID] = set()

    def run(self) -> Job:
        log = structured_logger.bind(job_id=str(self.job_id))

        try:
            self.registry.set_processing(self.job_id)
            log.info(
                "Import job started.",
                event_code="import_job_started",
                total=len(self.rows),
                delete_missing=self.delete_missing,
            )

            self.preload()
            results = self.process_rows()

            to_create = [result for result in results if result.is_new]
            to_update = self.deduplicate_updates(
                [result for result in results if not result.is_new]
            )

            self.run_phase("create products", self.create_products, to_create)
            self.registry.set_progress(self.job_id, CREATED_PROGRESS)

            self.run_phase(
                "reconcile tenants", self.reconcile_tenants, to_create + to_update
            )

            self.run_phase("update products", self.update_products, to_update)
            self.registry.set_progress(self.job_id, UPDATED_PROGRESS)

            self.run_phase("apply images", self.apply_images, to_create + to_update)
            self.registry.set_progress(self.job_id, IMAGES_PROGRESS)

            if self.delete_missing:
                self.run_phase("prune products", self.prune)

            job = self.registry.complete(self.job_id, JobStatus.COMPLETED)
        except Exception as exc:
            log.exception(
                "Import job failed.",
                event_code="import_job_failed",
                reason=str(exc),
                reason_code="unexpected_error",
            )
            try:
                return self.registry.complete(self.job_id, JobStatus.FAILED)
            except InvalidJobTransition:
                logger.warning(
                    "Import job %s could not be marked as failed", self.job_id
                )
                return self.registry.get(self.job_id)

        log.info(
            "Import job finished.",
            event_code="import_job_completed",
            job=job,
            created=job.created,
            updated=job.updated,
            deleted=job.deleted,
            failed=job.failed,
        )
        return job

    def run_phase(self, name, func, *args):
        try:
            return func(*args)
        except Exception:
            logger.exception(
                "Import job %s: %s failed; continuing with the next phase",
                self.job_id,
                name,
            )
            return None

    # Phase A

    def preload(self):
        self.categories = Category.objects.in_bulk()
        self.subcategory_ids = set(Subcategory.objects.values_list("pk", flat=True))

        for tenant in Tenant.objects.all():
            self.tenants_by_id[tenant.pk] = tenant
            self.tenants_by_name[tenant.name] = tenant

        stable_ids = {parse_uuid(row.id) for row in self.rows} - {None}
        skus = {row.sku.strip() for row in self.rows if row.sku.strip()}

        self.products_by_id = Product.all_objects.in_bulk(stable_ids)

        # Live products win; otherwise the most recently deleted one
        for product in Product.all_objects.filter(sku__in=skus):
            current = self.products_by_sku.get(product.sku)
            if current is None or (
                current.deleted_at is not None
                and (
                    product.deleted_at is None
                    or product.deleted_at > current.deleted_at
                )
            ):
                self.products_by_sku[product.sku] = product

        product_ids = set(self.products_by_id) | {
            product.pk for product in self.products_by_sku.values()
        }
        for image in ProductImage.objects.filter(product_id__in=product_ids):
            self.images_by_product.setdefault(image.product_id, []).append(image)

        prefix = settings.IMPORT_SKU_PREFIX
        taken = set(
            Product.all_objects.filter(sku__startswith=prefix).values_list(
                "sku", flat=True
            )
        )
        self.sku_generator = SkuGenerator(taken | skus, prefix=prefix)

    # Phase B

    def process_rows(self) -> list[RowResult]:
        results = []

        with ThreadPoolExecutor(max_workers=settings.IMPORT_ROW_WORKERS) as executor:
            futures = {
                executor.submit(self.process_row, index, row): (index, row)
                for index, row in enumerate(self.rows)
            }

            for future in as_completed(futures):
                index, row = futures[future]
                row_number = index + HEADER_ROWS + 1
                try:
                    result = future.result()
                except RowValidationError as exc:
                    self.registry.add_failure(
                        self.job_id, row_number, row.item_name or row.sku, exc.fields
                    )
                except Exception as exc:
                    logger.exception(
                        "Import job %s: unexpected error processing row %d",
                        self.job_id,
                        row_number,
                    )
                    self.registry.add_failure(
                        self.job_id,
                        row_number,
                        row.item_name or row.sku,
                        {"row": str(exc)},
                    )
                else:
                    if not result.skipped:
                        self.count_row(result)
                        results.append(result)

                self.registry.mark_processed(
                    self.job_id, ceiling=ROW_PROGRESS_CEILING
                )

        results.sort(key=lambda result: result.index)
        return results

    def count_row(self, result: RowResult):
        pk = result.product.pk
        self.imported_ids.add(pk)

        if result.is_new:
            self.registry.add_created(self.job_id)
        elif result.changed and pk not in self.updated_ids:
            self.updated_ids.add(pk)
            self.registry.add_updated(self.job_id)

    def process_row(self, index: int, row: ImportRow) -> RowResult:
        result = RowResult(index=index, row=row)

        if row.delete:
            result.skipped = True
            return result

        errors = {}

        category_id = parse_uuid(row.category_id)
        if category_id is None:
            errors["category_id"] = "invalid category ID format"
        elif category_id not in self.categories:
            errors["category_id"] = "category not found"

        stable_id = None
        if row.id:
            stable_id = parse_uuid(row.id)
            if stable_id is None:
                errors["id"] = "invalid product ID format"

        if errors:
            raise RowValidationError(errors)

        values = row_values(row, category_id, self.subcategory_ids)
        errors = validate_values(values)
        if errors:
            raise RowValidationError(errors)

        existing = self.resolve_product(row, stable_id)

        if existing is None:
            product = Product(id=uuid.uuid4(), **values)
            product.sku = row.sku.strip() or self.sku_generator.next()
            result.is_new = True
        else:
            product = copy.copy(existing)
            before = {name: getattr(existing, name) for name in TRACKED_FIELDS}
            for name, value in values.items():
                setattr(product, name, value)
            # An update without a SKU keeps the one the product already has
            product.sku = row.sku.strip() or existing.sku
            result.fields_changed = any(
                getattr(product, name) != before[name] for name in TRACKED_FIELDS
            )
            if existing.deleted_at is not None:
                product.deleted_at = None
                product.deleted_by = ""
                result.restored = True

        result.product = product
        self.process_images(result)
        return result

    def resolve_product(self, row: ImportRow, stable_id) -> Optional[Product]:
        product = None
        if stable_id is not None:
            product = self.products_by_id.get(stable_id)
        if product is None and row.sku.strip():
            product = self.products_by_sku.get(row.sku.strip())
        return product

    def process_images(self, result: RowResult):
        product = result.product
        urls = clean_image_urls(result.row.image_urls)

        if result.is_new:
            result.new_images, _ = fetch_and_store_images(
                self.gateway, product.pk, urls
            )
            result.images_changed = bool(urls)
            return

        if not result.row.has_images_field:
            return

        existing = self.images_by_product.get(product.pk, [])
        kept, retired, added = partition_images(existing, urls)
        new_images, _ = fetch_and_store_images(self.gateway, product.pk, added)

        result.retired_images = retired
        result.new_images = new_images
        result.images_changed = bool(retired or added)

        # The first requested image which is actually available is primary
        fetched = {image.source_url: image for image in new_images}
        fetched_ids = {image.pk for image in new_images}
        ordered = []
        for url in urls:
            image = kept.get(url) or fetched.get(url)
            if image is not None and image not in ordered:
                ordered.append(image)

        for position, image in enumerate(ordered):
            is_primary = position == 0
            if image.pk in fetched_ids:
                image.is_primary = is_primary
            elif image.is_primary != is_primary:
                result.primary_changes.append((image.pk, is_primary))

    def deduplicate_updates(self, results: list[RowResult]) -> list[RowResult]:
        """
        Several rows may resolve to the same product; the last one wins.
        """
        by_product = {}
        for result in results:
            by_product[result.product.pk] = result
        return sorted(by_product.values(), key=lambda result: result.index)

    # Phase C

    def create_products(self, results: list[RowResult]):
        for batch in chunked(results, self.batch_size):
            try:
                with transaction.atomic():
                    Product.objects.bulk_create([result.product for result in batch])
            except DatabaseError:
                logger.warning(
                    "Import job %s: bulk insert of %d products failed; retrying "
                    "individually",
                    self.job_id,
                    len(batch),
                )
                for result in batch:
                    self.create_product(result)
            else:
                self.created_ids.update(result.product.pk for result in batch)

    def create_product(self, result: RowResult):
        try:
            with transaction.atomic():
                result.product.save(force_insert=True)
        except DatabaseError as exc:
            logger.exception(
                "Import job %s: unable to create product %s from row %d",
                self.job_id,
                result.product.sku,
                result.row_number,
            )
            self.imported_ids.discard(result.product.pk)
            self.registry.reclassify_as_failed(
                self.job_id,
                "created",
                result.row_number,
                result.label,
                {"product": str(exc)},
            )
        else:
            self.created_ids.add(result.product.pk)

    def reconcile_tenants(self, results: list[RowResult]):
        entries = [
            (result.product, result.row)
            for result in results
            if result.row.has_tenant_info
            and (not result.is_new or result.product.pk in self.created_ids)
        ]

        reconciler = TenantReconciler(
            self.tenants_by_id, self.tenants_by_name, batch_size=self.batch_size
        )
        changed = reconciler.reconcile(entries)

        for pk in changed - self.created_ids - self.updated_ids:
            self.updated_ids.add(pk)
            self.registry.add_updated(self.job_id)

    def update_products(self, results: list[RowResult]):
        products = [
            result.product
            for result in results
            if result.restored or result.fields_changed
        ]
        by_pk = {result.product.pk: result for result in results}

        now = timezone.now()
        for product in products:
            product.updated_at = now

        for batch in chunked(products, self.batch_size):
            try:
                with transaction.atomic():
                    Product.all_objects.bulk_update(batch, UPDATE_FIELDS)
            except DatabaseError:
                logger.warning(
                    "Import job %s: bulk update of %d products failed; retrying "
                    "individually",
                    self.job_id,
                    len(batch),
                )
                for product in batch:
                    self.update_product(product, by_pk[product.pk])

    def update_product(self, product: Product, result: RowResult):
        try:
            with transaction.atomic():
                product.save(update_fields=UPDATE_FIELDS)
        except DatabaseError as exc:
            logger.exception(
                "Import job %s: unable to update product %s from row %d",
                self.job_id,
                product.sku,
                result.row_number,
            )
            fields = {"product": str(exc)}
            if product.pk in self.updated_ids:
                self.updated_ids.discard(product.pk)
                self.registry.reclassify_as_failed(
                    self.job_id, "updated", result.row_number, result.label, fields
                )
            else:
                self.registry.add_failure(
                    self.job_id, result.row_number, result.label, fields
                )

    def apply_images(self, results: list[RowResult]):
        retired = [image for result in results for image in result.retired_images]
        if retired:
            ProductImage.objects.filter(
                pk__in=[image.pk for image in retired]
            ).soft_delete(IMPORT_ACTOR)

        for is_primary in (False, True):
            image_ids = [
                image_id
                for result in results
                for image_id, flag in result.primary_changes
                if flag is is_primary
            ]
            if image_ids:
                ProductImage.objects.filter(pk__in=image_ids).update(
                    is_primary=is_primary, updated_at=timezone.now()
                )

        existing_ids = self.created_ids | {
            result.product.pk for result in results if not result.is_new
        }
        new_images, orphans = [], []
        for result in results:
            if result.product.pk in existing_ids:
                new_images.extend(result.new_images)
            else:
                orphans.extend(result.new_images)

        if orphans:
            logger.warning(
                "Import job %s: skipping %d images of products which were not "
                "created",
                self.job_id,
                len(orphans),
            )

        self.create_images(new_images)
        self.delete_blobs(
            [image.image_url for image in retired]
            + [image.image_url for image in orphans]
        )

    def create_images(self, images: list[ProductImage]):
        for batch in chunked(images, self.batch_size):
            try:
                with transaction.atomic():
                    ProductImage.objects.bulk_create(batch)
            except DatabaseError:
                logger.warning(
                    "Import job %s: bulk insert of %d images failed; retrying "
                    "individually",
                    self.job_id,
                    len(batch),
                )
                for image in batch:
                    try:
                        with transaction.atomic():
                            image.save(force_insert=True)
                    except DatabaseError:
                        logger.exception(
                            "Import job %s: unable to save image %s",
                            self.job_id,
                            image.image_url,
                        )

    def delete_blobs(self, urls: list[str]):
        """
        Delete stored copies nobody needs any more. A blob frozen into an
        order, or still used by a live image, stays.
        """
        urls = set(urls)
        if not urls:
            return

        in_use = set(
            OrderItem.objects.filter(image_url__in=urls).values_list(
                "image_url", flat=True
            )
        )
        in_use.update(
            ProductImage.objects.filter(image_url__in=urls).values_list(
                "image_url", flat=True
            )
        )

        for url in sorted(urls - in_use):
            object_path = self.gateway.object_path(url)
            if object_path is None:
                continue
            try:
                self.gateway.delete(object_path)
            except StorageError as exc:
                structured_logger.warning(
                    "Unable to delete retired product image.",
                    event_code="import_image_delete_failed",
                    reason=str(exc),
                    reason_code="storage_error",
                    job_id=str(self.job_id),
                    url=url,
                )

    # Phase D

    def prune(self):
        if not self.imported_ids:
            logger.warning(
                "Import job %s imported no products; refusing to delete the "
                "whole catalog",
                self.job_id,
            )
            return

        count = Product.objects.exclude(pk__in=self.imported_ids).soft_delete(
            IMPORT_ACTOR
        )

        self.registry.add_deleted(self.job_id, count)
        if count:
            # Deletion is a single statement, so progress jumps to the end
            self.registry.set_progress(self.job_id, 100)
        logger.info("Import job %s soft-deleted %d absent products", self.job_id, count)


def run_import_job(job_id, rows, delete_missing=False, registry=None, gateway=None):
    """
    Thread target for a background import. The thread's database connection
    is closed on the way out.
    """
    try:
        return ImportEngine(
            job_id, rows, delete_missing, gateway=gateway, registry=registry
        ).run()
    finally:
        connections.close_all()


def start_import(rows, delete_missing=False, registry=None, gateway=None) -> Job:
    """
    Register a job for ``rows`` and start importing them in the background.

    Returns the freshly created job; poll the registry for progress.
    """
    registry = registry or default_registry
    job = registry.create(len(rows))

    thread = threading.Thread(
        target=run_import_job,
        args=(job.id, rows, delete_missing),
        kwargs={"registry": registry, "gateway": gateway},
        name=f"product-import-{job.id}",
        daemon=True,
    )
    thread.start()

    return job
