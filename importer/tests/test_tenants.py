from django.test import TestCase

from grocer.models import TenantProduct
from grocer.tests.utils import create_product, create_tenant, create_tenant_product
from importer.schemas import ImportRow
from importer.tenants import TenantReconciler


class TenantReconcilerTests(TestCase):
    def setUp(self):
        self.strand = create_tenant(name="Strand")
        self.soho = create_tenant(name="Soho")
        self.camden = create_tenant(name="Camden")
        tenants = [self.strand, self.soho, self.camden]

        self.reconciler = TenantReconciler(
            {tenant.pk: tenant for tenant in tenants},
            {tenant.name: tenant for tenant in tenants},
            batch_size=2,
        )
        self.product = create_product()

    def row(self, *tenants, **kwargs):
        return ImportRow(tenant_ids=[str(tenant.pk) for tenant in tenants], **kwargs)

    def live_tenants(self, product=None):
        return set(
            TenantProduct.objects.filter(product=product or self.product).values_list(
                "tenant__name", flat=True
            )
        )

    def test_desired_tenants(self):
        row = ImportRow(
            tenant_ids=[str(self.strand.pk), "not-a-uuid", str(self.product.pk)],
            tenant_names="Soho\nNowhere\n",
        )

        with self.assertLogs("importer.tenants", level="WARNING") as logs:
            desired = self.reconciler.desired_tenants(row)

        self.assertEqual(desired, {self.strand.pk, self.soho.pk})
        self.assertEqual(len(logs.records), 3)

    def test_creates_overlays(self):
        changed = self.reconciler.reconcile(
            [
                (
                    self.product,
                    self.row(
                        self.strand, self.soho, stock_quantity=12, reorder_level=3
                    ),
                )
            ]
        )

        self.assertEqual(changed, {self.product.pk})
        self.assertEqual(self.live_tenants(), {"Strand", "Soho"})
        overlay = TenantProduct.objects.get(tenant=self.strand)
        self.assertEqual(overlay.stock_quantity, 12)
        self.assertEqual(overlay.reorder_level, 3)
        self.assertTrue(overlay.is_available)

    def test_inactive_products_are_unavailable(self):
        self.reconciler.reconcile(
            [(self.product, self.row(self.strand, status="inactive"))]
        )

        self.assertFalse(TenantProduct.objects.get().is_available)

    def test_replaces_overlays(self):
        create_tenant_product(tenant=self.strand, product=self.product)
        create_tenant_product(tenant=self.soho, product=self.product)

        changed = self.reconciler.reconcile(
            [(self.product, self.row(self.soho, self.camden))]
        )

        self.assertEqual(changed, {self.product.pk})
        self.assertEqual(self.live_tenants(), {"Soho", "Camden"})
        removed = TenantProduct.all_objects.get(tenant=self.strand)
        self.assertIsNotNone(removed.deleted_at)
        self.assertEqual(removed.deleted_by, "import")

    def test_restores_removed_overlay(self):
        removed = create_tenant_product(tenant=self.strand, product=self.product)
        removed.soft_delete(deleted_by="admin")

        changed = self.reconciler.reconcile(
            [(self.product, self.row(self.strand, stock_quantity=4))]
        )

        self.assertEqual(changed, {self.product.pk})
        self.assertEqual(TenantProduct.all_objects.count(), 1)
        restored = TenantProduct.objects.get()
        self.assertEqual(restored.pk, removed.pk)
        self.assertEqual(restored.stock_quantity, 4)
        self.assertEqual(restored.deleted_by, "")

    def test_unchanged_associations(self):
        create_tenant_product(tenant=self.strand, product=self.product)

        changed = self.reconciler.reconcile([(self.product, self.row(self.strand))])

        self.assertEqual(changed, set())
        self.assertEqual(TenantProduct.all_objects.count(), 1)

    def test_unresolvable_tenants_remove_existing_associations(self):
        overlay = create_tenant_product(tenant=self.strand, product=self.product)

        with self.assertLogs("importer.tenants", level="WARNING") as logs:
            changed = self.reconciler.reconcile(
                [(self.product, ImportRow(tenant_names=["Nowhere"]))]
            )

        self.assertIn("Nowhere", logs.output[0])
        self.assertEqual(changed, {self.product.pk})
        self.assertEqual(self.live_tenants(), set())
        overlay.refresh_from_db()
        self.assertIsNotNone(overlay.deleted_at)
        self.assertEqual(overlay.deleted_by, "import")

    def test_malformed_tenant_ids_are_skipped(self):
        create_tenant_product(tenant=self.strand, product=self.product)

        with self.assertLogs("importer.tenants", level="WARNING"):
            changed = self.reconciler.reconcile(
                [
                    (
                        self.product,
                        ImportRow(
                            tenant_ids=["not-a-uuid", str(self.soho.pk)],
                            tenant_names=["Nowhere"],
                        ),
                    )
                ]
            )

        self.assertEqual(changed, {self.product.pk})
        self.assertEqual(self.live_tenants(), {"Soho"})

    def test_later_rows_for_the_same_product_win(self):
        changed = self.reconciler.reconcile(
            [
                (self.product, self.row(self.strand, self.soho)),
                (self.product, self.row(self.camden)),
            ]
        )

        self.assertEqual(changed, {self.product.pk})
        self.assertEqual(self.live_tenants(), {"Camden"})
        self.assertEqual(TenantProduct.all_objects.count(), 1)

    def test_batches_many_products(self):
        products = [create_product() for _ in range(5)]

        changed = self.reconciler.reconcile(
            [(product, self.row(self.strand)) for product in products]
        )

        self.assertEqual(changed, {product.pk for product in products})
        self.assertEqual(TenantProduct.objects.filter(tenant=self.strand).count(), 5)
