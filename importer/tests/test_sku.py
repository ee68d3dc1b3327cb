import threading

from django.test import SimpleTestCase, override_settings

from importer.sku import SkuGenerator


class SkuGeneratorTests(SimpleTestCase):
    def test_starts_after_highest_taken(self):
        generator = SkuGenerator(
            ["SKU-000007", "SKU-000003", "OTHER-99"], prefix="SKU-"
        )

        self.assertEqual(generator.next(), "SKU-000008")
        self.assertEqual(generator.next(), "SKU-000009")

    def test_skips_reserved_skus(self):
        generator = SkuGenerator(prefix="SKU-")
        generator.reserve("SKU-000001")
        generator.reserve("")

        self.assertEqual(generator.next(), "SKU-000002")

    @override_settings(IMPORT_SKU_PREFIX="GRO-")
    def test_default_prefix_comes_from_settings(self):
        self.assertEqual(SkuGenerator().next(), "GRO-000001")

    def test_unique_across_threads(self):
        generator = SkuGenerator(prefix="SKU-")
        skus = []
        lock = threading.Lock()

        def work():
            for _ in range(50):
                sku = generator.next()
                with lock:
                    skus.append(sku)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(set(skus)), 200)
