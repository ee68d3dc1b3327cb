from django.test import TestCase

from grocer.exceptions import InvalidCoordinates, NoServingTenant
from grocer.routing import (
    haversine_km,
    select_serving_tenant,
    serving_tenants,
    validate_coordinates,
)

from .utils import create_tenant

# Trafalgar Square
CUSTOMER = (51.5080, -0.1281)


class HaversineTests(TestCase):
    def test_zero_distance(self):
        self.assertEqual(haversine_km(51.5, -0.1, 51.5, -0.1), 0)

    def test_london_to_paris(self):
        distance = haversine_km(51.5074, -0.1278, 48.8566, 2.3522)
        self.assertAlmostEqual(distance, 343.5, delta=1)

    def test_symmetric(self):
        self.assertAlmostEqual(
            haversine_km(10, 20, -30, 40), haversine_km(-30, 40, 10, 20)
        )


class ValidateCoordinatesTests(TestCase):
    def test_bounds_are_inclusive(self):
        self.assertEqual(validate_coordinates(90, 180), (90.0, 180.0))
        self.assertEqual(validate_coordinates("-90", "-180"), (-90.0, -180.0))

    def test_out_of_range(self):
        for latitude, longitude in ((90.1, 0), (-91, 0), (0, 180.5), (0, -181)):
            with (
                self.subTest(latitude=latitude, longitude=longitude),
                self.assertRaises(InvalidCoordinates),
            ):
                validate_coordinates(latitude, longitude)

    def test_not_numbers(self):
        for value in (None, "north", float("nan")):
            with self.subTest(value=value), self.assertRaises(InvalidCoordinates):
                validate_coordinates(value, 0)


class ServingTenantTests(TestCase):
    def setUp(self):
        # About 0.5km and 3.6km from the customer
        self.near = create_tenant(
            name="Covent Garden", latitude=51.5117, longitude=-0.1240
        )
        self.far = create_tenant(name="Camden", latitude=51.5390, longitude=-0.1426)
        # Inside its radius geographically, but closed
        create_tenant(
            name="Closed", latitude=51.5081, longitude=-0.1282, is_active=False
        )
        # Close by, but only delivers within 100m
        create_tenant(
            name="Tiny", latitude=51.5100, longitude=-0.1281, delivery_radius=0.1
        )

    def test_nearest_first(self):
        candidates = serving_tenants(*CUSTOMER)

        self.assertEqual(
            [candidate.tenant for candidate in candidates], [self.near, self.far]
        )
        self.assertLess(candidates[0].distance_km, candidates[1].distance_km)

    def test_select_serving_tenant(self):
        self.assertEqual(select_serving_tenant(*CUSTOMER).tenant, self.near)

    def test_radius_is_respected(self):
        self.far.delivery_radius = 1
        self.far.save()

        self.assertEqual(
            [candidate.tenant for candidate in serving_tenants(*CUSTOMER)],
            [self.near],
        )

    def test_deleted_tenants_do_not_serve(self):
        self.near.soft_delete(deleted_by="admin")

        self.assertEqual(select_serving_tenant(*CUSTOMER).tenant, self.far)

    def test_no_serving_tenant(self):
        with self.assertRaises(NoServingTenant):
            select_serving_tenant(48.8566, 2.3522)

    def test_invalid_coordinates_are_rejected_before_routing(self):
        with self.assertRaises(InvalidCoordinates):
            select_serving_tenant(200, 0)
