"""Unit tests for distance and the nearby-driver candidate search."""

import h3
import pytest

from src.domain.distance import distance_m, haversine_km, travel_seconds
from src.domain.entities import DriverRecord, Location
from src.domain.enums import DriverApproval, VehicleClass
from src.domain.matching import cells_within_radius, location_h3_cell, rank_candidates

PICKUP = Location(30.0444, 31.2357)


def driver(driver_id, lat, lng, **kwargs):
    defaults = dict(
        vehicle_class=VehicleClass.CAR,
        approval=DriverApproval.APPROVED,
        is_available=True,
        rating_average=4.5,
    )
    defaults.update(kwargs)
    return DriverRecord(driver_id=driver_id, location=Location(lat, lng), **defaults)


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_km(30.0, 31.0, 30.0, 31.0) == 0.0

    def test_known_distance(self):
        # Tahrir Square -> Zamalek ~2.3 km
        d = haversine_km(30.0444, 31.2357, 30.0609, 31.2197)
        assert 2.0 < d < 2.8

    def test_symmetric(self):
        d1 = haversine_km(30.0, 31.0, 31.0, 32.0)
        d2 = haversine_km(31.0, 32.0, 30.0, 31.0)
        assert abs(d1 - d2) < 1e-6

    def test_distance_m_is_kilometres_times_thousand(self):
        a, b = Location(30.0, 31.0), Location(30.01, 31.0)
        assert distance_m(a, b) == pytest.approx(haversine_km(30.0, 31.0, 30.01, 31.0) * 1000)


class TestTravelTime:
    def test_thirty_kmh(self):
        assert travel_seconds(1000, 30.0) == pytest.approx(120.0)

    def test_non_positive_speed_rejected(self):
        with pytest.raises(ValueError):
            travel_seconds(1000, 0)


class TestH3Cell:
    def test_returns_string(self):
        cell = location_h3_cell(PICKUP, 7)
        assert isinstance(cell, str)
        assert len(cell) > 0

    def test_cell_centre_maps_back_to_cell(self):
        cell = location_h3_cell(PICKUP)
        lat, lng = h3.cell_to_latlng(cell)
        assert location_h3_cell(Location(lat, lng)) == cell

    def test_distant_points_different_cell(self):
        """Cairo vs Alexandria."""
        assert location_h3_cell(PICKUP) != location_h3_cell(Location(31.2001, 29.9187))


class TestCellsWithinRadius:
    def test_includes_origin_cell(self):
        assert location_h3_cell(PICKUP) in cells_within_radius(PICKUP, 5000)

    def test_covers_points_on_the_radius(self):
        cells = cells_within_radius(PICKUP, 5000)
        # ~4.9 km north and east of the pickup
        assert location_h3_cell(Location(30.0884, 31.2357)) in cells
        assert location_h3_cell(Location(30.0444, 31.2865)) in cells

    def test_larger_radius_grows_disk(self):
        assert len(cells_within_radius(PICKUP, 10_000)) > len(cells_within_radius(PICKUP, 2_000))


class TestRankCandidates:
    def test_nearest_first(self):
        drivers = [
            driver("far", 30.0544, 31.2357),
            driver("near", 30.0454, 31.2357),
            driver("mid", 30.0494, 31.2357),
        ]
        ranked = rank_candidates(drivers, PICKUP, VehicleClass.CAR, 5000)
        assert [c.driver_id for c in ranked] == ["near", "mid", "far"]
        assert ranked[0].distance_m < ranked[1].distance_m

    def test_rating_breaks_distance_ties(self):
        drivers = [
            driver("low", 30.0454, 31.2357, rating_average=3.9),
            driver("high", 30.0454, 31.2357, rating_average=4.9),
        ]
        ranked = rank_candidates(drivers, PICKUP, VehicleClass.CAR, 5000)
        assert [c.driver_id for c in ranked] == ["high", "low"]

    def test_filters_ineligible_excluded_and_out_of_range(self):
        drivers = [
            driver("ok", 30.0454, 31.2357),
            driver("van", 30.0454, 31.2357, vehicle_class=VehicleClass.VAN),
            driver("offline", 30.0454, 31.2357, is_available=False),
            driver("pending", 30.0454, 31.2357, approval=DriverApproval.PENDING),
            driver("tried", 30.0454, 31.2357),
            driver("distant", 30.2000, 31.2357),
            DriverRecord("nowhere", VehicleClass.CAR, DriverApproval.APPROVED, True),
        ]
        ranked = rank_candidates(drivers, PICKUP, VehicleClass.CAR, 5000, excluding=["tried"])
        assert [c.driver_id for c in ranked] == ["ok"]

    def test_empty_pool(self):
        assert rank_candidates([], PICKUP, VehicleClass.CAR, 5000) == []
