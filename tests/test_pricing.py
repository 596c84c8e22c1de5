"""Unit tests for the move pricing engine."""

import pytest

from src.domain.entities import Location, Stop
from src.domain.enums import VehicleClass
from src.domain.pricing import DEFAULT_RATES, PricingEngine, VehicleRate

PICKUP = Stop("Tahrir Square", Location(30.0444, 31.2357))
DELIVERY = Stop("Zamalek", Location(30.0609, 31.2197))


class TestVehicleRate:
    def test_base_plus_distance(self):
        breakdown = VehicleRate(base_price=30.0, per_km_rate=5.0).calculate(10.0)
        assert breakdown.base == 30.0
        assert breakdown.distance == 50.0
        assert breakdown.total == 80.0  # 30 + 10*5

    def test_rounds_to_cents(self):
        breakdown = VehicleRate(base_price=20.0, per_km_rate=4.0).calculate(1.23456)
        assert breakdown.distance == 4.94
        assert breakdown.total == 24.94

    def test_zero_distance_is_base_only(self):
        assert VehicleRate(base_price=60.0, per_km_rate=7.0).calculate(0).total == 60.0


class TestRateCards:
    def test_every_vehicle_class_priced(self):
        assert set(DEFAULT_RATES) == set(VehicleClass)

    def test_larger_vehicles_cost_more(self):
        order = [VehicleClass.BIKE, VehicleClass.CAR, VehicleClass.VAN, VehicleClass.TRUCK]
        totals = [DEFAULT_RATES[v].calculate(5.0).total for v in order]
        assert totals == sorted(totals)
        assert len(set(totals)) == len(totals)


class TestPricingEngine:
    def setup_method(self):
        self.engine = PricingEngine()

    def test_quote_includes_route(self):
        quote = self.engine.quote(PICKUP, DELIVERY, VehicleClass.CAR)
        assert 2000 < quote.route.distance_m < 2800
        # 30 km/h average
        assert quote.route.duration_s == pytest.approx(quote.route.distance_m * 0.12, rel=1e-3)

    def test_quote_total_matches_car_rate(self):
        quote = self.engine.quote(PICKUP, DELIVERY, VehicleClass.CAR)
        assert quote.pricing.base == 30.0
        expected = round(30.0 + round(quote.route.distance_m / 1000 * 5.0, 2), 2)
        assert quote.pricing.total == pytest.approx(expected, abs=0.02)

    def test_unknown_class_rejected(self):
        engine = PricingEngine(rates={VehicleClass.CAR: DEFAULT_RATES[VehicleClass.CAR]})
        with pytest.raises(ValueError):
            engine.quote(PICKUP, DELIVERY, VehicleClass.TRUCK)

    @pytest.mark.asyncio
    async def test_price_coroutine_matches_quote(self):
        quote = await self.engine.price(PICKUP, DELIVERY, VehicleClass.VAN)
        assert quote == self.engine.quote(PICKUP, DELIVERY, VehicleClass.VAN)
