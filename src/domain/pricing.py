"""
Move Pricing  (Strategy Pattern)
================================

Formula
-------
Total = Base_Price(vehicle) + Distance_km x Per_Km_Rate(vehicle)

Each vehicle class carries its own rate card.  The price is computed once
when a move is created and stored as an immutable snapshot on the move.

Complexity: O(1) per quote.
"""

from __future__ import annotations

from dataclasses import dataclass

from .distance import distance_m, travel_seconds
from .entities import PriceBreakdown, Quote, RouteMeta, Stop
from .enums import VehicleClass


# ── Rate cards ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class VehicleRate:
    base_price: float
    per_km_rate: float

    def calculate(self, distance_km: float) -> PriceBreakdown:
        distance_price = round(distance_km * self.per_km_rate, 2)
        return PriceBreakdown(
            base=round(self.base_price, 2),
            distance=distance_price,
            total=round(self.base_price + distance_price, 2),
        )


DEFAULT_RATES: dict[VehicleClass, VehicleRate] = {
    VehicleClass.BIKE: VehicleRate(base_price=20.0, per_km_rate=4.0),
    VehicleClass.CAR: VehicleRate(base_price=30.0, per_km_rate=5.0),
    VehicleClass.VAN: VehicleRate(base_price=40.0, per_km_rate=6.0),
    VehicleClass.TRUCK: VehicleRate(base_price=60.0, per_km_rate=7.0),
}


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """Pricing calculator consumed by the dispatch engine.

    ``price`` is a coroutine so a routing-backed implementation can be
    swapped in; this one never suspends.
    """

    def __init__(
        self,
        rates: dict[VehicleClass, VehicleRate] | None = None,
        average_speed_kmh: float = 30.0,
    ):
        self.rates = rates or DEFAULT_RATES
        self.average_speed_kmh = average_speed_kmh

    def quote(self, pickup: Stop, delivery: Stop, vehicle_class: VehicleClass) -> Quote:
        rate = self.rates.get(vehicle_class)
        if rate is None:
            raise ValueError(f"No rate card for vehicle class {vehicle_class}")
        meters = distance_m(pickup.location, delivery.location)
        route = RouteMeta(
            distance_m=round(meters, 1),
            duration_s=round(travel_seconds(meters, self.average_speed_kmh), 1),
        )
        return Quote(pricing=rate.calculate(meters / 1000), route=route)

    async def price(
        self, pickup: Stop, delivery: Stop, vehicle_class: VehicleClass
    ) -> Quote:
        return self.quote(pickup, delivery, vehicle_class)
