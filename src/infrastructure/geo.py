"""H3-backed geo matching provider over the driver repository."""

from __future__ import annotations

import logging

from src.domain.entities import Candidate, Location
from src.domain.enums import VehicleClass
from src.domain.matching import cells_within_radius, rank_candidates
from src.services.ports import DispatchStore

logger = logging.getLogger(__name__)


class H3DriverLocator:
    def __init__(self, store: DispatchStore, resolution: int = 7):
        self._store = store
        self.resolution = resolution

    async def find_nearby_drivers(
        self,
        point: Location,
        vehicle_class: VehicleClass,
        radius_meters: float,
        excluding: tuple[str, ...] = (),
    ) -> list[Candidate]:
        cells = cells_within_radius(point, radius_meters, self.resolution)
        async with self._store.transaction() as tx:
            drivers = await tx.drivers.find_available(vehicle_class, cells)
        candidates = rank_candidates(drivers, point, vehicle_class, radius_meters, excluding)
        logger.debug(
            "%d cells searched, %d drivers in cells, %d candidates within %.0f m",
            len(cells),
            len(drivers),
            len(candidates),
            radius_meters,
        )
        return candidates
