"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 1 admin, 5 customers
  - 8 drivers across all vehicle classes around central Cairo, most of
    them approved and online, one still awaiting approval
"""

import asyncio

from sqlalchemy import func, select

from src.config import settings
from src.domain.entities import DriverRecord, Location, UserRecord
from src.domain.enums import ActorRole, DriverApproval, VehicleClass
from src.domain.matching import location_h3_cell
from src.infrastructure.database import build_engine, build_session_factory
from src.infrastructure.models import UserModel
from src.infrastructure.repositories import SqlDispatchStore


USERS = [
    UserRecord("admin-1", "Support Desk", ActorRole.ADMIN, "support@example.com"),
    UserRecord("cust-1", "Nour Hassan", ActorRole.CUSTOMER, "nour@example.com", "+201000000001"),
    UserRecord("cust-2", "Omar Farouk", ActorRole.CUSTOMER, "omar@example.com", "+201000000002"),
    UserRecord("cust-3", "Laila Samir", ActorRole.CUSTOMER, "laila@example.com", "+201000000003"),
    UserRecord("cust-4", "Youssef Adel", ActorRole.CUSTOMER, "youssef@example.com", "+201000000004"),
    UserRecord("cust-5", "Mona Khaled", ActorRole.CUSTOMER, "mona@example.com", "+201000000005"),
]

DRIVERS = [
    # (id, name, class, lat, lng, approval, model, plate)
    ("drv-1", "Karim Mostafa", VehicleClass.BIKE, 30.0450, 31.2360, DriverApproval.APPROVED, "Honda PCX", "B 1234"),
    ("drv-2", "Hany Ibrahim", VehicleClass.BIKE, 30.0480, 31.2400, DriverApproval.APPROVED, "Yamaha NMAX", "B 5678"),
    ("drv-3", "Tarek Nabil", VehicleClass.CAR, 30.0430, 31.2330, DriverApproval.APPROVED, "Hyundai Elantra", "C 2201"),
    ("drv-4", "Amr Saeed", VehicleClass.CAR, 30.0500, 31.2450, DriverApproval.APPROVED, "Kia Cerato", "C 2202"),
    ("drv-5", "Sherif Gamal", VehicleClass.VAN, 30.0400, 31.2300, DriverApproval.APPROVED, "Toyota Hiace", "V 3301"),
    ("drv-6", "Mahmoud Ali", VehicleClass.VAN, 30.0550, 31.2500, DriverApproval.APPROVED, "Ford Transit", "V 3302"),
    ("drv-7", "Walid Fathy", VehicleClass.TRUCK, 30.0350, 31.2250, DriverApproval.APPROVED, "Isuzu NPR", "T 4401"),
    ("drv-8", "Ahmed Zaki", VehicleClass.TRUCK, 30.0600, 31.2600, DriverApproval.PENDING, "Mitsubishi Canter", "T 4402"),
]


async def seed(store: SqlDispatchStore) -> None:
    async with store.transaction() as tx:
        # Check if already seeded
        result = await tx.session.execute(select(func.count()).select_from(UserModel))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        for user in USERS:
            await tx.users.add(user)
        print(f"  Created {len(USERS)} users")

        for driver_id, name, vehicle_class, lat, lng, approval, model, plate in DRIVERS:
            await tx.users.add(UserRecord(driver_id, name, ActorRole.DRIVER))
            location = Location(lat, lng)
            await tx.drivers.add(
                DriverRecord(
                    driver_id=driver_id,
                    vehicle_class=vehicle_class,
                    approval=approval,
                    is_available=approval == DriverApproval.APPROVED,
                    location=location,
                    h3_cell=location_h3_cell(location, settings.h3_resolution),
                    rating_average=4.7,
                    rating_count=25,
                    rating_total=118,
                    vehicle_model=model,
                    license_plate=plate,
                )
            )
        print(f"  Created {len(DRIVERS)} drivers")

    print("\nSeed complete!")


async def main():
    print("Seeding database...")
    engine = build_engine(settings.database_url)
    await seed(SqlDispatchStore(build_session_factory(engine)))
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
