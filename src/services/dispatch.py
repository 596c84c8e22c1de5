"""
Dispatch Engine
===============

Owns the whole move lifecycle: creation, sequential driver solicitation,
acceptance, progress and in-move tracking, cancellation, the payment
trigger on delivery and the customer's rating of the driver.

Solicitation protocol
---------------------
1. Ask the geo provider for candidates near pickup, excluding every
   driver already tried for this move.
2. No candidates -> the move becomes NO_DRIVERS_AVAILABLE.
3. Otherwise offer the move to the top candidate only, and arm a
   response timer keyed by a per-round token.
4. Reject and timeout are the same "decline"; after a decline the next
   round starts with the grown exclusion set, until the attempt cap.

Concurrency safety
------------------
* Every durable change goes through ``update_if`` (compare-and-swap on
  status) inside one unit of work.  Whatever changes the driver's
  availability flag is written in the same unit as the move change that
  causes it.
* A per-move ``asyncio.Lock`` serialises changes to the in-memory
  solicitation state inside this process.  A decline only acts if it
  names the live round (driver id, and token for timers), so late or
  duplicate events are no-ops.
* Notifications go out after commit and never roll anything back.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Coroutine, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from src.config import Settings
from src.domain import events
from src.domain.distance import distance_m, travel_seconds
from src.domain.entities import (
    Cancellation,
    Candidate,
    DriverRating,
    DriverRecord,
    Item,
    Location,
    Move,
    MoveView,
    Payment,
    Quote,
    Stop,
    UserRecord,
)
from src.domain.enums import (
    CANCELLATION_RULES,
    EN_ROUTE_STATUSES,
    PROGRESS_STATUSES,
    ActorRole,
    DriverApproval,
    MoveStatus,
    PaymentMethod,
    PaymentStatus,
    VehicleClass,
)
from src.domain.errors import (
    Conflict,
    DispatchError,
    Forbidden,
    InvalidInput,
    InvalidTransition,
    NotFound,
    UpstreamUnavailable,
)
from src.domain.matching import location_h3_cell
from src.domain.solicitation import PendingSolicitation, SolicitationRegistry

from .ports import (
    DispatchStore,
    GeoMatchingProvider,
    NotificationChannel,
    PaymentGateway,
    PricingProvider,
    UnitOfWork,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _stop_payload(stop: Stop) -> dict[str, Any]:
    return {
        "address": stop.address,
        "latitude": stop.location.latitude,
        "longitude": stop.location.longitude,
    }


class DispatchEngine:
    """Constructed once per process and shared by every request handler."""

    def __init__(
        self,
        store: DispatchStore,
        geo: GeoMatchingProvider,
        pricing: PricingProvider,
        notifier: NotificationChannel,
        payments: PaymentGateway,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._geo = geo
        self._pricing = pricing
        self._notifier = notifier
        self._payments = payments
        self._settings = settings or Settings()
        self._clock = clock
        self._solicitations = SolicitationRegistry()
        self._background: set[asyncio.Task] = set()

    @property
    def store(self) -> DispatchStore:
        return self._store

    @property
    def solicitations(self) -> SolicitationRegistry:
        return self._solicitations

    # ── Move creation ─────────────────────────────────────────────────

    async def estimate_price(
        self, pickup: Stop, delivery: Stop, vehicle_class: VehicleClass
    ) -> Quote:
        try:
            return await self._pricing.price(pickup, delivery, VehicleClass(vehicle_class))
        except DispatchError:
            raise
        except Exception as exc:
            logger.warning("Pricing provider failed: %s", exc)
            raise UpstreamUnavailable(f"Failed to calculate price: {exc}") from exc

    async def create_move(
        self,
        customer_id: str,
        pickup: Stop,
        delivery: Stop,
        vehicle_class: VehicleClass,
        items: Iterable[Item] = (),
        scheduled_for: Optional[datetime] = None,
        payment_method: PaymentMethod = PaymentMethod.CASH,
    ) -> Move:
        if not customer_id:
            raise InvalidInput("customer_id is required.")
        vehicle_class = VehicleClass(vehicle_class)

        async with self._store.transaction() as tx:
            if await tx.moves.find_active_for_customer(customer_id):
                raise Conflict("Customer already has an active move.")

        quote = await self.estimate_price(pickup, delivery, vehicle_class)

        now = self._clock()
        move = Move(
            id=uuid.uuid4().hex,
            customer_id=customer_id,
            pickup=pickup,
            delivery=delivery,
            vehicle_class=vehicle_class,
            pricing=quote.pricing,
            route=quote.route,
            items=list(items),
            payment=Payment(method=PaymentMethod(payment_method)),
            scheduled_for=_as_utc(scheduled_for),
            created_at=now,
            updated_at=now,
        )
        async with self._store.transaction() as tx:
            # re-checked at the point of mutation
            if await tx.moves.find_active_for_customer(customer_id):
                raise Conflict("Customer already has an active move.")
            await tx.moves.add(move)
        logger.info(
            "Move %s created for customer %s (%s, total=%.2f)",
            move.id,
            customer_id,
            vehicle_class.value,
            move.pricing.total,
        )

        if self._is_deferred(move, now):
            logger.info("Move %s scheduled for %s", move.id, move.scheduled_for)
            self._notify(
                customer_id,
                events.MOVE_SCHEDULED,
                {"move_id": move.id, "scheduled_for": move.scheduled_for.isoformat()},
            )
            return move

        async with self._solicitations.lock_for(move.id):
            await self._solicit(move.id, attempt=1, excluded=())
        return await self._reload(move.id)

    def _is_deferred(self, move: Move, now: datetime) -> bool:
        if move.scheduled_for is None:
            return False
        grace = timedelta(seconds=self._settings.schedule_grace_seconds)
        return move.scheduled_for > now + grace

    # ── Solicitation protocol ─────────────────────────────────────────

    async def _solicit(
        self, move_id: str, attempt: int, excluded: tuple[str, ...]
    ) -> None:
        """Run one solicitation round.  Caller holds the move's lock."""
        move = await self._load_pending(move_id)
        if move is None:
            self._solicitations.clear(move_id)
            return

        try:
            candidates = await self._geo.find_nearby_drivers(
                move.pickup.location,
                move.vehicle_class,
                self._settings.search_radius_meters,
                excluding=excluded,
            )
        except Exception:
            logger.warning(
                "Geo provider failed for move %s (attempt %d)",
                move_id,
                attempt,
                exc_info=True,
            )
            if attempt < self._settings.max_solicitation_attempts:
                # nobody is asked this round; the timer retries the search
                self._arm_round(move_id, None, attempt, excluded)
            else:
                await self._mark_no_drivers(move)
            return

        candidates = [c for c in candidates if c.driver_id not in excluded]
        if not candidates:
            await self._mark_no_drivers(move)
            return

        chosen = candidates[0]
        now = self._clock()
        move.last_offer_at = now
        async with self._store.transaction() as tx:
            still_pending = await tx.moves.update_if(
                move, MoveStatus.PENDING, expect_unassigned=True
            )
        if not still_pending:
            self._solicitations.clear(move_id)
            return

        self._arm_round(move_id, chosen.driver_id, attempt, excluded + (chosen.driver_id,))
        logger.info(
            "Offering move %s to driver %s (attempt %d, %.0f m away)",
            move_id,
            chosen.driver_id,
            attempt,
            chosen.distance_m,
        )
        self._notify(
            chosen.driver_id,
            events.MOVE_REQUEST_NEW,
            self._offer_payload(move, chosen, attempt),
        )

    def _arm_round(
        self,
        move_id: str,
        driver_id: Optional[str],
        attempt: int,
        excluded: tuple[str, ...],
    ) -> PendingSolicitation:
        solicitation = PendingSolicitation(
            move_id=move_id,
            driver_id=driver_id,
            attempt=attempt,
            excluded=excluded,
            started_at=self._clock(),
        )
        solicitation.timer = asyncio.get_running_loop().call_later(
            self._settings.driver_response_timeout_seconds,
            self._on_response_timeout,
            move_id,
            driver_id,
            solicitation.token,
        )
        return self._solicitations.open(solicitation)

    def _on_response_timeout(
        self, move_id: str, driver_id: Optional[str], token: str
    ) -> None:
        self._spawn(self.handle_response_timeout(move_id, driver_id, token))

    async def handle_response_timeout(
        self, move_id: str, driver_id: Optional[str], token: Optional[str] = None
    ) -> bool:
        """Timer expiry for a round; identical to a reject apart from the reason."""
        return await self._decline(move_id, driver_id, "timeout", token=token, timed_out=True)

    async def reject_move(
        self, move_id: str, driver_id: str, reason: Optional[str] = None
    ) -> None:
        async with self._store.transaction() as tx:
            if await tx.moves.get(move_id) is None:
                raise NotFound("Move not found.")
        await self._decline(move_id, driver_id, reason or "rejected", token=None)

    async def _decline(
        self,
        move_id: str,
        driver_id: Optional[str],
        reason: str,
        token: Optional[str],
        timed_out: bool = False,
    ) -> bool:
        async with self._solicitations.lock_for(move_id):
            pending = self._solicitations.get(move_id)
            if pending is None or not pending.matches(driver_id, token):
                logger.debug(
                    "Ignoring stale decline for move %s by driver %s (%s)",
                    move_id,
                    driver_id,
                    reason,
                )
                return False
            self._solicitations.clear(move_id)

            if driver_id is not None:
                logger.info(
                    "Driver %s declined move %s (attempt %d, reason=%s)",
                    driver_id,
                    move_id,
                    pending.attempt,
                    reason,
                )
                if timed_out:
                    self._notify(
                        driver_id,
                        events.MOVE_OFFER_EXPIRED,
                        {"move_id": move_id, "message": "Your move offer has timed out."},
                    )

            if pending.attempt >= self._settings.max_solicitation_attempts:
                move = await self._load_pending(move_id)
                if move is not None:
                    await self._mark_no_drivers(move)
                return True

            await self._solicit(move_id, pending.attempt + 1, pending.excluded)
            return True

    async def _mark_no_drivers(self, move: Move) -> None:
        move.transition_to(MoveStatus.NO_DRIVERS_AVAILABLE, self._clock())
        async with self._store.transaction() as tx:
            applied = await tx.moves.update_if(
                move, MoveStatus.PENDING, expect_unassigned=True
            )
        self._solicitations.clear(move.id)
        if not applied:
            logger.debug("Move %s left PENDING before it could be closed", move.id)
            return
        logger.info("Move %s: no drivers available", move.id)
        self._notify(
            move.customer_id,
            events.MOVE_NO_DRIVERS_FOUND,
            {
                "move_id": move.id,
                "message": events.STATUS_MESSAGES[MoveStatus.NO_DRIVERS_AVAILABLE],
            },
        )

    async def _load_pending(self, move_id: str) -> Optional[Move]:
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
        if move is None or move.status != MoveStatus.PENDING or move.driver_id:
            return None
        return move

    # ── Accept ────────────────────────────────────────────────────────

    async def accept_move(self, move_id: str, driver_id: str) -> Move:
        """Only the target of the live round may accept.

        Without a live round (a scheduled move not yet due, or one orphaned
        by a restart) nobody can take the move until a round offers it.
        """
        async with self._solicitations.lock_for(move_id):
            pending = self._solicitations.get(move_id)
            try:
                if pending is None or pending.driver_id != driver_id:
                    await self._reload(move_id)
                    raise Conflict("Move is not currently offered to this driver.")
                move, driver, driver_user = await self._commit_acceptance(
                    move_id, driver_id
                )
            except DispatchError as exc:
                logger.info(
                    "Driver %s failed to accept move %s: %s", driver_id, move_id, exc.message
                )
                self._notify(
                    driver_id,
                    events.MOVE_ACCEPTANCE_FAILED,
                    {"move_id": move_id, "reason": exc.message},
                )
                raise
            self._solicitations.clear(move_id)

        logger.info("Move %s accepted by driver %s", move_id, driver_id)
        self._announce_match(move, driver, driver_user)
        return move

    async def _commit_acceptance(
        self, move_id: str, driver_id: str
    ) -> tuple[Move, DriverRecord, Optional[UserRecord]]:
        now = self._clock()
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
            if move is None:
                raise NotFound("Move not found.")
            if move.status != MoveStatus.PENDING:
                raise Conflict("Move is not pending and cannot be accepted.")
            if move.driver_id:
                raise Conflict("Move already has a driver assigned.")

            driver = await tx.drivers.get(driver_id)
            if driver is None:
                raise NotFound("Driver not found.")
            if not driver.is_approved:
                raise Forbidden("Driver is not approved to operate.")
            if not driver.is_available:
                raise Conflict("Driver is not available.")
            if driver.vehicle_class != move.vehicle_class:
                raise InvalidInput("Driver vehicle class does not match the requested class.")

            move.driver_id = driver_id
            move.transition_to(MoveStatus.ACCEPTED, now)
            if not await tx.moves.update_if(
                move, MoveStatus.PENDING, expect_unassigned=True
            ):
                raise Conflict("Move was accepted by another driver.")
            if not await tx.drivers.update_availability_if(
                driver_id, expected=True, available=False, at=now
            ):
                raise Conflict("Driver is no longer available.")
            driver.is_available = False
            driver_user = await tx.users.get(driver_id)
        return move, driver, driver_user

    def _announce_match(
        self, move: Move, driver: DriverRecord, driver_user: Optional[UserRecord]
    ) -> None:
        contact = driver_user.contact() if driver_user else {"id": driver.driver_id}
        self._notify(
            move.customer_id,
            events.MOVE_ACCEPTED,
            {
                "move_id": move.id,
                "message": events.STATUS_MESSAGES[MoveStatus.ACCEPTED],
                "driver": {
                    **contact,
                    "vehicle": driver.vehicle_summary(),
                    "rating": driver.rating_average,
                },
                "eta_seconds": self._estimate_eta(driver, move),
            },
        )
        self._notify(
            driver.driver_id,
            events.MOVE_ACCEPTANCE_CONFIRMED,
            {
                "move_id": move.id,
                "pickup": _stop_payload(move.pickup),
                "delivery": _stop_payload(move.delivery),
                "total_price": move.pricing.total,
            },
        )

    def _estimate_eta(self, driver: DriverRecord, move: Move) -> Optional[int]:
        try:
            if driver.location is None:
                return None
            meters = distance_m(driver.location, move.pickup.location)
            return round(travel_seconds(meters, self._settings.average_speed_kmh))
        except Exception:
            logger.warning("ETA estimate failed for move %s", move.id, exc_info=True)
            return None

    # ── Progress ──────────────────────────────────────────────────────

    async def advance_move_status(
        self,
        move_id: str,
        driver_id: str,
        new_status: MoveStatus,
        location: Optional[Location] = None,
    ) -> Move:
        try:
            new_status = MoveStatus(new_status)
        except ValueError:
            raise InvalidInput(f"Unknown move status: {new_status}") from None
        if new_status not in PROGRESS_STATUSES:
            raise InvalidTransition(
                f"{new_status.value} cannot be reached through a progress update"
            )

        now = self._clock()
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
            if move is None:
                raise NotFound("Move not found.")
            if move.driver_id != driver_id:
                raise Forbidden("Driver not authorized for this move.")

            previous = move.status
            move.transition_to(new_status, now)
            delivered = new_status == MoveStatus.DELIVERED
            if delivered and move.payment.method == PaymentMethod.CASH:
                move.payment.status = PaymentStatus.COMPLETED
                move.payment.paid_at = now
            if not await tx.moves.update_if(move, previous):
                raise Conflict("Move status changed concurrently.")
            if delivered:
                await self._release_driver(
                    tx, driver_id, location or move.delivery.location, now
                )

        logger.info("Move %s: %s -> %s", move_id, previous.value, new_status.value)
        self._notify(
            move.customer_id,
            events.MOVE_STATUS_UPDATE,
            {
                "move_id": move.id,
                "status": new_status.value,
                "message": events.STATUS_MESSAGES[new_status],
            },
        )
        if delivered:
            self._notify(driver_id, events.MOVE_COMPLETED_ON_DRIVER_SIDE, {"move_id": move.id})
            move = await self._trigger_payment(move)
        return move

    async def _release_driver(
        self,
        tx: UnitOfWork,
        driver_id: str,
        location: Optional[Location],
        now: datetime,
    ) -> None:
        cell = (
            location_h3_cell(location, self._settings.h3_resolution)
            if location is not None
            else None
        )
        released = await tx.drivers.update_availability_if(
            driver_id,
            expected=None,
            available=True,
            location=location,
            h3_cell=cell,
            at=now,
        )
        if not released:
            logger.warning("Driver %s not found while releasing it", driver_id)

    async def _trigger_payment(self, move: Move) -> Move:
        """Runs once per move, right after the commit into DELIVERED."""
        if move.payment.method == PaymentMethod.CASH:
            try:
                await self._payments.finalize_cash_payment(move.id)
            except Exception:
                logger.warning(
                    "Cash ledger call failed for move %s", move.id, exc_info=True
                )
            return move

        try:
            url = await self._payments.create_card_payment_session(move)
        except Exception:
            logger.warning(
                "Could not create card payment session for move %s", move.id, exc_info=True
            )
            return move

        move.payment.checkout_url = url
        async with self._store.transaction() as tx:
            await tx.moves.update_if(move, MoveStatus.DELIVERED)
        self._notify(
            move.customer_id,
            events.MOVE_PAYMENT_REQUIRED,
            {"move_id": move.id, "payment_url": url, "amount": move.pricing.total},
        )
        return move

    async def complete_card_payment(self, move_id: str, transaction_id: str) -> Move:
        """Payment webhook: the card checkout for a delivered move succeeded."""
        now = self._clock()
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
            if move is None:
                raise NotFound("Move not found.")
            if move.payment.method != PaymentMethod.CARD:
                raise Conflict("Move is not paid by card.")
            if move.status != MoveStatus.DELIVERED:
                raise Conflict("Move has not been delivered yet.")
            if move.payment.status == PaymentStatus.COMPLETED:
                if move.payment.transaction_id == transaction_id:
                    return move
                raise Conflict("Payment already completed with another transaction.")
            move.payment.status = PaymentStatus.COMPLETED
            move.payment.transaction_id = transaction_id
            move.payment.paid_at = now
            move.updated_at = now
            if not await tx.moves.update_if(move, MoveStatus.DELIVERED):
                raise Conflict("Move changed concurrently.")
        logger.info("Card payment completed for move %s (%s)", move_id, transaction_id)
        self._notify(
            move.customer_id,
            events.MOVE_PAYMENT_COMPLETED,
            {"move_id": move.id, "amount": move.pricing.total},
        )
        return move

    # ── Rating ────────────────────────────────────────────────────────

    async def rate_driver(
        self,
        move_id: str,
        customer_id: str,
        rate: int,
        comment: Optional[str] = None,
    ) -> DriverRecord:
        """The customer of a delivered move rates its driver, once."""
        if isinstance(rate, bool) or not isinstance(rate, int) or not 1 <= rate <= 5:
            raise InvalidInput("Rating must be an integer between 1 and 5.")

        now = self._clock()
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
            if move is None:
                raise NotFound("Move not found.")
            if move.customer_id != customer_id:
                raise Forbidden("Only the move's customer may rate its driver.")
            if move.status != MoveStatus.DELIVERED or move.driver_id is None:
                raise Conflict("Only the driver of a delivered move can be rated.")
            if move.rating is not None:
                raise Conflict("The driver has already been rated for this move.")
            move.rating = DriverRating(rate=rate, rated_at=now, comment=comment)
            move.updated_at = now
            if not await tx.moves.update_if(
                move, MoveStatus.DELIVERED, expect_unrated=True
            ):
                raise Conflict("The driver has already been rated for this move.")
            driver = await tx.drivers.record_rating(move.driver_id, rate)
            if driver is None:
                raise NotFound("Driver not found.")

        logger.info(
            "Driver %s rated %d for move %s (average %.1f over %d)",
            driver.driver_id,
            rate,
            move_id,
            driver.rating_average,
            driver.rating_count,
        )
        self._notify(
            driver.driver_id,
            events.DRIVER_RATED,
            {"move_id": move_id, "rate": rate, "rating_average": driver.rating_average},
        )
        return driver

    # ── Cancellation ──────────────────────────────────────────────────

    async def cancel_move(
        self,
        move_id: str,
        actor_id: str,
        actor_role: ActorRole,
        reason: Optional[str] = None,
    ) -> Move:
        actor_role = ActorRole(actor_role)
        async with self._solicitations.lock_for(move_id):
            now = self._clock()
            async with self._store.transaction() as tx:
                move = await tx.moves.get(move_id)
                if move is None:
                    raise NotFound("Move not found.")
                target = self._cancellation_target(move, actor_id, actor_role)
                previous = move.status
                move.transition_to(target, now)
                move.cancellation = Cancellation(
                    reason=reason or "No reason provided",
                    actor_id=actor_id,
                    actor_role=actor_role,
                    cancelled_at=now,
                )
                if not await tx.moves.update_if(move, previous):
                    raise Conflict("Move status changed concurrently.")
                if move.driver_id:
                    await self._release_driver(tx, move.driver_id, None, now)
            solicitation = self._solicitations.clear(move_id)

        logger.info(
            "Move %s cancelled by %s %s (was %s)",
            move_id,
            actor_role.value,
            actor_id,
            previous.value,
        )
        self._announce_cancellation(move, actor_role, solicitation)
        return move

    @staticmethod
    def _cancellation_target(
        move: Move, actor_id: str, actor_role: ActorRole
    ) -> MoveStatus:
        if actor_role == ActorRole.CUSTOMER and actor_id != move.customer_id:
            raise Forbidden("Only the move's customer may cancel it.")
        if actor_role == ActorRole.DRIVER and (
            move.driver_id is None or actor_id != move.driver_id
        ):
            raise Forbidden("Only the assigned driver may cancel this move.")
        allowed_from, target = CANCELLATION_RULES[actor_role]
        if move.status not in allowed_from:
            raise Forbidden(
                f"A {actor_role.value} cannot cancel a move that is {move.status.value}."
            )
        return target

    def _announce_cancellation(
        self,
        move: Move,
        actor_role: ActorRole,
        solicitation: Optional[PendingSolicitation],
    ) -> None:
        messages = events.CANCELLATION_MESSAGES[move.status]
        payload = {
            "move_id": move.id,
            "status": move.status.value,
            "reason": move.cancellation.reason if move.cancellation else None,
        }
        if actor_role != ActorRole.CUSTOMER:
            self._notify(
                move.customer_id,
                events.MOVE_CANCELLED,
                {**payload, "message": messages["customer"]},
            )
        if move.driver_id:
            self._notify(
                move.driver_id,
                events.MOVE_CANCELLED,
                {**payload, "message": messages["driver"]},
            )
        if solicitation is not None and solicitation.driver_id:
            self._notify(
                solicitation.driver_id,
                events.MOVE_REQUEST_CANCELLED,
                {"move_id": move.id, "message": "Move request cancelled."},
            )

    # ── Queries ───────────────────────────────────────────────────────

    async def get_move(
        self, move_id: str, requester_id: str, requester_role: ActorRole
    ) -> MoveView:
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
            if move is None:
                raise NotFound("Move not found.")
            if ActorRole(requester_role) != ActorRole.ADMIN and not (
                requester_id and move.is_party(requester_id)
            ):
                raise Forbidden("Not authorized to view this move.")
            view = MoveView(move=move, customer=await tx.users.get(move.customer_id))
            if move.driver_id:
                view.driver = await tx.users.get(move.driver_id)
                view.driver_profile = await tx.drivers.get(move.driver_id)
        return view

    async def list_moves_for_customer(self, customer_id: str) -> list[Move]:
        async with self._store.transaction() as tx:
            return await tx.moves.list_for_customer(customer_id)

    async def list_moves_for_driver(self, driver_id: str) -> list[Move]:
        async with self._store.transaction() as tx:
            return await tx.moves.list_for_driver(driver_id)

    async def _reload(self, move_id: str) -> Move:
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
        if move is None:
            raise NotFound("Move not found.")
        return move

    # ── Driver availability ───────────────────────────────────────────

    async def register_driver(
        self,
        driver_id: str,
        vehicle_class: VehicleClass,
        vehicle_model: Optional[str] = None,
        vehicle_color: Optional[str] = None,
        license_plate: Optional[str] = None,
    ) -> DriverRecord:
        driver = DriverRecord(
            driver_id=driver_id,
            vehicle_class=VehicleClass(vehicle_class),
            vehicle_model=vehicle_model,
            vehicle_color=vehicle_color,
            license_plate=license_plate,
        )
        async with self._store.transaction() as tx:
            if await tx.drivers.get(driver_id) is not None:
                raise Conflict("Driver profile already exists.")
            await tx.drivers.add(driver)
        logger.info("Driver %s registered (%s), awaiting approval", driver_id, driver.vehicle_class.value)
        return driver

    async def approve_driver(self, driver_id: str, approval: DriverApproval) -> DriverRecord:
        approval = DriverApproval(approval)
        async with self._store.transaction() as tx:
            if not await tx.drivers.update_approval(driver_id, approval):
                raise NotFound("Driver not found.")
            driver = await tx.drivers.get(driver_id)
        logger.info("Driver %s approval set to %s", driver_id, approval.value)
        if approval != DriverApproval.APPROVED:
            for solicitation in self._solicitations.for_driver(driver_id):
                await self._decline(
                    solicitation.move_id, driver_id, "suspended", token=solicitation.token
                )
        return driver

    async def set_driver_availability(
        self, driver_id: str, available: bool, location: Optional[Location] = None
    ) -> DriverRecord:
        now = self._clock()
        async with self._store.transaction() as tx:
            driver = await tx.drivers.get(driver_id)
            if driver is None:
                raise NotFound("Driver not found.")
            cell = None
            if available:
                if not driver.is_approved:
                    raise Forbidden("Driver is not an approved partner.")
                if location is None:
                    raise InvalidInput("A location is required to go online.")
                if await tx.moves.find_active_for_driver(driver_id):
                    raise Conflict("Driver is assigned to an active move.")
                cell = location_h3_cell(location, self._settings.h3_resolution)
            if not await tx.drivers.update_availability_if(
                driver_id,
                expected=driver.is_available,
                available=available,
                location=location if available else None,
                h3_cell=cell,
                at=now,
            ):
                raise Conflict("Driver availability changed concurrently.")
            driver = await tx.drivers.get(driver_id)

        logger.info("Driver %s is now %s", driver_id, "online" if available else "offline")
        if not available:
            # an offline driver cannot take the offer they are holding
            for solicitation in self._solicitations.for_driver(driver_id):
                await self._decline(
                    solicitation.move_id, driver_id, "offline", token=solicitation.token
                )
        return driver

    async def update_driver_location(
        self, driver_id: str, location: Location
    ) -> DriverRecord:
        now = self._clock()
        async with self._store.transaction() as tx:
            driver = await tx.drivers.get(driver_id)
            if driver is None:
                raise NotFound("Driver not found.")
            if not driver.is_available:
                raise Forbidden("Cannot update location while offline. Please go online first.")
            if not await tx.drivers.update_availability_if(
                driver_id,
                expected=True,
                available=True,
                location=location,
                h3_cell=location_h3_cell(location, self._settings.h3_resolution),
                at=now,
            ):
                raise Conflict("Driver went offline concurrently.")
            driver = await tx.drivers.get(driver_id)
        return driver

    async def track_move_location(
        self, move_id: str, driver_id: str, location: Location
    ) -> Optional[float]:
        """Location ping from the driver out on *move_id*.

        Stores the position, forwards it to the customer and sends a
        proximity alert once the driver is within ``approach_alert_meters``
        of the stop they are heading to.  Returns the distance to that stop,
        or None while the driver waits at a stop.
        """
        now = self._clock()
        async with self._store.transaction() as tx:
            move = await tx.moves.get(move_id)
            if move is None:
                raise NotFound("Move not found.")
            if move.driver_id != driver_id:
                raise Forbidden("Driver not authorized for this move.")
            if move.status not in EN_ROUTE_STATUSES:
                raise Conflict("Move is not in progress.")
            stored = await tx.drivers.update_availability_if(
                driver_id,
                expected=False,
                available=False,
                location=location,
                h3_cell=location_h3_cell(location, self._settings.h3_resolution),
                at=now,
            )
        if not stored:
            logger.warning("Driver %s on move %s is not marked busy", driver_id, move_id)

        self._notify(
            move.customer_id,
            events.MOVE_DRIVER_LOCATION,
            {
                "move_id": move.id,
                "driver_id": driver_id,
                "latitude": location.latitude,
                "longitude": location.longitude,
            },
        )
        if move.status == MoveStatus.ACCEPTED:
            stop, event = move.pickup, events.MOVE_DRIVER_APPROACHING_PICKUP
        elif move.status == MoveStatus.PICKED_UP:
            stop, event = move.delivery, events.MOVE_DRIVER_APPROACHING_DELIVERY
        else:
            return None

        meters = distance_m(location, stop.location)
        if meters < self._settings.approach_alert_meters:
            self._notify(
                move.customer_id, event, {"move_id": move.id, "distance_m": round(meters)}
            )
        return meters

    # ── Reconciliation ────────────────────────────────────────────────

    async def reconcile_pending(self, now: Optional[datetime] = None) -> int:
        """Restart solicitation for PENDING moves nobody is working on.

        Covers moves orphaned by a restart (their timers died with the
        process) and scheduled moves whose time has come.  Returns the
        number of moves restarted.
        """
        now = now or self._clock()
        stale_before = now - timedelta(seconds=self._settings.stale_pending_after_seconds)
        due_before = now + timedelta(seconds=self._settings.schedule_grace_seconds)

        async with self._store.transaction() as tx:
            moves = await tx.moves.list_pending_unassigned()

        restarted = 0
        for move in moves:
            if self._solicitations.has(move.id):
                continue
            if move.scheduled_for is not None and move.last_offer_at is None:
                if move.scheduled_for > due_before:
                    continue
            else:
                last = move.last_offer_at or move.created_at
                if last is not None and last > stale_before:
                    continue
            async with self._solicitations.lock_for(move.id):
                if self._solicitations.has(move.id):
                    continue
                logger.info("Restarting solicitation for move %s", move.id)
                await self._solicit(move.id, attempt=1, excluded=())
                restarted += 1
        return restarted

    # ── Plumbing ──────────────────────────────────────────────────────

    def _offer_payload(self, move: Move, candidate: Candidate, attempt: int) -> dict[str, Any]:
        return {
            "move_id": move.id,
            "pickup": _stop_payload(move.pickup),
            "delivery": _stop_payload(move.delivery),
            "vehicle_class": move.vehicle_class.value,
            "item_count": len(move.items),
            "total_price": move.pricing.total,
            "distance_to_pickup_m": candidate.distance_m,
            "attempt": attempt,
            "respond_within_seconds": self._settings.driver_response_timeout_seconds,
        }

    def _notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            self._notifier.notify(user_id, event, payload)
        except Exception:
            logger.exception("Notification %s to user %s failed", event, user_id)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background dispatch task failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait until every timer-triggered task currently running finishes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        cleared = self._solicitations.clear_all()
        await self.drain()
        logger.info("Dispatch engine stopped (%d live solicitations dropped)", cleared)
