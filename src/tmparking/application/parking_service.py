# File: src/tmparking/application/parking_service.py
"""
Parking Occupancy & Billing Application Service

This module implements the application service layer: the session
coordinator that owns the reference to the current snapshot and runs every
state transition against it.

Responsibilities:
1. Execute the use cases (entry, exit, capacity change, rate change,
   subscription payment, manual ledger entries)
2. Apply every transition atomically: build the complete new snapshot,
   validate it, swap it in, write it through to the store
3. Publish domain events after a transition has been committed
4. Provide read-only queries for dashboards, receipts and reports

Key Principles:
- Rejected operations leave the snapshot untouched
- Pure domain functions never read the clock; the service supplies instants
- Dependency Injection for testability (store, event bus, clock, strategies)
"""

from typing import Dict, List, Optional, Any, Tuple, Callable, TypeVar
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
import logging
import threading

from ..domain.models import (
    ParkingSpot, Ticket, Transaction, RateConfig,
    VehicleCategory, PaymentMethod, TransactionType, TransactionCategory,
    DomainEvent, VehicleEnteredEvent, VehicleExitedEvent, SpotsResizedEvent,
    RatesUpdatedEvent, TransactionRecordedEvent, SubscriptionPaidEvent,
    SpotAlreadyOccupied, TicketNotFound, TicketNotActive,
    UnknownVehicleCategory, ValidationError,
    to_instant, utc_now, duration_minutes, format_duration, ZERO
)
from ..domain.aggregates import ParkingState
from ..domain.strategies import (
    PricingStrategy, TieredHourlyPricingStrategy,
    LatenessPolicy, ThirtyDayLatenessPolicy, late_customers,
    minimum_fee, validate_override_amount
)
from ..infrastructure.repositories import (
    SnapshotStore, PersistenceError, export_backup, restore_backup
)
from ..infrastructure.messaging import EventBus
from .dtos import (
    EntryReceiptDTO, ExitQuoteDTO, ExitReceiptDTO, SpotStatusDTO,
    OccupancyDTO, FinancialSummaryDTO, LateCustomerDTO, StatusReportDTO
)

R = TypeVar('R')

Transition = Callable[[ParkingState], Tuple[ParkingState, R, List[DomainEvent]]]


# ============================================================================
# STATE CONTAINER
# ============================================================================

class StateContainer:
    """
    Holds the reference to the current snapshot
    Transitions run under a re-entrant lock so two terminals sharing the
    process cannot interleave operations on the same spot.
    """

    def __init__(self, state: ParkingState):
        state.validate_invariants()
        self._state = state
        self.lock = threading.RLock()

    @property
    def current(self) -> ParkingState:
        return self._state

    def apply(self, transition: Transition) -> Tuple[ParkingState, Any, List[DomainEvent]]:
        """Run transition against the current snapshot and swap in the result"""
        with self.lock:
            new_state, result, events = transition(self._state)
            new_state.validate_invariants()
            self._state = new_state
            return new_state, result, events

    def replace(self, state: ParkingState) -> None:
        with self.lock:
            state.validate_invariants()
            self._state = state


# ============================================================================
# APPLICATION SERVICE
# ============================================================================

class ParkingService:
    """
    Main application service for the parking lot

    Use cases:
    1. Vehicle entry, exit quote and paid exit
    2. Capacity and rate administration
    3. Subscription payments and manual ledger entries
    4. Occupancy, search, lateness and financial queries
    5. Backup and restore
    """

    def __init__(
        self,
        store: SnapshotStore,
        event_bus: Optional[EventBus] = None,
        pricing_strategy: Optional[PricingStrategy] = None,
        lateness_policy: Optional[LatenessPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
        initial_state: Optional[ParkingState] = None
    ):
        """
        Args:
            store: snapshot store; the initial state is loaded from it
                unless initial_state is given
            clock: source of "now" when an operation is not given an instant
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.pricing_strategy = pricing_strategy or TieredHourlyPricingStrategy()
        self.lateness_policy = lateness_policy or ThirtyDayLatenessPolicy()
        self.clock = clock or utc_now

        state = initial_state if initial_state is not None else store.load()
        self._container = StateContainer(state)

        self.logger.info(f"ParkingService initialized with {len(state.spots)} spots")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def state(self) -> ParkingState:
        """The current committed snapshot"""
        return self._container.current

    def _now(self, value: Optional[datetime] = None) -> datetime:
        return to_instant(value if value is not None else self.clock())

    @staticmethod
    def _category(value: Any) -> VehicleCategory:
        try:
            return VehicleCategory(value)
        except ValueError:
            raise UnknownVehicleCategory(value) from None

    @staticmethod
    def _payment_method(value: Any) -> PaymentMethod:
        try:
            return PaymentMethod(value)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {value!r}") from None

    def _commit(self, action: str, transition: Transition) -> Any:
        """
        Apply a transition, persist the new snapshot, publish its events.
        A failed save leaves the new snapshot committed in memory and
        raises PersistenceError.
        """
        with self._container.lock:
            new_state, result, events = self._container.apply(transition)
            try:
                self.store.save(new_state)
            except PersistenceError as e:
                self.logger.error(f"Snapshot not persisted after {action}: {e}", exc_info=True)
                raise

        for event in events:
            self.event_bus.publish(event)
        return result

    def _occupied_ticket(self, state: ParkingState, spot_id: int) -> Tuple[ParkingSpot, Ticket]:
        spot = state.spots.get(spot_id)
        if not spot.occupied:
            raise TicketNotActive(f"Spot {spot.label} is free")
        ticket = state.tickets.get(spot.ticket_id)
        if ticket is None:
            raise TicketNotFound(spot.ticket_id)
        if not ticket.is_active:
            raise TicketNotActive(f"Ticket {ticket.id} is {ticket.status.value}, not ACTIVE")
        return spot, ticket

    # ------------------------------------------------------------------
    # Entry / exit
    # ------------------------------------------------------------------

    def enter(
        self,
        spot_id: int,
        plate: str,
        vehicle_category: Optional[VehicleCategory] = None,
        now: Optional[datetime] = None,
        model: Optional[str] = None
    ) -> EntryReceiptDTO:
        """
        Use Case: Vehicle Entry (spot FREE -> OCCUPIED)
        Opens a ticket and binds it to the spot in one snapshot swap.
        The category defaults to the spot's category. No transaction is written.
        """
        category = self._category(vehicle_category) if vehicle_category is not None else None
        model = (model or "").strip() or None

        def transition(state: ParkingState):
            instant = self._now(now)
            spot = state.spots.get(spot_id)
            if spot.occupied:
                raise SpotAlreadyOccupied(spot.id, spot.ticket_id)

            ticket_category = category or spot.vehicle_category
            tickets, ticket = state.tickets.open(plate, ticket_category, spot.id, instant, model)
            spots = state.spots.mark_occupied(spot.id, ticket.id)

            receipt = EntryReceiptDTO(
                ticket_id=ticket.id,
                plate=ticket.plate,
                vehicle_category=ticket.vehicle_category,
                spot_id=spot.id,
                spot_label=spot.label,
                entry_time=ticket.entry_time,
                model=ticket.model,
                company_name=state.company_name,
            )
            event = VehicleEnteredEvent(
                occurred_at=instant,
                ticket_id=ticket.id,
                spot_id=spot.id,
                plate=ticket.plate,
                vehicle_category=ticket.vehicle_category,
            )
            return replace(state, spots=spots, tickets=tickets), receipt, [event]

        receipt = self._commit("entry", transition)
        self.logger.info(f"Vehicle {receipt.plate} entered spot {receipt.spot_label} (ticket {receipt.ticket_id})")
        return receipt

    def quote_exit(self, spot_id: int, now: Optional[datetime] = None) -> ExitQuoteDTO:
        """Suggested fee at a provisional exit time. No state change."""
        state = self.state
        instant = self._now(now)
        spot, ticket = self._occupied_ticket(state, spot_id)

        elapsed = duration_minutes(ticket.entry_time, instant)
        suggested = self.pricing_strategy.calculate_parking_fee(
            ticket.entry_time, instant, ticket.vehicle_category, state.rates
        )
        self.logger.debug(f"Quote for spot {spot.label}: {elapsed} min, {suggested}")

        return ExitQuoteDTO(
            ticket_id=ticket.id,
            plate=ticket.plate,
            vehicle_category=ticket.vehicle_category,
            spot_id=spot.id,
            spot_label=spot.label,
            entry_time=ticket.entry_time,
            quoted_at=instant,
            elapsed_minutes=elapsed,
            duration_display=format_duration(elapsed),
            suggested_amount=suggested,
            minimum_amount=minimum_fee(ticket.vehicle_category, state.rates),
        )

    def exit(
        self,
        spot_id: int,
        final_amount: Optional[Any] = None,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        exit_time: Optional[datetime] = None
    ) -> ExitReceiptDTO:
        """
        Use Case: Paid Exit (spot OCCUPIED -> FREE)
        Closes the ticket, frees the spot and records the income in one swap.
        final_amount None charges the fee computed at the commit instant.
        """
        override = validate_override_amount(final_amount) if final_amount is not None else None
        method = self._payment_method(payment_method)

        def transition(state: ParkingState):
            instant = self._now(exit_time)
            spot, ticket = self._occupied_ticket(state, spot_id)

            if override is None:
                computed = self.pricing_strategy.calculate_parking_fee(
                    ticket.entry_time, instant, ticket.vehicle_category, state.rates
                )
                amount = computed
            else:
                try:
                    computed = self.pricing_strategy.calculate_parking_fee(
                        ticket.entry_time, instant, ticket.vehicle_category, state.rates
                    )
                except UnknownVehicleCategory:
                    self.logger.warning(
                        f"No rate for {ticket.vehicle_category}; charging override for ticket {ticket.id}"
                    )
                    computed = None
                amount = override

            tickets, closed = state.tickets.close(ticket.id, instant, amount, method)
            spots = state.spots.mark_free(spot.id)
            transaction = Transaction(
                id=Transaction.new_id(),
                type=TransactionType.INCOME,
                category=TransactionCategory.PARKING,
                amount=amount,
                description=f"Exit plate {ticket.plate}",
                date=instant,
                payment_method=method,
            )
            transactions = state.transactions.append(transaction)

            elapsed = closed.elapsed_minutes()
            receipt = ExitReceiptDTO(
                ticket_id=closed.id,
                transaction_id=transaction.id,
                plate=closed.plate,
                vehicle_category=closed.vehicle_category,
                spot_id=spot.id,
                spot_label=spot.label,
                entry_time=closed.entry_time,
                exit_time=instant,
                elapsed_minutes=elapsed,
                duration_display=format_duration(elapsed),
                amount=closed.total_amount,
                computed_amount=computed,
                payment_method=method,
                company_name=state.company_name,
            )
            events = [
                VehicleExitedEvent(
                    occurred_at=instant,
                    ticket_id=closed.id,
                    spot_id=spot.id,
                    plate=closed.plate,
                    elapsed_minutes=elapsed,
                    amount=closed.total_amount,
                    payment_method=method,
                ),
                TransactionRecordedEvent(
                    occurred_at=instant,
                    transaction_id=transaction.id,
                    type=transaction.type,
                    category=transaction.category,
                    amount=transaction.amount,
                ),
            ]
            new_state = replace(state, spots=spots, tickets=tickets, transactions=transactions)
            return new_state, receipt, events

        receipt = self._commit("exit", transition)
        self.logger.info(
            f"Vehicle {receipt.plate} left spot {receipt.spot_label} after "
            f"{receipt.duration_display}, paid {receipt.amount} ({receipt.payment_method.value})"
        )
        return receipt

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def resize_spots(self, new_count: int) -> OccupancyDTO:
        """Grow or shrink the lot; occupied spots are never removed"""

        def transition(state: ParkingState):
            spots = state.spots.resize(new_count)
            if spots is state.spots:
                return state, None, []
            event = SpotsResizedEvent(
                occurred_at=self._now(),
                previous_count=len(state.spots),
                new_count=len(spots),
            )
            return replace(state, spots=spots), None, [event]

        previous = len(self.state.spots)
        self._commit("resize", transition)
        self.logger.info(f"Spot count changed from {previous} to {len(self.state.spots)}")
        return self.occupancy()

    def update_rate(
        self,
        category: VehicleCategory,
        first_hour: Optional[Any] = None,
        additional_hour: Optional[Any] = None,
        tolerance_minutes: Optional[int] = None
    ) -> RateConfig:
        """Change one category's rate; omitted fields keep their value"""
        category = self._category(category)

        def transition(state: ParkingState):
            current = state.rates.rate_for(category)
            rate = RateConfig(
                first_hour_price=current.first_hour_price if first_hour is None else first_hour,
                additional_hour_price=current.additional_hour_price if additional_hour is None else additional_hour,
                tolerance_minutes=current.tolerance_minutes if tolerance_minutes is None else tolerance_minutes,
            )
            event = RatesUpdatedEvent(occurred_at=self._now(), vehicle_category=category, rate=rate)
            return replace(state, rates=state.rates.with_rate(category, rate)), rate, [event]

        rate = self._commit("rate update", transition)
        self.logger.info(
            f"Rate for {category.value}: first hour {rate.first_hour_price}, "
            f"additional {rate.additional_hour_price}, tolerance {rate.tolerance_minutes} min"
        )
        return rate

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def record_subscription_payment(
        self,
        customer_id: str,
        now: Optional[datetime] = None,
        payment_method: PaymentMethod = PaymentMethod.CASH
    ) -> Transaction:
        """Mark a subscriber as paid and record the monthly fee as income"""
        method = self._payment_method(payment_method)

        def transition(state: ParkingState):
            instant = self._now(now)
            customer = state.find_customer(customer_id)
            transaction = Transaction(
                id=Transaction.new_id(),
                type=TransactionType.INCOME,
                category=TransactionCategory.SUBSCRIPTION,
                amount=customer.monthly_fee,
                description=f"Monthly fee - {customer.name}",
                date=instant,
                payment_method=method,
            )
            new_state = replace(
                state.with_customer(replace(customer, last_payment=instant)),
                transactions=state.transactions.append(transaction),
            )
            events = [
                SubscriptionPaidEvent(occurred_at=instant, customer_id=customer.id, amount=customer.monthly_fee),
                TransactionRecordedEvent(
                    occurred_at=instant,
                    transaction_id=transaction.id,
                    type=transaction.type,
                    category=transaction.category,
                    amount=transaction.amount,
                ),
            ]
            return new_state, transaction, events

        transaction = self._commit("subscription payment", transition)
        self.logger.info(f"Subscription payment of {transaction.amount} recorded for customer {customer_id}")
        return transaction

    def record_transaction(
        self,
        type: TransactionType,
        category: TransactionCategory,
        amount: Any,
        description: str,
        payment_method: Optional[PaymentMethod] = None,
        now: Optional[datetime] = None
    ) -> Transaction:
        """Record a ledger entry on behalf of a collaborator (store sale, expense)"""
        try:
            entry_type = TransactionType(type)
            entry_category = TransactionCategory.parse(category)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        value = validate_override_amount(amount)
        method = self._payment_method(payment_method) if payment_method is not None else None

        def transition(state: ParkingState):
            instant = self._now(now)
            transaction = Transaction(
                id=Transaction.new_id(),
                type=entry_type,
                category=entry_category,
                amount=value,
                description=description,
                date=instant,
                payment_method=method,
            )
            event = TransactionRecordedEvent(
                occurred_at=instant,
                transaction_id=transaction.id,
                type=entry_type,
                category=entry_category,
                amount=value,
            )
            return replace(state, transactions=state.transactions.append(transaction)), transaction, [event]

        transaction = self._commit("transaction", transition)
        self.logger.info(f"Recorded {entry_type.value} {entry_category.value} of {value}")
        return transaction

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _spot_status(self, state: ParkingState, spot: ParkingSpot) -> SpotStatusDTO:
        ticket = state.tickets.get(spot.ticket_id) if spot.occupied else None
        return SpotStatusDTO(
            spot_id=spot.id,
            label=spot.label,
            vehicle_category=spot.vehicle_category,
            occupied=spot.occupied,
            ticket_id=spot.ticket_id,
            plate=ticket.plate if ticket else None,
            entry_time=ticket.entry_time if ticket else None,
        )

    def spot_statuses(self) -> List[SpotStatusDTO]:
        state = self.state
        return [self._spot_status(state, spot) for spot in state.spots]

    def search_spots(self, term: str) -> List[SpotStatusDTO]:
        """Spots matching a label, plate or ticket id fragment"""
        state = self.state
        return [self._spot_status(state, spot) for spot in state.spots.search(term, state.tickets)]

    def occupancy(self) -> OccupancyDTO:
        return OccupancyDTO(**self.state.spots.occupancy())

    def status(self) -> StatusReportDTO:
        state = self.state
        return StatusReportDTO(
            company_name=state.company_name,
            occupancy=OccupancyDTO(**state.spots.occupancy()),
            spots=[self._spot_status(state, spot) for spot in state.spots],
        )

    def late_customers(self, now: Optional[datetime] = None) -> List[LateCustomerDTO]:
        """
        Active subscribers the lateness policy flags at now
        The due day is compared in now's own time zone; naive values are UTC.
        """
        instant = now if now is not None else self.clock()
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return [
            LateCustomerDTO(
                customer_id=c.id,
                name=c.name,
                plate=c.plate,
                phone=c.phone,
                due_day=c.due_day,
                monthly_fee=c.monthly_fee,
                last_payment=c.last_payment,
            )
            for c in late_customers(self.state.customers, instant, self.lateness_policy)
        ]

    def financial_summary(self) -> FinancialSummaryDTO:
        log = self.state.transactions
        totals = log.totals()
        by_category: Dict[str, Decimal] = {}
        for transaction in log:
            key = transaction.category.value
            by_category[key] = by_category.get(key, ZERO) + transaction.signed_amount
        return FinancialSummaryDTO(
            income=totals["income"],
            expense=totals["expense"],
            balance=totals["balance"],
            transaction_count=len(log),
            by_category=by_category,
        )

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def backup(self) -> str:
        """Full snapshot as a backup file body"""
        return export_backup(self.state, self.store.mapper)

    def restore(self, text: str) -> OccupancyDTO:
        """
        Replace the whole snapshot with a backup
        Raises: InvalidBackup, leaving the current snapshot untouched
        """
        restored = restore_backup(text, self.store.mapper)
        with self._container.lock:
            self._container.replace(restored)
            try:
                self.store.save(restored)
            except PersistenceError as e:
                self.logger.error(f"Snapshot not persisted after restore: {e}", exc_info=True)
                raise
        self.logger.info(f"Restored backup with {len(restored.spots)} spots and {len(restored.transactions)} transactions")
        return self.occupancy()

    def reload(self) -> ParkingState:
        """Discard the in-memory snapshot and load it from the store again"""
        state = self.store.load()
        self._container.replace(state)
        return state
