# File: src/tmparking/domain/aggregates.py
"""
Aggregates for the Parking Occupancy & Billing Engine

Aggregates:
1. SpotRegistry - physical spots and their ticket backlinks
2. TicketLedger - open and closed tickets
3. TransactionLog - append-only income/expense ledger
4. ParkingState - the application snapshot tying the three together

Key Concepts:
- Every aggregate is immutable; operations return a new aggregate
- Each aggregate enforces its own invariants, ParkingState enforces the
  cross-collection ones
- Lookups return None for absent records; mutations raise
"""

from dataclasses import dataclass, field, replace
from typing import List, Optional, Dict, Tuple, Any, Iterator, Iterable, Callable
from datetime import datetime
from decimal import Decimal
import logging
import uuid

from .models import (
    ParkingSpot, Ticket, Transaction, Customer,
    VehicleCategory, TicketStatus, PaymentMethod,
    TransactionType, TransactionCategory,
    SpotNotFound, TicketNotFound, CustomerNotFound, TicketNotActive,
    SpotInUse, InvalidCapacity, InvalidPlate, InvariantViolation,
    ZERO
)
from .strategies import RateTable


logger = logging.getLogger(__name__)


# ============================================================================
# IDENTIFIER GENERATION
# ============================================================================

class TicketIdGenerator:
    """
    Short, printable ticket ids drawn from uuid4.
    A draw that collides with an id already in the dataset is discarded.
    """

    def __init__(self, length: int = 12, source: Optional[Callable[[], str]] = None):
        self.length = length
        self._source = source or (lambda: uuid.uuid4().hex)

    def next_id(self, taken: Iterable[str] = ()) -> str:
        taken = set(taken)
        while True:
            candidate = self._source()[:self.length].upper()
            if candidate not in taken:
                return candidate


# ============================================================================
# SPOT REGISTRY
# ============================================================================

class SpotRegistry:
    """
    Aggregate: ordered set of physical spots
    Position in the sequence is the spot index used for labels and trimming.
    """

    DEFAULT_LABEL_PREFIX = "V-"

    def __init__(self, spots: Iterable[ParkingSpot] = ()):
        self._spots: Tuple[ParkingSpot, ...] = tuple(spots)
        self._by_id: Dict[int, int] = {}
        for index, spot in enumerate(self._spots):
            if spot.id in self._by_id:
                raise InvariantViolation(f"Duplicate spot id {spot.id}")
            self._by_id[spot.id] = index

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        count: int,
        moto_count: int = 0,
        label_prefix: str = DEFAULT_LABEL_PREFIX
    ) -> 'SpotRegistry':
        """Create count spots; the first moto_count are sized for motorcycles"""
        if count < 1:
            raise InvalidCapacity(f"Spot count must be at least 1, got {count}")
        spots = [
            ParkingSpot(
                id=i + 1,
                label=f"{label_prefix}{i + 1}",
                vehicle_category=VehicleCategory.MOTO if i < moto_count else VehicleCategory.CAR,
            )
            for i in range(count)
        ]
        return cls(spots)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[ParkingSpot]:
        return iter(self._spots)

    def __len__(self) -> int:
        return len(self._spots)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SpotRegistry):
            return NotImplemented
        return self._spots == other._spots

    def __repr__(self) -> str:
        return f"SpotRegistry({len(self._spots)} spots, {self.occupied_count} occupied)"

    @property
    def spots(self) -> Tuple[ParkingSpot, ...]:
        return self._spots

    @property
    def occupied_count(self) -> int:
        return sum(1 for spot in self._spots if spot.occupied)

    def find(self, spot_id: int) -> Optional[ParkingSpot]:
        index = self._by_id.get(spot_id)
        return self._spots[index] if index is not None else None

    def get(self, spot_id: int) -> ParkingSpot:
        spot = self.find(spot_id)
        if spot is None:
            raise SpotNotFound(spot_id)
        return spot

    def find_by_ticket(self, ticket_id: str) -> Optional[ParkingSpot]:
        for spot in self._spots:
            if spot.ticket_id == ticket_id:
                return spot
        return None

    def occupancy(self) -> Dict[str, Any]:
        """Occupancy summary for dashboards"""
        total = len(self._spots)
        occupied = self.occupied_count
        return {
            "total": total,
            "occupied": occupied,
            "free": total - occupied,
            "occupancy_rate": round(occupied * 100 / total) if total else 0,
        }

    def search(self, term: str, tickets: 'TicketLedger') -> List[ParkingSpot]:
        """
        Spots whose label contains term (case-insensitive), or whose
        occupying ticket's plate or id contains it
        """
        if not term:
            return list(self._spots)

        needle = term.strip()
        matches = []
        for spot in self._spots:
            if needle.lower() in spot.label.lower():
                matches.append(spot)
                continue
            if spot.occupied:
                ticket = tickets.get(spot.ticket_id)
                if ticket and (needle.upper() in ticket.plate or needle.upper() in ticket.id):
                    matches.append(spot)
        return matches

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _with_spot(self, spot: ParkingSpot) -> 'SpotRegistry':
        spots = list(self._spots)
        spots[self._by_id[spot.id]] = spot
        return SpotRegistry(spots)

    def mark_occupied(self, spot_id: int, ticket_id: str) -> 'SpotRegistry':
        """Bind a ticket to a free spot"""
        spot = self.get(spot_id)
        return self._with_spot(spot.occupy(ticket_id))

    def mark_free(self, spot_id: int) -> 'SpotRegistry':
        """Release a spot; freeing a free spot is a no-op"""
        spot = self.get(spot_id)
        if not spot.occupied:
            return self
        return self._with_spot(spot.free())

    def resize(
        self,
        new_count: int,
        default_category: VehicleCategory = VehicleCategory.CAR
    ) -> 'SpotRegistry':
        """
        Grow by appending free spots, shrink by trimming from the end.
        Raises: InvalidCapacity for new_count < 1, SpotInUse when a spot
        scheduled for removal is occupied
        """
        if isinstance(new_count, bool) or not isinstance(new_count, int) or new_count < 1:
            raise InvalidCapacity(f"Spot count must be a positive integer, got {new_count!r}")

        current = len(self._spots)
        if new_count == current:
            return self

        if new_count < current:
            removed = self._spots[new_count:]
            occupied = [spot.id for spot in removed if spot.occupied]
            if occupied:
                raise SpotInUse(occupied)
            return SpotRegistry(self._spots[:new_count])

        next_id = max((spot.id for spot in self._spots), default=0) + 1
        added = [
            ParkingSpot(
                id=next_id + offset,
                label=f"{self.DEFAULT_LABEL_PREFIX}{current + offset + 1}",
                vehicle_category=default_category,
            )
            for offset in range(new_count - current)
        ]
        return SpotRegistry(self._spots + tuple(added))


# ============================================================================
# TICKET LEDGER
# ============================================================================

class TicketLedger:
    """
    Aggregate: every ticket ever issued, in issue order
    Closed tickets are never modified again.
    """

    def __init__(
        self,
        tickets: Iterable[Ticket] = (),
        id_generator: Optional[TicketIdGenerator] = None
    ):
        self._tickets: Tuple[Ticket, ...] = tuple(tickets)
        self._by_id: Dict[str, int] = {}
        for index, ticket in enumerate(self._tickets):
            if ticket.id in self._by_id:
                raise InvariantViolation(f"Duplicate ticket id {ticket.id}")
            self._by_id[ticket.id] = index
        self._id_generator = id_generator or TicketIdGenerator()

    def __iter__(self) -> Iterator[Ticket]:
        return iter(self._tickets)

    def __len__(self) -> int:
        return len(self._tickets)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TicketLedger):
            return NotImplemented
        return self._tickets == other._tickets

    def __repr__(self) -> str:
        return f"TicketLedger({len(self._tickets)} tickets, {len(self.active())} active)"

    @property
    def tickets(self) -> Tuple[Ticket, ...]:
        return self._tickets

    def get(self, ticket_id: Optional[str]) -> Optional[Ticket]:
        index = self._by_id.get(ticket_id)
        return self._tickets[index] if index is not None else None

    def active(self) -> List[Ticket]:
        return [t for t in self._tickets if t.is_active]

    def active_ticket_for_spot(self, spot_id: int) -> Optional[Ticket]:
        for ticket in self._tickets:
            if ticket.is_active and ticket.spot_id == spot_id:
                return ticket
        return None

    def _derive(self, tickets: Iterable[Ticket]) -> 'TicketLedger':
        return TicketLedger(tickets, self._id_generator)

    def open(
        self,
        plate: str,
        vehicle_category: VehicleCategory,
        spot_id: Optional[int],
        now: datetime,
        model: Optional[str] = None
    ) -> Tuple['TicketLedger', Ticket]:
        """
        Issue a new ACTIVE ticket
        Returns: (new ledger, new ticket)
        Raises: InvalidPlate if the plate is empty
        """
        normalized = (plate or "").strip().upper()
        if not normalized:
            raise InvalidPlate("License plate cannot be empty")

        ticket = Ticket(
            id=self._id_generator.next_id(self._by_id),
            plate=normalized,
            vehicle_category=VehicleCategory(vehicle_category),
            entry_time=now,
            status=TicketStatus.ACTIVE,
            spot_id=spot_id,
            model=model,
        )
        return self._derive(self._tickets + (ticket,)), ticket

    def close(
        self,
        ticket_id: str,
        exit_time: datetime,
        amount: Decimal,
        payment_method: Optional[PaymentMethod]
    ) -> Tuple['TicketLedger', Ticket]:
        """
        Transition an ACTIVE ticket to PAID
        Raises: TicketNotFound, TicketNotActive, InvalidDuration
        """
        ticket = self.get(ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        if not ticket.is_active:
            raise TicketNotActive(f"Ticket {ticket_id} is {ticket.status.value}, not ACTIVE")

        closed = ticket.close(exit_time, amount, payment_method)
        tickets = list(self._tickets)
        tickets[self._by_id[ticket_id]] = closed
        return self._derive(tickets), closed


# ============================================================================
# TRANSACTION LOG
# ============================================================================

class TransactionLog:
    """
    Aggregate: append-only ledger, most recent entry first
    """

    def __init__(self, transactions: Iterable[Transaction] = ()):
        self._transactions: Tuple[Transaction, ...] = tuple(transactions)

    def __iter__(self) -> Iterator[Transaction]:
        return iter(self._transactions)

    def __len__(self) -> int:
        return len(self._transactions)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TransactionLog):
            return NotImplemented
        return self._transactions == other._transactions

    def __repr__(self) -> str:
        return f"TransactionLog({len(self._transactions)} entries)"

    @property
    def transactions(self) -> Tuple[Transaction, ...]:
        return self._transactions

    def append(self, transaction: Transaction) -> 'TransactionLog':
        return TransactionLog((transaction,) + self._transactions)

    def by_category(self, category: TransactionCategory) -> List[Transaction]:
        return [t for t in self._transactions if t.category == category]

    def totals(self) -> Dict[str, Decimal]:
        income = sum((t.amount for t in self._transactions if t.type == TransactionType.INCOME), ZERO)
        expense = sum((t.amount for t in self._transactions if t.type == TransactionType.EXPENSE), ZERO)
        return {"income": income, "expense": expense, "balance": income - expense}


# ============================================================================
# PARKING STATE (application snapshot)
# ============================================================================

@dataclass(frozen=True)
class ParkingState:
    """
    Aggregate Root: one immutable snapshot of the application
    extras carries document fields the engine does not interpret
    (products, users, license, currentUser, other settings keys).
    """
    spots: SpotRegistry = field(default_factory=SpotRegistry)
    tickets: TicketLedger = field(default_factory=TicketLedger)
    transactions: TransactionLog = field(default_factory=TransactionLog)
    rates: RateTable = field(default_factory=RateTable)
    customers: Tuple[Customer, ...] = ()
    company_name: str = "TM Parking"
    extras: Dict[str, Any] = field(default_factory=dict, compare=False)

    def validate_invariants(self) -> None:
        """
        Check the spot/ticket binding
        - an occupied spot references an existing ACTIVE ticket for that spot
        - no two ACTIVE tickets reference the same spot
        - an ACTIVE ticket whose spot exists is the one that spot holds
        """
        for spot in self.spots:
            if not spot.occupied:
                continue
            ticket = self.tickets.get(spot.ticket_id)
            if ticket is None:
                raise InvariantViolation(f"Spot {spot.id} references missing ticket {spot.ticket_id}")
            if not ticket.is_active:
                raise InvariantViolation(
                    f"Spot {spot.id} references ticket {ticket.id} in status {ticket.status.value}"
                )
            if ticket.spot_id != spot.id:
                raise InvariantViolation(
                    f"Spot {spot.id} holds ticket {ticket.id} issued for spot {ticket.spot_id}"
                )

        seen: Dict[int, str] = {}
        for ticket in self.tickets.active():
            if ticket.spot_id is None:
                continue
            if ticket.spot_id in seen:
                raise InvariantViolation(
                    f"Tickets {seen[ticket.spot_id]} and {ticket.id} are both active on spot {ticket.spot_id}"
                )
            seen[ticket.spot_id] = ticket.id

            spot = self.spots.find(ticket.spot_id)
            if spot is not None and spot.ticket_id != ticket.id:
                raise InvariantViolation(
                    f"Active ticket {ticket.id} is not bound to its spot {ticket.spot_id}"
                )

    def orphaned_tickets(self) -> List[Ticket]:
        """ACTIVE tickets whose spot no longer exists"""
        return [
            t for t in self.tickets.active()
            if t.spot_id is not None and self.spots.find(t.spot_id) is None
        ]

    def find_customer(self, customer_id: str) -> Customer:
        for customer in self.customers:
            if customer.id == customer_id:
                return customer
        raise CustomerNotFound(customer_id)

    def with_customer(self, customer: Customer) -> 'ParkingState':
        customers = tuple(customer if c.id == customer.id else c for c in self.customers)
        return replace(self, customers=customers)


# ============================================================================
# AGGREGATE FACTORY
# ============================================================================

class AggregateFactory:
    """Factory for creating aggregates with proper initialization"""

    @staticmethod
    def create_default_state(
        spot_count: int = 30,
        moto_spot_count: int = 5,
        rates: Optional[RateTable] = None,
        company_name: str = "TM Parking"
    ) -> ParkingState:
        """Fresh installation: spot_count spots, the first moto_spot_count for motorcycles"""
        state = ParkingState(
            spots=SpotRegistry.create(spot_count, moto_spot_count),
            rates=rates or RateTable(),
            company_name=company_name,
        )
        logger.debug(f"Created default state with {spot_count} spots")
        return state
