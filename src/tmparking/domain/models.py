# File: src/tmparking/domain/models.py
"""
Domain Models for the Parking Occupancy & Billing Engine

This module contains:
1. Enums: closed vocabularies for vehicle categories, statuses and ledger entries
2. Value Objects: RateConfig and money/instant helpers
3. Entities: ParkingSpot, Ticket, Transaction, Customer (immutable records)
4. Domain Exceptions: the error taxonomy surfaced to callers
5. Domain Events: facts published after a committed state transition

Every record is a frozen dataclass. State changes never mutate a record in
place; aggregates build replacement records with ``dataclasses.replace``.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
import uuid


CENT = Decimal('0.01')
ZERO = Decimal('0.00')


# ============================================================================
# ENUMS FOR DOMAIN TYPES
# ============================================================================

class VehicleCategory(str, Enum):
    """Vehicle categories a spot is sized for and a rate is defined for"""
    CAR = "CAR"
    MOTO = "MOTO"
    VAN = "VAN"
    TRUCK = "TRUCK"

    def __str__(self) -> str:
        names = {
            VehicleCategory.CAR: "Car",
            VehicleCategory.MOTO: "Motorcycle",
            VehicleCategory.VAN: "Van",
            VehicleCategory.TRUCK: "Truck",
        }
        return names[self]


class TicketStatus(str, Enum):
    """Lifecycle of a ticket"""
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class SpotStatus(str, Enum):
    """Occupancy state of a physical spot"""
    FREE = "FREE"
    OCCUPIED = "OCCUPIED"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PIX = "PIX"


class TransactionType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class TransactionCategory(str, Enum):
    """Ledger categories"""
    PARKING = "PARKING"
    SUBSCRIPTION = "SUBSCRIPTION"
    PRODUCT_SALE = "PRODUCT_SALE"
    SALARY = "SALARY"
    OTHER = "OTHER"

    @classmethod
    def parse(cls, value: str) -> 'TransactionCategory':
        """Parse a category, accepting the legacy store-sale spellings"""
        legacy = {"STORE_SALE": cls.PRODUCT_SALE, "PRODUCT": cls.PRODUCT_SALE}
        if value in legacy:
            return legacy[value]
        return cls(value)


# ============================================================================
# DOMAIN EXCEPTIONS
# ============================================================================

class ParkingError(Exception):
    """Base exception for every recoverable engine error"""
    pass


class NotFoundError(ParkingError):
    """A referenced record is absent from its collection"""
    pass


class StateConflictError(ParkingError):
    """The requested transition is not allowed from the current state"""
    pass


class ValidationError(ParkingError, ValueError):
    """Bad user input, rejected before any mutation"""
    pass


class ConfigurationError(ParkingError):
    """Configuration defect upstream of the engine"""
    pass


class SpotNotFound(NotFoundError):
    def __init__(self, spot_id: int):
        super().__init__(f"Spot {spot_id} not found")
        self.spot_id = spot_id


class TicketNotFound(NotFoundError):
    def __init__(self, ticket_id: str):
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class CustomerNotFound(NotFoundError):
    def __init__(self, customer_id: str):
        super().__init__(f"Customer {customer_id} not found")
        self.customer_id = customer_id


class SpotAlreadyOccupied(StateConflictError):
    def __init__(self, spot_id: int, ticket_id: Optional[str] = None):
        super().__init__(f"Spot {spot_id} is already occupied by ticket {ticket_id}")
        self.spot_id = spot_id
        self.ticket_id = ticket_id


class SpotInUse(StateConflictError):
    """Capacity shrink would remove an occupied spot"""

    def __init__(self, spot_ids):
        ids = ", ".join(str(spot_id) for spot_id in spot_ids)
        super().__init__(f"Cannot remove occupied spots: {ids}")
        self.spot_ids = tuple(spot_ids)


class TicketNotActive(StateConflictError):
    pass


class InvalidDuration(ValidationError):
    pass


class InvalidPlate(ValidationError):
    pass


class InvalidAmount(ValidationError):
    pass


class InvalidCapacity(ValidationError):
    pass


class UnknownVehicleCategory(ConfigurationError):
    def __init__(self, category: Any):
        super().__init__(f"No rate configured for vehicle category {category!r}")
        self.category = category


class InvariantViolation(ParkingError):
    """A snapshot failed its cross-collection consistency check"""
    pass


# ============================================================================
# INSTANT AND MONEY HELPERS
# ============================================================================

def to_instant(value: datetime) -> datetime:
    """
    Normalize a datetime to an aware UTC instant with millisecond precision.
    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    return to_instant(datetime.now(timezone.utc))


def to_epoch_ms(value: datetime) -> int:
    """Convert an instant to integer epoch milliseconds"""
    delta = to_instant(value) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return delta // timedelta(milliseconds=1)


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC instant"""
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(milliseconds=int(value))


def to_money(value: Any) -> Decimal:
    """Convert a number to a Decimal quantized to cents (ROUND_HALF_UP)"""
    if isinstance(value, bool):
        raise InvalidAmount(f"Amount must be numeric, got {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"Amount must be numeric, got {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise InvalidAmount(f"Amount is out of range: {value!r}") from e


def format_duration(minutes: int) -> str:
    """Format elapsed minutes as '<h>h <m>m'"""
    hours, rest = divmod(max(0, minutes), 60)
    return f"{hours}h {rest}m"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class RateConfig:
    """
    Value Object: rate policy for one vehicle category
    Flat first-hour price, price per additional hour block, grace window
    """
    first_hour_price: Decimal
    additional_hour_price: Decimal
    tolerance_minutes: int = 0

    def __post_init__(self):
        """Validate and normalize prices"""
        first = to_money(self.first_hour_price)
        additional = to_money(self.additional_hour_price)
        if first < ZERO or additional < ZERO:
            raise InvalidAmount("Rate prices cannot be negative")

        if isinstance(self.tolerance_minutes, bool) or int(self.tolerance_minutes) != self.tolerance_minutes:
            raise ValidationError(f"Tolerance must be a whole number of minutes: {self.tolerance_minutes}")
        if self.tolerance_minutes < 0:
            raise ValidationError("Tolerance minutes cannot be negative")

        object.__setattr__(self, 'first_hour_price', first)
        object.__setattr__(self, 'additional_hour_price', additional)
        object.__setattr__(self, 'tolerance_minutes', int(self.tolerance_minutes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "firstHour": float(self.first_hour_price),
            "additionalHour": float(self.additional_hour_price),
            "toleranceMinutes": self.tolerance_minutes,
        }


# ============================================================================
# DOMAIN ENTITIES
# ============================================================================

@dataclass(frozen=True)
class ParkingSpot:
    """
    Entity: one physical parking space
    Occupancy is derived from the ticket backlink, so a spot cannot be
    occupied without a ticket or hold a ticket while free.
    """
    id: int
    label: str
    vehicle_category: VehicleCategory = VehicleCategory.CAR
    ticket_id: Optional[str] = None

    @property
    def occupied(self) -> bool:
        return self.ticket_id is not None

    @property
    def status(self) -> SpotStatus:
        return SpotStatus.OCCUPIED if self.occupied else SpotStatus.FREE

    def occupy(self, ticket_id: str) -> 'ParkingSpot':
        if self.occupied:
            raise SpotAlreadyOccupied(self.id, self.ticket_id)
        return replace(self, ticket_id=ticket_id)

    def free(self) -> 'ParkingSpot':
        return replace(self, ticket_id=None)

    def __str__(self) -> str:
        return f"{self.label} ({self.vehicle_category}) - {self.status.value}"


@dataclass(frozen=True)
class Ticket:
    """
    Entity: one vehicle's stay in a spot, from entry to paid exit
    exit_time and total_amount exist exactly when the ticket is PAID.
    """
    id: str
    plate: str
    vehicle_category: VehicleCategory
    entry_time: datetime
    status: TicketStatus = TicketStatus.ACTIVE
    spot_id: Optional[int] = None
    exit_time: Optional[datetime] = None
    total_amount: Optional[Decimal] = None
    payment_method: Optional[PaymentMethod] = None
    model: Optional[str] = None

    def __post_init__(self):
        """Validate lifecycle invariants"""
        if not self.plate or not self.plate.strip():
            raise InvalidPlate("License plate cannot be empty")

        paid = self.status == TicketStatus.PAID
        if paid != (self.exit_time is not None) or paid != (self.total_amount is not None):
            raise InvariantViolation(
                f"Ticket {self.id}: exit time and amount must be set iff status is PAID "
                f"(status={self.status.value})"
            )

        if self.exit_time is not None and self.exit_time < self.entry_time:
            raise InvalidDuration(f"Ticket {self.id}: exit time precedes entry time")

    @property
    def is_active(self) -> bool:
        return self.status == TicketStatus.ACTIVE

    def elapsed_minutes(self, until: Optional[datetime] = None) -> int:
        """Whole minutes between entry and until (or exit), partial minutes rounded up"""
        end = until or self.exit_time
        if end is None:
            raise InvalidDuration(f"Ticket {self.id} has no exit time")
        return duration_minutes(self.entry_time, end)

    def close(
        self,
        exit_time: datetime,
        amount: Decimal,
        payment_method: Optional[PaymentMethod]
    ) -> 'Ticket':
        """Return the PAID version of this ticket"""
        if not self.is_active:
            raise TicketNotActive(f"Ticket {self.id} is {self.status.value}, not ACTIVE")
        return replace(
            self,
            status=TicketStatus.PAID,
            exit_time=exit_time,
            total_amount=to_money(amount),
            payment_method=payment_method,
        )


@dataclass(frozen=True)
class Transaction:
    """Entity: one ledger entry affecting the cash balance"""
    id: str
    type: TransactionType
    category: TransactionCategory
    amount: Decimal
    description: str
    date: datetime
    payment_method: Optional[PaymentMethod] = None

    def __post_init__(self):
        amount = to_money(self.amount)
        if amount < ZERO:
            raise InvalidAmount("Transaction amount cannot be negative")
        object.__setattr__(self, 'amount', amount)

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.type == TransactionType.INCOME else -self.amount

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex


@dataclass(frozen=True)
class Customer:
    """Entity: monthly subscriber (fields the engine reads)"""
    id: str
    name: str
    plate: str
    monthly_fee: Decimal
    due_day: int
    last_payment: Optional[datetime] = None
    active: bool = True
    phone: str = ""
    vehicle_category: VehicleCategory = VehicleCategory.CAR

    def __post_init__(self):
        if not 1 <= self.due_day <= 31:
            raise ValidationError(f"Due day must be between 1 and 31, got {self.due_day}")
        object.__setattr__(self, 'monthly_fee', to_money(self.monthly_fee))


def duration_minutes(entry_time: datetime, exit_time: datetime) -> int:
    """
    Stay length in whole minutes, any partial minute rounded up.
    Raises InvalidDuration when exit precedes entry.
    """
    delta = exit_time - entry_time
    if delta < timedelta(0):
        raise InvalidDuration(f"Exit time {exit_time.isoformat()} precedes entry time {entry_time.isoformat()}")
    microseconds = delta // timedelta(microseconds=1)
    return -(-microseconds // 60_000_000)


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

@dataclass(frozen=True)
class DomainEvent:
    """
    Base class for domain events
    Events are created only after a state transition has been committed
    """
    occurred_at: datetime
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    event_type = "domain_event"

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.occurred_at.isoformat(),
            "data": self.payload(),
        }


@dataclass(frozen=True)
class VehicleEnteredEvent(DomainEvent):
    ticket_id: str = ""
    spot_id: int = 0
    plate: str = ""
    vehicle_category: VehicleCategory = VehicleCategory.CAR

    event_type = "vehicle.entered"

    def payload(self) -> Dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "spot_id": self.spot_id,
            "plate": self.plate,
            "vehicle_category": self.vehicle_category.value,
        }


@dataclass(frozen=True)
class VehicleExitedEvent(DomainEvent):
    ticket_id: str = ""
    spot_id: int = 0
    plate: str = ""
    elapsed_minutes: int = 0
    amount: Decimal = ZERO
    payment_method: Optional[PaymentMethod] = None

    event_type = "vehicle.exited"

    def payload(self) -> Dict[str, Any]:
        return {
            "ticket_id": self.ticket_id,
            "spot_id": self.spot_id,
            "plate": self.plate,
            "elapsed_minutes": self.elapsed_minutes,
            "amount": str(self.amount),
            "payment_method": self.payment_method.value if self.payment_method else None,
        }


@dataclass(frozen=True)
class SpotsResizedEvent(DomainEvent):
    previous_count: int = 0
    new_count: int = 0

    event_type = "spots.resized"

    def payload(self) -> Dict[str, Any]:
        return {"previous_count": self.previous_count, "new_count": self.new_count}


@dataclass(frozen=True)
class RatesUpdatedEvent(DomainEvent):
    vehicle_category: VehicleCategory = VehicleCategory.CAR
    rate: Optional[RateConfig] = None

    event_type = "rates.updated"

    def payload(self) -> Dict[str, Any]:
        return {
            "vehicle_category": self.vehicle_category.value,
            "rate": self.rate.to_dict() if self.rate else None,
        }


@dataclass(frozen=True)
class TransactionRecordedEvent(DomainEvent):
    transaction_id: str = ""
    type: TransactionType = TransactionType.INCOME
    category: TransactionCategory = TransactionCategory.OTHER
    amount: Decimal = ZERO

    event_type = "transaction.recorded"

    def payload(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "type": self.type.value,
            "category": self.category.value,
            "amount": str(self.amount),
        }


@dataclass(frozen=True)
class SubscriptionPaidEvent(DomainEvent):
    customer_id: str = ""
    amount: Decimal = ZERO

    event_type = "subscription.paid"

    def payload(self) -> Dict[str, Any]:
        return {"customer_id": self.customer_id, "amount": str(self.amount)}
