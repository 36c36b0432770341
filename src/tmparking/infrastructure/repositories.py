# File: src/tmparking/infrastructure/repositories.py
"""
Repository Pattern Implementation for the Parking Occupancy & Billing Engine

The engine persists one document per installation: the whole application
snapshot. Stores therefore load and save a snapshot as a unit instead of
exposing per-entity CRUD.

Components:
1. SnapshotMapper - ParkingState <-> JSON-compatible document (camelCase,
   epoch milliseconds, amounts as JSON numbers)
2. SnapshotStore - load/save interface, with the default state when nothing
   has been saved yet
3. Storage Implementations:
   - InMemorySnapshotStore - for testing and development
   - JsonFileSnapshotStore - local file, the default installation
   - SQLAlchemySnapshotStore - relational databases
   - MongoSnapshotStore - document databases
   - CachingSnapshotStore - redis read-through cache decorator
4. Backup export/restore with structural validation
"""

from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Callable, Mapping
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
import copy
import json
import logging
import os
import tempfile

from sqlalchemy import create_engine, Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError
import redis
import pymongo
from pymongo.errors import PyMongoError

from ..domain.models import (
    ParkingSpot, Ticket, Transaction, Customer, RateConfig,
    VehicleCategory, TicketStatus, PaymentMethod,
    TransactionType, TransactionCategory,
    ParkingError, to_money, to_epoch_ms, from_epoch_ms
)
from ..domain.strategies import RateTable, DEFAULT_RATES
from ..domain.aggregates import (
    SpotRegistry, TicketLedger, TransactionLog, ParkingState, AggregateFactory
)
from .config import AppSettings


# ============================================================================
# PERSISTENCE EXCEPTIONS
# ============================================================================

class PersistenceError(ParkingError):
    """The storage backend failed to load or save a snapshot"""
    pass


class SnapshotFormatError(PersistenceError):
    """A stored document cannot be decoded into a consistent snapshot"""
    pass


class InvalidBackup(SnapshotFormatError):
    """A backup file is not a usable snapshot document"""
    pass


# ============================================================================
# DEFAULT DOCUMENT CONTENT
# ============================================================================

DEFAULT_PRODUCTS: List[Dict[str, Any]] = [
    {"id": "1", "name": "Água Mineral 500ml", "price": 4.00, "cost": 1.50, "stock": 50, "category": "Bebidas"},
    {"id": "2", "name": "Refrigerante Lata", "price": 6.00, "cost": 2.50, "stock": 30, "category": "Bebidas"},
    {"id": "3", "name": "Salgadinho", "price": 5.00, "cost": 2.00, "stock": 20, "category": "Snacks"},
    {"id": "4", "name": "Café Expresso", "price": 3.50, "cost": 0.80, "stock": 100, "category": "Bebidas"},
]

DEFAULT_USERS: List[Dict[str, Any]] = [
    {"id": "1", "name": "Administrador", "username": "admin", "password": "admin123", "role": "ADMIN"},
]

DEFAULT_CURRENT_USER: Dict[str, Any] = {
    "isLoggedIn": False,
    "role": "ADMIN",
    "name": "",
    "username": "",
}


def default_extras(printer_width: str = "80mm") -> Dict[str, Any]:
    """Pass-through document fields of a fresh installation"""
    return {
        "products": copy.deepcopy(DEFAULT_PRODUCTS),
        "users": copy.deepcopy(DEFAULT_USERS),
        "settings": {"printerWidth": printer_width, "darkMode": False},
        "license": None,
        "currentUser": dict(DEFAULT_CURRENT_USER),
    }


def default_state(settings: Optional[AppSettings] = None) -> ParkingState:
    """Snapshot of a fresh installation"""
    settings = settings or AppSettings()
    state = AggregateFactory.create_default_state(
        spot_count=settings.initial_spot_count,
        moto_spot_count=settings.moto_spot_count,
        company_name=settings.company_name,
    )
    return replace(state, extras=default_extras(settings.printer_width))


# ============================================================================
# DOCUMENT MAPPER
# ============================================================================

class SnapshotMapper:
    """
    Mapper between ParkingState and the persisted document

    Encoding is deterministic: decoding a document and encoding it again
    yields the same spots, tickets and transactions byte for byte.
    """

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    def to_document(self, state: ParkingState) -> Dict[str, Any]:
        extras = copy.deepcopy(state.extras)
        settings = {
            "rates": state.rates.to_dict(),
            "companyName": state.company_name,
        }
        settings.update(extras.pop("settings", {}))

        document: Dict[str, Any] = {
            "tickets": [self.ticket_to_dict(t) for t in state.tickets],
            "spots": [self.spot_to_dict(s) for s in state.spots],
            "customers": [self.customer_to_dict(c) for c in state.customers],
            "transactions": [self.transaction_to_dict(t) for t in state.transactions],
            "products": extras.pop("products", []),
            "users": extras.pop("users", []),
            "settings": settings,
            "license": extras.pop("license", None),
            "currentUser": extras.pop("currentUser", None),
        }
        document.update(extras)
        return document

    @staticmethod
    def spot_to_dict(spot: ParkingSpot) -> Dict[str, Any]:
        data = {
            "id": spot.id,
            "label": spot.label,
            "type": spot.vehicle_category.value,
            "isOccupied": spot.occupied,
        }
        if spot.ticket_id is not None:
            data["ticketId"] = spot.ticket_id
        return data

    @staticmethod
    def ticket_to_dict(ticket: Ticket) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": ticket.id,
            "plate": ticket.plate,
            "vehicleType": ticket.vehicle_category.value,
        }
        if ticket.model:
            data["model"] = ticket.model
        data["entryTime"] = to_epoch_ms(ticket.entry_time)
        if ticket.exit_time is not None:
            data["exitTime"] = to_epoch_ms(ticket.exit_time)
        data["status"] = ticket.status.value
        if ticket.spot_id is not None:
            data["spotId"] = ticket.spot_id
        if ticket.total_amount is not None:
            data["totalAmount"] = float(ticket.total_amount)
        if ticket.payment_method is not None:
            data["paymentMethod"] = ticket.payment_method.value
        return data

    @staticmethod
    def transaction_to_dict(transaction: Transaction) -> Dict[str, Any]:
        data = {
            "id": transaction.id,
            "type": transaction.type.value,
            "category": transaction.category.value,
            "amount": float(transaction.amount),
            "description": transaction.description,
            "date": to_epoch_ms(transaction.date),
        }
        if transaction.payment_method is not None:
            data["paymentMethod"] = transaction.payment_method.value
        return data

    @staticmethod
    def customer_to_dict(customer: Customer) -> Dict[str, Any]:
        data = {
            "id": customer.id,
            "name": customer.name,
            "plate": customer.plate,
            "phone": customer.phone,
            "vehicleType": customer.vehicle_category.value,
            "monthlyFee": float(customer.monthly_fee),
            "dueDate": customer.due_day,
        }
        if customer.last_payment is not None:
            data["lastPayment"] = to_epoch_ms(customer.last_payment)
        data["isActive"] = customer.active
        return data

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def from_document(self, document: Mapping[str, Any]) -> ParkingState:
        """
        Decode a stored document
        Raises: SnapshotFormatError for malformed or inconsistent content
        """
        if not isinstance(document, Mapping):
            raise SnapshotFormatError(f"Snapshot must be a JSON object, got {type(document).__name__}")

        try:
            state = self._decode(document)
            state.validate_invariants()
        except SnapshotFormatError:
            raise
        except (KeyError, TypeError, ValueError, ParkingError) as e:
            raise SnapshotFormatError(f"Invalid snapshot document: {e}") from e

        orphans = state.orphaned_tickets()
        if orphans:
            self._logger.warning(
                f"{len(orphans)} active ticket(s) reference removed spots: "
                f"{', '.join(t.id for t in orphans)}"
            )
        return state

    def _decode(self, document: Mapping[str, Any]) -> ParkingState:
        known = {"tickets", "spots", "customers", "transactions", "products",
                 "users", "settings", "license", "currentUser"}

        settings = dict(document.get("settings") or {})
        rates = self.rates_from_dict(settings.pop("rates", None))
        company_name = settings.pop("companyName", "TM Parking")

        extras: Dict[str, Any] = {
            "products": copy.deepcopy(document.get("products", DEFAULT_PRODUCTS)),
            "users": copy.deepcopy(document.get("users", DEFAULT_USERS)),
            "settings": copy.deepcopy(settings),
            "license": copy.deepcopy(document.get("license")),
            "currentUser": copy.deepcopy(document.get("currentUser")),
        }
        if "products" not in document or "users" not in document:
            self._logger.warning("Snapshot predates products/users; seeding defaults")
        for key, value in document.items():
            if key not in known:
                extras[key] = copy.deepcopy(value)

        spots, tickets = self._renumber_spots(document.get("spots", []), document.get("tickets", []))

        return ParkingState(
            spots=SpotRegistry(self.spot_from_dict(s) for s in spots),
            tickets=TicketLedger(self.ticket_from_dict(t) for t in tickets),
            transactions=TransactionLog(
                self.transaction_from_dict(t) for t in document.get("transactions", [])
            ),
            rates=rates,
            customers=tuple(self.customer_from_dict(c) for c in document.get("customers", [])),
            company_name=company_name,
            extras=extras,
        )

    def _renumber_spots(self, spots: List[Any], tickets: List[Any]):
        """
        Give spots with non-integer ids (older resizes drew random fractions)
        fresh ids after the highest integer id, and point their tickets at
        the new ids.
        """
        integral = [self._integral_id(s["id"]) for s in spots]
        next_id = max((i for i in integral if i is not None), default=0) + 1
        renamed: Dict[Any, int] = {}

        new_spots = []
        for data, spot_id in zip(spots, integral):
            if spot_id is None:
                spot_id = next_id
                next_id += 1
                renamed[data["id"]] = spot_id
                self._logger.warning(f"Renumbering spot {data.get('label')} from id {data['id']!r} to {spot_id}")
            new_spots.append({**data, "id": spot_id})

        new_tickets = []
        for data in tickets:
            spot_id = data.get("spotId")
            if spot_id is not None and self._integral_id(spot_id) is None:
                if spot_id in renamed:
                    data = {**data, "spotId": renamed[spot_id]}
                else:
                    self._logger.warning(f"Ticket {data.get('id')} references unknown spot id {spot_id!r}")
                    data = {**data, "spotId": None}
            new_tickets.append(data)
        return new_spots, new_tickets

    @staticmethod
    def _integral_id(value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value)
        return None

    @staticmethod
    def rates_from_dict(data: Optional[Mapping[str, Any]]) -> RateTable:
        rates = dict(DEFAULT_RATES)
        for category, rate in (data or {}).items():
            rates[VehicleCategory(category)] = RateConfig(
                first_hour_price=to_money(rate["firstHour"]),
                additional_hour_price=to_money(rate["additionalHour"]),
                tolerance_minutes=rate.get("toleranceMinutes", 0),
            )
        return RateTable(rates)

    def spot_from_dict(self, data: Mapping[str, Any]) -> ParkingSpot:
        ticket_id = data.get("ticketId")
        occupied = bool(data.get("isOccupied", False))
        if occupied and not ticket_id:
            raise SnapshotFormatError(f"Spot {data.get('id')} is occupied but has no ticket")
        if not occupied and ticket_id:
            self._logger.warning(f"Dropping stale ticket {ticket_id} from free spot {data.get('id')}")
            ticket_id = None

        return ParkingSpot(
            id=int(data["id"]),
            label=str(data["label"]),
            vehicle_category=VehicleCategory(data.get("type", VehicleCategory.CAR.value)),
            ticket_id=ticket_id,
        )

    @staticmethod
    def ticket_from_dict(data: Mapping[str, Any]) -> Ticket:
        total = data.get("totalAmount")
        exit_time = data.get("exitTime")
        method = data.get("paymentMethod")
        spot_id = data.get("spotId")
        return Ticket(
            id=str(data["id"]),
            plate=str(data["plate"]),
            vehicle_category=VehicleCategory(data["vehicleType"]),
            entry_time=from_epoch_ms(data["entryTime"]),
            status=TicketStatus(data["status"]),
            spot_id=int(spot_id) if spot_id is not None else None,
            exit_time=from_epoch_ms(exit_time) if exit_time is not None else None,
            total_amount=to_money(total) if total is not None else None,
            payment_method=PaymentMethod(method) if method else None,
            model=data.get("model") or None,
        )

    @staticmethod
    def transaction_from_dict(data: Mapping[str, Any]) -> Transaction:
        method = data.get("paymentMethod")
        return Transaction(
            id=str(data["id"]),
            type=TransactionType(data["type"]),
            category=TransactionCategory.parse(data["category"]),
            amount=to_money(data["amount"]),
            description=str(data.get("description", "")),
            date=from_epoch_ms(data["date"]),
            payment_method=PaymentMethod(method) if method else None,
        )

    @staticmethod
    def customer_from_dict(data: Mapping[str, Any]) -> Customer:
        last_payment = data.get("lastPayment")
        return Customer(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            plate=str(data.get("plate", "")),
            monthly_fee=to_money(data.get("monthlyFee", 0)),
            due_day=int(data["dueDate"]),
            last_payment=from_epoch_ms(last_payment) if last_payment is not None else None,
            active=bool(data.get("isActive", True)),
            phone=str(data.get("phone", "")),
            vehicle_category=VehicleCategory(data.get("vehicleType", VehicleCategory.CAR.value)),
        )


# ============================================================================
# SNAPSHOT STORE INTERFACE
# ============================================================================

class SnapshotStore(ABC):
    """
    Abstract snapshot store
    Subclasses move documents; decoding and defaults live here.
    """

    def __init__(
        self,
        mapper: Optional[SnapshotMapper] = None,
        default_factory: Optional[Callable[[], ParkingState]] = None
    ):
        self.mapper = mapper or SnapshotMapper()
        self.default_factory = default_factory or default_state
        self._logger = logging.getLogger(self.__class__.__name__)

    def load(self) -> ParkingState:
        """Load the saved snapshot, or the default state if none exists"""
        document = self.load_document()
        if document is None:
            self._logger.info("No saved snapshot; starting from default state")
            return self.default_factory()
        return self.mapper.from_document(document)

    def save(self, state: ParkingState) -> None:
        self.save_document(self.mapper.to_document(state))

    @abstractmethod
    def load_document(self) -> Optional[Dict[str, Any]]:
        """Return the raw stored document, or None"""
        pass

    @abstractmethod
    def save_document(self, document: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def exists(self) -> bool:
        pass

    def close(self) -> None:
        pass


# ============================================================================
# STORAGE IMPLEMENTATIONS
# ============================================================================

class InMemorySnapshotStore(SnapshotStore):
    """Keeps the encoded document in memory (testing and development)"""

    def __init__(self, document: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(**kwargs)
        self._document = copy.deepcopy(document)
        self.save_count = 0

    def load_document(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self._document)

    def save_document(self, document: Dict[str, Any]) -> None:
        self._document = copy.deepcopy(document)
        self.save_count += 1

    def exists(self) -> bool:
        return self._document is not None

    def clear(self):
        self._document = None


class JsonFileSnapshotStore(SnapshotStore):
    """One JSON file per installation, replaced atomically on save"""

    def __init__(self, path: str, **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)

    def load_document(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            self._logger.error(f"Error reading snapshot {self.path}: {e}", exc_info=True)
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise SnapshotFormatError(f"{self.path} is not valid JSON: {e}") from e

    def save_document(self, document: Dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=".tmparking-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, ensure_ascii=False)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            self._logger.debug(f"Saved snapshot to {self.path}")
        except OSError as e:
            self._logger.error(f"Error writing snapshot {self.path}: {e}", exc_info=True)
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e

    def exists(self) -> bool:
        return self.path.exists()


Base = declarative_base()


class SnapshotModel(Base):
    """SQLAlchemy model for a stored snapshot document"""
    __tablename__ = 'app_snapshots'

    key = Column(String(100), primary_key=True)
    document = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class SQLAlchemySnapshotStore(SnapshotStore):
    """Snapshot stored as JSON text, one row per snapshot key"""

    def __init__(
        self,
        database_url: str = "sqlite:///tmparking.db",
        key: str = "tm_parking_pro_db_v2",
        session_factory: Optional[Callable[[], Session]] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.key = key
        if session_factory is None:
            engine = create_engine(database_url, echo=False)
            Base.metadata.create_all(bind=engine)
            session_factory = sessionmaker(autoflush=False, bind=engine)
        self.session_factory = session_factory

    def load_document(self) -> Optional[Dict[str, Any]]:
        try:
            with self.session_factory() as session:
                row = session.get(SnapshotModel, self.key)
                text = row.document if row is not None else None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error loading snapshot {self.key}: {e}", exc_info=True)
            raise PersistenceError(f"Cannot load snapshot {self.key}: {e}") from e

        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise SnapshotFormatError(f"Snapshot {self.key} is not valid JSON: {e}") from e

    def save_document(self, document: Dict[str, Any]) -> None:
        session = self.session_factory()
        try:
            session.merge(SnapshotModel(
                key=self.key,
                document=json.dumps(document, ensure_ascii=False),
                updated_at=datetime.now(timezone.utc).replace(tzinfo=None),
            ))
            session.commit()
            self._logger.debug(f"Saved snapshot {self.key}")
        except SQLAlchemyError as e:
            session.rollback()
            self._logger.error(f"Database error saving snapshot {self.key}: {e}", exc_info=True)
            raise PersistenceError(f"Cannot save snapshot {self.key}: {e}") from e
        finally:
            session.close()

    def exists(self) -> bool:
        try:
            with self.session_factory() as session:
                return session.get(SnapshotModel, self.key) is not None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error checking snapshot {self.key}: {e}")
            raise PersistenceError(str(e)) from e


class MongoSnapshotStore(SnapshotStore):
    """Snapshot stored as one MongoDB document per snapshot key"""

    def __init__(
        self,
        mongo_url: str = "mongodb://localhost:27017",
        database: str = "tmparking",
        key: str = "tm_parking_pro_db_v2",
        client: Optional[pymongo.MongoClient] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.key = key
        self.client = client or pymongo.MongoClient(mongo_url)
        self.collection = self.client[database]['snapshots']

    def load_document(self) -> Optional[Dict[str, Any]]:
        try:
            stored = self.collection.find_one({"_id": self.key})
        except PyMongoError as e:
            self._logger.error(f"MongoDB error loading snapshot {self.key}: {e}", exc_info=True)
            raise PersistenceError(f"Cannot load snapshot {self.key}: {e}") from e
        return stored["data"] if stored else None

    def save_document(self, document: Dict[str, Any]) -> None:
        try:
            self.collection.replace_one(
                {"_id": self.key},
                {"_id": self.key, "data": document, "updated_at": datetime.now(timezone.utc)},
                upsert=True,
            )
            self._logger.debug(f"Saved snapshot {self.key}")
        except PyMongoError as e:
            self._logger.error(f"MongoDB error saving snapshot {self.key}: {e}", exc_info=True)
            raise PersistenceError(f"Cannot save snapshot {self.key}: {e}") from e

    def exists(self) -> bool:
        try:
            return self.collection.count_documents({"_id": self.key}, limit=1) > 0
        except PyMongoError as e:
            raise PersistenceError(str(e)) from e

    def close(self) -> None:
        self.client.close()


# ============================================================================
# CACHING STORE (Decorator Pattern)
# ============================================================================

class CachingSnapshotStore(SnapshotStore):
    """
    Store decorator that keeps the encoded document in redis
    The wrapped store stays the source of truth; cache failures only cost
    a round trip to it.
    """

    def __init__(
        self,
        store: SnapshotStore,
        cache_client: Any,
        key: str = "tm_parking_pro_db_v2",
        ttl_seconds: int = 300
    ):
        super().__init__(mapper=store.mapper, default_factory=store.default_factory)
        self.store = store
        self.cache = cache_client
        self.ttl_seconds = ttl_seconds
        self.cache_key = f"tmparking:snapshot:{key}"

    def load_document(self) -> Optional[Dict[str, Any]]:
        try:
            cached = self.cache.get(self.cache_key)
        except redis.RedisError as e:
            self._logger.warning(f"Snapshot cache unavailable: {e}")
            cached = None

        if cached:
            self._logger.debug(f"Cache hit for {self.cache_key}")
            return json.loads(cached)

        document = self.store.load_document()
        if document is not None:
            self._cache(document)
        return document

    def save_document(self, document: Dict[str, Any]) -> None:
        self.store.save_document(document)
        self._cache(document)

    def _cache(self, document: Dict[str, Any]) -> None:
        try:
            self.cache.set(self.cache_key, json.dumps(document, ensure_ascii=False), ex=self.ttl_seconds)
            self._logger.debug(f"Cached snapshot {self.cache_key}")
        except redis.RedisError as e:
            self._logger.warning(f"Could not cache snapshot: {e}")

    def exists(self) -> bool:
        return self.store.exists()

    def close(self) -> None:
        self.store.close()


# ============================================================================
# REPOSITORY FACTORY
# ============================================================================

class RepositoryFactory:
    """Factory for creating snapshot stores from settings"""

    @staticmethod
    def create_store(settings: AppSettings) -> SnapshotStore:
        """Create the configured store, wrapped in the redis cache when enabled"""
        default_factory = lambda: default_state(settings)
        backend = settings.storage_backend

        if backend == "memory":
            store: SnapshotStore = InMemorySnapshotStore(default_factory=default_factory)
        elif backend == "json":
            store = JsonFileSnapshotStore(settings.data_path, default_factory=default_factory)
        elif backend == "sqlalchemy":
            store = SQLAlchemySnapshotStore(
                settings.database_url, key=settings.snapshot_key, default_factory=default_factory
            )
        elif backend == "mongodb":
            store = MongoSnapshotStore(
                settings.mongo_url, settings.mongo_database,
                key=settings.snapshot_key, default_factory=default_factory
            )
        else:
            raise ValueError(f"Unknown storage backend: {backend}")

        if settings.redis_url:
            store = CachingSnapshotStore(
                store,
                redis.Redis.from_url(settings.redis_url),
                key=settings.snapshot_key,
                ttl_seconds=settings.cache_ttl_seconds,
            )
        return store


# ============================================================================
# BACKUP
# ============================================================================

def export_backup(state: ParkingState, mapper: Optional[SnapshotMapper] = None) -> str:
    """Serialize the whole snapshot as a backup file body"""
    mapper = mapper or SnapshotMapper()
    return json.dumps(mapper.to_document(state), ensure_ascii=False, indent=2)


def restore_backup(text: str, mapper: Optional[SnapshotMapper] = None) -> ParkingState:
    """
    Decode a backup file body
    Raises: InvalidBackup unless the body is a consistent snapshot with
    ``spots`` and ``transactions`` arrays
    """
    mapper = mapper or SnapshotMapper()
    try:
        document = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidBackup(f"Backup is not valid JSON: {e}") from e

    if not isinstance(document, dict):
        raise InvalidBackup("Backup must be a JSON object")
    for key in ("spots", "transactions"):
        if not isinstance(document.get(key), list):
            raise InvalidBackup(f"Backup has no '{key}' array")

    try:
        return mapper.from_document(document)
    except SnapshotFormatError as e:
        raise InvalidBackup(str(e)) from e
