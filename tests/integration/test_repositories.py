#!/usr/bin/env python3
"""
Repository Integration Tests

Tests for the snapshot document mapper and every snapshot store.
"""

import json
import os
import shutil
import tempfile
import unittest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch

import redis
from pymongo.errors import PyMongoError
from sqlalchemy.exc import SQLAlchemyError

from tmparking.domain.models import (
    VehicleCategory, TransactionCategory, to_epoch_ms
)
from tmparking.application.parking_service import ParkingService
from tmparking.infrastructure.config import AppSettings
from tmparking.infrastructure.repositories import (
    SnapshotMapper, InMemorySnapshotStore, JsonFileSnapshotStore,
    SQLAlchemySnapshotStore, MongoSnapshotStore, CachingSnapshotStore,
    RepositoryFactory, PersistenceError, SnapshotFormatError, InvalidBackup,
    default_state, export_backup, restore_backup
)

from . import BASE_TIME


def busy_state():
    """A default lot with one open ticket, one paid ticket and a sale"""
    service = ParkingService(InMemorySnapshotStore(), clock=lambda: BASE_TIME)
    service.enter(3, "MOT0001", model="CG 160")
    service.enter(7, "ABC1D23")
    service.exit(7, payment_method="DEBIT_CARD", exit_time=BASE_TIME + timedelta(minutes=61))
    service.record_transaction("INCOME", "PRODUCT_SALE", "4", "Agua Mineral", "CASH")
    return service.state


def legacy_document():
    """Document written before products, users and tolerances existed"""
    entry = to_epoch_ms(BASE_TIME)
    return {
        "tickets": [
            {"id": "OLD0001", "plate": "ABC1D23", "vehicleType": "CAR", "entryTime": entry,
             "status": "ACTIVE", "spotId": 2},
            {"id": "OLD0002", "plate": "GHI7J89", "vehicleType": "TRUCK", "entryTime": entry,
             "status": "ACTIVE", "spotId": 9},
            {"id": "OLD0003", "plate": "JKL1M23", "vehicleType": "CAR", "entryTime": entry,
             "status": "ACTIVE", "spotId": 0.4821},
        ],
        "spots": [
            {"id": 1, "label": "V-1", "type": "CAR", "isOccupied": False, "ticketId": "STALE"},
            {"id": 2, "label": "V-2", "type": "CAR", "isOccupied": True, "ticketId": "OLD0001"},
            {"id": 0.4821, "label": "V-3", "type": "CAR", "isOccupied": True, "ticketId": "OLD0003"},
            {"id": 0.9137, "label": "V-4", "type": "CAR", "isOccupied": False},
        ],
        "customers": [
            {"id": "c1", "name": "Ana", "plate": "DEF4G56", "monthlyFee": 120, "dueDate": 10,
             "isActive": True},
        ],
        "transactions": [
            {"id": "t1", "type": "INCOME", "category": "STORE_SALE", "amount": 4.5,
             "description": "Cafe", "date": entry},
            {"id": "t2", "type": "INCOME", "category": "PRODUCT", "amount": 3, "description": "Agua",
             "date": entry},
        ],
        "settings": {
            "rates": {"CAR": {"firstHour": 12, "additionalHour": 6}},
            "companyName": "Estacionamento Central",
            "printerWidth": "58mm",
        },
        "license": {"key": "ABC-123"},
        "theme": "dark",
    }


class TestSnapshotMapper(unittest.TestCase):

    def setUp(self):
        self.mapper = SnapshotMapper()

    def test_document_layout(self):
        document = self.mapper.to_document(busy_state())
        self.assertEqual(list(document)[:4], ["tickets", "spots", "customers", "transactions"])

        paid = next(t for t in document["tickets"] if t["status"] == "PAID")
        self.assertEqual(paid["entryTime"], to_epoch_ms(BASE_TIME))
        self.assertEqual(paid["exitTime"], to_epoch_ms(BASE_TIME) + 61 * 60 * 1000)
        self.assertEqual(paid["totalAmount"], 15.0)
        self.assertEqual(paid["paymentMethod"], "DEBIT_CARD")

        active = next(t for t in document["tickets"] if t["status"] == "ACTIVE")
        self.assertEqual(active["model"], "CG 160")
        self.assertNotIn("exitTime", active)
        self.assertNotIn("totalAmount", active)

        spot = document["spots"][2]
        self.assertEqual(spot, {"id": 3, "label": "V-3", "type": "MOTO", "isOccupied": True,
                                "ticketId": active["id"]})
        self.assertNotIn("ticketId", document["spots"][6])

        settings = document["settings"]
        self.assertEqual(settings["companyName"], "TM Parking")
        self.assertEqual(settings["rates"]["CAR"], {"firstHour": 10.0, "additionalHour": 5.0,
                                                    "toleranceMinutes": 0})
        self.assertEqual(settings["printerWidth"], "80mm")
        self.assertEqual(len(document["products"]), 4)
        self.assertEqual(document["users"][0]["username"], "admin")

    def test_round_trip_is_stable(self):
        document = self.mapper.to_document(busy_state())
        text = json.dumps(document)
        decoded = self.mapper.from_document(json.loads(text))
        self.assertEqual(json.dumps(self.mapper.to_document(decoded)), text)

    def test_legacy_document(self):
        with self.assertLogs("SnapshotMapper", level="WARNING") as logs:
            state = self.mapper.from_document(legacy_document())

        output = "\n".join(logs.output)
        self.assertIn("STALE", output)
        self.assertIn("OLD0002", output)

        self.assertIsNone(state.spots.get(1).ticket_id)
        self.assertEqual(state.spots.get(2).ticket_id, "OLD0001")
        self.assertEqual([t.id for t in state.orphaned_tickets()], ["OLD0002"])

        self.assertIn("Renumbering spot V-3", output)
        self.assertEqual(state.spots.get(3).label, "V-3")
        self.assertEqual(state.spots.get(3).ticket_id, "OLD0003")
        self.assertEqual(state.tickets.get("OLD0003").spot_id, 3)
        self.assertEqual(state.spots.get(4).label, "V-4")
        self.assertFalse(state.spots.get(4).occupied)
        self.assertEqual(state.company_name, "Estacionamento Central")

        car = state.rates[VehicleCategory.CAR]
        self.assertEqual(car.first_hour_price, Decimal("12.00"))
        self.assertEqual(car.tolerance_minutes, 0)
        self.assertEqual(state.rates[VehicleCategory.VAN].first_hour_price, Decimal("15.00"))

        categories = {t.category for t in state.transactions}
        self.assertEqual(categories, {TransactionCategory.PRODUCT_SALE})
        self.assertIsNone(state.customers[0].last_payment)

        document = self.mapper.to_document(state)
        self.assertEqual(len(document["products"]), 4)
        self.assertEqual(document["license"], {"key": "ABC-123"})
        self.assertEqual(document["theme"], "dark")
        self.assertEqual(document["settings"]["printerWidth"], "58mm")
        self.assertEqual(document["transactions"][0]["category"], "PRODUCT_SALE")

    def test_malformed_documents(self):
        entry = to_epoch_ms(BASE_TIME)
        bad_documents = [
            [],
            {"spots": [{"id": 1, "label": "V-1", "isOccupied": True}]},
            {"spots": [{"id": 1, "label": "V-1", "type": "BUS"}]},
            {"spots": [{"id": 1, "label": "V-1"}, {"id": 1, "label": "V-2"}]},
            {"spots": [{"id": 1, "label": "V-1", "isOccupied": True, "ticketId": "MISSING"}]},
            {"tickets": [{"id": "T1", "plate": "A", "vehicleType": "CAR", "entryTime": entry,
                          "status": "PAID", "spotId": 1}]},
            {"transactions": [{"id": "t1", "type": "INCOME", "category": "OTHER", "amount": "lots",
                               "date": entry}]},
        ]
        for document in bad_documents:
            with self.assertRaises(SnapshotFormatError, msg=f"Accepted {document!r}"):
                self.mapper.from_document(document)


class TestBackup(unittest.TestCase):

    def test_export_is_indented_json(self):
        state = busy_state()
        text = export_backup(state)
        self.assertIn('\n  "tickets"', text)
        self.assertEqual(restore_backup(text), state)

    def test_restore_validation(self):
        for text in ("", "{", "42", '"spots"', '{"transactions": []}', '{"spots": {}, "transactions": []}'):
            with self.assertRaises(InvalidBackup, msg=f"Accepted {text!r}"):
                restore_backup(text)

    def test_minimal_backup(self):
        state = restore_backup('{"spots": [{"id": 1, "label": "A1"}], "transactions": []}')
        self.assertEqual(len(state.spots), 1)
        self.assertEqual(state.spots.get(1).vehicle_category, VehicleCategory.CAR)


class TestInMemorySnapshotStore(unittest.TestCase):

    def test_defaults_until_saved(self):
        store = InMemorySnapshotStore(
            default_factory=lambda: default_state(AppSettings(initial_spot_count=8, moto_spot_count=2))
        )
        self.assertFalse(store.exists())
        self.assertEqual(len(store.load().spots), 8)

        state = busy_state()
        store.save(state)
        self.assertTrue(store.exists())
        self.assertEqual(store.load(), state)
        self.assertEqual(store.save_count, 1)

        store.clear()
        self.assertEqual(len(store.load().spots), 8)


class TestJsonFileSnapshotStore(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, "data", "lot.json")
        self.store = JsonFileSnapshotStore(self.path)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_save_and_load(self):
        self.assertFalse(self.store.exists())
        state = busy_state()
        self.store.save(state)

        self.assertTrue(self.store.exists())
        self.assertEqual(JsonFileSnapshotStore(self.path).load(), state)
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["lot.json"])

    def test_corrupt_file(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as handle:
            handle.write("{not json")
        with self.assertRaises(SnapshotFormatError):
            self.store.load()

    def test_unwritable_location(self):
        blocker = os.path.join(self.temp_dir, "blocker")
        with open(blocker, "w", encoding="utf-8") as handle:
            handle.write("")
        store = JsonFileSnapshotStore(os.path.join(blocker, "lot.json"))
        with self.assertLogs("JsonFileSnapshotStore", level="ERROR"):
            with self.assertRaises(PersistenceError):
                store.save(default_state())


class TestSQLAlchemySnapshotStore(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.url = f"sqlite:///{os.path.join(self.temp_dir, 'lot.db')}"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_save_and_load(self):
        store = SQLAlchemySnapshotStore(self.url, key="lot-1")
        self.assertFalse(store.exists())

        state = busy_state()
        store.save(state)
        store.save(state)

        self.assertTrue(store.exists())
        self.assertEqual(SQLAlchemySnapshotStore(self.url, key="lot-1").load(), state)
        self.assertFalse(SQLAlchemySnapshotStore(self.url, key="lot-2").exists())

    def test_database_errors(self):
        session = MagicMock()
        session.commit.side_effect = SQLAlchemyError("database is locked")
        store = SQLAlchemySnapshotStore(session_factory=lambda: session)

        with self.assertLogs("SQLAlchemySnapshotStore", level="ERROR"):
            with self.assertRaises(PersistenceError):
                store.save(default_state())
        session.rollback.assert_called_once()
        session.close.assert_called_once()


class TestMongoSnapshotStore(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.collection = self.client["tmparking"]["snapshots"]
        self.store = MongoSnapshotStore(database="tmparking", key="lot-1", client=self.client)

    def test_load_missing(self):
        self.collection.find_one.return_value = None
        self.assertEqual(len(self.store.load().spots), 30)
        self.collection.find_one.assert_called_with({"_id": "lot-1"})

    def test_save_and_load(self):
        state = busy_state()
        self.store.save(state)

        query, stored = self.collection.replace_one.call_args[0]
        self.assertEqual(query, {"_id": "lot-1"})
        self.assertTrue(self.collection.replace_one.call_args[1]["upsert"])

        self.collection.find_one.return_value = stored
        self.assertEqual(self.store.load(), state)

    def test_errors(self):
        self.collection.replace_one.side_effect = PyMongoError("not primary")
        with self.assertLogs("MongoSnapshotStore", level="ERROR"):
            with self.assertRaises(PersistenceError):
                self.store.save(default_state())


class TestCachingSnapshotStore(unittest.TestCase):

    def setUp(self):
        self.backing = InMemorySnapshotStore()
        self.cache = Mock()
        self.cache.get.return_value = None
        self.store = CachingSnapshotStore(self.backing, self.cache, key="lot-1", ttl_seconds=60)

    def test_save_writes_through_and_caches(self):
        state = busy_state()
        self.store.save(state)

        self.assertEqual(self.backing.save_count, 1)
        key, value = self.cache.set.call_args[0]
        self.assertEqual(key, "tmparking:snapshot:lot-1")
        self.assertEqual(self.cache.set.call_args[1], {"ex": 60})

        self.cache.get.return_value = value.encode("utf-8")
        self.backing.clear()
        self.assertEqual(self.store.load(), state)

    def test_cache_miss_reads_backing_store(self):
        state = busy_state()
        self.backing.save(state)
        self.assertEqual(self.store.load(), state)
        self.cache.set.assert_called_once()

    def test_cache_failures_fall_back(self):
        self.cache.get.side_effect = redis.ConnectionError("refused")
        self.cache.set.side_effect = redis.ConnectionError("refused")
        state = busy_state()

        with self.assertLogs("CachingSnapshotStore", level="WARNING"):
            self.store.save(state)
            self.assertEqual(self.store.load(), state)
        self.assertEqual(self.backing.save_count, 1)


class TestRepositoryFactory(unittest.TestCase):

    def test_memory_backend_uses_settings(self):
        store = RepositoryFactory.create_store(AppSettings(
            storage_backend="memory", initial_spot_count=12, moto_spot_count=0, company_name="Lot 9"
        ))
        self.assertIsInstance(store, InMemorySnapshotStore)
        state = store.load()
        self.assertEqual(len(state.spots), 12)
        self.assertEqual(state.company_name, "Lot 9")

    def test_json_backend(self):
        store = RepositoryFactory.create_store(AppSettings(storage_backend="json", data_path="lot.json"))
        self.assertIsInstance(store, JsonFileSnapshotStore)
        self.assertEqual(str(store.path), "lot.json")

    @patch('tmparking.infrastructure.repositories.redis.Redis.from_url')
    def test_redis_url_enables_cache(self, from_url):
        store = RepositoryFactory.create_store(AppSettings(
            storage_backend="memory", redis_url="redis://cache:6379/0", snapshot_key="lot-1"
        ))
        from_url.assert_called_once_with("redis://cache:6379/0")
        self.assertIsInstance(store, CachingSnapshotStore)
        self.assertIsInstance(store.store, InMemorySnapshotStore)
        self.assertEqual(store.cache_key, "tmparking:snapshot:lot-1")


if __name__ == '__main__':
    unittest.main()
