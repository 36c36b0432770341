#!/usr/bin/env python3
"""
Aggregate Unit Tests

Tests for SpotRegistry, TicketLedger, TransactionLog and the
ParkingState consistency checks.
"""

import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from tmparking.domain.models import (
    ParkingSpot, Ticket, Transaction,
    VehicleCategory, TicketStatus, PaymentMethod,
    TransactionType, TransactionCategory,
    SpotNotFound, SpotAlreadyOccupied, SpotInUse, InvalidCapacity,
    TicketNotFound, TicketNotActive, InvalidPlate, InvalidDuration,
    InvariantViolation
)
from tmparking.domain.aggregates import (
    SpotRegistry, TicketLedger, TicketIdGenerator, TransactionLog,
    ParkingState, AggregateFactory
)
from tmparking.domain.strategies import RateTable


NOW = datetime(2024, 5, 2, 14, 30, tzinfo=timezone.utc)


class TestSpotRegistry(unittest.TestCase):
    """Unit tests for the spot registry"""

    def setUp(self):
        self.registry = SpotRegistry.create(30, moto_count=5)

    def test_create_layout(self):
        self.assertEqual(len(self.registry), 30)
        labels = [spot.label for spot in self.registry]
        self.assertEqual(labels[0], "V-1")
        self.assertEqual(labels[-1], "V-30")
        categories = [spot.vehicle_category for spot in self.registry]
        self.assertEqual(categories[:5], [VehicleCategory.MOTO] * 5)
        self.assertEqual(set(categories[5:]), {VehicleCategory.CAR})
        self.assertEqual(self.registry.occupied_count, 0)

    def test_create_rejects_empty_lot(self):
        with self.assertRaises(InvalidCapacity):
            SpotRegistry.create(0)

    def test_mark_occupied_returns_new_registry(self):
        updated = self.registry.mark_occupied(7, "T1")
        self.assertTrue(updated.find(7).occupied)
        self.assertEqual(updated.find(7).ticket_id, "T1")
        self.assertFalse(self.registry.find(7).occupied)

    def test_mark_occupied_twice_is_rejected(self):
        updated = self.registry.mark_occupied(7, "T1")
        with self.assertRaises(SpotAlreadyOccupied) as ctx:
            updated.mark_occupied(7, "T2")
        self.assertEqual(ctx.exception.ticket_id, "T1")

    def test_unknown_spot(self):
        self.assertIsNone(self.registry.find(99))
        with self.assertRaises(SpotNotFound):
            self.registry.mark_occupied(99, "T1")
        with self.assertRaises(SpotNotFound):
            self.registry.mark_free(99)

    def test_mark_free(self):
        occupied = self.registry.mark_occupied(3, "T1")
        freed = occupied.mark_free(3)
        self.assertFalse(freed.find(3).occupied)
        self.assertIsNone(freed.find(3).ticket_id)
        # Freeing a free spot is a no-op
        self.assertIs(freed.mark_free(3), freed)

    def test_find_by_ticket(self):
        occupied = self.registry.mark_occupied(12, "T9")
        self.assertEqual(occupied.find_by_ticket("T9").id, 12)
        self.assertIsNone(occupied.find_by_ticket("missing"))

    def test_grow(self):
        grown = SpotRegistry.create(3).resize(5)
        self.assertEqual([s.id for s in grown], [1, 2, 3, 4, 5])
        self.assertEqual([s.label for s in grown][3:], ["V-4", "V-5"])
        self.assertTrue(all(s.vehicle_category == VehicleCategory.CAR for s in list(grown)[3:]))
        self.assertFalse(any(s.occupied for s in grown))

    def test_same_count_returns_same_registry(self):
        self.assertIs(self.registry.resize(30), self.registry)

    def test_shrink_removes_from_the_end(self):
        shrunk = self.registry.resize(10)
        self.assertEqual(len(shrunk), 10)
        self.assertEqual(list(shrunk)[-1].label, "V-10")

    def test_shrink_over_occupied_spot_is_rejected(self):
        occupied = self.registry.mark_occupied(25, "T1").mark_occupied(28, "T2")
        with self.assertRaises(SpotInUse) as ctx:
            occupied.resize(20)
        self.assertEqual(ctx.exception.spot_ids, (25, 28))
        # Spots before the cut are not affected
        self.assertEqual(len(occupied.resize(28)), 28)

    def test_invalid_capacity(self):
        for value in (0, -3, True, 2.5):
            with self.assertRaises(InvalidCapacity, msg=f"Accepted {value!r}"):
                self.registry.resize(value)

    def test_occupancy(self):
        registry = SpotRegistry.create(4).mark_occupied(2, "T1")
        self.assertEqual(registry.occupancy(), {"total": 4, "occupied": 1, "free": 3, "occupancy_rate": 25})

    def test_duplicate_ids_rejected(self):
        with self.assertRaises(InvariantViolation):
            SpotRegistry([ParkingSpot(1, "A"), ParkingSpot(1, "B")])


class TestSpotSearch(unittest.TestCase):

    def setUp(self):
        ledger, self.ticket = TicketLedger().open("abc1d23", VehicleCategory.CAR, 2, NOW)
        self.tickets = ledger
        self.registry = SpotRegistry.create(3).mark_occupied(2, self.ticket.id)

    def test_label_match_is_case_insensitive(self):
        self.assertEqual([s.id for s in self.registry.search("v-3", self.tickets)], [3])

    def test_plate_match(self):
        self.assertEqual([s.id for s in self.registry.search("abc", self.tickets)], [2])

    def test_ticket_id_match(self):
        fragment = self.ticket.id[:6].lower()
        self.assertIn(2, [s.id for s in self.registry.search(fragment, self.tickets)])

    def test_empty_term_returns_all(self):
        self.assertEqual(len(self.registry.search("", self.tickets)), 3)


class TestTicketLedger(unittest.TestCase):
    """Unit tests for ticket issue and closing"""

    def test_open_normalizes_plate(self):
        ledger, ticket = TicketLedger().open("  abc1d23 ", VehicleCategory.MOTO, 4, NOW, model="Honda CG")
        self.assertEqual(ticket.plate, "ABC1D23")
        self.assertEqual(ticket.status, TicketStatus.ACTIVE)
        self.assertEqual(ticket.entry_time, NOW)
        self.assertEqual(ticket.spot_id, 4)
        self.assertEqual(ticket.model, "Honda CG")
        self.assertEqual(len(ledger), 1)
        self.assertIs(ledger.get(ticket.id), ticket)

    def test_ticket_id_format(self):
        _, ticket = TicketLedger().open("XYZ9999", VehicleCategory.CAR, 1, NOW)
        self.assertEqual(len(ticket.id), 12)
        self.assertEqual(ticket.id, ticket.id.upper())
        int(ticket.id, 16)

    def test_empty_plate_rejected(self):
        ledger = TicketLedger()
        for plate in ("", "   ", None):
            with self.assertRaises(InvalidPlate):
                ledger.open(plate, VehicleCategory.CAR, 1, NOW)
        self.assertEqual(len(ledger), 0)

    def test_id_generator_redraws_on_collision(self):
        draws = iter(["aaaaaaaaaaaaffff", "aaaaaaaaaaaa0000", "bbbbbbbbbbbb1111"])
        generator = TicketIdGenerator(source=lambda: next(draws))
        self.assertEqual(generator.next_id({"AAAAAAAAAAAA"}), "BBBBBBBBBBBB")

    def test_ids_unique_across_ledger(self):
        ledger = TicketLedger()
        for i in range(200):
            ledger, _ = ledger.open(f"P{i}", VehicleCategory.CAR, None, NOW)
        self.assertEqual(len({t.id for t in ledger}), 200)

    def test_close(self):
        ledger, ticket = TicketLedger().open("ABC1D23", VehicleCategory.CAR, 1, NOW)
        exit_time = NOW + timedelta(minutes=61)
        closed_ledger, closed = ledger.close(ticket.id, exit_time, Decimal("15"), PaymentMethod.PIX)

        self.assertEqual(closed.status, TicketStatus.PAID)
        self.assertEqual(closed.exit_time, exit_time)
        self.assertEqual(closed.total_amount, Decimal("15.00"))
        self.assertEqual(closed.payment_method, PaymentMethod.PIX)
        self.assertTrue(ledger.get(ticket.id).is_active)
        self.assertEqual(closed_ledger.active(), [])

    def test_close_errors(self):
        ledger, ticket = TicketLedger().open("ABC1D23", VehicleCategory.CAR, 1, NOW)
        with self.assertRaises(TicketNotFound):
            ledger.close("missing", NOW, Decimal("1"), None)
        with self.assertRaises(InvalidDuration):
            ledger.close(ticket.id, NOW - timedelta(minutes=1), Decimal("1"), None)

        closed_ledger, _ = ledger.close(ticket.id, NOW, Decimal("1"), None)
        with self.assertRaises(TicketNotActive):
            closed_ledger.close(ticket.id, NOW, Decimal("1"), None)

    def test_active_ticket_for_spot(self):
        ledger, first = TicketLedger().open("AAA1111", VehicleCategory.CAR, 1, NOW)
        ledger, second = ledger.open("BBB2222", VehicleCategory.CAR, 2, NOW)
        self.assertEqual(ledger.active_ticket_for_spot(2).id, second.id)
        ledger, _ = ledger.close(first.id, NOW, Decimal("0"), None)
        self.assertIsNone(ledger.active_ticket_for_spot(1))


class TestTransactionLog(unittest.TestCase):

    def _transaction(self, amount, type=TransactionType.INCOME, category=TransactionCategory.PARKING):
        return Transaction(Transaction.new_id(), type, category, Decimal(amount), "test", NOW)

    def test_append_prepends(self):
        first = self._transaction("10")
        second = self._transaction("5")
        log = TransactionLog().append(first).append(second)
        self.assertEqual([t.id for t in log], [second.id, first.id])

    def test_totals(self):
        log = (TransactionLog()
               .append(self._transaction("10"))
               .append(self._transaction("4.50", category=TransactionCategory.PRODUCT_SALE))
               .append(self._transaction("3", type=TransactionType.EXPENSE, category=TransactionCategory.OTHER)))
        totals = log.totals()
        self.assertEqual(totals["income"], Decimal("14.50"))
        self.assertEqual(totals["expense"], Decimal("3.00"))
        self.assertEqual(totals["balance"], Decimal("11.50"))
        self.assertEqual(len(log.by_category(TransactionCategory.PRODUCT_SALE)), 1)

    def test_empty_totals(self):
        self.assertEqual(TransactionLog().totals()["balance"], Decimal("0.00"))


class TestParkingStateInvariants(unittest.TestCase):
    """Cross-collection consistency of a snapshot"""

    def setUp(self):
        self.tickets, self.ticket = TicketLedger().open("ABC1D23", VehicleCategory.CAR, 2, NOW)
        self.spots = SpotRegistry.create(3).mark_occupied(2, self.ticket.id)

    def test_consistent_state(self):
        ParkingState(spots=self.spots, tickets=self.tickets).validate_invariants()

    def test_spot_with_missing_ticket(self):
        state = ParkingState(spots=self.spots, tickets=TicketLedger())
        with self.assertRaises(InvariantViolation):
            state.validate_invariants()

    def test_spot_with_paid_ticket(self):
        tickets, _ = self.tickets.close(self.ticket.id, NOW, Decimal("10"), None)
        with self.assertRaises(InvariantViolation):
            ParkingState(spots=self.spots, tickets=tickets).validate_invariants()

    def test_active_ticket_not_bound_to_its_spot(self):
        with self.assertRaises(InvariantViolation):
            ParkingState(spots=SpotRegistry.create(3), tickets=self.tickets).validate_invariants()

    def test_two_active_tickets_on_one_spot(self):
        tickets, _ = self.tickets.open("XYZ9876", VehicleCategory.CAR, 2, NOW)
        with self.assertRaises(InvariantViolation):
            ParkingState(spots=self.spots, tickets=tickets).validate_invariants()

    def test_orphaned_ticket_is_tolerated(self):
        tickets, orphan = self.tickets.open("OLD0001", VehicleCategory.CAR, 40, NOW)
        state = ParkingState(spots=self.spots, tickets=tickets)
        state.validate_invariants()
        self.assertEqual([t.id for t in state.orphaned_tickets()], [orphan.id])


class TestAggregateFactory(unittest.TestCase):

    def test_default_state(self):
        state = AggregateFactory.create_default_state()
        self.assertEqual(len(state.spots), 30)
        self.assertEqual(state.company_name, "TM Parking")
        self.assertEqual(state.rates, RateTable())
        self.assertEqual(len(state.tickets), 0)
        self.assertEqual(len(state.transactions), 0)
        state.validate_invariants()

    def test_states_compare_by_content(self):
        state = AggregateFactory.create_default_state(spot_count=5, moto_spot_count=1)
        self.assertEqual(state, replace(state, extras={"products": []}))


if __name__ == '__main__':
    unittest.main()
