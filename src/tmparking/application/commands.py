# File: src/tmparking/application/commands.py
"""
Command Pattern Implementation for the Parking Occupancy & Billing Engine

Operator actions are encapsulated as command objects so that they can be
validated before they reach the service, run uniformly by a processor,
and kept in a history for the shift report.

Command Types:
1. Parking Commands - vehicle entry and paid exit
2. Admin Commands - capacity and rate changes
3. Billing Commands - subscription payments
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime
from decimal import Decimal
from dataclasses import dataclass
import logging
import uuid

from ..domain.models import (
    VehicleCategory, PaymentMethod, ParkingError, utc_now, to_money
)
from .dtos import EntryRequestDTO, ExitRequestDTO
from .parking_service import ParkingService


# ============================================================================
# COMMAND INTERFACES AND BASE CLASSES
# ============================================================================

@dataclass
class CommandResult:
    """Outcome of one processed command"""
    success: bool
    command_id: str
    command_type: str
    executed_at: datetime
    data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "command_id": self.command_id,
            "command_type": self.command_type,
            "executed_at": self.executed_at.isoformat(),
            "data": self.data,
            "error_message": self.error_message,
            "error_type": self.error_type,
        }


class Command(ABC):
    """
    Abstract base class for all commands

    A command represents an intent to change the system state.
    Commands are named in the imperative (e.g., EnterVehicleCommand).
    """

    def __init__(self, executed_by: Optional[str] = None, command_id: Optional[str] = None):
        self.command_id = command_id or str(uuid.uuid4())
        self.executed_by = executed_by or "system"
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def execute(self, service: ParkingService) -> Dict[str, Any]:
        """
        Execute the command using the provided service
        Returns: JSON-compatible result data
        """
        pass

    @abstractmethod
    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate command parameters before execution
        Returns: (is_valid, error_messages)
        """
        pass

    def get_description(self) -> str:
        return self.__class__.__name__.replace("Command", "")


# ============================================================================
# PARKING COMMANDS
# ============================================================================

class EnterVehicleCommand(Command):
    """Command: admit a vehicle into a free spot"""

    def __init__(self, request: EntryRequestDTO, now: Optional[datetime] = None, **kwargs):
        super().__init__(**kwargs)
        self.request = request
        self.now = now

    def execute(self, service: ParkingService) -> Dict[str, Any]:
        receipt = service.enter(
            self.request.spot_id,
            self.request.plate,
            vehicle_category=self.request.vehicle_category,
            now=self.now,
            model=self.request.model,
        )
        return receipt.to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []
        if not self.request.plate.isalnum():
            errors.append(f"License plate must be letters and digits: {self.request.plate}")
        return len(errors) == 0, errors

    def get_description(self) -> str:
        return f"Enter {self.request.plate} at spot {self.request.spot_id}"


class ExitVehicleCommand(Command):
    """Command: close the ticket on a spot and take payment"""

    def __init__(self, request: ExitRequestDTO, exit_time: Optional[datetime] = None, **kwargs):
        super().__init__(**kwargs)
        self.request = request
        self.exit_time = exit_time

    def execute(self, service: ParkingService) -> Dict[str, Any]:
        amount = self.request.final_amount
        if self.request.charge_minimum:
            amount = service.quote_exit(self.request.spot_id, now=self.exit_time).minimum_amount

        receipt = service.exit(
            self.request.spot_id,
            final_amount=amount,
            payment_method=self.request.payment_method,
            exit_time=self.exit_time,
        )
        return receipt.to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []
        if self.request.charge_minimum and self.request.final_amount is not None:
            errors.append("Choose either a final amount or the minimum fee, not both")
        return len(errors) == 0, errors

    def get_description(self) -> str:
        return f"Exit from spot {self.request.spot_id}"


# ============================================================================
# ADMIN COMMANDS
# ============================================================================

class ResizeSpotsCommand(Command):
    """Command: change the number of spots"""

    def __init__(self, new_count: int, **kwargs):
        super().__init__(**kwargs)
        self.new_count = new_count

    def execute(self, service: ParkingService) -> Dict[str, Any]:
        return service.resize_spots(self.new_count).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        if isinstance(self.new_count, bool) or not isinstance(self.new_count, int) or self.new_count < 1:
            return False, [f"Spot count must be a positive integer, got {self.new_count!r}"]
        return True, []


class UpdateRateCommand(Command):
    """Command: change one vehicle category's rate"""

    def __init__(
        self,
        category: VehicleCategory,
        first_hour: Optional[Decimal] = None,
        additional_hour: Optional[Decimal] = None,
        tolerance_minutes: Optional[int] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.category = category
        self.first_hour = first_hour
        self.additional_hour = additional_hour
        self.tolerance_minutes = tolerance_minutes

    def execute(self, service: ParkingService) -> Dict[str, Any]:
        rate = service.update_rate(
            self.category,
            first_hour=self.first_hour,
            additional_hour=self.additional_hour,
            tolerance_minutes=self.tolerance_minutes,
        )
        return {"category": VehicleCategory(self.category).value, **rate.to_dict()}

    def validate(self) -> Tuple[bool, List[str]]:
        errors = []
        try:
            VehicleCategory(self.category)
        except ValueError:
            errors.append(f"Unknown vehicle category: {self.category}")
        if self.first_hour is None and self.additional_hour is None and self.tolerance_minutes is None:
            errors.append("Nothing to update")
        for name in ("first_hour", "additional_hour"):
            value = getattr(self, name)
            if value is not None:
                try:
                    if to_money(value) < 0:
                        errors.append(f"{name} cannot be negative")
                except ParkingError as e:
                    errors.append(str(e))
        if self.tolerance_minutes is not None and self.tolerance_minutes < 0:
            errors.append("tolerance_minutes cannot be negative")
        return len(errors) == 0, errors


# ============================================================================
# BILLING COMMANDS
# ============================================================================

class RecordSubscriptionPaymentCommand(Command):
    """Command: register a subscriber's monthly payment"""

    def __init__(
        self,
        customer_id: str,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        now: Optional[datetime] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.customer_id = customer_id
        self.payment_method = payment_method
        self.now = now

    def execute(self, service: ParkingService) -> Dict[str, Any]:
        transaction = service.record_subscription_payment(
            self.customer_id, now=self.now, payment_method=self.payment_method
        )
        return {
            "transaction_id": transaction.id,
            "customer_id": self.customer_id,
            "amount": str(transaction.amount),
        }

    def validate(self) -> Tuple[bool, List[str]]:
        if not self.customer_id:
            return False, ["Customer id is required"]
        return True, []


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Runs commands against the service and keeps their results

    Domain errors become failed results; anything else propagates.
    """

    def __init__(self, service: ParkingService, max_history_size: int = 1000):
        self.service = service
        self.logger = logging.getLogger(self.__class__.__name__)
        self.history: List[CommandResult] = []
        self.max_history_size = max_history_size

    def process(self, command: Command) -> CommandResult:
        self.logger.info(f"Processing command: {command.get_description()} (by {command.executed_by})")

        is_valid, errors = command.validate()
        if not is_valid:
            result = self._result(command, False, error_message="; ".join(errors), error_type="ValidationError")
            self.logger.warning(f"Command {command.command_id} rejected: {result.error_message}")
            return self._add_to_history(result)

        try:
            data = command.execute(self.service)
        except ParkingError as e:
            self.logger.warning(f"Command {command.command_id} failed: {e}")
            return self._add_to_history(
                self._result(command, False, error_message=str(e), error_type=e.__class__.__name__)
            )

        return self._add_to_history(self._result(command, True, data=data))

    def process_batch(self, commands: List[Command]) -> List[CommandResult]:
        """Process commands in order; a failure does not stop the batch"""
        return [self.process(command) for command in commands]

    def _result(self, command: Command, success: bool, **kwargs) -> CommandResult:
        return CommandResult(
            success=success,
            command_id=command.command_id,
            command_type=command.__class__.__name__,
            executed_at=utc_now(),
            **kwargs
        )

    def _add_to_history(self, result: CommandResult) -> CommandResult:
        self.history.append(result)
        if len(self.history) > self.max_history_size:
            self.history.pop(0)
        return result

    def get_statistics(self) -> Dict[str, Any]:
        succeeded = sum(1 for r in self.history if r.success)
        return {
            "total": len(self.history),
            "succeeded": succeeded,
            "failed": len(self.history) - succeeded,
        }
