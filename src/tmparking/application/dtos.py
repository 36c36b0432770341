# File: src/tmparking/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Parking Occupancy & Billing Engine

This module defines DTOs for data transfer between the service and its
callers (CLI, commands, receipt printer):
1. Input DTOs - validated requests
2. Output DTOs - receipts, quotes and dashboard summaries

DTO Principles:
- Validation at creation
- No business logic, only data
- Serialization support through pydantic
"""

from typing import Dict, List, Optional, Any
from datetime import datetime
from decimal import Decimal
import json

from pydantic import BaseModel, Field, ConfigDict, field_validator

from ..domain.models import VehicleCategory, PaymentMethod


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        frozen=True,
    )

    def to_dict(self, exclude_none: bool = False, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(mode="json", **kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls(**json.loads(json_str))


# ============================================================================
# INPUT DTOs
# ============================================================================

class EntryRequestDTO(BaseDTO):
    """Vehicle entry request"""
    spot_id: int = Field(..., ge=1)
    plate: str = Field(..., min_length=1, max_length=8, description="License plate")
    vehicle_category: Optional[VehicleCategory] = None
    model: Optional[str] = Field(default=None, max_length=50)

    @field_validator('plate')
    @classmethod
    def normalize_plate(cls, v):
        plate = v.strip().upper()
        if not plate:
            raise ValueError("License plate cannot be empty")
        return plate


class ExitRequestDTO(BaseDTO):
    """Vehicle exit request; final_amount None charges the computed fee"""
    spot_id: int = Field(..., ge=1)
    final_amount: Optional[Decimal] = Field(default=None, ge=0, allow_inf_nan=False)
    payment_method: PaymentMethod = PaymentMethod.CASH
    charge_minimum: bool = False


# ============================================================================
# OUTPUT DTOs
# ============================================================================

class EntryReceiptDTO(BaseDTO):
    """Entry receipt"""
    ticket_id: str
    plate: str
    vehicle_category: VehicleCategory
    spot_id: int
    spot_label: str
    entry_time: datetime
    model: Optional[str] = None
    company_name: str = "TM Parking"


class ExitQuoteDTO(BaseDTO):
    """Provisional exit figures for display before payment"""
    ticket_id: str
    plate: str
    vehicle_category: VehicleCategory
    spot_id: int
    spot_label: str
    entry_time: datetime
    quoted_at: datetime
    elapsed_minutes: int
    duration_display: str
    suggested_amount: Decimal
    minimum_amount: Decimal


class ExitReceiptDTO(BaseDTO):
    """Exit receipt"""
    ticket_id: str
    transaction_id: str
    plate: str
    vehicle_category: VehicleCategory
    spot_id: int
    spot_label: str
    entry_time: datetime
    exit_time: datetime
    elapsed_minutes: int
    duration_display: str
    amount: Decimal
    computed_amount: Optional[Decimal] = None
    payment_method: PaymentMethod
    company_name: str = "TM Parking"


class SpotStatusDTO(BaseDTO):
    """One spot as shown on the operations grid"""
    spot_id: int
    label: str
    vehicle_category: VehicleCategory
    occupied: bool
    ticket_id: Optional[str] = None
    plate: Optional[str] = None
    entry_time: Optional[datetime] = None


class OccupancyDTO(BaseDTO):
    total: int
    occupied: int
    free: int
    occupancy_rate: int = Field(..., ge=0, le=100, description="Percent, rounded")


class FinancialSummaryDTO(BaseDTO):
    """Ledger totals"""
    income: Decimal
    expense: Decimal
    balance: Decimal
    transaction_count: int
    by_category: Dict[str, Decimal] = Field(default_factory=dict)


class LateCustomerDTO(BaseDTO):
    customer_id: str
    name: str
    plate: str
    phone: str = ""
    due_day: int
    monthly_fee: Decimal
    last_payment: Optional[datetime] = None


class StatusReportDTO(BaseDTO):
    """Dashboard snapshot"""
    company_name: str
    occupancy: OccupancyDTO
    spots: List[SpotStatusDTO]
