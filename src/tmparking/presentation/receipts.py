# File: src/tmparking/presentation/receipts.py
"""
Receipt rendering for thermal printers

Receipts are plain fixed-width text: 32 columns on 58mm paper, 48 columns
on 80mm paper. Times are shown in the local timezone of the terminal
unless one is given.
"""

from typing import List, Optional
from datetime import datetime, tzinfo
from decimal import Decimal

from ..application.dtos import EntryReceiptDTO, ExitReceiptDTO


PRINTER_COLUMNS = {
    "58mm": 32,
    "80mm": 48,
}

PAYMENT_LABELS = {
    "CASH": "Cash",
    "CREDIT_CARD": "Credit card",
    "DEBIT_CARD": "Debit card",
    "PIX": "PIX",
}


class ReceiptRenderer:
    """Formats receipts for a given paper width"""

    def __init__(self, printer_width: str = "80mm", timezone: Optional[tzinfo] = None):
        if printer_width not in PRINTER_COLUMNS:
            raise ValueError(f"Unsupported printer width: {printer_width}")
        self.columns = PRINTER_COLUMNS[printer_width]
        self.timezone = timezone

    def _time(self, value: datetime) -> str:
        return value.astimezone(self.timezone).strftime("%d/%m/%Y %H:%M")

    def _rule(self, char: str = "-") -> str:
        return char * self.columns

    def _center(self, text: str) -> str:
        return text[:self.columns].center(self.columns).rstrip()

    def _pair(self, label: str, value: str) -> str:
        space = self.columns - len(label) - len(value)
        if space < 1:
            return f"{label}\n{value[:self.columns].rjust(self.columns)}"
        return f"{label}{' ' * space}{value}"

    @staticmethod
    def _money(value: Decimal) -> str:
        return f"R$ {value:.2f}"

    def render_entry(self, receipt: EntryReceiptDTO) -> str:
        lines: List[str] = [
            self._center(receipt.company_name.upper()),
            self._center("ENTRY TICKET"),
            self._rule("="),
            self._pair("Ticket:", receipt.ticket_id),
            self._pair("Plate:", receipt.plate),
            self._pair("Vehicle:", str(receipt.vehicle_category)),
        ]
        if receipt.model:
            lines.append(self._pair("Model:", receipt.model))
        lines += [
            self._pair("Spot:", receipt.spot_label),
            self._pair("Entry:", self._time(receipt.entry_time)),
            self._rule(),
            self._center("Keep this ticket"),
        ]
        return "\n".join(lines) + "\n"

    def render_exit(self, receipt: ExitReceiptDTO) -> str:
        lines: List[str] = [
            self._center(receipt.company_name.upper()),
            self._center("PAYMENT RECEIPT"),
            self._rule("="),
            self._pair("Ticket:", receipt.ticket_id),
            self._pair("Plate:", receipt.plate),
            self._pair("Vehicle:", str(receipt.vehicle_category)),
            self._pair("Spot:", receipt.spot_label),
            self._pair("Entry:", self._time(receipt.entry_time)),
            self._pair("Exit:", self._time(receipt.exit_time)),
            self._pair("Duration:", receipt.duration_display),
            self._pair("Minutes:", f"{receipt.elapsed_minutes} min"),
            self._rule(),
            self._pair("TOTAL:", self._money(receipt.amount)),
            self._pair("Payment:", PAYMENT_LABELS.get(receipt.payment_method.value, receipt.payment_method.value)),
            self._rule(),
            self._center("Thank you, come back soon"),
        ]
        return "\n".join(lines) + "\n"
