# File: src/tmparking/main.py
"""
Command-line entry point for the TM Parking engine

Wires settings, store, event bus and service together (dependency
injection) and exposes the operator actions as subcommands.
"""

from typing import List, Optional
from datetime import datetime
import argparse
import logging
import sys

from .domain.models import VehicleCategory, PaymentMethod, ParkingError
from .application.dtos import EntryRequestDTO, ExitRequestDTO, EntryReceiptDTO, ExitReceiptDTO
from .application.parking_service import ParkingService
from .application.commands import (
    CommandProcessor, EnterVehicleCommand, ExitVehicleCommand,
    ResizeSpotsCommand, UpdateRateCommand, CommandResult
)
from .infrastructure.config import AppSettings
from .infrastructure.repositories import RepositoryFactory, SnapshotStore
from .infrastructure.messaging import EventBus, RedisEventForwarder, ALL_EVENTS
from .presentation.receipts import ReceiptRenderer


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Setup application logging configuration"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)


def build_service(settings: AppSettings, store: Optional[SnapshotStore] = None) -> ParkingService:
    """Create the service and its collaborators from settings"""
    event_bus = EventBus()
    if settings.redis_url:
        event_bus.subscribe(ALL_EVENTS, RedisEventForwarder(settings.redis_url))

    store = store or RepositoryFactory.create_store(settings)
    return ParkingService(store, event_bus=event_bus)


# ============================================================================
# ARGUMENT PARSING
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tmparking",
        description="TM Parking occupancy and billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s status
  %(prog)s enter 7 ABC1D23 --category CAR
  %(prog)s quote 7
  %(prog)s exit 7 --payment PIX
  %(prog)s exit 7 --minimum
  %(prog)s rate MOTO --first-hour 6 --tolerance 10
  %(prog)s backup --output backup.json
        """
    )
    parser.add_argument('--backend', choices=['memory', 'json', 'sqlalchemy', 'mongodb'],
                        help='Storage backend (default from TMPARKING_STORAGE_BACKEND)')
    parser.add_argument('--data-path', help='JSON snapshot file')
    parser.add_argument('--database-url', help='SQLAlchemy database URL')
    parser.add_argument('--printer-width', choices=['58mm', '80mm'], help='Receipt paper width')
    parser.add_argument('--log-level', help='Logging level')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('status', help='Show occupancy and spots')

    enter = sub.add_parser('enter', help='Register a vehicle entry')
    enter.add_argument('spot', type=int)
    enter.add_argument('plate')
    enter.add_argument('--category', choices=[c.value for c in VehicleCategory])
    enter.add_argument('--model')

    quote = sub.add_parser('quote', help='Show the fee owed for a spot right now')
    quote.add_argument('spot', type=int)

    exit_ = sub.add_parser('exit', help='Take payment and release a spot')
    exit_.add_argument('spot', type=int)
    amount = exit_.add_mutually_exclusive_group()
    amount.add_argument('--amount', help='Charge this amount instead of the computed fee')
    amount.add_argument('--minimum', action='store_true', help='Charge the first-hour price')
    exit_.add_argument('--payment', choices=[m.value for m in PaymentMethod], default=PaymentMethod.CASH.value)

    resize = sub.add_parser('resize', help='Change the number of spots')
    resize.add_argument('count', type=int)

    rate = sub.add_parser('rate', help='Change a vehicle category rate')
    rate.add_argument('category', choices=[c.value for c in VehicleCategory])
    rate.add_argument('--first-hour')
    rate.add_argument('--additional-hour')
    rate.add_argument('--tolerance', type=int)

    sub.add_parser('late', help='List subscribers behind on payment')
    sub.add_parser('summary', help='Show ledger totals')

    backup = sub.add_parser('backup', help='Write a full backup')
    backup.add_argument('--output', help='File to write (default: stdout)')

    restore = sub.add_parser('restore', help='Replace all data with a backup')
    restore.add_argument('file')

    return parser


def settings_from_args(args: argparse.Namespace, base: Optional[AppSettings] = None) -> AppSettings:
    data = (base or AppSettings.from_env()).model_dump()
    overrides = {
        'storage_backend': args.backend,
        'data_path': args.data_path,
        'database_url': args.database_url,
        'printer_width': args.printer_width,
        'log_level': args.log_level,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return AppSettings.from_dict(data)


# ============================================================================
# SUBCOMMANDS
# ============================================================================

def _report(result: CommandResult) -> int:
    if not result.success:
        print(f"Error: {result.error_message}", file=sys.stderr)
        return 1
    return 0


def run_command(args: argparse.Namespace, service: ParkingService, settings: AppSettings) -> int:
    processor = CommandProcessor(service)
    renderer = ReceiptRenderer(settings.printer_width)

    if args.command == 'status':
        report = service.status()
        occ = report.occupancy
        print(f"{report.company_name}: {occ.occupied}/{occ.total} occupied ({occ.occupancy_rate}%)")
        for spot in report.spots:
            detail = f"{spot.plate} since {spot.entry_time:%d/%m %H:%M}" if spot.occupied else "free"
            print(f"  {spot.label:<6} {spot.vehicle_category.value:<5} {detail}")
        return 0

    if args.command == 'enter':
        request = EntryRequestDTO(
            spot_id=args.spot,
            plate=args.plate,
            vehicle_category=args.category,
            model=args.model,
        )
        result = processor.process(EnterVehicleCommand(request))
        if result.success:
            print(renderer.render_entry(EntryReceiptDTO(**result.data)), end="")
        return _report(result)

    if args.command == 'quote':
        quote = service.quote_exit(args.spot)
        print(f"{quote.plate} in {quote.spot_label}: {quote.duration_display}")
        print(f"Suggested: {quote.suggested_amount}  Minimum: {quote.minimum_amount}")
        return 0

    if args.command == 'exit':
        request = ExitRequestDTO(
            spot_id=args.spot,
            final_amount=args.amount,
            payment_method=args.payment,
            charge_minimum=args.minimum,
        )
        result = processor.process(ExitVehicleCommand(request))
        if result.success:
            print(renderer.render_exit(ExitReceiptDTO(**result.data)), end="")
        return _report(result)

    if args.command == 'resize':
        result = processor.process(ResizeSpotsCommand(args.count))
        if result.success:
            print(f"Spots: {result.data['total']} ({result.data['occupied']} occupied)")
        return _report(result)

    if args.command == 'rate':
        result = processor.process(UpdateRateCommand(
            args.category,
            first_hour=args.first_hour,
            additional_hour=args.additional_hour,
            tolerance_minutes=args.tolerance,
        ))
        if result.success:
            data = result.data
            print(f"{data['category']}: {data['firstHour']:.2f} / {data['additionalHour']:.2f} "
                  f"/ {data['toleranceMinutes']} min")
        return _report(result)

    if args.command == 'late':
        late = service.late_customers(datetime.now().astimezone())
        if not late:
            print("No late subscribers")
        for customer in late:
            print(f"{customer.name} ({customer.plate}) due day {customer.due_day}, fee {customer.monthly_fee}")
        return 0

    if args.command == 'summary':
        summary = service.financial_summary()
        print(f"Income:  {summary.income}")
        print(f"Expense: {summary.expense}")
        print(f"Balance: {summary.balance}")
        for category, total in sorted(summary.by_category.items()):
            print(f"  {category:<13} {total}")
        return 0

    if args.command == 'backup':
        text = service.backup()
        if args.output:
            with open(args.output, 'w', encoding='utf-8') as handle:
                handle.write(text)
        else:
            print(text)
        return 0

    if args.command == 'restore':
        with open(args.file, encoding='utf-8') as handle:
            occupancy = service.restore(handle.read())
        print(f"Backup restored: {occupancy.total} spots, {occupancy.occupied} occupied")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None, store: Optional[SnapshotStore] = None) -> int:
    """Main entry point for the application"""
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ParkingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logger = setup_logging(settings.log_level, settings.log_file)

    try:
        service = build_service(settings, store)
        return run_command(args, service, settings)
    except ParkingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Invalid input: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.error(f"I/O error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
