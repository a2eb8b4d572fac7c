"""
Stock Tracker command line.

Usage:
    # Upload a stock-on-hand recount
    python src/main.py upload soh.xlsx
    python src/main.py upload export.csv --label "SOH_2026-10-19.xlsx" --strict

    # Write a fillable template
    python src/main.py template inventory_template.xlsx

    # Box placement
    python src/main.py create-box BOX001 --name "Winter Collection"
    python src/main.py assign 123456789012 BOX001
    python src/main.py unassign 123456789012 --location back-store

    # Reports
    python src/main.py history --limit 5
    python src/main.py low-stock --threshold 3
    python src/main.py search blue

Configuration is read from config.ini (or $STOCK_TRACKER_CONFIG, or --config).
"""

import argparse
import sys
from typing import List, Optional

from app_config import IngestionSettings, StorageSettings, load_config
from exceptions import StockTrackerError
from ingestion_client import IngestionClient
from inventory_service import DEFAULT_LOW_STOCK_THRESHOLD, InventoryService
from logger import get_logger
from models import BACK_STORE, MAIN_STORE, IngestionProgress
from template_generator import DEFAULT_TEMPLATE_NAME, write_template

logger = get_logger(__name__)


def _print_progress(progress: IngestionProgress) -> None:
    eta = f", ~{progress.eta_seconds:.0f}s left" if progress.eta_seconds else ""
    print(
        f"\r{progress.phase:<8} {progress.fraction_complete:5.1f}%  "
        f"{progress.rows_processed:,} rows{eta}    ",
        end='', file=sys.stderr, flush=True,
    )


def _build_service(args: argparse.Namespace):
    config = load_config(args.config)
    ingestion = IngestionSettings.from_config(config)
    storage = StorageSettings.from_config(config)
    service = InventoryService.from_settings(storage, ingestion.default_container_location)
    service.load()
    return service, ingestion


def _cmd_upload(args: argparse.Namespace) -> int:
    service, settings = _build_service(args)
    client = IngestionClient(settings)

    try:
        outcome = service.upload(
            client,
            args.file,
            source_label=args.label,
            on_progress=None if args.quiet else _print_progress,
            allow_empty=args.allow_empty,
        )
    except KeyboardInterrupt:
        active = client.active
        if active is not None:
            active.cancel()
        print("\nUpload cancelled. Nothing was saved.", file=sys.stderr)
        return 130
    finally:
        if not args.quiet:
            print(file=sys.stderr)

    print(outcome.describe())
    if args.strict and outcome.has_skipped_rows:
        print(outcome.rejection_error().get_display_message(), file=sys.stderr)
        return 2
    return 0


def _cmd_template(args: argparse.Namespace) -> int:
    path = write_template(args.path, include_examples=not args.no_examples)
    print(f"Template written to {path}")
    return 0


def _cmd_history(args: argparse.Namespace) -> int:
    service, _ = _build_service(args)
    entries = service.recent_history(args.limit)
    if not entries:
        print("No uploads yet.")
        return 0
    for entry in entries:
        print(f"{entry.timestamp}  {entry.source_label:<30} "
              f"+{entry.added} ~{entry.updated} -{entry.removed}")
    return 0


def _cmd_create_box(args: argparse.Namespace) -> int:
    service, _ = _build_service(args)
    container = service.create_container(args.box, args.name, args.location)
    print(f"Created {container.container_id} ({container.name}) at {container.location}")
    return 0


def _cmd_assign(args: argparse.Namespace) -> int:
    service, _ = _build_service(args)
    record = service.assign_to_container(args.barcode, args.box)
    print(f"{record.identifier} is now in {record.container_id}")
    return 0


def _cmd_unassign(args: argparse.Namespace) -> int:
    service, _ = _build_service(args)
    record = service.remove_from_container(args.barcode, args.location)
    print(f"{record.identifier} is now in {record.location}")
    return 0


def _cmd_low_stock(args: argparse.Namespace) -> int:
    service, _ = _build_service(args)
    for record in service.low_stock_records(args.threshold):
        print(f"{record.identifier:<16} {record.style_number:<10} {record.size:<6} "
              f"{record.color:<10} qty {record.quantity}")
    return 0


def _cmd_search(args: argparse.Namespace) -> int:
    service, _ = _build_service(args)
    for record in service.search_records(args.query):
        place = record.container_id or record.location
        print(f"{record.identifier:<16} {record.style_number:<10} {record.size:<6} "
              f"{record.color:<10} qty {record.quantity:<5} {place}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stock-tracker",
        description="Stock Tracker: bulk stock-on-hand uploads and box placement",
    )
    parser.add_argument("--config", help="Path to config.ini")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    upload = subparsers.add_parser("upload", help="Upload a stock-on-hand spreadsheet")
    upload.add_argument("file", help="Path to the .xlsx or .csv file")
    upload.add_argument("--label", help="Name recorded in the upload history (default: file name)")
    upload.add_argument("--allow-empty", action="store_true",
                        help="Accept a file without valid rows (removes every record)")
    upload.add_argument("--strict", action="store_true",
                        help="Exit with status 2 when rows were skipped")
    upload.add_argument("--quiet", "-q", action="store_true", help="Do not print progress")
    upload.set_defaults(func=_cmd_upload)

    template = subparsers.add_parser("template", help="Write an upload template")
    template.add_argument("path", nargs="?", default=DEFAULT_TEMPLATE_NAME)
    template.add_argument("--no-examples", action="store_true", help="Headers only")
    template.set_defaults(func=_cmd_template)

    history = subparsers.add_parser("history", help="Show recent uploads")
    history.add_argument("--limit", type=int, default=10)
    history.set_defaults(func=_cmd_history)

    create_box = subparsers.add_parser("create-box", help="Create an empty box")
    create_box.add_argument("box", help="Box number")
    create_box.add_argument("--name", help="Display name (default: 'Box <number>')")
    create_box.add_argument("--location", help=f"Where the box is kept (default: {BACK_STORE})")
    create_box.set_defaults(func=_cmd_create_box)

    assign = subparsers.add_parser("assign", help="Put a product into a box")
    assign.add_argument("barcode")
    assign.add_argument("box")
    assign.set_defaults(func=_cmd_assign)

    unassign = subparsers.add_parser("unassign", help="Take a product out of its box")
    unassign.add_argument("barcode")
    unassign.add_argument("--location", choices=[MAIN_STORE, BACK_STORE], default=MAIN_STORE)
    unassign.set_defaults(func=_cmd_unassign)

    low_stock = subparsers.add_parser("low-stock", help="List products running low")
    low_stock.add_argument("--threshold", type=int, default=DEFAULT_LOW_STOCK_THRESHOLD)
    low_stock.set_defaults(func=_cmd_low_stock)

    search = subparsers.add_parser("search", help="Find products by barcode, style, size, color or department")
    search.add_argument("query")
    search.set_defaults(func=_cmd_search)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except StockTrackerError as e:
        logger.error(f"{args.command} failed: {e}")
        print(e.get_display_message(), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
