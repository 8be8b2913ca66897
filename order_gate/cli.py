#!/usr/bin/env python3
"""
Order gate maintenance CLI.

    order-gate init-db
    order-gate add P123456789012345678 [max_access]
    order-gate import orders.csv        # lines: order_number[,max_access]
    order-gate query P123456789012345678
    order-gate sweep
"""
import argparse
import csv
import sys
from pathlib import Path

from order_gate.core.logging import configure_logging
from order_gate.db.session import SessionLocal, init_db
from order_gate.errors import OrderFormatError, StorageError
from order_gate.services.cleanup.service import CleanupService
from order_gate.services.orders.service import OrderService
from order_gate.services.sessions.store import session_store


def cmd_init_db(_args: argparse.Namespace) -> int:
    init_db()
    print("Database initialized")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        inserted = OrderService(db).add_multi_order(args.order_number.strip(), args.max_access)
    except (OrderFormatError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    finally:
        db.close()
    if inserted:
        limit = args.max_access if args.max_access else "unlimited"
        print(f"Added multi-use order {args.order_number.strip()} (max access: {limit})")
    else:
        print(f"Order already exists in the whitelist: {args.order_number.strip()}")
    return 0


def read_orders_csv(path: Path) -> list[tuple[str, int | None]]:
    """Parse 'order_number[,max_access]' lines; blank lines and '#' comments are skipped."""
    orders: list[tuple[str, int | None]] = []
    with path.open(newline="", encoding="utf-8") as fh:
        for row in csv.reader(fh):
            if not row or not row[0].strip() or row[0].strip().startswith("#"):
                continue
            order_number = row[0].strip()
            max_access = None
            if len(row) > 1 and row[1].strip():
                try:
                    max_access = int(row[1].strip())
                except ValueError:
                    max_access = None
            orders.append((order_number, max_access))
    return orders


def cmd_import(args: argparse.Namespace) -> int:
    path = Path(args.csv_path)
    if not path.exists():
        print(f"Error: file not found: {path}", file=sys.stderr)
        return 2
    orders = read_orders_csv(path)
    db = SessionLocal()
    try:
        inserted = OrderService(db).batch_add(orders)
    finally:
        db.close()
    print(f"Imported {inserted}/{len(orders)} orders")
    return 0


def cmd_query(args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        service = OrderService(db)
        usage = service.get_order_usage(args.order_number.strip())
        kind = service.classify(args.order_number.strip())
    finally:
        db.close()
    print(f"Order:        {args.order_number.strip()}")
    print(f"Type:         {kind.kind}")
    if usage["is_multi_order"]:
        max_access = usage["multi_order_info"]["max_access"]
        print(f"Max access:   {max_access if max_access is not None else 'unlimited'}")
        print(f"Remaining:    {kind.remaining}")
    else:
        print(f"Eligible:     {kind.eligible}" + (f" ({kind.reason.value})" if kind.reason else ""))
    print(f"Usage count:  {usage['usage_count']}")
    for r in usage["usage_records"]:
        print(f"  {r['accessed_at']}  ip={r['ip_address']}  device={r['device_id'] or '-'}")
    return 0


def cmd_sweep(_args: argparse.Namespace) -> int:
    db = SessionLocal()
    try:
        result = CleanupService(db, session_store).run()
    finally:
        db.close()
    for key, value in result.items():
        print(f"{key}: {value}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="order-gate", description="Order gate maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create database tables").set_defaults(func=cmd_init_db)

    add = sub.add_parser("add", help="add a multi-use order to the whitelist")
    add.add_argument("order_number")
    add.add_argument("max_access", nargs="?", type=int, default=None)
    add.set_defaults(func=cmd_add)

    imp = sub.add_parser("import", help="import multi-use orders from CSV")
    imp.add_argument("csv_path")
    imp.set_defaults(func=cmd_import)

    query = sub.add_parser("query", help="show an order's type and usage")
    query.add_argument("order_number")
    query.set_defaults(func=cmd_query)

    sub.add_parser("sweep", help="remove expired windows and stale bindings").set_defaults(func=cmd_sweep)
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except StorageError as e:
        print(f"Database error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
