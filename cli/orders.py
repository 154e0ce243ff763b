#!/usr/bin/env python3
"""
CLI: operational commands for the order core.

Usage:
    # Cancel orders left unpaid past the reservation timeout
    python -m cli.orders --expire

    # Same, with a custom timeout in minutes
    python -m cli.orders --expire --timeout 60

    # List orders flagged for manual reconciliation
    python -m cli.orders --reconciliation

    # Show inventory levels
    python -m cli.orders --stock
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from navdrishti.database import get_db_ctx
from navdrishti.models import InventoryItem, Order
from navdrishti.services.expiry import expire_stale_orders


async def cmd_expire(timeout: int | None) -> None:
    async with get_db_ctx() as session:
        report = await expire_stale_orders(session, timeout_minutes=timeout)

    print(f"\n→ Cancelled: {len(report.cancelled)}")
    for number in report.cancelled:
        print(f"    - {number}")
    print(f"→ Flagged:   {len(report.flagged)}")
    for number in report.flagged:
        print(f"    - {number}")


async def cmd_reconciliation() -> None:
    async with get_db_ctx() as session:
        rows = (
            await session.execute(
                select(Order)
                .where(Order.needs_reconciliation.is_(True))
                .order_by(Order.updated_at.desc())
            )
        ).scalars().all()

    if not rows:
        print("No orders awaiting reconciliation.")
        return

    print(f"\n{'ORDER':<30} {'STATUS':<16} REASON")
    print("-" * 100)
    for r in rows:
        print(f"{r.order_number:<30} {r.status.value:<16} {r.reconciliation_reason or '-'}")


async def cmd_stock() -> None:
    async with get_db_ctx() as session:
        rows = (
            await session.execute(select(InventoryItem).order_by(InventoryItem.id))
        ).scalars().all()

    if not rows:
        print("No inventory records found.")
        return

    print(f"\n{'ID':<8} {'TITLE':<40} {'QTY':>6} {'STATUS':<10} UPDATED")
    print("-" * 90)
    for r in rows:
        print(f"{r.id:<8} {r.title[:40]:<40} {r.quantity:>6} {r.status.value:<10} {r.updated_at}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Navdrishti order core CLI")
    parser.add_argument("--expire", action="store_true", help="Cancel stale unpaid orders")
    parser.add_argument(
        "--timeout", type=int, metavar="MINUTES", help="Override the reservation timeout"
    )
    parser.add_argument(
        "--reconciliation", action="store_true", help="List orders flagged for reconciliation"
    )
    parser.add_argument("--stock", action="store_true", help="Print current inventory levels")
    args = parser.parse_args()

    if args.expire:
        asyncio.run(cmd_expire(args.timeout))
    elif args.reconciliation:
        asyncio.run(cmd_reconciliation())
    elif args.stock:
        asyncio.run(cmd_stock())
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
