"""
Inventory ledger: the only source of truth for "can this order take N units".

Every mutation is a single conditional UPDATE so concurrent confirmations can
never push a quantity below zero.
"""
from __future__ import annotations

import logging

from sqlalchemy import and_, case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.errors import InsufficientStock, NotFoundError
from navdrishti.models import InventoryItem, ItemStatus

logger = logging.getLogger(__name__)


async def get_item(session: AsyncSession, item_id: int) -> InventoryItem:
    item = await session.get(InventoryItem, item_id)
    if item is None:
        raise NotFoundError(f"Item {item_id} not found")
    return item


async def get_quantity(session: AsyncSession, item_id: int) -> int:
    """Fresh read of the quantity, bypassing any stale instance in the session."""
    qty = (
        await session.execute(
            select(InventoryItem.quantity).where(InventoryItem.id == item_id)
        )
    ).scalar_one_or_none()
    if qty is None:
        raise NotFoundError(f"Item {item_id} not found")
    return qty


async def reserve_if_available(session: AsyncSession, item_id: int, qty: int) -> None:
    """
    Atomically subtract *qty* from the item.

    Decrement happens only where ``quantity >= qty``; zero rows affected means
    another order got there first and ``InsufficientStock`` is raised.  An
    active item that reaches zero flips to ``sold`` in the same statement.
    """
    if qty <= 0:
        raise ValueError("qty must be positive")

    result = await session.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item_id, InventoryItem.quantity >= qty)
        .values(
            quantity=InventoryItem.quantity - qty,
            status=case(
                (
                    and_(
                        InventoryItem.quantity == qty,
                        InventoryItem.status == ItemStatus.ACTIVE,
                    ),
                    ItemStatus.SOLD.value,
                ),
                else_=InventoryItem.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        available = (
            await session.execute(
                select(InventoryItem.quantity).where(InventoryItem.id == item_id)
            )
        ).scalar_one_or_none()
        if available is None:
            raise NotFoundError(f"Item {item_id} not found")
        logger.warning(
            "Stock floor hit for item=%s (requested %d, available %d)",
            item_id, qty, available,
        )
        raise InsufficientStock(item_id=item_id, requested=qty, available=available)

    logger.info("Stock decremented: item=%s delta=-%d", item_id, qty)


async def restore(session: AsyncSession, item_id: int, qty: int) -> None:
    """Give *qty* units back; a ``sold`` item becomes ``active`` again."""
    if qty <= 0:
        raise ValueError("qty must be positive")

    result = await session.execute(
        update(InventoryItem)
        .where(InventoryItem.id == item_id)
        .values(
            quantity=InventoryItem.quantity + qty,
            status=case(
                (InventoryItem.status == ItemStatus.SOLD, ItemStatus.ACTIVE.value),
                else_=InventoryItem.status,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Item {item_id} not found")

    logger.info("Stock restored: item=%s delta=+%d", item_id, qty)
