"""
Admin / operational endpoints.

GET  /admin/health
GET  /admin/inventory
GET  /admin/inventory/{item_id}
GET  /admin/reconciliation
POST /admin/expire-stale-orders
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.database import get_db
from navdrishti.deps import require_admin
from navdrishti.models import InventoryItem, Order
from navdrishti.schemas import ExpiryResult, HealthResponse, InventoryRow, ReconciliationRow
from navdrishti.services import inventory
from navdrishti.services.expiry import expire_stale_orders

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(status="ok", db=db_status)


@router.get("/inventory", response_model=List[InventoryRow], dependencies=[Depends(require_admin)])
async def list_inventory(db: AsyncSession = Depends(get_db)) -> List[InventoryRow]:
    rows = (
        await db.execute(select(InventoryItem).order_by(InventoryItem.id))
    ).scalars().all()
    return [InventoryRow.model_validate(r) for r in rows]


@router.get(
    "/inventory/{item_id}", response_model=InventoryRow, dependencies=[Depends(require_admin)]
)
async def get_inventory_item(item_id: int, db: AsyncSession = Depends(get_db)) -> InventoryRow:
    return InventoryRow.model_validate(await inventory.get_item(db, item_id))


@router.get(
    "/reconciliation",
    response_model=List[ReconciliationRow],
    dependencies=[Depends(require_admin)],
)
async def reconciliation_queue(db: AsyncSession = Depends(get_db)) -> List[ReconciliationRow]:
    rows = (
        await db.execute(
            select(Order)
            .where(Order.needs_reconciliation.is_(True))
            .order_by(Order.updated_at.desc(), Order.id.desc())
        )
    ).scalars().all()
    return [ReconciliationRow.model_validate(r) for r in rows]


@router.post(
    "/expire-stale-orders", response_model=ExpiryResult, dependencies=[Depends(require_admin)]
)
async def expire_orders(db: AsyncSession = Depends(get_db)) -> ExpiryResult:
    report = await expire_stale_orders(db)
    return ExpiryResult(cancelled=report.cancelled, flagged=report.flagged)
