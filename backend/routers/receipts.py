"""
Receipts Router

POST   /api/receipts        — finalize a reviewed draft and save it
GET    /api/receipts        — list saved receipts (summary)
GET    /api/receipts/{id}   — get a saved receipt with line items
PUT    /api/receipts/{id}   — re-save an edited receipt
DELETE /api/receipts/{id}   — remove a receipt

A save that fails never changes anything on the client: the draft stays
where it is and the user can retry.
"""
import logging

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException

from db.database import get_db
from models.schemas import ApprovalStats, Receipt, ReceiptDraft, ReceiptSummary, SaveReceiptBody
from services.draft_service import (
    SaveBlockedError,
    approval_stats,
    finalize_for_save,
    refresh,
    validate_for_save,
)
from services.receipt_store import (
    PersistenceError,
    ReceiptNotFound,
    create_receipt,
    delete_receipt as store_delete_receipt,
    get_receipt as store_get_receipt,
    list_receipts as store_list_receipts,
    update_receipt,
)
from services.vat_service import InvalidVatRate

logger = logging.getLogger("tally.receipts")
router = APIRouter()


def _prepare(body: SaveReceiptBody) -> tuple[ReceiptDraft, ApprovalStats]:
    """Validate + finalize the draft.  Stats are taken before pending → approved."""
    try:
        draft = refresh(body.draft)
    except InvalidVatRate as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        validate_for_save(draft, confirm_empty=body.confirm_empty)
    except SaveBlockedError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "requires_confirmation": True},
        )

    stats = approval_stats(draft.items)
    return finalize_for_save(draft), stats


# ── Save (finalize after review) ──────────────────────────────────────────────

@router.post("")
async def save_receipt(
    body: SaveReceiptBody,
    db: aiosqlite.Connection = Depends(get_db),
):
    draft, stats = _prepare(body)
    try:
        receipt_id = await create_receipt(db, draft, stats)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Failed to save receipt: {e}")

    return {
        "status": "ok",
        "receipt_id": receipt_id,
        "approval_stats": stats.model_dump(),
    }


@router.put("/{receipt_id}")
async def resave_receipt(
    receipt_id: int,
    body: SaveReceiptBody,
    db: aiosqlite.Connection = Depends(get_db),
):
    draft, stats = _prepare(body)
    try:
        await update_receipt(db, receipt_id, draft, stats)
    except ReceiptNotFound:
        raise HTTPException(status_code=404, detail="Receipt not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=f"Failed to save receipt: {e}")

    return {
        "status": "ok",
        "receipt_id": receipt_id,
        "approval_stats": stats.model_dump(),
    }


# ── List Receipts ─────────────────────────────────────────────────────────────

@router.get("", response_model=list[ReceiptSummary])
async def list_receipts(
    limit: int = 50,
    offset: int = 0,
    db: aiosqlite.Connection = Depends(get_db),
):
    try:
        results = await store_list_receipts(db, limit=limit, offset=offset)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    logger.debug("list_receipts returning %d receipts", len(results))
    return results


# ── Get Single Receipt ────────────────────────────────────────────────────────

@router.get("/{receipt_id}", response_model=Receipt)
async def get_receipt(
    receipt_id: int,
    db: aiosqlite.Connection = Depends(get_db),
):
    try:
        return await store_get_receipt(db, receipt_id)
    except ReceiptNotFound:
        raise HTTPException(status_code=404, detail="Receipt not found")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))


# ── Delete ────────────────────────────────────────────────────────────────────

@router.delete("/{receipt_id}")
async def delete_receipt(
    receipt_id: int,
    db: aiosqlite.Connection = Depends(get_db),
):
    try:
        deleted = await store_delete_receipt(db, receipt_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return {"status": "deleted"}
