"""
Drafts Router

POST /api/drafts             — build a draft from a raw extraction result (JSON)
POST /api/drafts/extract     — upload an image, extract with Claude Vision, build a draft
POST /api/drafts/commands    — apply edit commands to a draft, return the new draft
POST /api/drafts/reconcile   — recompute derived values + total check for a draft

Drafts live with the client; nothing here touches the database.  Every
response carries the draft, the total reconciliation, and approval stats so
the review screen can re-render in one round trip.
"""
import logging
import os
from typing import Any

from fastapi import APIRouter, Body, File, HTTPException, UploadFile

from models.schemas import ApplyCommandsBody, DraftResponse, ReconcileBody
from services.draft_service import (
    DraftCommandError,
    apply_commands,
    normalize_draft,
    refresh,
    review,
)
from services.extraction_service import ExtractionError, extract_receipt
from services.vat_service import InvalidVatRate

logger = logging.getLogger("tally.drafts")
router = APIRouter()

DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "GBP")


def _refresh_or_422(draft):
    # Client-held drafts are re-derived so stale/forged totals can't slip through
    try:
        return refresh(draft)
    except InvalidVatRate as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("", response_model=DraftResponse)
async def create_draft(raw: Any = Body(...)):
    """Normalize an extraction result (any shape) into a reviewable draft."""
    draft = normalize_draft(raw, currency=DEFAULT_CURRENCY)
    return review(draft)


@router.post("/extract", response_model=DraftResponse)
async def extract_draft(file: UploadFile = File(...)):
    """
    Read a receipt photo and return the draft for the review screen.
    Nothing is saved until the user confirms via POST /api/receipts.
    """
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=422, detail="Empty upload")

    try:
        raw = await extract_receipt(contents)
    except ExtractionError as e:
        logger.warning("Extraction failed for %s: %s", file.filename, e)
        raise HTTPException(status_code=422, detail=f"Could not read receipt: {e}")

    draft = normalize_draft(raw, currency=DEFAULT_CURRENCY)
    return review(draft)


@router.post("/commands", response_model=DraftResponse)
async def apply_draft_commands(body: ApplyCommandsBody):
    """Apply edit commands in order.  A failing command rejects the whole batch."""
    draft = _refresh_or_422(body.draft)
    try:
        draft = apply_commands(draft, body.commands)
    except (DraftCommandError, InvalidVatRate) as e:
        raise HTTPException(status_code=422, detail=str(e))
    return review(draft)


@router.post("/reconcile", response_model=DraftResponse)
async def reconcile_draft(body: ReconcileBody):
    return review(_refresh_or_422(body.draft))
