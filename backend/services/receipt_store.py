"""
Receipt Store — persistence for finalized drafts.

A plain create / update / get / list / delete surface over the receipts and
line_items tables.  Decimal values are written as TEXT and read back with
Decimal(str), so nothing is lost to floating point.

Any sqlite error is logged and re-raised as PersistenceError; callers turn
that into a user-visible failure and keep their draft for a retry.
"""
import json
import logging
import sqlite3
from datetime import date
from decimal import Decimal
from typing import Optional

import aiosqlite

from models.schemas import (
    ApprovalStats,
    RateBand,
    Receipt,
    ReceiptDraft,
    ReceiptSummary,
    SavedLineItem,
)

logger = logging.getLogger("tally.store")


class PersistenceError(Exception):
    """Raised when the entity store rejects a write or read."""
    pass


class ReceiptNotFound(LookupError):
    pass


def _money(value: Optional[str]) -> Decimal:
    return Decimal(value) if value not in (None, "") else Decimal("0.00")


async def _insert_items(db: aiosqlite.Connection, receipt_id: int, draft: ReceiptDraft):
    for position, item in enumerate(draft.items):
        await db.execute(
            """INSERT INTO line_items
               (receipt_id, position, name, canonical_name, brand, category,
                quantity, unit_price, discount_applied, total_price,
                vat_rate, vat_amount, price_ex_vat, approval_state,
                offer_description, pack_size_value, pack_size_unit,
                confidence_score, is_own_brand)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (receipt_id, position, item.name, item.canonical_name, item.brand,
             item.category.value,
             str(item.quantity), str(item.unit_price), str(item.discount_applied),
             str(item.total_price), str(item.vat_rate), str(item.vat_amount),
             str(item.price_ex_vat), item.approval_state.value,
             item.offer_description,
             str(item.pack_size_value) if item.pack_size_value is not None else None,
             item.pack_size_unit, str(item.confidence_score),
             1 if item.is_own_brand else 0),
        )


def _receipt_values(draft: ReceiptDraft, stats: ApprovalStats) -> tuple:
    return (
        draft.store_name, draft.store_location, draft.purchase_date.isoformat(),
        str(draft.declared_total), draft.currency, draft.notes,
        str(draft.computed_total_vat),
        str(draft.vat_breakdown[RateBand.ZERO]),
        str(draft.vat_breakdown[RateBand.REDUCED]),
        str(draft.vat_breakdown[RateBand.STANDARD]),
        str(draft.total_discounts),
        json.dumps(stats.model_dump()),
    )


async def create_receipt(
    db: aiosqlite.Connection,
    draft: ReceiptDraft,
    stats: ApprovalStats,
) -> int:
    """Insert a finalized draft and its items.  Returns the new receipt id."""
    try:
        cursor = await db.execute(
            """INSERT INTO receipts
               (store_name, store_location, purchase_date, declared_total, currency,
                notes, computed_total_vat, vat_zero, vat_reduced, vat_standard,
                total_discounts, approval_stats)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            _receipt_values(draft, stats),
        )
        receipt_id = cursor.lastrowid
        await _insert_items(db, receipt_id, draft)
        await db.commit()
    except sqlite3.Error as e:
        logger.exception("Failed to create receipt for %s", draft.store_name)
        await db.rollback()
        raise PersistenceError(str(e)) from e

    logger.info("Saved receipt %d (%s, %d items, total %s)",
                receipt_id, draft.store_name, len(draft.items), draft.declared_total)
    return receipt_id


async def update_receipt(
    db: aiosqlite.Connection,
    receipt_id: int,
    draft: ReceiptDraft,
    stats: ApprovalStats,
) -> None:
    """Overwrite a saved receipt with a re-reviewed draft (items are replaced)."""
    try:
        async with db.execute("SELECT id FROM receipts WHERE id = ?", (receipt_id,)) as cur:
            if not await cur.fetchone():
                raise ReceiptNotFound(receipt_id)

        await db.execute(
            """UPDATE receipts
               SET store_name = ?, store_location = ?, purchase_date = ?,
                   declared_total = ?, currency = ?, notes = ?,
                   computed_total_vat = ?, vat_zero = ?, vat_reduced = ?,
                   vat_standard = ?, total_discounts = ?, approval_stats = ?,
                   updated_at = datetime('now')
               WHERE id = ?""",
            _receipt_values(draft, stats) + (receipt_id,),
        )
        await db.execute("DELETE FROM line_items WHERE receipt_id = ?", (receipt_id,))
        await _insert_items(db, receipt_id, draft)
        await db.commit()
    except sqlite3.Error as e:
        logger.exception("Failed to update receipt %d", receipt_id)
        await db.rollback()
        raise PersistenceError(str(e)) from e

    logger.info("Updated receipt %d (%d items)", receipt_id, len(draft.items))


def _row_to_item(row) -> SavedLineItem:
    return SavedLineItem(
        id=row["id"],
        receipt_id=row["receipt_id"],
        position=row["position"],
        name=row["name"],
        canonical_name=row["canonical_name"],
        brand=row["brand"],
        category=row["category"],
        quantity=Decimal(row["quantity"]),
        unit_price=_money(row["unit_price"]),
        discount_applied=_money(row["discount_applied"]),
        total_price=_money(row["total_price"]),
        vat_rate=Decimal(row["vat_rate"]),
        vat_amount=_money(row["vat_amount"]),
        price_ex_vat=_money(row["price_ex_vat"]),
        approval_state=row["approval_state"],
        offer_description=row["offer_description"],
        pack_size_value=Decimal(row["pack_size_value"]) if row["pack_size_value"] else None,
        pack_size_unit=row["pack_size_unit"],
        confidence_score=Decimal(row["confidence_score"]),
        is_own_brand=bool(row["is_own_brand"]),
    )


async def get_receipt(db: aiosqlite.Connection, receipt_id: int) -> Receipt:
    try:
        async with db.execute("SELECT * FROM receipts WHERE id = ?", (receipt_id,)) as cur:
            row = await cur.fetchone()
        if not row:
            raise ReceiptNotFound(receipt_id)
        async with db.execute(
            "SELECT * FROM line_items WHERE receipt_id = ? ORDER BY position, id", (receipt_id,)
        ) as cur:
            items = await cur.fetchall()
    except sqlite3.Error as e:
        logger.exception("Failed to load receipt %d", receipt_id)
        raise PersistenceError(str(e)) from e

    return Receipt(
        id=row["id"],
        store_name=row["store_name"],
        store_location=row["store_location"],
        purchase_date=date.fromisoformat(row["purchase_date"]),
        declared_total=_money(row["declared_total"]),
        currency=row["currency"],
        notes=row["notes"],
        computed_total_vat=_money(row["computed_total_vat"]),
        vat_breakdown={
            RateBand.ZERO: _money(row["vat_zero"]),
            RateBand.REDUCED: _money(row["vat_reduced"]),
            RateBand.STANDARD: _money(row["vat_standard"]),
        },
        total_discounts=_money(row["total_discounts"]),
        approval_stats=ApprovalStats(**json.loads(row["approval_stats"] or "{}")),
        status=row["status"],
        created_at=row["created_at"] or "",
        updated_at=row["updated_at"] or "",
        items=[_row_to_item(i) for i in items],
    )


async def list_receipts(
    db: aiosqlite.Connection,
    limit: int = 50,
    offset: int = 0,
) -> list[ReceiptSummary]:
    try:
        async with db.execute(
            """
            SELECT r.id, r.store_name, r.purchase_date, r.declared_total,
                   r.computed_total_vat, r.status, r.created_at,
                   COUNT(li.id) AS item_count
            FROM receipts r
            LEFT JOIN line_items li ON li.receipt_id = r.id
            GROUP BY r.id
            ORDER BY r.purchase_date DESC, r.id DESC
            LIMIT ? OFFSET ?
            """,
            (limit, offset),
        ) as cur:
            rows = await cur.fetchall()
    except sqlite3.Error as e:
        logger.exception("DB query failed in list_receipts")
        raise PersistenceError(str(e)) from e

    return [
        ReceiptSummary(
            id=row["id"],
            store_name=row["store_name"],
            purchase_date=date.fromisoformat(row["purchase_date"]),
            declared_total=_money(row["declared_total"]),
            computed_total_vat=_money(row["computed_total_vat"]),
            item_count=row["item_count"],
            status=row["status"],
            created_at=row["created_at"] or "",
        )
        for row in rows
    ]


async def delete_receipt(db: aiosqlite.Connection, receipt_id: int) -> bool:
    """Remove a receipt and its items.  Returns False when it didn't exist."""
    try:
        await db.execute("DELETE FROM line_items WHERE receipt_id = ?", (receipt_id,))
        cursor = await db.execute("DELETE FROM receipts WHERE id = ?", (receipt_id,))
        await db.commit()
    except sqlite3.Error as e:
        logger.exception("Failed to delete receipt %d", receipt_id)
        raise PersistenceError(str(e)) from e
    return cursor.rowcount > 0
