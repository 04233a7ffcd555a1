import logging
import aiosqlite
import os

logger = logging.getLogger("tally.db")
DB_PATH = os.environ.get("DB_PATH", "/data/tally.db")

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db

async def init_db():
    """Create all tables if they don't exist, and run any pending migrations."""
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        # ── Migrations: add columns introduced after initial schema ──────────
        # SQLite doesn't support ALTER TABLE IF NOT EXISTS column, so we
        # check PRAGMA table_info first and only ALTER if the column is missing.
        async with db.execute("PRAGMA table_info(line_items)") as cur:
            cols = {row[1] async for row in cur}
        if "price_ex_vat" not in cols:
            await db.execute(
                "ALTER TABLE line_items ADD COLUMN price_ex_vat TEXT NOT NULL DEFAULT '0.00'"
            )
            logger.info("Migration: added line_items.price_ex_vat")
        async with db.execute("PRAGMA table_info(receipts)") as cur:
            receipt_cols = {row[1] async for row in cur}
        if "approval_stats" not in receipt_cols:
            await db.execute(
                "ALTER TABLE receipts ADD COLUMN approval_stats TEXT NOT NULL DEFAULT '{}'"
            )
            logger.info("Migration: added receipts.approval_stats")
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


# Money and quantities are stored as TEXT so Decimal values round-trip exactly.
SCHEMA = """
-- Saved (reviewed) receipts
CREATE TABLE IF NOT EXISTS receipts (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    store_name          TEXT NOT NULL,
    store_location      TEXT NOT NULL DEFAULT '',
    purchase_date       TEXT NOT NULL,         -- ISO date
    declared_total      TEXT NOT NULL,         -- printed / user-confirmed total
    currency            TEXT NOT NULL DEFAULT 'GBP',
    notes               TEXT NOT NULL DEFAULT '',
    computed_total_vat  TEXT NOT NULL DEFAULT '0.00',
    vat_zero            TEXT NOT NULL DEFAULT '0.00',
    vat_reduced         TEXT NOT NULL DEFAULT '0.00',
    vat_standard        TEXT NOT NULL DEFAULT '0.00',
    total_discounts     TEXT NOT NULL DEFAULT '0.00',
    approval_stats      TEXT NOT NULL DEFAULT '{}', -- JSON counts at review time
    status              TEXT NOT NULL DEFAULT 'saved',
    created_at          TEXT DEFAULT (datetime('now')),
    updated_at          TEXT DEFAULT (datetime('now'))
);

-- Individual line items on a receipt, in review order
CREATE TABLE IF NOT EXISTS line_items (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    receipt_id          INTEGER NOT NULL REFERENCES receipts(id) ON DELETE CASCADE,
    position            INTEGER NOT NULL,
    name                TEXT NOT NULL,
    canonical_name      TEXT NOT NULL DEFAULT '',
    brand               TEXT NOT NULL DEFAULT '',
    category            TEXT NOT NULL DEFAULT 'other',
    quantity            TEXT NOT NULL DEFAULT '1',
    unit_price          TEXT NOT NULL DEFAULT '0.00',
    discount_applied    TEXT NOT NULL DEFAULT '0.00',
    total_price         TEXT NOT NULL DEFAULT '0.00',
    vat_rate            TEXT NOT NULL DEFAULT '0',   -- 0 | 5 | 20
    vat_amount          TEXT NOT NULL DEFAULT '0.00',
    price_ex_vat        TEXT NOT NULL DEFAULT '0.00',
    approval_state      TEXT NOT NULL DEFAULT 'approved', -- approved | corrected | manual_add
    offer_description   TEXT NOT NULL DEFAULT '',
    pack_size_value     TEXT,
    pack_size_unit      TEXT,
    confidence_score    TEXT NOT NULL DEFAULT '3',
    is_own_brand        INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_line_items_receipt ON line_items(receipt_id, position);
"""
