import logging
import aiosqlite
import os

logger = logging.getLogger("pocketbook.db")
DB_PATH = os.environ.get("DB_PATH", "/data/pocketbook.db")

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
        # expenses.receipt_url arrived after the first release; ALTER only if missing
        async with db.execute("PRAGMA table_info(expenses)") as cur:
            cols = {row[1] async for row in cur}
        if "receipt_url" not in cols:
            await db.execute("ALTER TABLE expenses ADD COLUMN receipt_url TEXT")
            logger.info("Migration: added expenses.receipt_url")
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


SCHEMA = """
-- ── Committed expenses ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS expenses (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        TEXT NOT NULL,
    description     TEXT NOT NULL,
    amount          REAL NOT NULL DEFAULT 0,
    date            TEXT NOT NULL,             -- ISO YYYY-MM-DD
    category        TEXT NOT NULL DEFAULT 'Other',
    payment_method  TEXT NOT NULL DEFAULT 'Card',
    is_recurring    INTEGER NOT NULL DEFAULT 0,
    receipt_url     TEXT,
    created_at      TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_expenses_owner_date ON expenses(owner_id, date);

-- ── One row per scanned receipt that was committed ─────────────────────────
CREATE TABLE IF NOT EXISTS receipt_extractions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id        TEXT NOT NULL,
    merchant        TEXT NOT NULL DEFAULT 'Unknown Merchant',
    date            TEXT NOT NULL,
    total           REAL NOT NULL DEFAULT 0,
    receipt_url     TEXT,
    receipt_text    TEXT,                      -- raw OCR / vision transcript
    payment_method  TEXT NOT NULL DEFAULT 'Card',
    created_at      TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS receipt_items (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    receipt_id  INTEGER NOT NULL REFERENCES receipt_extractions(id) ON DELETE CASCADE,
    name        TEXT NOT NULL,
    amount      REAL NOT NULL DEFAULT 0,
    category    TEXT NOT NULL DEFAULT 'Other'
);

CREATE INDEX IF NOT EXISTS idx_receipt_items_receipt ON receipt_items(receipt_id);
"""
