"""SQLite database operations for the pricing extractor."""
import sqlite3
from pathlib import Path

from config import DB_PATH
from storage.repos.pricing_plans import PricingPlanMixin

SCHEMA = """
CREATE TABLE IF NOT EXISTS pricing_plans (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    website_url TEXT,
    source_url TEXT,
    extracted_at TEXT NOT NULL DEFAULT (datetime('now')),
    plan_name TEXT NOT NULL,
    price_amount REAL,
    price_string TEXT,
    currency TEXT,
    price_frequency TEXT,
    billing_period TEXT NOT NULL DEFAULT 'unknown',
    monthly_equivalent_amount REAL,
    annual_billed_amount REAL,
    included_units TEXT,  -- JSON array
    features TEXT,        -- JSON array
    evidence TEXT         -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_pricing_plans_owner
    ON pricing_plans(owner_id, extracted_at);
"""


class Database(PricingPlanMixin):
    def __init__(self, db_path=None):
        self.db_path = Path(db_path or DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_db(self):
        conn = self._get_conn()
        try:
            conn.executescript(SCHEMA)
        finally:
            conn.close()
