"""
Local record of every source listing the migrator has seen, keyed by URL.
Backs skip-if-already-seen and the /products endpoints.
"""

import json
import logging
import sqlite3
from pathlib import Path

from listing_models import ProductRecord

logger = logging.getLogger(__name__)

STATUS_PENDING = 0
STATUS_PROCESSING = 1
STATUS_COMPLETED = 2
STATUS_FAILED = -1

_SCHEMA = """
CREATE TABLE IF NOT EXISTS products (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT NOT NULL UNIQUE,
    title TEXT,
    price TEXT,
    original_price TEXT,
    images TEXT,
    category_name TEXT,
    attributes TEXT,
    description TEXT,
    packing_list TEXT,
    dimensions TEXT,
    weight TEXT,
    status INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
)
"""


class ProductStore:
    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def exists(self, url: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM products WHERE url = ?", (url,)).fetchone()
        return row is not None

    def save(self, record: ProductRecord) -> int:
        """Insert (or refresh) the listing and return its row id. Status resets to pending."""
        values = (
            record.url,
            record.title,
            record.price_text,
            record.original_price_text,
            ",".join(record.images),
            record.source_category_label,
            json.dumps(record.attributes, ensure_ascii=False),
            record.description_text,
            record.packing_list_text,
            record.dimensions_text,
            record.weight_text,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO products (
                    url, title, price, original_price, images, category_name, attributes,
                    description, packing_list, dimensions, weight, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
                ON CONFLICT(url) DO UPDATE SET
                    title = excluded.title,
                    price = excluded.price,
                    original_price = excluded.original_price,
                    images = excluded.images,
                    category_name = excluded.category_name,
                    attributes = excluded.attributes,
                    description = excluded.description,
                    packing_list = excluded.packing_list,
                    dimensions = excluded.dimensions,
                    weight = excluded.weight,
                    status = 0,
                    error_message = NULL
                """,
                values,
            )
            row = conn.execute("SELECT id FROM products WHERE url = ?", (record.url,)).fetchone()
        return row["id"]

    def update_status(self, product_id: int, status: int, error: str | None = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE products SET status = ?, error_message = ? WHERE id = ?",
                (status, error[:500] if error else None, product_id),
            )

    def list(self, limit: int = 100) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM products ORDER BY id LIMIT ?", (limit,)).fetchall()
        products = []
        for row in rows:
            item = dict(row)
            item["images"] = [u for u in (item["images"] or "").split(",") if u]
            item["attributes"] = json.loads(item["attributes"] or "{}")
            products.append(item)
        return products

    def stats(self) -> dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) FROM products GROUP BY status").fetchall()
        counts = {row[0]: row[1] for row in rows}
        return {
            "pending": counts.get(STATUS_PENDING, 0),
            "processing": counts.get(STATUS_PROCESSING, 0),
            "completed": counts.get(STATUS_COMPLETED, 0),
            "failed": counts.get(STATUS_FAILED, 0),
            "total": sum(counts.values()),
        }

    def delete_all(self) -> int:
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM products").rowcount
        logger.info("Deleted %d stored products", deleted)
        return deleted
