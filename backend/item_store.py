"""
Learned item storage.

The session controller only depends on the ItemStore interface. The
default SQLite store keeps an in-memory cache of every item so search
ticks never touch the database.
"""

import logging
import os
import pickle
import sqlite3
from typing import Dict, List, Optional

from models import LearnedItem

logger = logging.getLogger(__name__)


class ItemStore:
    def save(self, item: LearnedItem):
        raise NotImplementedError

    def list(self) -> List[LearnedItem]:
        raise NotImplementedError

    def get(self, item_id: str) -> Optional[LearnedItem]:
        raise NotImplementedError

    def delete(self, item_id: str) -> bool:
        raise NotImplementedError

    def get_by_name(self, name: str) -> Optional[LearnedItem]:
        """Lookup item by name (case-insensitive)."""
        name_lower = name.strip().lower()
        for item in self.list():
            if item.name.lower() == name_lower:
                return item
        return None


class SQLiteItemStore(ItemStore):
    """SQLite-backed store with an in-memory cache of learned items."""

    def __init__(self, db_path: str = "./finder_data/items.db"):
        """
        Args:
            db_path: Path to SQLite database for storing item embeddings
        """
        self.db_path = db_path
        self.items_cache: Dict[str, LearnedItem] = {}

        self._init_database()
        self._load_items()

        logger.info(f"✓ SQLiteItemStore initialized with {len(self.items_cache)} learned items")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_database(self):
        """Initialize SQLite database with schema."""
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS learned_items (
                item_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                embeddings BLOB NOT NULL,
                created_at REAL NOT NULL,
                photo_count INTEGER NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_item_name ON learned_items(name)")

        conn.commit()
        conn.close()

        logger.info(f"Database initialized at {self.db_path}")

    def _load_items(self):
        """Load all items from database into memory cache."""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("SELECT item_id, name, embeddings, created_at, photo_count FROM learned_items ORDER BY created_at")
        for item_id, name, embeddings_blob, created_at, photo_count in cursor.fetchall():
            self.items_cache[item_id] = LearnedItem(
                item_id=item_id,
                name=name,
                embeddings=pickle.loads(embeddings_blob),
                created_at=created_at,
                photo_count=photo_count,
            )

        conn.close()

    def save(self, item: LearnedItem):
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("""
            INSERT OR REPLACE INTO learned_items (item_id, name, embeddings, created_at, photo_count)
            VALUES (?, ?, ?, ?, ?)
        """, (item.item_id, item.name, pickle.dumps(item.embeddings), item.created_at, item.photo_count))

        conn.commit()
        conn.close()

        self.items_cache[item.item_id] = item
        logger.info(f"✓ Saved item: {item.name} (ID: {item.item_id}, {item.photo_count} photos)")

    def list(self) -> List[LearnedItem]:
        return sorted(self.items_cache.values(), key=lambda item: item.created_at)

    def get(self, item_id: str) -> Optional[LearnedItem]:
        return self.items_cache.get(item_id)

    def delete(self, item_id: str) -> bool:
        if item_id not in self.items_cache:
            logger.warning(f"Cannot delete unknown item: {item_id}")
            return False

        conn = self._connect()
        cursor = conn.cursor()
        cursor.execute("DELETE FROM learned_items WHERE item_id = ?", (item_id,))
        conn.commit()
        conn.close()

        item = self.items_cache.pop(item_id)
        logger.info(f"Deleted item: {item.name} (ID: {item_id})")
        return True
