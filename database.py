"""
ClickHub Database Abstraction Layer
Supports both SQLite (local development) and PostgreSQL (Vercel/production)

Holds the synced-pair registry: the durable link between a HubSpot object
and the ClickUp task created for it.
"""

import os
import sqlite3
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

# Check if we're on Vercel (PostgreSQL) or local (SQLite)
IS_VERCEL = os.environ.get('VERCEL') == '1' or os.environ.get('POSTGRES_URL') is not None
DATABASE_URL = os.environ.get('POSTGRES_URL') or os.environ.get('DATABASE_URL')


class RegistryError(Exception):
    """Storage fault in the synced-pair registry. Callers may retry."""
    retryable = True


@dataclass(frozen=True)
class SyncedPair:
    """Link between one HubSpot object and its ClickUp task"""
    source_object_id: str
    source_object_type: str
    target_object_id: str
    created_at: Optional[datetime] = None


class DatabaseInterface(ABC):
    """Abstract base class for database operations"""

    @abstractmethod
    def execute(self, query: str, params: tuple = ()) -> Any:
        pass

    @abstractmethod
    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        pass

    @abstractmethod
    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


SCHEMA = [
    # (source_object_id, source_object_type) is the idempotency key;
    # a ClickUp task belongs to at most one pair
    """
    CREATE TABLE IF NOT EXISTS synced_items (
        source_object_id TEXT NOT NULL,
        source_object_type TEXT NOT NULL,
        target_object_id TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL,
        PRIMARY KEY (source_object_id, source_object_type)
    )
    """,
]


class SQLiteDatabase(DatabaseInterface):
    """SQLite implementation for local development"""

    def __init__(self, path: str = "sync.db"):
        self.path = path
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        return self.conn.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.conn.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.conn.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        """Initialize SQLite schema"""
        cur = self.conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS sync_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation TEXT NOT NULL,
                source_system TEXT NOT NULL,
                target_system TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                status TEXT NOT NULL,
                message TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self.conn.commit()


class PostgreSQLDatabase(DatabaseInterface):
    """PostgreSQL implementation for Vercel/production"""

    def __init__(self, database_url: str = None):
        import psycopg2

        self.database_url = database_url or DATABASE_URL
        if not self.database_url:
            raise ValueError("No PostgreSQL database URL provided. Set POSTGRES_URL environment variable.")

        self.conn = psycopg2.connect(self.database_url)
        self.conn.autocommit = False
        self._init_schema()

    def execute(self, query: str, params: tuple = ()) -> Any:
        cur = self.conn.cursor()
        cur.execute(self._convert_placeholders(query), params)
        return cur

    def fetchone(self, query: str, params: tuple = ()) -> Optional[Tuple]:
        return self.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[Tuple]:
        return self.execute(query, params).fetchall()

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def close(self) -> None:
        self.conn.close()

    def _convert_placeholders(self, query: str) -> str:
        """Convert SQLite ? placeholders to PostgreSQL %s"""
        return query.replace('?', '%s')

    def _init_schema(self) -> None:
        """Initialize PostgreSQL schema"""
        cur = self.conn.cursor()
        for statement in SCHEMA:
            cur.execute(statement)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS sync_logs (
                id SERIAL PRIMARY KEY,
                operation TEXT NOT NULL,
                source_system TEXT NOT NULL,
                target_system TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT,
                status TEXT NOT NULL,
                message TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)
        self.conn.commit()


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class SyncRegistry:
    """
    Durable synced-pair registry on top of SQLite or PostgreSQL.

    Pairs are written once and never updated or deleted. Every storage fault
    surfaces as RegistryError; a failed lookup is never reported as "not found".
    """

    def __init__(self, path: str = "sync.db", database_url: Optional[str] = None):
        self._lock = threading.RLock()
        self.is_postgres = bool(database_url)

        try:
            if self.is_postgres:
                logger.info("🐘 Using PostgreSQL database (Vercel mode)")
                self._db = PostgreSQLDatabase(database_url)
            else:
                logger.info(f"📁 Using SQLite database: {path}")
                self._db = SQLiteDatabase(path)
                self.path = path
        except Exception as e:
            raise RegistryError(f"Could not open sync registry: {e}") from e

    def _run(self, action: str, fn):
        with self._lock:
            try:
                return fn()
            except Exception as e:
                try:
                    self._db.rollback()
                except Exception:
                    logger.debug("Rollback after failed registry call also failed", exc_info=True)
                logger.error(f"Sync registry {action} failed: {e}")
                raise RegistryError(f"{action} failed: {e}") from e

    @staticmethod
    def _row_to_pair(row: Optional[Tuple]) -> Optional[SyncedPair]:
        if not row:
            return None
        return SyncedPair(
            source_object_id=row[0],
            source_object_type=row[1],
            target_object_id=row[2],
            created_at=_parse_ts(row[3]),
        )

    # ============================================
    # SYNCED PAIRS
    # ============================================

    def find_by_source(self, source_object_id: str, source_object_type: str) -> Optional[SyncedPair]:
        row = self._run("find_by_source", lambda: self._db.fetchone("""
            SELECT source_object_id, source_object_type, target_object_id, created_at
            FROM synced_items
            WHERE source_object_id = ? AND source_object_type = ?
        """, (str(source_object_id), str(source_object_type))))
        return self._row_to_pair(row)

    def find_by_target(self, target_object_id: str) -> Optional[SyncedPair]:
        row = self._run("find_by_target", lambda: self._db.fetchone("""
            SELECT source_object_id, source_object_type, target_object_id, created_at
            FROM synced_items
            WHERE target_object_id = ?
        """, (str(target_object_id),)))
        return self._row_to_pair(row)

    def insert_if_absent(self, pair: SyncedPair) -> bool:
        """
        Insert pair unless one already exists for its source (or its target).

        Returns True when this call wrote the row. Concurrent callers racing on
        the same source see exactly one True; the losers get False, not an error.
        """
        created_at = (pair.created_at or datetime.now(timezone.utc)).isoformat()

        def insert() -> bool:
            cur = self._db.execute("""
                INSERT INTO synced_items(source_object_id, source_object_type, target_object_id, created_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT DO NOTHING
            """, (str(pair.source_object_id), str(pair.source_object_type),
                  str(pair.target_object_id), created_at))
            self._db.commit()
            return cur.rowcount == 1

        inserted = self._run("insert_if_absent", insert)
        if inserted:
            logger.info(f"💾 Sync record saved for {pair.source_object_type} {pair.source_object_id} "
                        f"-> ClickUp task {pair.target_object_id}")
        return inserted

    def list_pairs(self, limit: int = 50) -> List[SyncedPair]:
        rows = self._run("list_pairs", lambda: self._db.fetchall("""
            SELECT source_object_id, source_object_type, target_object_id, created_at
            FROM synced_items
            ORDER BY created_at DESC
            LIMIT ?
        """, (limit,)))
        return [self._row_to_pair(r) for r in rows]

    def get_registry_report(self) -> Dict[str, Any]:
        """Pair counts per object type plus the most recent pairs"""
        rows = self._run("get_registry_report", lambda: self._db.fetchall("""
            SELECT source_object_type, COUNT(*)
            FROM synced_items
            GROUP BY source_object_type
        """))
        by_type = {r[0]: r[1] for r in rows}
        return {
            "total_pairs": sum(by_type.values()),
            "by_type": by_type,
            "recent": [
                {
                    "source_object_id": p.source_object_id,
                    "source_object_type": p.source_object_type,
                    "target_object_id": p.target_object_id,
                    "created_at": p.created_at.isoformat() if p.created_at else None,
                } for p in self.list_pairs(limit=10)
            ],
        }

    # ============================================
    # SYNC LOGS
    # ============================================

    def log_sync_operation(self, operation: str, source: str, target: str,
                           entity_type: str, entity_id: Optional[str], status: str, message: str = ""):
        """Log sync operations"""
        def write() -> None:
            self._db.execute("""
                INSERT INTO sync_logs(operation, source_system, target_system,
                                      entity_type, entity_id, status, message, created_at)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
            """, (operation, source, target, entity_type, entity_id, status, message,
                  datetime.now(timezone.utc).isoformat()))
            self._db.commit()

        self._run("log_sync_operation", write)

    def list_sync_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self._run("list_sync_logs", lambda: self._db.fetchall("""
            SELECT id, operation, source_system, target_system, entity_type,
                   entity_id, status, message, created_at
            FROM sync_logs
            ORDER BY id DESC
            LIMIT ?
        """, (limit,)))
        return [{
            "id": r[0], "operation": r[1], "source_system": r[2], "target_system": r[3],
            "entity_type": r[4], "entity_id": r[5], "status": r[6], "message": r[7],
            "created_at": r[8]
        } for r in rows]

    def close(self) -> None:
        with self._lock:
            self._db.close()
