"""PostgreSQL-backed key-value store for session state."""
import psycopg2
from psycopg2 import pool
from typing import Optional
import logging

from shelfscan.storage import KeyValueStore

logger = logging.getLogger(__name__)


class PostgresKeyValueStore(KeyValueStore):
    """PostgreSQL key-value table with connection pooling."""

    def __init__(
        self,
        connection_string: Optional[str] = None,
        min_conn: int = 1,
        max_conn: int = 5,
        connection_pool=None
    ):
        """
        Initialize database connection pool.

        Args:
            connection_string: PostgreSQL connection string
            min_conn: Minimum connections in pool
            max_conn: Maximum connections in pool
            connection_pool: Pre-built pool (skips creating one)
        """
        if connection_pool is None:
            connection_pool = psycopg2.pool.ThreadedConnectionPool(
                min_conn,
                max_conn,
                connection_string
            )
        self.connection_pool = connection_pool

        if self.connection_pool:
            logger.info("Key-value store connection pool created successfully")
        else:
            raise RuntimeError("Failed to create connection pool")

    def init_schema(self):
        """Create the key-value table if it doesn't exist."""
        conn = self.connection_pool.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS kv_store (
                        key VARCHAR(255) PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                """)
                conn.commit()
                logger.info("Key-value schema initialized successfully")
        finally:
            self.connection_pool.putconn(conn)

    def get(self, key: str) -> Optional[str]:
        """Get a value by key, or None if absent."""
        conn = self.connection_pool.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT value FROM kv_store WHERE key = %s", (key,))
                row = cur.fetchone()
                return row[0] if row else None
        finally:
            self.connection_pool.putconn(conn)

    def set(self, key: str, value: str) -> None:
        """
        Insert or replace a value.

        Args:
            key: Entry key
            value: Whole value; replaces any previous one
        """
        conn = self.connection_pool.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO kv_store (key, value, updated_at)
                    VALUES (%s, %s, CURRENT_TIMESTAMP)
                    ON CONFLICT (key) DO UPDATE SET
                        value = EXCLUDED.value,
                        updated_at = CURRENT_TIMESTAMP
                """, (key, value))
                conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Failed to store key {key}: {e}")
            raise
        finally:
            self.connection_pool.putconn(conn)

    def remove(self, key: str) -> None:
        """Delete a key; missing keys are ignored."""
        conn = self.connection_pool.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM kv_store WHERE key = %s", (key,))
                conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            logger.error(f"Failed to remove key {key}: {e}")
            raise
        finally:
            self.connection_pool.putconn(conn)

    def close(self):
        """Close all connections in the pool."""
        if self.connection_pool:
            self.connection_pool.closeall()
            logger.info("Key-value store connection pool closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
