"""
PostgreSQL connection management for the Escrow Engine.

Owns the asyncpg connection pool shared by the escrow store.

Dependencies:
    - asyncpg: For async PostgreSQL operations
    - python-dotenv: For environment variable management (via config)
"""

import asyncpg
import json
import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Custom exception for database-related errors."""
    pass


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode JSONB columns into Python objects."""
    await conn.set_type_codec(
        'jsonb',
        encoder=lambda value: json.dumps(value, default=str),
        decoder=json.loads,
        schema='pg_catalog'
    )


class Database:
    """
    Database manager using a PostgreSQL connection pool.

    Attributes:
        pool: Connection pool for database operations
        connection_string: PostgreSQL connection string
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        min_size: int = 2,
        max_size: int = 10
    ):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string. If not provided,
                             will be read from DATABASE_URL environment variable.
            min_size: Minimum pool size
            max_size: Maximum pool size

        Raises:
            DatabaseError: If no connection string is available
        """
        self.pool: Optional[asyncpg.Pool] = None
        self.connection_string = connection_string or os.getenv('DATABASE_URL')
        self.min_size = min_size
        self.max_size = max_size

        if not self.connection_string:
            raise DatabaseError(
                "Database connection string not provided. "
                "Set DATABASE_URL environment variable or pass connection_string parameter."
            )

    async def connect(self) -> None:
        """
        Establish connection pool to the database.

        Raises:
            DatabaseError: If connection fails
        """
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=60,
                init=_init_connection
            )
            logger.info("Database connection pool created successfully")
        except Exception as e:
            logger.error(f"Failed to create database connection pool: {e}")
            raise DatabaseError(f"Database connection failed: {e}")

    async def disconnect(self) -> None:
        """Close the database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database connection pool closed")

    def require_pool(self) -> asyncpg.Pool:
        """
        Return the pool or fail if connect() has not been called.

        Raises:
            DatabaseError: If not connected
        """
        if not self.pool:
            raise DatabaseError("Database not connected. Call connect() first.")
        return self.pool

    async def ping(self) -> bool:
        """
        Check that the database answers queries.

        Returns:
            True if a trivial query succeeds
        """
        try:
            async with self.require_pool().acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

