"""
Database connection module.

Provides:
 - connect_db(db_url): async connect and create tables if needed
 - disconnect_db(database): async disconnect
 - get_metadata(): return SQLAlchemy MetaData (for table definitions)
"""
import logging
from pathlib import Path
from typing import Tuple

import sqlalchemy
from sqlalchemy import create_engine
from databases import Database

logger = logging.getLogger("memoir-voice.db")

# Shared metadata used by db models
metadata = sqlalchemy.MetaData()


def _normalize_sqlite_url(url: str) -> Tuple[str, str]:
    """
    Convert a DB URL into:
      - async_url for databases.Database (sqlite -> sqlite+aiosqlite)
      - sync_url for SQLAlchemy create_engine (sqlite+aiosqlite -> sqlite)
    """
    # If using sqlite and not aiosqlite, convert
    if url.startswith("sqlite:///") and "+aiosqlite" not in url:
        return url.replace("sqlite:///", "sqlite+aiosqlite:///"), url
    # If already aiosqlite
    if url.startswith("sqlite+aiosqlite:///"):
        return url, url.replace("+aiosqlite", "")
    # For other DBs, assume URL is fine for both (may need adjustments per DB)
    return url, url


def _ensure_sqlite_dir(sync_url: str) -> None:
    if not sync_url.startswith("sqlite:///"):
        return
    path = sync_url[len("sqlite:///"):]
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


async def connect_db(db_url: str) -> Database:
    """
    Connect a Database instance and ensure tables are created.

    Usage: database = await connect_db(settings.DB_URL)
    """
    # table definitions register themselves on `metadata` at import time
    from memoir_voice.models import db_models  # noqa: F401

    async_url, sync_url = _normalize_sqlite_url(db_url)
    _ensure_sqlite_dir(sync_url)

    database = Database(async_url)
    logger.info("Connecting to database: %s", async_url)
    await database.connect()

    # Create tables (synchronously) using SQLAlchemy engine against sync_url
    engine = create_engine(sync_url, connect_args={"check_same_thread": False} if sync_url.startswith("sqlite") else {})
    try:
        metadata.create_all(engine)
        logger.info("Ensured database tables are created (sync_url=%s)", sync_url)
    finally:
        engine.dispose()

    return database


async def disconnect_db(database: Database) -> None:
    """Disconnect the Database instance if connected."""
    if database.is_connected:
        logger.info("Disconnecting database")
        await database.disconnect()


def get_metadata() -> sqlalchemy.MetaData:
    return metadata
