#!/usr/bin/env python3
"""
Script to set up the PostgreSQL test database for running tests.
This creates a fresh test database and ensures it's ready for testing.

Point the test suite at it with:
  TEST_DATABASE_URL=postgresql+asyncpg://... pytest
"""

import asyncio
import os

import asyncpg
from sqlalchemy.ext.asyncio import create_async_engine

import slot_booking.models  # noqa: F401
from slot_booking.core.database import Base

TEST_DB_NAME = "test_slot_booking"

# Detect if we're running inside Docker container
if os.path.exists("/.dockerenv"):
    DB_HOST = "postgres"
else:
    DB_HOST = "localhost"
DB_PORT = 5432

DB_USER = os.getenv("DB_USER", "clinic_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "clinic_password")
MASTER_DB_NAME = os.getenv("MASTER_DB_NAME", "slot_booking")

TEST_DB_URL = (
    f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:"
    f"{DB_PORT}/{TEST_DB_NAME}"
)


async def _master_connection():
    return await asyncpg.connect(
        host=DB_HOST,
        port=DB_PORT,
        user=DB_USER,
        password=DB_PASSWORD,
        database=MASTER_DB_NAME,
    )


async def setup_test_database():
    """Set up the test database."""
    print(f"Setting up test database: {TEST_DB_NAME}")

    try:
        master_conn = await _master_connection()
        await master_conn.execute(f"DROP DATABASE IF EXISTS {TEST_DB_NAME}")
        await master_conn.execute(f"CREATE DATABASE {TEST_DB_NAME}")
        print(f"Created new database: {TEST_DB_NAME}")
        await master_conn.close()

        engine = create_async_engine(TEST_DB_URL, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

        print("Created all database tables")
        print(f"Database URL: {TEST_DB_URL}")

    except (OSError, asyncpg.PostgresError) as e:
        print(f"Error setting up test database: {e}")
        print("\nMake sure PostgreSQL is running and accessible with:")
        print(f"  - Host: {DB_HOST}")
        print(f"  - Port: {DB_PORT}")
        print(f"  - User: {DB_USER}")
        print(f"  - Database: {MASTER_DB_NAME}")
        return False

    return True


async def cleanup_test_database():
    """Clean up the test database."""
    print(f"Cleaning up test database: {TEST_DB_NAME}")

    try:
        master_conn = await _master_connection()
        await master_conn.execute(f"DROP DATABASE IF EXISTS {TEST_DB_NAME}")
        print(f"Dropped test database: {TEST_DB_NAME}")
        await master_conn.close()

    except (OSError, asyncpg.PostgresError) as e:
        print(f"Error cleaning up test database: {e}")
        return False

    return True


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "cleanup":
        asyncio.run(cleanup_test_database())
    else:
        asyncio.run(setup_test_database())
