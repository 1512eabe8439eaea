"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
import sys
from gateway.database import engine
from gateway.models.base import Base
from gateway.models.api_key import ApiKey  # noqa: F401
from gateway.models.webhook import Webhook, WebhookDelivery  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        # Models are imported above to register them with Base
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main():
    """Main entry point. Pass --reset to drop existing tables first."""
    if "--reset" in sys.argv:
        await drop_all_tables()
    print("Creating gateway tables...")
    await create_all_tables()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main())
