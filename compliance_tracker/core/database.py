# compliance_tracker/core/database.py
"""Prisma client shared by the API process."""
import logging

from prisma import Prisma

logger = logging.getLogger(__name__)

# Connected once in the app lifespan
prisma = Prisma()


async def connect_db() -> None:
    await prisma.connect()
    logger.info("Database connected")


async def disconnect_db() -> None:
    if prisma.is_connected():
        await prisma.disconnect()
    logger.info("Database disconnected")


async def get_db() -> Prisma:
    """Database dependency for the QuickBooks repositories."""
    return prisma
