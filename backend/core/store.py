"""
STORE FAILURE HANDLING

Connection-class failures from MongoDB surface as StoreUnavailableError.
Every other driver error propagates unchanged so the enclosing transaction
can abort on it.
"""

from contextlib import asynccontextmanager
from pymongo.errors import ConnectionFailure
import logging

logger = logging.getLogger(__name__)


class StoreUnavailableError(Exception):
    """Raised when the underlying document store cannot be reached"""
    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store unavailable during {operation}: {reason}")


@asynccontextmanager
async def store_guard(operation: str):
    """
    Translate driver connection failures raised inside the block.

    Usage:
        async with store_guard("counters.increment"):
            await db.counters.find_one_and_update(...)
    """
    try:
        yield
    except ConnectionFailure as e:
        logger.error(f"[STORE] {operation} failed: {str(e)}")
        raise StoreUnavailableError(operation, str(e)) from e
