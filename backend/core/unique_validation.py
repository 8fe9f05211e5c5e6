"""
UNIQUENESS VALIDATION

Checks that field values are not already taken by another document in the
same collection. Used for generated codes and master-data names.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from typing import Optional, Dict, Any, List
import logging

from .store import store_guard

logger = logging.getLogger(__name__)


class UniqueValidationService:
    """
    Service for rejecting duplicate values before a write.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def validate(
        self,
        collection: str,
        fields: Dict[str, Any],
        exclude_id: Optional[str] = None,
        session=None
    ) -> Optional[Dict[str, List[str]]]:
        """
        Check each field/value pair for an existing document.

        Args:
            collection: Collection to search
            fields: Mapping of field name to candidate value; None values are skipped
            exclude_id: Optional document id to ignore (for updates)
            session: Database session for transactions

        Returns:
            None when every value is free, otherwise a dict of field -> messages
        """
        errors: Dict[str, List[str]] = {}

        for field, value in fields.items():
            if value is None:
                continue

            query: Dict[str, Any] = {field: value}
            if exclude_id:
                query["_id"] = {"$ne": ObjectId(exclude_id)}

            async with store_guard(f"{collection}.unique_check"):
                existing = await self.db[collection].find_one(query, session=session)

            if existing:
                errors[field] = [f"The {field} has already been taken."]

        if errors:
            logger.debug(f"[UNIQUE] Duplicate values in {collection}: {list(errors)}")
            return errors

        return None
