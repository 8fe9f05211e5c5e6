from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
from typing import Optional, List
import logging

logger = logging.getLogger(__name__)

WILDCARD_PERMISSION = "*"


class PermissionChecker:
    """
    Permission enforcement for record workflows.

    RULES:
    1. User must be authenticated
    2. User must have active_status = TRUE
    3. Permissions come from the user's role as "<module>:<action>" strings
    4. A role holding "*" may perform every action
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    @staticmethod
    def has_access(permissions: Optional[List[str]], key: str) -> bool:
        if not permissions:
            return False
        return key in permissions or WILDCARD_PERMISSION in permissions

    def require(self, user: dict, key: str):
        """Raise 403 unless the user's role grants `key`"""
        if not self.has_access(user.get("permissions"), key):
            logger.info(f"[AUTHZ] Denied {key} for user:{user.get('user_id')}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action."
            )
        return True

    async def get_authenticated_user(self, current_user: dict):
        """Get and validate authenticated user, with role permissions attached"""
        try:
            user_id = ObjectId(current_user.get("user_id"))
        except (InvalidId, TypeError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials"
            )

        user = await self.db.users.find_one({"_id": user_id})

        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found"
            )

        # Check active status
        if not user.get("active_status", False):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )

        role = None
        if user.get("role_id"):
            role = await self.db.roles.find_one({"_id": ObjectId(user["role_id"])})

        # Convert _id to user_id for consistency
        user["user_id"] = str(user.pop("_id"))
        user["permissions"] = role.get("permissions", []) if role else []

        return user
