from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from datetime import datetime
from typing import Optional, Dict, Any, List, Mapping, Union
import logging

from core.change_diff import ChangeSet, build_changes, merge_defined
from core.store import store_guard
from models import AuditLogCreate, AuditMetadata

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "audit_logs"


class AuditLogService:
    """Service for immutable audit logging (append only)"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[AUDIT_COLLECTION]

    @staticmethod
    def merge_defined(base: Optional[Mapping[str, Any]], patch: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        return merge_defined(base, patch)

    @staticmethod
    def build_changes(before: Optional[Mapping[str, Any]], after: Optional[Mapping[str, Any]]) -> ChangeSet:
        return build_changes(before, after)

    @staticmethod
    def generate_operation_id() -> str:
        """Fresh time-ordered token grouping the entries of one user action"""
        return str(ObjectId())

    def build_entry(
        self,
        *,
        operation_id: str,
        entity_type: str,
        entity_id: str,
        entity_ref: str,
        actor: Dict[str, Any],
        action: str,
        module: str,
        system_reason: str,
        changes: ChangeSet,
        metadata: Optional[AuditMetadata] = None,
        user_reason: Optional[str] = None
    ) -> AuditLogCreate:
        """Assemble an audit entry for a user-initiated change"""
        return AuditLogCreate(
            operation_id=operation_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_ref=entity_ref,
            actor_type="user",
            actor_id=str(actor["user_id"]),
            actor_name=actor.get("username") or actor.get("name") or "",
            action=action,
            module=module,
            system_reason=system_reason,
            user_reason=user_reason,
            changes=changes.to_dict(),
            metadata=metadata or AuditMetadata(),
            created_at=datetime.utcnow()
        )

    async def log(self, entry: Union[AuditLogCreate, Dict[str, Any]], session=None) -> str:
        """
        Persist one audit entry verbatim (INSERT ONLY).

        Failures propagate so the enclosing transaction rolls back.
        """
        if isinstance(entry, AuditLogCreate):
            document = entry.model_dump()
        else:
            document = dict(entry)

        async with store_guard("audit_logs.insert"):
            result = await self.collection.insert_one(document, session=session)

        logger.info(
            f"[AUDIT] {document.get('action')} on {document.get('entity_type')}:"
            f"{document.get('entity_id')} by {document.get('actor_type')}:{document.get('actor_id')}"
        )
        return str(result.inserted_id)

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        operation_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Retrieve audit logs (READ ONLY)"""
        query: Dict[str, Any] = {}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id
        if operation_id:
            query["operation_id"] = operation_id
        if actor_id:
            query["actor_id"] = actor_id

        async with store_guard("audit_logs.find"):
            cursor = self.collection.find(query).sort("created_at", -1).limit(limit)
            logs = await cursor.to_list(length=limit)

        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs

    async def create_indexes(self):
        await self.collection.create_index(
            [("entity_type", 1), ("entity_id", 1), ("created_at", -1)],
            name="idx_audit_entity"
        )
        await self.collection.create_index([("operation_id", 1)], name="idx_audit_operation")
        await self.collection.create_index([("actor_id", 1), ("created_at", -1)], name="idx_audit_actor")
        logger.info("[AUDIT] Created audit log indexes")
