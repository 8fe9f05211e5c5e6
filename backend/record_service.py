"""
RECORD WORKFLOWS

Every write follows the same sequence inside ONE MongoDB transaction:
1. Authorize the actor (<module>:<action>)
2. Normalize the payload (trim strings, ensure schedule item uuids)
3. Reserve and format the record code (creates only)
4. Validate uniqueness
5. Write
6. Diff and append the audit entry

The notification is published after commit and never affects the result.
A failed audit insert aborts the whole write.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple
import uuid
import logging

from audit_service import AuditLogService
from core.change_diff import ChangeSet, merge_defined
from core.code_generator import CodeGeneratorService
from core.financial_precision import safe_subtract, to_decimal, to_float
from core.unique_validation import UniqueValidationService
from models import (
    AuditMetadata, AuditLogCreate, RecordInput, WithdrawalInput,
    ReceiptInput, ScheduleItemInput, CouponsInput,
    CreateResult, UpdateResult, ExtendResult
)
from notification_service import NotificationService
from permissions import PermissionChecker
from record_modules import (
    ModuleDefinition, BusinessRuleError,
    CREATE, DRAFT, UPDATE, UPDATE_DRAFT, ARCHIVE, RESTORE, WITHDRAW, EXTEND,
    RECEIVE_INTEREST, RECEIVE_CASHBACK, DELETE_INTEREST, DELETE_CASHBACK, CREATE_COUPON,
    RECEIVED_COUPONS, SCHEDULE_WORKFLOWS
)

logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "logs:new"

ACTION_PERMISSIONS = {
    CREATE: "create",
    DRAFT: "create",
    UPDATE: "update",
    UPDATE_DRAFT: "update",
    ARCHIVE: "archive",
    RESTORE: "restore",
    WITHDRAW: "withdraw",
    EXTEND: "renew",
    RECEIVE_INTEREST: "update",
    RECEIVE_CASHBACK: "update",
    DELETE_INTEREST: "update",
    DELETE_CASHBACK: "update",
    CREATE_COUPON: "update",
}

# Item keys written by a schedule receipt and removed when it is deleted
RECEIPT_FIELDS = (
    "received_date",
    "received_amount",
    "bank_id",
    "bank_account_uuid",
    "additional_bank_id",
    "additional_bank_account_uuid",
    "received_additional_payment_date",
    "received_additional_payment_amount",
    "remaining_amount",
    "received_by_id",
    "received_at",
)


class RecordWorkflowError(Exception):
    """Raised when a workflow is rejected; carries the HTTP status to return"""
    def __init__(self, status_code: int, message: str, errors: Optional[Dict[str, List[str]]] = None):
        self.status_code = status_code
        self.message = message
        self.errors = errors
        super().__init__(message)


@dataclass
class RequestContext:
    """Authenticated actor plus the request metadata recorded in audit entries"""
    actor: Dict[str, Any]
    metadata: AuditMetadata = field(default_factory=AuditMetadata)

    @property
    def actor_id(self) -> str:
        return str(self.actor["user_id"])


def trim_all_strings(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        return {key: trim_all_strings(item) for key, item in value.items()}
    if isinstance(value, list):
        return [trim_all_strings(item) for item in value]
    return value


def ensure_uuids(items: Optional[List[Dict[str, Any]]]) -> Optional[List[Dict[str, Any]]]:
    if not items:
        return items
    return [{**item, "uuid": item.get("uuid") or str(uuid.uuid4())} for item in items]


def get_path(document: Dict[str, Any], path: Optional[str]) -> Any:
    if not path:
        return None
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def parse_object_id(record_id: str) -> ObjectId:
    try:
        return ObjectId(record_id)
    except (InvalidId, TypeError):
        raise RecordWorkflowError(404, "Resource not found")


class RecordWorkflowService:
    """
    Create / draft / update / archive / withdraw / extend workflows shared by
    every record module, plus schedule receipts and bond coupons.
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        permission_checker: PermissionChecker,
        code_generator: CodeGeneratorService,
        audit_service: AuditLogService,
        unique_validation: UniqueValidationService,
        notification_service: NotificationService
    ):
        self.client = client
        self.db = db
        self.permission_checker = permission_checker
        self.code_generator = code_generator
        self.audit_service = audit_service
        self.unique_validation = unique_validation
        self.notification_service = notification_service

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _in_transaction(self, callback):
        async with await self.client.start_session() as session:
            return await session.with_transaction(callback)

    def _authorize(self, definition: ModuleDefinition, ctx: RequestContext, action: str):
        if not definition.supports(action):
            raise RecordWorkflowError(405, f"{definition.name} does not support {action}")
        permission = definition.permission(ACTION_PERMISSIONS[action])
        if not self.permission_checker.has_access(ctx.actor.get("permissions"), permission):
            raise RecordWorkflowError(403, "You do not have permission to perform this action.")

    def _prepare(self, definition: ModuleDefinition, payload: RecordInput) -> Tuple[Dict[str, Any], Optional[str]]:
        data = payload.model_dump(exclude_unset=True)
        user_reason = data.pop("update_reason", None)
        data = trim_all_strings(data)
        for schedule_field in definition.schedule_fields:
            if schedule_field in data:
                data[schedule_field] = ensure_uuids(data[schedule_field])
        for normalizer in definition.normalizers:
            normalizer(data)
        return data, user_reason

    def _check(self, definition: ModuleDefinition, document: Dict[str, Any]):
        for check in definition.checks:
            try:
                check(document)
            except BusinessRuleError as e:
                raise RecordWorkflowError(400, str(e))

    async def _validate_unique(
        self,
        definition: ModuleDefinition,
        data: Dict[str, Any],
        session,
        exclude_id: Optional[str] = None
    ):
        fields = {name: data.get(name) for name in definition.unique_fields if name in data}
        if not fields:
            return
        errors = await self.unique_validation.validate(
            definition.collection, fields, exclude_id=exclude_id, session=session
        )
        if errors:
            raise RecordWorkflowError(422, "Validation failed due to duplicate values.", errors)

    async def _find(self, definition: ModuleDefinition, object_id: ObjectId, session) -> Dict[str, Any]:
        existing = await self.db[definition.collection].find_one({"_id": object_id}, session=session)
        if not existing:
            raise RecordWorkflowError(404, "Resource not found")
        return existing

    def _entry(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        *,
        operation_id: str,
        entity_id: Any,
        entity_ref: str,
        action: str,
        system_reason: str,
        changes: ChangeSet,
        user_reason: Optional[str] = None
    ) -> AuditLogCreate:
        return self.audit_service.build_entry(
            operation_id=operation_id,
            entity_type=definition.collection,
            entity_id=str(entity_id),
            entity_ref=entity_ref,
            actor=ctx.actor,
            action=action,
            module=definition.name,
            system_reason=system_reason,
            changes=changes,
            metadata=ctx.metadata,
            user_reason=user_reason
        )

    def _notify(self, definition: ModuleDefinition, ctx: RequestContext, entity_id: str, entry: AuditLogCreate):
        created_at = datetime.utcnow().isoformat()

        # Built inside the delivery task; a serialization failure is only logged
        def payload():
            return {
                "type": definition.name,
                "actor_id": ctx.actor_id,
                "recipient_id": ctx.actor_id,
                "is_read": False,
                "created_at": created_at,
                "entities": {definition.name: entity_id},
                "data": entry.model_dump(mode="json"),
            }

        self.notification_service.publish(f"notifications:{ctx.actor_id}", NOTIFICATION_EVENT, payload)

    async def _insert_new(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        data: Dict[str, Any],
        status: str,
        session,
        extra: Optional[Dict[str, Any]] = None
    ) -> Tuple[str, Dict[str, Any]]:
        """Reserve a code and insert; returns (inserted_id, inserted document)"""
        await self._validate_unique(definition, data, session)

        reference_date = get_path(data, definition.date_field) or datetime.utcnow()
        try:
            code, _ = await self.code_generator.reserve(
                definition.name,
                reference_date,
                session=session,
                collection=definition.collection,
                field=definition.code_field
            )
        except ValueError:
            raise RecordWorkflowError(
                422,
                "Validation failed due to an invalid date.",
                {definition.date_field: [f"The {definition.date_field} must be an ISO-8601 date."]}
            )

        document = {definition.code_field: code, **data, **(extra or {})}
        if definition.has_status:
            document["status"] = status
        document.update({
            "is_archived": False,
            "created_at": datetime.utcnow(),
            "created_by_id": ctx.actor_id,
        })

        snapshot = dict(document)
        result = await self.db[definition.collection].insert_one(document, session=session)
        return str(result.inserted_id), snapshot

    # =========================================================================
    # CREATE / DRAFT
    # =========================================================================

    async def create(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        payload: RecordInput,
        draft: bool = False
    ) -> CreateResult:
        action = DRAFT if draft else CREATE
        self._authorize(definition, ctx, action)

        data, _ = self._prepare(definition, payload)
        if not draft:
            self._check(definition, data)

        async def callback(session):
            inserted_id, document = await self._insert_new(
                definition, ctx, data, "draft" if draft else "active", session
            )
            entry = self._entry(
                definition, ctx,
                operation_id=self.audit_service.generate_operation_id(),
                entity_id=inserted_id,
                entity_ref=definition.entity_ref(document),
                action=action,
                system_reason="insert data",
                changes=self.audit_service.build_changes({}, document)
            )
            await self.audit_service.log(entry, session=session)
            return inserted_id, document[definition.code_field], entry

        inserted_id, code, entry = await self._in_transaction(callback)
        logger.info(f"[RECORD] {action} {definition.name}:{inserted_id} ({code})")

        self._notify(definition, ctx, inserted_id, entry)
        return CreateResult(inserted_id=inserted_id, code=code)

    # =========================================================================
    # UPDATE / UPDATE DRAFT
    # =========================================================================

    async def update(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        payload: RecordInput,
        draft: bool = False
    ) -> UpdateResult:
        action = UPDATE_DRAFT if draft else UPDATE
        self._authorize(definition, ctx, action)

        object_id = parse_object_id(record_id)
        data, user_reason = self._prepare(definition, payload)

        async def callback(session):
            existing = await self._find(definition, object_id, session)
            current_status = existing.get("status")

            if draft and current_status != "draft":
                raise RecordWorkflowError(400, "Only draft records can be updated as draft")
            if current_status in definition.locked_statuses:
                raise RecordWorkflowError(400, f"Cannot update this form because already {current_status}")

            merged = merge_defined(existing, data)
            if not draft:
                self._check(definition, merged)

            # Reject update when no fields have changed
            changes = self.audit_service.build_changes(existing, merged)
            if changes.is_empty:
                raise RecordWorkflowError(400, "No changes detected. Please modify at least one field before saving.")

            await self._validate_unique(definition, data, session, exclude_id=record_id)

            # $set replaces whole subdocuments, so write the merged values
            update_fields = {
                **{key: merged[key] for key in data},
                "updated_at": datetime.utcnow(),
                "updated_by_id": ctx.actor_id,
            }
            result = await self.db[definition.collection].update_one(
                {"_id": object_id},
                {"$set": update_fields},
                session=session
            )

            entry = self._entry(
                definition, ctx,
                operation_id=self.audit_service.generate_operation_id(),
                entity_id=record_id,
                entity_ref=definition.entity_ref(existing),
                action="update",
                system_reason="update data",
                changes=changes,
                user_reason=user_reason
            )
            await self.audit_service.log(entry, session=session)
            return result, entry

        result, entry = await self._in_transaction(callback)
        logger.info(f"[RECORD] {action} {definition.name}:{record_id}")

        self._notify(definition, ctx, record_id, entry)
        return UpdateResult(matched_count=result.matched_count, modified_count=result.modified_count)

    # =========================================================================
    # ARCHIVE / RESTORE
    # =========================================================================

    async def set_archived(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        archived: bool,
        reason: Optional[str] = None
    ) -> UpdateResult:
        action = ARCHIVE if archived else RESTORE
        self._authorize(definition, ctx, action)
        object_id = parse_object_id(record_id)

        async def callback(session):
            existing = await self._find(definition, object_id, session)
            if bool(existing.get("is_archived")) == archived:
                state = "archived" if archived else "not archived"
                raise RecordWorkflowError(400, f"Record is already {state}")

            update_fields = {
                "is_archived": archived,
                "archived_at": datetime.utcnow() if archived else None,
                "archived_by_id": ctx.actor_id if archived else None,
            }
            changes = self.audit_service.build_changes(existing, merge_defined(existing, update_fields))

            result = await self.db[definition.collection].update_one(
                {"_id": object_id},
                {"$set": update_fields},
                session=session
            )

            entry = self._entry(
                definition, ctx,
                operation_id=self.audit_service.generate_operation_id(),
                entity_id=record_id,
                entity_ref=definition.entity_ref(existing),
                action=action,
                system_reason="update data",
                changes=changes,
                user_reason=reason
            )
            await self.audit_service.log(entry, session=session)
            return result, entry

        result, entry = await self._in_transaction(callback)
        logger.info(f"[RECORD] {action} {definition.name}:{record_id}")

        self._notify(definition, ctx, record_id, entry)
        return UpdateResult(matched_count=result.matched_count, modified_count=result.modified_count)

    # =========================================================================
    # WITHDRAW
    # =========================================================================

    async def withdraw(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        payload: WithdrawalInput
    ) -> UpdateResult:
        self._authorize(definition, ctx, WITHDRAW)
        object_id = parse_object_id(record_id)
        data = trim_all_strings(payload.model_dump())

        remaining_amount = to_float(safe_subtract(data["amount"], data["received_amount"]))
        status = "withdrawn" if remaining_amount <= 0 else "active"

        async def callback(session):
            existing = await self._find(definition, object_id, session)
            if existing.get("status") == "renewed":
                raise RecordWorkflowError(400, "Cannot withdraw this form because already renewed")
            if existing.get("status") == "withdrawn":
                raise RecordWorkflowError(400, "Cannot withdraw this form because already withdrawn")

            update_fields = {
                "withdrawal": {
                    **data,
                    "remaining_amount": remaining_amount,
                    "created_by_id": ctx.actor_id,
                    "created_at": datetime.utcnow(),
                },
                "status": status,
            }
            result = await self.db[definition.collection].update_one(
                {"_id": object_id},
                {"$set": update_fields},
                session=session
            )

            updated = await self._find(definition, object_id, session)
            changes = self.audit_service.build_changes(existing, updated)
            if changes.is_empty:
                raise RecordWorkflowError(400, "No changes detected. Please modify at least one field before saving.")

            entry = self._entry(
                definition, ctx,
                operation_id=self.audit_service.generate_operation_id(),
                entity_id=record_id,
                entity_ref=definition.entity_ref(existing),
                action=WITHDRAW,
                system_reason="update data",
                changes=changes
            )
            await self.audit_service.log(entry, session=session)
            return result, entry

        result, entry = await self._in_transaction(callback)
        logger.info(f"[RECORD] withdraw {definition.name}:{record_id} -> {status}")

        self._notify(definition, ctx, record_id, entry)
        return UpdateResult(matched_count=result.matched_count, modified_count=result.modified_count)

    # =========================================================================
    # EXTEND (RENEW)
    # =========================================================================

    async def extend(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        payload: RecordInput
    ) -> ExtendResult:
        """
        Close the source record as renewed and open its successor.

        Both audit entries share one operation_id.
        """
        self._authorize(definition, ctx, EXTEND)
        object_id = parse_object_id(record_id)

        data, _ = self._prepare(definition, payload)
        self._check(definition, data)

        async def callback(session):
            existing = await self._find(definition, object_id, session)
            if existing.get("status") == "renewed":
                raise RecordWorkflowError(400, "Cannot extend this form because already renewed")
            if existing.get("status") != "active":
                raise RecordWorkflowError(400, "Only active records can be extended")

            operation_id = self.audit_service.generate_operation_id()

            renewed_fields = {
                "status": "renewed",
                "updated_at": datetime.utcnow(),
                "updated_by_id": ctx.actor_id,
            }
            await self.db[definition.collection].update_one(
                {"_id": object_id},
                {"$set": renewed_fields},
                session=session
            )
            renew_entry = self._entry(
                definition, ctx,
                operation_id=operation_id,
                entity_id=record_id,
                entity_ref=definition.entity_ref(existing),
                action="renew",
                system_reason="update data",
                changes=self.audit_service.build_changes(
                    {"status": existing.get("status")}, {"status": "renewed"}
                )
            )
            await self.audit_service.log(renew_entry, session=session)

            inserted_id, document = await self._insert_new(
                definition, ctx, data, "active", session, extra={"renewed_id": record_id}
            )
            extend_entry = self._entry(
                definition, ctx,
                operation_id=operation_id,
                entity_id=inserted_id,
                entity_ref=definition.entity_ref(document),
                action=EXTEND,
                system_reason="insert data",
                changes=self.audit_service.build_changes({}, document)
            )
            await self.audit_service.log(extend_entry, session=session)
            return inserted_id, document[definition.code_field], extend_entry

        inserted_id, code, entry = await self._in_transaction(callback)
        logger.info(f"[RECORD] extend {definition.name}:{record_id} -> {inserted_id} ({code})")

        self._notify(definition, ctx, inserted_id, entry)
        return ExtendResult(inserted_id=inserted_id, code=code, renewed_id=record_id)

    # =========================================================================
    # SCHEDULE RECEIPTS / COUPONS
    # =========================================================================

    async def _write_schedule(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        action: str,
        schedule_field: str,
        build_items,
        user_reason: Optional[str] = None
    ) -> UpdateResult:
        """Replace one schedule list with build_items(existing, items) and audit it"""
        object_id = parse_object_id(record_id)

        async def callback(session):
            existing = await self._find(definition, object_id, session)
            current_status = existing.get("status")
            if current_status in definition.locked_statuses:
                raise RecordWorkflowError(400, f"Cannot update this form because already {current_status}")

            items = build_items(existing, list(existing.get(schedule_field) or []))
            merged = merge_defined(existing, {schedule_field: items})
            changes = self.audit_service.build_changes(existing, merged)
            if changes.is_empty:
                raise RecordWorkflowError(400, "No changes detected. Please modify at least one field before saving.")

            result = await self.db[definition.collection].update_one(
                {"_id": object_id},
                {"$set": {
                    schedule_field: items,
                    "updated_at": datetime.utcnow(),
                    "updated_by_id": ctx.actor_id,
                }},
                session=session
            )

            entry = self._entry(
                definition, ctx,
                operation_id=self.audit_service.generate_operation_id(),
                entity_id=record_id,
                entity_ref=definition.entity_ref(existing),
                action=action,
                system_reason="update data",
                changes=changes,
                user_reason=user_reason
            )
            await self.audit_service.log(entry, session=session)
            return result, entry

        result, entry = await self._in_transaction(callback)
        logger.info(f"[RECORD] {action} {definition.name}:{record_id}")

        self._notify(definition, ctx, record_id, entry)
        return UpdateResult(matched_count=result.matched_count, modified_count=result.modified_count)

    @staticmethod
    def _item_index(items: List[Dict[str, Any]], item_uuid: str) -> int:
        for index, item in enumerate(items):
            if item.get("uuid") == item_uuid:
                return index
        raise RecordWorkflowError(404, "Schedule item not found")

    async def receive_schedule_item(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        workflow: str,
        payload: ReceiptInput
    ) -> UpdateResult:
        """
        Record the payment received for one interest or cashback item.

        remaining_amount = amount - received_amount - received_additional_payment_amount
        """
        self._authorize(definition, ctx, workflow)
        data = trim_all_strings(payload.model_dump(exclude_unset=True))
        item_uuid = data.pop("uuid")
        user_reason = data.pop("update_reason", None)

        def build_items(existing, items):
            index = self._item_index(items, item_uuid)
            item = items[index]
            remaining = (
                to_decimal(item.get("amount"))
                - to_decimal(data.get("received_amount"))
                - to_decimal(data.get("received_additional_payment_amount"))
            )
            items[index] = {
                **item,
                **data,
                "remaining_amount": to_float(remaining),
                "received_by_id": ctx.actor_id,
                "received_at": datetime.utcnow(),
            }
            return items

        return await self._write_schedule(
            definition, ctx, record_id, workflow, SCHEDULE_WORKFLOWS[workflow], build_items, user_reason
        )

    async def delete_schedule_receipt(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        workflow: str,
        payload: ScheduleItemInput
    ) -> UpdateResult:
        """Clear a recorded receipt; the schedule item itself stays"""
        self._authorize(definition, ctx, workflow)
        item_uuid = payload.uuid.strip()

        def build_items(existing, items):
            index = self._item_index(items, item_uuid)
            item = items[index]
            if not any(key in item for key in RECEIPT_FIELDS):
                raise RecordWorkflowError(400, "Schedule item has no recorded receipt")
            items[index] = {key: value for key, value in item.items() if key not in RECEIPT_FIELDS}
            return items

        return await self._write_schedule(
            definition, ctx, record_id, workflow, SCHEDULE_WORKFLOWS[workflow], build_items, payload.reason
        )

    async def create_coupons(
        self,
        definition: ModuleDefinition,
        ctx: RequestContext,
        record_id: str,
        payload: CouponsInput
    ) -> UpdateResult:
        """Replace the received coupons of a bond"""
        self._authorize(definition, ctx, CREATE_COUPON)
        data = trim_all_strings(payload.model_dump(exclude_unset=True))
        user_reason = data.pop("update_reason", None)

        coupons = []
        for coupon in ensure_uuids(data[RECEIVED_COUPONS]) or []:
            if coupon.get("received_amount") is not None:
                coupon["remaining_amount"] = to_float(safe_subtract(coupon.get("amount"), coupon["received_amount"]))
            coupons.append(coupon)

        return await self._write_schedule(
            definition, ctx, record_id, CREATE_COUPON, RECEIVED_COUPONS,
            lambda existing, items: coupons, user_reason
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def retrieve(self, definition: ModuleDefinition, record_id: str) -> Dict[str, Any]:
        existing = await self.db[definition.collection].find_one({"_id": parse_object_id(record_id)})
        if not existing:
            raise RecordWorkflowError(404, "Resource not found")
        return existing

    async def retrieve_many(
        self,
        definition: ModuleDefinition,
        is_archived: Optional[bool] = False,
        status: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if is_archived is not None:
            query["is_archived"] = is_archived
        if status and definition.has_status:
            query["status"] = status

        cursor = self.db[definition.collection].find(query).sort("created_at", -1).limit(limit)
        return await cursor.to_list(length=limit)

    async def retrieve_schedule(
        self,
        definition: ModuleDefinition,
        schedule_field: str,
        is_archived: Optional[bool] = False,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Schedule items across records, each tagged with its record id and code"""
        query: Dict[str, Any] = {schedule_field: {"$ne": []}}
        if is_archived is not None:
            query["is_archived"] = is_archived

        records = await self.db[definition.collection].find(query).sort("created_at", -1).to_list(length=None)
        rows = []
        for record in records:
            for item in record.get(schedule_field) or []:
                rows.append({
                    **item,
                    "record_id": str(record["_id"]),
                    definition.code_field: record.get(definition.code_field),
                    "owner_id": record.get("owner_id"),
                })
        return rows[:limit]
