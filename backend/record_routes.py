"""
RECORD API ROUTES

Mounts the workflows each record module enables:
- POST   /api/<module>                  create
- POST   /api/<module>/draft            draft
- GET    /api/<module>                  list
- GET    /api/<module>/{id}             detail
- PATCH  /api/<module>/{id}             update
- PATCH  /api/<module>/{id}/draft       update draft
- POST   /api/<module>/{id}/archive     archive
- POST   /api/<module>/{id}/restore     restore
- POST   /api/<module>/{id}/withdraw    withdraw
- POST   /api/<module>/{id}/extend      extend (renew)
- GET    /api/<module>/<listing>        schedule items across records
- POST   /api/<module>/{id}/receive-*   record an interest or cashback receipt
- POST   /api/<module>/{id}/delete-*    clear an interest or cashback receipt
- POST   /api/<module>/{id}/coupons     replace received coupons

Plus counters and audit logs.
"""

from fastapi import APIRouter, HTTPException, Request, status, Depends, Query
from bson import ObjectId, Decimal128
from contextlib import contextmanager
from datetime import datetime, date
from typing import Optional, Dict, Any, List
import logging

from auth import get_current_user
from core.code_generator import NotFoundError, ConcurrencyExhaustedError
from core.store import StoreUnavailableError
from models import (
    AuditMetadata, ReasonInput, WithdrawalInput, ReceiptInput, ScheduleItemInput, CouponsInput,
    CreateResult, UpdateResult, ExtendResult, CounterPreview
)
from record_modules import (
    MODULES, ModuleDefinition,
    CREATE, DRAFT, UPDATE, UPDATE_DRAFT, ARCHIVE, RESTORE, WITHDRAW, EXTEND,
    RECEIVE_INTEREST, RECEIVE_CASHBACK, DELETE_INTEREST, DELETE_CASHBACK, CREATE_COUPON
)
from record_service import RecordWorkflowError, RequestContext
from services import Services, get_services

logger = logging.getLogger(__name__)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles Decimal128, ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        result[key] = _serialize_value(value)
    return result


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return float(value.to_decimal())
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


@contextmanager
def workflow_errors():
    """Translate workflow and store failures into HTTP errors"""
    try:
        yield
    except RecordWorkflowError as e:
        detail = {"message": e.message, "errors": e.errors} if e.errors else e.message
        raise HTTPException(status_code=e.status_code, detail=detail)
    except NotFoundError as e:
        logger.error(f"[RECORD] Counter not seeded: {e.name}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Counter '{e.name}' has not been seeded"
        )
    except ConcurrencyExhaustedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


def request_metadata(request: Request) -> AuditMetadata:
    headers = request.headers
    mobile = headers.get("sec-ch-ua-mobile")
    return AuditMetadata(
        ip=request.client.host if request.client else None,
        device=("mobile" if mobile == "?1" else "desktop") if mobile else None,
        browser=headers.get("sec-ch-ua"),
        os=(headers.get("sec-ch-ua-platform") or "").strip('"') or None,
        user_agent=headers.get("user-agent")
    )


async def get_request_context(
    request: Request,
    current_user: dict = Depends(get_current_user),
    services: Services = Depends(get_services)
) -> RequestContext:
    user = await services.permission_checker.get_authenticated_user(current_user)
    return RequestContext(actor=user, metadata=request_metadata(request))


# =============================================================================
# RECORD MODULES
# =============================================================================

def build_module_router(definition: ModuleDefinition) -> APIRouter:
    router = APIRouter(prefix=f"/{definition.path}", tags=[definition.name])
    InputModel = definition.input_model

    @router.get("")
    async def list_records(
        is_archived: Optional[bool] = False,
        record_status: Optional[str] = Query(default=None, alias="status"),
        limit: int = Query(default=100, ge=1, le=500),
        ctx: RequestContext = Depends(get_request_context),
        services: Services = Depends(get_services)
    ):
        records = await services.workflows.retrieve_many(definition, is_archived, record_status, limit)
        return {"data": [serialize_doc(record) for record in records]}

    # Registered before /{record_id} so the segment is not read as an id
    for segment, schedule_field in definition.listings:
        _add_listing_route(router, definition, segment, schedule_field)

    @router.get("/{record_id}")
    async def retrieve_record(
        record_id: str,
        ctx: RequestContext = Depends(get_request_context),
        services: Services = Depends(get_services)
    ):
        with workflow_errors():
            record = await services.workflows.retrieve(definition, record_id)
        return serialize_doc(record)

    if definition.supports(CREATE):
        @router.post("", response_model=CreateResult, status_code=status.HTTP_201_CREATED)
        async def create_record(
            payload: InputModel,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            with workflow_errors():
                return await services.workflows.create(definition, ctx, payload)

    if definition.supports(DRAFT):
        @router.post("/draft", response_model=CreateResult, status_code=status.HTTP_201_CREATED)
        async def draft_record(
            payload: InputModel,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            with workflow_errors():
                return await services.workflows.create(definition, ctx, payload, draft=True)

    if definition.supports(UPDATE):
        @router.patch("/{record_id}", response_model=UpdateResult)
        async def update_record(
            record_id: str,
            payload: InputModel,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            with workflow_errors():
                return await services.workflows.update(definition, ctx, record_id, payload)

    if definition.supports(UPDATE_DRAFT):
        @router.patch("/{record_id}/draft", response_model=UpdateResult)
        async def update_draft_record(
            record_id: str,
            payload: InputModel,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            with workflow_errors():
                return await services.workflows.update(definition, ctx, record_id, payload, draft=True)

    if definition.supports(ARCHIVE):
        @router.post("/{record_id}/archive", response_model=UpdateResult)
        async def archive_record(
            record_id: str,
            payload: Optional[ReasonInput] = None,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            reason = payload.reason if payload else None
            with workflow_errors():
                return await services.workflows.set_archived(definition, ctx, record_id, True, reason)

    if definition.supports(RESTORE):
        @router.post("/{record_id}/restore", response_model=UpdateResult)
        async def restore_record(
            record_id: str,
            payload: Optional[ReasonInput] = None,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            reason = payload.reason if payload else None
            with workflow_errors():
                return await services.workflows.set_archived(definition, ctx, record_id, False, reason)

    if definition.supports(WITHDRAW):
        @router.post("/{record_id}/withdraw", response_model=UpdateResult)
        async def withdraw_record(
            record_id: str,
            payload: WithdrawalInput,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            with workflow_errors():
                return await services.workflows.withdraw(definition, ctx, record_id, payload)

    if definition.supports(EXTEND):
        @router.post("/{record_id}/extend", response_model=ExtendResult, status_code=status.HTTP_201_CREATED)
        async def extend_record(
            record_id: str,
            payload: InputModel,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            with workflow_errors():
                return await services.workflows.extend(definition, ctx, record_id, payload)

    for workflow in (RECEIVE_INTEREST, RECEIVE_CASHBACK):
        if definition.supports(workflow):
            _add_receipt_route(router, definition, workflow)

    for workflow in (DELETE_INTEREST, DELETE_CASHBACK):
        if definition.supports(workflow):
            _add_delete_receipt_route(router, definition, workflow)

    if definition.supports(CREATE_COUPON):
        @router.post("/{record_id}/coupons", response_model=UpdateResult)
        async def create_coupons(
            record_id: str,
            payload: CouponsInput,
            ctx: RequestContext = Depends(get_request_context),
            services: Services = Depends(get_services)
        ):
            with workflow_errors():
                return await services.workflows.create_coupons(definition, ctx, record_id, payload)

    return router


def _add_listing_route(router: APIRouter, definition: ModuleDefinition, segment: str, schedule_field: str):
    @router.get(f"/{segment}")
    async def list_schedule(
        is_archived: Optional[bool] = False,
        limit: int = Query(default=100, ge=1, le=500),
        ctx: RequestContext = Depends(get_request_context),
        services: Services = Depends(get_services)
    ):
        rows = await services.workflows.retrieve_schedule(definition, schedule_field, is_archived, limit)
        return {"data": [serialize_doc(row) for row in rows]}


def _add_receipt_route(router: APIRouter, definition: ModuleDefinition, workflow: str):
    @router.post(f"/{{record_id}}/{workflow.replace('_', '-')}", response_model=UpdateResult)
    async def receive_schedule_item(
        record_id: str,
        payload: ReceiptInput,
        ctx: RequestContext = Depends(get_request_context),
        services: Services = Depends(get_services)
    ):
        with workflow_errors():
            return await services.workflows.receive_schedule_item(definition, ctx, record_id, workflow, payload)


def _add_delete_receipt_route(router: APIRouter, definition: ModuleDefinition, workflow: str):
    @router.post(f"/{{record_id}}/{workflow.replace('_', '-')}", response_model=UpdateResult)
    async def delete_schedule_receipt(
        record_id: str,
        payload: ScheduleItemInput,
        ctx: RequestContext = Depends(get_request_context),
        services: Services = Depends(get_services)
    ):
        with workflow_errors():
            return await services.workflows.delete_schedule_receipt(definition, ctx, record_id, workflow, payload)


records_router = APIRouter(prefix="/api")
for _definition in MODULES.values():
    records_router.include_router(build_module_router(_definition))


# =============================================================================
# COUNTERS
# =============================================================================

counters_router = APIRouter(prefix="/api/counters", tags=["counters"])


@counters_router.get("")
async def list_counters(
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services)
):
    with workflow_errors():
        counters = await services.code_generator.retrieve_all()
    return {"data": [serialize_doc(counter) for counter in counters]}


@counters_router.get("/{name}/preview", response_model=CounterPreview)
async def preview_counter(
    name: str,
    reference_date: Optional[str] = Query(default=None, alias="date"),
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services)
):
    """Next code for `name` without reserving it"""
    try:
        code = await services.code_generator.preview(name, reference_date or datetime.utcnow())
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Counter not found")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid reference date")
    return CounterPreview(name=name, code=code)


# =============================================================================
# AUDIT LOGS
# =============================================================================

audit_router = APIRouter(prefix="/api/audit-logs", tags=["audit-logs"])


@audit_router.get("")
async def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    operation_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: RequestContext = Depends(get_request_context),
    services: Services = Depends(get_services)
):
    services.permission_checker.require(ctx.actor, "audit_logs:read")
    with workflow_errors():
        logs = await services.audit_service.get_audit_logs(
            entity_type=entity_type,
            entity_id=entity_id,
            operation_id=operation_id,
            actor_id=actor_id,
            limit=limit
        )
    return {"data": [serialize_doc(log) for log in logs]}
