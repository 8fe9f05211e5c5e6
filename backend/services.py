from dataclasses import dataclass
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from typing import Optional

from audit_service import AuditLogService
from core.code_generator import CodeGeneratorService
from core.unique_validation import UniqueValidationService
from database import client, db
from notification_service import NotificationService, Transport
from permissions import PermissionChecker
from record_service import RecordWorkflowService


@dataclass
class Services:
    """Service graph shared by the API routes"""
    client: AsyncIOMotorClient
    db: AsyncIOMotorDatabase
    permission_checker: PermissionChecker
    code_generator: CodeGeneratorService
    audit_service: AuditLogService
    unique_validation: UniqueValidationService
    notification_service: NotificationService
    workflows: RecordWorkflowService


def build_services(
    client: AsyncIOMotorClient,
    db: AsyncIOMotorDatabase,
    transport: Optional[Transport] = None
) -> Services:
    permission_checker = PermissionChecker(db)
    code_generator = CodeGeneratorService(db)
    audit_service = AuditLogService(db)
    unique_validation = UniqueValidationService(db)
    notification_service = NotificationService(transport)

    return Services(
        client=client,
        db=db,
        permission_checker=permission_checker,
        code_generator=code_generator,
        audit_service=audit_service,
        unique_validation=unique_validation,
        notification_service=notification_service,
        workflows=RecordWorkflowService(
            client,
            db,
            permission_checker,
            code_generator,
            audit_service,
            unique_validation,
            notification_service
        )
    )


# Initialize services
default_services = build_services(client, db)


def get_services() -> Services:
    return default_services
