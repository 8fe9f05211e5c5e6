#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Counters, Audit Logs and Record Codes

Creates:
1. counters collection with unique name index
2. audit_logs indexes (entity, operation, actor)
3. unique code index on every record collection
4. unique name index on master data collections

Run: python migrations/001_counters_audit_indexes.py
"""

import asyncio
import os
import sys
from datetime import datetime

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient

from audit_service import AuditLogService
from config import MONGO_URL, DB_NAME
from core.code_generator import CodeGeneratorService
from record_modules import MODULES

MIGRATION_ID = "001_counters_audit_indexes"


async def run_migration():
    """Execute the counters and audit log migration."""

    print(f"Connecting to: {MONGO_URL}")
    print(f"Database: {DB_NAME}")

    client = AsyncIOMotorClient(MONGO_URL)
    db = client[DB_NAME]

    try:
        # Test connection
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        # =====================================================
        # 1. Counters and audit logs
        # =====================================================
        await CodeGeneratorService(db).create_indexes()
        print("✓ Created unique_counter_name")

        await AuditLogService(db).create_indexes()
        print("✓ Created audit log indexes")

        # =====================================================
        # 2. Record collections
        # =====================================================
        indexes_created = ["unique_counter_name", "idx_audit_entity", "idx_audit_operation", "idx_audit_actor"]

        for definition in MODULES.values():
            index_name = f"unique_{definition.name}_{definition.code_field}"
            await db[definition.collection].create_index(
                [(definition.code_field, 1)],
                unique=True,
                name=index_name
            )
            indexes_created.append(index_name)

            for field in definition.unique_fields:
                index_name = f"unique_{definition.name}_{field}"
                await db[definition.collection].create_index(
                    [(field, 1)],
                    unique=True,
                    partialFilterExpression={field: {"$type": "string"}},
                    name=index_name
                )
                indexes_created.append(index_name)

            print(f"✓ Indexed {definition.collection}")

        # =====================================================
        # Migration metadata
        # =====================================================
        await db.migrations.update_one(
            {"migration_id": MIGRATION_ID},
            {"$set": {
                "migration_id": MIGRATION_ID,
                "description": "Counters, audit logs and unique record codes",
                "indexes_created": indexes_created,
                "executed_at": datetime.utcnow(),
                "status": "success"
            }},
            upsert=True
        )
        print("\n✓ Migration record saved")

        return {
            "status": "success",
            "indexes": len(indexes_created)
        }

    except Exception as e:
        print(f"\n✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    result = asyncio.run(run_migration())
    print(f"\nResult: {result}")
