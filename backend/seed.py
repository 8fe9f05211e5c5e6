"""
Seed script for the financial records back office.

Creates:
- Default counters (roles, owners, banks, brokers, stocks, payment/dividend
  stocks, savings, deposits, bonds, insurances, issuers, users)
- 1 Administrator role (code ROLE/1, all permissions)
- 1 Admin user (code USER/001) bound to that role
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from datetime import datetime
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent))

from auth import create_access_token
from config import MONGO_URL, DB_NAME
from core.code_generator import CodeGeneratorService
from permissions import WILDCARD_PERMISSION

ADMIN_ROLE_CODE = "ROLE/1"
ADMIN_USERNAME = "admin"
ADMIN_EMAIL = "admin@example.com"


async def seed_defaults(db: AsyncIOMotorDatabase) -> dict:
    """Insert default data that is missing; safe to run repeatedly"""

    # ============================================
    # 1. COUNTERS
    # ============================================
    print("🔢 Seeding counters...")
    inserted = await CodeGeneratorService(db).seed_defaults()
    print(f"   ✅ Counters inserted: {', '.join(inserted) if inserted else 'none (already seeded)'}")

    # ============================================
    # 2. ADMINISTRATOR ROLE
    # ============================================
    print("🛡️  Creating administrator role...")

    existing_role = await db.roles.find_one({"code": ADMIN_ROLE_CODE})

    if existing_role:
        print("   ⚠️  Administrator role already exists. Skipping...")
        role_id = str(existing_role["_id"])
    else:
        result = await db.roles.insert_one({
            "code": ADMIN_ROLE_CODE,
            "name": "Administrator",
            "permissions": [WILDCARD_PERMISSION],
            "is_archived": False,
            "created_at": datetime.utcnow()
        })
        role_id = str(result.inserted_id)
        print(f"   ✅ Administrator role created: {role_id}")

    # ============================================
    # 3. ADMIN USER
    # ============================================
    print("👤 Creating admin user...")

    existing_admin = await db.users.find_one({"username": ADMIN_USERNAME})

    if existing_admin:
        print("   ⚠️  Admin user already exists. Skipping...")
        admin_id = str(existing_admin["_id"])
    else:
        code, _ = await CodeGeneratorService(db).reserve("users")
        result = await db.users.insert_one({
            "code": code,
            "username": ADMIN_USERNAME,
            "name": "System Administrator",
            "email": ADMIN_EMAIL,
            "role_id": role_id,
            "active_status": True,
            "is_archived": False,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow()
        })
        admin_id = str(result.inserted_id)
        print(f"   ✅ Admin user created: {admin_id}")

    return {"role_id": role_id, "admin_id": admin_id, "counters": inserted}


async def seed_database():
    """Seed the database with initial data"""

    client = AsyncIOMotorClient(MONGO_URL)
    db = client[DB_NAME]

    print("🌱 Starting database seeding...")

    try:
        result = await seed_defaults(db)

        print("\n" + "="*60)
        print("✨ DATABASE SEEDING COMPLETE ✨")
        print("="*60)
        print(f"\n👤 Admin user ID: {result['admin_id']}")
        print(f"🔑 Access token (30 min): {create_access_token({'user_id': result['admin_id'], 'username': ADMIN_USERNAME})}")
        print("="*60)

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
