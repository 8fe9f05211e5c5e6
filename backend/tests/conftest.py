"""
Shared fixtures: in-memory stand-ins for the Motor client, database,
collections and sessions used by the services.
"""

import copy
import os
import sys
from pathlib import Path
from datetime import datetime

import pytest
from bson import ObjectId
from pymongo import ReturnDocument

os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017/?replicaSet=rs0")

BACKEND = Path(__file__).resolve().parents[1]
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from core.code_generator import DEFAULT_COUNTERS  # noqa: E402


class FakeInsertResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class FakeUpdateResult:
    def __init__(self, matched_count, modified_count):
        self.matched_count = matched_count
        self.modified_count = modified_count


def _matches(document, query):
    for key, condition in query.items():
        value = document.get(key)
        if isinstance(condition, dict) and any(op.startswith("$") for op in condition):
            for op, operand in condition.items():
                if op == "$ne" and value == operand:
                    return False
                if op == "$in" and value not in operand:
                    return False
        elif value != condition:
            return False
    return True


def _apply_update(document, update):
    changed = False
    for key, value in update.get("$set", {}).items():
        if document.get(key) != value:
            document[key] = copy.deepcopy(value)
            changed = True
    for key, value in update.get("$inc", {}).items():
        document[key] = document.get(key, 0) + value
        changed = True
    return changed


class FakeCursor:
    def __init__(self, documents):
        self.documents = documents
        self._limit = None

    def sort(self, key, direction=1):
        self.documents.sort(key=lambda doc: (doc.get(key) is not None, doc.get(key)), reverse=direction < 0)
        return self

    def limit(self, count):
        self._limit = count
        return self

    async def to_list(self, length=None):
        documents = self.documents
        if self._limit:
            documents = documents[:self._limit]
        if length:
            documents = documents[:length]
        return documents


class FakeCollection:
    """Single-process collection; every call completes without yielding"""

    def __init__(self, name):
        self.name = name
        self.documents = []
        self.indexes = []
        self.fail_with = None

    def _check_failure(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def find_one(self, query=None, session=None):
        self._check_failure()
        for document in self.documents:
            if _matches(document, query or {}):
                return copy.deepcopy(document)
        return None

    def find(self, query=None, session=None):
        self._check_failure()
        return FakeCursor([copy.deepcopy(doc) for doc in self.documents if _matches(doc, query or {})])

    async def count_documents(self, query, session=None):
        return len([doc for doc in self.documents if _matches(doc, query)])

    async def insert_one(self, document, session=None):
        self._check_failure()
        document.setdefault("_id", ObjectId())
        self.documents.append(copy.deepcopy(document))
        return FakeInsertResult(document["_id"])

    async def update_one(self, query, update, session=None, upsert=False):
        self._check_failure()
        for document in self.documents:
            if _matches(document, query):
                changed = _apply_update(document, update)
                return FakeUpdateResult(1, 1 if changed else 0)
        return FakeUpdateResult(0, 0)

    async def find_one_and_update(self, query, update, return_document=ReturnDocument.BEFORE,
                                  upsert=False, session=None):
        self._check_failure()
        for document in self.documents:
            if _matches(document, query):
                before = copy.deepcopy(document)
                _apply_update(document, update)
                return copy.deepcopy(document) if return_document == ReturnDocument.AFTER else before
        return None

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return kwargs.get("name")


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def snapshot(self):
        return {name: copy.deepcopy(col.documents) for name, col in self._collections.items()}

    def restore(self, snapshot):
        for name, col in self._collections.items():
            col.documents = snapshot.get(name, [])


class FakeSession:
    """Transaction rollback by restoring a snapshot taken at start"""

    def __init__(self, db):
        self.db = db
        self.committed = False
        self.aborted = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def with_transaction(self, callback):
        snapshot = self.db.snapshot()
        try:
            result = await callback(self)
        except Exception:
            self.db.restore(snapshot)
            self.aborted = True
            raise
        self.committed = True
        return result


class FakeClient:
    def __init__(self, db):
        self.db = db
        self.sessions = []
        self.closed = False

    async def start_session(self):
        session = FakeSession(self.db)
        self.sessions.append(session)
        return session

    def close(self):
        self.closed = True


@pytest.fixture
def fake_db():
    db = FakeDatabase()
    db.counters.documents.extend(
        {**copy.deepcopy(counter), "_id": ObjectId(), "created_at": datetime.utcnow()}
        for counter in DEFAULT_COUNTERS
    )
    return db


@pytest.fixture
def fake_client(fake_db):
    return FakeClient(fake_db)


@pytest.fixture
def admin_role(fake_db):
    role = {"_id": ObjectId(), "code": "ROLE/1", "name": "Administrator", "permissions": ["*"]}
    fake_db.roles.documents.append(role)
    return role


@pytest.fixture
def clerk_role(fake_db):
    role = {
        "_id": ObjectId(),
        "code": "ROLE/2",
        "name": "Clerk",
        "permissions": ["banks:create", "stocks:create"],
    }
    fake_db.roles.documents.append(role)
    return role


@pytest.fixture
def admin_user(fake_db, admin_role):
    user = {
        "_id": ObjectId(),
        "username": "admin",
        "name": "System Administrator",
        "role_id": str(admin_role["_id"]),
        "active_status": True,
    }
    fake_db.users.documents.append(user)
    return user


@pytest.fixture
def clerk_user(fake_db, clerk_role):
    user = {
        "_id": ObjectId(),
        "username": "clerk",
        "name": "Front Office Clerk",
        "role_id": str(clerk_role["_id"]),
        "active_status": True,
    }
    fake_db.users.documents.append(user)
    return user
