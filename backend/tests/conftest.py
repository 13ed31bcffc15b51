"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip scheduler startup when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("LEMONSQUEEZY_WEBHOOK_SECRET", "test-lemon-secret")
os.environ.setdefault("PAYPRO_IPN_SECRET_KEY", "test-ipn-secret")
os.environ.setdefault("PAYPRO_VALIDATION_KEY", "test-validation-key")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import copy
import itertools
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from pymongo.errors import DuplicateKeyError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


# =============================================================================
# In-memory Motor stand-in
# =============================================================================

UNIQUE_KEYS = {
    "subscriptions": [("business_id",)],
    "billing_events": [("provider", "event_id")],
    "automation_definitions": [("automation_id",)],
    "automation_reservations": [("automation_id", "user_id", "window_key")],
}


def _value_matches(value, condition):
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$ne":
                if isinstance(value, list) and arg in value:
                    return False
                if value == arg:
                    return False
            elif op == "$gte":
                if value is None or not value >= arg:
                    return False
            elif op == "$lt":
                if value is None or not value < arg:
                    return False
            elif op == "$in":
                if value not in arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if isinstance(value, list) and not isinstance(condition, list):
        return condition in value
    return value == condition


def _matches(doc, query):
    for key, cond in (query or {}).items():
        if key == "$or":
            if not any(_matches(doc, branch) for branch in cond):
                return False
        elif not _value_matches(doc.get(key), cond):
            return False
    return True


def _project(doc, projection):
    result = copy.deepcopy(doc)
    if projection and projection.get("_id") == 0:
        result.pop("_id", None)
    return result


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d.get(key), reverse=direction == -1)
        return self

    def skip(self, n):
        self._docs = self._docs[n:]
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class FakeCollection:
    """Implements the subset of the Motor collection API the services use."""

    _ids = itertools.count(1)

    def __init__(self, name):
        self.name = name
        self.docs = []
        self.unique_keys = UNIQUE_KEYS.get(name, [])

    def _violates_unique(self, candidate, ignore=None):
        for fields in self.unique_keys:
            key = tuple(candidate.get(f) for f in fields)
            for doc in self.docs:
                if doc is not ignore and tuple(doc.get(f) for f in fields) == key:
                    return True
        return False

    async def insert_one(self, doc):
        if self._violates_unique(doc):
            raise DuplicateKeyError(f"E11000 duplicate key in {self.name}")
        doc.setdefault("_id", next(self._ids))
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query)])

    async def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if _matches(doc, query):
                for key, value in update.get("$set", {}).items():
                    doc[key] = copy.deepcopy(value)
                for key, value in update.get("$inc", {}).items():
                    doc[key] = doc.get(key, 0) + value
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def find_one_and_update(self, query, update, projection=None, return_document=False):
        for doc in self.docs:
            if _matches(doc, query):
                before = _project(doc, projection)
                await self.update_one({"_id": doc["_id"]}, update)
                return _project(doc, projection) if return_document else before
        return None

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))

    async def delete_many(self, query):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, query)]
        return SimpleNamespace(deleted_count=before - len(self.docs))


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]


@pytest.fixture
def fake_db():
    """Patch the shared database singleton with an in-memory store."""
    from database import database
    db = FakeDatabase()
    with patch.object(database, "get_db", return_value=db):
        yield db
