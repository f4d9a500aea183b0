"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os
import sys
from datetime import date, timedelta
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("FRONTEND_PUBLIC_URL", "https://app.example.com")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from unittest.mock import patch
from pymongo.errors import DuplicateKeyError

from fastapi.testclient import TestClient
from server import app


# ============================================================================
# In-memory MongoDB stand-in (only the query operators the services use)
# ============================================================================

_MISSING = object()


def _resolve(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _matches(doc, query):
    for key, condition in query.items():
        value = _resolve(doc, key)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                present = value is not _MISSING
                if op == "$ne" and present and value == operand:
                    return False
                if op == "$nin" and present and value in operand:
                    return False
                if op == "$in" and (not present or value not in operand):
                    return False
                if op == "$lte" and (not present or value is None or value > operand):
                    return False
                if op == "$exists" and present != bool(operand):
                    return False
        elif condition is None:
            if value is not _MISSING and value is not None:
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


class _UpdateResult:
    def __init__(self, matched):
        self.matched_count = matched
        self.modified_count = matched


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: d.get(key), reverse=direction == -1)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs[:length] if length else list(self._docs)


class FakeCollection:
    def __init__(self, unique=()):
        self.docs = []
        self.unique = unique

    async def find_one(self, query, projection=None, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query=None, projection=None, **kwargs):
        return _Cursor([copy.deepcopy(d) for d in self.docs if _matches(d, query or {})])

    async def insert_one(self, doc):
        for field in self.unique:
            if doc.get(field) is not None and any(d.get(field) == doc.get(field) for d in self.docs):
                raise DuplicateKeyError(f"E11000 duplicate key error {field}")
        self.docs.append(copy.deepcopy(doc))

    async def update_one(self, query, update, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return _UpdateResult(1)
        return _UpdateResult(0)

    async def update_many(self, query, update, **kwargs):
        matched = [d for d in self.docs if _matches(d, query)]
        for doc in matched:
            doc.update(copy.deepcopy(update.get("$set", {})))
        return _UpdateResult(len(matched))

    async def delete_many(self, query):
        self.docs = [d for d in self.docs if not _matches(d, query)]

    async def count_documents(self, query):
        return len([d for d in self.docs if _matches(d, query)])


class FakeDB:
    """Attribute and item access to collections, like a motor database."""

    def __init__(self):
        self._collections = {
            "message_logs": FakeCollection(unique=("idempotency_key",)),
            "stripe_events": FakeCollection(unique=("event_id",)),
        }

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection()
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest.fixture
def fake_db():
    """In-memory database patched in for database.get_db() everywhere."""
    db = FakeDB()
    with patch("database.database.get_db", return_value=db):
        yield db


# ============================================================================
# Document builders
# ============================================================================

def make_quote(**overrides):
    doc = {
        "id": "q1",
        "number": "D-2026-001",
        "issue_date": date.today().isoformat(),
        "company": {"name": "Atelier Dupont", "address": "1 rue de Paris", "postal_code": "75001",
                    "city": "Paris", "country": "FR", "siren": "123456789", "email": "owner@atelier.fr"},
        "client": {"name": "Client SA", "address": "2 avenue Foch", "postal_code": "69001",
                   "city": "Lyon", "country": "FR", "email": "client@example.com"},
        "services": [{"quantity": 1, "description": "Site web", "unit_price": 1000, "amount": 1000}],
        "subtotal": 1000,
        "total_amount": 1000,
        "deposit_percent": 30,
        "billing_country": "FR",
        "valid_until": (date.today() + timedelta(days=30)).isoformat(),
        "status": "sent",
    }
    doc.update(overrides)
    return doc


def make_billing(**overrides):
    doc = {
        "id": "b1",
        "number": "F-2026-001",
        "issue_date": date.today().isoformat(),
        "company": {"name": "Atelier Dupont", "address": "1 rue de Paris", "postal_code": "75001",
                    "city": "Paris", "country": "FR", "email": "owner@atelier.fr"},
        "client": {"name": "Client SA", "address": "2 avenue Foch", "city": "Lyon", "email": "client@example.com"},
        "total_amount": 500,
        "tax_rate": 20,
        "tax_amount": 100,
        "total_with_tax": 600,
        "show_tax": True,
        "billing_country": "FR",
        "due_date": (date.today() + timedelta(days=15)).isoformat(),
        "payment_status": "pending",
        "payment_account": {"iban": "FR76 3000 6000 0112 3456 7890 189", "bic": "AGRIFRPP",
                            "account_holder": "Atelier Dupont"},
    }
    doc.update(overrides)
    return doc


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)
