"""
Shared fixtures: an in-memory stand-in for the Supabase table client plus
common users and accounts.
"""

import copy
import uuid
from datetime import datetime

import pytest

from app.core.rate_limit import limiter
from app.modules.applications import run_registry


class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    """Supports the subset of the PostgREST builder the services use."""

    def __init__(self, store, table_name):
        self.store = store
        self.table_name = table_name
        self.operation = "select"
        self.payload = None
        self.filters = []
        self.order_by = None
        self.descending = False
        self.row_limit = None
        self.single = False

    @property
    def rows(self):
        return self.store.tables.setdefault(self.table_name, [])

    def select(self, *_columns):
        self.operation = "select"
        return self

    def insert(self, payload):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.operation = "update"
        self.payload = payload
        return self

    def delete(self):
        self.operation = "delete"
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.order_by = column
        self.descending = desc
        return self

    def limit(self, count):
        self.row_limit = count
        return self

    def maybe_single(self):
        self.single = True
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self):
        if self.operation == "insert":
            row = copy.deepcopy(self.payload)
            row.setdefault("id", str(uuid.uuid4()))
            row.setdefault("created_at", datetime.utcnow().isoformat())
            self.rows.append(row)
            return FakeResult([copy.deepcopy(row)])

        if self.operation == "update":
            self.store.updates.append((self.table_name, copy.deepcopy(self.payload)))
            updated = []
            for row in self.rows:
                if self._matches(row):
                    row.update(copy.deepcopy(self.payload))
                    updated.append(copy.deepcopy(row))
            return FakeResult(updated)

        if self.operation == "delete":
            kept = [row for row in self.rows if not self._matches(row)]
            removed = len(self.rows) - len(kept)
            self.store.tables[self.table_name] = kept
            return FakeResult([{}] * removed)

        matched = [copy.deepcopy(row) for row in self.rows if self._matches(row)]
        if self.order_by:
            matched.sort(key=lambda r: str(r.get(self.order_by) or ""), reverse=self.descending)
        if self.row_limit is not None:
            matched = matched[:self.row_limit]
        if self.single:
            return FakeResult(matched[0] if matched else None)
        return FakeResult(matched)


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.updates = []

    def table(self, name):
        return FakeQuery(self, name)

    def statuses(self, table_name):
        """Status values in the order they were written to table_name"""
        return [payload["status"] for table, payload in self.updates if table == table_name and "status" in payload]


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture(autouse=True)
def clean_run_registry():
    run_registry.reset()
    yield
    run_registry.reset()


@pytest.fixture
def no_rate_limit():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def user_data():
    return {"id": "user-1", "email": "owner@example.com", "user_metadata": {}, "app_metadata": {}}


@pytest.fixture
def aws_account(fake_supabase):
    row = {
        "id": "acct-1",
        "user_id": "user-1",
        "account_name": "sandbox",
        "region": "us-east-1",
        "access_key": "encrypted-access",
        "secret_key": "encrypted-secret",
        "is_active": True,
    }
    fake_supabase.tables.setdefault("aws_accounts", []).append(row)
    return row
