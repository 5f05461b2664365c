from __future__ import annotations

import uuid
from typing import Any, Callable, Dict, List, Optional

import pytest


class _Result:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count


def _coerce(raw: str) -> Any:
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw == "null":
        return None
    return raw


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "eq":
        return actual == expected
    if op == "neq":
        return actual != expected
    if actual is None or expected is None:
        return False
    if op == "lt":
        return str(actual) < str(expected)
    if op == "gt":
        return str(actual) > str(expected)
    raise AssertionError(f"unsupported operator {op}")


class _Query:
    """Chained PostgREST-style query against `FakeSupabase.tables`."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: List[Callable[[Dict[str, Any]], bool]] = []
        self._order: List[tuple] = []
        self._limit: Optional[int] = None
        self._range: Optional[tuple] = None

    # ---- operations ----
    def select(self, *_args, **_kwargs):
        return self

    def insert(self, data):
        self._op = "insert"
        self._payload = data
        return self

    def update(self, data):
        self._op = "update"
        self._payload = data
        return self

    def delete(self):
        self._op = "delete"
        return self

    # ---- filters ----
    def eq(self, col, value):
        self._filters.append(lambda r: r.get(col) == value)
        return self

    def neq(self, col, value):
        self._filters.append(lambda r: r.get(col) != value)
        return self

    def in_(self, col, values):
        values = list(values)
        self._filters.append(lambda r: r.get(col) in values)
        return self

    def is_(self, col, value):
        expected = _coerce(value) if isinstance(value, str) else value
        self._filters.append(lambda r: r.get(col) is expected)
        return self

    def or_(self, expr: str):
        clauses = []
        for part in expr.split(","):
            col, op, raw = part.split(".", 2)
            clauses.append((col, op, _coerce(raw)))
        self._filters.append(lambda r: any(_compare(op, r.get(col), v) for col, op, v in clauses))
        return self

    def order(self, col, desc=False):
        self._order.append((col, desc))
        return self

    def limit(self, n):
        self._limit = n
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    # ---- execution ----
    def _matches(self, row):
        return all(f(row) for f in self._filters)

    def execute(self):
        self._db.calls.append((self._table, self._op))
        self._db.raise_if_failing(self._table, self._op)
        rows = self._db.tables.setdefault(self._table, [])

        if self._op == "insert":
            payload = self._payload if isinstance(self._payload, list) else [self._payload]
            created = []
            for item in payload:
                row = dict(item)
                row.setdefault("id", str(uuid.uuid4()))
                self._db.check_unique(self._table, row, pending=created)
                created.append(row)
            rows.extend(created)
            created = [dict(r) for r in created]
            return _Result(created)

        if self._op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self._payload)
                    updated.append(dict(row))
            return _Result(updated)

        if self._op == "delete":
            removed = [r for r in rows if self._matches(r)]
            self._db.tables[self._table] = [r for r in rows if not self._matches(r)]
            return _Result([dict(r) for r in removed])

        found = [dict(r) for r in rows if self._matches(r)]
        for col, desc in reversed(self._order):
            found.sort(key=lambda r: (r.get(col) is None, r.get(col) if r.get(col) is not None else 0), reverse=desc)
        if self._range is not None:
            found = found[self._range[0]: self._range[1] + 1]
        if self._limit is not None:
            found = found[: self._limit]
        return _Result(found, count=len(found))


class _Rpc:
    def __init__(self, db: "FakeSupabase", name: str, params: Dict[str, Any]):
        self._db = db
        self._name = name
        self._params = params

    def execute(self):
        self._db.rpc_calls.append((self._name, self._params))
        self._db.raise_if_failing(f"rpc:{self._name}", "rpc")
        handler = self._db.rpc_handlers.get(self._name)
        return _Result(handler(self._params) if handler else None)


class FakeSupabase:
    """In-memory stand-in for the supabase-py client."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {k: [dict(r) for r in v] for k, v in (tables or {}).items()}
        self.calls: List[tuple] = []
        self.rpc_calls: List[tuple] = []
        self.rpc_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.unique: Dict[str, tuple] = {}
        self._failures: Dict[tuple, Exception] = {}

    def table(self, name):
        return _Query(self, name)

    def rpc(self, name, params=None):
        return _Rpc(self, name, params or {})

    def fail(self, table: str, op: str, exc: Exception) -> None:
        self._failures[(table, op)] = exc

    def raise_if_failing(self, table: str, op: str) -> None:
        exc = self._failures.get((table, op))
        if exc is not None:
            raise exc

    def check_unique(self, table: str, row: Dict[str, Any], pending=()) -> None:
        cols = self.unique.get(table)
        if not cols:
            return
        key = tuple(row.get(c) for c in cols)
        for existing in [*self.tables.get(table, []), *pending]:
            if tuple(existing.get(c) for c in cols) == key:
                raise DuplicateKeyError()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.get(table, [])


class DuplicateKeyError(Exception):
    code = "23505"

    def __init__(self):
        super().__init__("duplicate key value violates unique constraint")


class FakeFunctions:
    """Records edge-function calls and answers from a name -> response map."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses = responses or {}
        self.calls: List[tuple] = []

    async def call(self, name, body=None, *, timeout_s=None):
        self.calls.append((name, body))
        response = self.responses.get(name, {})
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(body)
        return response

    async def send_welcome_message(self, body):
        self.calls.append(("send-welcome-message", body))
        return {"success": True}


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def functions():
    return FakeFunctions()
