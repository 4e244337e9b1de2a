"""
In-memory stand-in for the supabase-py query builder.

Covers the chain shapes the services use: select / eq / neq / in_ / order /
limit / maybe_single / single / insert / update / upsert / delete / execute.
Unique keys can be declared per table so inserts and updates raise the same
postgrest APIError (code 23505) a real unique index would.
"""

import copy
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError


class FakeResponse:
    def __init__(self, data):
        self.data = data
        self.count = None


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.on_conflict: Optional[str] = None
        self.filters: List[Callable[[Dict[str, Any]], bool]] = []
        self.orders: List[Tuple[str, bool]] = []
        self.limit_count: Optional[int] = None
        self.single_mode: Optional[str] = None

    def select(self, *columns, **kwargs):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op = "insert"
        self.payload = rows
        return self

    def update(self, values):
        self.op = "update"
        self.payload = values
        return self

    def upsert(self, rows, on_conflict: Optional[str] = None, **kwargs):
        self.op = "upsert"
        self.payload = rows
        self.on_conflict = on_conflict
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        allowed = list(values)
        self.filters.append(lambda row: row.get(column) in allowed)
        return self

    def order(self, column, desc: bool = False, **kwargs):
        self.orders.append((column, desc))
        return self

    def limit(self, count: int):
        self.limit_count = count
        return self

    def maybe_single(self):
        self.single_mode = "maybe"
        return self

    def single(self):
        self.single_mode = "single"
        return self

    def execute(self):
        return self.db._execute(self)


class FakeSupabase:
    def __init__(self, unique: Optional[Dict[str, List[Tuple[str, ...]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.unique = unique if unique is not None else {"deployments": [("user_id", "deployment_name")]}
        self._failures: Dict[Tuple[str, str], Exception] = {}
        self.executed: List[Tuple[str, str]] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def seed(self, table: str, *rows: Dict[str, Any]) -> List[Dict[str, Any]]:
        stored = []
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.tables.setdefault(table, []).append(row)
            stored.append(copy.deepcopy(row))
        return stored

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.tables.get(table, []))

    def fail(self, table: str, op: str, error: Optional[Exception] = None):
        """Make every ``op`` on ``table`` raise ``error``."""
        self._failures[(table, op)] = error or RuntimeError(f"{op} on {table} failed")

    def clear_failures(self):
        self._failures.clear()

    def _check_unique(self, table: str, candidate: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None):
        for key in self.unique.get(table, []):
            if any(candidate.get(column) is None for column in key):
                continue
            for row in self.tables.get(table, []):
                if row is ignore:
                    continue
                if all(row.get(column) == candidate.get(column) for column in key):
                    raise APIError({
                        "code": "23505",
                        "message": f"duplicate key value violates unique constraint on {table} {key}",
                        "details": None,
                        "hint": None,
                    })

    def _matching(self, query: FakeQuery) -> List[Dict[str, Any]]:
        return [row for row in self.tables.get(query.table, []) if all(f(row) for f in query.filters)]

    def _execute(self, query: FakeQuery):
        self.executed.append((query.table, query.op))
        failure = self._failures.get((query.table, query.op))
        if failure is not None:
            raise failure

        table = self.tables.setdefault(query.table, [])

        if query.op == "insert":
            rows = query.payload if isinstance(query.payload, list) else [query.payload]
            inserted = []
            for row in rows:
                row = dict(row)
                row.setdefault("id", str(uuid.uuid4()))
                self._check_unique(query.table, row)
                table.append(row)
                inserted.append(copy.deepcopy(row))
            return FakeResponse(inserted)

        if query.op == "upsert":
            rows = query.payload if isinstance(query.payload, list) else [query.payload]
            conflict_columns = (query.on_conflict or "id").split(",")
            result = []
            for row in rows:
                existing = next(
                    (r for r in table if all(r.get(c) == row.get(c) for c in conflict_columns)),
                    None,
                )
                if existing is None:
                    row = dict(row)
                    row.setdefault("id", str(uuid.uuid4()))
                    table.append(row)
                    result.append(copy.deepcopy(row))
                else:
                    existing.update(row)
                    result.append(copy.deepcopy(existing))
            return FakeResponse(result)

        matched = self._matching(query)

        if query.op == "update":
            for row in matched:
                self._check_unique(query.table, {**row, **query.payload}, ignore=row)
            for row in matched:
                row.update(copy.deepcopy(query.payload))
            return FakeResponse(copy.deepcopy(matched))

        if query.op == "delete":
            self.tables[query.table] = [row for row in table if row not in matched]
            return FakeResponse(copy.deepcopy(matched))

        rows = list(matched)
        for column, desc in reversed(query.orders):
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
        if query.limit_count is not None:
            rows = rows[:query.limit_count]
        rows = copy.deepcopy(rows)

        if query.single_mode == "maybe":
            return FakeResponse(rows[0]) if rows else None
        if query.single_mode == "single":
            if len(rows) != 1:
                raise APIError({"code": "PGRST116", "message": "JSON object requested, multiple (or no) rows returned"})
            return FakeResponse(rows[0])
        return FakeResponse(rows)


USER_ID = "11111111-2222-3333-4444-555555555555"
OTHER_USER_ID = "99999999-8888-7777-6666-555555555555"


def emailbison_template_row(**overrides):
    row = {
        "id": "tmpl-emailbison",
        "name": "emailbison-mcp",
        "display_name": "EmailBison",
        "description": "EmailBison campaigns over MCP",
        "category": "email",
        "github_repo": "acme/emailbison-mcp",
        "github_branch": "main",
        "required_env_vars": [
            {
                "name": "api_key",
                "display_name": "API Key",
                "type": "string",
                "validation": {"required": True, "minLength": 10},
            },
            {
                "name": "base_url",
                "display_name": "Base URL",
                "type": "url",
                "validation": {"required": True},
            },
        ],
        "optional_env_vars": [],
        "port": 3000,
        "healthcheck_path": "/health",
        "tags": ["email", "outreach"],
        "is_active": True,
        "is_featured": True,
        "allowed_user_ids": [],
    }
    row.update(overrides)
    return row


def generic_template_row(**overrides):
    row = {
        "id": "tmpl-weather",
        "name": "weather-mcp",
        "display_name": "Weather",
        "description": "Forecasts",
        "category": "data",
        "github_repo": "acme/weather-mcp",
        "github_branch": "release",
        "required_env_vars": [
            {
                "name": "WEATHER_API_KEY",
                "display_name": "Weather API Key",
                "type": "string",
                "validation": {"required": True, "minLength": 8},
            },
        ],
        "optional_env_vars": [
            {
                "name": "UNITS",
                "display_name": "Units",
                "type": "enum",
                "options": ["metric", "imperial"],
            },
        ],
        "port": 8080,
        "healthcheck_path": "healthz",
        "default_transport_type": "streamable-http",
        "tags": ["weather"],
        "is_active": True,
        "is_featured": False,
        "allowed_user_ids": [],
    }
    row.update(overrides)
    return row


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


