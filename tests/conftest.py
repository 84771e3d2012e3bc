import json
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import pytest

# Flat-layout modules live at the repo root
ROOT_PATH = Path(__file__).resolve().parent.parent
if ROOT_PATH.as_posix() not in sys.path:
    sys.path.insert(0, ROOT_PATH.as_posix())

import config  # noqa: E402
import db  # noqa: E402


ALICE = "u-alice"
BOB = "u-bob"
CAROL = "u-carol"
DAVE = "u-dave"
ADMIN = "u-admin"
FORM = "f-1"
OLD_FORM = "f-2"
DUE = "2030-01-31T17:00:00Z"


# ─────────────────────────────────────────────────────────────────────────
# Fake hosted backend (REST + auth), plugged in at the HTTP session seam
# ─────────────────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        if text is None:
            text = "" if payload is None else json.dumps(payload)
        self.text = text
        self.content = text.encode("utf-8")
        self.reason = "OK" if status_code < 400 else "Error"

    def json(self):
        return json.loads(self.text)


@dataclass
class Call:
    method: str
    path: str
    params: List[Tuple[str, str]]
    body: Any
    headers: Dict[str, str]

    def param(self, key: str) -> Optional[str]:
        for k, v in self.params:
            if k == key:
                return v
        return None


@dataclass
class Failure:
    method: str
    path: str
    status: int
    message: str
    code: Optional[str] = None
    when: Optional[Callable[[Call], bool]] = None
    times: Optional[int] = None


def _lit(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _sort_key(value: Any):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (value is None, value, "")
    return (value is None, 0, _lit(value))


def _parse_in(value: str) -> List[str]:
    inner = value[1:-1] if value.startswith("(") and value.endswith(")") else value
    out: List[str] = []
    buf = ""
    quoted = False
    i = 0
    while i < len(inner):
        ch = inner[i]
        if ch == "\\" and quoted and i + 1 < len(inner):
            buf += inner[i + 1]
            i += 2
            continue
        if ch == '"':
            quoted = not quoted
        elif ch == "," and not quoted:
            out.append(buf)
            buf = ""
        else:
            buf += ch
        i += 1
    if inner:
        out.append(buf)
    return out


def _matches(row: Dict[str, Any], column: str, expr: str) -> bool:
    op, _, value = expr.partition(".")
    current = row.get(column)
    if op == "eq":
        return current is not None and _lit(current) == value
    if op == "neq":
        return current is not None and _lit(current) != value
    if op == "in":
        return current is not None and _lit(current) in _parse_in(value)
    if op == "ilike":
        pattern = "^" + ".*".join(re.escape(p) for p in value.split("*")) + "$"
        return current is not None and re.match(pattern, str(current), re.IGNORECASE) is not None
    if op == "is":
        if value == "null":
            return current is None
        return _lit(current) == value
    if current is None:
        return False
    s = _lit(current)
    return {
        "lt": s < value,
        "lte": s <= value,
        "gt": s > value,
        "gte": s >= value,
    }[op]


class FakeBackend:
    def __init__(self):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.users: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.calls: List[Call] = []
        self.failures: List[Failure] = []
        self._seq = 0

    # -- setup helpers --

    def next_id(self, prefix: str = "gen") -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    def table(self, name: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(name, [])

    def add_rows(self, name: str, *rows: Dict[str, Any]) -> None:
        for r in rows:
            self.table(name).append(dict(r))

    def add_user(self, user_id: str, email: str, password: str = "secret123", **profile: Any) -> str:
        self.users[email] = {"id": user_id, "email": email, "password": password}
        row = {"id": user_id, "email": email, "first_name": None, "last_name": None, "avatar_url": None}
        row.update(profile)
        self.add_rows("profiles", row)
        return self.token_for(user_id)

    def token_for(self, user_id: str) -> str:
        token = f"tok-{user_id}"
        self.tokens[token] = user_id
        return token

    def refresh_token_for(self, user_id: str) -> str:
        token = self.next_id(f"refresh-{user_id}")
        self.refresh_tokens[token] = user_id
        return token

    def expire(self, token: str) -> None:
        self.tokens.pop(token, None)

    def _session(self, user_id: str) -> FakeResponse:
        email = next((u["email"] for u in self.users.values() if u["id"] == user_id), None)
        return FakeResponse(200, {
            "access_token": self.token_for(user_id),
            "refresh_token": self.refresh_token_for(user_id),
            "user": {"id": user_id, "email": email},
        })

    def fail(
        self,
        method: str,
        path: str,
        status: int = 500,
        message: str = "boom",
        code: Optional[str] = None,
        when: Optional[Callable[[Call], bool]] = None,
        times: Optional[int] = None,
    ) -> None:
        self.failures.append(Failure(method, path, status, message, code, when, times))

    def calls_to(self, method: str, path: str) -> List[Call]:
        return [c for c in self.calls if c.method == method and c.path == path]

    def rows(self, name: str, **where: Any) -> List[Dict[str, Any]]:
        return [r for r in self.table(name) if all(r.get(k) == v for k, v in where.items())]

    # -- dispatch --

    def handle(self, method: str, url: str, params=None, json=None, headers=None) -> FakeResponse:
        path = urlsplit(url).path
        if isinstance(params, dict):
            params = params.items()
        call = Call(method.upper(), path, list(params or []), json, dict(headers or {}))
        self.calls.append(call)
        for f in list(self.failures):
            if f.method == call.method and f.path == path and (f.when is None or f.when(call)):
                if f.times is not None:
                    f.times -= 1
                    if f.times <= 0:
                        self.failures.remove(f)
                return FakeResponse(f.status, {"message": f.message, "code": f.code})
        if path.startswith(db.AUTH_PREFIX):
            return self._auth(call, path[len(db.AUTH_PREFIX):])
        if path.rstrip("/") == db.REST_PREFIX:
            return FakeResponse(200, {"swagger": "2.0"})
        return self._rest(call, path[len(db.REST_PREFIX) + 1:])

    def _bearer_user(self, call: Call) -> Optional[str]:
        auth = call.headers.get("Authorization") or ""
        return self.tokens.get(auth.replace("Bearer ", "", 1))

    def _auth(self, call: Call, path: str) -> FakeResponse:
        body = call.body or {}
        if path == "/token" and call.method == "POST" and call.param("grant_type") == "refresh_token":
            # refresh tokens are single use
            user_id = self.refresh_tokens.pop(body.get("refresh_token"), None)
            if not user_id:
                return FakeResponse(400, {"error": "invalid_grant", "error_description": "Invalid Refresh Token: Refresh Token Not Found"})
            return self._session(user_id)
        if path == "/token" and call.method == "POST":
            user = self.users.get(body.get("email"))
            if not user or user["password"] != body.get("password"):
                return FakeResponse(400, {"error": "invalid_grant", "error_description": "Invalid login credentials"})
            return self._session(user["id"])
        if path == "/signup" and call.method == "POST":
            if body.get("email") in self.users:
                return FakeResponse(422, {"msg": "User already registered"})
            user_id = self.next_id("u")
            self.add_user(user_id, body["email"], body.get("password") or "")
            return FakeResponse(200, {"id": user_id, "email": body["email"]})
        if path == "/recover" and call.method == "POST":
            return FakeResponse(200, {})
        if path == "/user" and call.method == "GET":
            user_id = self._bearer_user(call)
            if not user_id:
                return FakeResponse(401, {"msg": "Invalid JWT"})
            email = next((u["email"] for u in self.users.values() if u["id"] == user_id), None)
            return FakeResponse(200, {"id": user_id, "email": email})
        if path == "/logout" and call.method == "POST":
            auth = call.headers.get("Authorization") or ""
            self.tokens.pop(auth.replace("Bearer ", "", 1), None)
            return FakeResponse(204)
        return FakeResponse(404, {"msg": f"Unknown auth path {path}"})

    def _rest(self, call: Call, name: str) -> FakeResponse:
        filters = [(k, v) for k, v in call.params if k not in ("select", "order", "limit")]
        rows = self.table(name)

        def matched():
            return [r for r in rows if all(_matches(r, col, expr) for col, expr in filters)]

        if call.method == "GET":
            out = matched()
            order = call.param("order")
            if order:
                for spec in reversed(order.split(",")):
                    col, _, direction = spec.partition(".")
                    out = sorted(out, key=lambda r: _sort_key(r.get(col)), reverse=direction == "desc")
            limit = call.param("limit")
            if limit is not None:
                out = out[: int(limit)]
            return FakeResponse(200, [self._project(r, call.param("select")) for r in out])
        if call.method == "POST":
            items = call.body if isinstance(call.body, list) else [call.body]
            created = []
            for item in items:
                row = dict(item)
                row.setdefault("id", self.next_id(name))
                row.setdefault("created_at", "2024-06-01T00:00:00+00:00")
                rows.append(row)
                created.append(dict(row))
            return FakeResponse(201, created)
        if call.method == "PATCH":
            out = matched()
            for r in out:
                r.update(call.body or {})
            return FakeResponse(200, [dict(r) for r in out])
        if call.method == "DELETE":
            out = matched()
            self.tables[name] = [r for r in rows if r not in out]
            return FakeResponse(200, [dict(r) for r in out])
        return FakeResponse(405, {"message": "Method not allowed"})

    @staticmethod
    def _project(row: Dict[str, Any], select: Optional[str]) -> Dict[str, Any]:
        if not select or select == "*":
            return dict(row)
        return {c: row.get(c) for c in select.split(",")}


class FakeSession:
    def __init__(self, backend: FakeBackend):
        self.backend = backend
        self.closed = False

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        return self.backend.handle(method, url, params=params, json=json, headers=headers)

    def close(self):
        self.closed = True


# ─────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────

@pytest.fixture
def backend(monkeypatch):
    """Empty fake backend wired into db.get_conn()."""
    monkeypatch.setattr(config, "SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setattr(config, "SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setattr(config, "SUPABASE_SERVICE_KEY", "service-key")
    monkeypatch.setattr(config, "ADMIN_KEY", "admin-secret")
    monkeypatch.setattr(config, "LEAVE_AUTO_APPROVE", True)
    fake = FakeBackend()
    db.use_session_factory(lambda: FakeSession(fake))
    yield fake
    db.use_session_factory(None)


@pytest.fixture
def seeded(backend):
    """
    One active form (f-1) assigned to alice, bob and carol (carol done),
    plus an inactive form (f-2) for alice. Dave has no assignments.
    """
    backend.add_user(ADMIN, "admin@example.com", first_name="Ada", last_name="Admin")
    backend.add_user(ALICE, "alice@example.com", first_name="Alice", last_name="Ng")
    backend.add_user(BOB, "bob@example.com", first_name="Bob", last_name="Stone")
    backend.add_user(CAROL, "carol@example.com", first_name="Carol", last_name="Diaz")
    backend.add_user(DAVE, "dave@example.com")
    backend.add_rows(
        "forms",
        {
            "id": FORM,
            "title": "Monthly Safety Check",
            "description": "Site safety walkthrough",
            "created_by": ADMIN,
            "is_active": True,
            "settings": {"due_date": DUE},
            "metadata": {"assigned_employees": [ALICE, BOB, CAROL]},
        },
        {
            "id": OLD_FORM,
            "title": "Old Survey",
            "description": None,
            "created_by": ADMIN,
            "is_active": False,
            "settings": {},
            "metadata": {},
        },
    )
    backend.add_rows(
        "form_questions",
        {"id": "q-3", "form_id": FORM, "question_text": "Site details", "question_type": "composite",
         "is_required": True, "order_index": 3, "options": None,
         "sub_questions": [
             {"question": "Site", "type": "text"},
             {"question": "Shift", "type": "single_select", "options": ["Day", "Night"]},
         ]},
        {"id": "q-1", "form_id": FORM, "question_text": "Inspector name", "question_type": "text",
         "is_required": True, "order_index": 1, "options": None, "sub_questions": None},
        {"id": "q-2", "form_id": FORM, "question_text": "PPE worn", "question_type": "multiple_choice",
         "is_required": False, "order_index": 2, "options": '["Gloves", "Helmet", "Boots"]', "sub_questions": None},
        {"id": "q-4", "form_id": FORM, "question_text": "Notes", "question_type": "long_text",
         "is_required": False, "order_index": 4, "options": None, "sub_questions": None},
    )
    backend.add_rows(
        "form_assignments",
        {"id": "a-alice", "form_id": FORM, "employee_id": ALICE, "status": "pending", "due_date": DUE,
         "assigned_by": ADMIN, "created_at": "2024-05-01T09:00:00Z", "updated_at": "2024-05-02T10:00:00Z"},
        {"id": "a-bob", "form_id": FORM, "employee_id": BOB, "status": "in_progress", "due_date": DUE,
         "assigned_by": ADMIN, "created_at": "2024-05-01T09:00:00Z", "updated_at": None},
        {"id": "a-carol", "form_id": FORM, "employee_id": CAROL, "status": "completed", "due_date": DUE,
         "assigned_by": ADMIN, "created_at": "2024-05-01T09:00:00Z", "updated_at": None},
        {"id": "a-alice-old", "form_id": OLD_FORM, "employee_id": ALICE, "status": "pending", "due_date": None,
         "assigned_by": ADMIN, "created_at": "2024-04-01T09:00:00Z", "updated_at": None},
    )
    return backend


@pytest.fixture
def client(seeded):
    from app import app

    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def alice_client(client, seeded):
    """Test client with alice signed in."""
    with client.session_transaction() as s:
        s["access_token"] = seeded.token_for(ALICE)
    return client
