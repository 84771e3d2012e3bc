# db.py - AAC Forms
# Hosted backend access: PostgREST data API + auth API, over requests

from __future__ import annotations

import logging
from contextvars import ContextVar, Token
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

import config

log = logging.getLogger(__name__)

REST_PREFIX = "/rest/v1"
AUTH_PREFIX = "/auth/v1"

_ACCESS_TOKEN: ContextVar[Optional[str]] = ContextVar("aacforms_access_token", default=None)
_session_factory: Callable[[], requests.Session] = requests.Session


class BackendError(Exception):
    """Any failed call against the hosted backend (HTTP, network or shape)."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "details": self.details,
        }


# -------------------------------------------------
# Context
# -------------------------------------------------

def bind_access_token(token: Optional[str]) -> Token:
    return _ACCESS_TOKEN.set((token or "").strip() or None)


def reset_access_token(handle: Token) -> None:
    _ACCESS_TOKEN.reset(handle)


def current_access_token() -> Optional[str]:
    return _ACCESS_TOKEN.get()


def use_session_factory(factory: Optional[Callable[[], requests.Session]] = None) -> None:
    global _session_factory
    _session_factory = factory or requests.Session


# -------------------------------------------------
# Helpers
# -------------------------------------------------

def _error_from_response(resp: requests.Response) -> BackendError:
    detail = ""
    code = None
    details = None
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        detail = (
            payload.get("message")
            or payload.get("msg")
            or payload.get("error_description")
            or payload.get("error")
            or ""
        )
        code = payload.get("code") or payload.get("error_code")
        details = payload.get("details") or payload.get("hint")
    if not detail:
        detail = (resp.text or "").strip() or (resp.reason or "")
    return BackendError(
        f"HTTP {resp.status_code}: {detail}".strip(),
        status=resp.status_code,
        code=str(code) if code is not None else None,
        details=details,
    )


def _literal(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _list_literal(values: Iterable[Any]) -> str:
    parts = []
    for v in values:
        s = _literal(v)
        if any(ch in s for ch in ',()"'):
            s = '"' + s.replace('"', '\\"') + '"'
        parts.append(s)
    return "(" + ",".join(parts) + ")"


def index_by(rows: Iterable[Dict[str, Any]], key: str = "id") -> Dict[Any, Dict[str, Any]]:
    return {r.get(key): r for r in rows or [] if r.get(key) is not None}


def unique(values: Iterable[Any]) -> List[Any]:
    seen = set()
    out = []
    for v in values:
        if v is None or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


# -------------------------------------------------
# Query builder
# -------------------------------------------------

class Query:
    def __init__(self, conn: "Connection", table: str):
        self._conn = conn
        self._table = table
        self._method = "GET"
        self._columns = "*"
        self._body: Any = None
        self._filters: List[Tuple[str, str]] = []
        self._order: List[str] = []
        self._limit: Optional[int] = None
        self._single: Optional[str] = None

    def select(self, columns: str = "*") -> "Query":
        self._columns = "".join((columns or "*").split())
        return self

    def insert(self, rows: Any) -> "Query":
        self._method = "POST"
        self._body = rows
        return self

    def update(self, values: Dict[str, Any]) -> "Query":
        self._method = "PATCH"
        self._body = values
        return self

    def delete(self) -> "Query":
        self._method = "DELETE"
        return self

    def _filter(self, column: str, op: str, value: str) -> "Query":
        self._filters.append((column, f"{op}.{value}"))
        return self

    def eq(self, column: str, value: Any) -> "Query":
        if value is None:
            return self.is_(column, None)
        return self._filter(column, "eq", _literal(value))

    def neq(self, column: str, value: Any) -> "Query":
        return self._filter(column, "neq", _literal(value))

    def in_(self, column: str, values: Iterable[Any]) -> "Query":
        return self._filter(column, "in", _list_literal(values))

    def ilike(self, column: str, pattern: str) -> "Query":
        # PostgREST accepts * in place of % inside URLs
        return self._filter(column, "ilike", (pattern or "").replace("%", "*"))

    def lt(self, column: str, value: Any) -> "Query":
        return self._filter(column, "lt", _literal(value))

    def lte(self, column: str, value: Any) -> "Query":
        return self._filter(column, "lte", _literal(value))

    def gt(self, column: str, value: Any) -> "Query":
        return self._filter(column, "gt", _literal(value))

    def gte(self, column: str, value: Any) -> "Query":
        return self._filter(column, "gte", _literal(value))

    def is_(self, column: str, value: Optional[bool]) -> "Query":
        return self._filter(column, "is", _literal(value))

    def order(self, column: str, desc: bool = False) -> "Query":
        self._order.append(f"{column}.{'desc' if desc else 'asc'}")
        return self

    def limit(self, n: int) -> "Query":
        self._limit = int(n)
        return self

    def single(self) -> "Query":
        self._single = "one"
        return self

    def maybe_single(self) -> "Query":
        self._single = "maybe"
        return self

    def params(self) -> List[Tuple[str, str]]:
        out = list(self._filters)
        out.append(("select", self._columns))
        if self._order:
            out.append(("order", ",".join(self._order)))
        if self._limit is not None:
            out.append(("limit", str(self._limit)))
        return out

    def execute(self) -> Any:
        headers = {}
        if self._method != "GET":
            headers["Prefer"] = "return=representation"
        if self._method in ("PATCH", "DELETE") and not self._filters:
            raise BackendError(f"Refusing unfiltered {self._method} on {self._table}.")
        resp = self._conn.request(
            self._method,
            f"{REST_PREFIX}/{self._table}",
            params=self.params(),
            json=self._body,
            headers=headers,
        )
        rows = _json_body(resp)
        if rows is None:
            rows = []
        if isinstance(rows, dict):
            rows = [rows]
        if self._single is None:
            return rows
        if len(rows) > 1:
            raise BackendError(
                f"Expected a single {self._table} row, got {len(rows)}.",
                status=406,
                code="PGRST116",
            )
        if not rows:
            if self._single == "maybe":
                return None
            raise BackendError(
                f"No {self._table} row matched.",
                status=406,
                code="PGRST116",
            )
        return rows[0]


def _json_body(resp: requests.Response) -> Any:
    if not (resp.text or "").strip():
        return None
    try:
        return resp.json()
    except ValueError as e:
        raise BackendError(f"Backend returned invalid JSON ({resp.status_code}).") from e


# -------------------------------------------------
# Connection
# -------------------------------------------------

class Connection:
    def __init__(self, base_url: str, api_key: str, bearer: str, timeout: int):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.bearer = bearer
        self.timeout = timeout
        self.session = _session_factory()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.bearer}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    def request(
        self,
        method: str,
        path: str,
        params: Any = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(headers),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise BackendError(f"Network error calling {path}: {e}") from e
        if resp.status_code >= 400:
            err = _error_from_response(resp)
            log.debug("%s %s failed: %s", method, path, err.message)
            raise err
        return resp

    def table(self, name: str) -> Query:
        return Query(self, name)

    def auth_request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Any = None,
    ) -> Dict[str, Any]:
        resp = self.request(method, f"{AUTH_PREFIX}{path}", params=params, json=json)
        payload = _json_body(resp)
        return payload if isinstance(payload, dict) else {}


def get_conn(access_token: Optional[str] = None, service: bool = False) -> Connection:
    try:
        url, anon_key = config.validate_backend_settings()
    except ValueError as e:
        raise BackendError(str(e)) from e
    timeout = max(1, int(config.REQUEST_TIMEOUT or 15))
    if service:
        service_key = (config.SUPABASE_SERVICE_KEY or "").strip()
        if not service_key:
            raise BackendError("Service-role key is not configured (AACFORMS_SUPABASE_SERVICE_KEY).")
        return Connection(url, service_key, service_key, timeout)
    bearer = access_token or current_access_token() or anon_key
    return Connection(url, anon_key, bearer, timeout)


def check_connection() -> Dict[str, Any]:
    try:
        with get_conn() as conn:
            conn.request("GET", f"{REST_PREFIX}/")
            conn.table("profiles").select("id").limit(1).execute()
    except BackendError as e:
        log.error("Backend connectivity check failed: %s", e.message)
        return {"success": False, "error": e.message}
    log.info("Backend connectivity check passed")
    return {"success": True, "error": None}
