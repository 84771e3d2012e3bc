# diagnostics.py - AAC Forms
# Data-integrity tools: form lookups, access probes, and reconciliation of
# forms.metadata.assigned_employees against real form_assignments rows.

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from assignments import fetch_form_teammates, load_profiles
from auth import display_name
from db import BackendError, Connection, get_conn, unique

log = logging.getLogger(__name__)


def _json_obj(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def metadata_users(form: Dict[str, Any]) -> List[str]:
    users = _json_obj(form.get("metadata")).get("assigned_employees") or []
    if not isinstance(users, list):
        return []
    return unique(str(u) for u in users if u)


def _person(p: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": p.get("id"), "name": display_name(p), "email": p.get("email")}


@dataclass
class MismatchReport:
    form: Dict[str, Any]
    metadata_users: List[str] = field(default_factory=list)
    assignment_users: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    extra: List[str] = field(default_factory=list)
    assignments: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.missing and not self.extra

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["in_sync"] = self.in_sync
        return d


# -------------------------------------------------
# Form lookup
# -------------------------------------------------

def debug_form_issues(title_fragment: str) -> Optional[Dict[str, Any]]:
    fragment = (title_fragment or "").strip()
    if not fragment:
        raise ValueError("Please enter a form title to search for")
    with get_conn() as conn:
        forms = conn.table("forms").select("*").ilike("title", f"%{fragment}%").execute()
        if not forms:
            log.info("No forms found with title containing %r", fragment)
            return None
        target = forms[0]
        report: Dict[str, Any] = {
            "matches": [{"id": f.get("id"), "title": f.get("title"), "created_by": f.get("created_by")} for f in forms],
            "form": target,
            "creator": None,
            "assignments": [],
            "assigned_profiles": [],
            "warnings": [],
        }
        if target.get("created_by"):
            try:
                creator = (
                    conn.table("profiles").select("*").eq("id", target["created_by"]).maybe_single().execute()
                )
            except BackendError as e:
                report["warnings"].append(f"Creator profile error: {e.message}")
            else:
                if creator:
                    report["creator"] = _person(creator)
                else:
                    report["warnings"].append("Creator profile not found")
        else:
            report["warnings"].append("Form has no created_by field")

        assignments = conn.table("form_assignments").select("*").eq("form_id", target.get("id")).execute()
        report["assignments"] = [
            {
                "id": a.get("id"),
                "employee_id": a.get("employee_id"),
                "status": a.get("status"),
                "assigned_by": a.get("assigned_by"),
            }
            for a in assignments
        ]
        try:
            profiles = load_profiles(conn, (a.get("employee_id") for a in assignments), "*")
        except BackendError as e:
            report["warnings"].append(f"User profiles error: {e.message}")
        else:
            report["assigned_profiles"] = [_person(p) for p in profiles.values()]
    log.info("Form diagnosis for %r: %d assignments, %d warnings", fragment, len(report["assignments"]), len(report["warnings"]))
    return report


# -------------------------------------------------
# Access probes
# -------------------------------------------------

def _probe(name: str, fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    try:
        result = fn()
    except BackendError as e:
        log.warning("Access probe %s failed: %s", name, e.message)
        return {"ok": False, "error": e.message}
    return {"ok": True, **result}


def debug_access(access_token: Optional[str] = None, probe_user_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Reports which reads the caller's row-level policies allow. Each probe is
    independent; a failing probe is reported, never raised.
    """
    report: Dict[str, Any] = {}
    with get_conn(access_token=access_token) as conn:
        report["auth_user"] = _probe("auth_user", lambda: _auth_user(conn))
        user_id = report["auth_user"].get("id")
        if user_id:
            report["own_profile"] = _probe(
                "own_profile",
                lambda: {"profile": _person(conn.table("profiles").select("*").eq("id", user_id).single().execute())},
            )
        report["all_profiles"] = _probe(
            "all_profiles",
            lambda: {"count": len(conn.table("profiles").select("id, first_name, last_name, email").execute())},
        )
        if probe_user_id:
            report["specific_profile"] = _probe(
                "specific_profile",
                lambda: {"profile": _person(conn.table("profiles").select("*").eq("id", probe_user_id).single().execute())},
            )
        report["assignments"] = _probe("assignments", lambda: _assignment_summary(conn))
    return report


def _auth_user(conn: Connection) -> Dict[str, Any]:
    user = conn.auth_request("GET", "/user")
    return {"id": user.get("id"), "email": user.get("email")}


def _assignment_summary(conn: Connection) -> Dict[str, Any]:
    rows = conn.table("form_assignments").select("*").execute()
    return {"count": len(rows), "employee_ids": unique(r.get("employee_id") for r in rows)}


# -------------------------------------------------
# Metadata vs assignment reconciliation
# -------------------------------------------------

def _diagnose(conn: Connection, form_id: str) -> MismatchReport:
    form = conn.table("forms").select("*").eq("id", form_id).maybe_single().execute()
    if not form:
        raise LookupError(f"Form {form_id} not found")
    assignments = conn.table("form_assignments").select("*").eq("form_id", form_id).execute()
    meta = metadata_users(form)
    assigned = unique(str(a.get("employee_id")) for a in assignments if a.get("employee_id"))
    assigned_set = set(assigned)
    meta_set = set(meta)
    return MismatchReport(
        form=form,
        metadata_users=meta,
        assignment_users=assigned,
        missing=[u for u in meta if u not in assigned_set],
        extra=[u for u in assigned if u not in meta_set],
        assignments=assignments,
    )


def diagnose_assignment_mismatch(form_id: str) -> MismatchReport:
    with get_conn() as conn:
        report = _diagnose(conn, form_id)
    log.info(
        "Assignment diagnosis for form %s: metadata=%d assigned=%d missing=%d extra=%d",
        form_id,
        len(report.metadata_users),
        len(report.assignment_users),
        len(report.missing),
        len(report.extra),
    )
    return report


def plan_missing_assignments(report: MismatchReport) -> List[Dict[str, Any]]:
    form = report.form
    due_date = _json_obj(form.get("settings")).get("due_date") or None
    return [
        {
            "form_id": form.get("id"),
            "employee_id": user_id,
            "assigned_by": form.get("created_by"),
            "status": "pending",
            "due_date": due_date,
        }
        for user_id in report.missing
    ]


def fix_assignment_mismatch(form_id: str, apply: bool = False) -> Dict[str, Any]:
    report = diagnose_assignment_mismatch(form_id)
    out = report.to_dict()
    if not report.missing:
        log.info("No missing assignments to fix for form %s", form_id)
        out.update({"planned": [], "applied": False, "needs_manual_fix": False})
        return out

    planned = plan_missing_assignments(report)
    out["planned"] = planned
    if not apply:
        out.update({"applied": False, "needs_manual_fix": True})
        return out

    if not report.form.get("created_by"):
        raise ValueError("Form has no creator; cannot set assigned_by on new assignments.")
    # Other employees' rows are invisible to a normal session.
    with get_conn(service=True) as conn:
        created = conn.table("form_assignments").insert(planned).execute()
    log.warning("Created %d missing assignments for form %s", len(created), form_id)
    verification = verify_assignment_fix(form_id)
    out.update(
        {
            "applied": True,
            "created": created,
            "verification": verification,
            "needs_manual_fix": not verification["fix_worked"],
        }
    )
    return out


def verify_assignment_fix(form_id: str, current_user_id: Optional[str] = None) -> Dict[str, Any]:
    report = diagnose_assignment_mismatch(form_id)
    out: Dict[str, Any] = {
        "form": report.form,
        "metadata_users": report.metadata_users,
        "assignment_users": report.assignment_users,
        "still_missing": report.missing,
        "extra": report.extra,
        "assignments": [
            {
                "employee_id": a.get("employee_id"),
                "status": a.get("status"),
                "assigned_by": a.get("assigned_by"),
                "created_at": a.get("created_at"),
            }
            for a in report.assignments
        ],
        "fix_worked": not report.missing,
    }
    if current_user_id:
        try:
            mates = fetch_form_teammates(form_id, current_user_id, include_all=True)
        except BackendError as e:
            out["teammates"] = {"ok": False, "error": e.message}
        else:
            out["teammates"] = {"ok": True, "count": len(mates), "details": [m.to_dict() for m in mates]}
    return out
