# assignments.py - AAC Forms
# Assigned-form listing, assignment detail, dashboard rows, teammates

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from auth import display_name
from db import BackendError, Connection, get_conn, index_by, unique
from leave import ON_LEAVE, calculate_time_remaining, format_date

log = logging.getLogger(__name__)

PROFILE_COLUMNS = "id, first_name, last_name, email, avatar_url"

STATUS_LABELS = {
    "completed": "Completed",
    "pending": "Pending",
    "in_progress": "In Progress",
    "overdue": "Overdue",
    "on_leave": "On Leave",
}

# "assigned" is a legacy status still present on older rows.
AVAILABLE_TEAMMATE_STATUSES = ("pending", "in_progress", "assigned")

DEFAULT_MODULE = "Monitoring"


def status_label(status: Optional[str]) -> str:
    return STATUS_LABELS.get((status or "").strip().lower(), "Unknown")


@dataclass
class AssignedForm:
    assignment: Dict[str, Any]
    form: Dict[str, Any]
    questions: List[Dict[str, Any]] = field(default_factory=list)
    creator: Optional[Dict[str, Any]] = None

    @property
    def id(self) -> str:
        return str(self.assignment.get("id"))

    @property
    def form_id(self) -> str:
        return str(self.assignment.get("form_id") or self.form.get("id"))

    @property
    def employee_id(self) -> Optional[str]:
        return self.assignment.get("employee_id")

    @property
    def status(self) -> str:
        return (self.assignment.get("status") or "").strip().lower()

    @property
    def due_date(self) -> Optional[str]:
        return self.assignment.get("due_date")

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


@dataclass
class Teammate:
    user_id: str
    assignment_id: str
    profile: Optional[Dict[str, Any]]
    status: str
    due_date: Optional[str]

    @property
    def name(self) -> str:
        return display_name(self.profile)

    @property
    def available(self) -> bool:
        return self.status in AVAILABLE_TEAMMATE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "assignment_id": self.assignment_id,
            "name": self.name,
            "email": (self.profile or {}).get("email"),
            "avatar_url": (self.profile or {}).get("avatar_url"),
            "status": self.status,
            "due_date": self.due_date,
            "available": self.available,
        }


# -------------------------------------------------
# Batch loaders
# -------------------------------------------------

def _load_forms(conn: Connection, form_ids: List[Any]) -> Dict[Any, Dict[str, Any]]:
    if not form_ids:
        return {}
    return index_by(conn.table("forms").select("*").in_("id", form_ids).execute())


def _load_questions(conn: Connection, form_ids: List[Any]) -> Dict[Any, List[Dict[str, Any]]]:
    out: Dict[Any, List[Dict[str, Any]]] = {fid: [] for fid in form_ids}
    if not form_ids:
        return out
    rows = (
        conn.table("form_questions")
        .select("*")
        .in_("form_id", form_ids)
        .order("order_index")
        .execute()
    )
    for r in rows:
        out.setdefault(r.get("form_id"), []).append(r)
    return out


def load_profiles(conn: Connection, user_ids: Iterable[Any], columns: str = PROFILE_COLUMNS) -> Dict[Any, Dict[str, Any]]:
    ids = unique(user_ids)
    if not ids:
        return {}
    return index_by(conn.table("profiles").select(columns).in_("id", ids).execute())


def status_breakdown(rows: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    return dict(Counter((r.get("status") or "unknown") for r in rows))


# -------------------------------------------------
# Assigned forms
# -------------------------------------------------

def fetch_assigned_forms(user_id: str) -> List[AssignedForm]:
    with get_conn() as conn:
        assignments = (
            conn.table("form_assignments")
            .select("*")
            .eq("employee_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        if not assignments:
            log.info("No form assignments found for %s", user_id)
            return []
        forms = _load_forms(conn, unique(a.get("form_id") for a in assignments))
        active = [
            a for a in assignments
            if forms.get(a.get("form_id")) and forms[a.get("form_id")].get("is_active")
        ]
        active_form_ids = unique(a.get("form_id") for a in active)
        questions = _load_questions(conn, active_form_ids)
        creators = load_profiles(conn, (forms[fid].get("created_by") for fid in active_form_ids), "id, first_name, last_name, email")
    out = []
    for a in active:
        form = forms[a.get("form_id")]
        out.append(
            AssignedForm(
                assignment=a,
                form=form,
                questions=questions.get(a.get("form_id"), []),
                creator=creators.get(form.get("created_by")),
            )
        )
    log.info("Fetched %d active assigned forms for %s (%d assignments total)", len(out), user_id, len(assignments))
    return out


def get_assignment(assignment_id: str) -> AssignedForm:
    with get_conn() as conn:
        assignment = (
            conn.table("form_assignments").select("*").eq("id", assignment_id).maybe_single().execute()
        )
        if not assignment:
            raise LookupError("Form not found")
        form = conn.table("forms").select("*").eq("id", assignment.get("form_id")).maybe_single().execute()
        if not form:
            raise LookupError("Form not found")
        questions = _load_questions(conn, [form.get("id")]).get(form.get("id"), [])
        creator = None
        if form.get("created_by"):
            try:
                creator = (
                    conn.table("profiles")
                    .select("id, first_name, last_name, email")
                    .eq("id", form.get("created_by"))
                    .maybe_single()
                    .execute()
                )
            except BackendError as e:
                log.error("Error fetching creator profile for form %s: %s", form.get("id"), e.message)
    return AssignedForm(assignment=assignment, form=form, questions=questions, creator=creator)


def dashboard_rows(assigned: Iterable[AssignedForm], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    rows = []
    for item in assigned:
        timer = calculate_time_remaining(item.due_date, item.employee_id, now=now)
        status = "on_leave" if timer == ON_LEAVE else item.status
        rows.append(
            {
                "id": item.form.get("id"),
                "assignment_id": item.id,
                "title": item.form.get("title") or "",
                "description": item.form.get("description") or "No description",
                "module": DEFAULT_MODULE,
                "due_date": format_date(item.due_date),
                "fill_form_date": format_date(item.assignment.get("created_at")),
                "created_by": display_name(item.creator),
                "last_update": format_date(item.assignment.get("updated_at")),
                "timer": timer,
                "status": status,
                "status_label": status_label(status),
            }
        )
    return rows


# -------------------------------------------------
# Teammates
# -------------------------------------------------

def fetch_form_teammates(form_id: str, current_user_id: str, include_all: bool = False) -> List[Teammate]:
    with get_conn() as conn:
        try:
            me = conn.table("profiles").select("id, email").eq("id", current_user_id).maybe_single().execute()
        except BackendError as e:
            raise BackendError(
                f"Failed to verify current user: {e.message}", status=e.status, code=e.code
            ) from e
        if not me:
            raise BackendError("Failed to verify current user: Current user profile not found")

        others = (
            conn.table("form_assignments")
            .select("*")
            .eq("form_id", form_id)
            .neq("employee_id", current_user_id)
            .execute()
        )
        if not others:
            log.info("No other assignments for form %s (single assignee, missing rows, or access policy)", form_id)
            return []
        log.debug("Teammate status breakdown for form %s: %s", form_id, status_breakdown(others))

        if include_all:
            available = others
        else:
            available = [a for a in others if (a.get("status") or "") in AVAILABLE_TEAMMATE_STATUSES]
        if not available:
            # nobody open: fall back to every other assignee
            log.warning(
                "No teammates with an open status on form %s (found %s); returning all assignees",
                form_id, sorted(status_breakdown(others)),
            )
            available = others
        profiles = load_profiles(conn, (a.get("employee_id") for a in available))

    return [
        Teammate(
            user_id=a.get("employee_id"),
            assignment_id=a.get("id"),
            profile=profiles.get(a.get("employee_id")),
            status=a.get("status") or "",
            due_date=a.get("due_date"),
        )
        for a in available
    ]
