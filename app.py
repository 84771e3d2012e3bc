# app.py - AAC Forms
# Flask web client: sign-in, assigned-forms dashboard, form fill / review,
# teammate co-submission, annual leave, JSON API, admin diagnostics, CLI.

from __future__ import annotations

import calendar
import html
import json
import logging
import secrets
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import click
from flask import Flask, g, jsonify, redirect, request, session, url_for
from werkzeug.exceptions import HTTPException

import auth
import config
import db
import diagnostics as diag
from assignments import (
    AssignedForm,
    Teammate,
    dashboard_rows,
    fetch_assigned_forms,
    fetch_form_teammates,
    get_assignment,
    status_label,
)
from leave import LeaveSelection, as_date, format_date, get_user_annual_leave, marked_dates, save_annual_leave
from questions import (
    LONG_TEXT,
    MULTIPLE_SELECT,
    SINGLE_SELECT,
    AnswerStore,
    FormValidationError,
    RenderedQuestion,
    build_form,
)
from submissions import SubmissionError, load_submitted_answers, submit_form, teammate_confirmation

log = logging.getLogger(__name__)

APP_NAME = config.APP_NAME
APP_VERSION = config.APP_VERSION
SECRET_KEY = config.SECRET_KEY or secrets.token_urlsafe(32)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or config.LOG_LEVEL or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


configure_logging()

app = Flask(__name__)
app.secret_key = SECRET_KEY
app.permanent_session_lifetime = timedelta(days=30)

UI_BRAND = {
    "name": APP_NAME,
    "primary": "#1F6FEB",
}

STATUS_COLORS = {
    "completed": "#15803D",
    "pending": "#B45309",
    "in_progress": "#1D4ED8",
    "overdue": "#B91C1C",
    "on_leave": "#6D28D9",
}


# ---------------------------
# Request context
# ---------------------------

SESSION_KEYS = ("access_token", "refresh_token", "user_id", "user_email")


def _store_session(s: auth.AuthSession) -> None:
    session["access_token"] = s.access_token
    session["refresh_token"] = s.refresh_token
    session["user_id"] = s.user_id
    session["user_email"] = s.email
    session.permanent = True


def _clear_session() -> None:
    for k in SESSION_KEYS:
        session.pop(k, None)


def _load_user_context():
    token = session.get("access_token")
    if not token:
        return None
    try:
        user = auth.get_current_user(token)
        if not user and session.get("refresh_token"):
            # access token expired; trade the refresh token for a new one
            renewed = auth.refresh_session(session["refresh_token"])
            _store_session(renewed)
            user = auth.get_current_user(renewed.access_token)
    except auth.AuthError as e:
        log.info("Signing out after failed session refresh: %s", e)
        user = None
    except db.BackendError as e:
        log.error("Error loading current user: %s", e.message)
        return None
    if not user:
        _clear_session()
    return user


@app.before_request
def _before_request_load_user():
    g.user = _load_user_context()
    g.token_handle = db.bind_access_token(session.get("access_token"))


@app.teardown_request
def _teardown_reset_token(exc):
    handle = g.pop("token_handle", None)
    if handle is not None:
        db.reset_access_token(handle)


@app.errorhandler(HTTPException)
def _http_error(e: HTTPException):
    if request.path.startswith(("/api/", "/admin/")):
        return jsonify({"error": e.description}), e.code
    return ui_shell(str(e.code), f"<div class='card'>{_alert(e.description or e.name)}</div>"), e.code


def _current_user_id() -> Optional[str]:
    user = getattr(g, "user", None)
    return str(user.get("id")) if user and user.get("id") else None


def _safe_next(url: Optional[str]) -> str:
    url = (url or "").strip()
    if url.startswith("/") and not url.startswith("//"):
        return url
    return url_for("ui_dashboard")


def _login_redirect():
    return redirect(url_for("ui_login", next=request.path))


# ---------------------------
# UI helpers
# ---------------------------

def _alert(msg: str, kind: str = "error") -> str:
    if not msg:
        return ""
    body = "<br>".join(html.escape(line) for line in str(msg).split("\n"))
    return f"<div class='alert alert-{kind}'>{body}</div>"


def _badge(status: str, label: str) -> str:
    color = STATUS_COLORS.get(status, "#475569")
    return f"<span class='badge' style='background:{color}'>{html.escape(label)}</span>"


def ui_shell(title: str, inner_html: str, show_nav: bool = True) -> str:
    user = getattr(g, "user", None)
    nav_html = ""
    if show_nav and user:
        name = auth.display_name(user)
        nav_html = f"""
        <div class="nav">
          <a class="brand" href="/dashboard">{html.escape(UI_BRAND['name'])}</a>
          <div class="nav-actions">
            <a href="/dashboard">Dashboard</a>
            <a href="/leave">Annual leave</a>
            <span class="muted">{html.escape(name)}</span>
            <a href="/logout">Log out</a>
          </div>
        </div>
        """
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{html.escape(title)} | {html.escape(UI_BRAND['name'])}</title>
  <style>
    body {{ font-family: system-ui, sans-serif; margin: 0; background: #F8FAFC; color: #0F172A; }}
    .nav {{ display: flex; justify-content: space-between; align-items: center; padding: 14px 24px; background: #fff; border-bottom: 1px solid #E2E8F0; }}
    .nav-actions a, .nav-actions span {{ margin-left: 16px; }}
    .brand {{ font-weight: 700; color: {UI_BRAND['primary']}; text-decoration: none; }}
    .container {{ max-width: 960px; margin: 24px auto; padding: 0 16px; }}
    .card {{ background: #fff; border: 1px solid #E2E8F0; border-radius: 12px; padding: 20px; margin-bottom: 16px; }}
    .alert {{ border-radius: 10px; padding: 12px 14px; margin-bottom: 14px; }}
    .alert-error {{ background: #FEF2F2; border: 1px solid #FECACA; color: #991B1B; }}
    .alert-success {{ background: #F0FDF4; border: 1px solid #BBF7D0; color: #166534; }}
    .alert-info {{ background: #EFF6FF; border: 1px solid #BFDBFE; color: #1E3A8A; }}
    .badge {{ color: #fff; border-radius: 999px; padding: 2px 10px; font-size: 12px; }}
    .muted {{ color: #64748B; font-size: 14px; }}
    table {{ width: 100%; border-collapse: collapse; }}
    th, td {{ text-align: left; padding: 8px; border-bottom: 1px solid #E2E8F0; font-size: 14px; }}
    .question {{ margin-bottom: 18px; }}
    .sub {{ margin: 8px 0 8px 16px; }}
    .cal td {{ text-align: center; }}
    .cal .existing {{ background: #EDE9FE; }}
    .cal .selected {{ background: #DBEAFE; font-weight: 700; }}
    .btn {{ background: {UI_BRAND['primary']}; color: #fff; border: 0; border-radius: 8px; padding: 8px 16px; cursor: pointer; }}
    input[type=text], input[type=email], input[type=password], input[type=date], textarea {{ width: 100%; padding: 8px; box-sizing: border-box; }}
  </style>
</head>
<body>
  {nav_html}
  <div class="container">
    <h1>{html.escape(title)}</h1>
    {inner_html}
  </div>
</body>
</html>"""


# ---------------------------
# Auth pages
# ---------------------------

def _credentials_form(action: str, button: str, err: str = "", msg: str = "", with_password: bool = True, next_url: str = "") -> str:
    pw = (
        "<label>Password<input type='password' name='password' autocomplete='current-password' /></label>"
        if with_password
        else ""
    )
    next_field = f"<input type='hidden' name='next' value='{html.escape(next_url)}' />" if next_url else ""
    return f"""
    <div class="card">
      {_alert(err)}{_alert(msg, "success")}
      <form method="post" action="{action}">
        {next_field}
        <label>Email<input type="email" name="email" value="{html.escape(request.form.get('email') or '')}" /></label>
        {pw}
        <p><button class="btn" type="submit">{html.escape(button)}</button></p>
      </form>
      <p class="muted">
        <a href="/login">Sign in</a> &middot; <a href="/signup">Create account</a> &middot; <a href="/forgot-password">Forgot password?</a>
      </p>
    </div>
    """


@app.route("/login", methods=["GET", "POST"])
def ui_login():
    if getattr(g, "user", None):
        return redirect(url_for("ui_dashboard"))
    err = ""
    next_url = _safe_next(request.values.get("next"))
    if request.method == "POST":
        try:
            s = auth.sign_in(request.form.get("email") or "", request.form.get("password") or "")
        except auth.AuthError as e:
            err = str(e)
        else:
            _store_session(s)
            return redirect(next_url)
    return ui_shell("Sign in", _credentials_form("/login", "Sign in", err=err, next_url=next_url), show_nav=False)


@app.route("/signup", methods=["GET", "POST"])
def ui_signup():
    err = ""
    msg = ""
    if request.method == "POST":
        try:
            auth.sign_up(request.form.get("email") or "", request.form.get("password") or "")
        except auth.AuthError as e:
            err = str(e)
        else:
            msg = "Account created. Check your email to confirm it, then sign in."
    return ui_shell("Create account", _credentials_form("/signup", "Sign up", err=err, msg=msg), show_nav=False)


@app.route("/forgot-password", methods=["GET", "POST"])
def ui_forgot_password():
    err = ""
    msg = ""
    if request.method == "POST":
        try:
            auth.request_password_reset(request.form.get("email") or "")
        except auth.AuthError as e:
            err = str(e)
        else:
            msg = "Password reset email sent. Follow the link in it to choose a new password."
    page = _credentials_form("/forgot-password", "Send reset link", err=err, msg=msg, with_password=False)
    return ui_shell("Reset password", page, show_nav=False)


@app.route("/logout")
def ui_logout():
    auth.sign_out(session.get("access_token"))
    session.clear()
    return redirect(url_for("ui_login"))


# ---------------------------
# Dashboard
# ---------------------------

@app.route("/")
@app.route("/dashboard")
def ui_dashboard():
    uid = _current_user_id()
    if not uid:
        return _login_redirect()
    err = ""
    rows: List[Dict[str, Any]] = []
    try:
        rows = dashboard_rows(fetch_assigned_forms(uid))
    except db.BackendError as e:
        err = f"Failed to load your forms: {e.message}"

    if rows:
        body = "".join(
            f"""
            <tr>
              <td><a href="/form/{html.escape(str(r['assignment_id']))}">{html.escape(r['title'])}</a>
                <div class="muted">{html.escape(r['description'])}</div></td>
              <td>{html.escape(r['module'])}</td>
              <td>{html.escape(r['created_by'])}</td>
              <td>{html.escape(r['due_date'])}</td>
              <td>{html.escape(r['timer'])}</td>
              <td>{_badge(r['status'], r['status_label'])}</td>
            </tr>
            """
            for r in rows
        )
        table = f"""
        <table>
          <thead><tr><th>Form</th><th>Module</th><th>Created by</th><th>Due</th><th>Time left</th><th>Status</th></tr></thead>
          <tbody>{body}</tbody>
        </table>
        """
    elif not err:
        table = "<p class='muted'>No forms have been assigned to you yet.</p>"
    else:
        table = ""
    return ui_shell("Assigned forms", f"<div class='card'>{_alert(err)}{table}</div>")


# ---------------------------
# Form fill / review
# ---------------------------

def _render_input(q: RenderedQuestion, key: str, store: AnswerStore, read_only: bool) -> str:
    kind = q.input_type(key)
    dis = " disabled" if read_only else ""
    name = html.escape(key)
    if kind in (SINGLE_SELECT, MULTIPLE_SELECT):
        multiple = kind == MULTIPLE_SELECT
        input_type = "checkbox" if multiple else "radio"
        items = []
        for opt in q.options_for(key):
            checked = " checked" if store.is_selected(key, opt, multiple) else ""
            items.append(
                f"<label><input type='{input_type}' name='{name}' value='{html.escape(opt)}'{checked}{dis} /> {html.escape(opt)}</label><br>"
            )
        return "".join(items) or "<p class='muted'>No options available</p>"
    value = html.escape(store.get(key))
    if kind == LONG_TEXT:
        return f"<textarea name='{name}' rows='4'{dis}>{value}</textarea>"
    return f"<input type='text' name='{name}' value='{value}'{dis} />"


def _render_question(q: RenderedQuestion, store: AnswerStore, read_only: bool) -> str:
    star = " <span style='color:#B91C1C'>*</span>" if q.required else ""
    head = f"<div class='question'><div><b>{q.number}. {html.escape(q.text)}</b>{star}</div>"
    if q.has_sub_questions:
        parts = "".join(
            f"<div class='sub'><div>{html.escape(s.display_label)}</div>{_render_input(q, s.key, store, read_only)}</div>"
            for s in q.sub_questions
        )
        return head + parts + "</div>"
    return head + _render_input(q, q.id, store, read_only) + "</div>"


def _render_teammates(teammates: List[Teammate], selected: List[str]) -> str:
    if not teammates:
        return ""
    items = "".join(
        f"""<label><input type="checkbox" name="teammates" value="{html.escape(t.user_id)}"{' checked' if t.user_id in selected else ''}{'' if t.available else ' disabled'} />
        {html.escape(t.name)} <span class="muted">{html.escape((t.profile or {}).get('email') or '')}{'' if t.available else ' (' + html.escape(status_label(t.status)) + ')'}</span></label><br>"""
        for t in teammates
    )
    return f"""
    <div class="card">
      <b>Submit for teammates too</b>
      <p class="muted">Selected teammates receive the same answers and their assignments are completed.</p>
      {items}
    </div>
    """


def _form_page(
    assigned: AssignedForm,
    built: List[RenderedQuestion],
    store: AnswerStore,
    teammates: List[Teammate],
    selected: Optional[List[str]] = None,
    err: str = "",
    info: str = "",
    confirm_msg: str = "",
):
    read_only = assigned.is_completed
    form = assigned.form
    meta = f"""
    <p class="muted">Created by {html.escape(auth.display_name(assigned.creator))}
      &middot; Due {html.escape(format_date(assigned.due_date))}</p>
    <p>{html.escape(form.get('description') or '')}</p>
    """
    questions_html = "".join(_render_question(q, store, read_only) for q in built) or "<p class='muted'>This form has no questions.</p>"
    if read_only:
        banner = _alert("This form has been submitted and is read-only.", "info")
        return ui_shell(form.get("title") or "Form", f"<div class='card'>{banner}{_alert(info, 'info')}{meta}{questions_html}</div>")

    confirm_html = ""
    if confirm_msg:
        confirm_html = f"""
        <div class="alert alert-info">{html.escape(confirm_msg)}
          <input type="hidden" name="confirm" value="1" />
          <p><button class="btn" type="submit">Confirm and submit</button>
          <a href="/form/{html.escape(assigned.id)}">Cancel</a></p>
        </div>
        """
    page = f"""
    <form method="post" action="/form/{html.escape(assigned.id)}">
      <div class="card">{_alert(err)}{_alert(info, 'info')}{meta}{questions_html}</div>
      {_render_teammates(teammates, selected or [])}
      {confirm_html}
      <p><button class="btn" type="submit">Submit</button></p>
    </form>
    """
    return ui_shell(form.get("title") or "Form", page)


def _load_assignment_for_user(assignment_id: str, uid: str) -> AssignedForm:
    assigned = get_assignment(assignment_id)
    if str(assigned.employee_id) != uid:
        raise LookupError("Form not found")
    return assigned


def _teammates_for(assigned: AssignedForm, uid: str):
    try:
        return fetch_form_teammates(assigned.form_id, uid), ""
    except db.BackendError as e:
        return [], f"Teammates could not be loaded: {e.message}"


@app.route("/form/<assignment_id>", methods=["GET"])
def ui_form(assignment_id: str):
    uid = _current_user_id()
    if not uid:
        return _login_redirect()
    try:
        assigned = _load_assignment_for_user(assignment_id, uid)
    except LookupError as e:
        return ui_shell("Form", f"<div class='card'>{_alert(str(e))}<a href='/dashboard'>Back to dashboard</a></div>"), 404
    except db.BackendError as e:
        return ui_shell("Form", f"<div class='card'>{_alert(e.message)}</div>"), 502

    built = build_form(assigned.questions)
    store = AnswerStore()
    if assigned.is_completed:
        info = "" if load_submitted_answers(assigned, store) else "Submitted answers could not be loaded."
        return _form_page(assigned, built, store, [], info=info)
    teammates, info = _teammates_for(assigned, uid)
    return _form_page(assigned, built, store, teammates, info=info)


@app.route("/form/<assignment_id>", methods=["POST"])
def ui_form_submit(assignment_id: str):
    uid = _current_user_id()
    if not uid:
        return _login_redirect()
    try:
        assigned = _load_assignment_for_user(assignment_id, uid)
    except LookupError as e:
        return ui_shell("Form", f"<div class='card'>{_alert(str(e))}</div>"), 404
    except db.BackendError as e:
        return ui_shell("Form", f"<div class='card'>{_alert(e.message)}</div>"), 502

    built = build_form(assigned.questions)
    if assigned.is_completed:
        store = AnswerStore()
        load_submitted_answers(assigned, store)
        return _form_page(assigned, built, store, [], info="This form has already been submitted."), 409

    store = AnswerStore.from_form_data(request.form, built)
    teammates, info = _teammates_for(assigned, uid)
    # only teammates still eligible for this form
    allowed = {t.user_id for t in teammates if t.available}
    selected = [t for t in dict.fromkeys(request.form.getlist("teammates")) if t in allowed]

    if selected and not request.form.get("confirm"):
        return _form_page(
            assigned, built, store, teammates, selected=selected, info=info,
            confirm_msg=teammate_confirmation(len(selected)),
        )

    try:
        result = submit_form(assigned, built, store, uid, selected)
    except FormValidationError as e:
        return _form_page(assigned, built, store, teammates, selected=selected, err=str(e)), 400
    except SubmissionError as e:
        return _form_page(assigned, built, store, teammates, selected=selected, err=str(e)), 502

    session["last_submission"] = {
        "title": assigned.form.get("title") or "",
        **result.to_dict(),
    }
    return redirect(url_for("ui_form_success"))


@app.route("/form/success")
def ui_form_success():
    if not _current_user_id():
        return _login_redirect()
    last = session.pop("last_submission", None) or {}
    mates = last.get("teammates") or []
    ok = [m for m in mates if m.get("ok")]
    failed = [m for m in mates if not m.get("ok")]
    details = ""
    if ok:
        details += f"<p>Also submitted for {len(ok)} teammate{'s' if len(ok) != 1 else ''}.</p>"
    if failed:
        details += _alert(f"Submission failed for {len(failed)} teammate(s). Their assignments are unchanged.")
    title = html.escape(last.get("title") or "Your form")
    page = f"""
    <div class="card">
      {_alert("Form submitted successfully", "success")}
      <p>{title} has been submitted.</p>
      {details}
      <p><a class="btn" href="/dashboard">Back to dashboard</a></p>
    </div>
    """
    return ui_shell("Submitted", page)


# ---------------------------
# Annual leave
# ---------------------------

def _month_arg(value: Optional[str]) -> date:
    try:
        return as_date(f"{value}-01") if value else date.today().replace(day=1)
    except ValueError:
        return date.today().replace(day=1)


def _shift_month(first: date, delta: int) -> date:
    m = first.month - 1 + delta
    return date(first.year + m // 12, m % 12 + 1, 1)


def _render_calendar(month: date, selection: LeaveSelection, existing: List[Dict[str, Any]]) -> str:
    last = month.replace(day=calendar.monthrange(month.year, month.month)[1])
    marks = marked_dates(selection, existing, window=(month, last))
    month_s = month.strftime("%Y-%m")
    rows = []
    for week in calendar.Calendar().monthdatescalendar(month.year, month.month):
        cells = []
        for d in week:
            if d.month != month.month:
                cells.append("<td></td>")
                continue
            mark = marks.get(d.isoformat())
            cls = f" class='{mark.kind}'" if mark else ""
            params = {"month": month_s, "pick": d.isoformat()}
            if selection.start:
                params["start"] = selection.start
            if selection.end:
                params["end"] = selection.end
            href = html.escape(url_for("ui_leave", **params))
            cells.append(f"<td{cls}><a href='{href}'>{d.day}</a></td>")
        rows.append("<tr>" + "".join(cells) + "</tr>")
    head = "".join(f"<th>{n}</th>" for n in calendar.day_abbr)
    prev_href = html.escape(url_for("ui_leave", month=_shift_month(month, -1).strftime("%Y-%m")))
    next_href = html.escape(url_for("ui_leave", month=_shift_month(month, 1).strftime("%Y-%m")))
    return f"""
    <p><a href="{prev_href}">&larr;</a> <b>{month.strftime('%B %Y')}</b> <a href="{next_href}">&rarr;</a></p>
    <table class="cal"><thead><tr>{head}</tr></thead><tbody>{''.join(rows)}</tbody></table>
    """


@app.route("/leave", methods=["GET", "POST"])
def ui_leave():
    uid = _current_user_id()
    if not uid:
        return _login_redirect()
    err = ""
    msg = ""
    try:
        selection = LeaveSelection.from_values(
            (request.values.get("start") or "").strip() or None,
            (request.values.get("end") or "").strip() or None,
        )
    except ValueError as e:
        err = str(e)
        selection = LeaveSelection()
    if request.method == "POST" and not err:
        try:
            start, end = selection.save_range()
            save_annual_leave(uid, start, end, request.form.get("reason"))
        except ValueError as e:
            err = str(e)
        except db.BackendError as e:
            err = f"Failed to save annual leave: {e.message}"
        else:
            msg = "Annual leave saved successfully"
            selection.reset()
    elif request.args.get("pick"):
        try:
            selection.pick(request.args["pick"])
        except ValueError as e:
            err = str(e)

    existing: List[Dict[str, Any]] = []
    try:
        existing = get_user_annual_leave(uid)
    except db.BackendError as e:
        err = err or f"Failed to load annual leave: {e.message}"

    month = _month_arg(request.args.get("month"))
    if existing:
        items = "".join(
            f"<tr><td>{html.escape(format_date(r.get('start_date')))}</td><td>{html.escape(format_date(r.get('end_date')))}</td>"
            f"<td>{html.escape(r.get('status') or '')}</td><td>{html.escape(r.get('reason') or '')}</td></tr>"
            for r in existing
        )
        listing = f"<table><thead><tr><th>From</th><th>To</th><th>Status</th><th>Reason</th></tr></thead><tbody>{items}</tbody></table>"
    else:
        listing = "<p class='muted'>No annual leave recorded.</p>"

    page = f"""
    <div class="card">
      {_alert(err)}{_alert(msg, "success")}
      <p>{html.escape(selection.instructions)}</p>
      {_render_calendar(month, selection, existing)}
      <form method="post" action="/leave">
        <label>Start date<input type="date" name="start" value="{html.escape(selection.start or '')}" /></label>
        <label>End date<input type="date" name="end" value="{html.escape(selection.end or '')}" /></label>
        <label>Reason<input type="text" name="reason" /></label>
        <p><button class="btn" type="submit">Save annual leave</button> <a href="/leave">Clear</a></p>
      </form>
    </div>
    <div class="card"><b>Your leave</b>{listing}</div>
    """
    return ui_shell("Annual leave", page)


# ---------------------------
# JSON API
# ---------------------------

@app.route("/api")
def api_root():
    probe = db.check_connection()
    return jsonify(
        {
            "name": f"{APP_NAME} API",
            "version": APP_VERSION,
            "backend": {"reachable": probe["success"], "error": probe["error"]},
            "endpoints": [
                "GET /api/v1/assignments",
                "GET /api/v1/forms/<form_id>/teammates",
            ],
        }
    )


@app.route("/api/v1/assignments", methods=["GET"])
def api_assignments():
    uid = _current_user_id()
    if not uid:
        return jsonify({"error": "Not signed in"}), 401
    try:
        rows = dashboard_rows(fetch_assigned_forms(uid))
    except db.BackendError as e:
        return jsonify({"error": e.message}), 502
    return jsonify(rows)


@app.route("/api/v1/forms/<form_id>/teammates", methods=["GET"])
def api_form_teammates(form_id: str):
    uid = _current_user_id()
    if not uid:
        return jsonify({"error": "Not signed in"}), 401
    try:
        mates = fetch_form_teammates(form_id, uid)
    except db.BackendError as e:
        return jsonify({"error": e.message}), 502
    return jsonify([t.to_dict() for t in mates])


# ---------------------------
# Admin diagnostics
# ---------------------------

def require_admin() -> bool:
    expected = config.ADMIN_KEY
    if not expected:
        return False
    key = request.args.get("key") or request.headers.get("X-Admin-Key") or ""
    return secrets.compare_digest(key, expected)


def _admin_denied():
    if not config.ADMIN_KEY:
        return jsonify({"error": "Diagnostics are disabled (AACFORMS_ADMIN_KEY is not set)"}), 403
    return jsonify({"error": "Admin key required"}), 403


def _to_json(data: Any):
    # backend rows can carry non-JSON-native values
    return app.response_class(json.dumps(data, default=str), mimetype="application/json")


@app.route("/admin/diagnostics/forms", methods=["GET"])
def admin_debug_forms():
    if not require_admin():
        return _admin_denied()
    try:
        report = diag.debug_form_issues(request.args.get("title") or "")
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except db.BackendError as e:
        return jsonify(e.to_dict()), 502
    if report is None:
        return jsonify({"error": "No forms found"}), 404
    return _to_json(report)


@app.route("/admin/diagnostics/access", methods=["GET"])
def admin_debug_access():
    if not require_admin():
        return _admin_denied()
    report = diag.debug_access(session.get("access_token"), request.args.get("user_id"))
    return _to_json(report)


@app.route("/admin/diagnostics/forms/<form_id>/mismatch", methods=["GET"])
def admin_assignment_mismatch(form_id: str):
    if not require_admin():
        return _admin_denied()
    try:
        report = diag.diagnose_assignment_mismatch(form_id)
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    except db.BackendError as e:
        return jsonify(e.to_dict()), 502
    return _to_json(report.to_dict())


@app.route("/admin/diagnostics/forms/<form_id>/fix", methods=["POST"])
def admin_fix_assignments(form_id: str):
    if not require_admin():
        return _admin_denied()
    apply = (request.values.get("apply") or "").strip().lower() in ("1", "true", "yes")
    try:
        result = diag.fix_assignment_mismatch(form_id, apply=apply)
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except db.BackendError as e:
        return jsonify(e.to_dict()), 502
    return _to_json(result)


@app.route("/admin/diagnostics/forms/<form_id>/verify", methods=["GET"])
def admin_verify_assignments(form_id: str):
    if not require_admin():
        return _admin_denied()
    try:
        result = diag.verify_assignment_fix(form_id, request.args.get("user_id") or _current_user_id())
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    except db.BackendError as e:
        return jsonify(e.to_dict()), 502
    return _to_json(result)


# ---------------------------
# CLI
# ---------------------------

def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@app.cli.command("diagnose-assignments")
@click.argument("form_id")
def cli_diagnose_assignments(form_id: str):
    """Compare a form's metadata assignees with its assignment rows."""
    _echo_json(diag.diagnose_assignment_mismatch(form_id).to_dict())


@app.cli.command("fix-assignments")
@click.argument("form_id")
@click.option("--apply", is_flag=True, help="Insert the missing rows with the service-role key.")
def cli_fix_assignments(form_id: str, apply: bool):
    """Plan (or with --apply, create) missing assignment rows."""
    result = diag.fix_assignment_mismatch(form_id, apply=apply)
    _echo_json(result)
    if not result.get("needs_manual_fix"):
        return
    if result.get("applied"):
        still = result["verification"]["still_missing"]
        click.echo(f"{len(still)} assignment row(s) still missing after the fix.", err=True)
    else:
        click.echo(f"{len(result['planned'])} assignment row(s) missing; rerun with --apply to create them.", err=True)


@app.cli.command("verify-assignments")
@click.argument("form_id")
@click.option("--user", "user_id", default=None, help="Also probe teammate visibility for this user id.")
def cli_verify_assignments(form_id: str, user_id: Optional[str]):
    _echo_json(diag.verify_assignment_fix(form_id, user_id))


# ---------------------------
# Boot
# ---------------------------
if __name__ == "__main__":
    config.validate_backend_settings()
    app.run(host=config.HOST, port=config.PORT, debug=config.DEBUG)
