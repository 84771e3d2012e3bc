# auth.py - AAC Forms
# Email/password sessions against the hosted auth API + profile lookup

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from db import BackendError, check_connection, get_conn

log = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class AuthError(ValueError):
    pass


@dataclass
class AuthSession:
    access_token: str
    refresh_token: str
    user_id: str
    email: str


def _require_credentials(email: str, password: str) -> str:
    clean = (email or "").strip()
    if not clean or not password:
        raise AuthError("Please fill in both email and password")
    return clean


def _session_from(payload: Dict[str, Any], email: str = "") -> AuthSession:
    user = payload.get("user") or {}
    token = payload.get("access_token") or ""
    if not token or not user.get("id"):
        raise AuthError("Authentication service returned no session.")
    return AuthSession(
        access_token=token,
        refresh_token=payload.get("refresh_token") or "",
        user_id=str(user["id"]),
        email=user.get("email") or email,
    )


def sign_in(email: str, password: str) -> AuthSession:
    clean = _require_credentials(email, password)
    probe = check_connection()
    if not probe["success"]:
        raise AuthError(f"Unable to connect to authentication service: {probe['error']}")
    try:
        with get_conn() as conn:
            payload = conn.auth_request(
                "POST",
                "/token",
                params={"grant_type": "password"},
                json={"email": clean, "password": password},
            )
    except BackendError as e:
        log.warning("Login failed for %s: %s", clean, e.message)
        raise AuthError(e.message) from e
    session = _session_from(payload, clean)
    log.info("Login successful for %s", clean)
    return session


def refresh_session(refresh_token: Optional[str]) -> AuthSession:
    """Trades a refresh token for a new access token (the old refresh token is spent)."""
    if not refresh_token:
        raise AuthError("No refresh token")
    try:
        with get_conn() as conn:
            payload = conn.auth_request(
                "POST",
                "/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
            )
    except BackendError as e:
        log.info("Session refresh rejected: %s", e.message)
        raise AuthError(e.message) from e
    session = _session_from(payload)
    log.info("Session refreshed for %s", session.user_id)
    return session


def sign_up(email: str, password: str) -> Dict[str, Any]:
    clean = _require_credentials(email, password)
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    try:
        with get_conn() as conn:
            payload = conn.auth_request("POST", "/signup", json={"email": clean, "password": password})
    except BackendError as e:
        raise AuthError(e.message) from e
    log.info("Signup successful for %s", clean)
    return payload


def request_password_reset(email: str) -> None:
    clean = (email or "").strip()
    if not clean:
        raise AuthError("Please enter your email address to reset your password")
    try:
        with get_conn() as conn:
            conn.auth_request("POST", "/recover", json={"email": clean})
    except BackendError as e:
        raise AuthError(e.message) from e


def sign_out(access_token: Optional[str]) -> None:
    if not access_token:
        return
    try:
        with get_conn(access_token=access_token) as conn:
            conn.auth_request("POST", "/logout")
    except BackendError as e:
        # Local session is dropped by the caller either way.
        log.warning("Token revocation failed: %s", e.message)


def get_current_user(access_token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Resolves the signed-in auth user to its profiles row.
    None means "not signed in"; a user without a profile is an error.
    """
    if not access_token:
        return None
    with get_conn(access_token=access_token) as conn:
        try:
            user = conn.auth_request("GET", "/user")
        except BackendError as e:
            if e.status in (401, 403):
                log.info("Session token rejected: %s", e.message)
                return None
            raise
        user_id = user.get("id")
        if not user_id:
            return None
        return conn.table("profiles").select("*").eq("id", user_id).single().execute()


def display_name(profile: Optional[Dict[str, Any]]) -> str:
    if not profile:
        return "Unknown"
    name = f"{profile.get('first_name') or ''} {profile.get('last_name') or ''}".strip()
    return name or (profile.get("email") or "").strip() or "Unknown"
