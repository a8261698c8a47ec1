from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for
from sqlalchemy.orm import Session

from app.desk.models import Permission, Role, User

# key -> display name
PERMISSIONS: dict[str, str] = {
    "portal.use": "Portal: use student portal",
    "complaints.submit": "Complaints: submit",
    "admin.view": "Admin: view shell",
    "complaints.view_all": "Complaints: view all",
    "complaints.triage": "Complaints: triage (status, priority, comments)",
    "complaints.assign": "Complaints: assign",
    "complaints.merge": "Complaints: merge",
    "complaints.delete": "Complaints: delete",
    "complaints.export": "Complaints: export",
    "sla.manage": "SLA: manage policies and monitor",
    "rules.manage": "Assignment rules: manage",
    "content.manage": "Content: manage categories, FAQs, knowledge base",
    "templates.manage": "Complaint templates: manage",
    "polls.manage": "Polls: manage",
    "polls.vote": "Polls: vote",
    "users.manage": "Users: manage roles",
    "ai.reply": "AI: generate smart replies",
    "ai.train": "AI: manage training data",
}

ROLE_PERMISSIONS: dict[str, tuple[str, tuple[str, ...]]] = {
    "student": ("Student", ("portal.use", "complaints.submit", "polls.vote")),
    "admin": (
        "Administrator",
        tuple(k for k in PERMISSIONS if k not in ("portal.use", "complaints.submit")),
    ),
}


def ensure_roles(s: Session) -> dict[str, Role]:
    """
    Idempotently create every permission and the student/admin roles.
    Shared by the seed script, registration and tests.
    """
    perms: dict[str, Permission] = {p.key: p for p in s.query(Permission).all()}
    for key, name in PERMISSIONS.items():
        if key not in perms:
            p = Permission(key=key, name=name)
            s.add(p)
            perms[key] = p

    roles: dict[str, Role] = {}
    for role_key, (role_name, perm_keys) in ROLE_PERMISSIONS.items():
        role = s.query(Role).filter(Role.key == role_key).one_or_none()
        if not role:
            role = Role(key=role_key, name=role_name)
            s.add(role)
        for k in perm_keys:
            if perms[k] not in role.permissions:
                role.permissions.append(perms[k])
        roles[role_key] = role
    s.flush()
    return roles


def get_role(s: Session, key: str) -> Role:
    role = s.query(Role).filter(Role.key == key).one_or_none()
    if role is None:
        role = ensure_roles(s)[key]
    return role


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def is_staff(user: User | None) -> bool:
    return user_has_permission(user, "complaints.view_all")


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> login page; JSON callers get a plain 401.
            if not user or not user.is_active:
                if request.is_json or request.accept_mimetypes.best == "application/json":
                    abort(401)
                nxt = request.full_path or request.path
                # Avoid trailing '?' from full_path when there is no query string.
                if nxt.endswith("?"):
                    nxt = nxt[:-1]
                return redirect(url_for("auth.login_get", next=nxt))
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def login_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Any active user; object-level checks are left to the view."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            if request.is_json or request.accept_mimetypes.best == "application/json":
                abort(401)
            return redirect(url_for("auth.login_get", next=request.path))
        return fn(*args, **kwargs)

    return wrapped
