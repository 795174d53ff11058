from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for
from sqlalchemy.orm import Query, Session

from app.procurement.errors import ForbiddenError, NotFoundError, UnauthorizedError
from app.procurement.models import User


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    # Admins hold every permission implicitly.
    if user.is_admin:
        return True
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def user_permission_keys(user: User | None) -> list[str]:
    if not user:
        return []
    perms = set()
    for r in user.roles or []:
        for p in r.permissions or []:
            perms.add(p.key)
    return sorted(perms)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """HTML pages: anonymous users go to the login form, others get a 403 page."""

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
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


def require_api_permission(permission_key: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """JSON endpoints: 401 when anonymous, 403 with the missing key otherwise.

    Passing no key only requires an authenticated user.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                raise UnauthorizedError()
            if permission_key and not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                raise ForbiddenError(details={"missing_permission": permission_key})
            return fn(*args, **kwargs)

        wrapped.required_permission = permission_key  # type: ignore[attr-defined]
        return wrapped

    return decorator


def can_view_all(user: User | None) -> bool:
    return user_has_permission(user, "data.view_all")


def scope_query(q: Query, model: Any, user: User | None) -> Query:
    """Restrict a query to the rows the user may see.

    Tenant boundary first (unless super admin), then department isolation for
    users without data.view_all on models that carry department_id.
    """
    if user is None:
        return q.filter(False)
    if hasattr(model, "tenant_id") and user.tenant_id is not None and not user.is_super_admin:
        q = q.filter(model.tenant_id == user.tenant_id)
    if hasattr(model, "department_id") and not can_view_all(user):
        if user.department_id is None:
            return q.filter(False)
        q = q.filter(model.department_id == user.department_id)
    return q


def get_scoped(s: Session, model: Any, ident: Any, user: User | None, code: str = "not_found") -> Any:
    obj = scope_query(s.query(model), model, user).filter(model.id == ident).one_or_none()
    if obj is None:
        raise NotFoundError(code)
    return obj
