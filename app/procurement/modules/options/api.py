from __future__ import annotations

from flask import Blueprint, g, request

from app.procurement.db import db_session, get_or_404
from app.procurement.errors import UnauthorizedError, ValidationError
from app.procurement.models import User
from app.procurement.rbac import require_api_permission, user_has_permission
from app.procurement.utils import json_body

from .models import OptionItem
from .service import (
    PUBLIC_CATEGORIES,
    create_option,
    delete_option,
    grouped_options,
    list_options,
    move_option,
    option_to_dict,
    update_option,
    validate_option_payload,
)

bp = Blueprint("options_api", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/options")
def options_all():
    """Active entries of every category; mode=public serves the public ones without a session."""
    s = db_session()
    if request.args.get("mode") == "public":
        return {key: [option_to_dict(o) for o in list_options(s, key)] for key in PUBLIC_CATEGORIES}
    user = getattr(g, "current_user", None)
    if not user or not user.is_active:
        raise UnauthorizedError()
    return grouped_options(s)


@bp.get("/options/<category>")
@require_api_permission()
def options_by_category(category: str):
    """Entries of one category; include_inactive=1 is honoured for settings editors."""
    s = db_session()
    include_inactive = (request.args.get("include_inactive") or "").lower() in ("1", "true") and user_has_permission(
        _current_user(), "settings.edit"
    )
    rows = list_options(s, category, include_inactive=include_inactive)
    return {"category": category, "items": [option_to_dict(o) for o in rows]}


@bp.post("/options")
@require_api_permission("settings.edit")
def options_create():
    s = db_session()
    payload = json_body()
    errors = validate_option_payload(payload)
    if errors:
        raise ValidationError(details=errors)
    item = create_option(s, payload, _current_user())
    s.commit()
    return option_to_dict(item), 201


@bp.patch("/options/<int:option_id>")
@require_api_permission("settings.edit")
def options_update(option_id: int):
    s = db_session()
    item = get_or_404(s, OptionItem, option_id)
    payload = json_body()
    errors = validate_option_payload(payload, partial=True)
    if errors:
        raise ValidationError(details=errors)
    update_option(s, item, payload, _current_user())
    s.commit()
    return option_to_dict(item)


@bp.post("/options/<int:option_id>/move")
@require_api_permission("settings.edit")
def options_move(option_id: int):
    s = db_session()
    item = get_or_404(s, OptionItem, option_id)
    move_option(s, item, json_body().get("direction"), _current_user())
    s.commit()
    return {"category": item.category, "items": [option_to_dict(o) for o in list_options(s, item.category, include_inactive=True)]}


@bp.delete("/options/<int:option_id>")
@require_api_permission("settings.edit")
def options_delete(option_id: int):
    s = db_session()
    item = get_or_404(s, OptionItem, option_id)
    category = delete_option(s, item, _current_user())
    s.commit()
    return {"category": category, "items": [option_to_dict(o) for o in list_options(s, category, include_inactive=True)]}
