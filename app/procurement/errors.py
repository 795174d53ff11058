"""
JSON error layer for the API.

Services raise AppError subclasses; the handlers registered in
register_error_handlers() turn them into {error, code, message, details}
bodies. ORM integrity errors are translated to 409/400 here as well so route
handlers never need their own try/except around commit().
"""
from __future__ import annotations

import logging
from typing import Any

from flask import Flask, g, jsonify, render_template, request
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)

MESSAGES: dict[str, str] = {
    "unauthorized": "Authentication required.",
    "forbidden": "You do not have permission to perform this action.",
    "not_found": "Record not found.",
    "validation_error": "The submitted data is invalid.",
    "bad_request": "Bad request.",
    "invalid_json": "Request body must be a JSON object.",
    "csrf_failed": "CSRF token missing or invalid.",
    "duplicate": "A record with the same unique value already exists.",
    "duplicate_code": "This code is already in use.",
    "duplicate_supplier": "A supplier with this email already exists.",
    "duplicate_contract": "An overlapping contract with the same title already exists for this order.",
    "duplicate_invoice": "An invoice with this number already exists.",
    "linked_record": "The record is referenced by other records or references a missing record.",
    "duplicate_invite": "A pending invitation for this email already exists.",
    "status_conflict": "The record is not in a state that allows this action.",
    "cannot_cancel": "This request can no longer be cancelled.",
    "workflow_not_found": "No approval workflow is configured for this record.",
    "category_not_found": "Unknown option category.",
    "all_steps_completed": "All approval steps are already completed.",
    "already_approved": "You have already approved this step.",
    "not_authorized_for_step": "You are not an approver for the current step.",
    "already_published": "This RFQ has already been published.",
    "invitation_not_found": "Invitation not found.",
    "invitation_expired": "This invitation has expired.",
    "rfq_closed": "This RFQ is not accepting offers.",
    "rfq_expired": "The RFQ deadline has passed.",
    "negotiation_closed": "The negotiation round is closed.",
    "invalid_items": "One or more items are invalid.",
    "no_valid_items": "No valid items were submitted.",
    "invalid_question_ids": "Unknown evaluation question ids.",
    "company_required": "A company must be selected.",
    "request_required": "Orders must be linked to a purchase request.",
    "token_expired": "This link has expired or was already used.",
    "invalid_token": "This link is invalid or has expired.",
    "weak_password": "Password must be at least 8 characters long.",
    "rate_limited": "Too many requests. Please retry later.",
    "method_not_allowed": "Method not allowed.",
    "internal_error": "An unexpected error occurred.",
}


class AppError(Exception):
    status_code = 500
    default_code = "internal_error"

    def __init__(self, code: str | None = None, message: str | None = None, details: Any = None):
        self.code = code or self.default_code
        self.message = message or MESSAGES.get(self.code) or self.code
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_code = "validation_error"


class BadRequestError(AppError):
    status_code = 400
    default_code = "bad_request"


class UnauthorizedError(AppError):
    status_code = 401
    default_code = "unauthorized"


class ForbiddenError(AppError):
    status_code = 403
    default_code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    default_code = "not_found"


class ConflictError(AppError):
    status_code = 409
    default_code = "status_conflict"


class RateLimitError(AppError):
    status_code = 429
    default_code = "rate_limited"

    def __init__(self, retry_after: int, code: str | None = None, message: str | None = None):
        super().__init__(code, message)
        self.retry_after = max(1, int(retry_after))


def json_error(status: int, code: str, message: str | None = None, details: Any = None):
    body: dict[str, Any] = {"error": code, "code": code, "message": message or MESSAGES.get(code) or code}
    if details is not None:
        body["details"] = details
    return jsonify(body), status


def translate_integrity_error(exc: IntegrityError) -> AppError:
    text = str(getattr(exc, "orig", exc)).lower()
    if "unique" in text or "duplicate key" in text:
        return ConflictError("duplicate")
    if "foreign key" in text:
        return BadRequestError("linked_record")
    return AppError("internal_error")


def _wants_json() -> bool:
    return request.path.startswith("/api/")


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def _app_error(e: AppError):
        resp, status = json_error(e.status_code, e.code, e.message, e.details)
        if isinstance(e, RateLimitError):
            resp.headers["Retry-After"] = str(e.retry_after)
        return resp, status

    @app.errorhandler(IntegrityError)
    def _integrity_error(e: IntegrityError):
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        err = translate_integrity_error(e)
        logger.warning("IntegrityError translated to %s (request_id=%s): %s", err.code, getattr(g, "request_id", None), e.orig)
        return json_error(err.status_code, err.code, err.message)

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        if _wants_json():
            return json_error(404, "not_found")
        return render_template("errors/404.html"), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        if _wants_json():
            return json_error(405, "method_not_allowed")
        return e

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        if _wants_json():
            return json_error(403, "forbidden", details={"missing_permission": missing} if missing else None)
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        if _wants_json():
            return json_error(500, "internal_error")
        return render_template("errors/500.html"), 500

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return json_error(413, "bad_request", "File too large. Maximum size is 25MB.")

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        if _wants_json():
            return json_error(e.code or 500, (e.name or "error").lower().replace(" ", "_"), e.description)
        return e
