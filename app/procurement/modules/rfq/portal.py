"""Token-authenticated supplier endpoints. No session, no CSRF; the invitation token is the credential."""
from __future__ import annotations

from flask import Blueprint

from app.procurement.audit import record_event
from app.procurement.db import db_session
from app.procurement.errors import NotFoundError
from app.procurement.modules.rfq.models import RfqSupplier
from app.procurement.modules.rfq.service import (
    decline_invitation,
    negotiation_stats,
    offer_to_dict,
    portal_view,
    resolve_invitation,
    submit_offer,
)
from app.procurement.ratelimit import rate_limited
from app.procurement.utils import json_body

bp = Blueprint("rfq_portal", __name__)


def _invitation(s, token: str) -> RfqSupplier:
    try:
        return resolve_invitation(s, token)
    except NotFoundError:
        # Failed lookups are kept even though the request itself fails.
        record_event(s, actor=None, action="portal.invalid_token", entity_type="RfqSupplier", metadata={"token_prefix": token[:8]})
        s.commit()
        raise


@bp.get("/portal/rfq/<token>")
def portal_rfq_view(token: str):
    s = db_session()
    inv = _invitation(s, token)
    out = portal_view(s, inv)
    s.commit()
    return out


@bp.post("/portal/rfq/<token>/offer")
@rate_limited("sensitive")
def portal_rfq_offer(token: str):
    """Submit or replace the offer for the current negotiation round."""
    s = db_session()
    inv = _invitation(s, token)
    offer = submit_offer(s, inv, json_body())
    s.commit()
    return offer_to_dict(offer), 201


@bp.post("/portal/rfq/<token>/decline")
@rate_limited("sensitive")
def portal_rfq_decline(token: str):
    s = db_session()
    inv = _invitation(s, token)
    decline_invitation(s, inv, json_body().get("reason"))
    s.commit()
    return {"stage": inv.stage}


@bp.get("/portal/rfq/<token>/negotiation")
def portal_rfq_negotiation(token: str):
    s = db_session()
    return negotiation_stats(_invitation(s, token))
