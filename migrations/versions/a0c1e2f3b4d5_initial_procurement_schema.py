"""Initial procurement schema.

Creates every table declared on Base.metadata at this revision: users/roles,
organization, suppliers, approvals, requests, RFQ, orders, deliveries,
invoices, contracts, evaluations and notifications. Later revisions use
explicit op.* calls.

Revision ID: a0c1e2f3b4d5
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op

from app.procurement.models import Base


# revision identifiers, used by Alembic.
revision: str = "a0c1e2f3b4d5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
