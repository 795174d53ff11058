from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Table, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.procurement.models import Base

rfq_requests = Table(
    "rfq_requests",
    Base.metadata,
    Column("rfq_id", ForeignKey("rfqs.id", ondelete="CASCADE"), primary_key=True),
    Column("request_id", ForeignKey("purchase_requests.id", ondelete="CASCADE"), primary_key=True),
)


class Rfq(Base):
    __tablename__ = "rfqs"
    __table_args__ = (Index("idx_rfqs_status", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Open")
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="TRY")

    negotiation_round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    negotiation_status: Mapped[str | None] = mapped_column(String(16), nullable=True)  # None, Active, Finished
    negotiation_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id", ondelete="SET NULL"), nullable=True)
    tenant_id: Mapped[int | None] = mapped_column(ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    requests: Mapped[list["PurchaseRequest"]] = relationship(secondary=rfq_requests, lazy="selectin")  # noqa: F821
    items: Mapped[list["RfqItem"]] = relationship(
        back_populates="rfq",
        cascade="all, delete-orphan",
        order_by="RfqItem.id",
        lazy="selectin",
    )
    suppliers: Mapped[list["RfqSupplier"]] = relationship(
        back_populates="rfq",
        cascade="all, delete-orphan",
        order_by="RfqSupplier.id",
        lazy="selectin",
    )


class RfqItem(Base):
    __tablename__ = "rfq_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rfq_id: Mapped[int] = mapped_column(ForeignKey("rfqs.id", ondelete="CASCADE"), nullable=False)
    request_item_id: Mapped[int | None] = mapped_column(ForeignKey("request_items.id", ondelete="SET NULL"), nullable=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("supplier_categories.id", ondelete="SET NULL"), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)

    rfq: Mapped[Rfq] = relationship(back_populates="items")


class RfqSupplier(Base):
    """One invitation: a supplier (or a not-yet-registered contact) and its portal token."""

    __tablename__ = "rfq_suppliers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rfq_id: Mapped[int] = mapped_column(ForeignKey("rfqs.id", ondelete="CASCADE"), nullable=False)
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="SET NULL"), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    stage: Mapped[str] = mapped_column(String(16), nullable=False, default="Invited")
    invited_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    rfq: Mapped[Rfq] = relationship(back_populates="suppliers")
    supplier: Mapped["Supplier"] = relationship(lazy="joined")  # noqa: F821
    offers: Mapped[list["Offer"]] = relationship(
        back_populates="rfq_supplier",
        cascade="all, delete-orphan",
        order_by="Offer.round",
        lazy="selectin",
    )


class Offer(Base):
    __tablename__ = "offers"
    __table_args__ = (UniqueConstraint("rfq_supplier_id", "round", name="uq_offers_supplier_round"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rfq_supplier_id: Mapped[int] = mapped_column(ForeignKey("rfq_suppliers.id", ondelete="CASCADE"), nullable=False)
    round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="TRY")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_winner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    rfq_supplier: Mapped[RfqSupplier] = relationship(back_populates="offers")
    items: Mapped[list["OfferItem"]] = relationship(
        back_populates="offer",
        cascade="all, delete-orphan",
        order_by="OfferItem.id",
        lazy="selectin",
    )


class OfferItem(Base):
    __tablename__ = "offer_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    offer_id: Mapped[int] = mapped_column(ForeignKey("offers.id", ondelete="CASCADE"), nullable=False)
    rfq_item_id: Mapped[int] = mapped_column(ForeignKey("rfq_items.id", ondelete="CASCADE"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(16, 2), nullable=False)
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    brand: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    offer: Mapped[Offer] = relationship(back_populates="items")
