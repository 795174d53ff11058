from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.procurement.models import Base


class ApprovalWorkflow(Base):
    """Ordered approval steps for an entity type; department-specific or global."""

    __tablename__ = "approval_workflows"
    __table_args__ = (Index("idx_approval_workflows_lookup", "entity_type", "department_id", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)  # Request, Rfq
    department_id: Mapped[int | None] = mapped_column(ForeignKey("departments.id", ondelete="CASCADE"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    steps: Mapped[list["ApprovalStep"]] = relationship(
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="ApprovalStep.step_order",
        lazy="selectin",
    )


class ApprovalStep(Base):
    __tablename__ = "approval_steps"
    __table_args__ = (UniqueConstraint("workflow_id", "step_order", name="uq_approval_steps_order"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workflow_id: Mapped[int] = mapped_column(ForeignKey("approval_workflows.id", ondelete="CASCADE"), nullable=False)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    approver_roles: Mapped[list | None] = mapped_column(JSON, nullable=True)  # role keys
    min_approvals: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    workflow: Mapped[ApprovalWorkflow] = relationship(back_populates="steps")


class ApprovalRecord(Base):
    """One approve/reject decision on one step of one record."""

    __tablename__ = "approval_records"
    __table_args__ = (Index("idx_approval_records_entity", "entity_type", "entity_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    workflow_id: Mapped[int | None] = mapped_column(ForeignKey("approval_workflows.id", ondelete="SET NULL"), nullable=True)
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(255), nullable=False)
    decision: Mapped[str] = mapped_column(String(16), nullable=False)  # approved, rejected
    approver_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    # set when the record enters approval again; voided rows stay for history only
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
