from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.procurement.models import Base


class EvaluationQuestion(Base):
    __tablename__ = "evaluation_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    section: Mapped[str] = mapped_column(String(1), nullable=False)  # A, B or C
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class ScoringType(Base):
    __tablename__ = "scoring_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    weight_a: Mapped[float] = mapped_column(Float, nullable=False)
    weight_b: Mapped[float] = mapped_column(Float, nullable=False)
    weight_c: Mapped[float] = mapped_column(Float, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class SupplierEvaluation(Base):
    __tablename__ = "supplier_evaluations"
    __table_args__ = (
        Index("idx_supplier_evaluations_supplier", "supplier_id"),
        Index("idx_supplier_evaluations_order", "order_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("purchase_orders.id", ondelete="SET NULL"), nullable=True)
    evaluator_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    scoring_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    section_averages: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    overall: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    decision: Mapped[str] = mapped_column(String(64), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    answers: Mapped[list["SupplierEvaluationAnswer"]] = relationship(
        back_populates="evaluation",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class SupplierEvaluationAnswer(Base):
    __tablename__ = "supplier_evaluation_answers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    evaluation_id: Mapped[int] = mapped_column(ForeignKey("supplier_evaluations.id", ondelete="CASCADE"), nullable=False)
    question_id: Mapped[int] = mapped_column(ForeignKey("evaluation_questions.id", ondelete="RESTRICT"), nullable=False)
    value: Mapped[str] = mapped_column(String(64), nullable=False)

    evaluation: Mapped[SupplierEvaluation] = relationship(back_populates="answers")


class SupplierPerformanceMetric(Base):
    __tablename__ = "supplier_performance_metrics"
    __table_args__ = (UniqueConstraint("supplier_id", "period", name="uq_supplier_metric_period"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    on_time_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    defect_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_lead_time_days: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_index: Mapped[float | None] = mapped_column(Float, nullable=True)
    service_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class SupplierEvaluationSummary(Base):
    __tablename__ = "supplier_evaluation_summaries"
    __table_args__ = (UniqueConstraint("supplier_id", "period", name="uq_supplier_summary_period"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    quality: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    delivery: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    cost: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    service: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    decision: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
