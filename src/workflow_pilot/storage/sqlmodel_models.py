"""SQLModel ORM tables for escalations and decision audit."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class EscalationRecord(SQLModel, table=True):
    __tablename__ = "escalations"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_escalations_status_created", "status", "created_at"),
        Index("idx_escalations_run", "run_id", "step"),
    )

    escalation_id: str = Field(primary_key=True)
    run_id: str = Field(index=True)
    workflow_name: str = Field(index=True)
    step: int
    question: str = Field(sa_column=Column(Text, nullable=False))
    ai_answer: str = Field(sa_column=Column(Text, nullable=False))
    ai_confidence: float
    ai_reasoning: str = Field(sa_column=Column(Text, nullable=False))
    context: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    response: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    responded_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    resolved_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class DecisionAuditRecord(SQLModel, table=True):
    __tablename__ = "decision_audit"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_decision_audit_run_time", "run_id", "decided_at"),)

    audit_id: int | None = Field(default=None, primary_key=True)
    run_id: str | None = Field(default=None, index=True)
    workflow_name: str | None = Field(default=None)
    step: int | None = Field(default=None)
    question: str = Field(sa_column=Column(Text, nullable=False))
    answer: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float
    reasoning: str = Field(sa_column=Column(Text, nullable=False))
    source: str = Field(index=True)
    escalation_id: str | None = Field(default=None)
    decided_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
