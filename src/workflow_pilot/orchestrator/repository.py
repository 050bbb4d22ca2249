"""Escalation and decision audit persistence backed by SQLModel + SQLite."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from workflow_pilot.orchestrator.models import (
    Decision,
    DecisionAuditEntry,
    DecisionSource,
    Escalation,
    EscalationFilter,
    EscalationStatus,
)
from workflow_pilot.storage.alembic_runner import upgrade_head
from workflow_pilot.storage.common import build_sqlite_engine
from workflow_pilot.storage.sqlmodel_models import DecisionAuditRecord, EscalationRecord


class OrchestratorRepository:
    """Durable records the escalation queue and decision engine rely on."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def insert_escalation(self, escalation: Escalation) -> None:
        with Session(self.engine) as session:
            session.add(
                EscalationRecord(
                    escalation_id=escalation.id,
                    run_id=escalation.run_id,
                    workflow_name=escalation.workflow_name,
                    step=escalation.step,
                    question=escalation.question,
                    ai_answer=escalation.ai_answer,
                    ai_confidence=escalation.ai_confidence,
                    ai_reasoning=escalation.ai_reasoning,
                    context=escalation.context,
                    status=escalation.status.value,
                    response=escalation.response,
                    created_at=_to_db_datetime(escalation.created_at),
                    responded_at=_optional_db_datetime(escalation.responded_at),
                    resolved_at=_optional_db_datetime(escalation.resolved_at),
                ),
            )
            session.commit()

    def mark_responded(
        self,
        *,
        escalation_id: str,
        response: str,
        responded_at: datetime,
    ) -> bool:
        """Record the human answer; only a pending escalation can be answered."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(EscalationRecord)
                .where(
                    col(EscalationRecord.escalation_id) == escalation_id,
                    col(EscalationRecord.status) == EscalationStatus.PENDING.value,
                )
                .values(
                    status=EscalationStatus.RESPONDED.value,
                    response=response,
                    responded_at=_to_db_datetime(responded_at),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_resolved(self, *, escalation_id: str, resolved_at: datetime) -> bool:
        """Close an answered escalation once its run has been signalled."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(EscalationRecord)
                .where(
                    col(EscalationRecord.escalation_id) == escalation_id,
                    col(EscalationRecord.status) == EscalationStatus.RESPONDED.value,
                )
                .values(
                    status=EscalationStatus.RESOLVED.value,
                    resolved_at=_to_db_datetime(resolved_at),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def get_escalation(self, escalation_id: str) -> Escalation | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(EscalationRecord).where(EscalationRecord.escalation_id == escalation_id),
            ).one_or_none()
        return _to_escalation(row) if row is not None else None

    def list_escalations(
        self,
        query: EscalationFilter | None = None,
        *,
        limit: int | None = None,
    ) -> list[Escalation]:
        """Escalations oldest first, optionally filtered."""

        query = query or EscalationFilter()
        with Session(self.engine) as session:
            statement = select(EscalationRecord).order_by(
                col(EscalationRecord.created_at).asc(),
                col(EscalationRecord.escalation_id).asc(),
            )
            if query.status is not None:
                statement = statement.where(EscalationRecord.status == query.status.value)
            if query.run_id is not None:
                statement = statement.where(EscalationRecord.run_id == query.run_id)
            if query.workflow_name is not None:
                statement = statement.where(EscalationRecord.workflow_name == query.workflow_name)
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_escalation(row) for row in rows]

    def append_decision(  # noqa: PLR0913
        self,
        decision: Decision,
        *,
        run_id: str | None = None,
        workflow_name: str | None = None,
        step: int | None = None,
        escalation_id: str | None = None,
    ) -> int:
        """Append one decision to the audit log and return its audit id."""

        with Session(self.engine) as session:
            row = DecisionAuditRecord(
                run_id=run_id,
                workflow_name=workflow_name,
                step=step,
                question=decision.question,
                answer=decision.answer,
                confidence=decision.confidence,
                reasoning=decision.reasoning,
                source=decision.source.value,
                escalation_id=escalation_id,
                decided_at=_to_db_datetime(decision.decided_at),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.audit_id is None:
                raise RuntimeError("Decision audit row was not assigned an id")
            return row.audit_id

    def list_decisions(
        self,
        *,
        run_id: str | None = None,
        source: DecisionSource | None = None,
    ) -> list[DecisionAuditEntry]:
        with Session(self.engine) as session:
            statement = select(DecisionAuditRecord).order_by(col(DecisionAuditRecord.audit_id).asc())
            if run_id is not None:
                statement = statement.where(DecisionAuditRecord.run_id == run_id)
            if source is not None:
                statement = statement.where(DecisionAuditRecord.source == source.value)
            rows = session.exec(statement).all()
        return [_to_audit_entry(row) for row in rows]


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _optional_db_datetime(value: datetime | None) -> datetime | None:
    return _to_db_datetime(value) if value is not None else None


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _to_utc_aware_datetime(value) if value is not None else None


def _to_escalation(row: EscalationRecord) -> Escalation:
    return Escalation(
        id=row.escalation_id,
        run_id=row.run_id,
        workflow_name=row.workflow_name,
        step=row.step,
        question=row.question,
        ai_answer=row.ai_answer,
        ai_confidence=row.ai_confidence,
        ai_reasoning=row.ai_reasoning,
        context=row.context,
        status=EscalationStatus(row.status),
        created_at=_to_utc_aware_datetime(row.created_at),
        response=row.response,
        responded_at=_optional_utc(row.responded_at),
        resolved_at=_optional_utc(row.resolved_at),
    )


def _to_audit_entry(row: DecisionAuditRecord) -> DecisionAuditEntry:
    return DecisionAuditEntry(
        audit_id=row.audit_id or 0,
        decision=Decision(
            question=row.question,
            answer=row.answer,
            confidence=row.confidence,
            reasoning=row.reasoning,
            source=DecisionSource(row.source),
            decided_at=_to_utc_aware_datetime(row.decided_at),
        ),
        run_id=row.run_id,
        workflow_name=row.workflow_name,
        step=row.step,
        escalation_id=row.escalation_id,
    )
