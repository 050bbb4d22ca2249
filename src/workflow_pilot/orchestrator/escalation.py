"""Durable queue of low-confidence decisions awaiting a human answer."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

from workflow_pilot.orchestrator.models import (
    Escalation,
    EscalationCreate,
    EscalationFilter,
    EscalationMetrics,
    EscalationStatus,
    RunStatus,
    WorkflowState,
)
from workflow_pilot.orchestrator.repository import OrchestratorRepository
from workflow_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

ResponseListener = Callable[[Escalation], None]


class EscalationError(ValueError):
    """Invalid escalation input or operation."""


class EscalationNotFoundError(EscalationError, LookupError):
    """No escalation with the given id."""


class EscalationStateError(EscalationError):
    """Operation not allowed in the escalation's current status."""


class EscalationQueue:
    """Escalations are never deleted; `respond` is their only mutator.

    Response listeners are how the owning run gets resumed. An escalation stays
    `responded` until every listener returned, so a hand-off interrupted by a crash
    can be found and replayed.
    """

    def __init__(
        self,
        repository: OrchestratorRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self._clock = clock
        self._listeners: list[ResponseListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: ResponseListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def add(self, payload: EscalationCreate, *, state: WorkflowState | None = None) -> str:
        """Persist a pending escalation and park the originating run."""

        _validate(payload)
        escalation = Escalation(
            id=f"esc-{uuid4().hex}",
            run_id=payload.run_id,
            workflow_name=payload.workflow_name,
            step=payload.step,
            question=payload.question.strip(),
            ai_answer=payload.ai_answer,
            ai_confidence=payload.ai_confidence,
            ai_reasoning=payload.ai_reasoning,
            context=payload.context,
            status=EscalationStatus.PENDING,
            created_at=self._clock(),
        )
        self.repository.insert_escalation(escalation)
        if state is not None:
            state.status = RunStatus.PAUSED
            state.pending_escalation_id = escalation.id
        logger.info(
            "Escalation %s created for run %s step %d (confidence %.2f)",
            escalation.id,
            escalation.run_id,
            escalation.step,
            escalation.ai_confidence,
        )
        return escalation.id

    def get(self, escalation_id: str) -> Escalation:
        escalation = self.repository.get_escalation(escalation_id)
        if escalation is None:
            raise EscalationNotFoundError(f"Escalation not found: {escalation_id}")
        return escalation

    def list(self, query: EscalationFilter | None = None) -> list[Escalation]:
        return self.repository.list_escalations(query)

    def respond(self, escalation_id: str, answer: str) -> Escalation:
        """Record the human answer, signal listeners, then mark the escalation resolved."""

        if not answer.strip():
            raise EscalationError("Escalation answer must not be empty.")
        current = self.get(escalation_id)
        if current.status is not EscalationStatus.PENDING:
            raise EscalationStateError(
                f"Escalation {escalation_id} is {current.status.value}, expected pending",
            )
        if not self.repository.mark_responded(
            escalation_id=escalation_id,
            response=answer,
            responded_at=self._clock(),
        ):
            raise EscalationStateError(f"Escalation {escalation_id} was answered concurrently")
        logger.info("Escalation %s responded", escalation_id)
        return self.deliver(escalation_id)

    def deliver(self, escalation_id: str) -> Escalation:
        """Signal listeners for a responded escalation and resolve it."""

        escalation = self.get(escalation_id)
        if escalation.status is not EscalationStatus.RESPONDED:
            raise EscalationStateError(
                f"Escalation {escalation_id} is {escalation.status.value}, expected responded",
            )
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(escalation)
        self.repository.mark_resolved(escalation_id=escalation_id, resolved_at=self._clock())
        return self.get(escalation_id)

    def metrics(self) -> EscalationMetrics:
        """Counts per status, average human resolution time, per-workflow breakdown."""

        escalations = self.repository.list_escalations()
        by_status = {status: 0 for status in EscalationStatus}
        by_workflow: dict[str, int] = {}
        durations: list[float] = []
        for escalation in escalations:
            by_status[escalation.status] += 1
            by_workflow[escalation.workflow_name] = by_workflow.get(escalation.workflow_name, 0) + 1
            if escalation.responded_at is not None:
                durations.append((escalation.responded_at - escalation.created_at).total_seconds())
        return EscalationMetrics(
            total=len(escalations),
            pending=by_status[EscalationStatus.PENDING],
            responded=by_status[EscalationStatus.RESPONDED],
            resolved=by_status[EscalationStatus.RESOLVED],
            average_resolution_seconds=sum(durations) / len(durations) if durations else None,
            by_workflow=dict(sorted(by_workflow.items())),
        )


def _validate(payload: EscalationCreate) -> None:
    if not payload.run_id.strip():
        raise EscalationError("Escalation run_id must not be empty.")
    if not payload.question.strip():
        raise EscalationError("Escalation question must not be empty.")
    if not 0.0 <= payload.ai_confidence <= 1.0:
        raise EscalationError(
            f"Escalation confidence must be within [0, 1], got {payload.ai_confidence}.",
        )
    if payload.step < 0:
        raise EscalationError("Escalation step must be >= 0.")
