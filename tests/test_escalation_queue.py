from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from conftest import FakeClock

from workflow_pilot.orchestrator.escalation import (
    EscalationError,
    EscalationNotFoundError,
    EscalationQueue,
    EscalationStateError,
)
from workflow_pilot.orchestrator.models import (
    Escalation,
    EscalationCreate,
    EscalationFilter,
    EscalationStatus,
    RunStatus,
    WorkflowState,
)
from workflow_pilot.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Escalation Queue"),
    allure.feature("Lifecycle & Metrics"),
]


@pytest.fixture()
def repository(tmp_path: Path):
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def queue(repository: OrchestratorRepository) -> EscalationQueue:
    return EscalationQueue(repository, clock=FakeClock())


def _payload(**overrides) -> EscalationCreate:
    values = {
        "run_id": "run-1",
        "workflow_name": "alpha",
        "step": 2,
        "question": "  Which database should we use?  ",
        "ai_answer": "PostgreSQL",
        "ai_confidence": 0.6,
        "ai_reasoning": "probably relational",
        "context": "orders service",
    }
    values.update(overrides)
    return EscalationCreate(**values)


def test_add_persists_pending_escalation_and_parks_run(queue: EscalationQueue) -> None:
    state = WorkflowState(
        run_id="run-1",
        workflow_name="alpha",
        current_step=1,
        status=RunStatus.RUNNING,
        variables={},
        task_activity=[],
        start_time=datetime(2026, 10, 19, tzinfo=UTC),
        last_update=datetime(2026, 10, 19, tzinfo=UTC),
    )

    escalation_id = queue.add(_payload(), state=state)
    escalation = queue.get(escalation_id)

    assert escalation_id.startswith("esc-")
    assert escalation.status is EscalationStatus.PENDING
    assert escalation.question == "Which database should we use?"
    assert escalation.ai_confidence == 0.6
    assert escalation.created_at == datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
    assert state.status is RunStatus.PAUSED
    assert state.pending_escalation_id == escalation_id


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"run_id": " "}, "run_id"),
        ({"question": ""}, "question"),
        ({"ai_confidence": 1.5}, "confidence"),
        ({"step": -1}, "step"),
    ],
)
def test_add_rejects_invalid_payloads(queue: EscalationQueue, overrides: dict, message: str) -> None:
    with pytest.raises(EscalationError, match=message):
        queue.add(_payload(**overrides))

    assert queue.list() == []


def test_list_filters_by_status_run_and_workflow(queue: EscalationQueue) -> None:
    first = queue.add(_payload())
    second = queue.add(_payload(run_id="run-2", workflow_name="beta"))
    queue.respond(first, "MySQL")

    assert [item.id for item in queue.list()] == [first, second]
    assert [item.id for item in queue.list(EscalationFilter(status=EscalationStatus.PENDING))] == [second]
    assert [item.id for item in queue.list(EscalationFilter(run_id="run-1"))] == [first]
    assert [item.id for item in queue.list(EscalationFilter(workflow_name="beta"))] == [second]


def test_respond_signals_listeners_then_resolves(queue: EscalationQueue) -> None:
    seen: list[Escalation] = []
    queue.subscribe(seen.append)
    escalation_id = queue.add(_payload())

    resolved = queue.respond(escalation_id, "MySQL")

    assert [item.status for item in seen] == [EscalationStatus.RESPONDED]
    assert seen[0].response == "MySQL"
    assert resolved.status is EscalationStatus.RESOLVED
    assert resolved.response == "MySQL"
    assert resolved.responded_at is not None
    assert resolved.resolved_at is not None


def test_respond_is_allowed_only_once(queue: EscalationQueue) -> None:
    escalation_id = queue.add(_payload())
    queue.respond(escalation_id, "MySQL")

    with pytest.raises(EscalationStateError, match="expected pending"):
        queue.respond(escalation_id, "Postgres")
    with pytest.raises(EscalationError, match="must not be empty"):
        queue.respond(escalation_id, "   ")
    with pytest.raises(EscalationNotFoundError):
        queue.respond("esc-missing", "anything")

    assert queue.get(escalation_id).response == "MySQL"


def test_failed_hand_off_leaves_escalation_responded_for_replay(queue: EscalationQueue) -> None:
    attempts: list[str] = []

    def _flaky(escalation: Escalation) -> None:
        attempts.append(escalation.id)
        if len(attempts) == 1:
            raise RuntimeError("resume failed")

    queue.subscribe(_flaky)
    escalation_id = queue.add(_payload())

    with pytest.raises(RuntimeError, match="resume failed"):
        queue.respond(escalation_id, "MySQL")
    assert queue.get(escalation_id).status is EscalationStatus.RESPONDED

    replayed = queue.deliver(escalation_id)

    assert replayed.status is EscalationStatus.RESOLVED
    assert attempts == [escalation_id, escalation_id]
    with pytest.raises(EscalationStateError, match="expected responded"):
        queue.deliver(escalation_id)


def test_metrics_count_statuses_and_average_response_time(queue: EscalationQueue) -> None:
    first = queue.add(_payload(workflow_name="alpha"))
    second = queue.add(_payload(workflow_name="beta"))
    queue.add(_payload(workflow_name="alpha"))
    queue.respond(first, "a")
    queue.respond(second, "b")

    metrics = queue.metrics()

    assert (metrics.total, metrics.pending, metrics.responded, metrics.resolved) == (3, 1, 0, 2)
    assert metrics.average_resolution_seconds == pytest.approx(3.5)
    assert metrics.by_workflow == {"alpha": 2, "beta": 1}


def test_metrics_on_empty_queue(queue: EscalationQueue) -> None:
    metrics = queue.metrics()

    assert metrics.total == 0
    assert metrics.average_resolution_seconds is None
