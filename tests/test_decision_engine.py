from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import CONFIDENT_REPLY, FakeClock

from workflow_pilot.orchestrator.backend.factory import ProviderFactory
from workflow_pilot.orchestrator.decision import (
    DecisionContext,
    DecisionEngine,
    MarkdownKnowledgeBase,
    StaticKnowledge,
    extract_keywords,
    parse_model_reply,
    score_confidence,
    score_text_confidence,
)
from workflow_pilot.orchestrator.escalation import EscalationQueue
from workflow_pilot.orchestrator.models import DecisionSource, EscalationStatus
from workflow_pilot.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Decision Engine"),
    allure.feature("Confidence Gate"),
]

QUESTION = "Which database should we use for orders?"
CONTEXT = DecisionContext(run_id="run-1", workflow_name="design", step=3)


@pytest.fixture()
def repository(tmp_path: Path):
    repo = OrchestratorRepository(tmp_path / "orchestrator.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def queue(repository: OrchestratorRepository) -> EscalationQueue:
    return EscalationQueue(repository, clock=FakeClock())


@pytest.fixture()
def make_engine(provider_factory: ProviderFactory, queue: EscalationQueue, repository: OrchestratorRepository):
    def _make(**overrides) -> DecisionEngine:
        return DecisionEngine(
            provider_factory,
            provider="scripted",
            model="scripted-1",
            escalations=queue,
            repository=repository,
            clock=FakeClock(),
            **overrides,
        )

    return _make


def test_prior_knowledge_short_circuits_model(make_engine, scripted_backend) -> None:
    engine = make_engine(knowledge=[StaticKnowledge({"which database should we use for orders": "PostgreSQL"})])

    outcome = engine.decide(QUESTION, CONTEXT)

    assert not outcome.pending
    assert outcome.decision.answer == "PostgreSQL"
    assert outcome.decision.confidence == 0.95
    assert outcome.decision.source is DecisionSource.PRIOR_KNOWLEDGE
    assert scripted_backend.requests == []


def test_markdown_knowledge_base_matches_question_keywords(tmp_path: Path) -> None:
    knowledge_dir = tmp_path / "kb"
    knowledge_dir.mkdir()
    (knowledge_dir / "decisions.md").write_text(
        "# Decisions\n\n"
        "Q: Which message broker should we use for events?\n"
        "A: Kafka with three partitions.\n\n"
        "Q: What is the deploy target?\n"
        "A: Kubernetes.\n",
        "utf-8",
    )
    base = MarkdownKnowledgeBase(knowledge_dir)

    found = base.lookup("Which message broker for events?")

    assert found is not None
    assert found.answer == "Kafka with three partitions."
    assert found.source == "decisions.md"
    assert base.lookup("How many replicas?") is None
    assert MarkdownKnowledgeBase(tmp_path / "missing").lookup("anything at all") is None


def test_confident_model_reply_is_accepted_and_audited(make_engine, scripted_backend, repository) -> None:
    scripted_backend.outcomes = [CONFIDENT_REPLY]
    engine = make_engine()

    outcome = engine.decide(QUESTION, CONTEXT)

    assert not outcome.pending
    assert outcome.decision.answer == "Use PostgreSQL"
    assert outcome.decision.confidence == 0.85
    assert outcome.decision.source is DecisionSource.INFERENCE
    request = scripted_backend.requests[0]
    assert request.temperature == 0.3
    assert "Question: Which database should we use for orders?" in request.prompt
    assert "confidence" not in (request.system or "")
    [entry] = repository.list_decisions(run_id="run-1")
    assert entry.step == 3
    assert entry.escalation_id is None


def test_low_confidence_reply_escalates_and_parks_state(make_engine, scripted_backend, queue, repository) -> None:
    scripted_backend.outcomes = ["Probably PostgreSQL, but it depends on the workload."]
    engine = make_engine()
    state_holder = DecisionContext(run_id="run-1", workflow_name="design", step=3, text="orders")

    outcome = engine.decide(QUESTION, state_holder)

    assert outcome.pending
    assert outcome.decision.confidence == 0.6
    escalation = queue.get(outcome.escalation_id)
    assert escalation.status is EscalationStatus.PENDING
    assert escalation.ai_answer.startswith("Probably PostgreSQL")
    assert escalation.context == "orders"
    [entry] = repository.list_decisions()
    assert entry.escalation_id == outcome.escalation_id


def test_confidence_equal_to_threshold_is_accepted(make_engine, scripted_backend) -> None:
    scripted_backend.outcomes = [CONFIDENT_REPLY, CONFIDENT_REPLY]

    assert not make_engine(threshold=0.85).decide(QUESTION, CONTEXT).pending
    assert make_engine(threshold=0.86).decide(QUESTION, CONTEXT).pending


def test_human_response_is_recorded_in_audit_log(make_engine, scripted_backend, queue, repository) -> None:
    scripted_backend.outcomes = ["maybe MongoDB"]
    engine = make_engine()
    outcome = engine.decide(QUESTION, CONTEXT)
    escalation = queue.respond(outcome.escalation_id, "PostgreSQL")

    decision = engine.record_human_response(escalation)

    assert decision.answer == "PostgreSQL"
    assert decision.confidence == 1.0
    human = repository.list_decisions(source=DecisionSource.HUMAN_RESPONSE)
    assert [entry.escalation_id for entry in human] == [escalation.id]
    assert len(repository.list_decisions(run_id="run-1")) == 2


def test_decide_rejects_empty_question_and_bad_threshold(make_engine) -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        make_engine().decide("  ", CONTEXT)
    with pytest.raises(ValueError, match="threshold"):
        make_engine(threshold=1.2)


def test_score_confidence_heuristics() -> None:
    long_reasoning = "The orders service needs transactions and the team already runs it."

    assert score_confidence("Use PostgreSQL", long_reasoning, question=QUESTION, context="") == 0.75
    assert (
        score_confidence(
            "Use PostgreSQL",
            long_reasoning + " Clearly the right fit.",
            question=QUESTION,
            context="orders database sizing notes",
        )
        == 0.9
    )
    assert score_confidence("Maybe Redis", "maybe", question=QUESTION, context="") == pytest.approx(0.5)
    assert score_confidence(
        "Is it Redis?",
        "unclear, context is missing",
        question=QUESTION,
        context="",
    ) == pytest.approx(0.3)
    assert score_confidence("", long_reasoning, question=QUESTION, context="") == 0.3


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Definitely PostgreSQL", 0.7),
        ("Probably PostgreSQL", 0.6),
        ("PostgreSQL", 0.5),
        ("Perhaps PostgreSQL", 0.4),
        ("It is unclear", 0.3),
    ],
)
def test_score_text_confidence_levels(text: str, expected: float) -> None:
    assert score_text_confidence(text) == expected


def test_parse_model_reply_extracts_embedded_json() -> None:
    reply = parse_model_reply('Sure!\n```json\n{"decision": "Kafka", "reasoning": "durable log"}\n```')

    assert (reply.answer, reply.reasoning, reply.structured) == ("Kafka", "durable log", True)
    assert parse_model_reply("just text").structured is False
    assert extract_keywords(QUESTION) == ["database", "orders"]
