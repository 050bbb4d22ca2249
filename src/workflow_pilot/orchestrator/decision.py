"""Confidence-gated autonomous decisions.

`DecisionEngine.decide` tries, in order:

1. Knowledge sources. A literal answer found there is recorded with provenance
   `prior-knowledge` and a fixed high confidence.
2. One low-temperature model call through the provider factory. The model is never
   asked to rate itself; confidence comes from `score_confidence` below.

The model call uses a factory client directly, not the executor pool. Decision calls
do not take a pool slot and are absent from pool usage rollups; the decision audit
log is their record.

Confidence heuristic for a structured (JSON) reply, starting from 0.7:

    +0.10  certainty language (definitely, clearly, certain, confident, sure)
    -0.20  hedging language (maybe, perhaps, might, possibly, unsure, unclear)
    -0.15  the reply says context is missing (missing, insufficient, need more)
    +0.10  supplied context covers at least half of the question keywords
    -0.05  reasoning shorter than 50 characters
    +0.05  specific answer (non-empty, at most 200 characters, not a question)

and the result is clamped to [0.3, 0.9]. Unstructured replies are scored by the
strongest marker they contain (0.7 / 0.6 / 0.5 / 0.4 / 0.3), so they never clear
the default threshold. A confidence equal to the threshold is accepted.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from workflow_pilot.orchestrator.backend.base import ProviderCredentials
from workflow_pilot.orchestrator.backend.factory import ProviderFactory
from workflow_pilot.orchestrator.escalation import EscalationQueue
from workflow_pilot.orchestrator.models import (
    Decision,
    DecisionOutcome,
    DecisionSource,
    Escalation,
    EscalationCreate,
    WorkflowState,
)
from workflow_pilot.orchestrator.repository import OrchestratorRepository
from workflow_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.75
DEFAULT_TEMPERATURE = 0.3
PRIOR_KNOWLEDGE_CONFIDENCE = 0.95
KNOWLEDGE_MATCH_THRESHOLD = 0.5
MIN_CONFIDENCE = 0.3
MAX_CONFIDENCE = 0.9

_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were",
        "what", "how", "when", "where", "who", "why", "which",
        "should", "could", "would", "will", "can",
        "do", "does", "did", "have", "has", "had",
        "be", "been", "being", "am", "to", "from",
        "in", "on", "at", "by", "for", "with", "about",
        "as", "of", "or", "and", "but", "if", "then",
        "use", "we", "our", "this", "that",
    },
)  # fmt: skip
_CERTAIN = ("definitely", "clearly", "certain", "confident", "sure")
_HEDGING = ("maybe", "perhaps", "might", "possibly", "unsure", "unclear")
_MISSING_CONTEXT = ("missing", "insufficient", "need more")
_TEXT_LEVELS: tuple[tuple[tuple[str, ...], float], ...] = (
    (("definitely", "clearly"), 0.7),
    (("probably", "likely"), 0.6),
    (("maybe", "perhaps"), 0.4),
    (("unsure", "unclear"), 0.3),
)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_QA_PATTERN = re.compile(
    r"^\s*Q:\s*(?P<question>.+?)\s*\n\s*A:\s*(?P<answer>.+?)(?=\n\s*Q:|\n\s*#|\Z)",
    re.MULTILINE | re.DOTALL,
)
_SYSTEM_PROMPT = (
    "You are an autonomous decision-making assistant for a software delivery workflow. "
    "Give one clear decision and explain it briefly."
)


@dataclass(slots=True, frozen=True)
class KnowledgeAnswer:
    """Literal answer found in a knowledge source."""

    answer: str
    source: str
    score: float


class KnowledgeSource(Protocol):
    def lookup(self, question: str) -> KnowledgeAnswer | None:
        """Return an explicit answer for the question, or None."""


class StaticKnowledge:
    """Fixed question -> answer map; matching ignores case and spacing."""

    def __init__(self, answers: Mapping[str, str], *, name: str = "static") -> None:
        self.name = name
        self._answers = {_normalize(question): answer for question, answer in answers.items()}

    def lookup(self, question: str) -> KnowledgeAnswer | None:
        answer = self._answers.get(_normalize(question))
        if answer is None:
            return None
        return KnowledgeAnswer(answer=answer, source=self.name, score=1.0)


class MarkdownKnowledgeBase:
    """Markdown documents with literal `Q:` / `A:` pairs.

    A pair matches when more than half of the question's keywords appear in its `Q:` line.
    The best-scoring pair across all documents wins.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self._entries: list[tuple[str, str, str]] | None = None

    def lookup(self, question: str) -> KnowledgeAnswer | None:
        keywords = extract_keywords(question)
        if not keywords:
            return None
        best: KnowledgeAnswer | None = None
        for source, known_question, answer in self._load():
            score = match_score(known_question, keywords)
            if score > KNOWLEDGE_MATCH_THRESHOLD and (best is None or score > best.score):
                best = KnowledgeAnswer(answer=answer, source=source, score=score)
        return best

    def _load(self) -> list[tuple[str, str, str]]:
        if self._entries is not None:
            return self._entries
        entries: list[tuple[str, str, str]] = []
        if self.directory.is_dir():
            for path in sorted(self.directory.glob("*.md")):
                text = path.read_text("utf-8")
                for match in _QA_PATTERN.finditer(text):
                    entries.append(
                        (path.name, match.group("question").strip(), match.group("answer").strip()),
                    )
        else:
            logger.warning("Knowledge directory %s does not exist", self.directory)
        self._entries = entries
        return entries


@dataclass(slots=True)
class DecisionContext:
    """Where a question was asked and what the run knows about it."""

    run_id: str
    workflow_name: str
    step: int
    text: str = ""
    state: WorkflowState | None = None


class DecisionEngine:
    """Answer questions autonomously or hand them to the escalation queue."""

    def __init__(  # noqa: PLR0913
        self,
        factory: ProviderFactory,
        *,
        provider: str,
        model: str,
        escalations: EscalationQueue,
        repository: OrchestratorRepository,
        credentials: ProviderCredentials | None = None,
        knowledge: Iterable[KnowledgeSource] = (),
        threshold: float = DEFAULT_THRESHOLD,
        temperature: float = DEFAULT_TEMPERATURE,
        prior_knowledge_confidence: float = PRIOR_KNOWLEDGE_CONFIDENCE,
        timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("Decision threshold must be within [0, 1].")
        self.client = factory.create_client(provider, model, credentials)
        self.escalations = escalations
        self.repository = repository
        self.knowledge = list(knowledge)
        self.threshold = threshold
        self.temperature = temperature
        self.prior_knowledge_confidence = prior_knowledge_confidence
        self.timeout_seconds = timeout_seconds
        self._clock = clock

    def decide(self, question: str, context: DecisionContext) -> DecisionOutcome:
        """Return a final decision, or a pending escalation when confidence is too low."""

        if not question.strip():
            raise ValueError("Decision question must not be empty.")
        decision = self._from_knowledge(question) or self._from_model(question, context.text)
        escalation_id: str | None = None
        if decision.confidence < self.threshold:
            escalation_id = self.escalations.add(
                EscalationCreate(
                    run_id=context.run_id,
                    workflow_name=context.workflow_name,
                    step=context.step,
                    question=question,
                    ai_answer=decision.answer,
                    ai_confidence=decision.confidence,
                    ai_reasoning=decision.reasoning,
                    context=context.text,
                ),
                state=context.state,
            )
        self.repository.append_decision(
            decision,
            run_id=context.run_id,
            workflow_name=context.workflow_name,
            step=context.step,
            escalation_id=escalation_id,
        )
        logger.info(
            "Decision for run %s step %d: %s (confidence %.2f, %s)",
            context.run_id,
            context.step,
            "escalated" if escalation_id else "accepted",
            decision.confidence,
            decision.source.value,
        )
        return DecisionOutcome(decision=decision, escalation_id=escalation_id)

    def record_human_response(self, escalation: Escalation) -> Decision:
        """Audit the human answer that replaces an escalated decision."""

        if escalation.response is None:
            raise ValueError(f"Escalation {escalation.id} has no response to record.")
        decision = Decision(
            question=escalation.question,
            answer=escalation.response,
            confidence=1.0,
            reasoning=f"Human response to escalation {escalation.id}",
            source=DecisionSource.HUMAN_RESPONSE,
            decided_at=self._clock(),
        )
        self.repository.append_decision(
            decision,
            run_id=escalation.run_id,
            workflow_name=escalation.workflow_name,
            step=escalation.step,
            escalation_id=escalation.id,
        )
        return decision

    def _from_knowledge(self, question: str) -> Decision | None:
        for source in self.knowledge:
            found = source.lookup(question)
            if found is not None:
                return Decision(
                    question=question,
                    answer=found.answer,
                    confidence=self.prior_knowledge_confidence,
                    reasoning=f"Explicit answer found in {found.source}",
                    source=DecisionSource.PRIOR_KNOWLEDGE,
                    decided_at=self._clock(),
                )
        return None

    def _from_model(self, question: str, context_text: str) -> Decision:
        result = self.client.complete(
            build_decision_prompt(question, context_text),
            temperature=self.temperature,
            max_tokens=1000,
            system=_SYSTEM_PROMPT,
            timeout_seconds=self.timeout_seconds,
        )
        reply = parse_model_reply(result.text)
        if reply.structured:
            confidence = score_confidence(
                reply.answer,
                reply.reasoning,
                question=question,
                context=context_text,
            )
        else:
            confidence = score_text_confidence(result.text)
        return Decision(
            question=question,
            answer=reply.answer,
            confidence=confidence,
            reasoning=reply.reasoning,
            source=DecisionSource.INFERENCE,
            decided_at=self._clock(),
        )


@dataclass(slots=True, frozen=True)
class ModelReply:
    answer: str
    reasoning: str
    structured: bool


def build_decision_prompt(question: str, context_text: str) -> str:
    context_block = context_text.strip() or "(no additional context)"
    return (
        f"Question: {question.strip()}\n\n"
        f"Context:\n{context_block}\n\n"
        'Reply with a single JSON object with the keys "decision" (your answer) and '
        '"reasoning" (why). Do not include a confidence value.'
    )


def parse_model_reply(text: str) -> ModelReply:
    """Pull `decision`/`reasoning` out of a JSON object embedded in the reply."""

    match = _JSON_OBJECT.search(text)
    if match is not None:
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("decision") is not None:
            return ModelReply(
                answer=str(parsed["decision"]).strip(),
                reasoning=str(parsed.get("reasoning") or "").strip(),
                structured=True,
            )
    return ModelReply(
        answer=text.strip(),
        reasoning="Reply was not structured; scored from its wording",
        structured=False,
    )


def score_confidence(answer: str, reasoning: str, *, question: str, context: str) -> float:
    """Deterministic confidence for a structured reply."""

    if not answer.strip():
        return MIN_CONFIDENCE
    text = f"{answer} {reasoning}".lower()
    confidence = 0.7
    if any(word in text for word in _CERTAIN):
        confidence += 0.1
    if any(word in text for word in _HEDGING):
        confidence -= 0.2
    if any(phrase in text for phrase in _MISSING_CONTEXT):
        confidence -= 0.15
    keywords = extract_keywords(question)
    if context.strip() and keywords and match_score(context, keywords) >= 0.5:  # noqa: PLR2004
        confidence += 0.1
    if len(reasoning) < 50:  # noqa: PLR2004
        confidence -= 0.05
    if len(answer) <= 200 and "?" not in answer:  # noqa: PLR2004
        confidence += 0.05
    return round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence)), 4)


def score_text_confidence(text: str) -> float:
    lowered = text.lower()
    for markers, level in _TEXT_LEVELS:
        if any(marker in lowered for marker in markers):
            return level
    return 0.5


def extract_keywords(text: str) -> list[str]:
    words: list[str] = []
    for word in re.split(r"\W+", text.lower()):
        if len(word) > 2 and word not in _STOP_WORDS and word not in words:  # noqa: PLR2004
            words.append(word)
    return words


def match_score(text: str, keywords: list[str]) -> float:
    if not keywords:
        return 0.0
    lowered = text.lower()
    return sum(1 for keyword in keywords if keyword in lowered) / len(keywords)


def _normalize(question: str) -> str:
    return " ".join(question.casefold().split()).rstrip("?")
