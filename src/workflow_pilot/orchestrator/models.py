"""Domain models for workflow runs, tasks, decisions and workspaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RunStatus(str, Enum):
    """Lifecycle states of one workflow run."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.COMPLETED, RunStatus.ERROR}


class StepType(str, Enum):
    """Tags of the step program variants."""

    ACTION = "action"
    CONDITIONAL = "conditional"
    GOTO = "goto"
    INVOKE_WORKFLOW = "invoke-workflow"
    CHECKPOINT = "checkpoint"
    DECISION = "decision"
    WORKSPACE = "workspace"


class Disposition(str, Enum):
    """What the engine should do with a failure."""

    RECOVERABLE = "recoverable"
    RETRYABLE = "retryable"
    ESCALATE = "escalate"


class ErrorCategory(str, Enum):
    """Normalized failure categories used by the classifier."""

    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    MALFORMED_INPUT = "malformed_input"
    AUTH = "auth"
    BILLING_OR_QUOTA = "billing_or_quota"
    CONFIG = "config"
    HANDLED = "handled"
    UNKNOWN = "unknown"


class DecisionSource(str, Enum):
    """Provenance of a recorded decision."""

    PRIOR_KNOWLEDGE = "prior-knowledge"
    INFERENCE = "inference"
    HUMAN_RESPONSE = "human-response"


class EscalationStatus(str, Enum):
    """Escalation lifecycle states."""

    PENDING = "pending"
    RESPONDED = "responded"
    RESOLVED = "resolved"


class WorkspaceStatus(str, Enum):
    """Isolated working copy lifecycle states."""

    ACTIVE = "active"
    FINALIZED = "finalized"
    ABANDONED = "abandoned"


class ActivityStatus(str, Enum):
    """Outcome of one task invocation recorded in run state."""

    COMPLETED = "completed"
    FAILED = "failed"
    DISCARDED = "discarded"


@dataclass(slots=True)
class TaskActivity:
    """Task activity entry persisted with the run state."""

    task_id: str
    step: int
    step_name: str
    workflow_name: str
    provider: str
    model: str
    started_at: datetime
    duration_ms: int
    status: ActivityStatus
    attempts: int = 1
    output_preview: str = ""
    error: str | None = None
    estimated_cost_usd: float | None = None


@dataclass(slots=True)
class CallFrame:
    """Parent workflow position saved when a sub-workflow is invoked."""

    workflow_name: str
    return_step: int


@dataclass(slots=True)
class WorkflowState:
    """Serializable snapshot of one in-flight run."""

    run_id: str
    workflow_name: str
    current_step: int
    status: RunStatus
    variables: dict[str, Any]
    task_activity: list[TaskActivity]
    start_time: datetime
    last_update: datetime
    next_step: int | None = None
    active_workflow: str | None = None
    call_stack: list[CallFrame] = field(default_factory=list)
    pending_escalation_id: str | None = None
    stop_reason: str | None = None
    error: str | None = None

    @property
    def resume_step(self) -> int:
        """Index of the first step that has not completed yet."""

        if self.next_step is not None:
            return self.next_step
        return self.current_step + 1

    @property
    def executing_workflow(self) -> str:
        return self.active_workflow or self.workflow_name


@dataclass(slots=True, frozen=True)
class Decision:
    """Immutable answer to an open question with its confidence."""

    question: str
    answer: str
    confidence: float
    reasoning: str
    source: DecisionSource
    decided_at: datetime


@dataclass(slots=True)
class DecisionAuditEntry:
    """Decision as stored in the audit log, with the run position that asked it."""

    audit_id: int
    decision: Decision
    run_id: str | None = None
    workflow_name: str | None = None
    step: int | None = None
    escalation_id: str | None = None


@dataclass(slots=True)
class Escalation:
    """Decision that failed the confidence gate and awaits a human answer."""

    id: str
    run_id: str
    workflow_name: str
    step: int
    question: str
    ai_answer: str
    ai_confidence: float
    ai_reasoning: str
    context: str
    status: EscalationStatus
    created_at: datetime
    response: str | None = None
    responded_at: datetime | None = None
    resolved_at: datetime | None = None


@dataclass(slots=True)
class EscalationCreate:
    """Input payload for enqueuing an escalation."""

    run_id: str
    workflow_name: str
    step: int
    question: str
    ai_answer: str
    ai_confidence: float
    ai_reasoning: str = ""
    context: str = ""


@dataclass(slots=True)
class EscalationFilter:
    """Optional filters for escalation listing."""

    status: EscalationStatus | None = None
    run_id: str | None = None
    workflow_name: str | None = None


@dataclass(slots=True)
class EscalationMetrics:
    """Escalation queue health snapshot."""

    total: int
    pending: int
    responded: int
    resolved: int
    average_resolution_seconds: float | None
    by_workflow: dict[str, int]


@dataclass(slots=True)
class DecisionOutcome:
    """Result of a decide call: an answer or a pending escalation."""

    decision: Decision
    escalation_id: str | None = None

    @property
    def pending(self) -> bool:
        return self.escalation_id is not None


@dataclass(slots=True)
class Workspace:
    """Isolated working copy bound to one unit of work."""

    unit_id: str
    path: str
    branch: str
    base_ref: str
    status: WorkspaceStatus
    created_at: datetime
    closed_at: datetime | None = None


@dataclass(slots=True)
class TaskSpec:
    """What a caller needs from the executor pool for one invocation."""

    provider: str
    model: str
    grouping: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float | None = None


@dataclass(slots=True)
class TaskUsage:
    """Accrued token usage and cost of one task."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    unknown_usage: bool = False


@dataclass(slots=True)
class Task:
    """Ephemeral executor bound to one provider/model for one step invocation."""

    task_id: str
    provider: str
    model: str
    grouping: dict[str, str]
    started_at: datetime
    timeout_seconds: float | None = None
    rendered_input: str | None = None
    usage: TaskUsage = field(default_factory=TaskUsage)
    released: bool = False


@dataclass(slots=True)
class UsageAggregate:
    """Usage rollup for one caller-supplied grouping key value."""

    group_key: str
    group_value: str
    invocations: int = 0
    succeeded: int = 0
    failed: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    unknown_usage: int = 0


@dataclass(slots=True)
class PoolStats:
    """Executor pool occupancy snapshot."""

    active: int
    max_concurrent: int
    queued: int
    total_created: int
    total_cost_usd: float
