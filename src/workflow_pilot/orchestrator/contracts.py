"""JSON contracts for run state snapshots and escalation records."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from workflow_pilot.orchestrator.models import (
    ActivityStatus,
    CallFrame,
    Escalation,
    RunStatus,
    TaskActivity,
    WorkflowState,
)
from workflow_pilot.storage.common import from_iso


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload so readers see either the old or the new file, never a mix.

    The document is written to a temporary file in the target directory, flushed to disk,
    verified, and moved into place with a single rename.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    text = _dumps(payload)
    handle, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(handle, "w", encoding="utf-8") as stream:
            stream.write(text)
            stream.flush()
            os.fsync(stream.fileno())
        if temp_path.read_text("utf-8") != text:
            raise OSError(f"Verification of temporary file failed for {path}")
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def state_to_payload(state: WorkflowState) -> dict[str, Any]:
    """Serialize run state into the persisted snapshot format."""

    return {
        "runId": state.run_id,
        "workflowName": state.workflow_name,
        "currentStep": state.current_step,
        "nextStep": state.next_step,
        "status": state.status.value,
        "variables": state.variables,
        "taskActivity": [_activity_to_payload(entry) for entry in state.task_activity],
        "startTime": state.start_time.isoformat(),
        "lastUpdate": state.last_update.isoformat(),
        "activeWorkflow": state.active_workflow,
        "callStack": [
            {"workflowName": frame.workflow_name, "returnStep": frame.return_step}
            for frame in state.call_stack
        ],
        "pendingEscalationId": state.pending_escalation_id,
        "stopReason": state.stop_reason,
        "error": state.error,
    }


def state_from_payload(raw: dict[str, Any]) -> WorkflowState:  # noqa: C901
    """Deserialize and validate a persisted run state snapshot."""

    run_id = raw.get("runId")
    workflow_name = raw.get("workflowName")
    current_step = raw.get("currentStep")
    next_step = raw.get("nextStep")
    status = raw.get("status")
    variables = raw.get("variables")
    activity = raw.get("taskActivity", [])
    call_stack = raw.get("callStack", [])
    if not isinstance(run_id, str) or not run_id.strip():
        raise ValueError("state.runId must be a non-empty string")
    if not isinstance(workflow_name, str) or not workflow_name.strip():
        raise ValueError("state.workflowName must be a non-empty string")
    if not isinstance(current_step, int) or isinstance(current_step, bool) or current_step < -1:
        raise ValueError("state.currentStep must be an integer >= -1")
    if next_step is not None and (not isinstance(next_step, int) or next_step < 0):
        raise ValueError("state.nextStep must be a non-negative integer when provided")
    if status not in {item.value for item in RunStatus}:
        raise ValueError(f"state.status is invalid: {status!r}")
    if not isinstance(variables, dict):
        raise TypeError("state.variables must be an object")
    if not isinstance(activity, list):
        raise TypeError("state.taskActivity must be an array")
    if not isinstance(call_stack, list):
        raise TypeError("state.callStack must be an array")

    frames: list[CallFrame] = []
    for frame in call_stack:
        if not isinstance(frame, dict):
            raise TypeError("state.callStack entry must be an object")
        name = frame.get("workflowName")
        return_step = frame.get("returnStep")
        if not isinstance(name, str) or not isinstance(return_step, int):
            raise ValueError("state.callStack entry requires workflowName and returnStep")
        frames.append(CallFrame(workflow_name=name, return_step=return_step))

    return WorkflowState(
        run_id=run_id,
        workflow_name=workflow_name,
        current_step=current_step,
        next_step=next_step,
        status=RunStatus(status),
        variables=variables,
        task_activity=[_activity_from_payload(entry) for entry in activity],
        start_time=from_iso(_require_str(raw, "startTime")),
        last_update=from_iso(_require_str(raw, "lastUpdate")),
        active_workflow=_optional_str(raw, "activeWorkflow"),
        call_stack=frames,
        pending_escalation_id=_optional_str(raw, "pendingEscalationId"),
        stop_reason=_optional_str(raw, "stopReason"),
        error=_optional_str(raw, "error"),
    )


def escalation_to_record(escalation: Escalation) -> dict[str, Any]:
    """Serialize escalation into the stable external record format."""

    record: dict[str, Any] = {
        "id": escalation.id,
        "runId": escalation.run_id,
        "workflowName": escalation.workflow_name,
        "step": escalation.step,
        "question": escalation.question,
        "aiAnswer": escalation.ai_answer,
        "aiConfidence": escalation.ai_confidence,
        "aiReasoning": escalation.ai_reasoning,
        "context": escalation.context,
        "status": escalation.status.value,
        "createdAt": escalation.created_at.isoformat(),
    }
    if escalation.response is not None:
        record["response"] = escalation.response
    if escalation.responded_at is not None:
        record["respondedAt"] = escalation.responded_at.isoformat()
    if escalation.resolved_at is not None:
        record["resolvedAt"] = escalation.resolved_at.isoformat()
    return record


def _activity_to_payload(entry: TaskActivity) -> dict[str, Any]:
    return {
        "taskId": entry.task_id,
        "step": entry.step,
        "stepName": entry.step_name,
        "workflowName": entry.workflow_name,
        "provider": entry.provider,
        "model": entry.model,
        "startedAt": entry.started_at.isoformat(),
        "durationMs": entry.duration_ms,
        "status": entry.status.value,
        "attempts": entry.attempts,
        "outputPreview": entry.output_preview,
        "error": entry.error,
        "estimatedCostUsd": entry.estimated_cost_usd,
    }


def _activity_from_payload(raw: object) -> TaskActivity:
    if not isinstance(raw, dict):
        raise TypeError("state.taskActivity entry must be an object")
    step = raw.get("step")
    duration_ms = raw.get("durationMs")
    status = raw.get("status")
    if not isinstance(step, int) or not isinstance(duration_ms, int):
        raise ValueError("state.taskActivity entry requires integer step and durationMs")
    if status not in {item.value for item in ActivityStatus}:
        raise ValueError(f"state.taskActivity.status is invalid: {status!r}")
    cost = raw.get("estimatedCostUsd")
    return TaskActivity(
        task_id=_require_str(raw, "taskId"),
        step=step,
        step_name=_require_str(raw, "stepName"),
        workflow_name=_require_str(raw, "workflowName"),
        provider=_require_str(raw, "provider"),
        model=_require_str(raw, "model"),
        started_at=from_iso(_require_str(raw, "startedAt")),
        duration_ms=duration_ms,
        status=ActivityStatus(status),
        attempts=int(raw.get("attempts", 1)),
        output_preview=str(raw.get("outputPreview", "")),
        error=_optional_str(raw, "error"),
        estimated_cost_usd=float(cost) if isinstance(cost, int | float) else None,
    )


def _require_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string")
    return value


def _optional_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{key} must be a string when provided")
    return value


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True, default=str)
