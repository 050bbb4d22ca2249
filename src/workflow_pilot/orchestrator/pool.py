"""Bounded executor pool: FIFO admission, per-task invocation, usage rollups."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from workflow_pilot.orchestrator.backend.base import (
    CompletionRequest,
    CompletionResult,
    ProviderCredentials,
    ProviderError,
    ProviderErrorCategory,
)
from workflow_pilot.orchestrator.backend.factory import LlmClient, ProviderFactory
from workflow_pilot.orchestrator.models import PoolStats, Task, TaskSpec, UsageAggregate
from workflow_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

PoolListener = Callable[[str, Task], None]
POOL_EVENTS = ("acquired", "invoked", "failed", "released")


class PoolClosedError(RuntimeError):
    """Pool was closed while acquiring or before acquiring."""


class PoolAcquireTimeout(TimeoutError):
    """No capacity slot became available within the acquire timeout."""


@dataclass(slots=True)
class _Slot:
    client: LlmClient
    in_flight: bool = False
    release_pending: bool = False


@dataclass(slots=True)
class _CallOutcome:
    done: threading.Event = field(default_factory=threading.Event)
    result: CompletionResult | None = None
    error: BaseException | None = None


class ExecutorPool:
    """Shared, provider-agnostic pool of short-lived tasks.

    At most `max_concurrent` tasks hold a capacity slot at any time. Waiting `acquire`
    calls are served strictly in arrival order. A task whose invocation timed out keeps
    its slot until the abandoned call returns, so the external rate limit is never
    exceeded even when callers give up early.
    """

    def __init__(  # noqa: PLR0913
        self,
        factory: ProviderFactory,
        *,
        max_concurrent: int = 3,
        credentials: Mapping[str, ProviderCredentials] | None = None,
        default_timeout_seconds: float | None = None,
        acquire_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        self.factory = factory
        self.max_concurrent = max_concurrent
        self.default_timeout_seconds = default_timeout_seconds
        self.acquire_timeout_seconds = acquire_timeout_seconds
        self._credentials = {key.lower(): value for key, value in (credentials or {}).items()}
        self._clock = clock
        self._condition = threading.Condition()
        self._waiting: deque[object] = deque()
        self._active = 0
        self._slots: dict[str, _Slot] = {}
        self._rollups: dict[tuple[str, str], UsageAggregate] = {}
        self._listeners: list[PoolListener] = []
        self._total_created = 0
        self._total_cost_usd = 0.0
        self._closed = False

    def acquire(self, spec: TaskSpec, *, timeout: float | None = None) -> Task:
        """Block until a slot is free, then bind a new task to a provider client."""

        wait_limit = timeout if timeout is not None else self.acquire_timeout_seconds
        deadline = time.monotonic() + wait_limit if wait_limit is not None else None
        ticket = object()
        with self._condition:
            if self._closed:
                raise PoolClosedError("Executor pool is closed")
            self._waiting.append(ticket)
            try:
                while not self._closed and (
                    self._waiting[0] is not ticket or self._active >= self.max_concurrent
                ):
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        raise PoolAcquireTimeout(
                            f"No executor slot within {wait_limit:.2f}s "
                            f"({self._active}/{self.max_concurrent} active)",
                        )
                    self._condition.wait(remaining)
                if self._closed:
                    raise PoolClosedError("Executor pool closed while waiting for a slot")
            except BaseException:
                self._waiting.remove(ticket)
                self._condition.notify_all()
                raise
            self._waiting.popleft()
            self._active += 1
            self._condition.notify_all()

        try:
            client = self.factory.create_client(
                spec.provider,
                spec.model,
                self._credentials.get(spec.provider.strip().lower()),
            )
        except BaseException:
            self._free_slot()
            raise

        task = Task(
            task_id=f"task-{uuid4().hex}",
            provider=client.provider,
            model=client.model,
            grouping=dict(spec.grouping),
            started_at=self._clock(),
            timeout_seconds=spec.timeout_seconds,
        )
        with self._condition:
            self._slots[task.task_id] = _Slot(client=client)
            self._total_created += 1
        logger.debug("Acquired %s for %s/%s", task.task_id, task.provider, task.model)
        self._emit("acquired", task)
        return task

    def invoke(  # noqa: PLR0913
        self,
        task: Task,
        input_text: str,
        *,
        timeout_seconds: float | None = None,
        temperature: float | None = None,
        system: str | None = None,
        cwd: Path | None = None,
    ) -> CompletionResult:
        """Run one completion for the task, bounded by the caller-supplied timeout."""

        with self._condition:
            slot = self._slots.get(task.task_id)
            if slot is None:
                raise ValueError(f"Task {task.task_id} is not held by this pool")
            if slot.in_flight:
                raise RuntimeError(f"Task {task.task_id} already has an invocation in flight")
            slot.in_flight = True
        task.rendered_input = input_text
        limit = timeout_seconds or task.timeout_seconds or self.default_timeout_seconds
        request = CompletionRequest(
            prompt=input_text,
            model=task.model,
            temperature=temperature,
            system=system,
            timeout_seconds=limit,
            cwd=cwd,
        )
        outcome = _CallOutcome()
        worker = threading.Thread(
            target=self._run_call,
            args=(task, slot, request, outcome),
            name=f"pool-{task.task_id}",
            daemon=True,
        )
        worker.start()
        if not outcome.done.wait(limit):
            self._record_invocation(task, succeeded=False)
            self._emit("failed", task)
            raise ProviderError(
                f"Task {task.task_id} timed out after {limit:.2f}s",
                category=ProviderErrorCategory.TIMEOUT,
                provider=task.provider,
            )
        if outcome.error is not None:
            self._record_invocation(task, succeeded=False)
            self._emit("failed", task)
            raise outcome.error
        result = outcome.result
        if result is None:
            raise RuntimeError(f"Task {task.task_id} finished without a result")
        self._record_invocation(task, succeeded=True)
        self._emit("invoked", task)
        return result

    def release(self, task: Task) -> None:
        """Return the task's slot; safe to call repeatedly and after failures."""

        with self._condition:
            slot = self._slots.pop(task.task_id, None)
            if slot is None:
                return
            task.released = True
            if slot.in_flight:
                slot.release_pending = True
                logger.info(
                    "Task %s released with a call in flight; slot held until it returns",
                    task.task_id,
                )
            else:
                self._active -= 1
                self._condition.notify_all()
        self._emit("released", task)

    @contextmanager
    def task(self, spec: TaskSpec, *, timeout: float | None = None) -> Iterator[Task]:
        """Acquire a task for the duration of a block."""

        acquired = self.acquire(spec, timeout=timeout)
        try:
            yield acquired
        finally:
            self.release(acquired)

    def add_listener(self, listener: PoolListener) -> None:
        with self._condition:
            self._listeners.append(listener)

    def stats(self) -> PoolStats:
        with self._condition:
            return PoolStats(
                active=self._active,
                max_concurrent=self.max_concurrent,
                queued=len(self._waiting),
                total_created=self._total_created,
                total_cost_usd=self._total_cost_usd,
            )

    def usage_by(self, key: str) -> list[UsageAggregate]:
        """Rollups for every value seen under one grouping key."""

        with self._condition:
            return [
                _copy_aggregate(aggregate)
                for (group_key, _), aggregate in sorted(self._rollups.items())
                if group_key == key
            ]

    def usage_for(self, key: str, value: str) -> UsageAggregate | None:
        with self._condition:
            aggregate = self._rollups.get((key, value))
            return _copy_aggregate(aggregate) if aggregate is not None else None

    def close(self) -> None:
        """Refuse new acquisitions and wake queued acquirers with PoolClosedError."""

        with self._condition:
            self._closed = True
            self._condition.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def _run_call(
        self,
        task: Task,
        slot: _Slot,
        request: CompletionRequest,
        outcome: _CallOutcome,
    ) -> None:
        try:
            result = slot.client.complete(request.prompt, request=request)
        except BaseException as error:  # noqa: BLE001
            outcome.error = error
        else:
            outcome.result = result
            self._accrue_usage(task, slot.client, result)
        finally:
            with self._condition:
                slot.in_flight = False
                if slot.release_pending:
                    slot.release_pending = False
                    self._active -= 1
                    self._condition.notify_all()
                    logger.info("Deferred slot of task %s returned to the pool", task.task_id)
            outcome.done.set()

    def _accrue_usage(self, task: Task, client: LlmClient, result: CompletionResult) -> None:
        cost = client.estimate_cost(result)
        unknown = result.total_tokens is None and result.prompt_tokens is None
        prompt_tokens = result.prompt_tokens or 0
        completion_tokens = result.completion_tokens or 0
        total_tokens = result.total_tokens or (prompt_tokens + completion_tokens)
        with self._condition:
            task.usage.prompt_tokens += prompt_tokens
            task.usage.completion_tokens += completion_tokens
            task.usage.total_tokens += total_tokens
            task.usage.estimated_cost_usd += cost or 0.0
            task.usage.unknown_usage = task.usage.unknown_usage or unknown
            self._total_cost_usd += cost or 0.0
            for aggregate in self._aggregates(task):
                aggregate.prompt_tokens += prompt_tokens
                aggregate.completion_tokens += completion_tokens
                aggregate.total_tokens += total_tokens
                aggregate.estimated_cost_usd += cost or 0.0
                if unknown:
                    aggregate.unknown_usage += 1

    def _record_invocation(self, task: Task, *, succeeded: bool) -> None:
        with self._condition:
            for aggregate in self._aggregates(task):
                aggregate.invocations += 1
                if succeeded:
                    aggregate.succeeded += 1
                else:
                    aggregate.failed += 1

    def _aggregates(self, task: Task) -> list[UsageAggregate]:
        aggregates: list[UsageAggregate] = []
        for key, value in task.grouping.items():
            aggregate = self._rollups.get((key, value))
            if aggregate is None:
                aggregate = UsageAggregate(group_key=key, group_value=value)
                self._rollups[(key, value)] = aggregate
            aggregates.append(aggregate)
        return aggregates

    def _free_slot(self) -> None:
        with self._condition:
            self._active -= 1
            self._condition.notify_all()

    def _emit(self, event: str, task: Task) -> None:
        with self._condition:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, task)
            except Exception:
                logger.exception("Pool listener failed on %s for %s", event, task.task_id)


def _copy_aggregate(aggregate: UsageAggregate) -> UsageAggregate:
    return UsageAggregate(
        group_key=aggregate.group_key,
        group_value=aggregate.group_value,
        invocations=aggregate.invocations,
        succeeded=aggregate.succeeded,
        failed=aggregate.failed,
        prompt_tokens=aggregate.prompt_tokens,
        completion_tokens=aggregate.completion_tokens,
        total_tokens=aggregate.total_tokens,
        estimated_cost_usd=aggregate.estimated_cost_usd,
        unknown_usage=aggregate.unknown_usage,
    )
