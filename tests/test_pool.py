from __future__ import annotations

import threading
import time
from collections.abc import Callable

import allure
import pytest

from workflow_pilot.orchestrator.backend.base import ProviderError, ProviderErrorCategory
from workflow_pilot.orchestrator.backend.factory import ProviderFactory
from workflow_pilot.orchestrator.models import Task, TaskSpec
from workflow_pilot.orchestrator.pool import ExecutorPool, PoolAcquireTimeout, PoolClosedError

pytestmark = [
    allure.epic("Executor Pool"),
    allure.feature("Admission & Usage"),
]

SPEC = TaskSpec(provider="scripted", model="scripted-1", grouping={"workflow": "wf", "run": "run-1"})


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def _acquire_in_thread(pool: ExecutorPool, acquired: list[Task], errors: list[BaseException]) -> threading.Thread:
    def _target() -> None:
        try:
            acquired.append(pool.acquire(SPEC))
        except BaseException as error:  # noqa: BLE001
            errors.append(error)

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    return thread


def test_third_acquire_blocks_until_a_slot_is_released(provider_factory: ProviderFactory) -> None:
    pool = ExecutorPool(provider_factory, max_concurrent=2)
    first = pool.acquire(SPEC)
    pool.acquire(SPEC)
    acquired: list[Task] = []
    errors: list[BaseException] = []

    thread = _acquire_in_thread(pool, acquired, errors)
    _wait_for(lambda: pool.stats().queued == 1)
    assert acquired == []
    assert pool.stats().active == 2

    pool.release(first)
    thread.join(5)

    assert len(acquired) == 1
    assert errors == []
    stats = pool.stats()
    assert (stats.active, stats.queued, stats.total_created) == (2, 0, 3)


def test_waiters_are_served_in_arrival_order(provider_factory: ProviderFactory) -> None:
    pool = ExecutorPool(provider_factory, max_concurrent=1)
    held = pool.acquire(SPEC)
    order: list[str] = []
    tasks: dict[str, Task] = {}

    def _waiter(name: str) -> None:
        tasks[name] = pool.acquire(SPEC)
        order.append(name)

    threads = []
    for name in ("first", "second", "third"):
        thread = threading.Thread(target=_waiter, args=(name,), daemon=True)
        thread.start()
        threads.append(thread)
        expected = len(threads)
        _wait_for(lambda expected=expected: pool.stats().queued == expected)

    pool.release(held)
    for name in ("first", "second", "third"):
        _wait_for(lambda name=name: name in tasks)
        pool.release(tasks[name])
    for thread in threads:
        thread.join(5)

    assert order == ["first", "second", "third"]


def test_acquire_timeout_leaves_queue_clean(provider_factory: ProviderFactory) -> None:
    pool = ExecutorPool(provider_factory, max_concurrent=1)
    pool.acquire(SPEC)

    with pytest.raises(PoolAcquireTimeout, match="1/1 active"):
        pool.acquire(SPEC, timeout=0.05)

    assert pool.stats().queued == 0


def test_close_wakes_waiters_and_rejects_new_acquires(provider_factory: ProviderFactory) -> None:
    pool = ExecutorPool(provider_factory, max_concurrent=1)
    pool.acquire(SPEC)
    acquired: list[Task] = []
    errors: list[BaseException] = []
    thread = _acquire_in_thread(pool, acquired, errors)
    _wait_for(lambda: pool.stats().queued == 1)

    pool.close()
    thread.join(5)

    assert acquired == []
    assert len(errors) == 1
    assert isinstance(errors[0], PoolClosedError)
    assert pool.closed
    with pytest.raises(PoolClosedError):
        pool.acquire(SPEC)


def test_unknown_provider_does_not_leak_a_slot(provider_factory: ProviderFactory) -> None:
    pool = ExecutorPool(provider_factory, max_concurrent=1)

    with pytest.raises(ProviderError, match="Unknown provider"):
        pool.acquire(TaskSpec(provider="missing", model="x"))

    assert pool.stats().active == 0
    with pool.task(SPEC) as task:
        assert task.provider == "scripted"
    assert pool.stats().active == 0


def test_timed_out_call_holds_slot_until_it_returns(provider_factory: ProviderFactory, scripted_backend) -> None:
    scripted_backend.gate = threading.Event()
    pool = ExecutorPool(provider_factory, max_concurrent=1)
    task = pool.acquire(SPEC)

    with pytest.raises(ProviderError) as raised:
        pool.invoke(task, "slow prompt", timeout_seconds=0.05)
    assert raised.value.category is ProviderErrorCategory.TIMEOUT

    pool.release(task)
    assert task.released
    assert pool.stats().active == 1
    with pytest.raises(PoolAcquireTimeout):
        pool.acquire(SPEC, timeout=0.05)

    scripted_backend.gate.set()
    _wait_for(lambda: pool.stats().active == 0)
    follow_up = pool.acquire(SPEC, timeout=5)
    assert follow_up.task_id != task.task_id


def test_invoke_accrues_usage_per_task_and_grouping(provider_factory: ProviderFactory, scripted_backend) -> None:
    scripted_backend.outcomes = [
        "first answer",
        ProviderError("busy", category=ProviderErrorCategory.TRANSIENT),
        "second answer",
    ]
    pool = ExecutorPool(provider_factory, max_concurrent=2)

    with pool.task(SPEC) as task:
        assert pool.invoke(task, "first").text == "first answer"
        with pytest.raises(ProviderError, match="busy"):
            pool.invoke(task, "retry me")
        pool.invoke(task, "second")

    assert task.usage.total_tokens == 30
    assert task.usage.estimated_cost_usd == pytest.approx(0.002)
    assert task.rendered_input == "second"
    aggregate = pool.usage_for("workflow", "wf")
    assert aggregate is not None
    assert (aggregate.invocations, aggregate.succeeded, aggregate.failed) == (3, 2, 1)
    assert aggregate.prompt_tokens == 20
    assert [item.group_value for item in pool.usage_by("run")] == ["run-1"]
    assert pool.usage_for("workflow", "other") is None
    assert pool.stats().total_cost_usd == pytest.approx(0.002)


def test_listeners_see_lifecycle_events_and_failures_are_isolated(
    provider_factory: ProviderFactory,
) -> None:
    pool = ExecutorPool(provider_factory, max_concurrent=1)
    events: list[str] = []

    def _broken(event: str, task: Task) -> None:
        raise RuntimeError("listener bug")

    pool.add_listener(_broken)
    pool.add_listener(lambda event, task: events.append(event))

    with pool.task(SPEC) as task:
        pool.invoke(task, "hello")
    pool.release(task)

    assert events == ["acquired", "invoked", "released"]


def test_invoke_requires_a_held_task(provider_factory: ProviderFactory) -> None:
    pool = ExecutorPool(provider_factory, max_concurrent=1)
    task = pool.acquire(SPEC)
    pool.release(task)

    with pytest.raises(ValueError, match="not held"):
        pool.invoke(task, "late")
    with pytest.raises(ValueError, match="max_concurrent"):
        ExecutorPool(provider_factory, max_concurrent=0)
