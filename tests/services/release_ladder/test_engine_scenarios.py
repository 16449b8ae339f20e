from __future__ import annotations

import asyncio
import random
import threading

import pytest

from release_ladder.contracts import (
    OUTCOME_CLIPPED,
    OUTCOME_DELIVERED,
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    STATE_ACTIVE,
    STATE_COMPLETED,
    STATE_PAUSED,
    ReleaseEvent,
)
from release_ladder.engine import ReleaseEngine
from release_ladder.errors import AllocationNotFound, AlreadyCompleted
from release_ladder.policy import PolicyConfig
from release_ladder.providers import DeliveryReceipt, RecordingDeliveryProvider


def _engine(policy: PolicyConfig | None = None, provider: RecordingDeliveryProvider | None = None) -> ReleaseEngine:
    return ReleaseEngine(provider or RecordingDeliveryProvider(), policy=policy)


def test_cap_seven_base_one_releases_one_two_four_then_completes() -> None:
    provider = RecordingDeliveryProvider()
    engine = _engine(provider=provider)
    engine.register("a", cap=7, base_units=1)
    engine.activate("a")

    delivered = []
    for _ in range(3):
        events = engine.advance_tick()
        assert len(events) == 1
        delivered.append(events[0].delivered_units)

    assert delivered == [1, 2, 4]
    allocation = engine.get("a")
    assert allocation.total_released == 7
    assert allocation.state == STATE_COMPLETED
    assert engine.advance_tick() == []
    assert provider.delivered_units == [1, 2, 4]


def test_cap_five_base_two_clips_second_release() -> None:
    engine = _engine()
    engine.register("b", cap=5, base_units=2)
    engine.activate("b")

    first = engine.advance_tick()[0]
    assert (first.units, first.delivered_units, first.outcome) == (2, 2, OUTCOME_DELIVERED)
    assert engine.get("b").total_released == 2

    second = engine.advance_tick()[0]
    assert (second.units, second.delivered_units, second.outcome) == (4, 3, OUTCOME_CLIPPED)
    assert second.reason_code == "CAP_CLIP"
    assert engine.get("b").total_released == 5
    assert engine.get("b").state == STATE_COMPLETED


def test_successful_releases_double_each_tick() -> None:
    engine = _engine()
    engine.register("a", cap=10_000, base_units=3)
    engine.activate("a")
    events = engine.run(6)
    assert [event.delivered_units for event in events] == [3, 6, 12, 24, 48, 96]
    assert [event.tick_index for event in events] == [0, 1, 2, 3, 4, 5]
    assert [event.release_time for event in events] == [1, 2, 3, 4, 5, 6]


def test_global_tick_cap_clips_second_allocation_to_remaining_budget() -> None:
    engine = _engine(PolicyConfig(max_units_per_tick=3))
    engine.register("a1", cap=100, base_units=2)
    engine.register("a2", cap=100, base_units=4)
    engine.activate("a1")
    engine.activate("a2")

    first, second = engine.advance_tick()
    assert (first.allocation_id, first.delivered_units, first.outcome) == ("a1", 2, OUTCOME_DELIVERED)
    assert (second.allocation_id, second.units, second.delivered_units, second.outcome) == (
        "a2",
        4,
        1,
        OUTCOME_CLIPPED,
    )

    first, second = engine.advance_tick()
    assert (first.units, first.delivered_units, first.outcome) == (4, 3, OUTCOME_CLIPPED)
    assert (second.units, second.delivered_units, second.outcome) == (8, 0, OUTCOME_REJECTED)
    assert engine.get("a2").total_released == 1
    assert engine.get("a2").tick_count == 2


def test_global_tick_cap_rejects_when_budget_exhausted() -> None:
    engine = _engine(PolicyConfig(max_units_per_tick=2))
    engine.register("a1", cap=100, base_units=2)
    engine.register("a2", cap=100, base_units=4)
    engine.activate("a1")
    engine.activate("a2")

    first, second = engine.advance_tick()
    assert first.outcome == OUTCOME_DELIVERED
    assert (second.outcome, second.delivered_units, second.reason_code) == (OUTCOME_REJECTED, 0, "GLOBAL_TICK_CAP")
    rejected = engine.get("a2")
    assert (rejected.tick_count, rejected.total_released, rejected.state) == (1, 0, STATE_ACTIVE)


def test_provider_failure_keeps_total_but_consumes_doubling_step() -> None:
    provider = RecordingDeliveryProvider(fail_on={2})
    engine = _engine(provider=provider)
    engine.register("a", cap=100, base_units=1)
    engine.activate("a")

    events = engine.run(3)
    assert [event.outcome for event in events] == [OUTCOME_DELIVERED, OUTCOME_FAILED, OUTCOME_DELIVERED]
    assert events[1].units == 2
    assert events[1].delivered_units == 0
    assert events[1].reason_code == "DELIVERY_ERROR:SIMULATED_FAILURE"
    assert len(provider.calls) == 3
    allocation = engine.get("a")
    assert allocation.total_released == 1 + 4
    assert allocation.tick_count == 3


def test_receipt_not_accepted_is_failed_outcome() -> None:
    provider = RecordingDeliveryProvider(reject_on={1})
    engine = _engine(provider=provider)
    engine.register("a", cap=100, base_units=1)
    engine.activate("a")

    (event,) = engine.advance_tick()
    assert event.outcome == OUTCOME_FAILED
    assert engine.get("a").total_released == 0


def test_provider_exception_does_not_abort_other_allocations() -> None:
    class Flaky:
        def __init__(self) -> None:
            self.seen: list[str] = []

        def deliver(self, event: ReleaseEvent) -> None:
            self.seen.append(event.allocation_id)
            if event.allocation_id == "a":
                raise ValueError("socket closed")

    provider = Flaky()
    engine = ReleaseEngine(provider)
    for allocation_id in ("a", "b"):
        engine.register(allocation_id, cap=10, base_units=1)
        engine.activate(allocation_id)

    first, second = engine.advance_tick()
    assert first.outcome == OUTCOME_FAILED
    assert first.reason_code == "DELIVERY_ERROR:INTERNAL_ERROR"
    assert second.outcome == OUTCOME_DELIVERED
    assert provider.seen == ["a", "b"]


def test_rejected_events_never_reach_the_provider() -> None:
    provider = RecordingDeliveryProvider()
    engine = _engine(PolicyConfig(pre_release_hook=lambda event: False), provider)
    engine.register("a", cap=10, base_units=1)
    engine.activate("a")

    events = engine.run(3)
    assert [event.outcome for event in events] == [OUTCOME_REJECTED] * 3
    assert provider.calls == []
    assert engine.get("a").tick_count == 3


def test_post_release_hook_sees_settled_admitted_events_in_order() -> None:
    seen: list[tuple[str, str]] = []
    provider = RecordingDeliveryProvider(fail_on={2})
    policy = PolicyConfig(
        max_units_per_tick=3,
        post_release_hook=lambda event: seen.append((event.allocation_id, event.outcome)),
    )
    engine = _engine(policy, provider)
    for allocation_id in ("a", "b", "c"):
        engine.register(allocation_id, cap=10, base_units=2)
        engine.activate(allocation_id)

    engine.advance_tick()
    # "c" is rejected by the tick budget and never admitted.
    assert seen == [("a", OUTCOME_DELIVERED), ("b", OUTCOME_FAILED)]


def test_per_allocation_limit_completes_allocation_below_cap() -> None:
    engine = _engine(PolicyConfig(max_units_per_allocation=3))
    engine.register("a", cap=100, base_units=1)
    engine.activate("a")

    events = engine.run(2)
    assert [event.delivered_units for event in events] == [1, 2]
    allocation = engine.get("a")
    assert allocation.state == STATE_COMPLETED
    assert allocation.total_released == 3
    assert engine.metrics_snapshot()["active_allocations"] == 0
    assert engine.advance_tick() == []
    assert engine.metrics.counters["completions_total"] == 1
    with pytest.raises(AlreadyCompleted):
        engine.activate("a")


def test_allocation_override_clips_then_completes() -> None:
    engine = _engine(PolicyConfig(allocation_overrides={"x": 5}))
    engine.register("x", cap=100, base_units=2)
    engine.activate("x")

    first, second = engine.run(2)
    assert first.delivered_units == 2
    assert (second.units, second.delivered_units, second.reason_code) == (4, 3, "ALLOCATION_CAP")
    assert engine.advance_tick() == []
    assert engine.get("x").state == STATE_COMPLETED


def test_pause_and_resume_preserve_counters() -> None:
    engine = _engine()
    engine.register("a", cap=100, base_units=1)
    engine.activate("a")
    engine.advance_tick()

    engine.pause("a")
    engine.pause("a")
    assert engine.advance_tick() == []
    paused = engine.get("a")
    assert (paused.state, paused.tick_count, paused.total_released) == (STATE_PAUSED, 1, 1)

    engine.activate("a")
    (event,) = engine.advance_tick()
    assert event.delivered_units == 2
    assert engine.get("a").total_released == 3


def test_pause_requested_by_provider_applies_after_release_settles() -> None:
    engine_ref: list[ReleaseEngine] = []

    class PausingProvider:
        def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
            engine_ref[0].pause(event.allocation_id)
            return DeliveryReceipt(accepted=True)

    engine = ReleaseEngine(PausingProvider())
    engine_ref.append(engine)
    engine.register("a", cap=100, base_units=1)
    engine.activate("a")

    (event,) = engine.advance_tick()
    assert event.outcome == OUTCOME_DELIVERED
    allocation = engine.get("a")
    assert (allocation.state, allocation.tick_count, allocation.total_released) == (STATE_PAUSED, 1, 1)


def test_resume_during_release_cancels_the_pending_pause() -> None:
    engine_ref: list[ReleaseEngine] = []

    class FlappingProvider:
        def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
            engine_ref[0].pause(event.allocation_id)
            engine_ref[0].activate(event.allocation_id)
            return DeliveryReceipt(accepted=True)

    engine = ReleaseEngine(FlappingProvider())
    engine_ref.append(engine)
    engine.register("a", cap=100, base_units=1)
    engine.activate("a")

    engine.advance_tick()
    allocation = engine.get("a")
    assert (allocation.state, allocation.pause_requested) == (STATE_ACTIVE, False)
    (event,) = engine.advance_tick()
    assert event.delivered_units == 2


def test_removal_mid_tick_is_skipped_not_raised() -> None:
    engine_ref: list[ReleaseEngine] = []

    class RemovingProvider:
        def deliver(self, event: ReleaseEvent) -> None:
            if event.allocation_id == "a":
                engine_ref[0].remove("a")
                engine_ref[0].remove("b")

    audited: list[str] = []
    policy = PolicyConfig(post_release_hook=lambda event: audited.append(event.allocation_id))
    engine = ReleaseEngine(RemovingProvider(), policy=policy)
    engine_ref.append(engine)
    for allocation_id in ("a", "b", "c"):
        engine.register(allocation_id, cap=10, base_units=1)
        engine.activate(allocation_id)

    events = engine.advance_tick()
    assert [event.allocation_id for event in events] == ["a", "c"]
    assert audited == ["a", "c"]
    with pytest.raises(AllocationNotFound):
        engine.get("a")
    snapshot = engine.metrics_snapshot()
    assert snapshot["metrics"]["skipped_total"] == 2
    # Only the release that settled into the registry is counted.
    assert snapshot["metrics"]["events_total"] == 1
    assert snapshot["metrics"]["units_delivered_total"] == 1
    assert snapshot["active_allocations"] == 1


def test_identical_setups_produce_identical_event_sequences() -> None:
    def scenario() -> list[ReleaseEvent]:
        engine = _engine(PolicyConfig(max_units_per_tick=9))
        for allocation_id, cap, base in (("m", 40, 3), ("k", 15, 1), ("z", 9, 2)):
            engine.register(allocation_id, cap=cap, base_units=base)
            engine.activate(allocation_id)
        return engine.run(8)

    assert scenario() == scenario()


@pytest.mark.parametrize("seed", [3, 17, 2024])
def test_total_released_never_exceeds_cap_under_random_operations(seed: int) -> None:
    rng = random.Random(seed)
    provider = RecordingDeliveryProvider(fail_on={rng.randint(1, 20) for _ in range(4)})
    engine = _engine(PolicyConfig(max_units_per_tick=rng.randint(5, 40)), provider)
    caps = {f"a{index}": rng.randint(1, 90) for index in range(5)}
    for allocation_id, cap in caps.items():
        engine.register(allocation_id, cap=cap, base_units=rng.randint(1, cap))
        engine.activate(allocation_id)

    for _ in range(60):
        allocation_id = rng.choice(sorted(caps))
        action = rng.random()
        if action < 0.15:
            engine.pause(allocation_id)
        elif action < 0.3 and engine.get(allocation_id).state == STATE_PAUSED:
            engine.activate(allocation_id)
        engine.advance_tick()
        for check_id, cap in caps.items():
            allocation = engine.get(check_id)
            assert 0 <= allocation.total_released <= cap

    delivered_by_id: dict[str, int] = {}
    for event in provider.delivered:
        delivered_by_id[event.allocation_id] = delivered_by_id.get(event.allocation_id, 0) + event.delivered_units
    for allocation_id in caps:
        assert delivered_by_id.get(allocation_id, 0) == engine.get(allocation_id).total_released


def test_run_until_idle_stops_when_everything_completes() -> None:
    engine = _engine()
    engine.register("a", cap=7, base_units=1)
    engine.register("b", cap=5, base_units=2)
    engine.activate("a")
    engine.activate("b")

    events = engine.run_until_idle(max_ticks=50)
    assert sum(event.delivered_units for event in events) == 12
    assert engine.metrics.counters["ticks_total"] == 3
    assert engine.metrics.counters["completions_total"] == 2


def test_run_forever_stops_once_stop_event_is_set() -> None:
    stop = threading.Event()
    delivered: list[int] = []

    class StoppingProvider:
        def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
            delivered.append(event.delivered_units)
            if len(delivered) == 3:
                stop.set()
            return DeliveryReceipt(accepted=True)

    engine = ReleaseEngine(StoppingProvider())
    engine.register("a", cap=100, base_units=1)
    engine.activate("a")

    engine.run_forever(poll_seconds=0, stop_event=stop)
    assert delivered == [1, 2, 4]
    assert engine.metrics.counters["ticks_total"] == 3

    engine.run_forever(poll_seconds=0, stop_event=stop)
    assert engine.metrics.counters["ticks_total"] == 3


def test_sync_tick_waits_for_async_tick_in_progress() -> None:
    engine_ref: list[ReleaseEngine] = []
    calls: list[tuple[int, int]] = []
    seen_during_async_tick: list[tuple[int, int]] = []
    workers: list[threading.Thread] = []

    class AsyncProvider:
        async def deliver(self, event: ReleaseEvent) -> DeliveryReceipt:
            calls.append((event.release_time, event.tick_index))
            if not workers:
                worker = threading.Thread(target=engine_ref[0].advance_tick)
                workers.append(worker)
                worker.start()
                for _ in range(5):
                    await asyncio.sleep(0.01)
                seen_during_async_tick.extend(calls)
            return DeliveryReceipt(accepted=True)

    engine = ReleaseEngine(AsyncProvider())
    engine_ref.append(engine)
    engine.register("a", cap=100, base_units=2)
    engine.activate("a")

    (outer,) = asyncio.run(engine.advance_tick_async())
    workers[0].join(timeout=5)

    assert not workers[0].is_alive()
    assert seen_during_async_tick == [(1, 0)]
    assert calls == [(1, 0), (2, 1)]
    assert outer.delivered_units == 2
    allocation = engine.get("a")
    assert (allocation.tick_count, allocation.total_released) == (2, 6)
