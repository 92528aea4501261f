import asyncio

from casebook.timers import AsyncioScheduler, ManualScheduler


def test_manual_scheduler_fires_in_due_order() -> None:
    scheduler = ManualScheduler()
    fired = []
    scheduler.schedule(lambda: fired.append("late"), 300)
    scheduler.schedule(lambda: fired.append("early"), 100)
    scheduler.schedule(lambda: fired.append("tie"), 100)

    assert scheduler.advance(99) == 0
    assert scheduler.advance(1) == 2
    assert fired == ["early", "tie"]
    scheduler.advance(1000)
    assert fired == ["early", "tie", "late"]
    assert scheduler.now_ms == 1100


def test_cancelled_handle_never_fires() -> None:
    scheduler = ManualScheduler()
    fired = []
    handle = scheduler.schedule(lambda: fired.append(True), 50)
    handle.cancel()
    handle.cancel()
    scheduler.advance(100)

    assert fired == []
    assert handle.cancelled and not handle.fired
    assert scheduler.pending() == []


def test_callbacks_may_schedule_follow_up_timers() -> None:
    scheduler = ManualScheduler()
    fired = []

    def first() -> None:
        fired.append("first")
        scheduler.schedule(lambda: fired.append("second"), 10)

    scheduler.schedule(first, 10)
    scheduler.advance(25)
    assert fired == ["first", "second"]


def test_negative_delay_is_treated_as_immediate() -> None:
    scheduler = ManualScheduler()
    fired = []
    scheduler.schedule(lambda: fired.append(True), -5)
    scheduler.advance(0)
    assert fired == [True]


def test_asyncio_scheduler_fires_and_cancels() -> None:
    async def scenario() -> list:
        scheduler = AsyncioScheduler()
        fired = []
        scheduler.schedule(lambda: fired.append("kept"), 10)
        dropped = scheduler.schedule(lambda: fired.append("dropped"), 10)
        dropped.cancel()
        await asyncio.sleep(0.05)
        return fired

    assert asyncio.run(scenario()) == ["kept"]


def test_cancelled_timers_leave_the_queue() -> None:
    scheduler = ManualScheduler()
    kept = scheduler.schedule(lambda: None, 500)
    for _ in range(50):
        scheduler.schedule(lambda: None, 1000).cancel()

    assert scheduler.queued() == 1
    assert scheduler.pending() == [kept]
