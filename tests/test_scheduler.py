import asyncio

from notesync import scheduler as scheduler_module
from notesync.core.config import SyncConfig
from notesync.scheduler import AutoSyncScheduler
from notesync.service import SyncBusy


class _FakeAuth:
    def __init__(self, connected: bool = True):
        self.connected = connected

    def is_connected(self):
        return self.connected


class _FakeService:
    def __init__(self, connected: bool = True):
        self.auth = _FakeAuth(connected)
        self.busy = False
        self.run_types: list[str] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None

    async def run_async(self, run_type: str):
        self.run_types.append(run_type)
        self.busy = True
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            return {"status": "success", "fatal_error": None}
        finally:
            self.busy = False


def _scheduler(service=None, clock=None, **overrides):
    cfg = SyncConfig(**{"min_interval_sec": 30, "quiet_window_sec": 5, "initial_delay_sec": 0, **overrides})
    now = clock if clock is not None else [1000.0]
    sched = AutoSyncScheduler(service or _FakeService(), cfg, clock=lambda: now[0])
    return sched, now


def test_disabled_scheduler_never_starts():
    async def scenario():
        sched, _ = _scheduler(auto_sync=False)
        assert sched.trigger("manual") == scheduler_module.DISABLED
        assert sched.service.run_types == []

    asyncio.run(scenario())


def test_disconnected_auth_skips():
    async def scenario():
        sched, _ = _scheduler(_FakeService(connected=False))
        assert sched.on_focus() == scheduler_module.SKIPPED_DISCONNECTED
        assert sched.snapshot()["skip_counts"] == {scheduler_module.SKIPPED_DISCONNECTED: 1}

    asyncio.run(scenario())


def test_recent_edit_defers_until_quiet():
    async def scenario():
        sched, now = _scheduler()
        sched.mark_edit()
        now[0] += 2
        assert sched.trigger("visible") == scheduler_module.SKIPPED_EDITING

        now[0] += 5
        assert sched.trigger("visible") == scheduler_module.STARTED
        await sched.wait_idle()
        assert sched.service.run_types == ["auto_visible"]

    asyncio.run(scenario())


def test_min_interval_throttles_rapid_triggers():
    async def scenario():
        sched, now = _scheduler()
        assert sched.on_focus() == scheduler_module.STARTED
        await sched.wait_idle()

        now[0] += 10
        assert sched.on_focus() == scheduler_module.SKIPPED_THROTTLED

        now[0] += 25
        assert sched.on_focus() == scheduler_module.STARTED
        await sched.wait_idle()
        assert sched.snapshot()["run_count"] == 2

    asyncio.run(scenario())


def test_overlapping_trigger_is_dropped_not_queued():
    async def scenario():
        service = _FakeService()
        service.gate = asyncio.Event()
        sched, now = _scheduler(service, min_interval_sec=0)

        assert sched.trigger("timer") == scheduler_module.STARTED
        await asyncio.sleep(0)
        assert sched.in_flight
        assert sched.trigger("focus") == scheduler_module.SKIPPED_BUSY

        service.gate.set()
        await sched.wait_idle()
        assert not sched.in_flight
        assert service.run_types == ["auto_timer"]

    asyncio.run(scenario())


def test_manual_round_in_service_counts_as_busy():
    async def scenario():
        service = _FakeService()
        service.busy = True
        sched, _ = _scheduler(service)
        assert sched.trigger("timer") == scheduler_module.SKIPPED_BUSY

    asyncio.run(scenario())


def test_hidden_visibility_change_is_ignored():
    async def scenario():
        sched, _ = _scheduler()
        assert sched.on_visibility_change(False) is None
        assert sched.service.run_types == []

    asyncio.run(scenario())


def test_failed_round_is_reported_and_clears_in_flight():
    async def scenario():
        service = _FakeService()
        service.error = RuntimeError("boom")
        sched, _ = _scheduler(service)

        sched.trigger("timer")
        await sched.wait_idle()

        snap = sched.snapshot()
        assert snap["last_result"] == "failed"
        assert snap["last_error"] == "boom"
        assert not sched.in_flight

    asyncio.run(scenario())


def test_busy_race_in_service_is_treated_as_skip():
    async def scenario():
        service = _FakeService()
        service.error = SyncBusy("sync_busy")
        sched, _ = _scheduler(service)

        sched.trigger("timer")
        await sched.wait_idle()

        assert sched.snapshot()["last_outcome"] == scheduler_module.SKIPPED_BUSY

    asyncio.run(scenario())


def test_start_triggers_initial_round_and_stop_waits():
    async def scenario():
        service = _FakeService()
        sched, _ = _scheduler(service, poll_interval_sec=0)

        sched.start()
        for _ in range(20):
            await asyncio.sleep(0)
            if service.run_types:
                break
        assert sched.snapshot()["running"] is True

        await sched.stop()

        assert service.run_types == ["auto_initial"]
        assert sched.snapshot()["running"] is False
        assert not sched.in_flight

    asyncio.run(scenario())
