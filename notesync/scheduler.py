from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from notesync.core.config import SyncConfig
from notesync.service import SyncBusy, SyncService

logger = logging.getLogger("scheduler")

STARTED = "started"
SKIPPED_BUSY = "skipped_busy"
SKIPPED_EDITING = "skipped_editing"
SKIPPED_THROTTLED = "skipped_throttled"
SKIPPED_DISCONNECTED = "skipped_disconnected"
DISABLED = "disabled"


def _iso_from_ts(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


class AutoSyncScheduler:
    """Decides when a sync round starts.

    Every trigger (initial delay, timer, visibility, focus, manual) goes
    through ``trigger``. Overlapping triggers are dropped, not queued. Runs
    on the event loop that owns the store.
    """

    def __init__(self, service: SyncService, cfg: SyncConfig, clock: Callable[[], float] = time.monotonic):
        self.service = service
        self.enabled = bool(cfg.auto_sync)
        self.poll_interval_sec = float(cfg.poll_interval_sec)
        self.min_interval_sec = float(cfg.min_interval_sec)
        self.quiet_window_sec = float(cfg.quiet_window_sec)
        self.initial_delay_sec = float(cfg.initial_delay_sec)
        self._clock = clock

        self._in_flight = False
        self._last_edit_at: float | None = None
        self._last_started_at: float | None = None
        self._task: asyncio.Task | None = None
        self._run_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

        self._state: dict[str, Any] = {
            "running": False,
            "run_count": 0,
            "skip_counts": {},
            "last_trigger": None,
            "last_outcome": None,
            "last_result": None,
            "last_error": None,
            "last_started_at": None,
            "last_finished_at": None,
            "next_run_at": None,
        }

    # -- guards -----------------------------------------------------------

    def mark_edit(self) -> None:
        self._last_edit_at = self._clock()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _check(self) -> str | None:
        if not self.enabled:
            return DISABLED
        if self._in_flight or self.service.busy:
            return SKIPPED_BUSY
        if not self.service.auth.is_connected():
            return SKIPPED_DISCONNECTED
        now = self._clock()
        if self._last_edit_at is not None and now - self._last_edit_at < self.quiet_window_sec:
            return SKIPPED_EDITING
        if self._last_started_at is not None and now - self._last_started_at < self.min_interval_sec:
            return SKIPPED_THROTTLED
        return None

    def trigger(self, reason: str) -> str:
        """Start a round in the background unless a guard says no."""
        self._state["last_trigger"] = reason
        outcome = self._check()
        if outcome is not None:
            counts = self._state["skip_counts"]
            counts[outcome] = counts.get(outcome, 0) + 1
            self._state["last_outcome"] = outcome
            logger.debug("sync_trigger_skipped %s reason=%s", outcome, reason)
            return outcome

        self._in_flight = True
        self._last_started_at = self._clock()
        self._state["last_outcome"] = STARTED
        self._state["last_started_at"] = time.time()
        logger.info("sync_triggered reason=%s", reason)
        self._run_task = asyncio.create_task(self._run(reason), name=f"notesync_sync_{reason}")
        return STARTED

    async def _run(self, reason: str) -> None:
        try:
            summary = await self.service.run_async(f"auto_{reason}")
        except SyncBusy:
            self._state["last_outcome"] = SKIPPED_BUSY
            logger.warning("scheduled_sync_skipped sync_busy")
            return
        except Exception as e:
            self._state["last_result"] = "failed"
            self._state["last_error"] = str(e)
            logger.exception("scheduled_sync_failed: %s", e)
            return
        finally:
            self._in_flight = False
            self._state["last_finished_at"] = time.time()

        self._state["run_count"] += 1
        self._state["last_result"] = summary.get("status")
        self._state["last_error"] = summary.get("fatal_error")

    def on_visibility_change(self, visible: bool) -> str | None:
        if not visible:
            return None
        return self.trigger("visible")

    def on_focus(self) -> str:
        return self.trigger("focus")

    async def wait_idle(self) -> None:
        task = self._run_task
        if task is not None and not task.done():
            await task

    # -- lifecycle --------------------------------------------------------

    async def _loop(self, stop_event: asyncio.Event) -> None:
        self._state["running"] = True
        logger.info("scheduler_started enabled=%s interval=%s", self.enabled, self.poll_interval_sec)
        try:
            self._state["next_run_at"] = time.time() + self.initial_delay_sec
            if await _wait_stop_or_timeout(stop_event, self.initial_delay_sec):
                return
            self.trigger("initial")

            while not stop_event.is_set():
                if self.poll_interval_sec <= 0:
                    self._state["next_run_at"] = None
                    await stop_event.wait()
                    break
                self._state["next_run_at"] = time.time() + self.poll_interval_sec
                if await _wait_stop_or_timeout(stop_event, self.poll_interval_sec):
                    break
                self.trigger("timer")
        finally:
            self._state["running"] = False
            self._state["next_run_at"] = None
            logger.info("scheduler_stopped")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="notesync_scheduler")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
        # an in-flight round runs to completion
        await self.wait_idle()
        self._task = None
        self._stop_event = None

    def snapshot(self) -> dict[str, Any]:
        snap = dict(self._state)
        next_run_at = snap.get("next_run_at")
        return {
            "running": bool(snap["running"]),
            "enabled": self.enabled,
            "in_flight": self._in_flight,
            "poll_interval_sec": self.poll_interval_sec,
            "min_interval_sec": self.min_interval_sec,
            "quiet_window_sec": self.quiet_window_sec,
            "run_count": snap["run_count"],
            "skip_counts": dict(snap["skip_counts"]),
            "last_trigger": snap["last_trigger"],
            "last_outcome": snap["last_outcome"],
            "last_result": snap["last_result"],
            "last_error": snap["last_error"],
            "last_started_at": _iso_from_ts(snap["last_started_at"]),
            "last_finished_at": _iso_from_ts(snap["last_finished_at"]),
            "next_run_at": _iso_from_ts(next_run_at),
            "next_run_in_sec": None if next_run_at is None else max(int(next_run_at - time.time()), 0),
        }
