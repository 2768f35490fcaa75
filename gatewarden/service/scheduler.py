"""Recurring maintenance sweeps.

Lazy expiry on read keeps every component correct on its own; these sweeps
only bound how long stale state lingers in the store.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from gatewarden.logging import get_logger

logger = get_logger(__name__)

SweepFunc = Callable[[], Awaitable[Any]]

MAX_BACKOFF_SECONDS = 300


class RecurringTask:
    """Runs ``func`` every ``interval_seconds`` until stopped.

    A run that would overlap one still in progress is skipped rather than
    queued. Errors are logged and the loop carries on.
    """

    def __init__(self, name: str, interval_seconds: float, func: SweepFunc) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self._lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.skipped = 0
        self.consecutive_errors = 0
        self.last_result: Any = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> Any:
        """Run the body now; returns None without running if a run is in progress."""
        if self._lock.locked():
            self.skipped += 1
            logger.warning("sweep_skipped_overlap", task=self.name)
            return None
        async with self._lock:
            result = await self.func()
            self.runs += 1
            self.last_result = result
            return result

    async def start(self) -> None:
        if self._running:
            logger.warning("sweep_already_running", task=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("sweep_started", task=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("sweep_stopped", task=self.name)

    async def _run_loop(self) -> None:
        while self._running:
            delay = self.interval_seconds
            try:
                result = await self.run_once()
                self.consecutive_errors = 0
                if result:
                    logger.info("sweep_completed", task=self.name, result=result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.consecutive_errors += 1
                logger.error(
                    "sweep_failed",
                    task=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=self.consecutive_errors,
                )
                if self.consecutive_errors > 3:
                    delay = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval_seconds * (2 ** (self.consecutive_errors - 3)),
                    )
            await asyncio.sleep(delay)


class SweepScheduler:
    """Owns the standard set of cleanup sweeps."""

    def __init__(self) -> None:
        self.tasks: Dict[str, RecurringTask] = {}

    def add(self, name: str, interval_seconds: float, func: SweepFunc) -> RecurringTask:
        if name in self.tasks:
            raise ValueError(f"duplicate sweep: {name}")
        task = RecurringTask(name, interval_seconds, func)
        self.tasks[name] = task
        return task

    @classmethod
    def standard(
        cls,
        *,
        activity,
        sessions,
        guard,
        password_reset,
        two_factor,
        api_keys,
        devices,
        session_interval_seconds: float = 300,
        maintenance_interval_seconds: float = 900,
        device_interval_seconds: float = 86400,
        device_inactive_days: int = 90,
    ) -> "SweepScheduler":
        scheduler = cls()
        scheduler.add("inactive_sessions", session_interval_seconds, activity.cleanup_inactive_sessions)
        scheduler.add("expired_sessions", session_interval_seconds, sessions.cleanup_expired_sessions)
        scheduler.add("expired_lockouts", maintenance_interval_seconds, guard.cleanup_expired_lockouts)
        scheduler.add("expired_reset_tokens", maintenance_interval_seconds, password_reset.cleanup_expired_tokens)
        scheduler.add("expired_second_factor_tokens", maintenance_interval_seconds, two_factor.cleanup_expired_tokens)
        scheduler.add("expired_api_keys", maintenance_interval_seconds, api_keys.cleanup_expired_keys)

        async def _devices() -> int:
            return await devices.cleanup_inactive_devices(device_inactive_days)

        scheduler.add("inactive_devices", device_interval_seconds, _devices)
        return scheduler

    async def start(self) -> None:
        for task in self.tasks.values():
            await task.start()

    async def stop(self) -> None:
        for task in self.tasks.values():
            await task.stop()

    async def run_all_once(self) -> Dict[str, Any]:
        """Run every sweep now, in registration order; one failure does not stop the rest."""
        results: Dict[str, Any] = {}
        for name, task in self.tasks.items():
            try:
                results[name] = await task.run_once()
            except Exception as exc:
                logger.error("sweep_failed", task=name, error=str(exc), error_type=type(exc).__name__)
                results[name] = None
        return results

    def names(self) -> List[str]:
        return list(self.tasks)
