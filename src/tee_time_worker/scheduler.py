"""Interval task scheduler driving the worker's periodic tasks."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field

from tee_time_worker.jobs.models import JobRunnerContext

logger = logging.getLogger(__name__)

TaskRun = Callable[[JobRunnerContext], Awaitable[object]]


@dataclass(slots=True)
class IntervalTask:
    """Named task fired every ``every_ms`` milliseconds."""

    name: str
    every_ms: int
    run: TaskRun


@dataclass(slots=True)
class _TaskState:
    task: IntervalTask
    running: bool = False
    runs_started: int = 0
    skipped_ticks: int = 0
    failures: int = 0
    timer: asyncio.Task[None] | None = field(default=None, repr=False)


class IntervalScheduler:
    """Runs a fixed set of interval tasks until shutdown.

    Each task fires once on ``start()`` and then on a free-running timer.
    A tick that arrives while the previous run of the same task is still in
    flight is skipped, never queued. Stopping cancels the timers only; runs
    already in flight are left to finish within the shutdown grace delay.
    """

    def __init__(
        self,
        context: JobRunnerContext,
        tasks: Iterable[IntervalTask],
        *,
        shutdown_grace_ms: int = 50,
    ) -> None:
        self.context = context
        self.shutdown_grace_ms = shutdown_grace_ms
        self._states: dict[str, _TaskState] = {}
        for task in tasks:
            if task.name in self._states:
                raise ValueError(f"Duplicate interval task name: {task.name}")
            if task.every_ms <= 0:
                raise ValueError(f"Interval for task {task.name} must be > 0 ms.")
            self._states[task.name] = _TaskState(task=task)
        self._inflight: set[asyncio.Task[None]] = set()
        self._stop_event = asyncio.Event()
        self._started = False
        self._stopped = False

    @property
    def task_names(self) -> list[str]:
        return list(self._states)

    def is_running(self, name: str) -> bool:
        return self._states[name].running

    def runs_started(self, name: str) -> int:
        return self._states[name].runs_started

    def skipped_ticks(self, name: str) -> int:
        return self._states[name].skipped_ticks

    def failures(self, name: str) -> int:
        return self._states[name].failures

    def start(self) -> None:
        """Start every timer; must be called from a running event loop."""

        if self._started:
            raise RuntimeError("Scheduler already started.")
        loop = asyncio.get_running_loop()
        self._started = True
        for name, state in self._states.items():
            state.timer = loop.create_task(self._timer_loop(state), name=f"interval:{name}")

    def stop(self) -> None:
        """Cancel all timers. In-flight runs are not cancelled."""

        if self._stopped:
            return
        self._stopped = True
        for state in self._states.values():
            if state.timer is not None:
                state.timer.cancel()
        self._stop_event.set()

    def request_shutdown(self, signal_name: str = "manual") -> None:
        logger.info("Worker shutting down signal=%s", signal_name)
        self.stop()

    async def wait_closed(self) -> None:
        """Wait for timers to unwind and in-flight runs to finish (bounded)."""

        timers = [state.timer for state in self._states.values() if state.timer is not None]
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        if not self._inflight:
            return
        _, pending = await asyncio.wait(
            set(self._inflight),
            timeout=self.shutdown_grace_ms / 1000.0,
        )
        if pending:
            logger.warning(
                "Shutdown grace delay elapsed with runs in flight tasks=%s",
                ",".join(sorted(self._inflight_task_names())),
            )

    async def run_until_signalled(
        self,
        signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        """Start, block until a termination signal, then shut down."""

        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Signal handlers can only be installed in main thread.
                continue
            installed.append(sig)

        logger.info(
            "Worker starting tasks=%s",
            ",".join(
                f"{state.task.name}@{state.task.every_ms}ms" for state in self._states.values()
            ),
        )
        try:
            self.start()
            await self._stop_event.wait()
        finally:
            self.stop()
            await self.wait_closed()
            for sig in installed:
                loop.remove_signal_handler(sig)

    async def _timer_loop(self, state: _TaskState) -> None:
        loop = asyncio.get_running_loop()
        period = state.task.every_ms / 1000.0
        next_fire = loop.time()
        while True:
            self._tick(state)
            next_fire = max(next_fire + period, loop.time())
            await asyncio.sleep(next_fire - loop.time())

    def _tick(self, state: _TaskState) -> None:
        if state.running:
            state.skipped_ticks += 1
            logger.warning("Skipping overlapping worker task task=%s", state.task.name)
            return
        state.running = True
        run = asyncio.get_running_loop().create_task(
            self._run_guarded(state),
            name=f"run:{state.task.name}",
        )
        self._inflight.add(run)
        run.add_done_callback(self._inflight.discard)

    async def _run_guarded(self, state: _TaskState) -> None:
        state.runs_started += 1
        try:
            await state.task.run(self.context)
        except Exception as error:  # noqa: BLE001
            state.failures += 1
            logger.error("Worker task failed task=%s error=%s", state.task.name, error)
        finally:
            state.running = False

    def _inflight_task_names(self) -> list[str]:
        return [state.task.name for state in self._states.values() if state.running]
