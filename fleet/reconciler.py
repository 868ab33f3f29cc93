from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Protocol

from .events import log_event
from .launcher import WorkerHandle
from .runtime import LaunchSpec, Registry


class DesiredSource(Protocol):
    async def fetch_desired(self) -> list[LaunchSpec]: ...


class WorkerLauncher(Protocol):
    async def launch(self, identity: str, spec: LaunchSpec) -> WorkerHandle: ...

    def stop(self, handle: WorkerHandle) -> None: ...


@dataclass
class TickResult:
    desired: set[str] = field(default_factory=set)
    started: set[str] = field(default_factory=set)
    stopped: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    skipped: set[str] = field(default_factory=set)  # held back by crash backoff


class CrashBackoff:
    """Per-identity delay before relaunching a worker that keeps crashing.

    Disabled when ``base_s`` is 0: every crashed worker is relaunched on the
    next tick.
    """

    def __init__(self, base_s: float = 0.0, max_s: float = 300.0, stable_s: float = 60.0, clock=time.monotonic):
        self.base_s = max(0.0, float(base_s))
        self.max_s = max(self.base_s, float(max_s))
        self.stable_s = stable_s
        self._clock = clock
        self._failures: dict[str, int] = {}
        self._not_before: dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return self.base_s > 0

    def record_exit(self, handle: WorkerHandle) -> None:
        """Exit listener for the launcher (unexpected exits only)."""
        if not self.enabled:
            return
        identity = handle.identity
        if handle.uptime_s >= self.stable_s:
            self._failures[identity] = 1
        else:
            self._failures[identity] = self._failures.get(identity, 0) + 1
        n = self._failures[identity]
        delay = min(self.max_s, self.base_s * (2 ** (n - 1)))
        self._not_before[identity] = self._clock() + delay
        log_event("INFO", f"Crash backoff: next launch in {delay:.1f}s (failure #{n})", identity=identity)

    def ready(self, identity: str) -> bool:
        until = self._not_before.get(identity)
        return until is None or self._clock() >= until

    def forget(self, identity: str) -> None:
        self._failures.pop(identity, None)
        self._not_before.pop(identity, None)

    def tracked(self) -> set[str]:
        return set(self._failures)


class Reconciler:
    """Continuously reconciles the desired worker set with the running one.

    Level-triggered: every tick refetches the full desired set and diffs it
    against the registry, so a missed exit or a failed launch heals itself on
    the next tick.
    """

    def __init__(
        self,
        source: DesiredSource,
        launcher: WorkerLauncher,
        registry: Registry,
        interval_s: float = 30.0,
        backoff: CrashBackoff | None = None,
    ) -> None:
        self.source = source
        self.launcher = launcher
        self.registry = registry
        self.interval_s = max(0.01, float(interval_s))
        self.backoff = backoff or CrashBackoff()
        self.ticks = 0
        self._in_tick = False
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        log_event("INFO", f"Reconciler started (interval={self.interval_s}s)")
        # The next tick is only scheduled after the previous one finished,
        # so ticks never overlap.
        while True:
            try:
                await self.tick()
            except Exception as e:
                log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}", exc_info=True)
            await asyncio.sleep(self.interval_s)

    async def tick(self) -> TickResult | None:
        """Run one reconciliation pass. Returns None if a pass is already running."""
        if self._in_tick:
            log_event("WARN", "Reconcile tick skipped: previous tick still running")
            return None
        self._in_tick = True
        try:
            return await self._reconcile()
        finally:
            self._in_tick = False
            self.ticks += 1

    async def _reconcile(self) -> TickResult:
        specs = await self.source.fetch_desired()
        result = TickResult(desired={s.identity for s in specs})

        for spec in specs:
            await self._ensure_running(spec, result)

        for identity, handle in self.registry.entries():
            if identity in result.desired:
                continue
            log_event("INFO", f"Stopping worker pid={handle.pid} (no longer active)", identity=identity)
            try:
                self.launcher.stop(handle)
            except Exception as e:
                log_event("ERROR", f"Failed to signal worker pid={handle.pid}: {type(e).__name__}: {e}", identity=identity)
            self.registry.remove(identity, expected=handle)
            result.stopped.add(identity)

        for identity in self.backoff.tracked() - result.desired:
            self.backoff.forget(identity)

        if result.started or result.stopped or result.failed:
            log_event(
                "INFO",
                f"Reconciled: desired={len(result.desired)} running={len(self.registry)} "
                f"started={len(result.started)} stopped={len(result.stopped)} failed={len(result.failed)}",
            )
        return result

    async def _ensure_running(self, spec: LaunchSpec, result: TickResult) -> None:
        identity = spec.identity
        current = self.registry.get(identity)
        if current is not None:
            self._check_stale(current, spec)
            return
        if identity in result.started or identity in result.failed:
            return  # duplicate record in the same fetch
        if not self.backoff.ready(identity):
            result.skipped.add(identity)
            return
        try:
            await self.launcher.launch(identity, spec)
        except Exception as e:
            # Isolated: the remaining identities are still processed.
            log_event("ERROR", f"Failed to spawn worker: {type(e).__name__}: {e}", identity=identity)
            result.failed.add(identity)
            return
        result.started.add(identity)

    def _check_stale(self, handle: WorkerHandle, spec: LaunchSpec) -> None:
        # Relaunch decisions use presence only; a changed spec is reported once.
        if spec == handle.spec or spec == handle.seen_spec:
            return
        handle.seen_spec = spec
        log_event(
            "WARN",
            f"Launch parameters changed (client_id {handle.spec.client_id} -> {spec.client_id}); "
            "running worker keeps the old ones until it restarts",
            identity=spec.identity,
        )
