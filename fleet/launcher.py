from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from typing import Callable, Mapping

from .events import log_event, utc_now
from .runtime import LaunchSpec, Registry

# Max bytes of a single forwarded output line.
LINE_LIMIT = 1 << 20


def build_worker_env(spec: LaunchSpec, base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Parent environment plus the worker's identity.

    DISCORD_TOKEN is cleared so the worker resolves its own token from the
    config source instead of inheriting whatever the supervisor holds.
    """
    env = dict(os.environ if base is None else base)
    env["AGENT_ID"] = spec.identity
    env["DISCORD_CLIENT_ID"] = spec.client_id
    env["DISCORD_TOKEN"] = ""
    return env


def describe_exit(returncode: int | None) -> tuple[int | None, str | None]:
    """Split a returncode into (exit code, signal name)."""
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, str(-returncode)


class ExitProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also reports the moment the process exits.

    ``Process.wait()`` only returns once every pipe is closed, which a helper
    process inheriting the worker's stdio can delay indefinitely.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


class WorkerHandle:
    """One worker OS process and the tasks that watch it."""

    def __init__(self, spec: LaunchSpec, process: asyncio.subprocess.Process, exited: asyncio.Future) -> None:
        self.spec = spec
        self.process = process
        self.started_at = utc_now()
        self.stopping = False
        # Latest spec seen for this identity while running (see Reconciler).
        self.seen_spec = spec
        self._exited = exited
        self._started = time.monotonic()
        self._exit_task: asyncio.Task | None = None
        self._forwarders: list[asyncio.Task] = []

    @property
    def identity(self) -> str:
        return self.spec.identity

    @property
    def pid(self) -> int | None:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def uptime_s(self) -> float:
        return round(time.monotonic() - self._started, 3)

    def terminate(self) -> bool:
        """Send SIGTERM. Returns False if the process is already gone."""
        return self._signal(self.process.terminate)

    def kill(self) -> bool:
        return self._signal(self.process.kill)

    def _signal(self, send: Callable[[], None]) -> bool:
        if not self.running:
            return False
        try:
            send()
        except ProcessLookupError:
            return False
        return True

    async def wait_exit(self) -> int | None:
        """Wait for the process itself to exit, not for its pipes to close."""
        await asyncio.shield(self._exited)
        return self.returncode

    async def wait(self) -> int | None:
        """Wait until the exit observer has run and the output is drained."""
        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)
            return self.returncode
        return await self.process.wait()


ExitListener = Callable[[WorkerHandle], None]


class Launcher:
    """Starts worker processes and keeps the registry in step with their exits."""

    def __init__(
        self,
        registry: Registry,
        command: list[str],
        stop_grace_s: float = 10.0,
        on_exit: ExitListener | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("Worker command must not be empty.")
        self.registry = registry
        self.command = list(command)
        self.stop_grace_s = max(0.0, float(stop_grace_s))
        self.on_exit = on_exit
        self.base_env = base_env
        self._escalations: set[asyncio.Task] = set()

    async def launch(self, identity: str, spec: LaunchSpec) -> WorkerHandle:
        """Start a worker for ``identity`` unless one is already registered.

        Raises OSError if the process cannot be spawned.
        """
        existing = self.registry.get(identity)
        if existing is not None:
            return existing

        if spec.identity != identity:
            spec = LaunchSpec(identity=identity, client_id=spec.client_id)

        handle = await self._spawn(spec)
        process = handle.process

        # Someone else registered this identity while we were spawning.
        existing = self.registry.get(identity)
        if existing is not None:
            self.stop(handle)
            return existing

        self.registry.put(identity, handle)
        log_event("INFO", f"Spawned worker process pid={process.pid} client_id={spec.client_id}", identity=identity)

        prefix = f"[bot:{spec.short_id}] "
        handle._forwarders = [
            asyncio.create_task(self._forward(process.stdout, prefix, "stdout")),
            asyncio.create_task(self._forward(process.stderr, prefix, "stderr")),
        ]
        handle._exit_task = asyncio.create_task(self._watch(handle))
        return handle

    async def _spawn(self, spec: LaunchSpec) -> WorkerHandle:
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.subprocess_exec(
            lambda: ExitProtocol(limit=LINE_LIMIT, loop=loop),
            *self.command,
            env=build_worker_env(spec, self.base_env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        process = asyncio.subprocess.Process(transport, protocol, loop)
        return WorkerHandle(spec, process, protocol.exited)

    def stop(self, handle: WorkerHandle) -> None:
        """Best-effort SIGTERM; escalates to SIGKILL after ``stop_grace_s`` if set.

        Does not wait for the process to exit.
        """
        handle.stopping = True
        if not handle.terminate():
            return
        if self.stop_grace_s > 0:
            task = asyncio.create_task(self._escalate(handle))
            self._escalations.add(task)
            task.add_done_callback(self._escalations.discard)

    async def shutdown(self) -> None:
        """Stop every registered worker and wait for pending escalations."""
        for identity, handle in self.registry.entries():
            log_event("INFO", f"Stopping worker pid={handle.pid} (supervisor shutdown)", identity=identity)
            self.stop(handle)
            self.registry.remove(identity, expected=handle)
        if self._escalations:
            await asyncio.gather(*list(self._escalations), return_exceptions=True)

    async def _forward(self, stream: asyncio.StreamReader | None, prefix: str, target: str) -> None:
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than LINE_LIMIT; the reader has dropped it.
                getattr(sys, target).write(f"{prefix}<line too long, truncated>\n")
                continue
            if not line:
                return
            out = getattr(sys, target)
            out.write(prefix + line.decode("utf-8", errors="replace").rstrip("\r\n") + "\n")
            out.flush()

    async def _watch(self, handle: WorkerHandle) -> None:
        returncode = await handle.wait_exit()
        code, sig = describe_exit(returncode)
        removed = self.registry.remove(handle.identity, expected=handle)
        if handle.stopping:
            log_event("INFO", f"Stopped worker pid={handle.pid} exited (code={code}, signal={sig})", identity=handle.identity)
        else:
            log_event(
                "WARN",
                f"Worker process exited (code={code}, signal={sig}, uptime={handle.uptime_s}s)"
                + ("" if removed is not None else " after being replaced"),
                identity=handle.identity,
            )
            if self.on_exit is not None:
                try:
                    self.on_exit(handle)
                except Exception as e:
                    log_event("ERROR", f"Exit listener failed: {type(e).__name__}: {e}", identity=handle.identity)
        await asyncio.gather(*handle._forwarders, return_exceptions=True)

    async def _escalate(self, handle: WorkerHandle) -> None:
        try:
            await asyncio.wait_for(handle.wait_exit(), timeout=self.stop_grace_s)
        except asyncio.TimeoutError:
            if handle.kill():
                log_event(
                    "WARN",
                    f"Worker pid={handle.pid} ignored SIGTERM for {self.stop_grace_s}s, sent SIGKILL",
                    identity=handle.identity,
                )
