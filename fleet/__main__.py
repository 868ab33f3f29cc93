"""Entry point: ``python -m fleet``.

Runs the reconciler and the liveness endpoint on one event loop until SIGINT
or SIGTERM, then stops every worker.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

import uvicorn

from .events import log_event
from .health import create_app
from .launcher import Launcher
from .reconciler import CrashBackoff, Reconciler
from .runtime import Registry
from .settings import Settings, settings
from .source import ConfigSourceClient


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


class LivenessServer(uvicorn.Server):
    """Uvicorn server that leaves signal handling to the supervisor."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    @property
    def bound_port(self) -> int | None:
        for srv in self.servers:
            for sock in srv.sockets:
                return sock.getsockname()[1]
        return None


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    # Reported, but the supervisor keeps running.
    exc = context.get("exception")
    detail = f"{type(exc).__name__}: {exc}" if exc else context.get("message", "unknown")
    log_event("FATAL", f"Unhandled error in supervisor loop: {detail}")


async def _serve(server: uvicorn.Server) -> None:
    # uvicorn calls sys.exit() when it cannot bind.
    try:
        await server.serve()
    except SystemExit as e:
        raise RuntimeError(f"liveness server failed to start (exit {e.code})") from None


async def run(cfg: Settings) -> None:
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_handle_loop_exception)

    stopping = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stopping.set)

    registry = Registry()
    backoff = CrashBackoff(base_s=cfg.crash_backoff_s, max_s=cfg.crash_backoff_max_s)
    launcher = Launcher(
        registry,
        cfg.worker_command(),
        stop_grace_s=cfg.stop_grace_s,
        on_exit=backoff.record_exit,
    )
    source = ConfigSourceClient(
        cfg.source_url,
        cfg.backend_key or "",
        path=cfg.source_path,
        timeout_s=cfg.source_timeout_s,
    )
    reconciler = Reconciler(source, launcher, registry, interval_s=cfg.poll_interval_s, backoff=backoff)

    log_event("INFO", f"Starting supervisor source={cfg.source_url} worker_cmd={cfg.worker_cmd!r}")
    reconciler.start()

    server = LivenessServer(
        uvicorn.Config(
            create_app(registry),
            host=cfg.host,
            port=cfg.port,
            log_level=cfg.log_level.lower(),
            lifespan="off",
            access_log=False,
        )
    )
    serving = asyncio.create_task(_serve(server))
    while not server.started and not serving.done():
        await asyncio.sleep(0.05)
    if server.started:
        log_event("INFO", f"Liveness endpoint listening on port {server.bound_port}")

    waiter = asyncio.create_task(stopping.wait())
    try:
        await asyncio.wait({serving, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        log_event("INFO", f"Shutting down, stopping {len(registry)} workers")
        await reconciler.stop()
        await launcher.shutdown()
        server.should_exit = True
        await asyncio.gather(serving, return_exceptions=True)
    if not serving.cancelled() and serving.exception() is not None:
        raise serving.exception()


def main(argv: list[str] | None = None) -> int:
    configure_logging(settings.log_level)
    missing = settings.missing()
    if missing:
        log_event("FATAL", f"Missing {' or '.join(missing)}. Set them in the environment or .env")
        return 1
    try:
        asyncio.run(run(settings))
    except Exception as e:
        log_event("FATAL", f"Supervisor crashed: {type(e).__name__}: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
