import asyncio
import os
import signal
import sys

import pytest

from fleet.launcher import Launcher, build_worker_env, describe_exit
from fleet.runtime import LaunchSpec, Registry

SPEC = LaunchSpec(identity="agent-123456789", client_id="client-1")


def py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def test_build_worker_env_sets_identity_and_clears_token():
    env = build_worker_env(SPEC, {"PATH": "/bin", "DISCORD_TOKEN": "supervisor-secret"})

    assert env["PATH"] == "/bin"
    assert env["AGENT_ID"] == "agent-123456789"
    assert env["DISCORD_CLIENT_ID"] == "client-1"
    assert env["DISCORD_TOKEN"] == ""


def test_describe_exit():
    assert describe_exit(0) == (0, None)
    assert describe_exit(3) == (3, None)
    assert describe_exit(-signal.SIGTERM) == (None, "SIGTERM")
    assert describe_exit(None) == (None, None)


def test_worker_sees_env_and_output_is_prefixed(capsys):
    code = (
        "import os, sys\n"
        "print(os.environ['AGENT_ID'], os.environ['DISCORD_CLIENT_ID'], repr(os.environ['DISCORD_TOKEN']))\n"
        "print('oops', file=sys.stderr)\n"
    )
    registry = Registry()
    exits = []
    launcher = Launcher(registry, py(code), base_env={**os.environ, "DISCORD_TOKEN": "secret"}, on_exit=exits.append)

    async def scenario():
        handle = await launcher.launch(SPEC.identity, SPEC)
        assert registry.get(SPEC.identity) is handle
        await handle.wait()
        return handle

    handle = asyncio.run(scenario())
    out, err = capsys.readouterr()

    assert "[bot:agent-] agent-123456789 client-1 ''" in out
    assert "[bot:agent-] oops" in err
    assert handle.returncode == 0
    # Exit on its own: forgotten and reported to the listener.
    assert SPEC.identity not in registry
    assert exits == [handle]


def test_launch_is_noop_when_already_registered():
    registry = Registry()
    launcher = Launcher(registry, py("import time; time.sleep(30)"), stop_grace_s=0)

    async def scenario():
        first = await launcher.launch(SPEC.identity, SPEC)
        second = await launcher.launch(SPEC.identity, SPEC)
        await launcher.shutdown()
        await first.wait()
        return first, second

    first, second = asyncio.run(scenario())
    assert first is second
    assert len(registry) == 0


def test_spawn_failure_raises_and_registers_nothing():
    registry = Registry()
    launcher = Launcher(registry, ["/nonexistent/worker-binary"])

    async def scenario():
        await launcher.launch(SPEC.identity, SPEC)

    with pytest.raises(OSError):
        asyncio.run(scenario())
    assert len(registry) == 0


def test_stop_sends_sigterm_and_skips_exit_listener(events):
    registry = Registry()
    exits = []
    launcher = Launcher(registry, py("import time; time.sleep(30)"), stop_grace_s=5, on_exit=exits.append)

    async def scenario():
        handle = await launcher.launch(SPEC.identity, SPEC)
        launcher.stop(handle)
        registry.remove(SPEC.identity, expected=handle)
        await handle.wait()
        return handle

    handle = asyncio.run(scenario())
    assert handle.returncode == -signal.SIGTERM
    assert exits == []
    assert any("Stopped worker" in m for m in events("INFO"))


def test_old_exit_does_not_evict_replacement():
    registry = Registry()
    launcher = Launcher(registry, py("import time; time.sleep(30)"), stop_grace_s=0)

    async def scenario():
        old = await launcher.launch(SPEC.identity, SPEC)
        launcher.stop(old)
        registry.remove(SPEC.identity, expected=old)
        new = await launcher.launch(SPEC.identity, SPEC)
        await old.wait()
        still = registry.get(SPEC.identity)
        await launcher.shutdown()
        await new.wait()
        return old, new, still

    old, new, still = asyncio.run(scenario())
    assert old is not new
    assert still is new


def test_stop_escalates_to_sigkill(tmp_path, events):
    ready = tmp_path / "ready"
    code = (
        "import signal, time, pathlib\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        f"pathlib.Path({str(ready)!r}).touch()\n"
        "time.sleep(30)\n"
    )
    registry = Registry()
    launcher = Launcher(registry, py(code), stop_grace_s=0.3)

    async def scenario():
        handle = await launcher.launch(SPEC.identity, SPEC)
        await _wait_for(ready.exists)
        await launcher.shutdown()
        await handle.wait()
        return handle

    handle = asyncio.run(scenario())
    assert handle.returncode == -signal.SIGKILL
    assert any("sent SIGKILL" in m for m in events("WARN"))


def test_empty_command_is_rejected():
    with pytest.raises(ValueError):
        Launcher(Registry(), [])


def test_exit_is_seen_while_helper_holds_output_pipes(events):
    code = (
        "import subprocess, sys\n"
        "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(2)'])\n"
        "sys.exit(7)\n"
    )
    registry = Registry()
    exits = []
    launcher = Launcher(registry, py(code), on_exit=exits.append)

    async def scenario():
        handle = await launcher.launch(SPEC.identity, SPEC)
        await _wait_for(lambda: SPEC.identity not in registry, timeout=1.5)
        returncode = handle.returncode
        await handle.wait()
        return handle, returncode

    handle, returncode = asyncio.run(scenario())
    assert returncode == 7
    assert exits == [handle]
    assert any("code=7" in m for m in events("WARN"))


def test_duplicate_spawned_during_race_is_stopped_without_blocking(tmp_path):
    ready = tmp_path / "ready"
    code = (
        "import signal, time, pathlib\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        f"pathlib.Path({str(ready)!r}).touch()\n"
        "time.sleep(30)\n"
    )
    registry = Registry()
    launcher = Launcher(registry, py(code), stop_grace_s=0.3)
    winner = object()
    spawned = []
    real_spawn = launcher._spawn

    async def racing_spawn(spec):
        handle = await real_spawn(spec)
        spawned.append(handle)
        registry.put(spec.identity, winner)
        return handle

    launcher._spawn = racing_spawn

    async def scenario():
        got = await asyncio.wait_for(launcher.launch(SPEC.identity, SPEC), timeout=2)
        duplicate = spawned[0]
        await asyncio.wait_for(duplicate.wait_exit(), timeout=5)
        return got, duplicate

    got, duplicate = asyncio.run(scenario())
    assert got is winner
    assert registry.get(SPEC.identity) is winner
    assert duplicate.stopping
    assert duplicate.returncode in (-signal.SIGTERM, -signal.SIGKILL)
