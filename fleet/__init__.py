"""Bot Fleet Supervisor.

Single-node supervisor that keeps one worker process running per active agent:
 - fetches the desired set of agents from a remote config source
 - starts / stops worker processes to match it (level-triggered reconciliation)
 - relaunches workers that exit on their own on the next tick
 - exposes a small liveness endpoint for platform health checks

Everything runs on one asyncio event loop; the registry of running workers
is the only shared state.
"""
