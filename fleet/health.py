from __future__ import annotations

from fastapi import FastAPI, Query

from .api_models import LivenessResponse, WorkerInfo
from .events import latest_events
from .runtime import Registry


def create_app(registry: Registry) -> FastAPI:
    """Read-only liveness API over the registry.

    Always answers 200: being reachable is the health signal. Worker state is
    only reported, never judged.
    """
    app = FastAPI(title="Bot Fleet Supervisor", docs_url=None, redoc_url=None)

    @app.get("/", response_model=LivenessResponse)
    @app.get("/health", response_model=LivenessResponse)
    async def liveness() -> LivenessResponse:
        return LivenessResponse(ok=True, processes=sorted(registry.keys()))

    @app.get("/workers", response_model=list[WorkerInfo])
    async def workers() -> list[WorkerInfo]:
        return [
            WorkerInfo(
                identity=identity,
                client_id=h.spec.client_id,
                pid=h.pid,
                started_at=h.started_at,
                uptime_s=h.uptime_s,
            )
            for identity, h in sorted(registry.entries(), key=lambda e: e[0])
        ]

    @app.get("/events")
    async def events(limit: int = Query(50, ge=1, le=1000)) -> list[dict]:
        return latest_events(limit)

    return app
