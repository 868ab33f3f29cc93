from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .runtime import LaunchSpec


class ActiveConfig(BaseModel):
    """One record of the config source's active-config list."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    agent_id: str = Field(..., alias="agentId", min_length=1)
    client_id: str = Field(..., alias="clientId")

    @field_validator("agent_id", "client_id", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        # The source sends ids as strings or numbers.
        if v is None:
            return v
        return str(v)

    def to_launch_spec(self) -> LaunchSpec:
        return LaunchSpec(identity=self.agent_id, client_id=self.client_id)


class LivenessResponse(BaseModel):
    ok: bool = True
    processes: list[str] = Field(default_factory=list)


class WorkerInfo(BaseModel):
    identity: str
    client_id: str
    pid: int | None
    started_at: str
    uptime_s: float
