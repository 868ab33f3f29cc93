from __future__ import annotations

from typing import Any

import httpx
from pydantic import ValidationError

from .api_models import ActiveConfig
from .events import log_event
from .runtime import LaunchSpec


class SourceError(Exception):
    pass


class ConfigSourceClient:
    """Fetches the desired worker set from the remote config source.

    Calls ``POST {base_url}/api/query`` with ``{"path": ..., "args": {"key": ...}}``.
    ``fetch_desired`` never raises: any failure is logged and reported as an
    empty set, which the reconciler cannot tell apart from "no workers wanted".
    """

    def __init__(
        self,
        base_url: str,
        key: str,
        path: str = "discord:listActiveConfigs",
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.key = key
        self.path = path
        self.timeout_s = timeout_s
        self._transport = transport

    async def fetch_desired(self) -> list[LaunchSpec]:
        try:
            records = await self._query()
            return [ActiveConfig.model_validate(r).to_launch_spec() for r in records]
        except (httpx.TimeoutException, httpx.TransportError) as e:
            log_event("ERROR", f"Failed to fetch active configs: no response ({type(e).__name__}: {e})")
        except ValidationError as e:
            log_event("ERROR", f"Failed to fetch active configs: malformed record ({e.error_count()} errors)")
        except SourceError as e:
            log_event("ERROR", f"Failed to fetch active configs: {e}")
        except Exception as e:
            log_event("ERROR", f"Failed to fetch active configs: {type(e).__name__}: {e}")
        return []

    async def _query(self) -> list[Any]:
        async with httpx.AsyncClient(
            timeout=self.timeout_s, follow_redirects=False, transport=self._transport
        ) as client:
            resp = await client.post(
                f"{self.base_url}/api/query",
                json={"path": self.path, "args": {"key": self.key}},
            )
        if not resp.is_success:
            raise SourceError(f"HTTP {resp.status_code} {resp.reason_phrase} {resp.text[:200]}".rstrip())
        try:
            data = resp.json()
        except ValueError:
            raise SourceError("Invalid JSON") from None
        if isinstance(data, dict):
            if data.get("status") == "error":
                raise SourceError(f"Query error: {data.get('errorMessage', 'unknown')}")
            if "value" not in data:
                raise SourceError("Unexpected payload: object without 'value'")
            data = data["value"]
        if data is None:
            return []
        if not isinstance(data, list):
            raise SourceError(f"Unexpected payload: {type(data).__name__}")
        return data
