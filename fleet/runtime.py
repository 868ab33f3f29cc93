from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .launcher import WorkerHandle


@dataclass(frozen=True)
class LaunchSpec:
    """Everything needed to build one worker's environment."""

    identity: str  # agent id
    client_id: str

    @property
    def short_id(self) -> str:
        return self.identity[:6]


class Registry:
    """In-memory map of identity -> running worker handle.

    The single source of truth for "what is currently running". All access
    happens on the supervisor's event loop, so there is no locking.
    """

    def __init__(self) -> None:
        self._handles: dict[str, WorkerHandle] = {}

    def get(self, identity: str) -> WorkerHandle | None:
        return self._handles.get(identity)

    def put(self, identity: str, handle: WorkerHandle) -> None:
        self._handles[identity] = handle

    def remove(self, identity: str, expected: WorkerHandle | None = None) -> WorkerHandle | None:
        """Forget ``identity``; a no-op if it is already gone.

        With ``expected`` set, the entry is only removed while it still points
        at that handle, so an old process exiting late cannot evict its
        replacement.
        """
        current = self._handles.get(identity)
        if current is None:
            return None
        if expected is not None and current is not expected:
            return None
        return self._handles.pop(identity)

    def keys(self) -> set[str]:
        return set(self._handles)

    def entries(self) -> list[tuple[str, WorkerHandle]]:
        # Snapshot: callers remove entries while iterating.
        return list(self._handles.items())

    def __contains__(self, identity: object) -> bool:
        return identity in self._handles

    def __len__(self) -> int:
        return len(self._handles)
