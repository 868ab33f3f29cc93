import os as _os
import sys

import pytest

# Ensure project root is importable (so `import cli` works without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fleet.events import clear_events, latest_events  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_events():
    clear_events()
    yield
    clear_events()


@pytest.fixture
def events():
    """Return a callable listing recorded event messages, oldest first."""

    def _messages(level: str | None = None) -> list[str]:
        evs = list(reversed(latest_events(1000)))
        return [e["message"] for e in evs if level is None or e["level"] == level]

    return _messages
