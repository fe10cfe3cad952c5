"""FastAPI dependency factories."""

import sys
from functools import lru_cache
from pathlib import Path

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fastapi import Depends

from server.config import Settings
from server.runtime import Runtime, runtime_from_settings
from server.services.event_publisher import EventPublisher
from server.services.question_store import QuestionStore
from server.services.run_controller import RunController

# Process-wide Runtime cache (keyed by settings identity for override support)
_runtime: Runtime | None = None
_runtime_settings_id: object | None = None


@lru_cache()
def get_settings() -> Settings:
    """Singleton Settings -- override via app.dependency_overrides in tests."""
    return Settings()


def get_runtime(settings: Settings = Depends(get_settings)) -> Runtime:
    """Process-wide Runtime holding the store, publisher and run controller."""
    global _runtime, _runtime_settings_id
    # Recreate if settings were overridden (e.g. in tests)
    if _runtime is None or _runtime_settings_id is not settings:
        _runtime = runtime_from_settings(settings)
        _runtime_settings_id = settings
    return _runtime


def current_runtime() -> Runtime | None:
    """The runtime built so far, if any (lifespan shutdown)."""
    return _runtime


def reset_runtime() -> None:
    """Forget the cached runtime. Use between tests for isolation."""
    global _runtime, _runtime_settings_id
    _runtime = None
    _runtime_settings_id = None


def get_store(runtime: Runtime = Depends(get_runtime)) -> QuestionStore:
    return runtime.get_store()


def get_publisher(runtime: Runtime = Depends(get_runtime)) -> EventPublisher:
    return runtime.get_publisher()


def get_controller(runtime: Runtime = Depends(get_runtime)) -> RunController:
    """The single run controller for this process."""
    return runtime.get_controller()
