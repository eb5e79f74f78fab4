"""
In-process registry of the current pipeline run per application.

A run is identified by (application_id, run_version). Starting a redeploy or a
cancel supersedes whatever run was registered before; the superseded run sees
``is_current`` turn False at its next stage boundary and stops without
writing to the record.
"""
import threading
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)
_lock = threading.Lock()
_current: Dict[str, int] = {}


def begin(application_id: str, version: int) -> bool:
    """Register a run. Returns False if a newer version is already registered."""
    with _lock:
        registered = _current.get(application_id)
        if registered is not None and registered > version:
            return False
        _current[application_id] = version
    logger.debug(f"Run {version} registered for application {application_id}")
    return True


def supersede(application_id: str, version: int) -> None:
    """Make version the current one, invalidating any older run in flight"""
    with _lock:
        registered = _current.get(application_id)
        if registered is None or registered < version:
            _current[application_id] = version
    logger.debug(f"Application {application_id} superseded to run {version}")


def is_current(application_id: str, version: int) -> bool:
    with _lock:
        return _current.get(application_id) == version


def finish(application_id: str, version: int) -> None:
    """Drop the entry if it still belongs to version"""
    with _lock:
        if _current.get(application_id) == version:
            del _current[application_id]


def current_version(application_id: str) -> Optional[int]:
    with _lock:
        return _current.get(application_id)


def reset() -> None:
    with _lock:
        _current.clear()
