"""Thread-safe registry of record id -> running subprocess.Popen for hard cancel."""
import threading
import subprocess
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)
_lock = threading.Lock()
_registry: Dict[str, subprocess.Popen] = {}


def register(run_key: str, process: subprocess.Popen) -> None:
    with _lock:
        _registry[run_key] = process
        logger.debug(f"Registered process for {run_key}")


def unregister(run_key: str, process: Optional[subprocess.Popen] = None) -> None:
    """Drop run_key. When process is given, only drop it if it is still the registered one."""
    with _lock:
        if process is not None and _registry.get(run_key) is not process:
            return
        _registry.pop(run_key, None)
        logger.debug(f"Unregistered process for {run_key}")


def terminate(run_key: str, wait_seconds: float = 3.0) -> bool:
    """Terminate the process registered for run_key. Returns True if one was found."""
    with _lock:
        proc = _registry.get(run_key)
    if proc is None:
        return False
    try:
        proc.terminate()
        try:
            proc.wait(timeout=wait_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
    except OSError as e:
        logger.warning(f"Error terminating process for {run_key}: {e}")
    finally:
        unregister(run_key, proc)
    return True
