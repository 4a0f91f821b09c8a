# silencesplit/services/process_tracker.py

import logging
import threading
import subprocess
import weakref


class ProcessTracker:
    """
    Registry of media tool processes spawned by this application, so that
    anything still running can be killed when the application shuts down.

    Pass `tracker.register` as the `register_subprocess` hook of a MediaProber.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # finished Popen objects drop out once nothing else references them
        self._processes = weakref.WeakKeyDictionary()

    def register(self, process: subprocess.Popen, description: str) -> None:
        with self._lock:
            self._processes[process] = description
        logging.debug(f"[SYSTEM] Tracking process {process.pid}: {description}")

    def active(self) -> list:
        with self._lock:
            items = list(self._processes.items())
        return [(proc, desc) for proc, desc in items if proc.poll() is None]

    def terminate_all(self, grace_seconds: float = 2.0) -> int:
        """Terminates every tracked process still running. Returns how many were stopped."""
        stopped = 0
        for proc, desc in self.active():
            logging.warning(f"[SYSTEM] Terminating process {proc.pid} ({desc}) on shutdown")
            proc.terminate()
            try:
                proc.wait(timeout=grace_seconds)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            stopped += 1
        return stopped
