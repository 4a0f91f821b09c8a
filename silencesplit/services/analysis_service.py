# silencesplit/services/analysis_service.py

import os
import uuid
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Any, Callable, Dict, Optional

from silencesplit.exceptions import RestoreError
from silencesplit.models import recording as recording_model
from silencesplit.services.post_recording_analyzer import PostRecordingAnalyzer
from silencesplit.services.process_tracker import ProcessTracker

# UI notification hook: notify(event_name, payload)
Notifier = Callable[[str, dict], None]

# Finished futures kept around for wait(); older ones are dropped
MAX_TRACKED_JOBS = 100


class DuplicateAnalysisError(Exception):
    """The file or session already has an analysis queued, running or done."""


def _update_progress(job_id: str, message: str, is_error: bool = False) -> None:
    """Logs (console) and saves (DB) a progress message for a job. Needs an app context."""
    log_level = logging.ERROR if is_error else logging.INFO
    logging.log(log_level, f"[JOB:{job_id[:8]}] {message}")
    recording_model.update_job_progress(job_id, message)


class AnalysisQueue:
    """
    Runs post-recording analysis in the background.

    A recording is analyzed once, after its session stopped. `submit` returns
    immediately with a job id; progress and the outcome are written to the
    job record and the optional notifier is called when the job ends.
    """

    def __init__(self, app, process_tracker: Optional[ProcessTracker] = None, max_workers: int = 1) -> None:
        self.app = app
        self.process_tracker = process_tracker
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="post-recording")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, str] = {}  # abs file path -> job id
        self._futures: Dict[str, Future] = {}

    def submit(self, session_id: Any, file_path: str, notify: Optional[Notifier] = None) -> str:
        abs_path = os.path.abspath(file_path)
        with self._lock:
            if abs_path in self._in_flight:
                raise DuplicateAnalysisError(f"'{os.path.basename(abs_path)}' is already being analyzed")
            with self.app.app_context():
                existing = recording_model.get_job_for_session(session_id)
                if existing is not None:
                    raise DuplicateAnalysisError(f"Session {session_id} already has analysis job {existing['id']}")
                job_id = str(uuid.uuid4())
                recording_model.create_analysis_job(job_id, session_id, abs_path)
            self._in_flight[abs_path] = job_id
            self._futures[job_id] = self._executor.submit(self._run_job, job_id, session_id, abs_path, notify)
            self._prune_finished()
        logging.info(f"[JOB:{job_id[:8]}] Background analysis queued for session {session_id}.")
        return job_id

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Blocks until the job has run. Returns False on timeout or for a job no longer tracked."""
        future = self._futures.get(job_id)
        if future is None:
            return False
        done, _ = wait_futures([future], timeout=timeout)
        return bool(done)

    def _prune_finished(self) -> None:
        """Drops the oldest finished futures past MAX_TRACKED_JOBS. Caller holds _lock."""
        excess = len(self._futures) - MAX_TRACKED_JOBS
        if excess <= 0:
            return
        done = [job_id for job_id, future in self._futures.items() if future.done()]
        for job_id in done[:excess]:
            del self._futures[job_id]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _build_analyzer(self) -> PostRecordingAnalyzer:
        register = self.process_tracker.register if self.process_tracker else None
        return PostRecordingAnalyzer.from_config(self.app.config, database=recording_model, register_subprocess=register)

    def _run_job(self, job_id: str, session_id: Any, file_path: str, notify: Optional[Notifier]) -> None:
        short_job_id = job_id[:8]
        try:
            with self.app.app_context():
                self._process(job_id, session_id, file_path, notify)
        except Exception:
            # Failures inside _process are recorded on the job; this only catches DB/context trouble
            logging.exception(f"[JOB:{short_job_id}] Unexpected error outside analysis")
        finally:
            with self._lock:
                self._in_flight.pop(file_path, None)

    def _process(self, job_id: str, session_id: Any, file_path: str, notify: Optional[Notifier]) -> None:
        short_job_id = job_id[:8]
        try:
            recording_model.update_job_status(job_id, 'processing')
            _update_progress(job_id, f"Starting post-processing analysis for session {session_id}")

            outcome = self._build_analyzer().analyze_recording(session_id, file_path)
            recording_model.finalize_job_success(job_id, outcome.as_dict())

            if outcome.silence_detected:
                _update_progress(job_id, f"Recording split completed. Space saved: {outcome.space_saved_mb}MB")
                self._notify(notify, 'recording-split', {
                    'session_id': session_id,
                    'original_size': outcome.original_size,
                    'new_size': outcome.meeting_size,
                    'space_saved_mb': outcome.space_saved_mb,
                    'meeting_duration': round(outcome.meeting_duration / 60),
                    'silence_duration': round(outcome.total_silence_duration / 60),
                })
            elif outcome.analyzed:
                _update_progress(job_id, "Post-processing complete - no problematic silence detected")
                self._notify(notify, 'recording-analyzed', {'session_id': session_id, **outcome.as_dict()})
            else:
                _update_progress(job_id, f"Post-processing skipped: {outcome.reason}")
                self._notify(notify, 'recording-analyzed', {'session_id': session_id, **outcome.as_dict()})

        except RestoreError as re_err:
            logging.critical(f"[JOB:{short_job_id}] {re_err}")
            recording_model.set_job_error(job_id, str(re_err), status='needs_review')
            self._notify(notify, 'recording-split-error', {
                'session_id': session_id,
                'error': str(re_err),
                'needs_manual_review': True,
            })
        except Exception as e:
            logging.exception(f"[JOB:{short_job_id}] Post-processing failed for session {session_id}")
            recording_model.set_job_error(job_id, str(e))
            self._notify(notify, 'recording-split-error', {'session_id': session_id, 'error': str(e)})

    @staticmethod
    def _notify(notify: Optional[Notifier], event: str, payload: dict) -> None:
        if notify is None:
            return
        try:
            notify(event, payload)
        except Exception:
            logging.exception(f"[SYSTEM] Notifier failed for event '{event}'")
