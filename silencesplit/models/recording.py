# silencesplit/models/recording.py

import sqlite3
import os
import logging
import json
from flask import current_app, g
from datetime import datetime, timezone
from typing import Callable, List, Optional

# --- Cross-platform file locking helpers ---
try:  # POSIX
    import fcntl as _fcntl  # type: ignore
except ImportError:  # pragma: no cover - not available on Windows
    _fcntl = None

try:  # Windows
    import msvcrt as _msvcrt  # type: ignore
except ImportError:  # pragma: no cover - not available on POSIX
    _msvcrt = None


def _acquire_file_lock(lock_file) -> Callable[[], None]:
    """Acquire an exclusive lock on a file in a cross-platform way.
    Returns a callable that releases the lock when invoked.
    """
    if _fcntl is not None:
        _fcntl.flock(lock_file, _fcntl.LOCK_EX)
        return lambda: _fcntl.flock(lock_file, _fcntl.LOCK_UN)
    if _msvcrt is not None:
        lock_file.seek(0)
        _msvcrt.locking(lock_file.fileno(), _msvcrt.LK_LOCK, 1)
        return lambda: _msvcrt.locking(lock_file.fileno(), _msvcrt.LK_UNLCK, 1)
    return lambda: None


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


# --- Database Connection Handling (using Flask 'g') ---

def get_db():
    """Opens a new database connection if there is none yet for the current application context."""
    if 'db' not in g:
        db_path = current_app.config['DATABASE']
        try:
            os.makedirs(os.path.dirname(db_path), exist_ok=True)
            g.db = sqlite3.connect(db_path, detect_types=sqlite3.PARSE_DECLTYPES, timeout=30)
            g.db.row_factory = sqlite3.Row
            logging.debug("[DB] Database connection opened.")
        except sqlite3.Error as e:
            logging.error(f"[DB] Database connection error: {e}")
            raise
    return g.db


def close_db(e=None):
    """Closes the database connection at the end of the request."""
    db = g.pop('db', None)
    if db is not None:
        db.close()
        logging.debug("[DB] Database connection closed.")


SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS analysis_jobs (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        file_path TEXT NOT NULL,
        status TEXT DEFAULT 'pending',
        progress_log TEXT DEFAULT '[]',
        outcome TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_analysis_jobs_session ON analysis_jobs(session_id)',
    '''
    CREATE TABLE IF NOT EXISTS recording_splits (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        original_duration REAL NOT NULL,
        split_time REAL NOT NULL,
        silence_path TEXT NOT NULL,
        space_saved INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_recording_splits_session ON recording_splits(session_id)',
]


def init_db_command():
    """
    Initialize the database schema.
    A lock file (db file + ".lock") keeps concurrent worker processes from
    racing on schema creation.
    """
    db_path = current_app.config['DATABASE']
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    lock_path = db_path + ".lock"

    with open(lock_path, 'w') as lock_file:
        releaser = _acquire_file_lock(lock_file)
        try:
            conn = sqlite3.connect(db_path)
            try:
                logging.info(f"[DB] Verifying/Initializing database schema at {db_path}...")
                for statement in SCHEMA:
                    conn.execute(statement)
                conn.commit()
            finally:
                conn.close()
            logging.info("[DB] Database schema verification/initialization complete.")
        except sqlite3.Error as e:
            logging.error(f"[DB] Database initialization error: {e}")
            raise
        finally:
            releaser()


# --- Split records (persistence collaborator of the analyzer) ---

def record_split(session_id, split_data: dict) -> int:
    """Stores the summary of a performed split. Returns the new row id."""
    sql = '''
        INSERT INTO recording_splits (session_id, original_duration, split_time, silence_path, space_saved, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        '''
    try:
        db = get_db()
        cursor = db.execute(sql, (
            str(session_id),
            float(split_data['original_duration']),
            float(split_data['split_time']),
            split_data['silence_path'],
            int(split_data['space_saved']),
            _now_iso(),
        ))
        db.commit()
        logging.info(
            f"[DB] Recorded split for session {session_id}: at {split_data['split_time'] / 60:.0f}min, "
            f"{split_data['space_saved'] / (1024 * 1024):.0f}MB saved"
        )
        return cursor.lastrowid
    except sqlite3.Error as e:
        logging.error(f"[DB] Error recording split for session {session_id}: {e}")
        raise


def get_splits_for_session(session_id) -> List[dict]:
    db = get_db()
    rows = db.execute(
        'SELECT * FROM recording_splits WHERE session_id = ? ORDER BY id', (str(session_id),)
    ).fetchall()
    return [dict(row) for row in rows]


def get_all_splits() -> List[dict]:
    try:
        db = get_db()
        rows = db.execute('SELECT * FROM recording_splits ORDER BY created_at DESC, id DESC').fetchall()
        logging.debug(f"[DB] Retrieved {len(rows)} split records.")
        return [dict(row) for row in rows]
    except sqlite3.Error as e:
        logging.error(f"[DB] Error retrieving split records: {e}")
        return []


# --- Analysis jobs ---

def create_analysis_job(job_id: str, session_id, file_path: str) -> None:
    """Creates an initial record for an analysis job."""
    short_job_id = job_id[:8]
    sql = '''
        INSERT INTO analysis_jobs (id, session_id, file_path, status, progress_log, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        '''
    now = _now_iso()
    try:
        db = get_db()
        db.execute(sql, (job_id, str(session_id), file_path, 'pending', json.dumps(["Job created."]), now, now))
        db.commit()
        logging.info(f"[DB:JOB:{short_job_id}] Created initial job record.")
    except sqlite3.Error as e:
        logging.error(f"[DB:JOB:{short_job_id}] Error creating job record: {e}")
        raise


def update_job_progress(job_id: str, message: str) -> None:
    """Appends a message to the job's progress log in the database."""
    short_job_id = job_id[:8]
    try:
        db = get_db()
        row = db.execute("SELECT progress_log FROM analysis_jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            logging.warning(f"[DB:JOB:{short_job_id}] Attempted to update DB progress for non-existent job.")
            return
        try:
            current_log = json.loads(row['progress_log'])
            if not isinstance(current_log, list):
                current_log = []
        except (json.JSONDecodeError, TypeError):
            current_log = []
        current_log.append(message)
        db.execute(
            "UPDATE analysis_jobs SET progress_log = ?, updated_at = ? WHERE id = ?",
            (json.dumps(current_log), _now_iso(), job_id),
        )
        db.commit()
    except sqlite3.Error as e:
        logging.error(f"[DB:JOB:{short_job_id}] Error updating DB progress log: {e}")


def update_job_status(job_id: str, status: str) -> None:
    short_job_id = job_id[:8]
    try:
        db = get_db()
        db.execute("UPDATE analysis_jobs SET status = ?, updated_at = ? WHERE id = ?", (status, _now_iso(), job_id))
        db.commit()
        logging.info(f"[DB:JOB:{short_job_id}] Updated status to: {status}")
    except sqlite3.Error as e:
        logging.error(f"[DB:JOB:{short_job_id}] Error updating status: {e}")


def set_job_error(job_id: str, error_message: str, status: str = 'error') -> None:
    """Marks the job failed ('error', or 'needs_review' when the file state is unknown)."""
    short_job_id = job_id[:8]
    try:
        update_job_progress(job_id, f"ERROR: {error_message}")
        db = get_db()
        db.execute(
            "UPDATE analysis_jobs SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
            (status, error_message, _now_iso(), job_id),
        )
        db.commit()
        logging.error(f"[DB:JOB:{short_job_id}] Set {status} status. Message: {error_message}")
    except sqlite3.Error as e:
        logging.error(f"[DB:JOB:{short_job_id}] Error setting error status: {e}")


def finalize_job_success(job_id: str, outcome: dict) -> None:
    short_job_id = job_id[:8]
    try:
        update_job_progress(job_id, "Analysis finished and saved.")
        db = get_db()
        db.execute(
            """
            UPDATE analysis_jobs
            SET status = 'finished',
                outcome = ?,
                error_message = NULL,
                updated_at = ?
            WHERE id = ?
            """,
            (json.dumps(outcome), _now_iso(), job_id),
        )
        db.commit()
        logging.info(f"[DB:JOB:{short_job_id}] Finalized job successfully.")
    except sqlite3.Error as e:
        logging.error(f"[DB:JOB:{short_job_id}] Error finalizing successful job: {e}")
        set_job_error(job_id, f"Failed to save final results: {e}")


def _job_row_to_dict(row) -> dict:
    job = dict(row)
    try:
        job['progress_log'] = json.loads(job.get('progress_log') or '[]')
    except (json.JSONDecodeError, TypeError):
        job['progress_log'] = ["Error parsing progress log."]
    if job.get('outcome'):
        try:
            job['outcome'] = json.loads(job['outcome'])
        except (json.JSONDecodeError, TypeError):
            job['outcome'] = None
    return job


def get_job_by_id(job_id: str) -> Optional[dict]:
    short_job_id = job_id[:8]
    try:
        db = get_db()
        row = db.execute('SELECT * FROM analysis_jobs WHERE id = ?', (job_id,)).fetchone()
        logging.debug(f"[DB:JOB:{short_job_id}] Retrieved job record by ID.")
        return _job_row_to_dict(row) if row else None
    except sqlite3.Error as e:
        logging.error(f"[DB:JOB:{short_job_id}] Error retrieving job by ID: {e}")
        return None


def get_job_for_session(session_id) -> Optional[dict]:
    db = get_db()
    row = db.execute(
        'SELECT * FROM analysis_jobs WHERE session_id = ? ORDER BY created_at DESC LIMIT 1', (str(session_id),)
    ).fetchone()
    return _job_row_to_dict(row) if row else None


# --- Flask App Integration ---

def init_app(app):
    """Register database functions with the Flask app."""
    app.teardown_appcontext(close_db)
    with app.app_context():
        init_db_command()
