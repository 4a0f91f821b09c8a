# silencesplit/__init__.py

import os
import time
import atexit
import logging
import threading
from flask import Flask
from werkzeug.middleware.proxy_fix import ProxyFix
from silencesplit.config import Config

__version__ = "0.1.0"

# Configure root logger - Use a simple format, prefixes will be added in messages
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

# Reduce Werkzeug logging noise for cleaner output
werkzeug_logger = logging.getLogger('werkzeug')
werkzeug_logger.setLevel(logging.WARNING)


def run_cleanup_task(app):
    """Periodically deletes silence segments older than the retention period."""
    # Give the app a moment to start up before the first run
    time.sleep(15)
    worker_pid = os.getpid()
    logging.info(f"[SYSTEM:{worker_pid}] Silence cleanup thread started.")

    from silencesplit.services.file_service import cleanup_old_silence_files, SILENCE_MARKER

    while True:
        try:
            recordings_dir = app.config['RECORDINGS_DIR']
            days = app.config.get('SILENCE_RETENTION_DAYS', 30)
            marker = app.config.get('SILENCE_MARKER', SILENCE_MARKER)
            result = cleanup_old_silence_files(recordings_dir, days, marker)
            logging.info(f"[SYSTEM:{worker_pid}] Cleanup task finished. {result['message']}")
        except Exception as e:
            logging.error(f"[SYSTEM:{worker_pid}] Error during cleanup task loop: {e}", exc_info=True)

        sleep_interval = app.config.get('CLEANUP_INTERVAL_SECONDS', 21600)
        logging.debug(f"[SYSTEM:{worker_pid}] Cleanup thread sleeping for {sleep_interval} seconds.")
        time.sleep(sleep_interval)


def create_app(test_config=None):
    """Builds the Flask app, its database and the background analysis queue."""
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # Ensure Flask/Gunicorn respect reverse-proxy headers (X-Forwarded-*)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

    from silencesplit.models import recording
    logging.info("[SYSTEM] Initializing database connection handling...")
    recording.init_app(app)
    logging.info("[SYSTEM] Database setup complete.")

    from silencesplit.services.process_tracker import ProcessTracker
    from silencesplit.services.analysis_service import AnalysisQueue
    tracker = ProcessTracker()
    queue = AnalysisQueue(app, process_tracker=tracker, max_workers=app.config.get('ANALYSIS_WORKERS', 1))
    app.extensions['process_tracker'] = tracker
    app.extensions['analysis_queue'] = queue
    # Kill stuck media tools before the interpreter exits
    atexit.register(tracker.terminate_all)

    from silencesplit.api.recordings import recordings_bp
    app.register_blueprint(recordings_bp, url_prefix='/api')

    # The check on WERKZEUG_RUN_MAIN keeps the debug reloader from starting the thread twice
    if app.config.get('ENABLE_SILENCE_CLEANUP') and not app.testing:
        if not app.debug or os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
            cleanup_thread = threading.Thread(target=run_cleanup_task, args=(app,), daemon=True)
            cleanup_thread.start()

    return app
