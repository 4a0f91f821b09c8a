# silencesplit/api/recordings.py

import os
import logging
from flask import Blueprint, request, jsonify, current_app
from silencesplit.models import recording as recording_model
from silencesplit.services import file_service
from silencesplit.services.analysis_service import DuplicateAnalysisError

recordings_bp = Blueprint('recordings_bp', __name__)

# Logging is configured in silencesplit/__init__.py


def _silence_marker() -> str:
    return current_app.config.get('SILENCE_MARKER') or file_service.SILENCE_MARKER


@recordings_bp.route('/recordings/analyze', methods=['POST'])
def analyze_recording():
    """Queues post-recording analysis for a finished recording."""
    logging.info("[API] /recordings/analyze endpoint called")
    payload = request.get_json(silent=True) or {}
    session_id = payload.get('session_id')
    file_path = payload.get('file_path')

    if session_id in (None, '') or not file_path:
        logging.error("[API] session_id and file_path are required")
        return jsonify({'error': 'session_id and file_path are required'}), 400
    if not file_service.is_audio_file(file_path) or file_service.is_silence_file(file_path, _silence_marker()):
        logging.error(f"[API] File type not allowed for analysis: {os.path.basename(file_path)}")
        return jsonify({'error': 'File type not allowed'}), 400

    recordings_dir = current_app.config['RECORDINGS_DIR']
    if not file_service.validate_file_path(file_path, recordings_dir):
        return jsonify({'error': 'File is outside the recordings directory'}), 400
    if not os.path.isfile(file_path):
        logging.error(f"[API] Recording not found: {file_path}")
        return jsonify({'error': 'Recording not found'}), 404

    queue = current_app.extensions['analysis_queue']
    try:
        job_id = queue.submit(session_id, file_path)
    except DuplicateAnalysisError as e:
        logging.warning(f"[API] Rejected duplicate analysis request: {e}")
        return jsonify({'error': str(e)}), 409
    except Exception as e:
        logging.exception(f"[API] Error initiating analysis job: {e}")
        return jsonify({'error': 'Failed to start analysis job.'}), 500

    return jsonify({'job_id': job_id, 'message': 'Analysis job started successfully.'}), 202


@recordings_bp.route('/recordings/analysis/<job_id>', methods=['GET'])
def get_analysis(job_id):
    """Polls an analysis job for progress and its outcome."""
    short_job_id = job_id[:8]
    logging.debug(f"[API:/analysis] Progress check requested for job {short_job_id}")
    job = recording_model.get_job_by_id(job_id)
    if not job:
        logging.warning(f"[API:/analysis] Job ID not found: {short_job_id}")
        return jsonify({'error': 'Job not found'}), 404

    is_finished = job['status'] in ('finished', 'error', 'needs_review')
    is_error = job['status'] in ('error', 'needs_review')
    return jsonify({
        'job_id': job_id,
        'session_id': job['session_id'],
        'status': job['status'],
        'progress': job['progress_log'],
        'finished': is_finished,
        'needs_manual_review': job['status'] == 'needs_review',
        'error_message': job['error_message'] if is_error else None,
        'outcome': job.get('outcome') if is_finished and not is_error else None,
    })


@recordings_bp.route('/recordings/splits', methods=['GET'])
def get_splits():
    """Lists recorded splits, optionally for a single session."""
    session_id = request.args.get('session_id')
    if session_id:
        splits = recording_model.get_splits_for_session(session_id)
    else:
        splits = recording_model.get_all_splits()
    logging.info(f"[API] Retrieved {len(splits)} split records.")
    return jsonify(splits)


@recordings_bp.route('/recordings/silence-stats', methods=['GET'])
def get_silence_stats():
    stats = file_service.get_silence_file_statistics(current_app.config['RECORDINGS_DIR'], _silence_marker())
    stats['files'] = [os.path.basename(p) for p in stats['files']]
    return jsonify(stats)


@recordings_bp.route('/recordings/silence-cleanup', methods=['POST'])
def cleanup_silence_files():
    payload = request.get_json(silent=True) or {}
    try:
        days = int(payload.get('older_than_days', current_app.config.get('SILENCE_RETENTION_DAYS', 30)))
    except (TypeError, ValueError):
        return jsonify({'error': 'older_than_days must be an integer'}), 400
    if days < 0:
        return jsonify({'error': 'older_than_days must not be negative'}), 400
    logging.info(f"[API] Silence cleanup requested (older than {days} days)")
    result = file_service.cleanup_old_silence_files(current_app.config['RECORDINGS_DIR'], days, _silence_marker())
    return jsonify(result)
