# silencesplit/config.py

import os
from dotenv import load_dotenv
load_dotenv()


def _env_bool(name: str, default: str = '0') -> bool:
    return os.environ.get(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_float(name: str, default=None):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    return float(value)


class Config:
    # --- Post-recording analysis policy ---
    # Recordings shorter than this (seconds) are never analyzed
    MIN_DURATION_FOR_ANALYSIS = float(os.environ.get('MIN_DURATION_FOR_ANALYSIS', '3600'))
    # Samples at or below this level (dB) count as silent
    SILENCE_THRESHOLD_DB = float(os.environ.get('SILENCE_THRESHOLD_DB', '-40'))
    # Trailing silence shorter than this (seconds) is left alone
    MIN_SILENCE_DURATION = float(os.environ.get('MIN_SILENCE_DURATION', '600'))
    # Fraction of samples after the last activity that must be silent
    MIN_SILENCE_RATIO = float(os.environ.get('MIN_SILENCE_RATIO', '0.8'))
    # Seconds of audio kept after the detected meeting end
    BUFFER_TIME = float(os.environ.get('BUFFER_TIME', '120'))
    # Length of each loudness probe window (seconds)
    LEVEL_WINDOW_SECONDS = float(os.environ.get('LEVEL_WINDOW_SECONDS', '30'))

    # --- Splitting ---
    # Keep <name>_original<ext> next to the recording after a successful split
    PRESERVE_ORIGINAL = _env_bool('PRESERVE_ORIGINAL')
    # Marker inserted before the extension of the silence segment: name.silence.opus
    SILENCE_MARKER = os.environ.get('SILENCE_MARKER', '.silence')

    # --- External media tools ---
    # None means "discover via pydub" (ffmpeg/avconv, ffprobe/avprobe)
    FFMPEG_BINARY = os.environ.get('FFMPEG_BINARY')
    FFPROBE_BINARY = os.environ.get('FFPROBE_BINARY')
    # Seconds before a media tool call is killed. Unset means wait forever.
    MEDIA_TOOL_TIMEOUT = _env_float('MEDIA_TOOL_TIMEOUT')

    # --- Storage ---
    # Database file is stored in the database/ folder.
    DATABASE = os.path.join(os.getcwd(), 'database', 'recordings.db')
    # Directory holding finished recordings (and their silence segments)
    RECORDINGS_DIR = os.environ.get('RECORDINGS_DIR', os.path.join(os.getcwd(), 'recordings'))

    # --- Housekeeping ---
    SILENCE_RETENTION_DAYS = int(os.environ.get('SILENCE_RETENTION_DAYS', '30'))
    CLEANUP_INTERVAL_SECONDS = int(os.environ.get('CLEANUP_INTERVAL_SECONDS', '21600'))
    ENABLE_SILENCE_CLEANUP = _env_bool('ENABLE_SILENCE_CLEANUP')

    # Background analysis workers. One keeps media tool usage sequential.
    ANALYSIS_WORKERS = int(os.environ.get('ANALYSIS_WORKERS', '1'))
