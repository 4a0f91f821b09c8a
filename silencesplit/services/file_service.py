# silencesplit/services/file_service.py

import os
import time
import logging
from typing import Callable, Dict, List, Optional

# Extensions the recorder produces and downstream services accept
ALLOWED_AUDIO_EXTENSIONS = {'opus', 'wav', 'mp3', 'm4a', 'aac', 'flac', 'ogg', 'webm'}
# Marker placed before the extension of a split-off silence segment
SILENCE_MARKER = '.silence'
# Extension assumed for a bare "<name>.silence" file
DEFAULT_MEETING_EXT = '.opus'

# Files to ignore during cleanup
IGNORE_FILES = {'.DS_Store', '.gitkeep'}

MB = 1024 * 1024


def is_audio_file(filename: str) -> bool:
    """Returns True if the file looks like supported audio."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_AUDIO_EXTENSIONS


def is_silence_file(file_path: str, marker: str = SILENCE_MARKER) -> bool:
    """True for '<name>.silence.<ext>' and bare '<name>.silence'."""
    name = os.path.basename(file_path)
    if name.endswith(marker):
        return True
    stem, ext = os.path.splitext(name)
    return bool(ext) and stem.endswith(marker)


def silence_path_for(meeting_path: str, marker: str = SILENCE_MARKER) -> str:
    base, ext = os.path.splitext(meeting_path)
    return f"{base}{marker}{ext}"


def meeting_path_for(silence_path: str, marker: str = SILENCE_MARKER,
                     default_ext: str = DEFAULT_MEETING_EXT) -> str:
    if not is_silence_file(silence_path, marker):
        raise ValueError(f"File is not a {marker} file: {silence_path}")
    if silence_path.endswith(marker):
        return silence_path[:-len(marker)] + default_ext
    stem, ext = os.path.splitext(silence_path)
    return stem[:-len(marker)] + ext


def should_process_audio_file(file_path: str) -> bool:
    """Whether transcription/upload style consumers should touch this file."""
    name = os.path.basename(file_path)
    if is_silence_file(file_path):
        logging.debug(f"[FILES] Skipping silence file: {name}")
        return False
    if not is_audio_file(name):
        logging.debug(f"[FILES] Skipping non-audio file: {name}")
        return False
    return True


def filter_processable_audio_files(file_paths: List[str]) -> List[str]:
    return [p for p in file_paths if should_process_audio_file(p)]


def create_processing_guard(operation: str = 'process') -> Callable[[str], bool]:
    """Returns a predicate that rejects silence segments for the named operation."""
    def guard(file_path: str) -> bool:
        if is_silence_file(file_path):
            logging.info(f"[FILES] Skipping {operation} for silence file: {os.path.basename(file_path)}")
            return False
        return True
    return guard


def is_recording_split(meeting_path: str, marker: str = SILENCE_MARKER) -> Dict[str, Optional[str]]:
    silence_path = silence_path_for(meeting_path, marker)
    if os.path.exists(silence_path):
        return {'is_split': True, 'meeting_file_path': meeting_path, 'silence_file_path': silence_path}
    return {'is_split': False, 'meeting_file_path': meeting_path, 'silence_file_path': None}


def get_split_file_info(meeting_path: str, marker: str = SILENCE_MARKER) -> dict:
    """Sizes of a recording and of its silence segment, if it has one."""
    split_info = is_recording_split(meeting_path, marker)
    meeting_size = os.path.getsize(meeting_path)
    if not split_info['is_split']:
        return {
            'is_split': False,
            'meeting_size': meeting_size,
            'silence_size': 0,
            'total_size': meeting_size,
            'space_saved': 0,
        }
    silence_size = os.path.getsize(split_info['silence_file_path'])
    return {
        'is_split': True,
        'meeting_size': meeting_size,
        'silence_size': silence_size,
        'total_size': meeting_size + silence_size,
        # Space that would have been spent on silence in the main recording
        'space_saved': silence_size,
        'meeting_file_path': meeting_path,
        'silence_file_path': split_info['silence_file_path'],
    }


def validate_split_files(meeting_path: str, marker: str = SILENCE_MARKER) -> dict:
    split_info = is_recording_split(meeting_path, marker)
    if not split_info['is_split']:
        return {'valid': True, 'reason': 'Not a split recording'}
    try:
        if os.path.getsize(meeting_path) == 0:
            return {'valid': False, 'reason': 'Meeting file is empty'}
        if os.path.getsize(split_info['silence_file_path']) == 0:
            return {'valid': False, 'reason': 'Silence file is empty'}
    except OSError as e:
        return {'valid': False, 'reason': f"File access error: {e}"}
    return {'valid': True, 'reason': 'Split files are valid'}


def get_silence_files_in_directory(directory: str, marker: str = SILENCE_MARKER) -> List[str]:
    if not os.path.isdir(directory):
        logging.warning(f"[FILES] Directory not found: {directory}")
        return []
    return sorted(
        os.path.join(directory, name)
        for name in os.listdir(directory)
        if name not in IGNORE_FILES and is_silence_file(name, marker)
    )


def get_silence_file_statistics(directory: str, marker: str = SILENCE_MARKER) -> dict:
    silence_files = get_silence_files_in_directory(directory, marker)
    total_size = 0
    for path in silence_files:
        try:
            total_size += os.path.getsize(path)
        except OSError as e:
            logging.error(f"[FILES] Error getting stats for {path}: {e}")
    count = len(silence_files)
    return {
        'count': count,
        'total_size_bytes': total_size,
        'total_size_mb': round(total_size / MB),
        'average_size_mb': round(total_size / count / MB) if count else 0,
        'files': silence_files,
    }


def remove_files(file_paths: List[str]) -> int:
    """Removes a list of files, logging actions and errors. Returns count of successfully removed files."""
    removed_count = 0
    for path in file_paths:
        file_basename = os.path.basename(path)
        try:
            if os.path.exists(path):
                os.remove(path)
                logging.info(f"[SYSTEM] Cleaned up: {file_basename}")
                removed_count += 1
            else:
                logging.debug(f"[SYSTEM] File already removed: {file_basename}")
        except OSError as e:
            logging.error(f"[SYSTEM] Error removing file '{file_basename}': {e}")
    return removed_count


def validate_file_path(file_path: str, allowed_dir: str) -> bool:
    """Validates that a file path is within an allowed directory."""
    try:
        abs_allowed_dir = os.path.abspath(allowed_dir)
        abs_file_path = os.path.abspath(file_path)
        # commonpath must be the allowed directory itself, preventing traversal
        is_valid = os.path.commonpath([abs_allowed_dir, abs_file_path]) == abs_allowed_dir
        if not is_valid:
            logging.warning(f"[SYSTEM] Path validation failed: '{file_path}' is outside allowed directory '{allowed_dir}'.")
        return is_valid
    except ValueError:
        # Paths on different drives on Windows, etc.
        logging.warning(f"[SYSTEM] Path validation error for '{file_path}' against '{allowed_dir}'.")
        return False


def cleanup_old_silence_files(directory: str, older_than_days: int = 30, marker: str = SILENCE_MARKER) -> dict:
    """
    Deletes silence segments older than `older_than_days` from `directory`.
    Meeting recordings are never touched.
    """
    threshold_seconds = older_than_days * 24 * 60 * 60
    current_time = time.time()
    deleted_count = 0
    deleted_bytes = 0

    logging.info(f"[SYSTEM] Starting silence cleanup scan in directory: {directory}")
    for file_path in get_silence_files_in_directory(directory, marker):
        filename = os.path.basename(file_path)
        try:
            file_stat = os.stat(file_path)
            file_age = current_time - file_stat.st_mtime
            if file_age > threshold_seconds:
                os.remove(file_path)
                deleted_count += 1
                deleted_bytes += file_stat.st_size
                logging.info(f"[SYSTEM] Deleted old silence file: {filename} ({file_stat.st_size / MB:.0f}MB)")
        except FileNotFoundError:
            logging.warning(f"[SYSTEM] File not found during cleanup scan (likely removed concurrently): {filename}")
        except OSError as e:
            logging.error(f"[SYSTEM] OS error processing file '{filename}' during cleanup: {e}")

    deleted_mb = round(deleted_bytes / MB)
    message = (f"Deleted {deleted_count} old silence files ({deleted_mb}MB)"
               if deleted_count else "No old silence files to delete")
    logging.info(f"[SYSTEM] Silence cleanup finished for {directory}. {message}")
    return {'deleted_count': deleted_count, 'deleted_size_mb': deleted_mb, 'message': message}
