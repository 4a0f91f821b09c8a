"""Pytest configuration helpers and fakes for the media tool boundary."""

import os
import sys
import hashlib
from pathlib import Path

import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import from repo modules without installing the package."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from silencesplit.exceptions import InvalidAudioError, ProbeError  # noqa: E402
from silencesplit.services.media_probe import AudioFileMetadata  # noqa: E402


def sha256(path) -> str:
    with open(path, "rb") as f:
        return hashlib.sha256(f.read()).hexdigest()


class FakeMediaProber:
    """
    Stands in for ffmpeg/ffprobe. A file of N bytes is treated as `duration`
    seconds of constant bit rate audio, so "stream copy" of a time range is a
    byte range copy.
    """

    def __init__(self, duration=10000.0, level_at=None, fail_extract_call=None,
                 invalid_audio=(), level_errors=()):
        self.duration = duration
        self.level_at = level_at or (lambda t: -20.0)
        self.fail_extract_call = fail_extract_call
        self.invalid_audio = set(invalid_audio)
        self.level_errors = set(level_errors)
        self.metadata_calls = []
        self.level_calls = []
        self.extract_calls = []
        self.validate_calls = []
        self.concat_calls = []

    def get_metadata(self, path):
        self.metadata_calls.append(path)
        size = os.path.getsize(path)
        return AudioFileMetadata(duration_seconds=self.duration, size_bytes=size,
                                 bit_rate_bps=int(size * 8 / self.duration))

    def get_level_at(self, path, start_seconds, window_seconds=30):
        self.level_calls.append(start_seconds)
        if start_seconds in self.level_errors:
            raise ProbeError(f"volumedetect failed at {start_seconds}")
        return self.level_at(start_seconds)

    def extract_segment(self, input_path, start_seconds, duration_seconds, output_path):
        self.extract_calls.append((input_path, start_seconds, duration_seconds, output_path))
        with open(input_path, "rb") as f:
            data = f.read()
        if self.fail_extract_call == len(self.extract_calls):
            # leave a partial output behind, as a crashed ffmpeg would
            with open(output_path, "wb") as out:
                out.write(data[:10])
            raise ProbeError("ffmpeg failed with code 1. Error: simulated failure")
        bytes_per_second = len(data) / self.duration
        begin = int(round(start_seconds * bytes_per_second))
        if duration_seconds is None:
            end = len(data)
        else:
            end = min(len(data), int(round((start_seconds + duration_seconds) * bytes_per_second)))
        with open(output_path, "wb") as out:
            out.write(data[begin:end])

    def has_audio_stream(self, path):
        return os.path.basename(path) not in self.invalid_audio

    def validate_is_audio(self, path):
        self.validate_calls.append(path)
        if not self.has_audio_stream(path):
            raise InvalidAudioError(f"Invalid audio file: no audio stream found in '{os.path.basename(path)}'")

    def concat_segments(self, first_path, second_path, output_path):
        self.concat_calls.append((first_path, second_path, output_path))
        with open(output_path, "wb") as out:
            for p in (first_path, second_path):
                with open(p, "rb") as f:
                    out.write(f.read())


class RecordingSplitRecorder:
    """Collects record_split calls instead of writing to a database."""

    def __init__(self):
        self.calls = []

    def record_split(self, session_id, split_data):
        self.calls.append((session_id, split_data))
        return {"success": True}


@pytest.fixture
def recording_file(tmp_path):
    """A 1,000,000 byte stand-in recording (100 bytes per second over 10000s)."""
    path = tmp_path / "recording-2025-09-18-session580.opus"
    path.write_bytes(os.urandom(1_000_000))
    return path


@pytest.fixture
def recorder():
    return RecordingSplitRecorder()
