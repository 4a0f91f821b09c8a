# silencesplit/services/media_probe.py

import os
import re
import json
import time
import logging
import tempfile
import subprocess
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from pydub.utils import get_encoder_name, get_prober_name

from silencesplit.exceptions import ProbeError, InvalidAudioError

# Hook supplied by the hosting application so it can kill stuck tools on shutdown
SubprocessRegistrar = Callable[[subprocess.Popen, str], None]

# Default loudness window for a single level probe (seconds)
DEFAULT_LEVEL_WINDOW_SEC = 30

# volumedetect writes e.g. "[Parsed_volumedetect_0 @ 0x...] mean_volume: -23.4 dB"
MEAN_VOLUME_RE = re.compile(r"mean_volume:\s*(-?inf|-?[0-9]+(?:\.[0-9]+)?)\s*dB")


@dataclass(frozen=True)
class AudioFileMetadata:
    duration_seconds: float
    size_bytes: int
    bit_rate_bps: int


class MediaProber:
    """
    Thin wrapper around the ffmpeg/ffprobe command line tools.

    Every public call spawns exactly one short-lived process and waits for it.
    Nothing is cached between calls. Failures raise ProbeError (or
    InvalidAudioError for files without an audio stream).
    """

    def __init__(self,
                 ffmpeg_path: Optional[str] = None,
                 ffprobe_path: Optional[str] = None,
                 register_subprocess: Optional[SubprocessRegistrar] = None,
                 timeout: Optional[float] = None) -> None:
        # pydub knows how to find ffmpeg/avconv and ffprobe/avprobe on PATH
        self.ffmpeg_path = ffmpeg_path or get_encoder_name()
        self.ffprobe_path = ffprobe_path or get_prober_name()
        self.register_subprocess = register_subprocess
        self.timeout = timeout

    # --- Process plumbing ---

    def _run(self, cmd: List[str], description: str) -> Tuple[int, str, str]:
        """Runs one media tool invocation and returns (returncode, stdout, stderr)."""
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise ProbeError(f"{cmd[0]} is not installed or not found in PATH.") from e
        except OSError as e:
            raise ProbeError(f"Could not start {cmd[0]}: {e}") from e

        if self.register_subprocess is not None:
            self.register_subprocess(proc, description)

        try:
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            proc.communicate()
            logging.error(f"[PROBE] {description} timed out after {self.timeout}s; process killed.")
            raise ProbeError(f"{description} timed out after {self.timeout}s") from e
        return proc.returncode, stdout or "", stderr or ""

    @staticmethod
    def _require_file(path: str) -> str:
        abs_path = os.path.abspath(path)
        if not os.path.isfile(abs_path):
            raise ProbeError(f"Audio file not found at path: {abs_path}")
        return abs_path

    # --- Queries ---

    def get_metadata(self, path: str) -> AudioFileMetadata:
        """Returns duration, size and bit rate of the container (ffprobe -show_format)."""
        abs_path = self._require_file(path)
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            abs_path,
        ]
        code, stdout, stderr = self._run(cmd, f"ffprobe metadata {os.path.basename(abs_path)}")
        if code != 0:
            raise ProbeError(f"ffprobe failed for '{os.path.basename(abs_path)}': {stderr.strip() or code}")
        try:
            fmt = json.loads(stdout)["format"]
            duration = float(fmt["duration"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ProbeError(f"Could not parse ffprobe output for '{os.path.basename(abs_path)}': {e}") from e

        # size and bit_rate are optional in some containers
        try:
            size = int(fmt.get("size"))
        except (TypeError, ValueError):
            size = os.path.getsize(abs_path)
        try:
            bit_rate = int(fmt.get("bit_rate"))
        except (TypeError, ValueError):
            bit_rate = 0

        return AudioFileMetadata(duration_seconds=duration, size_bytes=size, bit_rate_bps=bit_rate)

    def get_level_at(self, path: str, start_seconds: float,
                     window_seconds: float = DEFAULT_LEVEL_WINDOW_SEC) -> float:
        """
        Returns the mean volume (dB) of `window_seconds` of audio starting at
        `start_seconds`, measured with ffmpeg's volumedetect filter.

        Raises ProbeError when the level cannot be measured. Callers that
        sample a whole timeline treat that as silence instead of aborting.
        """
        abs_path = self._require_file(path)
        cmd = [
            self.ffmpeg_path,
            "-hide_banner", "-nostats",
            "-ss", str(start_seconds),
            "-i", abs_path,
            "-t", str(window_seconds),
            "-af", "volumedetect",
            "-f", "null", "-",
        ]
        code, _, stderr = self._run(cmd, f"ffmpeg level analysis {os.path.basename(abs_path)}")
        if code != 0:
            raise ProbeError(f"ffmpeg volumedetect failed at {start_seconds}s: {stderr.strip()[-300:] or code}")
        m = MEAN_VOLUME_RE.search(stderr)
        if not m:
            raise ProbeError(f"No mean_volume reported at {start_seconds}s for '{os.path.basename(abs_path)}'")
        return float(m.group(1))

    def has_audio_stream(self, path: str) -> bool:
        """True if ffprobe sees at least one audio stream in the file."""
        abs_path = self._require_file(path)
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-select_streams", "a",
            "-show_entries", "stream=codec_type",
            "-of", "csv=p=0",
            abs_path,
        ]
        code, stdout, stderr = self._run(cmd, f"ffprobe validate {os.path.basename(abs_path)}")
        if code != 0:
            logging.warning(f"[PROBE] ffprobe could not read streams of '{os.path.basename(abs_path)}': {stderr.strip()}")
            return False
        return any(line.strip() == "audio" for line in stdout.splitlines())

    def validate_is_audio(self, path: str) -> None:
        if not self.has_audio_stream(path):
            raise InvalidAudioError(f"Invalid audio file: no audio stream found in '{os.path.basename(path)}'")

    # --- Transforms ---

    def extract_segment(self, input_path: str, start_seconds: float,
                        duration_seconds: Optional[float], output_path: str) -> None:
        """
        Stream-copies [start, start + duration] (or [start, end] when duration
        is None) of `input_path` into `output_path`. No re-encoding.
        """
        abs_input = self._require_file(input_path)
        cmd = [
            self.ffmpeg_path,
            "-hide_banner", "-loglevel", "error",
            "-y",
            "-ss", str(start_seconds),
            "-i", abs_input,
            "-c", "copy",
            "-avoid_negative_ts", "make_zero",
        ]
        if duration_seconds is not None:
            cmd += ["-t", str(duration_seconds)]
        cmd.append(output_path)

        logging.info(f"[PROBE] {' '.join(cmd)}")
        start = time.time()
        code, _, stderr = self._run(cmd, f"ffmpeg split {os.path.basename(abs_input)}")
        if code != 0:
            raise ProbeError(f"ffmpeg failed with code {code}. Error: {stderr.strip()}")
        logging.info(f"[PROBE] Segment '{os.path.basename(output_path)}' written in {time.time() - start:.2f}s")

    def concat_segments(self, first_path: str, second_path: str, output_path: str) -> None:
        """Joins two files of the same codec with the concat demuxer (stream copy)."""
        first = self._require_file(first_path)
        second = self._require_file(second_path)
        list_fd, list_path = tempfile.mkstemp(suffix=".txt", prefix="concat_")
        try:
            with os.fdopen(list_fd, "w", encoding="utf-8") as list_file:
                for p in (first, second):
                    escaped = p.replace("'", "'\\''")
                    list_file.write(f"file '{escaped}'\n")
            cmd = [
                self.ffmpeg_path,
                "-hide_banner", "-loglevel", "error",
                "-y",
                "-f", "concat", "-safe", "0",
                "-i", list_path,
                "-c", "copy",
                output_path,
            ]
            code, _, stderr = self._run(cmd, f"ffmpeg merge {os.path.basename(output_path)}")
            if code != 0:
                raise ProbeError(f"Merge failed with code {code}: {stderr.strip()}")
        finally:
            os.remove(list_path)
