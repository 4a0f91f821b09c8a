# silencesplit/services/post_recording_analyzer.py

import os
import logging
from dataclasses import dataclass, asdict
from typing import Any, Mapping, Optional, Protocol

from silencesplit.exceptions import SplitError
from silencesplit.services.media_probe import MediaProber, SubprocessRegistrar, DEFAULT_LEVEL_WINDOW_SEC
from silencesplit.services.silence_detection import (
    SilenceSampler,
    SilencePatternAnalyzer,
    SilenceDetectionResult,
    DEFAULT_MIN_SILENCE_RATIO,
)
from silencesplit.services.audio_splitter import AudioSplitter, SplitResult
from silencesplit.services import file_service

MB = 1024 * 1024


class SplitRecorder(Protocol):
    """Persistence collaborator told about every performed split."""

    def record_split(self, session_id: Any, split_data: dict) -> Any:
        ...


@dataclass(frozen=True)
class AnalysisOutcome:
    analyzed: bool
    duration: Optional[float] = None
    reason: Optional[str] = None
    silence_detected: Optional[bool] = None
    original_size: Optional[int] = None
    meeting_size: Optional[int] = None
    silence_size: Optional[int] = None
    meeting_duration: Optional[float] = None
    total_silence_duration: Optional[float] = None
    space_saved_mb: Optional[int] = None
    meeting_path: Optional[str] = None
    silence_path: Optional[str] = None

    def as_dict(self) -> dict:
        """Only the keys that belong to this kind of outcome."""
        return {k: v for k, v in asdict(self).items() if v is not None}


def _setting(config: Any, key: str, default: Any) -> Any:
    if isinstance(config, Mapping):
        value = config.get(key, default)
    else:
        value = getattr(config, key, default)
    return default if value is None else value


class PostRecordingAnalyzer:
    """
    Analyzes finished recordings of at least `min_duration_for_analysis`
    seconds for a long trailing silence and splits it off into a separate file.

    Errors from probing, analysis, splitting or persistence are logged and
    re-raised unchanged. The caller decides what the user is told.
    """

    def __init__(self, database: SplitRecorder,
                 prober: Optional[MediaProber] = None,
                 sampler: Optional[SilenceSampler] = None,
                 analyzer: Optional[SilencePatternAnalyzer] = None,
                 splitter: Optional[AudioSplitter] = None,
                 min_duration_for_analysis: float = 3600,
                 silence_threshold: float = -40,
                 min_silence_duration: float = 600,
                 buffer_time: float = 120,
                 min_silence_ratio: float = DEFAULT_MIN_SILENCE_RATIO,
                 register_subprocess: Optional[SubprocessRegistrar] = None) -> None:
        self.database = database
        self.min_duration_for_analysis = min_duration_for_analysis
        self.silence_threshold = silence_threshold
        self.min_silence_duration = min_silence_duration
        self.buffer_time = buffer_time
        self.prober = prober or MediaProber(register_subprocess=register_subprocess)
        self.sampler = sampler or SilenceSampler(self.prober)
        self.analyzer = analyzer or SilencePatternAnalyzer(
            silence_threshold_db=silence_threshold,
            min_silence_duration_seconds=min_silence_duration,
            min_silence_ratio=min_silence_ratio,
        )
        self.splitter = splitter or AudioSplitter(self.prober)

    @classmethod
    def from_config(cls, config: Any, database: SplitRecorder,
                    register_subprocess: Optional[SubprocessRegistrar] = None) -> "PostRecordingAnalyzer":
        """Builds an analyzer from a Config class or a Flask config mapping."""
        prober = MediaProber(
            ffmpeg_path=_setting(config, 'FFMPEG_BINARY', None),
            ffprobe_path=_setting(config, 'FFPROBE_BINARY', None),
            register_subprocess=register_subprocess,
            timeout=_setting(config, 'MEDIA_TOOL_TIMEOUT', None),
        )
        sampler = SilenceSampler(prober, window_seconds=_setting(config, 'LEVEL_WINDOW_SECONDS', DEFAULT_LEVEL_WINDOW_SEC))
        splitter = AudioSplitter(
            prober,
            silence_marker=_setting(config, 'SILENCE_MARKER', file_service.SILENCE_MARKER),
            preserve_original=bool(_setting(config, 'PRESERVE_ORIGINAL', False)),
        )
        return cls(
            database,
            prober=prober,
            sampler=sampler,
            splitter=splitter,
            min_duration_for_analysis=_setting(config, 'MIN_DURATION_FOR_ANALYSIS', 3600),
            silence_threshold=_setting(config, 'SILENCE_THRESHOLD_DB', -40),
            min_silence_duration=_setting(config, 'MIN_SILENCE_DURATION', 600),
            buffer_time=_setting(config, 'BUFFER_TIME', 120),
            min_silence_ratio=_setting(config, 'MIN_SILENCE_RATIO', DEFAULT_MIN_SILENCE_RATIO),
        )

    def analyze_recording(self, session_id: Any, file_path: str) -> AnalysisOutcome:
        """Checks whether the recording needs processing and splits it if so."""
        try:
            logging.info(f"[POST] Analyzing recording: {os.path.basename(file_path)}")

            metadata = self.prober.get_metadata(file_path)
            duration = metadata.duration_seconds
            duration_hours = round(duration / 3600, 2)
            logging.info(f"[POST] Duration: {duration_hours} hours")

            if duration < self.min_duration_for_analysis:
                logging.info(f"[POST] Skipping analysis - under {self.min_duration_for_analysis / 3600:g} hour ({duration_hours}h)")
                return AnalysisOutcome(analyzed=False, reason='Under 1 hour duration', duration=duration)

            logging.info(f"[POST] Detecting silence pattern for {duration_hours}h recording...")
            detection = self.detect_extended_silence(file_path, duration)

            if not detection.found:
                logging.info(f"[POST] No problematic silence detected - recording appears normal ({detection.reason})")
                return AnalysisOutcome(analyzed=True, silence_detected=False, duration=duration)

            logging.info("[POST] Extended silence detected:")
            logging.info(f"[POST]    Meeting duration: ~{round(detection.meeting_end_time_seconds / 60)} minutes")
            logging.info(f"[POST]    Silence duration: ~{round(detection.silence_duration_seconds / 60)} minutes")

            split = self.split_recording(file_path, detection.meeting_end_time_seconds)
            space_saved = split.original_size_bytes - split.meeting_size_bytes

            self.database.record_split(session_id, {
                'original_duration': duration,
                'split_time': detection.meeting_end_time_seconds,
                'silence_path': split.silence_path,
                'space_saved': space_saved,
            })
            logging.info(f"[POST] Split recorded for session {session_id}")

            space_saved_mb = round(space_saved / MB)
            logging.info(f"[POST] Recording successfully split - {space_saved_mb}MB saved")

            return AnalysisOutcome(
                analyzed=True,
                silence_detected=True,
                original_size=split.original_size_bytes,
                meeting_size=split.meeting_size_bytes,
                silence_size=split.silence_size_bytes,
                meeting_duration=detection.meeting_end_time_seconds,
                total_silence_duration=detection.silence_duration_seconds,
                space_saved_mb=space_saved_mb,
                meeting_path=split.meeting_path,
                silence_path=split.silence_path,
            )
        except Exception as e:
            logging.error(f"[POST] Post-recording analysis failed for {os.path.basename(file_path)}: {e}")
            raise

    def detect_extended_silence(self, file_path: str, total_duration: float) -> SilenceDetectionResult:
        """Samples the recording and looks for trailing silence. Never modifies the file."""
        logging.info("[POST] Sampling audio levels...")
        samples = self.sampler.sample(file_path, total_duration)
        return self.analyzer.analyze(samples)

    def split_recording(self, file_path: str, meeting_end_time: float) -> SplitResult:
        logging.info(f"[POST] Splitting at {round(meeting_end_time / 60)} minutes...")
        result = self.splitter.split_at_time(file_path, meeting_end_time, self.buffer_time)
        if not result.success:
            raise SplitError('Failed to split recording')
        return result
