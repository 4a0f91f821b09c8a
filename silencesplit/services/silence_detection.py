# silencesplit/services/silence_detection.py

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Union

from silencesplit.exceptions import ProbeError
from silencesplit.services.media_probe import MediaProber, DEFAULT_LEVEL_WINDOW_SEC

# Level used for a sample whose probe failed: treated as silence
QUIET_LEVEL_DB = -100.0

# Phase 1: the likely meeting period, sampled every 5 minutes starting at 5 minutes
PHASE1_START_SEC = 300
PHASE1_END_SEC = 7200
PHASE1_STEP_SEC = 300
# Phase 2: the long tail after 2 hours, sampled every 30 minutes
PHASE2_STEP_SEC = 1800

DEFAULT_SILENCE_THRESHOLD_DB = -40.0
DEFAULT_MIN_SILENCE_DURATION_SEC = 600.0
DEFAULT_MIN_SILENCE_RATIO = 0.8


@dataclass(frozen=True)
class LoudnessSample:
    time_seconds: float
    level_db: float
    # 1 = dense pre-2h sampling, 2 = sparse tail sampling. Diagnostics only.
    phase: int


@dataclass(frozen=True)
class SilenceNotFound:
    reason: str
    found = False


@dataclass(frozen=True)
class SilenceFound:
    meeting_end_time_seconds: float
    silence_duration_seconds: float
    confidence_ratio: float
    last_active_level_db: float
    samples_analyzed: int
    found = True


SilenceDetectionResult = Union[SilenceNotFound, SilenceFound]


class SilenceSampler:
    """Builds a sparse loudness profile of a recording: dense early, sparse late."""

    def __init__(self, prober: MediaProber, window_seconds: float = DEFAULT_LEVEL_WINDOW_SEC) -> None:
        self.prober = prober
        self.window_seconds = window_seconds

    def _level_or_quiet(self, path: str, time_seconds: float) -> float:
        # Fail open: one bad probe must not abort the whole analysis
        try:
            return self.prober.get_level_at(path, time_seconds, self.window_seconds)
        except ProbeError as e:
            logging.warning(f"[SAMPLER] Level probe failed at {time_seconds}s, treating as silence ({QUIET_LEVEL_DB} dB): {e}")
            return QUIET_LEVEL_DB

    def sample(self, path: str, total_duration_seconds: float) -> Iterator[LoudnessSample]:
        """Yields samples in increasing time order, one probe at a time."""
        phase1_end = min(PHASE1_END_SEC, total_duration_seconds)
        t = PHASE1_START_SEC
        while t < phase1_end:
            yield LoudnessSample(t, self._level_or_quiet(path, t), 1)
            t += PHASE1_STEP_SEC

        if total_duration_seconds > PHASE1_END_SEC:
            t = PHASE1_END_SEC
            while t < total_duration_seconds:
                yield LoudnessSample(t, self._level_or_quiet(path, t), 2)
                t += PHASE2_STEP_SEC


class SilencePatternAnalyzer:
    """
    Decides whether a loudness profile ends in sustained silence.

    The boundary is the timestamp of the last sample louder than the
    threshold. It is never interpolated between samples.
    """

    def __init__(self,
                 silence_threshold_db: float = DEFAULT_SILENCE_THRESHOLD_DB,
                 min_silence_duration_seconds: float = DEFAULT_MIN_SILENCE_DURATION_SEC,
                 min_silence_ratio: float = DEFAULT_MIN_SILENCE_RATIO) -> None:
        self.silence_threshold_db = silence_threshold_db
        self.min_silence_duration_seconds = min_silence_duration_seconds
        self.min_silence_ratio = min_silence_ratio

    def is_active(self, sample: LoudnessSample) -> bool:
        return sample.level_db > self.silence_threshold_db

    def analyze(self, samples: Iterable[LoudnessSample]) -> SilenceDetectionResult:
        samples: List[LoudnessSample] = list(samples)
        logging.info(f"[ANALYZER] Analyzing {len(samples)} audio samples...")

        last_active_index = -1
        for i, sample in enumerate(samples):
            if self.is_active(sample):
                last_active_index = i

        if last_active_index == -1:
            return SilenceNotFound("No active audio detected")

        tail = samples[last_active_index + 1:]
        if not tail:
            return SilenceNotFound("No samples after last activity")

        silent_in_tail = sum(1 for s in tail if not self.is_active(s))
        silence_ratio = silent_in_tail / len(tail)
        if silence_ratio < self.min_silence_ratio:
            return SilenceNotFound("Insufficient sustained silence detected")

        last_active = samples[last_active_index]
        meeting_end_time = last_active.time_seconds
        silence_duration = samples[-1].time_seconds - meeting_end_time

        if silence_duration < self.min_silence_duration_seconds:
            return SilenceNotFound(
                f"Silence duration ({round(silence_duration / 60)}min) below threshold "
                f"({self.min_silence_duration_seconds / 60:g}min)"
            )

        logging.info(f"[ANALYZER] Silence pattern confirmed - meeting likely ended at {round(meeting_end_time / 60)} minutes")
        return SilenceFound(
            meeting_end_time_seconds=meeting_end_time,
            silence_duration_seconds=silence_duration,
            confidence_ratio=silence_ratio,
            last_active_level_db=last_active.level_db,
            samples_analyzed=len(samples),
        )
