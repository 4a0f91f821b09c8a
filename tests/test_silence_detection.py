import pytest

from conftest import FakeMediaProber
from silencesplit.services.silence_detection import (
    LoudnessSample,
    QUIET_LEVEL_DB,
    SilenceFound,
    SilenceNotFound,
    SilencePatternAnalyzer,
    SilenceSampler,
)


def _profile(active_times, silent_times, active_db=-20.0, silent_db=-60.0):
    samples = [LoudnessSample(t, active_db, 1) for t in active_times]
    samples += [LoudnessSample(t, silent_db, 1 if t < 7200 else 2) for t in silent_times]
    return sorted(samples, key=lambda s: s.time_seconds)


class TestSilenceSampler:

    def test_long_recording_uses_dense_then_sparse_schedule(self):
        prober = FakeMediaProber(duration=10000)
        samples = list(SilenceSampler(prober).sample("rec.opus", 10000))

        times = [s.time_seconds for s in samples]
        assert times == list(range(300, 7200, 300)) + [7200, 9000]
        assert [s.phase for s in samples] == [1] * 23 + [2, 2]
        assert prober.level_calls == times

    def test_short_recording_only_samples_phase_one(self):
        prober = FakeMediaProber(duration=3000)
        samples = list(SilenceSampler(prober).sample("rec.opus", 3000))

        assert [s.time_seconds for s in samples] == list(range(300, 3000, 300))
        assert all(s.phase == 1 for s in samples)

    def test_exactly_two_hours_has_no_tail_phase(self):
        samples = list(SilenceSampler(FakeMediaProber(duration=7200)).sample("rec.opus", 7200))
        assert samples[-1].time_seconds == 6900
        assert all(s.phase == 1 for s in samples)

    def test_eight_hour_recording_stays_cheap(self):
        prober = FakeMediaProber(duration=8 * 3600)
        list(SilenceSampler(prober).sample("rec.opus", 8 * 3600))
        assert len(prober.level_calls) <= 35

    def test_failed_probe_counts_as_quiet_and_sampling_continues(self):
        prober = FakeMediaProber(duration=3000, level_errors={600})
        samples = list(SilenceSampler(prober).sample("rec.opus", 3000))

        by_time = {s.time_seconds: s.level_db for s in samples}
        assert by_time[600] == QUIET_LEVEL_DB
        assert by_time[900] == -20.0
        assert len(samples) == 9

    def test_sampling_is_lazy(self):
        prober = FakeMediaProber(duration=3000)
        samples = SilenceSampler(prober).sample("rec.opus", 3000)
        assert prober.level_calls == []
        first = next(samples)
        assert first.time_seconds == 300
        assert prober.level_calls == [300]

    def test_window_is_passed_to_prober(self):
        seen = []

        class WindowProber(FakeMediaProber):
            def get_level_at(self, path, start_seconds, window_seconds=30):
                seen.append(window_seconds)
                return -20.0

        list(SilenceSampler(WindowProber(duration=900), window_seconds=10).sample("rec.opus", 900))
        assert seen == [10, 10]


class TestSilencePatternAnalyzer:

    def test_meeting_end_is_last_active_sample(self):
        # Active through 5700s, silent from 6000s to 10000s
        samples = _profile(range(300, 5701, 300), [6000, 7200, 9000, 10000])
        result = SilencePatternAnalyzer().analyze(samples)

        assert isinstance(result, SilenceFound)
        assert result.found
        assert result.meeting_end_time_seconds == 5700
        assert result.silence_duration_seconds == 4300
        assert result.meeting_end_time_seconds + result.silence_duration_seconds == 10000
        assert result.confidence_ratio == 1.0
        assert result.last_active_level_db == -20.0
        assert result.samples_analyzed == len(samples)

    def test_no_active_audio(self):
        result = SilencePatternAnalyzer().analyze(_profile([], range(300, 7200, 300)))
        assert result == SilenceNotFound("No active audio detected")
        assert not result.found

    def test_never_below_threshold(self):
        result = SilencePatternAnalyzer().analyze(_profile(range(300, 7200, 300), []))
        assert result == SilenceNotFound("No samples after last activity")

    def test_empty_profile(self):
        assert SilencePatternAnalyzer().analyze([]) == SilenceNotFound("No active audio detected")

    def test_short_silence_is_rejected_with_minutes_in_reason(self):
        samples = _profile(range(300, 5701, 300), [6000])
        result = SilencePatternAnalyzer().analyze(samples)

        assert isinstance(result, SilenceNotFound)
        assert "5min" in result.reason
        assert "10min" in result.reason

    def test_level_equal_to_threshold_is_silent(self):
        samples = [
            LoudnessSample(300, -20.0, 1),
            LoudnessSample(600, -40.0, 1),
            LoudnessSample(1200, -40.0, 1),
        ]
        result = SilencePatternAnalyzer().analyze(samples)
        assert result.found
        assert result.meeting_end_time_seconds == 300
        assert result.silence_duration_seconds == 900

    def test_level_just_above_threshold_is_active(self):
        samples = [
            LoudnessSample(300, -20.0, 1),
            LoudnessSample(600, -60.0, 1),
            LoudnessSample(1200, -39.9, 1),
        ]
        result = SilencePatternAnalyzer().analyze(samples)
        assert result == SilenceNotFound("No samples after last activity")

    def test_custom_threshold_and_minimum(self):
        samples = _profile([300, 600], [900, 1200], active_db=-35.0, silent_db=-45.0)
        assert not SilencePatternAnalyzer(silence_threshold_db=-30).analyze(samples).found

        result = SilencePatternAnalyzer(silence_threshold_db=-40, min_silence_duration_seconds=300).analyze(samples)
        assert result.found
        assert result.meeting_end_time_seconds == 600
        assert result.silence_duration_seconds == 600

    def test_silence_ratio_gate_is_configurable(self):
        samples = _profile(range(300, 3001, 300), [3300, 3600, 3900, 4200])
        result = SilencePatternAnalyzer(min_silence_ratio=1.01).analyze(samples)
        assert result == SilenceNotFound("Insufficient sustained silence detected")

    def test_boundary_is_never_interpolated(self):
        samples = _profile([300, 600, 900], [7200, 9000], active_db=-10.0, silent_db=-90.0)
        result = SilencePatternAnalyzer().analyze(samples)
        assert result.meeting_end_time_seconds in {s.time_seconds for s in samples}

    def test_accepts_a_lazy_sample_stream(self):
        prober = FakeMediaProber(duration=10000, level_at=lambda t: -20.0 if t <= 5700 else -70.0)
        result = SilencePatternAnalyzer().analyze(SilenceSampler(prober).sample("rec.opus", 10000))
        assert result.found
        assert result.meeting_end_time_seconds == 5700
        assert result.silence_duration_seconds == 9000 - 5700
        assert result.confidence_ratio >= 0.8
