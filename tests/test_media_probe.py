import os
import json
import subprocess

import pytest

from silencesplit.exceptions import InvalidAudioError, ProbeError
from silencesplit.services import media_probe
from silencesplit.services.media_probe import MediaProber


class FakePopen:
    """Replays one canned media tool run."""

    instances = []
    returncode_value = 0
    stdout_value = ""
    stderr_value = ""
    hang = False

    def __init__(self, cmd, **kwargs):
        self.cmd = cmd
        self.kwargs = kwargs
        self.pid = 4242
        self.returncode = None
        self.killed = False
        FakePopen.instances.append(self)

    def communicate(self, timeout=None):
        if self.hang and not self.killed:
            raise subprocess.TimeoutExpired(self.cmd, timeout)
        self.returncode = -9 if self.killed else self.returncode_value
        return self.stdout_value, self.stderr_value

    def kill(self):
        self.killed = True


@pytest.fixture
def fake_popen(monkeypatch):
    class Popen(FakePopen):
        instances = []

        def __init__(self, cmd, **kwargs):
            super().__init__(cmd, **kwargs)
            Popen.instances.append(self)

    monkeypatch.setattr(media_probe.subprocess, "Popen", Popen)
    return Popen


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "meeting.opus"
    path.write_bytes(b"\x00" * 2048)
    return path


@pytest.fixture
def prober():
    return MediaProber(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe")


class TestGetMetadata:

    def test_parses_format_section(self, fake_popen, audio_file, prober):
        fake_popen.stdout_value = json.dumps({"format": {"duration": "10000.5", "size": "104857600", "bit_rate": "83886"}})

        metadata = prober.get_metadata(str(audio_file))

        assert metadata.duration_seconds == 10000.5
        assert metadata.size_bytes == 104857600
        assert metadata.bit_rate_bps == 83886
        cmd = fake_popen.instances[0].cmd
        assert cmd[0] == "ffprobe"
        assert "-show_format" in cmd
        assert cmd[-1] == str(audio_file)

    def test_missing_size_and_bit_rate(self, fake_popen, audio_file, prober):
        fake_popen.stdout_value = json.dumps({"format": {"duration": "61.0"}})

        metadata = prober.get_metadata(str(audio_file))

        assert metadata.duration_seconds == 61.0
        assert metadata.size_bytes == 2048
        assert metadata.bit_rate_bps == 0

    def test_nonzero_exit(self, fake_popen, audio_file, prober):
        fake_popen.returncode_value = 1
        fake_popen.stderr_value = "meeting.opus: Invalid data found when processing input"

        with pytest.raises(ProbeError, match="Invalid data"):
            prober.get_metadata(str(audio_file))

    @pytest.mark.parametrize("stdout", ["not json", "{}", json.dumps({"format": {}}),
                                        json.dumps({"format": {"duration": "N/A"}})])
    def test_unparseable_output(self, fake_popen, audio_file, prober, stdout):
        fake_popen.stdout_value = stdout
        with pytest.raises(ProbeError, match="Could not parse"):
            prober.get_metadata(str(audio_file))

    def test_missing_file_does_not_spawn(self, fake_popen, tmp_path, prober):
        with pytest.raises(ProbeError, match="not found"):
            prober.get_metadata(str(tmp_path / "gone.opus"))
        assert fake_popen.instances == []

    def test_tool_not_installed(self, monkeypatch, audio_file, prober):
        def missing(*args, **kwargs):
            raise FileNotFoundError("ffprobe")

        monkeypatch.setattr(media_probe.subprocess, "Popen", missing)
        with pytest.raises(ProbeError, match="not installed"):
            prober.get_metadata(str(audio_file))


class TestGetLevelAt:

    def test_parses_mean_volume(self, fake_popen, audio_file, prober):
        fake_popen.stderr_value = (
            "[Parsed_volumedetect_0 @ 0x55d0c8] n_samples: 1440000\n"
            "[Parsed_volumedetect_0 @ 0x55d0c8] mean_volume: -23.4 dB\n"
            "[Parsed_volumedetect_0 @ 0x55d0c8] max_volume: -3.1 dB\n"
        )

        assert prober.get_level_at(str(audio_file), 300) == -23.4

        cmd = fake_popen.instances[0].cmd
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-ss") + 1] == "300"
        assert cmd[cmd.index("-t") + 1] == "30"
        assert cmd[cmd.index("-af") + 1] == "volumedetect"

    def test_digital_silence(self, fake_popen, audio_file, prober):
        fake_popen.stderr_value = "[Parsed_volumedetect_0 @ 0x1] mean_volume: -91.0 dB\n"
        assert prober.get_level_at(str(audio_file), 7200, window_seconds=10) == -91.0
        cmd = fake_popen.instances[0].cmd
        assert cmd[cmd.index("-t") + 1] == "10"

    def test_no_mean_volume_reported(self, fake_popen, audio_file, prober):
        fake_popen.stderr_value = "Output file is empty, nothing was encoded\n"
        with pytest.raises(ProbeError, match="No mean_volume"):
            prober.get_level_at(str(audio_file), 9000)

    def test_nonzero_exit(self, fake_popen, audio_file, prober):
        fake_popen.returncode_value = 1
        with pytest.raises(ProbeError):
            prober.get_level_at(str(audio_file), 300)


class TestAudioStreamValidation:

    def test_audio_stream_present(self, fake_popen, audio_file, prober):
        fake_popen.stdout_value = "audio\n"
        assert prober.has_audio_stream(str(audio_file))
        prober.validate_is_audio(str(audio_file))
        cmd = fake_popen.instances[0].cmd
        assert cmd[cmd.index("-select_streams") + 1] == "a"

    def test_no_audio_stream(self, fake_popen, audio_file, prober):
        fake_popen.stdout_value = ""
        assert not prober.has_audio_stream(str(audio_file))
        with pytest.raises(InvalidAudioError):
            prober.validate_is_audio(str(audio_file))

    def test_unreadable_file_is_not_audio(self, fake_popen, audio_file, prober):
        fake_popen.returncode_value = 1
        fake_popen.stderr_value = "Invalid data found when processing input"
        with pytest.raises(InvalidAudioError) as exc_info:
            prober.validate_is_audio(str(audio_file))
        assert isinstance(exc_info.value, ProbeError)


class TestExtractSegment:

    def test_bounded_segment_is_stream_copied(self, fake_popen, audio_file, prober, tmp_path):
        out = str(tmp_path / "meeting_part.opus")
        prober.extract_segment(str(audio_file), 0, 5820, out)

        cmd = fake_popen.instances[0].cmd
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert cmd[cmd.index("-ss") + 1] == "0"
        assert cmd[cmd.index("-t") + 1] == "5820"
        assert cmd[cmd.index("-avoid_negative_ts") + 1] == "make_zero"
        assert cmd[-1] == out

    def test_open_ended_segment_has_no_duration(self, fake_popen, audio_file, prober, tmp_path):
        prober.extract_segment(str(audio_file), 5700, None, str(tmp_path / "tail.opus"))
        assert "-t" not in fake_popen.instances[0].cmd

    def test_failure_reports_exit_code(self, fake_popen, audio_file, prober, tmp_path):
        fake_popen.returncode_value = 1
        fake_popen.stderr_value = "No space left on device"
        with pytest.raises(ProbeError, match="code 1.*No space left"):
            prober.extract_segment(str(audio_file), 0, 60, str(tmp_path / "x.opus"))


def test_concat_uses_list_file_and_cleans_it_up(fake_popen, audio_file, prober, tmp_path):
    other = tmp_path / "meeting.silence.opus"
    other.write_bytes(b"\x01" * 10)
    listed = []

    original_init = fake_popen.__init__

    def capture(self, cmd, **kwargs):
        original_init(self, cmd, **kwargs)
        list_path = cmd[cmd.index("-i") + 1]
        with open(list_path, encoding="utf-8") as f:
            listed.append((list_path, f.read()))

    fake_popen.__init__ = capture
    prober.concat_segments(str(audio_file), str(other), str(tmp_path / "merged.opus"))

    list_path, contents = listed[0]
    assert contents == f"file '{audio_file}'\nfile '{other}'\n"
    cmd = fake_popen.instances[0].cmd
    assert cmd[cmd.index("-f") + 1] == "concat"
    assert not os.path.exists(list_path)


def test_registrar_sees_every_process(fake_popen, audio_file):
    seen = []
    prober = MediaProber(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe",
                         register_subprocess=lambda proc, desc: seen.append((proc, desc)))
    fake_popen.stdout_value = "audio\n"

    prober.has_audio_stream(str(audio_file))

    assert seen == [(fake_popen.instances[0], "ffprobe validate meeting.opus")]


def test_timeout_kills_the_process(fake_popen, audio_file):
    fake_popen.hang = True
    prober = MediaProber(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe", timeout=5)

    with pytest.raises(ProbeError, match="timed out"):
        prober.get_level_at(str(audio_file), 300)

    assert fake_popen.instances[0].killed
