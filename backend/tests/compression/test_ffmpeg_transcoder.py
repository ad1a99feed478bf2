"""Tests for the ffmpeg transcoder.

The encoder process is replaced by a fake ``Popen`` so the command line,
progress parsing and failure handling can be checked without ffmpeg.
"""

import io
import subprocess
import threading
from unittest.mock import patch

import pytest
from hypothesis import given, settings, strategies as st

from app.modules.compression.errors import (
    EncodeCancelledError,
    EncodeFailedError,
    EncodeTimeoutError,
)
from app.modules.compression.ffmpeg import (
    FFmpegTranscoder,
    TranscodeProgress,
    parse_progress_time,
)
from app.modules.compression.models import DEFAULT_PROFILE, EncodeProfile


class FakePopen:
    """Stands in for an ffmpeg process."""

    def __init__(self, stderr_text: str = "", returncode: int = 0, output_bytes: int = 64):
        self.stderr_text = stderr_text
        self.final_returncode = returncode
        self.output_bytes = output_bytes
        self.cmd = None
        self.returncode = None
        self.killed = False

    def __call__(self, cmd, **kwargs):
        self.cmd = cmd
        self.kwargs = kwargs
        self.stderr = io.StringIO(self.stderr_text)
        if self.output_bytes:
            with open(cmd[-1], "wb") as f:
                f.write(b"\0" * self.output_bytes)
        return self

    def wait(self, timeout=None):
        if self.returncode is None:
            self.returncode = self.final_returncode
        return self.returncode

    def poll(self):
        return self.returncode

    def kill(self):
        self.killed = True
        self.returncode = -9


class HangingPopen(FakePopen):
    """An encoder that produces no output until it is killed."""

    def __call__(self, cmd, **kwargs):
        self.cmd = cmd
        self._killed = threading.Event()
        self.stderr = _BlockingStream(self._killed)
        return self

    def kill(self):
        super().kill()
        self._killed.set()


class _BlockingStream:
    def __init__(self, released: threading.Event):
        self.released = released

    def __iter__(self):
        self.released.wait(5)
        return iter(())

    def close(self):
        pass


@pytest.fixture
def input_file(tmp_path):
    path = tmp_path / "upload-input"
    path.write_bytes(b"\1" * 1024)
    return str(path)


@pytest.fixture
def transcoder():
    t = FFmpegTranscoder(ffmpeg_path="ffmpeg", ffprobe_path="ffprobe", timeout=None)
    with patch.object(FFmpegTranscoder, "probe_duration", return_value=10.0):
        yield t


class TestBuildTranscodeCommand:
    def test_default_profile_arguments(self) -> None:
        cmd = FFmpegTranscoder().build_transcode_command("in.mov", "out.mp4")

        assert cmd[0] == "ffmpeg"
        assert cmd[-1] == "out.mp4"
        assert cmd[cmd.index("-i") + 1] == "in.mov"
        assert cmd[cmd.index("-vf") + 1] == "scale=-2:480"
        assert cmd[cmd.index("-c:v") + 1] == "libx264"
        assert cmd[cmd.index("-crf") + 1] == "28"
        assert cmd[cmd.index("-preset") + 1] == "fast"
        assert cmd[cmd.index("-c:a") + 1] == "aac"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[cmd.index("-movflags") + 1] == "+faststart"

    def test_never_overwrites_output(self) -> None:
        cmd = FFmpegTranscoder().build_transcode_command("in.mov", "out.mp4")

        assert "-n" in cmd
        assert "-y" not in cmd

    def test_faststart_can_be_disabled(self) -> None:
        profile = EncodeProfile(faststart=False)

        cmd = FFmpegTranscoder().build_transcode_command("in.mov", "out.mp4", profile)

        assert "-movflags" not in cmd

    @given(height=st.integers(min_value=144, max_value=2160), crf=st.integers(min_value=0, max_value=51))
    @settings(max_examples=100)
    def test_profile_values_reach_the_command(self, height: int, crf: int) -> None:
        """**Property: Profile Fidelity**

        For any height and CRF, the command scales to that height with an
        even width and encodes at that CRF.
        """
        profile = EncodeProfile(height=height, crf=crf)

        cmd = FFmpegTranscoder(ffmpeg_path="/opt/ffmpeg").build_transcode_command("a", "b", profile)

        assert cmd[0] == "/opt/ffmpeg"
        assert cmd[cmd.index("-vf") + 1] == f"scale=-2:{height}"
        assert cmd[cmd.index("-crf") + 1] == str(crf)


class TestParseProgressTime:
    def test_parses_stats_line(self) -> None:
        line = "frame=  120 fps= 30 q=28.0 size=     512kB time=00:01:04.50 bitrate= 65.0kbits/s"

        assert parse_progress_time(line) == 64.5

    def test_ignores_other_lines(self) -> None:
        assert parse_progress_time("Input #0, mov,mp4,m4a,3gp,3g2,mj2, from 'in.mov':") is None

    @given(
        h=st.integers(min_value=0, max_value=99),
        m=st.integers(min_value=0, max_value=59),
        s=st.integers(min_value=0, max_value=59),
        cs=st.integers(min_value=0, max_value=99),
    )
    @settings(max_examples=100)
    def test_any_timestamp(self, h: int, m: int, s: int, cs: int) -> None:
        line = f"size=1kB time={h:02d}:{m:02d}:{s:02d}.{cs:02d} bitrate=1kbits/s"

        assert parse_progress_time(line) == pytest.approx(h * 3600 + m * 60 + s + cs / 100)


class TestTranscode:
    def test_success_reports_progress(self, transcoder, input_file, tmp_path) -> None:
        output = str(tmp_path / "out.mp4")
        stderr = "\n".join([
            "Input #0, mov, from 'in.mov':",
            "frame=1 time=00:00:02.50 bitrate=1kbits/s",
            "frame=2 time=00:00:05.00 bitrate=1kbits/s",
            "frame=3 time=00:00:10.00 bitrate=1kbits/s",
        ])
        fake = FakePopen(stderr_text=stderr)
        progress: list[TranscodeProgress] = []

        with patch("app.modules.compression.ffmpeg.subprocess.Popen", fake):
            transcoder.transcode(input_file, output, DEFAULT_PROFILE, progress_callback=progress.append)

        assert fake.cmd == transcoder.build_transcode_command(input_file, output, DEFAULT_PROFILE)
        assert fake.kwargs["stdout"] is subprocess.DEVNULL
        assert [p.seconds for p in progress] == [2.5, 5.0, 10.0]
        assert [p.percent for p in progress] == [25.0, 50.0, 100.0]

    def test_non_zero_exit_carries_diagnostic_tail(self, transcoder, input_file, tmp_path) -> None:
        fake = FakePopen(
            stderr_text="Input #0, mov, from 'in.mov':\nin.mov: Invalid data found when processing input\n",
            returncode=1,
            output_bytes=0,
        )

        with patch("app.modules.compression.ffmpeg.subprocess.Popen", fake):
            with pytest.raises(EncodeFailedError) as exc_info:
                transcoder.transcode(input_file, str(tmp_path / "out.mp4"))

        assert "Invalid data found when processing input" in exc_info.value.message
        assert exc_info.value.message.startswith("Encoding failed: ")

    def test_non_zero_exit_without_stderr_names_exit_code(self, transcoder, input_file, tmp_path) -> None:
        fake = FakePopen(returncode=137, output_bytes=0)

        with patch("app.modules.compression.ffmpeg.subprocess.Popen", fake):
            with pytest.raises(EncodeFailedError, match="exited with code 137"):
                transcoder.transcode(input_file, str(tmp_path / "out.mp4"))

    def test_zero_exit_without_output_fails(self, transcoder, input_file, tmp_path) -> None:
        fake = FakePopen(output_bytes=0)

        with patch("app.modules.compression.ffmpeg.subprocess.Popen", fake):
            with pytest.raises(EncodeFailedError, match="without producing output"):
                transcoder.transcode(input_file, str(tmp_path / "out.mp4"))

    def test_missing_binary(self, transcoder, input_file, tmp_path) -> None:
        with patch(
            "app.modules.compression.ffmpeg.subprocess.Popen",
            side_effect=FileNotFoundError("No such file or directory: 'ffmpeg'"),
        ):
            with pytest.raises(EncodeFailedError, match="could not start encoder"):
                transcoder.transcode(input_file, str(tmp_path / "out.mp4"))

    def test_empty_input_is_rejected_before_starting(self, transcoder, tmp_path) -> None:
        empty = tmp_path / "empty"
        empty.write_bytes(b"")

        with patch("app.modules.compression.ffmpeg.subprocess.Popen") as popen:
            with pytest.raises(EncodeFailedError, match="missing or empty"):
                transcoder.transcode(str(empty), str(tmp_path / "out.mp4"))

        popen.assert_not_called()

    def test_existing_output_is_rejected_before_starting(self, transcoder, input_file, tmp_path) -> None:
        taken = tmp_path / "out.mp4"
        taken.write_bytes(b"old")

        with patch("app.modules.compression.ffmpeg.subprocess.Popen") as popen:
            with pytest.raises(EncodeFailedError, match="already exists"):
                transcoder.transcode(input_file, str(taken))

        popen.assert_not_called()
        assert taken.read_bytes() == b"old"

    def test_timeout_kills_encoder(self, input_file, tmp_path) -> None:
        transcoder = FFmpegTranscoder(timeout=0.05)
        fake = HangingPopen()

        with patch.object(FFmpegTranscoder, "probe_duration", return_value=None):
            with patch("app.modules.compression.ffmpeg.subprocess.Popen", fake):
                with pytest.raises(EncodeTimeoutError) as exc_info:
                    transcoder.transcode(input_file, str(tmp_path / "out.mp4"))

        assert fake.killed
        assert isinstance(exc_info.value, EncodeFailedError)
        assert "0.05s" in exc_info.value.message

    def test_cancel_event_kills_encoder(self, transcoder, input_file, tmp_path) -> None:
        fake = HangingPopen()
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)

        with patch("app.modules.compression.ffmpeg.subprocess.Popen", fake):
            timer.start()
            try:
                with pytest.raises(EncodeCancelledError) as exc_info:
                    transcoder.transcode(input_file, str(tmp_path / "out.mp4"), cancel_event=cancel)
            finally:
                timer.cancel()

        assert fake.killed
        assert fake.poll() is not None
        assert isinstance(exc_info.value, EncodeFailedError)

    def test_cancelled_before_start_never_launches(self, transcoder, input_file, tmp_path) -> None:
        cancel = threading.Event()
        cancel.set()

        with patch("app.modules.compression.ffmpeg.subprocess.Popen") as popen:
            with pytest.raises(EncodeCancelledError):
                transcoder.transcode(input_file, str(tmp_path / "out.mp4"), cancel_event=cancel)

        popen.assert_not_called()

    def test_unset_cancel_event_does_not_interfere(self, transcoder, input_file, tmp_path) -> None:
        fake = FakePopen(output_bytes=32)

        with patch("app.modules.compression.ffmpeg.subprocess.Popen", fake):
            transcoder.transcode(input_file, str(tmp_path / "out.mp4"), cancel_event=threading.Event())

        assert not fake.killed
        assert (tmp_path / "out.mp4").stat().st_size == 32


class TestProbe:
    def test_probe_duration_reads_format_duration(self) -> None:
        with patch.object(FFmpegTranscoder, "get_video_info", return_value={"format": {"duration": "12.5"}}):
            assert FFmpegTranscoder().probe_duration("in.mov") == 12.5

    def test_probe_failure_gives_unknown_duration(self) -> None:
        with patch.object(FFmpegTranscoder, "get_video_info", return_value={"error": "boom"}):
            assert FFmpegTranscoder().probe_duration("in.mov") is None

    def test_get_video_info_handles_missing_binary(self) -> None:
        with patch(
            "app.modules.compression.ffmpeg.subprocess.run",
            side_effect=FileNotFoundError("ffprobe"),
        ):
            assert "error" in FFmpegTranscoder().get_video_info("in.mov")
