"""FFmpeg transcoding for uploaded videos.

Runs the encoder as a blocking subprocess; callers that must not block an
event loop run ``transcode`` on a worker thread.
"""

import json
import logging
import os
import re
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional

from app.modules.compression.errors import (
    EncodeCancelledError,
    EncodeFailedError,
    EncodeTimeoutError,
)
from app.modules.compression.models import DEFAULT_PROFILE, EncodeProfile

logger = logging.getLogger(__name__)

# Progress lines look like: frame=  120 fps= 30 ... time=00:00:04.00 bitrate=...
TIME_REGEX = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")

# Number of diagnostic lines kept for the failure reason
STDERR_TAIL_LINES = 15

# How often the cancel watcher checks whether the encoder has exited
CANCEL_POLL_SECONDS = 0.1


@dataclass
class TranscodeProgress:
    """Encoder position within the input."""
    seconds: float
    percent: Optional[float] = None


def parse_progress_time(line: str) -> Optional[float]:
    """Extract the ``time=`` position from an ffmpeg stats line, in seconds."""
    match = TIME_REGEX.search(line)
    if not match:
        return None
    h, m, s = match.groups()
    return int(h) * 3600 + int(m) * 60 + float(s)


class FFmpegTranscoder:
    """FFmpeg-based video transcoder."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        timeout: Optional[float] = None,
    ):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            ffprobe_path: Path to ffprobe binary
            timeout: Maximum encoder runtime in seconds, None for no limit
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def get_video_info(self, input_path: str) -> dict:
        """Get video information using ffprobe.

        Returns:
            Parsed ffprobe output, or ``{"error": ...}`` if probing failed
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=30)
            return json.loads(result.stdout)
        except (subprocess.SubprocessError, json.JSONDecodeError, OSError) as e:
            return {"error": str(e)}

    def probe_duration(self, input_path: str) -> Optional[float]:
        """Duration of the input in seconds, or None if unknown."""
        info = self.get_video_info(input_path)
        try:
            duration = float(info["format"]["duration"])
        except (KeyError, TypeError, ValueError):
            return None
        return duration if duration > 0 else None

    def build_transcode_command(
        self,
        input_path: str,
        output_path: str,
        profile: EncodeProfile = DEFAULT_PROFILE,
    ) -> list[str]:
        """Build the FFmpeg command for a profile.

        ``-n`` makes ffmpeg refuse to overwrite an existing output file.
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-n",
            "-i", input_path,
            # Video settings
            "-vf", profile.scale_filter,
            "-c:v", profile.video_codec,
            "-crf", str(profile.crf),
            "-preset", profile.preset,
            # Audio settings
            "-c:a", profile.audio_codec,
            "-b:a", profile.audio_bitrate,
        ]

        if profile.faststart:
            cmd.extend(["-movflags", "+faststart"])

        cmd.append(output_path)
        return cmd

    def transcode(
        self,
        input_path: str,
        output_path: str,
        profile: EncodeProfile = DEFAULT_PROFILE,
        progress_callback: Optional[Callable[[TranscodeProgress], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Encode ``input_path`` into ``output_path``.

        Returns once the encoder exits successfully and the output exists.
        On failure the output may be partially written; removing it is the
        caller's job.

        Setting ``cancel_event`` kills the encoder; the call returns only
        after the process has exited, so the caller may then remove the
        output safely.

        Raises:
            EncodeFailedError: the input is unusable, the output path is
                taken, or the encoder failed
            EncodeTimeoutError: the encoder ran longer than ``timeout``
            EncodeCancelledError: ``cancel_event`` was set
        """
        if not os.path.isfile(input_path) or os.path.getsize(input_path) == 0:
            raise EncodeFailedError("input file is missing or empty")
        if os.path.exists(output_path):
            raise EncodeFailedError(f"output path already exists: {output_path}")

        if cancel_event is not None and cancel_event.is_set():
            raise EncodeCancelledError()

        duration = self.probe_duration(input_path)
        cmd = self.build_transcode_command(input_path, output_path, profile)
        logger.info(f"FFmpeg command: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                universal_newlines=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            raise EncodeFailedError(f"could not start encoder: {e}") from e

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            process.kill()

        timer = None
        if self.timeout is not None:
            timer = threading.Timer(self.timeout, _kill)
            timer.daemon = True
            timer.start()

        finished = threading.Event()
        if cancel_event is not None:
            threading.Thread(
                target=_kill_on_cancel,
                args=(process, cancel_event, finished),
                daemon=True,
            ).start()

        tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        last_logged_percent = -10.0
        try:
            # Universal newlines also split ffmpeg's carriage-return stats lines
            for line in process.stderr:
                line = line.strip()
                if not line:
                    continue

                seconds = parse_progress_time(line)
                if seconds is None:
                    tail.append(line)
                    continue

                percent = None
                if duration:
                    percent = min(100.0, seconds / duration * 100)
                    if percent - last_logged_percent >= 10:
                        logger.info(f"FFmpeg progress: {percent:.1f}%")
                        last_logged_percent = percent
                else:
                    logger.debug(f"FFmpeg progress: {seconds:.1f}s")

                if progress_callback:
                    progress_callback(TranscodeProgress(seconds=seconds, percent=percent))

            process.wait()
        finally:
            finished.set()
            if timer is not None:
                timer.cancel()
            if process.poll() is None:
                process.kill()
                process.wait()
            process.stderr.close()

        if timed_out.is_set():
            raise EncodeTimeoutError(self.timeout)

        if cancel_event is not None and cancel_event.is_set():
            raise EncodeCancelledError()

        if process.returncode != 0:
            reason = "\n".join(tail) or f"ffmpeg exited with code {process.returncode}"
            raise EncodeFailedError(reason)

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise EncodeFailedError("encoder finished without producing output")


def _kill_on_cancel(
    process: subprocess.Popen,
    cancel_event: threading.Event,
    finished: threading.Event,
) -> None:
    while not finished.is_set():
        if cancel_event.wait(CANCEL_POLL_SECONDS):
            logger.warning("Encoding cancelled, killing ffmpeg")
            process.kill()
            return
