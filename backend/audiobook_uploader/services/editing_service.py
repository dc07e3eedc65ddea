"""Video composition: banner background, looped cooking video and narration.

The heavy lifting is done by the ``ffmpeg`` command line tool driven through a
``filter_complex`` graph. MoviePy is only used to inspect inputs and to locate
the bundled ffmpeg binary when none is configured.
"""

from __future__ import annotations

import logging
import math
import re
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from moviepy import VideoFileClip  # type: ignore[import-untyped]
from moviepy.config import FFMPEG_BINARY  # type: ignore[import-untyped]

from ..core.config import Settings, get_settings
from ..core.errors import AdapterFailureError
from ..schemas.pipeline import OutputVideo

logger = logging.getLogger(__name__)

OUTPUT_WIDTH = 1920
OUTPUT_HEIGHT = 1080
OVERLAY_WIDTH = 540
OVERLAY_HEIGHT = 960
OUTPUT_FPS = 30
AUDIO_BITRATE = "192k"

ProgressCallback = Callable[[str, int], None]

_FRAME_PATTERN = re.compile(r"frame=\s*(\d+)")
_ENCODER_ERROR_MARKERS = (
    "nvcuda.dll",
    "h264_nvenc",
    "h264_qsv",
    "h264_mf",
    "h264_videotoolbox",
    "Error while opening encoder",
    "Operation not permitted",
    "Conversion failed",
)


@dataclass(frozen=True)
class EncoderChoice:
    codec: str
    options: tuple[str, ...]

    @property
    def is_hardware(self) -> bool:
        return self.codec != SOFTWARE_ENCODER.codec


SOFTWARE_ENCODER = EncoderChoice("libx264", ("-preset", "ultrafast", "-crf", "28"))
_WINDOWS_ENCODERS = (
    EncoderChoice("h264_qsv", ("-global_quality", "23", "-preset", "faster")),
    EncoderChoice("h264_nvenc", ("-preset", "fast", "-rc", "vbr", "-cq", "23")),
    EncoderChoice("h264_mf", ("-q:v", "23")),
)
_MAC_ENCODER = EncoderChoice("h264_videotoolbox", ("-q:v", "4"))


@dataclass(frozen=True)
class VideoInfo:
    duration: float
    width: int
    height: int


def build_filter_graph(with_music: bool = False) -> str:
    """Return the ``filter_complex`` graph for the banner layout.

    Inputs: ``[0]`` banner image, ``[1]`` cooking video, ``[2]`` narration and,
    when ``with_music`` is set, ``[3]`` background music at half volume.
    """

    offset_x = (OUTPUT_WIDTH - OVERLAY_WIDTH) // 2
    offset_y = (OUTPUT_HEIGHT - OVERLAY_HEIGHT) // 2
    parts = [
        f"[1:v]scale={OVERLAY_WIDTH}:{OVERLAY_HEIGHT},setsar=1[cooked]",
        f"[0:v]scale={OUTPUT_WIDTH}:{OUTPUT_HEIGHT}[banner]",
        f"[banner][cooked]overlay={offset_x}:{offset_y}[with_video]",
        f"[with_video]fps={OUTPUT_FPS}[video_out]",
    ]
    if with_music:
        parts.extend(
            [
                "[2:a]volume=1.0[voice]",
                "[3:a]volume=0.5[music]",
                "[voice][music]amix=inputs=2:duration=first[audio_out]",
            ]
        )
    return ";".join(parts)


class EditingService:
    """Composes the final 1920x1080 video with ffmpeg."""

    def __init__(self, settings: Settings | None = None, platform_name: str | None = None) -> None:
        self.settings = get_settings() if settings is None else settings
        self.platform_name = platform_name or sys.platform
        self.ffmpeg_binary = self.settings.ffmpeg_binary or FFMPEG_BINARY
        self._encoder: EncoderChoice | None = None

    def compose(
        self,
        banner_image_path: str,
        secondary_video_path: str,
        audio_path: str,
        output_path: str,
        duration_seconds: float,
        *,
        music_path: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> OutputVideo:
        """Render the banner video and return a description of the output file."""

        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")

        info = self.inspect_video(secondary_video_path)
        logger.info(
            "Cooking video info: %.1fs duration, %sx%s", info.duration, info.width, info.height
        )
        if info.duration and duration_seconds > info.duration:
            logger.warning(
                "Narration (%.1fs) is longer than the cooking video (%.1fs); it will be looped %sx",
                duration_seconds,
                info.duration,
                math.ceil(duration_seconds / info.duration),
            )

        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        encoder = self.select_encoder()
        arguments = dict(
            banner_image_path=banner_image_path,
            secondary_video_path=secondary_video_path,
            audio_path=audio_path,
            output_path=output_path,
            duration_seconds=duration_seconds,
            music_path=music_path,
        )

        returncode, stderr_tail = self._run(self.build_command(encoder=encoder, **arguments), duration_seconds, on_progress)
        if returncode != 0 and encoder.is_hardware and self._is_encoder_error(stderr_tail):
            logger.warning("Encoder %s failed, retrying with %s", encoder.codec, SOFTWARE_ENCODER.codec)
            encoder = self._encoder = SOFTWARE_ENCODER
            returncode, stderr_tail = self._run(
                self.build_command(encoder=encoder, **arguments), duration_seconds, on_progress
            )

        if returncode != 0:
            detail = "\n".join(stderr_tail)
            raise AdapterFailureError(f"FFmpeg process exited with code {returncode}", detail=detail)

        output = Path(output_path)
        file_size = output.stat().st_size if output.exists() else 0
        kbps = int(file_size * 8 / duration_seconds / 1000) if file_size else 0
        if on_progress is not None:
            on_progress("FFmpeg encoding completed", 100)
        logger.info("Banner video composition completed: %s (%s)", output_path, encoder.codec)
        return OutputVideo(
            path=str(output),
            width=OUTPUT_WIDTH,
            height=OUTPUT_HEIGHT,
            duration=duration_seconds,
            file_size=file_size,
            bitrate=f"{kbps}k",
            codec=encoder.codec,
        )

    def build_command(
        self,
        *,
        encoder: EncoderChoice,
        banner_image_path: str,
        secondary_video_path: str,
        audio_path: str,
        output_path: str,
        duration_seconds: float,
        music_path: str | None = None,
    ) -> list[str]:
        with_music = bool(music_path)
        command = [
            self.ffmpeg_binary,
            "-loop", "1",
            "-i", banner_image_path,
            "-stream_loop", "-1",
            "-i", secondary_video_path,
            "-i", audio_path,
        ]
        if with_music:
            command += ["-stream_loop", "-1", "-i", str(music_path)]
        command += [
            "-filter_complex", build_filter_graph(with_music),
            "-map", "[video_out]",
            "-map", "[audio_out]" if with_music else "2:a:0",
            "-c:v", encoder.codec,
            *encoder.options,
            "-c:a", "aac",
            "-b:a", AUDIO_BITRATE,
            "-t", f"{duration_seconds:g}",
            "-y",
            output_path,
        ]
        return command

    def select_encoder(self) -> EncoderChoice:
        """Pick a hardware encoder for the host platform, falling back to libx264."""

        if self._encoder is not None:
            return self._encoder

        if self.platform_name == "darwin":
            self._encoder = _MAC_ENCODER
        elif self.platform_name == "win32":
            available = self._list_encoders()
            self._encoder = next(
                (choice for choice in _WINDOWS_ENCODERS if choice.codec in available), SOFTWARE_ENCODER
            )
        else:
            self._encoder = SOFTWARE_ENCODER

        if self._encoder is SOFTWARE_ENCODER:
            logger.info("Using %s software encoding", SOFTWARE_ENCODER.codec)
        else:
            logger.info("Using hardware encoder %s", self._encoder.codec)
        return self._encoder

    def inspect_video(self, video_path: str) -> VideoInfo:
        clip: VideoFileClip | None = None
        try:
            clip = VideoFileClip(video_path, audio=False)
            width, height = clip.size
            return VideoInfo(duration=float(clip.duration or 0.0), width=int(width), height=int(height))
        except Exception as exc:
            raise AdapterFailureError(f"Unable to read cooking video {video_path}: {exc}") from exc
        finally:
            if clip is not None:
                clip.close()

    def _list_encoders(self) -> str:
        try:
            completed = subprocess.run(
                [self.ffmpeg_binary, "-hide_banner", "-encoders"],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Could not detect available encoders: %s", exc)
            return ""
        return completed.stdout + completed.stderr

    def _spawn(self, command: list[str]) -> subprocess.Popen[str]:
        return subprocess.Popen(
            command,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )

    def _run(
        self,
        command: list[str],
        duration_seconds: float,
        on_progress: ProgressCallback | None,
    ) -> tuple[int, list[str]]:
        logger.debug("Executing FFmpeg: %s", " ".join(command))
        started = time.monotonic()
        try:
            process = self._spawn(command)
        except OSError as exc:
            raise AdapterFailureError(f"Unable to start ffmpeg ({self.ffmpeg_binary}): {exc}") from exc

        timed_out = threading.Event()

        def _kill() -> None:
            timed_out.set()
            process.kill()

        watchdog = threading.Timer(self.settings.ffmpeg_timeout, _kill)
        watchdog.daemon = True
        watchdog.start()
        try:
            tail = self._consume_stderr(process.stderr or [], duration_seconds, on_progress)
            returncode = process.wait()
        finally:
            watchdog.cancel()

        if timed_out.is_set():
            raise AdapterFailureError(
                f"FFmpeg did not finish within {self.settings.ffmpeg_timeout:g}s", detail="\n".join(tail)
            )
        logger.info("FFmpeg finished with code %s in %.0fs", returncode, time.monotonic() - started)
        return returncode, tail

    def _consume_stderr(
        self,
        stream: Iterable[str],
        duration_seconds: float,
        on_progress: ProgressCallback | None,
    ) -> list[str]:
        tail: deque[str] = deque(maxlen=40)
        total_frames = max(1, int(duration_seconds * OUTPUT_FPS))
        last_progress = 0
        for line in stream:
            line = line.rstrip()
            if not line:
                continue
            tail.append(line)
            match = _FRAME_PATTERN.search(line)
            if match is None or on_progress is None:
                continue
            progress = min(99, round(int(match.group(1)) / total_frames * 100))
            if progress > last_progress:
                last_progress = progress
                on_progress(f"Encoding video: {progress}%", progress)
        return list(tail)

    @staticmethod
    def _is_encoder_error(stderr_tail: list[str]) -> bool:
        text = "\n".join(stderr_tail)
        return any(marker in text for marker in _ENCODER_ERROR_MARKERS)
