"""Voiceover synthesis backed by the Vbee text-to-speech API.

Vbee works asynchronously: a request is submitted per text chunk, its status
is polled until it succeeds or fails, and the resulting audio link is only
valid for a few minutes, so it is downloaded right away. Multi-chunk output
is stitched into a single file with MoviePy.
"""

from __future__ import annotations

import logging
import re
import shutil
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from moviepy import AudioFileClip, concatenate_audioclips  # type: ignore[import-untyped]

from ..core.config import Settings, get_settings
from ..core.errors import (
    AdapterFailureError,
    AdapterTimeoutError,
    ConfigurationError,
    UnexpectedResponseError,
)
from ..schemas.pipeline import AudioFile, VoiceOption

logger = logging.getLogger(__name__)

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])(?![.!?])")
_ASSUMED_BITRATE_BPS = 128_000


@dataclass(frozen=True)
class TextChunk:
    text: str
    index: int


def split_text_into_chunks(text: str, max_chunk_size: int = 2000) -> list[TextChunk]:
    """Split text after sentence terminators so that no chunk exceeds the limit.

    Chunks keep every character of the input, including surrounding
    whitespace, so ``"".join(c.text for c in chunks) == text``. A sentence that
    is longer than the limit on its own is split at the last whitespace that
    fits, or at the limit when it has none.
    """

    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")

    sentences = [sentence for sentence in _SENTENCE_BOUNDARY.split(text) if sentence]
    pieces: list[str] = []
    current = ""

    for sentence in sentences:
        if len(current) + len(sentence) <= max_chunk_size:
            current += sentence
            continue
        if current:
            pieces.append(current)
            current = ""
        if len(sentence) <= max_chunk_size:
            current = sentence
            continue
        oversized = _hard_split(sentence, max_chunk_size)
        pieces.extend(oversized[:-1])
        current = oversized[-1]

    if current:
        pieces.append(current)

    return [TextChunk(text=piece, index=index) for index, piece in enumerate(pieces)]


def _hard_split(sentence: str, limit: int) -> list[str]:
    pieces: list[str] = []
    remaining = sentence
    while len(remaining) > limit:
        window = remaining[:limit]
        cut = max(window.rfind(" "), window.rfind("\n"), window.rfind("\t"))
        cut = cut + 1 if cut > 0 else limit
        pieces.append(remaining[:cut])
        remaining = remaining[cut:]
    if remaining:
        pieces.append(remaining)
    return pieces


AVAILABLE_VOICES: tuple[VoiceOption, ...] = (
    VoiceOption(code="n_hanoi_female_nguyetnga2_book_vc", name="Nguyệt Nga (Nữ - Audiobook)", language="vi-VN"),
    VoiceOption(code="hn_female_ngochuyen_full_48k-fhg", name="Ngọc Huyền (Nữ)", language="vi-VN"),
    VoiceOption(code="hn_male_anh_full_48k-fhg", name="Anh (Nam)", language="vi-VN"),
)


class VoiceoverService:
    """Converts story text into a single narrated mp3 file.

    The Vbee key is sent only on submit and poll requests; audio links are
    fetched without it.
    """

    def __init__(self, settings: Settings | None = None, client: httpx.Client | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.settings.vbee_request_timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def synthesize(self, text: str, voice_id: str | None, output_path: str) -> AudioFile:
        """Synthesize ``text`` into ``output_path`` and describe the resulting file."""

        if not text.strip():
            raise ValueError("Cannot synthesize an empty story text")
        chunks = split_text_into_chunks(text, self.settings.vbee_max_chunk_size)
        logger.info("Converting text to speech: %s characters", len(text))
        return self._synthesize_pieces([chunk.text for chunk in chunks], voice_id, output_path)

    def synthesize_chunks(self, chunks: list[str], voice_id: str | None, output_path: str) -> AudioFile:
        """Synthesize narration the user has already split, one request per chunk."""

        if not any(chunk.strip() for chunk in chunks):
            raise ValueError("Cannot synthesize an empty list of text chunks")
        too_long = [index + 1 for index, chunk in enumerate(chunks) if len(chunk.strip()) > self.settings.vbee_max_chunk_size]
        if too_long:
            raise ValueError(
                f"Text chunk(s) {', '.join(map(str, too_long))} exceed {self.settings.vbee_max_chunk_size} characters"
            )
        return self._synthesize_pieces(chunks, voice_id, output_path)

    def list_voices(self) -> list[VoiceOption]:
        return [voice.model_copy() for voice in AVAILABLE_VOICES]

    def validate_connection(self) -> bool:
        """Submit a tiny request to confirm the credentials are accepted."""

        if not self.settings.vbee_api_key or not self.settings.vbee_app_id:
            logger.error("VBEE_API_KEY and VBEE_APP_ID not configured")
            return False
        try:
            request_id = self._submit("Test", self.settings.vbee_default_voice)
        except (AdapterFailureError, UnexpectedResponseError) as exc:
            logger.error("Vbee API connection failed: %s", exc)
            return False
        logger.info("Vbee API connection successful (request: %s)", request_id)
        return True

    def describe(self, audio_path: str) -> AudioFile:
        """Describe an existing voiceover file, used when a run resumes."""

        path = Path(audio_path)
        file_size = path.stat().st_size
        return AudioFile(
            path=str(path),
            duration=self._read_duration(path, file_size),
            sample_rate=48000,
            channels=1,
            format="mp3",
            file_size=file_size,
        )

    def _synthesize_pieces(self, pieces: list[str], voice_id: str | None, output_path: str) -> AudioFile:
        if not self.settings.vbee_api_key or not self.settings.vbee_app_id:
            raise ConfigurationError("VBEE_API_KEY and VBEE_APP_ID are required for voiceover generation")

        voice = voice_id or self.settings.vbee_default_voice
        target = Path(output_path)
        target.parent.mkdir(parents=True, exist_ok=True)

        texts = [piece.strip() for piece in pieces if piece.strip()]
        logger.info("Synthesizing %s chunk(s)", len(texts), extra={"voice": voice})

        chunk_paths: list[Path] = []
        run_token = uuid.uuid4().hex[:8]
        try:
            for index, text in enumerate(texts):
                logger.info("Converting chunk %s/%s", index + 1, len(texts))
                request_id = self._submit(text, voice)
                audio_url = self._poll(request_id)
                chunk_path = target.parent / f"chunk_{run_token}_{index}.mp3"
                chunk_paths.append(chunk_path)
                self._download(audio_url, chunk_path)

            if len(chunk_paths) == 1:
                shutil.move(str(chunk_paths[0]), target)
            else:
                self._concatenate_chunks(chunk_paths, target)
        finally:
            for chunk_path in chunk_paths:
                chunk_path.unlink(missing_ok=True)

        file_size = target.stat().st_size
        duration = self._read_duration(target, file_size)
        logger.info("Audio saved to %s (%s bytes, %.1fs)", target, file_size, duration)
        return AudioFile(
            path=str(target),
            duration=duration,
            sample_rate=48000,
            channels=1,
            format="mp3",
            file_size=file_size,
        )

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.settings.vbee_api_key}"}

    def _submit(self, text: str, voice: str) -> str:
        body = {
            "app_id": self.settings.vbee_app_id,
            "response_type": "indirect",
            "callback_url": self.settings.vbee_callback_url,
            "input_text": text,
            "voice_code": voice,
            "audio_type": "mp3",
            "bitrate": 128,
            "speed_rate": 1.0,
        }
        logger.debug("Submitting TTS request for %s characters", len(text))
        try:
            response = self.client.post(self.settings.vbee_api_url, json=body, headers=self._auth_headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AdapterFailureError(f"Vbee submit request failed: {exc}") from exc

        payload = self._json(response)
        if payload.get("status") != 1:
            raise AdapterFailureError(f"Vbee API error: {payload.get('error_message') or 'unknown submit error'}")
        request_id = (payload.get("result") or {}).get("request_id")
        if not request_id:
            raise UnexpectedResponseError("Vbee response did not include a request_id")
        logger.info("TTS request submitted: %s", request_id)
        return str(request_id)

    def _poll(self, request_id: str) -> str:
        attempts = self.settings.vbee_poll_attempts
        interval = self.settings.vbee_poll_interval
        started = time.monotonic()
        status_url = f"{self.settings.vbee_api_url.rstrip('/')}/{request_id}"

        for attempt in range(1, attempts + 1):
            try:
                response = self.client.get(status_url, headers=self._auth_headers())
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning("Error polling TTS status (attempt %s/%s): %s", attempt, attempts, exc)
                time.sleep(interval)
                continue

            payload = self._json(response)
            if payload.get("status") != 1:
                raise AdapterFailureError(f"Vbee API error: {payload.get('error_message') or 'unknown poll error'}")

            result = payload.get("result") or {}
            state = str(result.get("status", "")).upper()
            if state == "SUCCESS":
                audio_link = result.get("audio_link")
                if not audio_link:
                    raise UnexpectedResponseError(f"Vbee request {request_id} succeeded without an audio_link")
                logger.info(
                    "TTS conversion completed: %s (elapsed %.0fs)", request_id, time.monotonic() - started
                )
                return str(audio_link)
            if state == "FAILURE":
                reason = result.get("error_message") or "unknown reason"
                raise AdapterFailureError(f"TTS conversion failed for request {request_id}: {reason}")

            logger.debug("TTS conversion in progress (%s%%)", result.get("progress", 0))
            time.sleep(interval)

        raise AdapterTimeoutError(
            f"TTS conversion timeout for request {request_id} (no result after {attempts} polls)"
        )

    def _download(self, url: str, destination: Path) -> None:
        try:
            with self.client.stream("GET", url) as response:
                response.raise_for_status()
                with destination.open("wb") as file_handle:
                    for chunk in response.iter_bytes():
                        file_handle.write(chunk)
        except httpx.HTTPError as exc:
            raise AdapterFailureError(f"Failed to download synthesized audio from {url}: {exc}") from exc
        logger.debug("Audio chunk downloaded: %s (%s bytes)", destination.name, destination.stat().st_size)

    def _concatenate_chunks(self, chunk_paths: list[Path], target: Path) -> None:
        logger.info("Concatenating %s audio chunks", len(chunk_paths))
        clips = [AudioFileClip(str(path)) for path in chunk_paths]
        try:
            combined = concatenate_audioclips(clips)
            combined.write_audiofile(str(target), bitrate="128k", logger=None)
            combined.close()
        finally:
            for clip in clips:
                clip.close()

    def _read_duration(self, path: Path, file_size: int) -> float:
        try:
            clip = AudioFileClip(str(path))
        except Exception as exc:
            logger.warning("Unable to read audio duration for %s, estimating: %s", path.name, exc)
            return round(file_size * 8 / _ASSUMED_BITRATE_BPS, 2)
        try:
            return float(clip.duration or 0.0)
        finally:
            clip.close()

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise UnexpectedResponseError("Vbee returned a non-JSON response") from exc
        if not isinstance(payload, dict):
            raise UnexpectedResponseError("Vbee returned an unexpected response shape")
        return payload
