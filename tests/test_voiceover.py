"""Tests for text chunking and the Vbee voiceover adapter."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import numpy as np
import pytest
from moviepy import AudioClip  # type: ignore[import-untyped]

from audiobook_uploader.core.errors import (
    AdapterFailureError,
    AdapterTimeoutError,
    ConfigurationError,
    UnexpectedResponseError,
)
from audiobook_uploader.services.voiceover_service import VoiceoverService, split_text_into_chunks

from conftest import make_settings

AUDIO_URL = "https://cdn.vbee.test/audio"


def _tone_mp3(path: Path, duration: float) -> Path:
    def frame(t):
        return np.array([np.sin(440 * 2 * np.pi * t)] * 2).T.copy(order="C")

    clip = AudioClip(frame, duration=duration, fps=44100)
    clip.write_audiofile(str(path), fps=44100, logger=None)
    clip.close()
    return path


class TestSplitTextIntoChunks:
    def test_short_text_is_one_chunk(self):
        chunks = split_text_into_chunks("Xin chào.", 2000)
        assert [chunk.text for chunk in chunks] == ["Xin chào."]
        assert chunks[0].index == 0

    def test_joining_chunks_reproduces_text(self):
        text = "Câu một. Câu hai! Câu ba? Câu bốn... Hết."
        chunks = split_text_into_chunks(text, 12)
        assert "".join(chunk.text for chunk in chunks) == text

    def test_no_chunk_exceeds_limit(self):
        text = "Một câu ngắn. " * 50
        chunks = split_text_into_chunks(text, 40)
        assert len(chunks) > 1
        assert all(len(chunk.text) <= 40 for chunk in chunks)

    def test_indexes_are_sequential(self):
        chunks = split_text_into_chunks("A. B. C. D. E. F.", 5)
        assert [chunk.index for chunk in chunks] == list(range(len(chunks)))

    def test_oversized_sentence_splits_on_whitespace(self):
        sentence = " ".join(["word"] * 30) + "."
        chunks = split_text_into_chunks(sentence, 25)
        assert "".join(chunk.text for chunk in chunks) == sentence
        assert all(len(chunk.text) <= 25 for chunk in chunks)
        assert all(chunk.text.endswith(" ") for chunk in chunks[:-1])

    def test_oversized_sentence_without_whitespace_splits_at_limit(self):
        chunks = split_text_into_chunks("x" * 25, 10)
        assert [len(chunk.text) for chunk in chunks] == [10, 10, 5]

    def test_rejects_non_positive_limit(self):
        with pytest.raises(ValueError):
            split_text_into_chunks("abc", 0)


class VbeeStub:
    """Minimal in-memory Vbee endpoint."""

    def __init__(self, states: list[str] | None = None, submit_status: int = 1, audio: list[bytes] | None = None):
        self.states = list(states or ["PROCESSING", "SUCCESS"])
        self.submit_status = submit_status
        self.audio = list(audio or [])
        self.submitted: list[dict] = []
        self.requests: list[httpx.Request] = []
        self.polls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(request)
        if request.method == "POST":
            body = json.loads(request.content)
            self.submitted.append(body)
            if self.submit_status != 1:
                return httpx.Response(200, json={"status": 0, "error_message": "invalid app_id"})
            return httpx.Response(
                200, json={"status": 1, "result": {"request_id": f"req-{len(self.submitted)}"}}
            )
        if url.startswith(AUDIO_URL):
            content = self.audio.pop(0) if self.audio else b"ID3" + b"\x00" * 512
            return httpx.Response(200, content=content)
        self.polls += 1
        state = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        result = {"status": state, "progress": 50}
        if state == "SUCCESS":
            result["audio_link"] = f"{AUDIO_URL}/{url.rsplit('/', 1)[-1]}.mp3"
        if state == "FAILURE":
            result["error_message"] = "voice unavailable"
        return httpx.Response(200, json={"status": 1, "result": result})


def _service(stub: VbeeStub, monkeypatch, **overrides) -> VoiceoverService:
    monkeypatch.setattr(VoiceoverService, "_read_duration", lambda self, path, size: 12.5)
    client = httpx.Client(transport=httpx.MockTransport(stub.handler))
    return VoiceoverService(make_settings(**overrides), client=client)


class TestVoiceoverService:
    def test_single_chunk_synthesis(self, tmp_path, monkeypatch):
        stub = VbeeStub()
        service = _service(stub, monkeypatch)
        output = tmp_path / "voiceover.mp3"

        audio = service.synthesize("Xin chào", None, str(output))

        assert output.exists()
        assert audio.path == str(output)
        assert audio.duration == 12.5
        assert audio.format == "mp3"
        assert audio.file_size == output.stat().st_size
        assert stub.submitted[0]["voice_code"] == "n_hanoi_female_nguyetnga2_book_vc"
        assert stub.submitted[0]["app_id"] == "vbee-test-app"
        assert stub.submitted[0]["response_type"] == "indirect"
        assert list(tmp_path.glob("chunk_*")) == []

    def test_explicit_voice_is_forwarded(self, tmp_path, monkeypatch):
        stub = VbeeStub(["SUCCESS"])
        service = _service(stub, monkeypatch)
        service.synthesize("Xin chào", "hn_male_manhdung_news_48k-fhg", str(tmp_path / "v.mp3"))
        assert stub.submitted[0]["voice_code"] == "hn_male_manhdung_news_48k-fhg"

    def test_multi_chunk_output_is_concatenated(self, tmp_path):
        clips = [_tone_mp3(tmp_path / f"tone_{index}.mp3", 0.5) for index in range(3)]
        stub = VbeeStub(["SUCCESS"], audio=[clip.read_bytes() for clip in clips])
        client = httpx.Client(transport=httpx.MockTransport(stub.handler))
        service = VoiceoverService(make_settings(vbee_max_chunk_size=20), client=client)
        output = tmp_path / "out" / "voiceover.mp3"

        audio = service.synthesize("Câu thứ nhất. Câu thứ hai. Câu thứ ba.", None, str(output))

        assert [body["input_text"] for body in stub.submitted] == [
            "Câu thứ nhất.",
            "Câu thứ hai.",
            "Câu thứ ba.",
        ]
        assert output.exists()
        assert audio.duration == pytest.approx(1.5, abs=0.25)
        assert list(output.parent.glob("chunk_*")) == []

    def test_api_key_is_not_sent_to_audio_host(self, tmp_path, monkeypatch):
        stub = VbeeStub()
        service = _service(stub, monkeypatch)

        service.synthesize("Xin chào", None, str(tmp_path / "v.mp3"))

        api_calls = [request for request in stub.requests if not str(request.url).startswith(AUDIO_URL)]
        downloads = [request for request in stub.requests if str(request.url).startswith(AUDIO_URL)]
        assert [request.method for request in api_calls] == ["POST", "GET", "GET"]
        assert all(request.headers["Authorization"] == "Bearer vbee-test-key" for request in api_calls)
        assert len(downloads) == 1
        assert "Authorization" not in downloads[0].headers

    def test_prechunked_text_is_sent_as_given(self, tmp_path, monkeypatch):
        stub = VbeeStub(["SUCCESS"])
        service = _service(stub, monkeypatch)
        monkeypatch.setattr(
            VoiceoverService, "_concatenate_chunks", lambda self, paths, target: target.write_bytes(b"ID3")
        )

        service.synthesize_chunks(["Phần một, dài.", "  ", "Phần hai."], None, str(tmp_path / "v.mp3"))

        assert [body["input_text"] for body in stub.submitted] == ["Phần một, dài.", "Phần hai."]

    def test_prechunked_text_rejects_oversized_chunk(self, tmp_path):
        service = VoiceoverService(make_settings(vbee_max_chunk_size=10))
        with pytest.raises(ValueError, match=r"chunk\(s\) 2 exceed"):
            service.synthesize_chunks(["ngắn", "x" * 11], None, str(tmp_path / "v.mp3"))

    def test_prechunked_text_rejects_empty_list(self, tmp_path):
        with pytest.raises(ValueError):
            VoiceoverService(make_settings()).synthesize_chunks(["", " "], None, str(tmp_path / "v.mp3"))

    def test_poll_exhaustion_times_out(self, tmp_path, monkeypatch):
        stub = VbeeStub(["PROCESSING"])
        service = _service(stub, monkeypatch)
        with pytest.raises(AdapterTimeoutError, match="req-1"):
            service.synthesize("Xin chào", None, str(tmp_path / "v.mp3"))
        assert stub.polls == 3

    def test_failure_state_raises(self, tmp_path, monkeypatch):
        stub = VbeeStub(["FAILURE"])
        service = _service(stub, monkeypatch)
        with pytest.raises(AdapterFailureError, match="voice unavailable"):
            service.synthesize("Xin chào", None, str(tmp_path / "v.mp3"))

    def test_rejected_submit_raises(self, tmp_path, monkeypatch):
        stub = VbeeStub(submit_status=0)
        service = _service(stub, monkeypatch)
        with pytest.raises(AdapterFailureError, match="invalid app_id"):
            service.synthesize("Xin chào", None, str(tmp_path / "v.mp3"))

    def test_missing_request_id_is_unexpected(self, tmp_path, monkeypatch):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": 1, "result": {}})

        monkeypatch.setattr(VoiceoverService, "_read_duration", lambda self, path, size: 1.0)
        service = VoiceoverService(make_settings(), client=httpx.Client(transport=httpx.MockTransport(handler)))
        with pytest.raises(UnexpectedResponseError):
            service.synthesize("Xin chào", None, str(tmp_path / "v.mp3"))

    def test_missing_credentials(self, tmp_path):
        service = VoiceoverService(make_settings(vbee_api_key=None))
        with pytest.raises(ConfigurationError):
            service.synthesize("Xin chào", None, str(tmp_path / "v.mp3"))

    def test_empty_text_is_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            VoiceoverService(make_settings()).synthesize("   ", None, str(tmp_path / "v.mp3"))

    def test_describe_existing_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(VoiceoverService, "_read_duration", lambda self, path, size: 3.0)
        existing = tmp_path / "voiceover.mp3"
        existing.write_bytes(b"\x00" * 256)
        audio = VoiceoverService(make_settings()).describe(str(existing))
        assert audio.duration == 3.0
        assert audio.file_size == 256


class TestProviderHelpers:
    def test_voices_are_listed(self):
        voices = VoiceoverService(make_settings()).list_voices()
        assert [voice.code for voice in voices][0] == "n_hanoi_female_nguyetnga2_book_vc"
        assert {voice.language for voice in voices} == {"vi-VN"}

    def test_connection_check_submits_test_text(self, monkeypatch):
        stub = VbeeStub()
        service = _service(stub, monkeypatch)
        assert service.validate_connection() is True
        assert stub.submitted[0]["input_text"] == "Test"

    def test_connection_check_reports_rejection(self, monkeypatch):
        service = _service(VbeeStub(submit_status=0), monkeypatch)
        assert service.validate_connection() is False

    def test_connection_check_without_credentials(self):
        assert VoiceoverService(make_settings(vbee_app_id=None)).validate_connection() is False

    def test_close_releases_client(self, monkeypatch):
        service = _service(VbeeStub(), monkeypatch)
        client = service.client
        service.close()
        assert client.is_closed
