"""Douyin video download through a public video-data API."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from ..core.config import Settings, get_settings
from ..core.errors import AdapterFailureError, InputValidationError, UnexpectedResponseError
from ..schemas.pipeline import DownloadedVideo

logger = logging.getLogger(__name__)

DOWNLOAD_FILENAME = "douyin_video.mp4"

_DOUYIN_HOST = re.compile(r"douyin\.com|dy\.zzz\.com\.cn|vt\.tiktok\.com|v\.douyin\.com")
_VIDEO_ID_PATTERNS = (
    re.compile(r"douyin\.com/video/(\d+)"),
    re.compile(r"dy\.zzz\.com\.cn/(\w+)"),
    re.compile(r"vt\.tiktok\.com/(\w+)"),
    re.compile(r"v\.douyin\.com/(\w+)"),
)
_URL_IN_TEXT = re.compile(r"https?://[^\s<>\"']+")
_VIDEO_URL_KEYS = ("nwm_video_url_HQ", "nwm_video_url", "wm_video_url_HQ", "wm_video_url")
_DOWNLOAD_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Referer": "https://www.douyin.com/",
    "Accept": "video/mp4,video/*;q=0.9,*/*;q=0.8",
    "Range": "bytes=0-",
}


def is_valid_douyin_url(url: str) -> bool:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    return bool(_DOUYIN_HOST.search(url))


def extract_douyin_video_id(url: str) -> str | None:
    for pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def extract_douyin_url_from_text(text: str) -> str | None:
    """Pull the first Douyin link out of text pasted from the share sheet."""

    for candidate in _URL_IN_TEXT.findall(text):
        candidate = candidate.rstrip(".,;!?)")
        if is_valid_douyin_url(candidate):
            return candidate
    return None


class DouyinService:
    """Resolves a Douyin share link to a playable mp4 and saves it locally."""

    def __init__(self, settings: Settings | None = None, client: httpx.Client | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.settings.douyin_request_timeout, follow_redirects=True)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def download(self, url: str, output_dir: str) -> DownloadedVideo:
        share_url = extract_douyin_url_from_text(url) or url.strip()
        if not is_valid_douyin_url(share_url):
            raise InputValidationError(f"Invalid Douyin URL: {url}")

        logger.info("Fetching Douyin video data: %s", share_url)
        try:
            response = self.client.get(self.settings.douyin_api_url, params={"url": share_url, "minimal": "true"})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise AdapterFailureError(f"Douyin API request failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise UnexpectedResponseError("Douyin API returned a non-JSON response") from exc
        if not isinstance(payload, dict) or payload.get("code") != 200:
            message = payload.get("message") if isinstance(payload, dict) else None
            raise AdapterFailureError(f"Douyin API error: {message or 'unexpected response'}")

        data = payload.get("data") or {}
        video_url = self._pick_video_url(data.get("video_data") or {})
        if not video_url:
            raise UnexpectedResponseError("Douyin API response did not include a video URL")

        video_id = str(data.get("aweme_id") or extract_douyin_video_id(share_url) or "unknown")
        title = str(data.get("desc") or f"Douyin video {video_id}")

        target = Path(output_dir) / DOWNLOAD_FILENAME
        target.parent.mkdir(parents=True, exist_ok=True)
        self._save(video_url, target)

        file_size = target.stat().st_size
        logger.info("Douyin video saved to %s (%s bytes)", target, file_size)
        return DownloadedVideo(
            video_id=video_id,
            title=title,
            url=share_url,
            local_path=str(target),
            file_size=file_size,
        )

    def _save(self, video_url: str, target: Path) -> None:
        try:
            with self.client.stream("GET", video_url, headers=_DOWNLOAD_HEADERS) as response:
                if response.status_code not in (200, 206):
                    raise AdapterFailureError(f"Douyin video download failed with HTTP {response.status_code}")
                with target.open("wb") as file_handle:
                    for chunk in response.iter_bytes():
                        file_handle.write(chunk)
        except httpx.HTTPError as exc:
            target.unlink(missing_ok=True)
            raise AdapterFailureError(f"Douyin video download failed: {exc}") from exc
        if target.stat().st_size == 0:
            target.unlink(missing_ok=True)
            raise AdapterFailureError("Douyin video download returned an empty file")

    @staticmethod
    def _pick_video_url(video_data: dict[str, Any]) -> str | None:
        for key in _VIDEO_URL_KEYS:
            value = video_data.get(key)
            if isinstance(value, str) and value:
                return value
        return None
