"""YouTube upload via the Data API resumable upload protocol."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import parse_qs, urlparse

import httpx

from ..core.config import Settings, get_settings
from ..core.errors import (
    UploadAuthExpiredError,
    UploadError,
    UploadQuotaExceededError,
    UnexpectedResponseError,
)
from ..schemas.pipeline import UploadResult, VideoMetadata, Visibility

logger = logging.getLogger(__name__)

_UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024
_QUOTA_REASONS = {"quotaExceeded", "rateLimitExceeded", "userRateLimitExceeded", "uploadLimitExceeded"}
_TITLE_LIMIT = 100
_DESCRIPTION_PREVIEW = 500

DEFAULT_TAGS = [
    "audiobook",
    "tiểu thuyết",
    "truyện ngắn",
    "vietnamese",
    "storytelling",
    "cooking",
]


def build_video_metadata(
    story_title: str,
    story_text: str,
    visibility: Visibility = "public",
    *,
    category_id: int = 24,
    language: str = "vi",
) -> VideoMetadata:
    """Derive upload metadata from the story."""

    title = f"📖 {story_title.strip()} | Audiobook + Cooking"
    if len(title) > _TITLE_LIMIT:
        title = title[: _TITLE_LIMIT - 1].rstrip() + "…"

    preview = story_text[:_DESCRIPTION_PREVIEW].strip()
    ellipsis = "..." if len(story_text) > _DESCRIPTION_PREVIEW else ""
    description = (
        f"📖 Audiobook: {story_title.strip()}\n\n"
        f"Nội dung truyện:\n{preview}{ellipsis}\n\n"
        "🎬 Video được tạo tự động bằng Audiobook Uploader\n"
        "#audiobook #tiểu_thuyết #truyện_ngắn #vietnamese"
    )
    return VideoMetadata(
        title=title,
        description=description,
        tags=list(DEFAULT_TAGS),
        visibility=visibility,
        category_id=category_id,
        language=language,
    )


def build_youtube_video_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def parse_youtube_video_id(url: str) -> str | None:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    host = (parsed.hostname or "").lower()
    if host in {"youtube.com", "www.youtube.com", "m.youtube.com"}:
        return (parse_qs(parsed.query).get("v") or [None])[0]
    if host == "youtu.be":
        return parsed.path.lstrip("/") or None
    return None


class YouTubeService:
    """Pushes the composed video and its thumbnail to a YouTube channel."""

    def __init__(self, settings: Settings | None = None, client: httpx.Client | None = None) -> None:
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.settings.youtube_request_timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def upload(
        self,
        video_path: str,
        thumbnail_path: str | None,
        metadata: VideoMetadata,
        access_token: str | None,
    ) -> UploadResult:
        if not access_token:
            raise UploadAuthExpiredError("YouTube access token required", status_code=None)

        video = Path(video_path)
        size = video.stat().st_size
        auth = {"Authorization": f"Bearer {access_token}"}
        logger.info("Uploading video to YouTube: %s (%s bytes)", metadata.title, size)

        session_url = self._start_session(metadata, size, auth)
        upload_response = self.client.put(
            session_url,
            content=self._iter_file(video),
            headers={**auth, "Content-Type": "video/mp4", "Content-Length": str(size)},
        )
        self._raise_for_status(upload_response, "video upload")
        body = self._json(upload_response)
        video_id = body.get("id")
        if not video_id:
            raise UnexpectedResponseError("YouTube upload response did not include a video id")
        logger.info("Video uploaded successfully: %s", video_id)

        if thumbnail_path and Path(thumbnail_path).exists():
            self.set_thumbnail(str(video_id), thumbnail_path, access_token)

        upload_status = (body.get("status") or {}).get("uploadStatus")
        return UploadResult(
            video_id=str(video_id),
            url=build_youtube_video_url(str(video_id)),
            status="succeeded" if upload_status == "processed" else "processing",
        )

    def set_thumbnail(self, video_id: str, thumbnail_path: str, access_token: str) -> None:
        path = Path(thumbnail_path)
        content_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        response = self.client.post(
            f"{self.settings.youtube_upload_url}/thumbnails/set",
            params={"videoId": video_id},
            content=path.read_bytes(),
            headers={"Authorization": f"Bearer {access_token}", "Content-Type": content_type},
        )
        self._raise_for_status(response, "thumbnail upload")
        logger.info("Thumbnail set for video %s", video_id)

    def refresh_access_token(self, refresh_token: str) -> tuple[str, float]:
        """Exchange a refresh token for a new access token and its expiry (epoch seconds)."""

        if not self.settings.youtube_oauth_client_id or not self.settings.youtube_oauth_client_secret:
            raise UploadAuthExpiredError("YouTube OAuth client credentials are not configured")

        response = self.client.post(
            self.settings.youtube_token_url,
            data={
                "client_id": self.settings.youtube_oauth_client_id,
                "client_secret": self.settings.youtube_oauth_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code in (400, 401):
            raise UploadAuthExpiredError(
                "YouTube refresh token was rejected, please sign in again",
                status_code=response.status_code,
                detail=response.text,
            )
        self._raise_for_status(response, "token refresh")
        body = self._json(response)
        token = body.get("access_token")
        if not token:
            raise UnexpectedResponseError("Token refresh response did not include an access_token")
        expires_at = time.time() + float(body.get("expires_in", 3600))
        logger.info("YouTube access token refreshed")
        return str(token), expires_at

    def _start_session(self, metadata: VideoMetadata, size: int, auth: dict[str, str]) -> str:
        resource = {
            "snippet": {
                "title": metadata.title,
                "description": metadata.description,
                "tags": metadata.tags,
                "categoryId": str(metadata.category_id),
                "defaultLanguage": metadata.language,
                "defaultAudioLanguage": metadata.language,
            },
            "status": {
                "privacyStatus": metadata.visibility,
                "selfDeclaredMadeForKids": False,
            },
        }
        response = self.client.post(
            f"{self.settings.youtube_upload_url}/videos",
            params={"uploadType": "resumable", "part": "snippet,status"},
            json=resource,
            headers={
                **auth,
                "X-Upload-Content-Length": str(size),
                "X-Upload-Content-Type": "video/mp4",
            },
        )
        self._raise_for_status(response, "upload session")
        session_url = response.headers.get("location")
        if not session_url:
            raise UnexpectedResponseError("YouTube did not return a resumable upload URL")
        logger.debug("Got resumable upload URL")
        return session_url

    @staticmethod
    def _iter_file(path: Path) -> Iterator[bytes]:
        with path.open("rb") as handle:
            while True:
                chunk = handle.read(_UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    def _raise_for_status(self, response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        status = response.status_code
        reasons = self._error_reasons(response)
        detail = response.text[:2000]
        if status == 401:
            raise UploadAuthExpiredError(
                f"YouTube {action} failed: access token expired or revoked", status_code=status, detail=detail
            )
        if status == 429 or (status == 403 and reasons & _QUOTA_REASONS):
            raise UploadQuotaExceededError(
                f"YouTube {action} failed: quota exceeded", status_code=status, detail=detail
            )
        raise UploadError(f"YouTube {action} failed with HTTP {status}", status_code=status, detail=detail)

    @staticmethod
    def _error_reasons(response: httpx.Response) -> set[str]:
        try:
            body = response.json()
        except ValueError:
            return set()
        if not isinstance(body, dict):
            return set()
        errors = (body.get("error") or {}).get("errors") or []
        return {str(item.get("reason")) for item in errors if isinstance(item, dict)}

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise UnexpectedResponseError("YouTube returned a non-JSON response") from exc
        if not isinstance(body, dict):
            raise UnexpectedResponseError("YouTube returned an unexpected response shape")
        return body
