"""Thumbnail generation powered by Gemini image models with placeholder fallback."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Union

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types
from PIL import Image

from ..core.config import Settings, get_settings
from ..schemas.pipeline import ThumbnailImage

logger = logging.getLogger(__name__)

THUMBNAIL_WIDTH = 1920
THUMBNAIL_HEIGHT = 1080
PLACEHOLDER_COLOR = (245, 239, 224)

_MIN_BASE64_LENGTH = 100
_MIN_IMAGE_BYTES = 64
_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/=\s]+$")


@dataclass(frozen=True)
class InlineImage:
    """Image bytes returned as inline data on a candidate part."""

    data: bytes
    mime_type: str | None = None


@dataclass(frozen=True)
class TextImage:
    """Base64 image carried in a part's text field."""

    data: bytes


@dataclass(frozen=True)
class CandidateImage:
    """Image object attached directly to the candidate."""

    data: bytes


@dataclass(frozen=True)
class ImagesArray:
    """Image taken from a top-level ``images`` array."""

    data: bytes


@dataclass(frozen=True)
class RemoteImage:
    """The model answered with a URL instead of image data."""

    url: str


@dataclass(frozen=True)
class Unrecognized:
    reason: str


ImagePayload = Union[InlineImage, TextImage, CandidateImage, ImagesArray, RemoteImage, Unrecognized]


class ImageApiErrorKind(str, Enum):
    invalid_key = "invalid_key"
    rate_limited = "rate_limited"
    model_not_found = "model_not_found"
    other = "other"


def classify_api_error(exc: Exception) -> ImageApiErrorKind:
    """Map an image API exception to the diagnostic we log for it."""

    code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    message = str(exc).lower()
    if code in (401, 403) or "api key not valid" in message or "api_key_invalid" in message:
        return ImageApiErrorKind.invalid_key
    if code == 429 or "resource_exhausted" in message or "quota" in message:
        return ImageApiErrorKind.rate_limited
    if code == 404 or "not found" in message:
        return ImageApiErrorKind.model_not_found
    return ImageApiErrorKind.other


def parse_image_payload(payload: Any) -> ImagePayload:
    """Locate image data in a generation response.

    Known shapes are checked in order: inline data on a candidate part, base64
    text on a part, an image object on the candidate and a top-level
    ``images`` array. Keys are accepted in both snake_case (SDK dumps) and
    camelCase (raw REST payloads).
    """

    if not isinstance(payload, dict):
        return Unrecognized(f"response is a {type(payload).__name__}, not an object")

    candidates = payload.get("candidates") or []
    candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    content = candidate.get("content") or {}
    parts = [part for part in content.get("parts") or [] if isinstance(part, dict)]

    for part in parts:
        inline = _lookup(part, "inline_data", "inlineData")
        if isinstance(inline, dict):
            data = _decode(inline.get("data"))
            if data is not None:
                return InlineImage(data=data, mime_type=_lookup(inline, "mime_type", "mimeType"))

    for part in parts:
        text = part.get("text")
        if isinstance(text, str) and text.strip().startswith("http"):
            return RemoteImage(url=text.strip())
        data = _decode(text)
        if data is not None:
            return TextImage(data=data)

    image = candidate.get("image")
    if isinstance(image, dict):
        data = _decode(_lookup(image, "data", "bytes_base64_encoded", "bytesBase64Encoded"))
        if data is not None:
            return CandidateImage(data=data)

    images = payload.get("images") or []
    if images:
        first = images[0]
        if isinstance(first, dict):
            first = _lookup(first, "data", "bytes_base64_encoded", "bytesBase64Encoded", "url")
        if isinstance(first, str) and first.startswith("http"):
            return RemoteImage(url=first)
        data = _decode(first)
        if data is not None:
            return ImagesArray(data=data)

    return Unrecognized(f"no image data found (response keys: {', '.join(sorted(payload)) or 'none'})")


def build_thumbnail_prompt(title: str) -> str:
    return f"""Create a YouTube thumbnail in Modern Oriental (Á Đông hiện đại) style with Flat Design aesthetic for an audiobook titled: "{title}"

Design Requirements:
1. Layout & Structure:
   - Center-aligned composition with all main elements centered
   - Decorative frames at 4 corners and top/bottom borders
   - Open space in center for content prominence

2. Color Palette:
   - Background: Cream/Off-white with subtle paper texture
   - Primary: Deep Red (#990000) for main title
   - Secondary: Slate Blue (#5D7B93) for decorative elements
   - Accent: Gold/Yellow highlights

3. Graphic Elements:
   - Traditional cloud patterns (ngũ sắc style, Vietnamese/Chinese aesthetic)
   - Fine flowing lines with gentle shadows
   - Central icon: Open book with ribbons/waves and musical notes
   - Bottom corner: Circular logo with book icon

4. Typography:
   - Title: Brush-style font, thick strokes, Deep Red color
   - Drop shadow for 3D effect
   - Subtitle: Modern Serif, uppercase, wide letter spacing

5. Overall Style:
   - Traditional meets modern aesthetic
   - Refined, elegant, professional appearance
   - Audiobook/literature brand aesthetic
   - 16:9 aspect ratio ({THUMBNAIL_WIDTH}x{THUMBNAIL_HEIGHT})
   - High quality, vibrant colors

Use the attached image as the style reference. Generate the complete thumbnail image."""


DEFAULT_IMAGE_PROMPT = (
    "A cozy, warm illustration for a Vietnamese audiobook thumbnail. Soft lighting, "
    "an open book surrounded by gentle steam from a home-cooked meal, cream background, "
    "deep red and gold accents, clean flat design, 16:9 composition."
)

IMAGE_PROMPT_INSTRUCTION = """You write prompts for an image generation model.
Given a story summary, answer with a single English prompt describing a YouTube thumbnail for it.
Requirements:
- Under 500 characters
- Describe the scene, mood, colors and composition
- No text, captions or letters in the image
- Answer with the prompt only, no explanations"""


def _lookup(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def _decode(value: Any) -> bytes | None:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value) if len(value) >= _MIN_IMAGE_BYTES else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    if len(text) < _MIN_BASE64_LENGTH or not _BASE64_PATTERN.match(text):
        return None
    try:
        return base64.b64decode(text, validate=False)
    except (binascii.Error, ValueError):
        return None


class ThumbnailService:
    """Generates styled thumbnails and never fails the run on API errors."""

    def __init__(self, settings: Settings | None = None, client: Any | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = client
        if self.client is None and self.settings.gemini_api_key:
            self.client = genai.Client(api_key=self.settings.gemini_api_key)

    def generate_thumbnail(self, style_reference_image_path: str, title: str, output_path: str) -> ThumbnailImage:
        target = Path(output_path)
        target.parent.mkdir(parents=True, exist_ok=True)

        if self.client is None:
            logger.warning("GEMINI_API_KEY not set, using placeholder thumbnail")
            return self.create_placeholder(target)

        contents: list[Any] = []
        reference = self._load_reference(Path(style_reference_image_path))
        if reference is not None:
            contents.append(genai_types.Part.from_bytes(data=reference[0], mime_type=reference[1]))
        contents.append(build_thumbnail_prompt(title))

        logger.info("Generating Modern Oriental thumbnail", extra={"title": title, "model": self.settings.thumbnail_model})
        try:
            response = self.client.models.generate_content(
                model=self.settings.thumbnail_model,
                contents=contents,
                config=genai_types.GenerateContentConfig(
                    temperature=0.85,
                    top_p=0.9,
                    top_k=40,
                    response_modalities=["IMAGE", "TEXT"],
                ),
            )
        except genai_errors.APIError as exc:
            kind = classify_api_error(exc)
            logger.error("Thumbnail generation failed (%s): %s", kind.value, exc)
            return self.create_placeholder(target)
        except Exception as exc:
            logger.error("Thumbnail generation failed: %s", exc)
            return self.create_placeholder(target)

        payload = response.model_dump(exclude_none=True) if hasattr(response, "model_dump") else response
        parsed = parse_image_payload(payload)
        if isinstance(parsed, RemoteImage):
            logger.warning("Received image URL instead of image data (%s), using placeholder", parsed.url)
            return self.create_placeholder(target)
        if isinstance(parsed, Unrecognized):
            logger.warning("No usable image in thumbnail response: %s", parsed.reason)
            return self.create_placeholder(target)

        logger.debug("Thumbnail payload located as %s", type(parsed).__name__)
        try:
            return self._write_image(parsed.data, target)
        except Exception as exc:
            logger.error("Unusable thumbnail image data for %s: %s", target, exc)
            return self.create_placeholder(target)

    def generate_thumbnail_prompt(self, story_summary: str, style: str | None = None) -> str:
        """Ask the text model for an image prompt; the default prompt is used on any failure."""

        if self.client is None:
            logger.warning("GEMINI_API_KEY not set, using default image prompt")
            return DEFAULT_IMAGE_PROMPT

        request = f"Story summary:\n{story_summary.strip()}"
        if style:
            request += f"\n\nVisual style: {style}"
        try:
            response = self.client.models.generate_content(
                model=self.settings.prompt_model,
                contents=request,
                config=genai_types.GenerateContentConfig(
                    system_instruction=IMAGE_PROMPT_INSTRUCTION,
                    temperature=0.7,
                ),
            )
        except Exception as exc:
            logger.error("Image prompt generation failed: %s", exc)
            return DEFAULT_IMAGE_PROMPT

        prompt = (getattr(response, "text", None) or "").strip()
        if not prompt:
            logger.warning("Empty image prompt returned, using default")
            return DEFAULT_IMAGE_PROMPT
        return prompt[:500]

    def validate_connection(self) -> bool:
        if self.client is None:
            logger.error("GEMINI_API_KEY not configured")
            return False
        try:
            self.client.models.count_tokens(model=self.settings.prompt_model, contents="test")
        except Exception as exc:
            logger.error("Gemini API connection failed: %s", exc)
            return False
        logger.info("Gemini API connection successful")
        return True

    def validate_image_generation(self) -> bool:
        """Request a tiny test image and check the response carries image data."""

        if self.client is None:
            logger.error("GEMINI_API_KEY not configured")
            return False
        try:
            response = self.client.models.generate_content(
                model=self.settings.thumbnail_model,
                contents="A simple red circle on a white background",
                config=genai_types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"]),
            )
        except genai_errors.APIError as exc:
            logger.error("Image generation check failed (%s): %s", classify_api_error(exc).value, exc)
            return False
        except Exception as exc:
            logger.error("Image generation check failed: %s", exc)
            return False

        payload = response.model_dump(exclude_none=True) if hasattr(response, "model_dump") else response
        parsed = parse_image_payload(payload)
        if isinstance(parsed, (RemoteImage, Unrecognized)):
            logger.warning("Image model %s did not return image data", self.settings.thumbnail_model)
            return False
        return True

    def create_placeholder(self, target: Path) -> ThumbnailImage:
        """Write a flat cream thumbnail of the final dimensions."""

        logger.info("Creating placeholder thumbnail", extra={"path": str(target)})
        image_format = self._format_for(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", (THUMBNAIL_WIDTH, THUMBNAIL_HEIGHT), PLACEHOLDER_COLOR).save(
            target, format="PNG" if image_format == "png" else "JPEG"
        )
        return ThumbnailImage(
            path=str(target),
            width=THUMBNAIL_WIDTH,
            height=THUMBNAIL_HEIGHT,
            format=image_format,
            file_size=target.stat().st_size,
            placeholder=True,
        )

    def _write_image(self, data: bytes, target: Path) -> ThumbnailImage:
        image_format = self._format_for(target)
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            width, height = image.size
            if image_format == "jpg" and image.mode != "RGB":
                image = image.convert("RGB")
            image.save(target, format="PNG" if image_format == "png" else "JPEG")
        logger.info("Thumbnail saved: %s (%s bytes)", target, target.stat().st_size)
        return ThumbnailImage(
            path=str(target),
            width=width,
            height=height,
            format=image_format,
            file_size=target.stat().st_size,
        )

    def _load_reference(self, path: Path) -> tuple[bytes, str] | None:
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning("Could not load style reference image %s: %s", path, exc)
            return None
        mime_type = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
        logger.info("Style reference image loaded: %s", path)
        return data, mime_type

    @staticmethod
    def _format_for(target: Path) -> str:
        return "png" if target.suffix.lower() == ".png" else "jpg"
