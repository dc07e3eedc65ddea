"""Provider discovery and connectivity checks."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter

from ...schemas.pipeline import ProviderValidationResponse, VoiceOption
from ...services.thumbnail_service import ThumbnailService
from ...services.voiceover_service import VoiceoverService

router = APIRouter()


@router.get("/voices", response_model=list[VoiceOption])
async def list_voices() -> list[VoiceOption]:
    """Voices offered for narration."""

    return VoiceoverService().list_voices()


@router.get("/validate", response_model=ProviderValidationResponse)
async def validate_providers() -> ProviderValidationResponse:
    """Check that the configured Vbee and Gemini credentials are accepted."""

    voiceover = VoiceoverService()
    thumbnail = ThumbnailService()
    try:
        vbee, gemini, image_generation = await asyncio.gather(
            asyncio.to_thread(voiceover.validate_connection),
            asyncio.to_thread(thumbnail.validate_connection),
            asyncio.to_thread(thumbnail.validate_image_generation),
        )
    finally:
        voiceover.close()
    return ProviderValidationResponse(vbee=vbee, gemini=gemini, image_generation=image_generation)
