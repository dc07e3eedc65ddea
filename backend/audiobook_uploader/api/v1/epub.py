"""EPUB chapter import endpoint."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter

from ...schemas.pipeline import EpubBook, EpubParseRequest
from ...services.epub_service import parse_epub

router = APIRouter()


@router.post("/parse", response_model=EpubBook)
async def parse_epub_file(payload: EpubParseRequest) -> EpubBook:
    """Extract the chapters of an EPUB on the server's filesystem."""

    return await asyncio.to_thread(parse_epub, payload.path)
