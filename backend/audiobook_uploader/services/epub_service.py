"""EPUB chapter import so a book can be narrated chapter by chapter."""

from __future__ import annotations

import logging
import math
import posixpath
import re
import zipfile
from pathlib import Path
from typing import Iterable
from xml.etree import ElementTree

from bs4 import BeautifulSoup

from ..core.errors import InputValidationError
from ..schemas.pipeline import EpubBook, EpubChapter

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 250
_CHARS_PER_WORD = 6

_CONTAINER_NS = {"c": "urn:oasis:names:tc:opendocument:xmlns:container"}
_OPF_NS = {"opf": "http://www.idpf.org/2007/opf", "dc": "http://purl.org/dc/elements/1.1/"}

_CHAPTER_PATTERNS = (
    re.compile(r"chương\s+(\d+)", re.IGNORECASE),
    re.compile(r"chapter\s+(\d+)", re.IGNORECASE),
    re.compile(r"第(\d+)章"),
)
_LEADING_NUMBER = re.compile(r"^(\d+)[\s.\-:_]*")
_TITLE_PREFIX = re.compile(r"^(chương|chapter|ch\.|ch(?=\s*\d)|第.*?章)\s*[\s:\-]*", re.IGNORECASE)
_TITLE_NUMBER = re.compile(r"^\d+[\s:\-]*")


def html_to_text(html: str) -> str:
    """Plain text of an XHTML document, one paragraph per line."""

    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "head"]):
        element.decompose()
    text = soup.get_text(separator="\n", strip=True)
    lines = [line.strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def estimate_word_count(text: str) -> int:
    cleaned = text.strip()
    if not cleaned:
        return 0
    return max(1, math.ceil(len(cleaned) / _CHARS_PER_WORD))


def extract_chapter_number(text: str) -> int | None:
    """Chapter number from headings like "Chương 3", "Chapter 3", "第3章" or "03."."""

    if not text or not text.strip():
        return None
    for pattern in _CHAPTER_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    match = _LEADING_NUMBER.match(text)
    if match:
        number = int(match.group(1))
        if 0 < number < 1000:
            return number
    return None


def normalize_chapter_title(title: str) -> str:
    normalized = _TITLE_PREFIX.sub("", title.strip(), count=1)
    normalized = _TITLE_NUMBER.sub("", normalized, count=1)
    return normalized.strip()


def format_estimated_duration(word_count: int) -> str:
    minutes = math.ceil(word_count / WORDS_PER_MINUTE)
    if minutes < 1:
        return "< 1 phút"
    if minutes == 1:
        return "1 phút"
    return f"{minutes} phút"


def format_chapter_ranges(numbers: Iterable[int]) -> str:
    """Compact display of selected chapters, e.g. ``[1, 2, 5, 6, 7]`` -> ``"1-2, 5-7"``."""

    ordered = sorted(set(numbers))
    if not ordered:
        return ""
    ranges: list[str] = []
    start = previous = ordered[0]
    for number in ordered[1:] + [None]:
        if number is not None and number == previous + 1:
            previous = number
            continue
        ranges.append(str(start) if start == previous else f"{start}-{previous}")
        if number is not None:
            start = previous = number
    return ", ".join(ranges)


def is_valid_epub_file(path: str | Path) -> bool:
    try:
        with open(path, "rb") as handle:
            return handle.read(2) == b"PK"
    except OSError:
        return False


def join_chapters(book: EpubBook, numbers: Iterable[int]) -> str:
    """Story text for the selected chapters, in book order."""

    wanted = set(numbers)
    selected = [chapter for chapter in book.chapters if chapter.number in wanted]
    if not selected:
        raise InputValidationError("No chapters selected")
    return "\n\n".join(f"{chapter.title}\n{chapter.content}" for chapter in selected)


def parse_epub(path: str | Path) -> EpubBook:
    """Read the book metadata and its non-empty chapters in spine order."""

    logger.info("Parsing EPUB file: %s", path)
    try:
        return _parse(Path(path))
    except InputValidationError as exc:
        logger.error("Failed to parse EPUB: %s", exc.message)
        raise InputValidationError(f"EPUB parsing failed: {exc.message}") from exc
    except (OSError, zipfile.BadZipFile, ElementTree.ParseError, KeyError) as exc:
        logger.error("Failed to parse EPUB: %s", exc)
        raise InputValidationError(f"EPUB parsing failed: {exc}") from exc


def _parse(path: Path) -> EpubBook:
    if not path.is_file():
        raise InputValidationError(f"File not found: {path}")
    if not is_valid_epub_file(path):
        raise InputValidationError("Invalid EPUB file format: Not a valid ZIP archive")

    with zipfile.ZipFile(path) as archive:
        names = set(archive.namelist())
        if "META-INF/container.xml" not in names:
            raise InputValidationError("Invalid EPUB: Missing META-INF/container.xml")
        container = ElementTree.fromstring(archive.read("META-INF/container.xml"))
        rootfile = container.find("c:rootfiles/c:rootfile", _CONTAINER_NS)
        opf_path = rootfile.get("full-path") if rootfile is not None else None
        if not opf_path:
            raise InputValidationError("Invalid EPUB: Cannot find content.opf path in container.xml")
        if opf_path not in names:
            raise InputValidationError(f"Invalid EPUB: Missing {opf_path}")

        package = ElementTree.fromstring(archive.read(opf_path))
        title = (package.findtext("opf:metadata/dc:title", default="", namespaces=_OPF_NS) or "").strip()
        author = (package.findtext("opf:metadata/dc:creator", default="", namespaces=_OPF_NS) or "").strip()
        manifest = {
            item.get("id"): item.get("href")
            for item in package.findall("opf:manifest/opf:item", _OPF_NS)
            if item.get("id") and item.get("href")
        }
        spine = [
            itemref.get("idref")
            for itemref in package.findall("opf:spine/opf:itemref", _OPF_NS)
            if itemref.get("idref")
        ]
        logger.info("Book: %r by %s (%s items)", title or "Unknown", author or "Unknown", len(spine))

        opf_dir = posixpath.dirname(opf_path)
        chapters: list[EpubChapter] = []
        for item_id in spine:
            href = manifest.get(item_id)
            if not href:
                logger.warning("Manifest item not found for ID: %s", item_id)
                continue
            chapter_path = posixpath.normpath(posixpath.join(opf_dir, href))
            if chapter_path not in names:
                logger.warning("Could not read chapter: %s", chapter_path)
                continue
            html = archive.read(chapter_path).decode("utf-8", errors="replace")
            chapter = _build_chapter(item_id, html, len(chapters) + 1)
            if chapter is not None:
                chapters.append(chapter)

    if not chapters:
        raise InputValidationError("No chapters found in EPUB file")
    logger.info("Extracted %s chapters from EPUB", len(chapters))
    return EpubBook(title=title or "Unknown", author=author or None, chapters=chapters)


def _build_chapter(item_id: str, html: str, suggested_number: int) -> EpubChapter | None:
    text = html_to_text(html)
    if not text:
        return None
    first_line = text.split("\n", 1)[0]
    number = extract_chapter_number(first_line) or suggested_number
    title = normalize_chapter_title(first_line) or f"Chương {number}"
    word_count = estimate_word_count(text)
    return EpubChapter(
        id=item_id,
        number=number,
        title=title,
        content=text,
        word_count=word_count,
        estimated_duration=format_estimated_duration(word_count),
    )
