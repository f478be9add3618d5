# =============================================================================
# Knowledge Chunker: Paragraph-Aware Character Windows
# =============================================================================
#
# Splits an expert's reference document into retrievable chunks.
#
# ALGORITHM:
# 1. Split the text on blank lines into paragraphs
# 2. Append paragraphs to a buffer until the next one would push it past
#    `chunk_chars`
# 3. Emit the buffer as a chunk, then seed the next buffer with the last
#    `overlap` characters of the emitted one
# 4. Each chunk gets a section title (markdown heading, or a short first
#    line that does not end a sentence) and an exact tiktoken count
#
# Paragraphs are never split, so a single paragraph longer than
# `chunk_chars` becomes one oversized chunk.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import tiktoken

from expert_engine.config import settings

logger = logging.getLogger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")
_MARKDOWN_HEADING = re.compile(r"^#+\s+(.+)", re.MULTILINE)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class KnowledgeChunk:
    """A single chunk ready for embedding and storage."""

    content: str
    chunk_index: int       # 0-indexed position within the document
    token_count: int       # Exact token count (from tiktoken)
    section_title: str | None = None
    page_number: int | None = None
    metadata: dict = field(default_factory=dict)
    # metadata keys: file_name, file_type, char_count


# ---------------------------------------------------------------------------
# Tiktoken Encoder: Cached Singleton
# ---------------------------------------------------------------------------
# cl100k_base is the encoding of text-embedding-3-small, so token counts
# match what the embedding model sees.
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_knowledge_text(
    text: str,
    file_name: str | None = None,
    file_type: str | None = None,
    chunk_chars: int | None = None,
    overlap: int | None = None,
) -> list[KnowledgeChunk]:
    """
    Split a knowledge document into paragraph-aligned chunks.

    Args:
        text: Extracted document text.
        file_name: Recorded in chunk metadata.
        file_type: Recorded in chunk metadata.
        chunk_chars: Soft character limit per chunk
            (default settings.knowledge_chunk_chars).
        overlap: Characters carried from the end of one chunk into the next
            (default settings.knowledge_chunk_overlap).

    Returns:
        Chunks in document order. Empty for blank input.
    """
    size = chunk_chars or settings.knowledge_chunk_chars
    carry = settings.knowledge_chunk_overlap if overlap is None else overlap
    encoder = _get_encoder()

    pieces: list[tuple[str, str | None]] = []
    buffer = ""

    for paragraph in _PARAGRAPH_BREAK.split(text):
        trimmed = paragraph.strip()
        if not trimmed:
            continue

        if buffer and len(buffer) + len(trimmed) > size:
            pieces.append((buffer.strip(), extract_section_title(buffer)))
            tail = buffer[-carry:] if carry > 0 else ""
            buffer = f"{tail}\n\n{trimmed}" if tail else trimmed
        else:
            buffer = f"{buffer}\n\n{trimmed}" if buffer else trimmed

    if buffer.strip():
        pieces.append((buffer.strip(), extract_section_title(buffer)))

    chunks = [
        KnowledgeChunk(
            content=content,
            chunk_index=i,
            token_count=len(encoder.encode(content)),
            section_title=title,
            metadata={
                "file_name": file_name,
                "file_type": file_type,
                "char_count": len(content),
            },
        )
        for i, (content, title) in enumerate(pieces)
    ]

    logger.info(
        "Chunked '%s' into %d chunks (chunk_chars=%d, overlap=%d)",
        file_name or "<text>", len(chunks), size, carry,
    )
    return chunks


def extract_section_title(text: str) -> str | None:
    """
    Guess a section title for a block of text.

    A markdown heading anywhere in the block wins; otherwise the first line
    is used when it is shorter than 100 characters and does not end with a
    period.
    """
    match = _MARKDOWN_HEADING.search(text)
    if match:
        return match.group(1).strip()

    first_line = text.split("\n", 1)[0].strip()
    if first_line and len(first_line) < 100 and not first_line.endswith("."):
        return first_line
    return None
