"""
Text chunking utilities
Section- and paragraph-aware splitting of product knowledge for embedding
"""
import re
from typing import List, Optional, Tuple

from recete.config import settings
from recete.models.knowledge import TextChunk, SectionType

LANGUAGE_MARKER_WINDOW = 200

_LANG_RE = re.compile(r"\[LANG:([A-Za-z]{2,3}(?:-[A-Za-z]{2})?)\]")
_LANG_STRIP_RE = re.compile(r"\[LANG:[^\]]*\]")
_FACTS_RE = re.compile(r"\[PRODUCT_FACTS\]", re.IGNORECASE)
_SECTION_RE = re.compile(r"\[SECTION:([A-Za-z_]+)\]")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")

SECTION_LABELS = {
    "INGREDIENTS": SectionType.INGREDIENTS,
    "ACTIVE_INGREDIENTS": SectionType.INGREDIENTS,
    "USAGE": SectionType.USAGE,
    "WARNINGS": SectionType.WARNINGS,
    "IDENTITY": SectionType.SPECS,
    "SKIN_TYPES": SectionType.SPECS,
    "SPECS": SectionType.SPECS,
    "BENEFITS": SectionType.SPECS,
}

# Checked in order; first hit wins
SECTION_KEYWORDS = [
    (SectionType.WARNINGS, ("warning", "caution", "avoid", "do not", "uyarı", "dikkat", "kaçının", "göz ile temas")),
    (SectionType.USAGE, ("how to use", "usage", "apply", "directions", "kullanım", "uygula", "sürün", "günde")),
    (SectionType.INGREDIENTS, ("ingredient", "inci", "içerik", "içindekiler", "aqua", "glycerin")),
    (SectionType.SPECS, ("specification", "volume", "weight", "skin type", "özellik", "cilt tipi", "hacim")),
]


def normalize_text(text: str) -> str:
    """Normalize line endings and whitespace, keeping paragraph breaks"""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t\f\v]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def detect_language(text: str) -> Optional[str]:
    """Language code from an explicit [LANG:xx] marker near the start of the text only"""
    match = _LANG_RE.search(text[:LANGUAGE_MARKER_WINDOW])
    return match.group(1).lower() if match else None


def strip_markers(text: str) -> str:
    """Remove [LANG:xx] and [PRODUCT_FACTS] markers; section markers are kept"""
    text = _LANG_STRIP_RE.sub("", text)
    text = _FACTS_RE.sub("", text)
    return normalize_text(text)


def section_type_for_label(label: str) -> SectionType:
    return SECTION_LABELS.get(label.upper(), SectionType.GENERAL)


def infer_section_type(text: str) -> SectionType:
    lowered = text.casefold()
    for section_type, keywords in SECTION_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return section_type
    return SectionType.GENERAL


def split_sections(text: str) -> List[Tuple[Optional[SectionType], str]]:
    """
    Split on [SECTION:...] markers.

    Returns (section_type, body) pairs. Without markers a single pair with a
    None section type is returned so the caller infers it per chunk. Text before
    the first marker belongs to the general section.
    """
    parts = _SECTION_RE.split(text)
    if len(parts) == 1:
        return [(None, text)]

    sections: List[Tuple[Optional[SectionType], str]] = []
    preamble = parts[0].strip()
    if preamble:
        sections.append((SectionType.GENERAL, preamble))
    for label, body in zip(parts[1::2], parts[2::2]):
        body = body.strip()
        if body:
            sections.append((section_type_for_label(label), body))
    return sections


def _segments(body: str, max_chunk_size: int) -> List[Tuple[str, str]]:
    """Paragraphs, or sentences for oversized paragraphs, each with its joiner"""
    segments = []
    for paragraph in _PARAGRAPH_RE.split(body):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) <= max_chunk_size:
            segments.append((paragraph, "\n\n"))
            continue
        sentences = [s.strip() for s in _SENTENCE_RE.split(paragraph) if s.strip()]
        for i, sentence in enumerate(sentences):
            segments.append((sentence, "\n\n" if i == 0 else " "))
    return segments


def pack_segments(body: str, max_chunk_size: int, overlap_size: int) -> List[str]:
    """Greedily pack segments into chunks no longer than max_chunk_size"""
    pieces: List[str] = []
    current = ""

    for segment, joiner in _segments(body, max_chunk_size):
        if len(segment) > max_chunk_size:
            # Hard-slice fallback, no overlap carried
            if current:
                pieces.append(current)
                current = ""
            for start in range(0, len(segment), max_chunk_size):
                piece = segment[start:start + max_chunk_size].strip()
                if piece:
                    pieces.append(piece)
            continue

        candidate = f"{current}{joiner}{segment}" if current else segment
        if len(candidate) <= max_chunk_size:
            current = candidate
            continue

        pieces.append(current)
        overlap = current[-overlap_size:].lstrip() if overlap_size > 0 else ""
        with_overlap = f"{overlap} {segment}" if overlap else segment
        current = with_overlap if len(with_overlap) <= max_chunk_size else segment

    if current:
        pieces.append(current)
    return pieces


def chunk_text(
    text: str,
    max_chunk_size: int = settings.DEFAULT_CHUNK_SIZE,
    overlap_size: int = settings.DEFAULT_CHUNK_OVERLAP
) -> List[TextChunk]:
    """
    Split text into overlapping chunks for embedding

    A chunk never spans two [SECTION:...] blocks. When a chunk closes, its last
    overlap_size characters are carried as a prefix of the next one.

    Args:
        text: Raw or enriched product text, optionally with RAG markers
        max_chunk_size: Maximum chunk length in characters
        overlap_size: Characters carried between consecutive chunks

    Returns:
        Chunks with contiguous indices from 0 (empty list for empty input)

    Raises:
        ValueError: If max_chunk_size is not positive
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    overlap_size = max(0, min(overlap_size, max_chunk_size // 2))

    if not text or not text.strip():
        return []

    normalized = normalize_text(text)
    language_code = detect_language(normalized)
    cleaned = strip_markers(normalized)

    chunks: List[TextChunk] = []
    for section_type, body in split_sections(cleaned):
        for piece in pack_segments(body, max_chunk_size, overlap_size):
            chunks.append(TextChunk(
                text=piece,
                index=len(chunks),
                section_type=section_type or infer_section_type(piece),
                language_code=language_code
            ))
    return chunks
