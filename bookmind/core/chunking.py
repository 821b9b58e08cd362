"""Token-aware text chunking for embedding."""

from __future__ import annotations

import re

# Safety margin below the provider's hard input cap (8191 for OpenAI)
MAX_CHUNK_TOKENS = 6000
CHARS_PER_TOKEN = 4

# Coarse to fine. Each match stays attached to the piece on its left.
SEPARATORS: list[re.Pattern[str]] = [
    re.compile(r"\n\s*\n"),  # paragraph
    re.compile(r"\n"),  # line
    re.compile(r"[.!?]+\s+"),  # sentence
    re.compile(r"[;,:]\s+"),  # clause
    re.compile(r"\s+"),  # word
]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token.

    This is a simple heuristic. For exact counts, use tiktoken.
    """
    return len(text) // CHARS_PER_TOKEN


def _fits(text: str, max_tokens: int) -> bool:
    return estimate_tokens(text) <= max_tokens


def _split_keep(text: str, pattern: re.Pattern[str]) -> list[str]:
    """Split text after every match, so ''.join(result) == text."""
    pieces = []
    last = 0
    for match in pattern.finditer(text):
        if match.end() > last:
            pieces.append(text[last : match.end()])
            last = match.end()
    if last < len(text):
        pieces.append(text[last:])
    return pieces


def _char_windows(text: str, max_tokens: int) -> list[str]:
    size = max_tokens * CHARS_PER_TOKEN
    return [text[i : i + size] for i in range(0, len(text), size)]


def _split(text: str, max_tokens: int, level: int) -> list[str]:
    if _fits(text, max_tokens):
        return [text]
    if level >= len(SEPARATORS):
        return _char_windows(text, max_tokens)

    pieces = _split_keep(text, SEPARATORS[level])
    if len(pieces) <= 1:
        return _split(text, max_tokens, level + 1)

    chunks: list[str] = []
    current = ""
    for piece in pieces:
        if not _fits(piece, max_tokens):
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_split(piece, max_tokens, level + 1))
        elif _fits(current + piece, max_tokens):
            current += piece
        else:
            chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return chunks


def chunk_text(text: str, max_tokens: int = MAX_CHUNK_TOKENS) -> list[str]:
    """Split text into chunks whose estimated token count fits max_tokens.

    Short text comes back as a single chunk. Longer text is split
    recursively on paragraph, line, sentence, clause and word boundaries,
    greedily re-merging neighbours up to the budget at each level. Only a
    single "word" longer than the budget is cut into raw character windows.

    Chunks are stripped; joining them reproduces the input modulo whitespace.

    Args:
        text: Cleaned document text
        max_tokens: Token budget per chunk

    Returns:
        Chunk texts in reading order (empty for blank input)
    """
    if max_tokens < 1:
        raise ValueError(f"max_tokens must be positive, got {max_tokens}")
    if not text or not text.strip():
        return []

    chunks = _split(text, max_tokens, 0)
    return [c.strip() for c in chunks if c.strip()]


def get_chunking_info(max_tokens: int = MAX_CHUNK_TOKENS) -> dict:
    """Chunking parameters for the stats endpoint."""
    return {
        "max_chunk_tokens": max_tokens,
        "max_chunk_chars": max_tokens * CHARS_PER_TOKEN,
        "separators": ["paragraph", "line", "sentence", "clause", "word", "characters"],
    }
