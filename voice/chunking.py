"""
Clause chunker for speculative synthesis.

Splits streamed generation text into speakable pieces so synthesis can
start on the first clause while generation continues:
- sentence boundaries (. ! ?) always split once the chunk is long enough
- clause boundaries (, ; :) split once the chunk reaches optimal length
- anything past max length is force-split at the last space

Usage:
    chunker = ClauseChunker()
    async for token in tokens:
        for chunk in chunker.add_token(token):
            synthesize(chunk)
    if tail := chunker.flush():
        synthesize(tail)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ChunkerConfig:
    min_chunk_chars: int = 15       # avoid fragments that sound choppy
    optimal_chunk_chars: int = 50   # start splitting on clauses here
    max_chunk_chars: int = 120      # force split before synthesis stalls
    abbreviations: tuple[str, ...] = field(
        default_factory=lambda: ("Dr.", "Mr.", "Mrs.", "Ms.", "St.", "Ave.", "a.m.", "p.m.", "e.g.", "i.e.", "etc."),
    )


class ClauseChunker:
    SENTENCE_ENDERS = {".", "!", "?"}
    CLAUSE_ENDERS = {",", ";", ":"}

    def __init__(self, config: Optional[ChunkerConfig] = None):
        self.config = config or ChunkerConfig()
        self._buffer = ""
        self.chunks_emitted = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def add_token(self, token: str) -> list[str]:
        """Add streamed text and return any chunks that are now complete."""
        self._buffer += token
        chunks = []
        while True:
            cut = self._find_boundary()
            if cut is None:
                break
            chunk = self._buffer[:cut].strip()
            self._buffer = self._buffer[cut:].lstrip()
            if chunk:
                chunks.append(chunk)
                self.chunks_emitted += 1
        return chunks

    def flush(self) -> Optional[str]:
        """Return whatever is left once generation ends."""
        tail = self._buffer.strip()
        self._buffer = ""
        if not tail:
            return None
        self.chunks_emitted += 1
        return tail

    def _find_boundary(self) -> Optional[int]:
        text = self._buffer
        cfg = self.config
        # Boundaries are only confirmed once the following whitespace has arrived
        for i in range(len(text) - 1):
            ch = text[i]
            if not text[i + 1].isspace():
                continue
            length = i + 1
            if ch in self.SENTENCE_ENDERS and length >= cfg.min_chunk_chars and not self._is_abbreviation(i):
                return length
            if ch in self.CLAUSE_ENDERS and length >= cfg.optimal_chunk_chars:
                return length
        if len(text) > cfg.max_chunk_chars:
            space = text.rfind(" ", 0, cfg.max_chunk_chars)
            return space if space > 0 else cfg.max_chunk_chars
        return None

    def _is_abbreviation(self, index: int) -> bool:
        head = self._buffer[: index + 1]
        return any(head.endswith(abbr) for abbr in self.config.abbreviations)
