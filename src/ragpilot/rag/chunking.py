"""
Query-aware semantic chunking of retrieved documents.

Documents are split along their own structure first (markdown headings and
horizontal rules), oversized sections are packed paragraph by paragraph, and
oversized paragraphs sentence by sentence. The resulting chunks are ranked
against the query so the most relevant part of a long note is what reaches
the answer prompt.
"""

import re
from dataclasses import dataclass

from ..observability.logging import get_logger
from .retriever import Source

logger = get_logger(__name__)


@dataclass
class ScoredChunk:
    """A chunk with its relevance score and position in the document."""

    content: str
    score: int
    position: int


class SemanticChunker:
    """Structure-aware chunker that ranks chunks by query relevance."""

    def __init__(self, max_chunk_size: int = 1000, chunks_per_source: int = 2):
        self.max_chunk_size = max_chunk_size
        self.chunks_per_source = chunks_per_source
        self.structural_dividers = re.compile(r"\n#{1,6}\s+|\n---+|\n\*\*\*+|\n={3,}")
        self.paragraph_breaks = re.compile(r"\n\s*\n")
        self.sentence_pattern = re.compile(r"[^.!?]*[.!?]+")
        self.heading_line = re.compile(r"^#+\s+")

    def create_contexts(self, results: list[Source], query: str) -> list[Source]:
        """Replace each source by its most relevant chunks; keep it whole if chunking fails."""
        enhanced: list[Source] = []
        for result in results:
            try:
                chunks = self.create_semantic_chunks(result.content, query, strict=True)
            except Exception as e:
                logger.error(f"Error chunking {result.path}: {e}")
                enhanced.append(result)
                continue

            for chunk in chunks[: self.chunks_per_source]:
                enhanced.append(
                    Source(document=result.document, similarity=result.similarity, content=chunk)
                )
        return enhanced

    def create_semantic_chunks(
        self,
        text: str,
        query: str,
        max_chunk_size: int | None = None,
        strict: bool = False,
    ) -> list[str]:
        """
        Split text into chunks ordered most relevant first.

        Never returns an empty list for non-empty input: on an internal
        failure the whole text is returned as a single chunk, unless strict
        is set, in which case the error propagates.
        """
        limit = max_chunk_size or self.max_chunk_size
        try:
            chunks = self.split(text, limit)
            if not chunks:
                return [text] if text else []
            return [chunk.content for chunk in self.rank(chunks, query)]
        except Exception as e:
            if strict:
                raise
            logger.error(f"Error creating semantic chunks: {e}")
            return [text]

    def split(self, text: str, max_chunk_size: int) -> list[ScoredChunk]:
        """Structural split in document order, scores unset."""
        pieces: list[str] = []
        sections = [s for s in self.structural_dividers.split(text) if s.strip()]

        for section in sections:
            if len(section) <= max_chunk_size:
                pieces.append(section)
                continue
            pieces.extend(self._pack_paragraphs(section, max_chunk_size))

        return [ScoredChunk(content=p, score=0, position=i) for i, p in enumerate(pieces)]

    def _pack_paragraphs(self, section: str, max_chunk_size: int) -> list[str]:
        packed: list[str] = []
        current = ""
        paragraphs = [p for p in self.paragraph_breaks.split(section) if p.strip()]

        for paragraph in paragraphs:
            if current and len(current) + 2 + len(paragraph) > max_chunk_size:
                packed.append(current)
                current = ""

            if len(paragraph) > max_chunk_size:
                if current:
                    packed.append(current)
                    current = ""
                packed.extend(self._pack_sentences(paragraph, max_chunk_size))
            else:
                current = f"{current}\n\n{paragraph}" if current else paragraph

        if current:
            packed.append(current)
        return packed

    def _pack_sentences(self, paragraph: str, max_chunk_size: int) -> list[str]:
        sentences = []
        end = 0
        for match in self.sentence_pattern.finditer(paragraph):
            sentences.append(match.group())
            end = match.end()
        # Text after the last terminator is a sentence too
        if paragraph[end:]:
            sentences.append(paragraph[end:])

        packed: list[str] = []
        current = ""
        for sentence in sentences:
            if current and len(current) + len(sentence) > max_chunk_size:
                packed.append(current)
                current = ""
            current += sentence
        if current:
            packed.append(current)
        return packed

    def rank(self, chunks: list[ScoredChunk], query: str) -> list[ScoredChunk]:
        """Score chunks against the query; stable sort, highest first."""
        lowered_query = query.lower()
        terms = list(dict.fromkeys(t for t in lowered_query.split() if len(t) > 2))

        for chunk in chunks:
            lowered = chunk.content.lower()
            score = 0
            if lowered_query and lowered_query in lowered:
                score += 100

            headings = [
                line.lower() for line in chunk.content.split("\n") if self.heading_line.match(line)
            ]
            for term in terms:
                if term in lowered:
                    score += 10
                    score += 5 * sum(1 for heading in headings if term in heading)
            chunk.score = score

        return sorted(chunks, key=lambda c: c.score, reverse=True)
