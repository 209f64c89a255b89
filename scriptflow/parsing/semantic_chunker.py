"""
Semantic Chunker

Splits long narrative text into bounded chunks along narrative boundaries
(chapter > paragraph > sentence) so that no chunk cuts through a scene or
a line of dialogue. Each chunk carries trailing context from its
predecessor for continuity.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Pattern, Tuple

from scriptflow.core.constants import CHARS_PER_TOKEN, CONTEXT_CHARS
from scriptflow.core.logging_config import get_logger

logger = get_logger("parsing.semantic_chunker")


class BoundaryType(str, Enum):
    """Kind of narrative boundary."""
    CHAPTER = "chapter"
    PARAGRAPH = "paragraph"
    SENTENCE = "sentence"


class ChunkType(str, Enum):
    """Dominant content of a chunk."""
    DIALOGUE = "dialogue"
    ACTION = "action"
    DESCRIPTION = "description"
    TRANSITION = "transition"


# (pattern, boundary type, confidence, break before the match)
SEPARATORS: List[Tuple[Pattern, BoundaryType, int, bool]] = [
    (re.compile(r'【第[零一二三四五六七八九十百千0-9]+[章回节]】'), BoundaryType.CHAPTER, 100, True),
    (re.compile(r'(?m)^[ \t]*第[零一二三四五六七八九十百千0-9]+[章回节]'), BoundaryType.CHAPTER, 100, True),
    (re.compile(r'(?mi)^[ \t]*chapter\s+\d+'), BoundaryType.CHAPTER, 100, True),
    (re.compile(r'\n[ \t]*\n\s*'), BoundaryType.PARAGRAPH, 50, False),
    (re.compile(r'[。！？；]["”』」]?'), BoundaryType.SENTENCE, 20, False),
    (re.compile(r'[.!?]["\')\]]?(?=\s)'), BoundaryType.SENTENCE, 20, False),
]

_SPEAKER_PATTERNS = [
    re.compile(r'([一-龥]{2,3})(?:笑道|叫道|说道|问道|答道|说|道|问|喊)[:：，,]?\s*[“「"]'),
    re.compile(r'\b([A-Z][a-z]+)\s+(?:said|asked|replied|shouted|whispered|answered)\b'),
    re.compile(r'(?m)^[ \t]*([A-Z][A-Z\'-]{1,20}(?: [A-Z][A-Z\'-]{1,20})?)[ \t]*$'),
]
_SLUGLINE = re.compile(r'(?m)^[ \t]*(?:INT|EXT|INT/EXT|I/E)\.?\s+([^\n]+)$')
_CJK_LOCATION = re.compile(r'(?:在|来到|走进|回到)([一-龥]{2,8}?)(?:里|中|内|外|上|前)')
_DIALOGUE_MARKS = re.compile(r'[“「"]')
_ACTION_WORDS = re.compile(
    r'\b(?:runs?|fights?|grabs?|jumps?|strikes?|chases?|falls?|throws?|rushes?)\b|[跑打冲抓跳追摔扑砍]'
)
_CJK_CHAR = re.compile(r'[一-鿿]')
_LATIN_WORD = re.compile(r'[A-Za-z0-9]+')

TRANSITION_MAX_CHARS = 200


@dataclass
class ChunkBoundary:
    """A candidate split point in the source text."""
    position: int
    type: BoundaryType
    confidence: int


@dataclass
class ChunkMetadata:
    """Heuristic annotations of a chunk."""
    characters: List[str] = field(default_factory=list)
    scene_hint: Optional[str] = None
    importance: int = 5
    word_count: int = 0
    chunk_type: ChunkType = ChunkType.DESCRIPTION


@dataclass
class SemanticChunk:
    """A bounded piece of the source text."""
    id: str
    content: str
    start_index: int
    end_index: int
    prev_context: str = ""
    boundaries: List[ChunkBoundary] = field(default_factory=list)
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)

    @property
    def length(self) -> int:
        return len(self.content)

    def contains_position(self, position: int) -> bool:
        """Check if a source offset falls within this chunk."""
        return self.start_index <= position < self.end_index

    def with_context(self) -> str:
        """Content prefixed with the previous chunk's tail."""
        if not self.prev_context:
            return self.content
        return f"{self.prev_context}\n\n{self.content}"


def count_words(text: str) -> int:
    """CJK characters plus latin words."""
    return len(_CJK_CHAR.findall(text)) + len(_LATIN_WORD.findall(text))


class SemanticChunker:
    """
    Boundary-aware text chunker.

    Usage:
        chunker = SemanticChunker(max_tokens=4000)
        chunks = chunker.chunk(novel_text)
    """

    def __init__(
        self,
        max_tokens: int = 4000,
        chars_per_token: float = CHARS_PER_TOKEN,
        min_boundary_spacing: int = 10,
        context_chars: int = CONTEXT_CHARS,
        enrich_metadata: bool = True
    ):
        """
        Initialize the chunker.

        Args:
            max_tokens: Token budget per chunk
            chars_per_token: Characters per token estimate
            min_boundary_spacing: Boundaries closer than this are merged
            context_chars: Trailing characters of the previous chunk to carry
            enrich_metadata: If True, annotate chunks with heuristics
        """
        self.max_chars = max(1, int(max_tokens * chars_per_token))
        self.min_boundary_spacing = min_boundary_spacing
        self.context_chars = context_chars
        self.enrich_metadata = enrich_metadata

    def chunk(self, text: str) -> List[SemanticChunk]:
        """
        Split ``text`` into ordered chunks.

        Text that fits the budget comes back as a single chunk. A segment
        between two boundaries that alone exceeds the budget is emitted whole.
        """
        if not text or not text.strip():
            return []

        boundaries = self.identify_boundaries(text)
        chunks = self._create_chunks(text, boundaries)
        self._add_context(chunks)

        if self.enrich_metadata:
            for chunk in chunks:
                chunk.metadata = self._build_metadata(chunk)

        logger.debug(
            f"Chunked {len(text)} chars into {len(chunks)} chunks "
            f"({len(boundaries)} boundaries, max {self.max_chars} chars)"
        )
        return chunks

    def identify_boundaries(self, text: str) -> List[ChunkBoundary]:
        """Find boundary markers, merging those closer than the minimum spacing."""
        found: List[ChunkBoundary] = []
        for pattern, boundary_type, confidence, before in SEPARATORS:
            for match in pattern.finditer(text):
                position = match.start() if before else match.end()
                if 0 < position < len(text):
                    found.append(ChunkBoundary(position, boundary_type, confidence))

        found.sort(key=lambda b: (b.position, -b.confidence))

        merged: List[ChunkBoundary] = []
        for boundary in found:
            if merged and boundary.position - merged[-1].position < self.min_boundary_spacing:
                if boundary.confidence > merged[-1].confidence:
                    merged[-1] = boundary
                continue
            merged.append(boundary)
        return merged

    def _create_chunks(self, text: str, boundaries: List[ChunkBoundary]) -> List[SemanticChunk]:
        chunks: List[SemanticChunk] = []
        buffer_start = 0
        buffer_end = 0
        buffer_boundaries: List[ChunkBoundary] = []

        def flush(start: int, end: int, owned: List[ChunkBoundary]) -> None:
            raw = text[start:end]
            content = raw.strip()
            if not content:
                return
            lead = len(raw) - len(raw.lstrip())
            chunks.append(SemanticChunk(
                id=f"chunk_{len(chunks)}",
                content=content,
                start_index=start + lead,
                end_index=start + lead + len(content),
                boundaries=owned,
            ))

        stops = boundaries + [ChunkBoundary(len(text), BoundaryType.PARAGRAPH, 0)]
        for boundary in stops:
            segment_length = boundary.position - buffer_end
            if segment_length <= 0:
                continue
            if buffer_end > buffer_start and (buffer_end - buffer_start) + segment_length > self.max_chars:
                flush(buffer_start, buffer_end, buffer_boundaries)
                buffer_start = buffer_end
                buffer_boundaries = []
            buffer_end = boundary.position
            if boundary.confidence:
                buffer_boundaries.append(boundary)

        flush(buffer_start, buffer_end, buffer_boundaries)
        return chunks

    def _add_context(self, chunks: List[SemanticChunk]) -> None:
        previous: Optional[SemanticChunk] = None
        for chunk in chunks:
            chunk.prev_context = previous.content[-self.context_chars:] if previous else ""
            previous = chunk

    def _build_metadata(self, chunk: SemanticChunk) -> ChunkMetadata:
        content = chunk.content
        return ChunkMetadata(
            characters=self._find_speakers(content),
            scene_hint=self._find_scene_hint(content),
            importance=7 if self._starts_chapter(chunk) else 5,
            word_count=count_words(content),
            chunk_type=self.detect_chunk_type(content),
        )

    def _find_speakers(self, content: str, limit: int = 10) -> List[str]:
        names: List[str] = []
        for pattern in _SPEAKER_PATTERNS:
            for match in pattern.finditer(content):
                name = match.group(1).strip()
                if name and name not in names:
                    names.append(name)
        return names[:limit]

    def _find_scene_hint(self, content: str) -> Optional[str]:
        match = _SLUGLINE.search(content) or _CJK_LOCATION.search(content)
        return match.group(1).strip() if match else None

    @staticmethod
    def _starts_chapter(chunk: SemanticChunk) -> bool:
        return any(
            pattern.match(chunk.content)
            for pattern, boundary_type, _, _ in SEPARATORS
            if boundary_type == BoundaryType.CHAPTER
        )

    @staticmethod
    def detect_chunk_type(content: str) -> ChunkType:
        """Classify a chunk by its dominant content."""
        if len(content.strip()) < TRANSITION_MAX_CHARS:
            return ChunkType.TRANSITION
        if len(_DIALOGUE_MARKS.findall(content)) >= 4:
            return ChunkType.DIALOGUE
        if len(_ACTION_WORDS.findall(content)) >= 3:
            return ChunkType.ACTION
        return ChunkType.DESCRIPTION

    def get_chunk_at_position(self, chunks: List[SemanticChunk], position: int) -> Optional[SemanticChunk]:
        """
        Find the chunk containing a source offset.

        Offsets falling in whitespace stripped between chunks map to the
        following chunk.
        """
        for chunk in chunks:
            if chunk.contains_position(position) or position < chunk.start_index:
                return chunk
        return None

    def merge_small_chunks(self, chunks: List[SemanticChunk], min_size: int = 500) -> List[SemanticChunk]:
        """
        Merge each chunk shorter than ``min_size`` with its successor.

        Identifiers are renumbered sequentially and context is recomputed.
        """
        if not chunks:
            return []

        merged: List[SemanticChunk] = []
        current = chunks[0]
        for chunk in chunks[1:]:
            if current.length < min_size:
                current = SemanticChunk(
                    id=current.id,
                    content=f"{current.content}\n\n{chunk.content}",
                    start_index=current.start_index,
                    end_index=chunk.end_index,
                    boundaries=current.boundaries + chunk.boundaries,
                )
            else:
                merged.append(current)
                current = chunk
        merged.append(current)

        for index, chunk in enumerate(merged):
            chunk.id = f"chunk_{index}"
            if self.enrich_metadata:
                chunk.metadata = self._build_metadata(chunk)
        self._add_context(merged)
        return merged
