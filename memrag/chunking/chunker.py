"""
memrag - Content Chunker
-------------------------
Splits development-activity records into token-bounded, coherent pieces.

Each data type has its own sizing (session notes are chatty, configs are
terse, code wants whole functions). Strategy:

  - Content within the type's target size stays a single chunk.
  - Otherwise fenced code blocks and error/stack-trace blocks are lifted
    out behind placeholders so the splitter never cuts through them, the
    remaining prose is split at the best boundary (paragraph > line >
    sentence > word), and the blocks are put back in their slots.
  - Every chunk is bounded by target_size + overlap estimated tokens;
    anything larger (typically a huge preserved block) is bisected.
  - Chunks under the type's minimum size are dropped, except that a short
    trailing chunk is folded into a predecessor below 70% of target.
"""
from __future__ import annotations

import re

from loguru import logger

from memrag.chunking.schemas import Chunk, ChunkMetadata, ChunkStats, ChunkingConfig
from memrag.chunking.tokenizer import count_tokens, split_at_boundaries, split_to_token_limit
from memrag.schemas import DataType, ParentMetadata

# ── Constants ─────────────────────────────────────────────────────────────────

CHUNKING_CONFIGS: dict[DataType, ChunkingConfig] = {
    DataType.SESSION: ChunkingConfig(target_size=512, overlap=50, min_chunk_size=100),
    DataType.CODE: ChunkingConfig(
        target_size=1500, overlap=0, preserve_errors=False, min_chunk_size=100
    ),
    DataType.DEPLOYMENT: ChunkingConfig(
        target_size=256, overlap=25, preserve_code_blocks=False, min_chunk_size=50
    ),
    DataType.LEARNING: ChunkingConfig(
        target_size=512, overlap=50, preserve_errors=False, min_chunk_size=150
    ),
    DataType.ERROR: ChunkingConfig(target_size=512, overlap=100, min_chunk_size=100),
    DataType.CONFIG: ChunkingConfig(
        target_size=256, overlap=0, preserve_errors=False, min_chunk_size=50
    ),
    DataType.SYSTEM_SNAPSHOT: ChunkingConfig(target_size=1024, overlap=100, min_chunk_size=200),
    DataType.METRIC: ChunkingConfig(
        target_size=256, overlap=0, preserve_code_blocks=False, preserve_errors=False,
        min_chunk_size=50,
    ),
    DataType.DEFAULT: ChunkingConfig(target_size=512, overlap=50, min_chunk_size=100),
}

SMALL_PREDECESSOR_RATIO = 0.7    # a trailing runt may merge into a predecessor below this share of target
CHUNK_SEPARATOR = "\n\n---\n\n"

_CODE_FENCE = re.compile(r"```[\s\S]*?```")
_ERROR_BLOCK = re.compile(
    r"((?:^|\n)(?:Error|TypeError|ReferenceError|SyntaxError|Exception|Failed|FATAL)[^\n]*"
    r"(?:\n(?:\s+at\s+[^\n]+|\s{2,}[^\n]+))*)",
    re.IGNORECASE,
)
_PLACEHOLDER = re.compile(r"\[(CODE|ERROR)_BLOCK_PLACEHOLDER_(\d+)\]")
_MIN_PRESERVED_ERROR_CHARS = 50


def get_chunking_config(data_type: DataType | str) -> ChunkingConfig:
    return CHUNKING_CONFIGS.get(DataType.parse(data_type), CHUNKING_CONFIGS[DataType.DEFAULT])


# --- Derived flags ------------------------------------------------------------

def has_code_block(text: str) -> bool:
    if re.search(r"```[\s\S]*```", text):
        return True
    if re.search(r"\n {4,}\S.*\n {4,}\S", text):
        return True
    return bool(
        re.search(r"function\s+\w+\s*\(", text)
        or re.search(r"class\s+\w+", text)
        or re.search(r"const\s+\w+\s*=", text)
        or re.search(r"import\s+.*from", text)
    )


_ERROR_PATTERNS = (
    re.compile(r"error:", re.IGNORECASE),
    re.compile(r"exception:", re.IGNORECASE),
    re.compile(r"failed:", re.IGNORECASE),
    re.compile(r"failure:", re.IGNORECASE),
    re.compile(r"stack\s*trace", re.IGNORECASE),
    re.compile(r"at\s+\w+\.\w+\s*\("),
    re.compile(r"TypeError|ReferenceError|SyntaxError|Error"),
    re.compile(r"ERR_|ENOENT|EACCES"),
)


def has_error(text: str) -> bool:
    return any(p.search(text) for p in _ERROR_PATTERNS)


def has_header(text: str) -> bool:
    if re.match(r"^#{1,6}\s+\S", text):
        return True
    return bool(re.match(r"^\S.*\n[=-]+\s*$", text))


def extract_section_title(text: str) -> str | None:
    md = re.match(r"^(#{1,6})\s+(.+?)(?:\n|$)", text)
    if md:
        return md.group(2).strip()[:100]
    underline = re.search(r"^(.+?)\n[=-]+\s*$", text, re.MULTILINE)
    if underline:
        return underline.group(1).strip()[:100]
    return None


# ── Main Chunker ──────────────────────────────────────────────────────────────

class ContentChunker:
    """
    Chunks one document's content according to its data type.

    Usage:
        chunker = ContentChunker()
        chunks = chunker.chunk(content, "session_abc123", parent_metadata)
    """

    def __init__(self, configs: dict[DataType, ChunkingConfig] | None = None) -> None:
        self.configs = dict(CHUNKING_CONFIGS)
        if configs:
            self.configs.update(configs)

    def config_for(self, data_type: DataType | str) -> ChunkingConfig:
        return self.configs.get(DataType.parse(data_type), self.configs[DataType.DEFAULT])

    def chunk(self, content: str, parent_id: str, parent_metadata: ParentMetadata) -> list[Chunk]:
        if not content or not content.strip():
            return []

        config = self.config_for(parent_metadata.data_type)
        content_tokens = count_tokens(content)

        if content_tokens <= config.target_size:
            return [self._make_chunk(content, parent_id, 0, 1, parent_metadata)]

        segments = self._split(content, config)
        segments = self._apply_min_size(segments, config)

        total = len(segments)
        chunks = [
            self._make_chunk(segment, parent_id, index, total, parent_metadata)
            for index, segment in enumerate(segments)
        ]
        logger.debug(
            f"[Chunker] {parent_id} | {parent_metadata.data_type.value} | "
            f"{content_tokens} tokens -> {total} chunk(s)"
        )
        return chunks

    # --- Splitting ------------------------------------------------------------

    def _split(self, content: str, config: ChunkingConfig) -> list[str]:
        blocks: list[str] = []
        working = content

        if config.preserve_code_blocks:
            working = _CODE_FENCE.sub(lambda m: self._stash(blocks, m.group(0), "CODE"), working)

        if config.preserve_errors:
            def _error_sub(match: re.Match) -> str:
                block = match.group(0)
                if len(block.strip()) > _MIN_PRESERVED_ERROR_CHARS:
                    return self._stash(blocks, block.strip(), "ERROR")
                return block

            working = _ERROR_BLOCK.sub(_error_sub, working)

        raw_segments = split_at_boundaries(working, config.target_size, config.overlap)
        segments = self._reinsert(raw_segments, blocks)

        bounded: list[str] = []
        for segment in segments:
            if count_tokens(segment) <= config.max_tokens:
                bounded.append(segment)
            else:
                bounded.extend(split_to_token_limit(segment, config.max_tokens))
        return [s for s in bounded if s.strip()]

    @staticmethod
    def _stash(blocks: list[str], block: str, kind: str) -> str:
        blocks.append(block)
        return f"\n[{kind}_BLOCK_PLACEHOLDER_{len(blocks) - 1}]\n"

    @staticmethod
    def _reinsert(segments: list[str], blocks: list[str]) -> list[str]:
        """
        Put preserved blocks back into their placeholder slots.

        A placeholder repeated by window overlap is filled only at its first
        occurrence; blocks whose placeholder never survived are appended.
        """
        used: set[int] = set()

        def _fill(match: re.Match) -> str:
            index = int(match.group(2))
            if index in used or index >= len(blocks):
                return ""
            used.add(index)
            return blocks[index]

        restored = [_PLACEHOLDER.sub(_fill, segment).strip() for segment in segments]
        restored = [s for s in restored if s]
        restored.extend(block for i, block in enumerate(blocks) if i not in used)
        return restored

    # --- Size floor -----------------------------------------------------------

    @staticmethod
    def _apply_min_size(segments: list[str], config: ChunkingConfig) -> list[str]:
        kept: list[str] = []
        last = len(segments) - 1
        for position, segment in enumerate(segments):
            tokens = count_tokens(segment)
            if tokens >= config.min_chunk_size:
                kept.append(segment)
                continue
            if position == last and kept:
                predecessor = kept[-1]
                merged = predecessor + "\n\n" + segment
                if (
                    count_tokens(predecessor) < config.target_size * SMALL_PREDECESSOR_RATIO
                    and count_tokens(merged) <= config.max_tokens
                ):
                    kept[-1] = merged
            # anything else under the floor is dropped

        if not kept:
            return segments
        return kept

    # --- Construction ---------------------------------------------------------

    @staticmethod
    def _make_chunk(
        content: str,
        parent_id: str,
        index: int,
        total: int,
        parent: ParentMetadata,
    ) -> Chunk:
        metadata = ChunkMetadata(
            source=parent.source,
            data_type=parent.data_type,
            project=parent.project,
            domain=parent.domain,
            action=parent.action,
            status=parent.status,
            entities=list(parent.entities),
            summary=parent.summary,
            importance=parent.importance,
            timestamp=parent.timestamp,
            session_date=parent.session_date,
            week=parent.week,
            chunk_index=index,
            total_chunks=total,
            has_code_block=has_code_block(content),
            has_error=has_error(content),
            has_header=has_header(content),
            section_title=extract_section_title(content),
            content_preview=content[:500],
        )
        return Chunk(
            id=f"{parent_id}_chunk_{index}",
            parent_id=parent_id,
            content=content,
            chunk_index=index,
            total_chunks=total,
            token_count=count_tokens(content),
            metadata=metadata,
        )


_DEFAULT_CHUNKER = ContentChunker()


def chunk_content(content: str, parent_id: str, parent_metadata: ParentMetadata) -> list[Chunk]:
    return _DEFAULT_CHUNKER.chunk(content, parent_id, parent_metadata)


def chunk_code_content(content: str, parent_id: str, parent_metadata: ParentMetadata) -> list[Chunk]:
    """Chunk with the code profile regardless of the parent's data type."""
    as_code = parent_metadata.model_copy(update={"data_type": DataType.CODE})
    return _DEFAULT_CHUNKER.chunk(content, parent_id, as_code)


def get_chunk_stats(chunks: list[Chunk]) -> ChunkStats:
    if not chunks:
        return ChunkStats()
    counts = [c.token_count for c in chunks]
    return ChunkStats(
        total_chunks=len(chunks),
        total_tokens=sum(counts),
        avg_tokens_per_chunk=round(sum(counts) / len(counts)),
        min_chunk_tokens=min(counts),
        max_chunk_tokens=max(counts),
        chunks_with_code=sum(1 for c in chunks if c.metadata.has_code_block),
        chunks_with_errors=sum(1 for c in chunks if c.metadata.has_error),
    )


def reassemble_from_chunks(chunks: list[Chunk]) -> str:
    """Join chunks back in order (overlap regions are not de-duplicated)."""
    ordered = sorted(chunks, key=lambda c: c.chunk_index)
    return CHUNK_SEPARATOR.join(c.content for c in ordered)
