"""
Chunker - Content-addressed chunks at natural code boundaries.

Files are first cut into units at declaration starts (a decorator directly
above a declaration belongs to it). Within a unit, segments cut at blank
lines are packed greedily into chunks bounded by max_chunk_bytes and
max_chunk_lines. Packing never crosses a unit boundary, so every chunk
starts where the content says it starts and an edit only changes the
chunks of its own unit. Later chunks keep their content hash; when the
file length changes their byte ranges move, which diff() recognizes so
their vectors are re-keyed rather than re-embedded.
"""

import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import ChunkerConfig
from .hasher import chunk_identifier, hash_bytes
from .models import Chunk, ChunkDiff


logger = logging.getLogger(__name__)

DECLARATION = re.compile(
    r"^\s*"
    r"(?:(?:pub(?:\([^)]*\))?|export|default|async|public|private|protected|static|"
    r"abstract|final|unsafe|extern|inline|override|virtual)\s+)*"
    r"(?:def|class|fn|func|function|impl|struct|enum|trait|interface|type|module|"
    r"namespace|protocol|extension)\b"
    r"(?:\s*\([^)]*\))?"            # Go receivers: func (s *Server) Name
    r"\s*(?:<[^>]*>\s*)?"           # Generics: impl<T> Name
    r"(?P<name>[A-Za-z_$][\w$]*)?"
)
DECORATOR = re.compile(rb"^\s*(?:@[A-Za-z_]|#\[)")   # Python/TS decorators, Rust attributes


class Chunker:
    """
    Splits file content into chunks.

    Usage:
        chunker = Chunker(ChunkerConfig())
        chunks = chunker.chunk("src/a.py", source_text)
    """

    def __init__(self, config: ChunkerConfig | None = None, max_file_bytes: Optional[int] = None):
        self.config = config or ChunkerConfig()
        self.max_file_bytes = max_file_bytes

    def chunk_bytes(self, path: str, data: bytes) -> List[Chunk]:
        """
        Chunk raw file bytes.

        Binary content (NUL byte) and files above max_file_bytes produce no
        chunks. Raises UnicodeDecodeError for undecodable text.
        """
        if self.max_file_bytes is not None and len(data) > self.max_file_bytes:
            logger.debug(f"Not chunking {path}: {len(data)} bytes exceeds limit")
            return []
        if b"\x00" in data:
            logger.debug(f"Not chunking {path}: binary content")
            return []
        return self.chunk(path, data.decode("utf-8"))

    def chunk(self, path: str, content: str) -> List[Chunk]:
        """Chunk decoded text. Chunks are returned in file order."""
        if "\x00" in content:
            return []

        lines = [line.encode("utf-8") for line in _split_lines(content)]
        chunks: List[Chunk] = []

        ranges = [
            packed
            for unit_start, unit_end in self._units(lines)
            for packed in self._pack(self._segments(lines, unit_start, unit_end), lines)
        ]

        byte_offset = 0
        for start, end in ranges:
            data = b"".join(lines[start:end])
            first_line = start + 1
            for piece_offset, piece in self._split_long_line(data):
                piece_start = byte_offset + piece_offset
                chunk = self._make_chunk(path, piece, piece_start, first_line, start, end, lines, data, piece_offset)
                if chunk is not None:
                    chunks.append(chunk)
            byte_offset += len(data)

        return chunks

    def _make_chunk(
        self,
        path: str,
        piece: bytes,
        start_byte: int,
        first_line: int,
        start: int,
        end: int,
        lines: Sequence[bytes],
        data: bytes,
        piece_offset: int,
    ) -> Optional[Chunk]:
        text = piece.decode("utf-8")
        if not text.strip():
            return None

        if len(piece) == len(data):
            start_line, end_line = first_line, end
        else:
            # A fragment of one oversized line
            start_line = end_line = first_line + data[:piece_offset].count(b"\n")

        content_hash = hash_bytes(piece)
        end_byte = start_byte + len(piece)
        return Chunk(
            chunk_id=chunk_identifier(path, start_byte, end_byte, content_hash),
            path=path,
            start_byte=start_byte,
            end_byte=end_byte,
            start_line=start_line,
            end_line=max(start_line, end_line),
            content_hash=content_hash,
            symbols=extract_symbols(text),
            text=text,
        )

    @staticmethod
    def _units(lines: Sequence[bytes]) -> List[Tuple[int, int]]:
        """Cut [0, len(lines)) before every declaration and the decorators stacked on it."""
        units: List[Tuple[int, int]] = []
        start = 0
        for i, line in enumerate(lines):
            if i <= start or not DECLARATION.match(line.decode("utf-8")):
                continue
            cut = i
            while cut - 1 > start and DECORATOR.match(lines[cut - 1]):
                cut -= 1
            units.append((start, cut))
            start = cut
        if start < len(lines):
            units.append((start, len(lines)))
        return units

    @staticmethod
    def _segments(lines: Sequence[bytes], start: int, end: int) -> List[Tuple[int, int]]:
        """Cut one unit at blank lines."""
        segments: List[Tuple[int, int]] = []
        for i in range(start, end):
            if not lines[i].strip():
                segments.append((start, i + 1))
                start = i + 1
        if start < end:
            segments.append((start, end))
        return segments

    def _pack(self, segments: Iterable[Tuple[int, int]], lines: Sequence[bytes]) -> List[Tuple[int, int]]:
        """Greedily merge consecutive segments of one unit while they fit the limits."""
        max_bytes = self.config.max_chunk_bytes
        max_lines = self.config.max_chunk_lines
        packed: List[Tuple[int, int]] = []

        current_start: Optional[int] = None
        current_end = 0
        current_bytes = 0

        for start, end in segments:
            for part_start, part_end in self._split_segment(start, end, lines):
                size = sum(len(line) for line in lines[part_start:part_end])
                fits = (
                    current_start is not None
                    and current_bytes + size <= max_bytes
                    and part_end - current_start <= max_lines
                )
                if fits:
                    current_end = part_end
                    current_bytes += size
                    continue
                if current_start is not None:
                    packed.append((current_start, current_end))
                current_start, current_end, current_bytes = part_start, part_end, size

        if current_start is not None:
            packed.append((current_start, current_end))
        return packed

    def _split_segment(self, start: int, end: int, lines: Sequence[bytes]) -> List[Tuple[int, int]]:
        """Split an oversized segment on line boundaries."""
        max_bytes = self.config.max_chunk_bytes
        max_lines = self.config.max_chunk_lines
        parts: List[Tuple[int, int]] = []
        part_start = start
        size = 0
        for i in range(start, end):
            line_size = len(lines[i])
            if i > part_start and (size + line_size > max_bytes or i - part_start >= max_lines):
                parts.append((part_start, i))
                part_start, size = i, 0
            size += line_size
        parts.append((part_start, end))
        return parts

    def _split_long_line(self, data: bytes) -> List[Tuple[int, bytes]]:
        """Split data above max_chunk_bytes (a single huge line) without cutting UTF-8 sequences."""
        max_bytes = self.config.max_chunk_bytes
        if len(data) <= max_bytes:
            return [(0, data)]

        pieces: List[Tuple[int, bytes]] = []
        offset = 0
        while offset < len(data):
            cut = min(offset + max_bytes, len(data))
            # Back off continuation bytes (10xxxxxx)
            while cut < len(data) and cut > offset + 1 and (data[cut] & 0xC0) == 0x80:
                cut -= 1
            pieces.append((offset, data[offset:cut]))
            offset = cut
        return pieces

    def diff(self, old: Sequence[Chunk], new: Sequence[Chunk]) -> ChunkDiff:
        """
        Partition chunk sets by content hash.

        New chunks whose content was present before are unchanged (their
        vectors carry over even if the byte range moved); the rest are added.
        Old chunks whose content is gone are removed.
        """
        old_hashes = {c.content_hash for c in old}
        new_hashes = {c.content_hash for c in new}
        return ChunkDiff(
            unchanged=tuple(c for c in new if c.content_hash in old_hashes),
            added=tuple(c for c in new if c.content_hash not in old_hashes),
            removed=tuple(c for c in old if c.content_hash not in new_hashes),
        )


def _split_lines(content: str) -> List[str]:
    """Split on "\\n" only, keeping line endings."""
    parts = content.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def extract_symbols(text: str) -> Tuple[str, ...]:
    """Declared names in a chunk, in order of appearance, without duplicates."""
    names: List[str] = []
    for line in text.split("\n"):
        match = DECLARATION.match(line)
        if match and match.group("name") and match.group("name") not in names:
            names.append(match.group("name"))
    return tuple(names)
