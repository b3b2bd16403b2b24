"""
Recursive, overlap-aware chunk splitter.

Text is cut at the most natural boundary that keeps a chunk under the size
budget: paragraph break, then line break, then sentence end, then space,
and only as a last resort at a hard character offset. Chunks keep their
offsets into the page text they came from, so page.text[start:end] is
always exactly the chunk text.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .text_extraction import PageText

DEFAULT_SEPARATORS = ("\n\n", "\n", ". ", " ", "")

Span = Tuple[int, int]


@dataclass(frozen=True)
class TextChunk:
    text: str
    page_number: int
    page_estimated: bool
    chunk_index: int
    start: int
    end: int


class ChunkSplitter:
    """
    Split page text into ordered, size-bounded, overlapping chunks.

    Args:
        chunk_size: Maximum characters per chunk
        chunk_overlap: Maximum characters shared by two adjacent chunks
        separators: Boundaries to try, most natural first. "" means hard cut.
        chunks_per_page: Chunks grouped into one synthetic page when the
            source has no pagination. The resulting page numbers are an
            estimate, not a page map.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 100,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
        chunks_per_page: int = 5,
    ):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        if chunks_per_page <= 0:
            raise ValueError("chunks_per_page must be positive")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = list(separators)
        self.chunks_per_page = chunks_per_page

    def split_pages(self, pages: Sequence[PageText]) -> List[TextChunk]:
        """Split every page in order; chunk_index runs across the whole document."""
        chunks: List[TextChunk] = []
        for page in pages:
            for start, end in self.split_spans(page.text):
                index = len(chunks)
                if page.page_number is not None:
                    page_number, estimated = page.page_number, False
                else:
                    page_number, estimated = index // self.chunks_per_page + 1, True
                chunks.append(TextChunk(
                    text=page.text[start:end],
                    page_number=page_number,
                    page_estimated=estimated,
                    chunk_index=index,
                    start=start,
                    end=end,
                ))
        return chunks

    def split_text(self, text: str) -> List[str]:
        return [text[start:end] for start, end in self.split_spans(text)]

    def split_spans(self, text: str) -> List[Span]:
        spans = self._split(text, 0, len(text), self.separators)
        stripped = (self._strip(text, start, end) for start, end in spans)
        return [span for span in stripped if span is not None]

    def _split(self, text: str, start: int, end: int, separators: Sequence[str]) -> List[Span]:
        if end - start <= self.chunk_size:
            return [(start, end)]

        separator, remaining = "", []
        for i, sep in enumerate(separators):
            if sep == "":
                break
            if text.find(sep, start, end) != -1:
                separator, remaining = sep, separators[i + 1:]
                break

        if not separator:
            return self._window(start, end)

        chunks: List[Span] = []
        pending: List[Span] = []
        for piece_start, piece_end in self._cut(text, start, end, separator):
            if piece_end - piece_start <= self.chunk_size:
                pending.append((piece_start, piece_end))
                continue
            if pending:
                chunks.extend(self._merge(pending))
                pending = []
            chunks.extend(self._split(text, piece_start, piece_end, remaining))
        if pending:
            chunks.extend(self._merge(pending))
        return chunks

    @staticmethod
    def _cut(text: str, start: int, end: int, separator: str) -> List[Span]:
        # Separator stays attached to the end of the piece before it.
        pieces = []
        pos = start
        while True:
            idx = text.find(separator, pos, end)
            if idx == -1:
                break
            cut = idx + len(separator)
            pieces.append((pos, cut))
            pos = cut
        if pos < end:
            pieces.append((pos, end))
        return pieces

    def _merge(self, pieces: List[Span]) -> List[Span]:
        # Pieces are contiguous, so a run of pieces is a single span.
        chunks: List[Span] = []
        current: List[Span] = []
        total = 0
        for start, end in pieces:
            length = end - start
            if current and total + length > self.chunk_size:
                chunks.append((current[0][0], current[-1][1]))
                while current and (total > self.chunk_overlap or total + length > self.chunk_size):
                    total -= current[0][1] - current[0][0]
                    current.pop(0)
            current.append((start, end))
            total += length
        if current:
            chunks.append((current[0][0], current[-1][1]))
        return chunks

    def _window(self, start: int, end: int) -> List[Span]:
        step = self.chunk_size - self.chunk_overlap
        spans = []
        pos = start
        while True:
            stop = min(pos + self.chunk_size, end)
            spans.append((pos, stop))
            if stop >= end:
                break
            pos += step
        return spans

    @staticmethod
    def _strip(text: str, start: int, end: int) -> Optional[Span]:
        while start < end and text[start].isspace():
            start += 1
        while end > start and text[end - 1].isspace():
            end -= 1
        return (start, end) if start < end else None
