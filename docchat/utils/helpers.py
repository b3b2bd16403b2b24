"""
Utility helper functions.
"""
import asyncio
import re
from typing import Any, Callable, Dict, List, Set

from ..vectorstores import SearchHit

BULLET_MARKERS = ("•", "-", "*")

_PAGE_REF = re.compile(r"\b(?:page|p\.|pp\.)\s*(\d+)(?:\s*[-–]\s*(\d+))?", re.IGNORECASE)


def build_sources(hits: List[SearchHit], preview_chars: int = 200) -> List[Dict]:
    """
    Turn retrieved hits into caller-facing source dicts, in retrieval order.

    Example:
        >>> build_sources([SearchHit("c1", "Long text...", 3, 0.81234)])
        [{'chunk_id': 'c1', 'content': 'Long text...', 'preview': 'Long text...', 'page_number': 3, 'score': 0.812, 'search_type': 'similarity'}]
    """
    sources = []
    for hit in hits:
        preview = hit.content[:preview_chars].strip()
        if len(hit.content) > preview_chars:
            preview += "..."
        sources.append({
            "chunk_id": hit.chunk_id,
            "content": hit.content,
            "preview": preview,
            "page_number": hit.page_number,
            "score": round(float(hit.score), 3),
            "search_type": hit.search_type,
        })
    return sources


def extract_page_references(answer: str) -> Set[int]:
    """
    Page numbers an answer refers to: "page 3", "p. 4", "pp. 5-7" and the
    "(Page 3)" form used in the context block.
    """
    pages: Set[int] = set()
    for match in _PAGE_REF.finditer(answer):
        first = int(match.group(1))
        last = int(match.group(2)) if match.group(2) else first
        if last < first or last - first > 50:
            last = first
        pages.update(range(first, last + 1))
    return pages


def bullet_lines(text: str) -> List[str]:
    """Lines that start with a bullet marker, marker and surrounding whitespace removed."""
    items = []
    for line in text.splitlines():
        line = line.strip()
        if line.startswith(BULLET_MARKERS):
            item = line[1:].strip()
            if item:
                items.append(item)
    return items


async def run_in_thread(fn: Callable, *args) -> Any:
    """
    asyncio.to_thread, except that a cancelled caller waits for the worker
    thread to return before CancelledError propagates. Cleanup that runs
    after the cancellation then never races a write still in flight.
    """
    future = asyncio.ensure_future(asyncio.to_thread(fn, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait([future])
        raise
