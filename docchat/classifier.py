"""
Chunk classification heuristics.

Tags a chunk with a coarse section label and a few lexical signals. These
are stored with the chunk for filtering and debugging; retrieval never
depends on them.
"""
import re
from dataclasses import dataclass

# First match wins, in this order.
SECTION_KEYWORDS = (
    ("abstract", ("abstract",)),
    ("introduction", ("introduction",)),
    ("methodology", ("methodology", "methods")),
    ("results", ("results",)),
    ("conclusion", ("conclusion",)),
    ("references", ("references", "bibliography")),
    ("figure_caption", ("figure", "fig.")),
    ("table", ("table",)),
)

DOMAIN_LEXICON = (
    "therefore", "however", "moreover", "furthermore", "consequently",
    "hypothesis", "analysis", "significant", "correlation", "evidence",
    "research", "study", "experiment", "observation", "conclusion",
)

EQUATION_PATTERNS = (
    re.compile(r"\$.*?\$"),
    re.compile(r"\\begin\{equation\}"),
    re.compile(r"\\\[.*?\\\]", re.DOTALL),
    re.compile(r"[a-z]\s*=\s*[\d\w]", re.IGNORECASE),
    re.compile(r"[∑∏∫√±≈≠≤≥]"),
)

CITATION_PATTERNS = (
    re.compile(r"\[\d+\]"),
    re.compile(r"\(\d{4}\)"),
    re.compile(r"et al\."),
    re.compile(r"\([A-Z][a-z]+,?\s+\d{4}\)"),
)


@dataclass(frozen=True)
class ChunkMetadata:
    chunk_index: int
    chunk_type: str
    keyword_count: int
    has_equations: bool
    has_citations: bool


def detect_chunk_type(text: str) -> str:
    lower = text.lower()
    for label, keywords in SECTION_KEYWORDS:
        if any(k in lower for k in keywords):
            return label
    return "body"


def count_keywords(text: str) -> int:
    """Number of distinct lexicon terms present, not total occurrences."""
    lower = text.lower()
    return sum(1 for term in DOMAIN_LEXICON if term in lower)


def has_equations(text: str) -> bool:
    return any(p.search(text) for p in EQUATION_PATTERNS)


def has_citations(text: str) -> bool:
    return any(p.search(text) for p in CITATION_PATTERNS)


def classify_chunk(text: str, chunk_index: int) -> ChunkMetadata:
    return ChunkMetadata(
        chunk_index=chunk_index,
        chunk_type=detect_chunk_type(text),
        keyword_count=count_keywords(text),
        has_equations=has_equations(text),
        has_citations=has_citations(text),
    )
