"""
Pydantic schemas for request/response validation.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .retrieval import RetrievalOptions

SearchType = Literal["similarity", "mmr", "hybrid"]


class RetrievalParams(BaseModel):
    """Per-request retrieval overrides; unset fields fall back to the configured defaults."""
    k: Optional[int] = Field(None, ge=1, le=20, description="Number of chunks to retrieve")
    search_type: Optional[SearchType] = Field(None, description="similarity, mmr or hybrid")
    score_threshold: Optional[float] = Field(None, ge=0.0, le=1.0, description="Minimum similarity score")
    fetch_k: Optional[int] = Field(None, ge=1, le=100, description="MMR candidate pool size")
    lambda_mult: Optional[float] = Field(None, ge=0.0, le=1.0, description="MMR relevance/diversity balance")

    def to_options(self, defaults: RetrievalOptions) -> RetrievalOptions:
        return RetrievalOptions(
            k=self.k if self.k is not None else defaults.k,
            search_type=self.search_type or defaults.search_type,
            score_threshold=self.score_threshold if self.score_threshold is not None else defaults.score_threshold,
            fetch_k=self.fetch_k if self.fetch_k is not None else defaults.fetch_k,
            lambda_mult=self.lambda_mult if self.lambda_mult is not None else defaults.lambda_mult,
        )


class AskBody(RetrievalParams):
    """Request body for asking questions."""
    question: str = Field(..., min_length=1, description="The question to ask")
    session_id: Optional[int] = Field(None, description="Existing chat session ID or None for a new session")
    document_id: Optional[str] = Field(None, description="Document to answer from")


class Source(BaseModel):
    """A retrieved chunk used to answer."""
    chunk_id: str
    content: str
    preview: str
    page_number: int
    score: float
    search_type: str


class Citation(BaseModel):
    chunk_id: str
    page_number: int
    score: float
    cited_in_answer: bool


class AskResponse(BaseModel):
    answer: str
    sources: List[Source]
    citations: List[Citation]
    session_id: int
    query_time_ms: float


class CreateSessionBody(BaseModel):
    document_id: Optional[str] = None
    title: Optional[str] = Field(None, max_length=200)


class ProcessingResponse(BaseModel):
    success: bool
    document_id: str
    chunks_created: int
    error: Optional[str] = None
    processing_time_ms: float


class ReprocessResponse(BaseModel):
    success: bool
    message: str
