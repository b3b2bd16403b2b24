"""
Ingestion pipeline: load -> split -> classify -> embed -> write -> index.

A run either completes with every chunk written or ends 'failed' with no
chunks left behind.
"""
import asyncio
import uuid
from dataclasses import dataclass
from time import perf_counter
from typing import Optional

from ..chunking import ChunkSplitter
from ..classifier import classify_chunk
from ..embedding import EmbeddingBatcher
from ..exceptions import IngestionError, RetrievalError, StoreWriteError
from ..logging_config import logger
from ..retrieval import VectorStoreManager
from ..text_extraction import RawSource, load_pages
from ..utils.helpers import run_in_thread
from ..vectorstores import IndexedChunk
from .document_store import DocumentStore


@dataclass
class ProcessingResult:
    success: bool
    document_id: str
    chunks_created: int = 0
    error: Optional[str] = None
    processing_time_ms: float = 0.0


class IngestionService:
    def __init__(
        self,
        store: DocumentStore,
        vectors: VectorStoreManager,
        splitter: ChunkSplitter,
        embedder: EmbeddingBatcher,
    ):
        self.store = store
        self.vectors = vectors
        self.splitter = splitter
        self.embedder = embedder

    async def ingest(self, document_id: str, raw_source: RawSource) -> ProcessingResult:
        """
        Process one document.

        Raises ProcessingConflictError when a run is already in progress and
        DocumentNotFoundError for an unknown id. Pipeline failures do not
        raise; they come back as ProcessingResult(success=False).
        """
        self.store.claim_processing(document_id)
        t = perf_counter()
        logger.info("Processing document", document_id=document_id)

        try:
            pages = await asyncio.to_thread(load_pages, raw_source)
            chunks = self.splitter.split_pages(pages)
            if not chunks:
                raise IngestionError("No text content could be extracted from the document", stage="split")
            logger.info("Created chunks", document_id=document_id, chunk_count=len(chunks), pages=len(pages))

            vectors = await self.embedder.embed([c.text for c in chunks])

            rows, indexed = [], []
            for chunk, vector in zip(chunks, vectors):
                meta = classify_chunk(chunk.text, chunk.chunk_index)
                chunk_id = str(uuid.uuid4())
                rows.append({
                    "id": chunk_id,
                    "page_number": chunk.page_number,
                    "content": chunk.text,
                    "embedding": vector,
                    "chunk_index": meta.chunk_index,
                    "chunk_type": meta.chunk_type,
                    "keyword_count": meta.keyword_count,
                    "has_equations": meta.has_equations,
                    "has_citations": meta.has_citations,
                })
                indexed.append(IndexedChunk(
                    chunk_id=chunk_id,
                    content=chunk.text,
                    page_number=chunk.page_number,
                    vector=vector,
                    metadata={"chunk_index": meta.chunk_index, "chunk_type": meta.chunk_type},
                ))

            await run_in_thread(self.store.replace_chunks, document_id, rows)
            try:
                await self.vectors.index_chunks(document_id, indexed)
            except RetrievalError as e:
                raise StoreWriteError(f"Failed to index chunks: {e.message}") from e

            if any(p.page_number is not None for p in pages):
                page_count = len(pages)
            else:
                page_count = max(c.page_number for c in chunks)
            self.store.set_page_count(document_id, page_count)
            self.store.mark_completed(document_id, len(rows))

        except IngestionError as e:
            await self._discard(document_id)
            self.store.mark_failed(document_id, e.message)
            elapsed = round((perf_counter() - t) * 1000, 2)
            logger.error("Document processing failed", document_id=document_id, stage=e.stage, error=e.message)
            return ProcessingResult(
                success=False, document_id=document_id, error=e.message, processing_time_ms=elapsed
            )
        except asyncio.CancelledError:
            await asyncio.shield(self._discard(document_id))
            self.store.mark_failed(document_id, "Processing was cancelled")
            logger.warning("Document processing cancelled", document_id=document_id)
            raise
        except Exception as e:
            await self._discard(document_id)
            self.store.mark_failed(document_id, str(e))
            logger.error("Document processing crashed", document_id=document_id, exc_info=e)
            raise

        elapsed = round((perf_counter() - t) * 1000, 2)
        logger.info(
            "Document processed successfully",
            document_id=document_id,
            chunks=len(rows),
            page_count=page_count,
            time_ms=elapsed,
        )
        return ProcessingResult(
            success=True, document_id=document_id, chunks_created=len(rows), processing_time_ms=elapsed
        )

    async def _discard(self, document_id: str) -> None:
        """Remove whatever a failed run managed to write."""
        self.store.delete_chunks(document_id)
        try:
            await self.vectors.delete_collection(document_id)
        except RetrievalError as e:
            logger.warning("Could not clear vectors of failed run", document_id=document_id, error=e.message)
