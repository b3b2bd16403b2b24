"""
RAG agent: the caller-facing entry point.

Ties ingestion, retrieval, generation and persistence together. Service
handles are passed in; build_agent() wires the production ones.
"""
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Dict, List, Optional

from ..exceptions import DocumentNotFoundError, ProcessingConflictError
from ..logging_config import logger
from ..models import ProcessingState
from ..retrieval import RetrievalOptions, VectorStoreManager
from ..text_extraction import RawSource, file_type_of
from ..utils.helpers import extract_page_references, run_in_thread
from .document_store import DocumentStore
from .ingestion_service import IngestionService, ProcessingResult
from .rag_chain import ConversationContext, OnChunk, RAGChain, RAGResponse


@dataclass
class QueryResult:
    answer: str
    sources: List[Dict] = field(default_factory=list)
    citations: List[Dict] = field(default_factory=list)
    session_id: Optional[int] = None
    query_time_ms: float = 0.0


def build_citations(answer: str, sources: List[Dict]) -> List[Dict]:
    """One citation per source, flagged when the answer mentions its page."""
    referenced = extract_page_references(answer)
    return [
        {
            "chunk_id": s["chunk_id"],
            "page_number": s["page_number"],
            "score": s["score"],
            "cited_in_answer": s["page_number"] in referenced,
        }
        for s in sources
    ]


class RAGAgent:
    def __init__(
        self,
        store: DocumentStore,
        vectors: VectorStoreManager,
        chain: RAGChain,
        ingestion: IngestionService,
        history_max_messages: int = 20,
    ):
        self.store = store
        self.vectors = vectors
        self.chain = chain
        self.ingestion = ingestion
        self.history_max_messages = history_max_messages

    # ==================== Documents ====================

    def _get_document(self, document_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        doc = self.store.get_document(document_id)
        if user_id is not None and doc["user_id"] not in (None, user_id):
            raise DocumentNotFoundError(document_id)
        return doc

    async def process_document(self, document_id: str, raw_source: RawSource,
                               user_id: Optional[str] = None) -> ProcessingResult:
        self._get_document(document_id, user_id)
        result = await self.ingestion.ingest(document_id, raw_source)
        logger.info(
            "Document processing finished",
            user_id=user_id,
            document_id=document_id,
            success=result.success,
            chunks=result.chunks_created,
        )
        return result

    async def reprocess(self, document_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Rebuild all chunks of a document from its stored source.
        Raises ProcessingConflictError while a run is in progress.
        """
        doc = self._get_document(document_id, user_id)
        status = self.store.get_status(document_id)
        if status and status["status"] == ProcessingState.PROCESSING:
            raise ProcessingConflictError(document_id)

        self.store.reset_pending(document_id)
        await self.vectors.delete_collection(document_id)
        self.store.delete_chunks(document_id)

        raw_source = RawSource(
            path=doc["storage_path"],
            file_type=file_type_of(doc["source"], doc["mime_type"] or ""),
        )
        result = await self.process_document(document_id, raw_source, user_id)
        if result.success:
            message = f"Document reprocessed successfully with {result.chunks_created} chunks"
        else:
            message = f"Reprocessing failed: {result.error}"
        return {"success": result.success, "message": message}

    async def delete_document(self, document_id: str, user_id: Optional[str] = None) -> None:
        """Remove the vector collection, then the chunk rows, then the document row."""
        self._get_document(document_id, user_id)
        await self.vectors.delete_collection(document_id)
        self.store.delete_chunks(document_id)
        self.store.delete_document(document_id)
        logger.info("Document deleted", document_id=document_id)

    def get_processing_status(self, document_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        self._get_document(document_id, user_id)
        return self.store.get_status(document_id)

    async def get_document_stats(self, document_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        doc = self._get_document(document_id, user_id)
        return {
            "document_id": document_id,
            "page_count": doc["page_count"],
            **await self.vectors.collection_stats(document_id),
            **self.store.chunk_stats(document_id),
            "processing_status": self.store.get_status(document_id),
        }

    # ==================== Chat sessions ====================

    def create_chat_session(self, user_id: str, document_id: Optional[str] = None,
                            title: Optional[str] = None) -> Dict[str, Any]:
        return self.store.create_session(user_id, document_id, title)

    def get_chat_session(self, session_id: int, user_id: Optional[str] = None) -> Dict[str, Any]:
        return self.store.get_chat_session(session_id, user_id)

    def get_user_chat_sessions(self, user_id: str, document_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.store.list_sessions(user_id, document_id)

    def _load_window(self, session_id: int) -> None:
        # chat_messages is the source of truth; other workers may have added turns since the last seed
        self.chain.history.seed(
            session_id, self.store.recent_messages(session_id, self.history_max_messages)
        )

    def _prepare(self, user_id: str, session_id: Optional[int],
                 document_id: Optional[str]) -> ConversationContext:
        if session_id is not None:
            session = self.store.get_chat_session(session_id, user_id, include_messages=False)
            document_id = document_id or session["document_id"]
            self._load_window(session_id)
        if document_id is not None:
            self._get_document(document_id, user_id)
        return ConversationContext(session_id=session_id, document_id=document_id)

    async def _finish(self, question: str, user_id: str, context: ConversationContext,
                      response: RAGResponse, started: float) -> QueryResult:
        session_id = context.session_id
        if session_id is None:
            session_id = self.store.create_session(
                user_id, context.document_id, title=question[:50]
            )["id"]

        citations = build_citations(response.answer, response.sources)
        await run_in_thread(self.store.record_exchange, session_id, question, response.answer, citations)
        self.chain.record_turn(session_id, question, response.answer)

        total_ms = round((perf_counter() - started) * 1000, 2)
        self.store.log_query(
            query=question,
            retrieval_method=response.retrieval_method,
            num_chunks_retrieved=len(response.sources),
            total_time_ms=total_ms,
            user_id=user_id,
            session_id=session_id,
        )
        logger.info(
            "Query completed",
            session_id=session_id,
            document_id=context.document_id,
            sources=len(response.sources),
            time_ms=total_ms,
        )
        return QueryResult(
            answer=response.answer,
            sources=response.sources,
            citations=citations,
            session_id=session_id,
            query_time_ms=total_ms,
        )

    # ==================== Questions ====================

    async def query(
        self,
        question: str,
        user_id: str,
        session_id: Optional[int] = None,
        document_id: Optional[str] = None,
        options: Optional[RetrievalOptions] = None,
    ) -> QueryResult:
        started = perf_counter()
        context = self._prepare(user_id, session_id, document_id)
        response = await self.chain.query(question, context, options)
        return await self._finish(question, user_id, context, response, started)

    async def stream_query(
        self,
        question: str,
        user_id: str,
        on_chunk: OnChunk,
        session_id: Optional[int] = None,
        document_id: Optional[str] = None,
        options: Optional[RetrievalOptions] = None,
    ) -> QueryResult:
        """Nothing is persisted unless the stream runs to completion."""
        started = perf_counter()
        context = self._prepare(user_id, session_id, document_id)
        response = await self.chain.stream_query(question, on_chunk, context, options)
        return await self._finish(question, user_id, context, response, started)

    async def summarize(self, document_id: str, user_id: Optional[str] = None) -> str:
        self._get_document(document_id, user_id)
        t = perf_counter()
        summary = await self.chain.generate_summary(document_id)
        self.store.log_query(
            query="Generate summary",
            retrieval_method="summary",
            num_chunks_retrieved=0,
            total_time_ms=round((perf_counter() - t) * 1000, 2),
            user_id=user_id,
        )
        return summary

    async def extract_insights(self, document_id: str, user_id: Optional[str] = None) -> List[str]:
        self._get_document(document_id, user_id)
        t = perf_counter()
        insights = await self.chain.extract_key_insights(document_id)
        self.store.log_query(
            query="Extract insights",
            retrieval_method="insights",
            num_chunks_retrieved=0,
            total_time_ms=round((perf_counter() - t) * 1000, 2),
            user_id=user_id,
        )
        return insights


def build_agent(settings) -> RAGAgent:
    """Wire the production services from settings."""
    from ..chunking import ChunkSplitter
    from ..db import SessionLocal, engine
    from ..embedding import EmbeddingBatcher, build_embedding_service
    from ..utils.cache import ConversationWindowCache
    from ..vectorstores import build_backend
    from .model_service import build_generator

    store = DocumentStore(SessionLocal)
    embedder = EmbeddingBatcher(
        build_embedding_service(settings),
        batch_size=settings.EMBED_BATCH_SIZE,
        timeout_s=settings.EMBED_TIMEOUT_S,
    )
    vectors = VectorStoreManager(
        build_backend(settings, engine),
        embedder,
        semantic_weight=settings.HYBRID_SEMANTIC_WEIGHT,
        fetch_k=settings.MMR_FETCH_K,
        lambda_mult=settings.MMR_LAMBDA,
    )
    chain = RAGChain(
        vectors,
        build_generator(settings),
        ConversationWindowCache(settings.HISTORY_CACHE_SESSIONS, settings.HISTORY_MAX_MESSAGES),
        default_options=RetrievalOptions(
            k=settings.RETRIEVAL_K,
            search_type=settings.RETRIEVAL_SEARCH_TYPE,
            score_threshold=settings.RETRIEVAL_SCORE_THRESHOLD,
            fetch_k=settings.MMR_FETCH_K,
            lambda_mult=settings.MMR_LAMBDA,
        ),
        history_prompt_messages=settings.HISTORY_PROMPT_MESSAGES,
        timeout_s=settings.GENERATION_TIMEOUT_S,
        summary_k=settings.SUMMARY_K,
        insights_k=settings.INSIGHTS_K,
    )
    splitter = ChunkSplitter(
        settings.CHUNK_SIZE,
        settings.CHUNK_OVERLAP,
        chunks_per_page=settings.CHUNKS_PER_ESTIMATED_PAGE,
    )
    ingestion = IngestionService(store, vectors, splitter, embedder)
    return RAGAgent(store, vectors, chain, ingestion, history_max_messages=settings.HISTORY_MAX_MESSAGES)
