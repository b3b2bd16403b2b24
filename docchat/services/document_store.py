"""
Relational store for documents, chunks, processing status, chat sessions,
messages, citations and query logs.

Every public method runs in its own transaction through get_session().
"""
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..db import get_session
from ..exceptions import (
    DocumentNotFoundError,
    ProcessingConflictError,
    SessionNotFoundError,
    StoreWriteError,
)
from ..logging_config import logger
from ..models import (
    ChatMessage,
    ChatSession,
    Chunk,
    Document,
    MessageCitation,
    ProcessingState,
    ProcessingStatus,
    QueryLog,
    utcnow,
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _document_dict(doc: Document) -> Dict[str, Any]:
    return {
        "id": doc.id,
        "user_id": doc.user_id,
        "title": doc.title,
        "source": doc.source,
        "storage_path": doc.storage_path,
        "mime_type": doc.mime_type,
        "page_count": doc.page_count,
        "created_at": _iso(doc.created_at),
        "updated_at": _iso(doc.updated_at),
    }


def _status_dict(row: ProcessingStatus) -> Dict[str, Any]:
    return {
        "document_id": row.document_id,
        "status": row.status,
        "processing_started_at": _iso(row.processing_started_at),
        "processing_completed_at": _iso(row.processing_completed_at),
        "total_chunks": row.total_chunks,
        "error_message": row.error_message,
    }


def _session_dict(row: ChatSession) -> Dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "document_id": row.document_id,
        "title": row.title,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


class DocumentStore:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ==================== Documents ====================

    def create_document(
        self,
        title: str,
        source: str,
        user_id: Optional[str] = None,
        storage_path: Optional[str] = None,
        mime_type: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        with get_session(self.session_factory) as session:
            doc = Document(
                title=title,
                source=source,
                user_id=user_id,
                storage_path=storage_path,
                mime_type=mime_type,
            )
            if document_id:
                doc.id = document_id
            session.add(doc)
            session.flush()
            session.add(ProcessingStatus(document_id=doc.id, status=ProcessingState.PENDING))
            session.commit()
            logger.info("Created document", document_id=doc.id, source=source)
            return _document_dict(doc)

    def get_document(self, document_id: str) -> Dict[str, Any]:
        with get_session(self.session_factory) as session:
            doc = session.get(Document, document_id)
            if doc is None:
                raise DocumentNotFoundError(document_id)
            return _document_dict(doc)

    def list_documents(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Documents with chunk counts and processing status, newest first."""
        with get_session(self.session_factory) as session:
            stmt = (
                select(Document, func.count(Chunk.id), ProcessingStatus.status)
                .outerjoin(Chunk, Chunk.document_id == Document.id)
                .outerjoin(ProcessingStatus, ProcessingStatus.document_id == Document.id)
                .group_by(Document.id, ProcessingStatus.status)
                .order_by(Document.created_at.desc())
            )
            if user_id is not None:
                stmt = stmt.where(Document.user_id == user_id)
            rows = session.execute(stmt).all()
            return [
                {**_document_dict(doc), "num_chunks": count, "status": status}
                for doc, count, status in rows
            ]

    def delete_document(self, document_id: str) -> bool:
        """Delete the document row; chunks, status, sessions and messages cascade."""
        with get_session(self.session_factory) as session:
            result = session.execute(delete(Document).where(Document.id == document_id))
            session.commit()
            return result.rowcount > 0

    def set_page_count(self, document_id: str, page_count: int) -> None:
        with get_session(self.session_factory) as session:
            session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(page_count=page_count, updated_at=utcnow())
            )
            session.commit()

    # ==================== Processing status ====================

    def claim_processing(self, document_id: str) -> None:
        """
        Move the document to 'processing'.

        The conditional UPDATE is the only guard against concurrent runs: it
        matches nothing when another run already holds the document.
        """
        now = utcnow()
        with get_session(self.session_factory) as session:
            if session.get(Document, document_id) is None:
                raise DocumentNotFoundError(document_id)

            result = session.execute(
                update(ProcessingStatus)
                .where(
                    ProcessingStatus.document_id == document_id,
                    ProcessingStatus.status != ProcessingState.PROCESSING,
                )
                .values(
                    status=ProcessingState.PROCESSING,
                    processing_started_at=now,
                    processing_completed_at=None,
                    total_chunks=0,
                    error_message=None,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                exists = session.execute(
                    select(ProcessingStatus.id).where(ProcessingStatus.document_id == document_id)
                ).first()
                if exists:
                    raise ProcessingConflictError(document_id)
                session.add(ProcessingStatus(
                    document_id=document_id,
                    status=ProcessingState.PROCESSING,
                    processing_started_at=now,
                ))
            try:
                session.commit()
            except IntegrityError as e:
                # Another run inserted the status row first
                raise ProcessingConflictError(document_id) from e

    def mark_completed(self, document_id: str, total_chunks: int) -> None:
        self._set_status(
            document_id,
            status=ProcessingState.COMPLETED,
            processing_completed_at=utcnow(),
            total_chunks=total_chunks,
            error_message=None,
        )

    def mark_failed(self, document_id: str, error: str) -> None:
        self._set_status(
            document_id,
            status=ProcessingState.FAILED,
            processing_completed_at=utcnow(),
            total_chunks=0,
            error_message=error,
        )

    def reset_pending(self, document_id: str) -> None:
        self._set_status(
            document_id,
            status=ProcessingState.PENDING,
            processing_started_at=None,
            processing_completed_at=None,
            total_chunks=0,
            error_message=None,
        )

    def _set_status(self, document_id: str, **values) -> None:
        with get_session(self.session_factory) as session:
            session.execute(
                update(ProcessingStatus)
                .where(ProcessingStatus.document_id == document_id)
                .values(updated_at=utcnow(), **values)
            )
            session.commit()
        logger.info("Processing status changed", document_id=document_id, status=values.get("status"))

    def get_status(self, document_id: str) -> Optional[Dict[str, Any]]:
        with get_session(self.session_factory) as session:
            row = session.execute(
                select(ProcessingStatus).where(ProcessingStatus.document_id == document_id)
            ).scalar_one_or_none()
            return _status_dict(row) if row is not None else None

    # ==================== Chunks ====================

    def replace_chunks(self, document_id: str, rows: Sequence[Dict[str, Any]]) -> int:
        """
        Swap the document's chunks for a new set in one transaction.
        On any failure the previous rows are untouched.
        """
        try:
            with get_session(self.session_factory) as session:
                session.execute(delete(Chunk).where(Chunk.document_id == document_id))
                session.add_all(Chunk(document_id=document_id, **row) for row in rows)
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Chunk write failed", document_id=document_id, error=str(e))
            raise StoreWriteError(f"Failed to write chunks: {e}") from e
        return len(rows)

    def delete_chunks(self, document_id: str) -> int:
        with get_session(self.session_factory) as session:
            result = session.execute(delete(Chunk).where(Chunk.document_id == document_id))
            session.commit()
            return result.rowcount

    def count_chunks(self, document_id: str) -> int:
        with get_session(self.session_factory) as session:
            return session.execute(
                select(func.count(Chunk.id)).where(Chunk.document_id == document_id)
            ).scalar_one()

    def chunk_stats(self, document_id: str) -> Dict[str, Any]:
        with get_session(self.session_factory) as session:
            rows = session.execute(
                select(Chunk.chunk_type, func.count(Chunk.id))
                .where(Chunk.document_id == document_id)
                .group_by(Chunk.chunk_type)
            ).all()
            flags = session.execute(
                select(
                    func.count(Chunk.id).filter(Chunk.has_equations.is_(True)),
                    func.count(Chunk.id).filter(Chunk.has_citations.is_(True)),
                    func.max(Chunk.page_number),
                ).where(Chunk.document_id == document_id)
            ).one()
        return {
            "chunk_types": {chunk_type: count for chunk_type, count in rows},
            "chunks_with_equations": flags[0],
            "chunks_with_citations": flags[1],
            "max_page": flags[2] or 0,
        }

    # ==================== Sessions and messages ====================

    def create_session(self, user_id: str, document_id: Optional[str] = None,
                       title: Optional[str] = None) -> Dict[str, Any]:
        with get_session(self.session_factory) as session:
            if document_id is not None and session.get(Document, document_id) is None:
                raise DocumentNotFoundError(document_id)
            row = ChatSession(user_id=user_id, document_id=document_id, title=title or "New conversation")
            session.add(row)
            session.commit()
            logger.info("Created new chat session", session_id=row.id, document_id=document_id)
            return _session_dict(row)

    def get_chat_session(self, session_id: int, user_id: Optional[str] = None,
                         include_messages: bool = True) -> Dict[str, Any]:
        """Session with its messages in chronological order."""
        with get_session(self.session_factory) as session:
            row = session.get(ChatSession, session_id)
            if row is None or (user_id is not None and row.user_id != user_id):
                raise SessionNotFoundError(session_id)
            if not include_messages:
                return _session_dict(row)
            messages = session.execute(
                select(ChatMessage)
                .where(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.created_at, ChatMessage.id)
            ).scalars().all()
            return {
                **_session_dict(row),
                "messages": [
                    {"id": m.id, "role": m.role, "content": m.content, "created_at": _iso(m.created_at)}
                    for m in messages
                ],
            }

    def list_sessions(self, user_id: str, document_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with get_session(self.session_factory) as session:
            stmt = (
                select(ChatSession)
                .where(ChatSession.user_id == user_id)
                .order_by(ChatSession.updated_at.desc(), ChatSession.id.desc())
            )
            if document_id is not None:
                stmt = stmt.where(ChatSession.document_id == document_id)
            return [_session_dict(r) for r in session.execute(stmt).scalars().all()]

    def recent_messages(self, session_id: int, limit: int = 20) -> List[Dict[str, str]]:
        """Last `limit` messages of a session, oldest first."""
        with get_session(self.session_factory) as session:
            rows = session.execute(
                select(ChatMessage.role, ChatMessage.content)
                .where(ChatMessage.session_id == session_id)
                .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
                .limit(limit)
            ).all()
        return [{"role": role, "content": content} for role, content in reversed(rows)]

    def record_exchange(
        self,
        session_id: int,
        question: str,
        answer: str,
        citations: Sequence[Dict[str, Any]] = (),
    ) -> Dict[str, int]:
        """
        Persist one question/answer turn: the user message, the assistant
        message and the assistant message's citations, in one transaction.
        """
        with get_session(self.session_factory) as session:
            chat = session.get(ChatSession, session_id)
            if chat is None:
                raise SessionNotFoundError(session_id)

            user_msg = ChatMessage(session_id=session_id, role="user", content=question)
            session.add(user_msg)
            session.flush()
            assistant_msg = ChatMessage(session_id=session_id, role="assistant", content=answer)
            session.add(assistant_msg)
            session.flush()
            for c in citations:
                session.add(MessageCitation(
                    message_id=assistant_msg.id,
                    chunk_id=c["chunk_id"],
                    score=float(c["score"]),
                    page_number=c["page_number"],
                    cited_in_answer=bool(c.get("cited_in_answer", False)),
                ))
            chat.updated_at = utcnow()
            session.commit()
            logger.debug(
                "Stored exchange",
                session_id=session_id,
                assistant_message_id=assistant_msg.id,
                citations=len(citations),
            )
            return {"user_message_id": user_msg.id, "assistant_message_id": assistant_msg.id}

    def get_citations(self, message_id: int) -> List[Dict[str, Any]]:
        with get_session(self.session_factory) as session:
            rows = session.execute(
                select(MessageCitation)
                .where(MessageCitation.message_id == message_id)
                .order_by(MessageCitation.id)
            ).scalars().all()
            return [
                {
                    "chunk_id": r.chunk_id,
                    "score": r.score,
                    "page_number": r.page_number,
                    "cited_in_answer": r.cited_in_answer,
                }
                for r in rows
            ]

    # ==================== Query log ====================

    def log_query(
        self,
        query: str,
        retrieval_method: str,
        num_chunks_retrieved: int,
        total_time_ms: float,
        user_id: Optional[str] = None,
        session_id: Optional[int] = None,
    ) -> None:
        with get_session(self.session_factory) as session:
            session.add(QueryLog(
                user_id=user_id,
                session_id=session_id,
                query=query,
                retrieval_method=retrieval_method,
                num_chunks_retrieved=num_chunks_retrieved,
                total_time_ms=total_time_ms,
            ))
            session.commit()
