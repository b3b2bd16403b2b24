import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.orm import declarative_base, relationship
from pgvector.sqlalchemy import Vector

from .config import settings

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingState:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Document(Base):
    __tablename__ = "documents"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=True, index=True)
    title = Column(Text, nullable=False)
    source = Column(Text, nullable=False)  # filename or URL
    storage_path = Column(Text)
    mime_type = Column(Text)
    page_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    chunks = relationship("Chunk", back_populates="document", cascade="all, delete-orphan", passive_deletes=True)
    status = relationship(
        "ProcessingStatus", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )
    sessions = relationship("ChatSession", cascade="all, delete-orphan", passive_deletes=True)


class Chunk(Base):
    __tablename__ = "chunks"
    id = Column(String(36), primary_key=True, default=_uuid)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    page_number = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    embedding = Column(Vector(settings.EMBEDDING_DIM), nullable=False)

    # Lexical metadata (closed field set, see classifier.ChunkMetadata)
    chunk_index = Column(Integer, nullable=False)
    chunk_type = Column(String(32), nullable=False, default="body")
    keyword_count = Column(Integer, nullable=False, default=0)
    has_equations = Column(Boolean, nullable=False, default=False)
    has_citations = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    document = relationship("Document", back_populates="chunks")

    __table_args__ = (
        Index("idx_chunks_document_index", "document_id", "chunk_index"),
    )


class ProcessingStatus(Base):
    __tablename__ = "document_processing_status"
    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(
        String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    status = Column(String(16), nullable=False, default=ProcessingState.PENDING)
    processing_started_at = Column(DateTime(timezone=True))
    processing_completed_at = Column(DateTime(timezone=True))
    total_chunks = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class ChatSession(Base):
    __tablename__ = "chat_sessions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    document_id = Column(String(36), ForeignKey("documents.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    messages = relationship("ChatMessage", cascade="all, delete-orphan", passive_deletes=True)


class ChatMessage(Base):
    __tablename__ = "chat_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("chat_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    citations = relationship("MessageCitation", cascade="all, delete-orphan", passive_deletes=True)


class MessageCitation(Base):
    __tablename__ = "message_citations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("chat_messages.id", ondelete="CASCADE"), nullable=False, index=True)
    # Survives reprocessing; page_number and score keep the audit trail
    chunk_id = Column(String(36), ForeignKey("chunks.id", ondelete="SET NULL"), nullable=True)
    score = Column(Float, nullable=False)
    page_number = Column(Integer, nullable=False)
    cited_in_answer = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class QueryLog(Base):
    __tablename__ = "rag_query_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64))
    session_id = Column(Integer)
    query = Column(Text, nullable=False)
    retrieval_method = Column(String(32), nullable=False)
    num_chunks_retrieved = Column(Integer, nullable=False, default=0)
    total_time_ms = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
