"""Exceptions for the ingestion, retrieval and generation pipeline."""


class DocChatError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, stage: str, http_status: int = 500):
        self.message = message
        self.stage = stage
        self.http_status = http_status
        super().__init__(message)


class IngestionError(DocChatError):
    """Error while loading, splitting, embedding or writing a document."""

    def __init__(self, message: str, stage: str = "ingestion"):
        super().__init__(message, stage, 500)


class LoaderError(IngestionError):
    """The source could not be read or has an unsupported type."""

    def __init__(self, message: str):
        super().__init__(message, "load")


class EmbeddingError(IngestionError):
    """The embedding service failed, timed out or returned malformed vectors."""

    def __init__(self, message: str):
        super().__init__(message, "embedding")


class StoreWriteError(IngestionError):
    """Chunk rows or vectors could not be written."""

    def __init__(self, message: str):
        super().__init__(message, "store_write")


class RetrievalError(DocChatError):
    """The vector or keyword store could not be queried."""

    def __init__(self, message: str):
        super().__init__(message, "retrieval", 503)


class GenerationError(DocChatError):
    """The generation model failed or the stream was interrupted."""

    def __init__(self, message: str):
        super().__init__(message, "generation", 502)


class ProcessingConflictError(DocChatError):
    """A processing run is already in progress for the document."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(
            f"Document {document_id} is already being processed", "processing", 409
        )


class DocumentNotFoundError(DocChatError):
    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found", "lookup", 404)


class SessionNotFoundError(DocChatError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Conversation {session_id} not found", "lookup", 404)
