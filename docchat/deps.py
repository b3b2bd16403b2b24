"""
FastAPI dependencies shared by the routers.
"""
from functools import lru_cache

from fastapi import Header, HTTPException

from .config import settings
from .exceptions import DocChatError
from .services.rag_agent import RAGAgent, build_agent


@lru_cache(maxsize=1)
def get_agent() -> RAGAgent:
    return build_agent(settings)


def get_user_id(x_user_id: str = Header("anonymous", max_length=64)) -> str:
    """Caller identity. Authentication happens upstream; the id arrives in X-User-Id."""
    return x_user_id


def http_error(e: DocChatError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.message)
