"""
Main FastAPI application entry point.
Responsibilities: App setup, router registration, startup/shutdown hooks.
"""
from fastapi import FastAPI

from .config import settings
from .db.migrations import run_migrations
from .deps import get_agent
from .embedding import SentenceTransformerEmbeddings
from .logging_config import logger
from .ollama_client import ensure_ollama_model
from .routes import chat, documents
from .services.model_service import resolve_model

# -------------------------------------------------
# App setup
# -------------------------------------------------

app = FastAPI(title=settings.APP_NAME, version=settings.VERSION)

# Register routers
app.include_router(chat.router)
app.include_router(documents.router)


@app.on_event("startup")
async def startup_event():
    """Initialize database, embedding model and Ollama model on startup."""
    try:
        logger.info("Running database migrations...")
        run_migrations()
        logger.info("Database migrations completed")

        embedder = get_agent().ingestion.embedder.service
        if isinstance(embedder, SentenceTransformerEmbeddings):
            logger.info("Preloading embedding model...")
            embedder.preload()
            logger.info("Embedding model ready")

        provider, model_name = resolve_model(settings.LLM_MODEL)
        if provider == "ollama":
            logger.info("Ensuring Ollama model is available...", model=model_name)
            await ensure_ollama_model(settings.OLLAMA_URL, model_name)

    except Exception as e:
        logger.error("Startup initialization error", exc_info=e)
        # Continue anyway - app might still be usable


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    logger.info("Application shutting down")


@app.get("/health")
async def health():
    return {"status": "ok", "version": settings.VERSION}
