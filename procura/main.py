"""
Procura procurement intelligence API.
"""
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from procura.api import ai_status, chat, extraction, negotiation, pricing, vendor_intelligence
from procura.core.config import settings
from procura.core.errors import AIProviderError, ExtractionFailed, InvalidStateTransition, NotFound
from procura.core.logging import get_logger, setup_logging
from procura.db.session import init_db
from procura.services.ai_gateway import build_ai_capability
from procura.services.chatbot import ProcurementChatbot
from procura.services.negotiation_copilot import NegotiationCopilot
from procura.services.ocr_engine import build_ocr_engine
from procura.services.session_store import ConversationCache

logger = get_logger(__name__)


def configure_engines(app: FastAPI) -> None:
    """Build the shared AI capability, OCR engine, copilot and chatbot once per process."""
    app.state.ai = build_ai_capability(settings)
    app.state.ocr = build_ocr_engine()
    app.state.copilot = NegotiationCopilot(
        app.state.ai,
        ConversationCache(
            ttl_seconds=settings.NEGOTIATION_CACHE_TTL_SECONDS,
            max_entries=settings.NEGOTIATION_CACHE_MAX_SESSIONS,
        ),
    )
    app.state.chatbot = ProcurementChatbot(
        app.state.ai,
        ConversationCache(
            ttl_seconds=settings.CHAT_CACHE_TTL_SECONDS,
            max_entries=settings.CHAT_CACHE_MAX_SESSIONS,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()
    configure_engines(app)
    logger.info(f"AI provider: {app.state.ai.provider_name} (available={app.state.ai.is_available()})")
    yield
    app.state.copilot.cache.clear()
    app.state.chatbot.cache.clear()
    logger.info("Shutting down")


def _error(status_code: int, detail: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return _error(404, str(exc))

    @app.exception_handler(InvalidStateTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidStateTransition):
        return _error(409, str(exc), current=exc.current, requested=exc.requested)

    @app.exception_handler(ExtractionFailed)
    async def extraction_failed_handler(request: Request, exc: ExtractionFailed):
        return _error(422, str(exc), extraction_id=exc.extraction_id)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error(422, str(exc))

    @app.exception_handler(AIProviderError)
    async def provider_error_handler(request: Request, exc: AIProviderError):
        logger.error(f"Unhandled AI provider error on {request.url.path}: {exc}")
        return _error(503, "AI provider unavailable")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(extraction.router)
    app.include_router(pricing.router)
    app.include_router(vendor_intelligence.router)
    app.include_router(negotiation.router)
    app.include_router(chat.router)
    app.include_router(ai_status.router)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": settings.APP_VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
