"""Main FastAPI application."""
import json
import uuid
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from companion.config import Settings, get_settings
from companion.errors import CompanionError, UnauthorizedError
from companion.logging_config import configure_logging, get_logger
from companion.models import ChatRequest, ErrorDetail, ErrorResponse, HealthResponse
from companion.monitoring.usage_tracker import get_usage_tracker
from companion.orchestrator import (
    BlockedReply,
    ConversationOrchestrator,
    StreamingReply,
    TextDelta,
    TurnCompleted,
    TurnFailed,
    TurnRequest,
    build_orchestrator,
)

logger = get_logger(__name__)

STREAM_HEADERS = {
    "X-Vercel-AI-Data-Stream": "v1",
    "Cache-Control": "no-cache",
}


def encode_text_part(text: str) -> str:
    return f"0:{json.dumps(text, ensure_ascii=False)}\n"


def encode_data_part(packet: Dict[str, Any]) -> str:
    return f"2:{json.dumps([packet], ensure_ascii=False)}\n"


def encode_error_part(message: str) -> str:
    return f"3:{json.dumps(message, ensure_ascii=False)}\n"


async def stream_reply(reply: StreamingReply) -> AsyncIterator[str]:
    """
    Encode turn events in the data stream line protocol.

    Args:
        reply: In-flight generation

    Yields:
        ``0:`` text parts, then a ``2:`` metadata part, or a ``3:`` error part
    """
    async for event in reply.events():
        if isinstance(event, TextDelta):
            yield encode_text_part(event.text)
        elif isinstance(event, TurnCompleted):
            yield encode_data_part(event.metadata.to_packet())
        elif isinstance(event, TurnFailed):
            yield encode_error_part(event.message)


def create_app(
    orchestrator: Optional[ConversationOrchestrator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        orchestrator: Turn orchestrator (built from settings on first use when omitted)
        settings: Application settings (defaults to config)

    Returns:
        Configured FastAPI app
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Companion Chat",
        description="Conversational safety-and-routing pipeline for a mental-health companion chat",
        version="1.0.0"
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    def get_orchestrator() -> ConversationOrchestrator:
        if app.state.orchestrator is None:
            app.state.orchestrator = build_orchestrator(settings)
        return app.state.orchestrator

    @app.on_event("startup")
    async def startup_event():
        """Initialize components on startup."""
        logger.info("application_starting", environment=settings.environment)

        current = get_orchestrator()
        await current.nodes.golden_cache.refresh()

        if not settings.has_chat_credentials():
            logger.warning("chat_provider_not_configured")
        if not settings.has_triage_credentials():
            logger.warning("triage_provider_not_configured")

        logger.info("application_started")

    @app.post("/chat")
    async def chat(
        body: ChatRequest,
        x_user_id: Optional[str] = Header(default=None),
    ):
        """
        Handle one chat turn.

        Args:
            body: Message, prior turns, session and persona
            x_user_id: Authenticated user id set by the auth proxy

        Returns:
            Plain text for blocked input, otherwise a streamed reply
        """
        request_id = str(uuid.uuid4())
        log = logger.bind(request_id=request_id)

        if settings.require_auth and not x_user_id:
            raise UnauthorizedError("Authentication required")

        log.info("request_received", message_length=len(body.message))

        result = await get_orchestrator().handle_turn(TurnRequest(
            message=body.message,
            history=body.history,
            user_id=x_user_id,
            session_id=body.session_id,
            persona_id=body.persona_id,
            request_id=request_id,
        ))

        headers = {"X-Request-Id": request_id}

        if isinstance(result, BlockedReply):
            return PlainTextResponse(result.text, status_code=200, headers=headers)

        if result.conversation_id:
            headers["X-Conversation-Id"] = result.conversation_id
        headers.update(STREAM_HEADERS)

        return StreamingResponse(
            stream_reply(result),
            media_type="text/plain; charset=utf-8",
            headers=headers,
        )

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        chat_status = "ok" if settings.has_chat_credentials() else "no_api_key"
        triage_status = "ok" if settings.has_triage_credentials() else "no_api_key"

        return HealthResponse(
            status="healthy" if chat_status == "ok" else "degraded",
            chat_provider_status=chat_status,
            triage_provider_status=triage_status,
            golden_examples_cached=get_orchestrator().nodes.golden_cache.size,
        )

    @app.get("/metrics")
    async def get_metrics() -> Dict[str, Any]:
        """Turn metrics and token usage."""
        return {
            "metrics": get_orchestrator().metrics.get_summary(),
            "usage": get_usage_tracker().get_summary(),
        }

    @app.post("/golden-examples/refresh")
    async def refresh_golden_examples() -> Dict[str, Any]:
        """Reload curated examples now instead of waiting for the TTL."""
        cache = get_orchestrator().nodes.golden_cache
        refreshed = await cache.refresh()
        return {"refreshed": refreshed, "golden_examples_cached": cache.size}

    @app.exception_handler(CompanionError)
    async def companion_error_handler(request: Request, exc: CompanionError):
        """Map domain errors to structured payloads."""
        log_method = logger.error if exc.status_code >= 500 else logger.warning
        log_method(
            "request_failed",
            path=request.url.path,
            error_code=exc.error_code,
            status_code=exc.status_code,
        )
        payload = ErrorResponse(error=ErrorDetail(code=exc.error_code, message=exc.message))
        return JSONResponse(status_code=exc.status_code, content=payload.model_dump())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True
        )
        payload = ErrorResponse(error=ErrorDetail(code="internal_error", message="Internal server error"))
        return JSONResponse(status_code=500, content=payload.model_dump())

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    current_settings = get_settings()
    uvicorn.run(app, host=current_settings.api_host, port=current_settings.api_port)
