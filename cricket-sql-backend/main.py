"""
Cricket SQL API - Text-to-SQL over Server-Sent Events
=====================================================

Ask a cricket question in English, get a validated, executed SQL result
streamed back as `status` / `result` / `error` events.

Architecture:
- Groq LLM (llama-index): question -> candidate SQL statements
- Safety validator: every statement checked before execution
- Query pipeline: player lookups -> placeholder splicing -> main query
- SQLAlchemy engine: one pooled engine per process
- Audit log: every request recorded for accuracy feedback

All collaborators are built once in the lifespan hook and stored on
app.state; nothing is rebuilt per request.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, StrictBool, ValidationError
from sqlalchemy.engine import Engine

from env_guard import Settings, load_settings, validate_environment
from event_stream import SSE_HEADERS, QueueEventSink
from query_executor import QueryExecutor, create_database_engine
from query_pipeline import QueryPipeline
from request_log import RequestLogStore
from sql_generator import GroqTextGenerator, SQLGenerationClient, create_groq_llm
from text_to_sql_handler import TextToSqlHandler

VERSION = "1.0"

# Configure logging - libraries at WARNING, our modules at LOG_LEVEL
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

APP_LOGGERS = [
    __name__,
    "env_guard",
    "request_validator",
    "sql_validator",
    "sql_generator",
    "player_name_resolver",
    "query_executor",
    "query_pipeline",
    "response_formatter",
    "request_log",
    "event_stream",
    "text_to_sql_handler",
]


def configure_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    for name in APP_LOGGERS:
        logging.getLogger(name).setLevel(level)


# =============================================================================
# SERVICES
# =============================================================================

@dataclass
class AppServices:
    """Everything a request needs, constructed once at startup."""
    settings: Settings
    handler: TextToSqlHandler
    executor: QueryExecutor
    request_log: RequestLogStore
    engine: Optional[Engine] = None


def build_services(settings: Settings) -> AppServices:
    engine = create_database_engine(settings.database_url, settings.statement_timeout_ms)
    executor = QueryExecutor(engine)
    request_log = RequestLogStore(engine)

    generation_client = None
    if settings.has_generation_credentials:
        llm = create_groq_llm(settings.groq_api_key, settings.groq_model, settings.llm_temperature)
        generation_client = SQLGenerationClient(
            GroqTextGenerator(llm),
            temperature=settings.llm_temperature,
            timeout_seconds=settings.generation_timeout_seconds,
            max_rows=settings.max_result_rows,
        )
        logger.info(f"Groq LLM initialized: {settings.groq_model}")
    else:
        logger.warning("GROQ_API_KEY not set - text-to-SQL requests will fail with AI_ERROR")

    handler = TextToSqlHandler(
        settings=settings,
        generation_client=generation_client,
        pipeline=QueryPipeline(executor),
        request_log=request_log,
    )

    return AppServices(
        settings=settings,
        handler=handler,
        executor=executor,
        request_log=request_log,
        engine=engine,
    )


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        services: Pre-built services (tests). When None they are built from
            the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize system on startup, cleanup on shutdown"""
        try:
            if services is None:
                settings = load_settings()
                configure_logging(settings.log_level)
                logger.info(f"Initializing Cricket SQL API v{VERSION}...")
                validate_environment(settings, strict=True, verbose=False)
                app.state.services = build_services(settings)
            else:
                app.state.services = services

            await asyncio.to_thread(app.state.services.request_log.create_table)

            logger.info("=" * 60)
            logger.info(f"Cricket SQL API v{VERSION} Ready!")
            logger.info(f"Default league: {app.state.services.settings.default_league}")
            logger.info(f"Row cap: {app.state.services.settings.max_result_rows}")
            logger.info("=" * 60)
        except Exception as e:
            logger.error(f"Startup failed: {str(e)}")
            raise

        yield  # Server is running

        logger.info("Shutting down Cricket SQL API...")
        await app.state.services.handler.drain()
        if app.state.services.engine is not None:
            app.state.services.engine.dispose()

    app = FastAPI(
        title="Cricket SQL API",
        description="Natural-language cricket questions answered with validated SQL",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(app)
    return app


# =============================================================================
# MODELS
# =============================================================================

class FeedbackRequest(BaseModel):
    requestId: str = Field(min_length=1)
    isAccurate: StrictBool
    feedbackNote: Optional[str] = Field(default=None, max_length=1000)


FEEDBACK_MESSAGES = {
    "requestId": "Request ID is required",
    "isAccurate": "isAccurate must be a boolean",
    "feedbackNote": "Feedback note is too long (max 1000 characters)",
}

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
}


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError:
        return None


def _services(request: Request) -> AppServices:
    return request.app.state.services


# =============================================================================
# ROUTES
# =============================================================================

def register_routes(app: FastAPI) -> None:

    @app.get("/")
    async def root():
        return {
            "message": f"Cricket SQL API v{VERSION}",
            "version": VERSION,
            "endpoints": ["/text-to-sql", "/ai/feedback", "/health"],
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        services = _services(request)
        database_ok = await asyncio.to_thread(services.executor.ping)
        return {
            "status": "healthy",
            "version": VERSION,
            "model": services.settings.groq_model,
            "generation_configured": services.settings.has_generation_credentials,
            "database": "connected" if database_ok else "unavailable",
        }

    @app.post("/text-to-sql")
    async def text_to_sql(request: Request):
        """Stream status/result/error events for one cricket question"""
        services = _services(request)
        body = await _read_json(request)

        sink = QueueEventSink()
        services.handler.start(body, sink, request_id=str(uuid.uuid4()))

        return StreamingResponse(
            sink.stream(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.options("/text-to-sql")
    async def text_to_sql_preflight():
        return Response(
            status_code=200,
            headers={**CORS_PREFLIGHT_HEADERS, "Access-Control-Allow-Methods": "POST, OPTIONS"},
        )

    @app.post("/ai/feedback")
    async def submit_feedback(request: Request):
        """Record whether an answer was accurate"""
        services = _services(request)
        body = await _read_json(request)

        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid request format")

        try:
            feedback = FeedbackRequest.model_validate(body)
        except ValidationError as e:
            first = e.errors()[0]
            field = first["loc"][0] if first.get("loc") else None
            raise HTTPException(
                status_code=400,
                detail=FEEDBACK_MESSAGES.get(field, "Invalid request format"),
            )

        existing = await services.request_log.get_request_by_id(feedback.requestId)
        if existing is None:
            raise HTTPException(status_code=404, detail="Request not found")

        if existing.get("is_accurate") is not None:
            raise HTTPException(
                status_code=409,
                detail="Feedback has already been submitted for this request",
            )

        updated = await services.request_log.update_accuracy(
            feedback.requestId, feedback.isAccurate, feedback.feedbackNote
        )
        if not updated:
            raise HTTPException(status_code=500, detail="Failed to submit feedback. Please try again.")

        logger.info(f"Feedback recorded for {feedback.requestId}: accurate={feedback.isAccurate}")
        return {"success": True, "message": "Feedback submitted successfully"}

    @app.get("/ai/feedback")
    async def feedback_stats(request: Request):
        """Accuracy statistics across rated requests"""
        stats = await _services(request).request_log.get_accuracy_stats()
        return {"success": True, "data": stats}

    @app.options("/ai/feedback")
    async def feedback_preflight():
        return Response(
            status_code=200,
            headers={**CORS_PREFLIGHT_HEADERS, "Access-Control-Allow-Methods": "POST, GET, OPTIONS"},
        )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
