"""
FastAPI service layer for the web-document QA system.

Exposes POST /chat, POST /query, POST /sample-questions, GET /health,
GET /cpu-usage and GET /metrics, each also mounted under /api.

Run with:
    uvicorn webrag.api_server:app --host 0.0.0.0 --port 3000
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .chat_service import ChatService, create_sample_question_chain
from .config import (
    IS_PRODUCTION,
    LOG_PATH,
    SAMPLE_QUESTION_TEMPERATURE,
    RequestTimeouts,
    check_credentials,
    console,
)
from .exceptions import InvalidInputError, RequestTimeoutError, WebRagError
from .index_cache import IndexCache
from .metrics import MetricsCollector, system_snapshot, utc_timestamp
from .observability import configure_logging, get_logger
from .rag_pipeline import RagPipeline, initialize_llm

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class HistoryTurn(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    urls: list[str] | None = None
    message: str | None = None
    conversation_history: list[HistoryTurn] = Field(default_factory=list, alias="conversationHistory")


class QueryRequest(BaseModel):
    urls: list[str] | None = None
    question: str | None = None


class SampleQuestionsRequest(BaseModel):
    urls: list[str] | None = None


class ChatResponse(BaseModel):
    success: bool = True
    message: str
    documents: list[str]


class QueryResponse(BaseModel):
    success: bool = True
    question: str
    documents: list[str]
    documentCount: int
    generatedAnswer: str


class SampleQuestionsResponse(BaseModel):
    success: bool = True
    questions: list[str]


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------

def build_chat_service() -> ChatService:
    """Creates the production service: real LLMs, embedding index cache, configured deadlines."""
    ok, errors = check_credentials()
    if not ok:
        for error in errors:
            console.print(f"[bold red]Configuration Error:[/bold red] {error}")
        logger.error("startup_credentials_missing", errors=errors)
        raise RuntimeError("; ".join(errors))

    llm = initialize_llm()
    question_llm = initialize_llm(temperature=SAMPLE_QUESTION_TEMPERATURE)
    return ChatService(
        cache=IndexCache(),
        pipeline=RagPipeline.from_llm(llm),
        question_chain=create_sample_question_chain(question_llm),
        timeouts=RequestTimeouts.from_config(),
    )


def _error_body(error: str, exc: BaseException) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error, "message": getattr(exc, "message", None) or str(exc) or "Unknown error occurred"}
    if not IS_PRODUCTION:
        body["details"] = repr(exc)
    return body


def _service(request: Request) -> ChatService:
    return request.app.state.chat_service


def _metrics(request: Request) -> MetricsCollector:
    return request.app.state.metrics


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health")
async def health_endpoint():
    return {"status": "ok", "timestamp": utc_timestamp()}


@router.get("/cpu-usage")
async def cpu_usage_endpoint():
    """Host and process resource snapshot."""
    return system_snapshot()


@router.get("/metrics")
async def metrics_endpoint(request: Request):
    """Return aggregated request metrics and index cache statistics."""
    summary = _metrics(request).get_summary()
    summary["index_cache"] = _service(request).cache.stats()
    return summary


@router.post("/chat", response_model=ChatResponse)
async def chat_endpoint(payload: ChatRequest, request: Request):
    """Answer a chat message against the given URLs."""
    start = time.perf_counter()
    metrics = _metrics(request)
    try:
        reply = await _service(request).chat(
            payload.urls,
            payload.message,
            [turn.model_dump() for turn in payload.conversation_history],
        )
    except InvalidInputError as exc:
        metrics.record_request("chat", _elapsed_ms(start), 400)
        return JSONResponse(status_code=400, content={"error": exc.message})
    except RequestTimeoutError as exc:
        logger.warning("chat_timeout", phase=exc.phase, cold=exc.cold, timeout_s=exc.timeout_s)
        metrics.record_request("chat", _elapsed_ms(start), 408, cold=exc.cold, timeout_phase=exc.phase)
        return JSONResponse(status_code=408, content={"error": "Request Timeout", "message": exc.message})
    except Exception as exc:
        logger.error("chat_failed", error=str(exc), exc_info=True)
        metrics.record_request("chat", _elapsed_ms(start), 500)
        return JSONResponse(status_code=500, content=_error_body("Failed to process message", exc))

    metrics.record_request("chat", _elapsed_ms(start), 200, cold=reply.cold, shortcut=reply.shortcut)
    return ChatResponse(message=reply.message, documents=reply.documents)


@router.post("/query", response_model=QueryResponse)
async def query_endpoint(payload: QueryRequest, request: Request):
    """Legacy single-question endpoint without conversation history or deadlines."""
    start = time.perf_counter()
    metrics = _metrics(request)
    try:
        reply = await _service(request).query(payload.urls, payload.question)
    except InvalidInputError as exc:
        metrics.record_request("query", _elapsed_ms(start), 400)
        return JSONResponse(status_code=400, content={"error": exc.message})
    except Exception as exc:
        logger.error("query_failed", error=str(exc), exc_info=True)
        metrics.record_request("query", _elapsed_ms(start), 500)
        return JSONResponse(
            status_code=500,
            content={"error": "Failed to process query", "message": getattr(exc, "message", None) or str(exc)},
        )

    metrics.record_request("query", _elapsed_ms(start), 200)
    return QueryResponse(
        question=reply.question,
        documents=reply.documents,
        documentCount=len(reply.documents),
        generatedAnswer=reply.generated_answer,
    )


@router.post("/sample-questions", response_model=SampleQuestionsResponse)
async def sample_questions_endpoint(payload: SampleQuestionsRequest, request: Request):
    """Suggest up to five questions about the documents; falls back to generic ones."""
    start = time.perf_counter()
    metrics = _metrics(request)
    try:
        questions = await _service(request).sample_questions(payload.urls)
    except InvalidInputError as exc:
        metrics.record_request("sample_questions", _elapsed_ms(start), 400)
        return JSONResponse(status_code=400, content={"error": exc.message})

    metrics.record_request("sample_questions", _elapsed_ms(start), 200)
    return SampleQuestionsResponse(questions=questions)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

async def _validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    detail = first.get("msg", "Invalid request body")
    return JSONResponse(
        status_code=400,
        content={"error": f"Invalid request: {location}: {detail}" if location else f"Invalid request: {detail}"},
    )


async def _service_error_handler(request: Request, exc: WebRagError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def create_app(
    chat_service: ChatService | None = None,
    metrics: MetricsCollector | None = None,
) -> FastAPI:
    """
    Builds the FastAPI application. Injected services are used as-is; otherwise
    the lifespan creates them at startup and fails fast on missing credentials.
    """
    configure_logging(LOG_PATH)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_service = chat_service is None
        app.state.chat_service = chat_service if chat_service is not None else build_chat_service()
        app.state.metrics = metrics if metrics is not None else MetricsCollector()
        logger.info("service_started", production=IS_PRODUCTION)

        yield  # Application is running.

        # Shutdown: release the index cache and any detached work.
        if owns_service:
            await app.state.chat_service.close()
        logger.info("service_stopped")

    app = FastAPI(
        title="webrag API",
        description="Question answering over web documents with graded retrieval",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(WebRagError, _service_error_handler)
    app.include_router(router)
    app.include_router(router, prefix="/api")
    return app


app = create_app()
