"""FastAPI application entry point for the batching backend.

This module wires the stores, the durable timer, the chat agent, the plan
pipeline and the batch coordinator together, and exposes them over HTTP and
WebSocket.

Usage:
    uv run uvicorn main:app --reload
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router, set_orchestration_graph, set_timer_worker
from api.routes import set_coordinator as set_routes_coordinator
from api.transport import EventBusTransport
from api.websocket import set_coordinator as set_websocket_coordinator
from api.websocket import websocket_router
from batching.coordinator import TIMER_HANDLER, BatchCoordinator
from batching.processor import BatchProcessor
from chat import ChatAgent
from config import configure_logging, settings
from events import LLMMetrics, get_event_bus
from llm.client import LLMClient, LLMResponse, MockLLMClient
from models.database import ObservabilityStore, SQLiteActorStateStore, SQLiteTimerStore
from orchestration.graph import OrchestrationGraph
from timers import DurableTimer, TimerWorker

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


def build_llm_client() -> LLMClient:
    """Real LiteLLM client, or a canned one when ``use_mock_llm`` is set."""
    event_bus = get_event_bus()
    if settings.use_mock_llm:
        return MockLLMClient(
            default_response=LLMResponse(
                content="This is a mock response.",
                tool_calls=[],
                finish_reason="stop",
                metrics=LLMMetrics(
                    model="mock",
                    input_tokens=0,
                    output_tokens=0,
                    latency_ms=0,
                ),
            ),
            event_bus=event_bus,
        )
    return LLMClient(event_bus=event_bus)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Initializes the SQLite stores, builds the coordinator, re-arms timers for
    work left over from a previous run and starts the timer worker.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        use_mock_llm=settings.use_mock_llm,
        database_path=settings.database_path,
    )

    event_bus = get_event_bus()

    state_store = SQLiteActorStateStore(settings.database_path)
    timer_store = SQLiteTimerStore(settings.database_path)
    await state_store.init()
    await timer_store.init()

    observability: ObservabilityStore | None = None
    try:
        observability = ObservabilityStore(settings.database_path)
        await observability.init()
    except Exception as e:
        # Observability is optional; keep the API up without it.
        logger.warning("observability_store_init_failed", error=str(e))
        observability = None

    llm_client = build_llm_client()
    transport = EventBusTransport(event_bus)
    chat_agent = ChatAgent(llm_client, model=settings.default_model)
    orchestration_graph = OrchestrationGraph(llm_client, event_bus=event_bus)
    processor = BatchProcessor(
        transport,
        chat_agent,
        orchestration_graph=orchestration_graph,
    )
    coordinator = BatchCoordinator(
        state_store,
        DurableTimer(timer_store),
        processor,
        transport,
        event_bus=event_bus,
        observability=observability,
    )

    timer_worker = TimerWorker(
        timer_store,
        poll_interval_seconds=settings.timer_poll_interval_seconds,
    )
    timer_worker.register(TIMER_HANDLER, coordinator.handle_timer)

    set_routes_coordinator(coordinator)
    set_websocket_coordinator(coordinator)
    set_orchestration_graph(orchestration_graph)
    set_timer_worker(timer_worker)

    app.state.coordinator = coordinator
    app.state.timer_worker = timer_worker
    app.state.transport = transport

    recovered = await coordinator.recover_all()
    timer_worker.start()

    logger.info("application_started", actors_recovered=recovered)

    yield

    logger.info("application_shutting_down")
    await timer_worker.stop()
    await coordinator.close()
    set_timer_worker(None)
    logger.info("application_shutdown_complete")


app = FastAPI(
    title="Actor Batching Backend",
    description="Per-actor message batching with durable timers, retries, "
    "and a DAG task orchestrator for multi-step requests.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(router, tags=["actors"])
app.include_router(websocket_router, tags=["websocket"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    return {
        "message": "Actor Batching Backend API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
